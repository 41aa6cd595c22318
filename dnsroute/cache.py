"""Resolver that caches upstream responses for up to their TTL."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.rrset

from .base import ClientInfo, Resolver, get_var_int, nxdomain, question_of
from .memorybackend import (
    CacheAnswer,
    CacheBackend,
    MemoryBackend,
    MemoryBackendOptions,
    cache_key,
)

log = logging.getLogger(__name__)

DEFAULT_NEGATIVE_TTL = 60
# RFC 2308: SERVFAIL must not be cached for longer than 5 minutes.
SERVFAIL_MAX_TTL = 300
ENTRIES_METRIC_INTERVAL = 60.0
ROUND_ROBIN_SWEEP_INTERVAL = 30.0
_MAX_TTL = 2**32 - 1

_CACHEABLE_RCODES = frozenset(
    {
        dns.rcode.NOERROR,
        dns.rcode.NXDOMAIN,
        dns.rcode.REFUSED,
        dns.rcode.NOTIMP,
        dns.rcode.FORMERR,
    }
)

AnswerShuffleFunc = Callable[[dns.message.Message], None]


@dataclass
class CacheOptions:
    """Options of a cache resolver.

    ``gc_period`` and ``capacity`` configure the default memory backend and
    are ignored when a backend is given. A negative TTL of 0 means 60 seconds.
    ``cache_rcode_max_ttl`` caps how long responses with a given rcode stay.
    """

    gc_period: float = 0
    capacity: int = 0
    negative_ttl: int = 0
    cache_rcode_max_ttl: dict = field(default_factory=dict)
    shuffle_answer_func: Optional[AnswerShuffleFunc] = None
    harden_below_nxdomain: bool = False
    flush_query: str = ""
    prefetch_trigger: int = 0
    prefetch_eligible: int = 0
    backend: Optional[CacheBackend] = None


def _copy_message(message: dns.message.Message) -> dns.message.Message:
    return dns.message.from_wire(message.to_wire())


def _is_truncated(message: dns.message.Message) -> bool:
    return bool(message.flags & dns.flags.TC)


class Cache(Resolver):
    """Answers repeated queries from a cache backend, asking upstream on a miss."""

    def __init__(
        self,
        id: str,
        resolver: Resolver,
        options: Optional[CacheOptions] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.id = id
        self.resolver = resolver
        self.options = options or CacheOptions()
        self.negative_ttl = self.options.negative_ttl or DEFAULT_NEGATIVE_TTL
        self._clock = clock
        self.backend = self.options.backend or MemoryBackend(
            MemoryBackendOptions(
                capacity=self.options.capacity, gc_period=self.options.gc_period
            ),
            clock=clock,
        )
        self._hit = get_var_int("cache", id, "hit")
        self._miss = get_var_int("cache", id, "miss")
        self._entries = get_var_int("cache", id, "entries")
        self._stop = threading.Event()
        self._metrics_thread = threading.Thread(target=self._metrics_loop, daemon=True)
        self._metrics_thread.start()

    def resolve(
        self, query: dns.message.Message, client: ClientInfo
    ) -> Optional[dns.message.Message]:
        if not query.question:
            raise ValueError("no question in query")
        # Multiple questions are not supported by servers in practice; bypass caching.
        if len(query.question) > 1:
            return self.resolver.resolve(query, client)

        question = question_of(query)
        if self.options.flush_query and self.options.flush_query == question.name:
            log.info("%s: flushing cache", self.id)
            self.backend.flush()
            return dns.message.make_response(query)

        hit = self._answer_from_cache(query)
        if hit is not None:
            answer, prefetch_eligible = hit
            log.debug("%s: cache-hit for %s", self.id, question.name)
            self._hit.add(1)
            trigger = self.options.prefetch_trigger
            if prefetch_eligible and trigger > 0:
                lowest = min_ttl(answer)
                if lowest is not None and lowest < trigger:
                    self._prefetch(_copy_message(query), client, lowest)
            return answer

        self._miss.add(1)
        log.debug("%s: cache-miss for %s, forwarding to %s", self.id, question.name, self.resolver)
        answer = self.resolver.resolve(_copy_message(query), client)
        if answer is None:
            return None
        if _is_truncated(answer):
            return answer
        self._store(query, _copy_message(answer))
        return answer

    def _prefetch(self, query: dns.message.Message, client: ClientInfo, lowest: int) -> None:
        def run() -> None:
            log.debug("%s: prefetching %s", self.id, question_of(query).name)
            try:
                fresh = self.resolver.resolve(query, client)
            except Exception as exc:
                log.debug("%s: prefetch failed: %s", self.id, exc)
                return
            if fresh is None or _is_truncated(fresh):
                return
            # An upstream that caches too may return a lower TTL; keep what we have then.
            fresh_min = min_ttl(fresh)
            if fresh_min is None or fresh_min < lowest:
                return
            self._store(query, fresh)

        threading.Thread(target=run, daemon=True).start()

    def _answer_from_cache(
        self, query: dns.message.Message
    ) -> Optional[tuple[dns.message.Message, bool]]:
        hit = self.backend.lookup(query)
        if hit is not None:
            if self.options.shuffle_answer_func is not None:
                self.options.shuffle_answer_func(hit[0])
            return hit

        # RFC 8020: a name below a cached NXDOMAIN does not exist either.
        if self.options.harden_below_nxdomain:
            question = question_of(query)
            fragments = question.name.split(".")
            probe = _copy_message(query)
            for i in range(1, len(fragments) - 1):
                parent = dns.name.from_text(".".join(fragments[i:]))
                probe.question = [dns.rrset.RRset(parent, question.qclass, question.qtype)]
                found = self.backend.lookup(probe)
                if found is not None:
                    if found[0].rcode() == dns.rcode.NXDOMAIN:
                        return nxdomain(query), False
                    break
        return None

    def _store(self, query: dns.message.Message, answer: dns.message.Message) -> None:
        now = self._clock()
        item = CacheAnswer(msg=answer, timestamp=now)
        lowest = min_ttl(answer)
        rcode = answer.rcode()
        if rcode in _CACHEABLE_RCODES:
            if lowest is not None:
                item.expiry = now + lowest
                item.prefetch_eligible = lowest > self.options.prefetch_eligible
            else:
                item.expiry = now + self.negative_ttl
        elif rcode == dns.rcode.SERVFAIL:
            item.expiry = now + min(self.negative_ttl, SERVFAIL_MAX_TTL)
        else:
            return

        limit = self.options.cache_rcode_max_ttl.get(int(rcode))
        if limit is not None:
            item.expiry = min(item.expiry, now + limit)
        self.backend.store(query, item)

    def _metrics_loop(self) -> None:
        while not self._stop.wait(ENTRIES_METRIC_INTERVAL):
            self._entries.set(self.backend.size())

    def close(self) -> None:
        """Stop background work and close the backend."""
        self._stop.set()
        self._metrics_thread.join()
        self.backend.close()

    def __str__(self) -> str:
        return self.id


def min_ttl(message: dns.message.Message) -> Optional[int]:
    """Lowest TTL of all records except OPT, or None if there are none."""
    ttls = [
        rrset.ttl
        for section in (message.answer, message.authority, message.additional)
        for rrset in section
        if rrset.rdtype != dns.rdatatype.OPT and rrset.ttl < _MAX_TTL
    ]
    return min(ttls, default=None)


def _address_rrsets(message: dns.message.Message):
    return [
        (index, rrset)
        for index, rrset in enumerate(message.answer)
        if rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
    ]


def _rebuilt(rrset: dns.rrset.RRset, rdatas) -> dns.rrset.RRset:
    return dns.rrset.from_rdata_list(rrset.name, rrset.ttl, rdatas)


def _record_count(message: dns.message.Message) -> int:
    return sum(len(rrset) for rrset in message.answer)


def answer_shuffle_random(message: dns.message.Message) -> None:
    """Randomly reorder the A/AAAA records of each answer RRset."""
    if _record_count(message) < 2:
        return
    for index, rrset in _address_rrsets(message):
        rdatas = list(rrset)
        random.shuffle(rdatas)
        message.answer[index] = _rebuilt(rrset, rdatas)


@dataclass
class _Rotation:
    reads: int
    expiry: float


class _RoundRobinState:
    """How often each cached answer has been rotated, kept until its TTL runs out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple, _Rotation] = {}
        self._last_sweep = time.time()

    def next_reads(self, key: tuple, message: dns.message.Message) -> Optional[int]:
        now = time.time()
        with self._lock:
            if now - self._last_sweep >= ROUND_ROBIN_SWEEP_INTERVAL:
                self._last_sweep = now
                self._records = {
                    k: v for k, v in self._records.items() if now <= v.expiry
                }
            record = self._records.get(key)
            if record is not None:
                record.reads += 1
                return record.reads
            ttl = min_ttl(message)
            if ttl is None:
                return None
            self._records[key] = _Rotation(reads=0, expiry=now + ttl)
            return 0


_round_robin = _RoundRobinState()


def answer_shuffle_round_robin(message: dns.message.Message) -> None:
    """Rotate the A/AAAA records of each answer RRset by one more on every read."""
    if _record_count(message) < 2 or not message.question:
        return
    reads = _round_robin.next_reads(cache_key(message), message)
    if reads is None:
        return
    for index, rrset in _address_rrsets(message):
        count = len(rrset)
        if count < 2:
            continue
        shift = reads % count + 1
        rdatas = list(rrset)
        message.answer[index] = _rebuilt(rrset, rdatas[-shift:] + rdatas[:-shift])