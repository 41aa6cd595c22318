"""Cache backends and the in-memory LRU backend."""

from __future__ import annotations

import base64
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

import dns.edns
import dns.flags
import dns.message
import dns.rdatatype

from .base import question_of

log = logging.getLogger(__name__)

DEFAULT_GC_PERIOD = 60.0

Clock = Callable[[], float]


@dataclass
class CacheAnswer:
    """A cached response with its store time and expiry (seconds since the epoch)."""

    msg: dns.message.Message
    timestamp: float
    expiry: float = 0.0
    prefetch_eligible: bool = False


class CacheBackend(ABC):
    """Storage for cached responses."""

    @abstractmethod
    def store(self, query: dns.message.Message, item: CacheAnswer) -> None:
        """Store the answer to a query."""

    @abstractmethod
    def lookup(
        self, query: dns.message.Message
    ) -> Optional[tuple[dns.message.Message, bool]]:
        """Return (answer with adjusted TTLs, prefetch eligible), or None on a miss."""

    @abstractmethod
    def size(self) -> int:
        """Number of cached items."""

    @abstractmethod
    def flush(self) -> None:
        """Remove all cached items."""

    @abstractmethod
    def close(self) -> None:
        """Release the backend's resources."""


def cache_key(query: dns.message.Message) -> tuple:
    """Key identifying a query in the cache: name, class, type, DO flag and ECS subnet."""
    question = question_of(query)
    do_flag = None
    subnets: tuple[str, ...] = ()
    if query.edns >= 0:
        do_flag = bool(query.ednsflags & dns.flags.DO)
        subnets = tuple(
            str(option.address)
            for option in query.options
            if isinstance(option, dns.edns.ECSOption)
        )
    return (question.name.lower(), question.qclass, question.qtype, do_flag, subnets)


def _copy_message(message: dns.message.Message) -> dns.message.Message:
    return dns.message.from_wire(message.to_wire())


def _age_records(answer: dns.message.Message, age: int) -> bool:
    """Subtract the age from every record TTL; False if any record has expired."""
    for section in (answer.answer, answer.authority, answer.additional):
        for rrset in section:
            if rrset.rdtype == dns.rdatatype.OPT:
                continue
            if age >= rrset.ttl:
                return False
            rrset.ttl -= age
    return True


class _Entry(NamedTuple):
    query: dns.message.Message
    item: CacheAnswer


@dataclass
class MemoryBackendOptions:
    """Options of the memory backend.

    A capacity of 0 means unlimited. Periods are in seconds; a GC period of 0
    means one minute, a save interval of 0 writes the file only on close.
    """

    capacity: int = 0
    gc_period: float = 0
    filename: str = ""
    save_interval: float = 0


class MemoryBackend(CacheBackend):
    """Keeps responses in memory, dropping the least recently used beyond capacity."""

    def __init__(
        self, options: Optional[MemoryBackendOptions] = None, clock: Clock = time.time
    ) -> None:
        self.options = options or MemoryBackendOptions()
        self._clock = clock
        self._entries: "OrderedDict[tuple, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        if self.options.filename:
            self._load_from_file(self.options.filename)
        gc_period = self.options.gc_period or DEFAULT_GC_PERIOD
        self._start(self._gc_loop, gc_period)
        if self.options.filename and self.options.save_interval > 0:
            self._start(self._save_loop, self.options.save_interval)

    def _start(self, target, period: float) -> None:
        thread = threading.Thread(target=target, args=(period,), daemon=True)
        self._threads.append(thread)
        thread.start()

    def _insert(self, key: tuple, entry: _Entry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        capacity = self.options.capacity
        while capacity > 0 and len(self._entries) > capacity:
            self._entries.popitem(last=False)

    def store(self, query: dns.message.Message, item: CacheAnswer) -> None:
        key = cache_key(query)
        with self._lock:
            self._insert(key, _Entry(_copy_message(query), item))

    def lookup(
        self, query: dns.message.Message
    ) -> Optional[tuple[dns.message.Message, bool]]:
        key = cache_key(query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            item = entry.item
            answer = _copy_message(item.msg)

        now = self._clock()
        if now > item.expiry:
            self.evict(query)
            return None

        answer.id = query.id
        age = max(0, int(now - item.timestamp))
        if not _age_records(answer, age):
            self.evict(query)
            return None
        return answer, item.prefetch_eligible

    def evict(self, *args: dns.message.Message) -> None:
        """Remove the entries of the given queries."""
        with self._lock:
            for query in args:
                self._entries.pop(cache_key(query), None)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()

    def collect_garbage(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.item.expiry]
            for key in expired:
                del self._entries[key]
            total = len(self._entries)
        log.debug("cache garbage collection: total=%d removed=%d", total, len(expired))
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        """Stop background work and write the cache file if one is configured."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        if self.options.filename:
            self._write_to_file(self.options.filename)

    def _gc_loop(self, period: float) -> None:
        while not self._stop.wait(period):
            self.collect_garbage()

    def _save_loop(self, period: float) -> None:
        while not self._stop.wait(period):
            try:
                self._write_to_file(self.options.filename)
            except OSError:
                pass

    def _write_to_file(self, filename: str) -> None:
        log.info("writing cache file %s", filename)
        with self._lock:
            records = [
                {
                    "query": base64.b64encode(entry.query.to_wire()).decode("ascii"),
                    "answer": base64.b64encode(entry.item.msg.to_wire()).decode("ascii"),
                    "timestamp": entry.item.timestamp,
                    "expiry": entry.item.expiry,
                    "prefetch_eligible": entry.item.prefetch_eligible,
                }
                for entry in self._entries.values()
            ]
        try:
            with open(filename, "w", encoding="utf-8") as f:
                json.dump({"entries": records}, f)
        except OSError as exc:
            log.warning("failed to persist cache to disk: %s", exc)
            raise

    def _load_from_file(self, filename: str) -> None:
        log.info("reading cache file %s", filename)
        try:
            with open(filename, encoding="utf-8") as f:
                data = json.load(f)
            entries = []
            for record in data["entries"]:
                query = dns.message.from_wire(base64.b64decode(record["query"]))
                item = CacheAnswer(
                    msg=dns.message.from_wire(base64.b64decode(record["answer"])),
                    timestamp=float(record["timestamp"]),
                    expiry=float(record["expiry"]),
                    prefetch_eligible=bool(record["prefetch_eligible"]),
                )
                entries.append((cache_key(query), _Entry(query, item)))
        except OSError as exc:
            log.warning("failed to open cache file %s: %s", filename, exc)
            return
        except (ValueError, KeyError, TypeError, dns.exception.DNSException) as exc:
            log.warning("failed to read cache from disk: %s", exc)
            return
        with self._lock:
            for key, entry in entries:
                self._insert(key, entry)