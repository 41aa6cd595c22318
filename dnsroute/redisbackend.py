"""Cache backend storing responses in Redis."""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import dns.edns
import dns.flags
import dns.message
import dns.rdataclass
import dns.rdatatype
import redis

from .memorybackend import CacheAnswer, CacheBackend

log = logging.getLogger(__name__)

REDIS_TIMEOUT = 0.1


@dataclass
class RedisBackendOptions:
    """Connection settings passed to ``redis.Redis`` and a prefix for every key."""

    redis_options: dict = field(default_factory=dict)
    key_prefix: str = ""


class RedisBackend(CacheBackend):
    """Stores cached responses in Redis with the record expiry as key TTL."""

    def __init__(
        self,
        options: Optional[RedisBackendOptions] = None,
        client: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.options = options or RedisBackendOptions()
        self._clock = clock
        if client is None:
            settings = {"socket_timeout": REDIS_TIMEOUT, **self.options.redis_options}
            client = redis.Redis(**settings)
        self.client = client

    def store(self, query: dns.message.Message, item: CacheAnswer) -> None:
        key = self.key_from_query(query)
        value = json.dumps(
            {
                "msg": base64.b64encode(item.msg.to_wire()).decode("ascii"),
                "timestamp": item.timestamp,
                "expiry": item.expiry,
                "prefetch_eligible": item.prefetch_eligible,
            }
        )
        ttl_ms = int((item.expiry - self._clock()) * 1000)
        if ttl_ms <= 0:
            return
        try:
            self.client.set(key, value, px=ttl_ms)
        except redis.RedisError as exc:
            log.error("failed to write to redis: %s", exc)

    def lookup(
        self, query: dns.message.Message
    ) -> Optional[tuple[dns.message.Message, bool]]:
        key = self.key_from_query(query)
        try:
            value = self.client.get(key)
        except redis.RedisError as exc:
            log.error("failed to read from redis: %s", exc)
            return None
        if value is None:
            return None
        try:
            record = json.loads(value)
            answer = dns.message.from_wire(base64.b64decode(record["msg"]))
            timestamp = float(record["timestamp"])
            prefetch_eligible = bool(record["prefetch_eligible"])
        except (ValueError, KeyError, TypeError, dns.exception.DNSException) as exc:
            log.error("failed to unmarshal cache record from redis: %s", exc)
            return None

        answer.id = query.id
        age = max(0, int(self._clock() - timestamp))
        for section in (answer.answer, answer.authority, answer.additional):
            for rrset in section:
                if rrset.rdtype == dns.rdatatype.OPT:
                    continue
                if age >= rrset.ttl:
                    return None
                rrset.ttl -= age
        return answer, prefetch_eligible

    def flush(self) -> None:
        try:
            self.client.delete(self.options.key_prefix + "*")
        except redis.RedisError as exc:
            log.error("failed to delete keys in redis: %s", exc)

    def size(self) -> int:
        try:
            return int(self.client.dbsize())
        except redis.RedisError as exc:
            log.error("failed to run dbsize command on redis: %s", exc)
            return 0

    def close(self) -> None:
        self.client.close()

    def key_from_query(self, query: dns.message.Message) -> str:
        """Key of the form prefix+name:class:type:[do:subnets]."""
        rrset = query.question[0]
        parts = [
            self.options.key_prefix,
            rrset.name.to_text(),
            ":",
            dns.rdataclass.to_text(rrset.rdclass),
            ":",
            dns.rdatatype.to_text(rrset.rdtype),
            ":",
        ]
        if query.edns >= 0:
            parts.append("true" if query.ednsflags & dns.flags.DO else "false")
            parts.append(":")
            parts.extend(
                str(option.address)
                for option in query.options
                if isinstance(option, dns.edns.ECSOption)
            )
        return "".join(parts)