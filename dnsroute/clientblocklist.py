"""Resolver that refuses queries from clients on an IP blocklist."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import dns.message

from .base import ClientInfo, Resolver, get_var_int, query_name, refused

log = logging.getLogger(__name__)


@dataclass
class ClientBlocklistOptions:
    """Options of a client blocklist; the refresh period is in seconds, 0 disables it."""

    blocklist_db: Any = None
    blocklist_resolver: Optional[Resolver] = None
    blocklist_refresh: float = 0


class ClientBlocklist(Resolver):
    """Matches the client IP against a blocklist.

    Blocked clients get REFUSED, or their query is sent to the blocklist
    resolver if one is set.
    """

    def __init__(self, id: str, resolver: Resolver, options: ClientBlocklistOptions) -> None:
        if options.blocklist_db is None:
            raise ValueError("a blocklist database is required")
        self.id = id
        self.resolver = resolver
        self.options = options
        self._db = options.blocklist_db
        self._lock = threading.Lock()
        self._allowed = get_var_int("router", id, "allow")
        self._blocked = get_var_int("router", id, "deny")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if options.blocklist_refresh > 0:
            self._thread = threading.Thread(
                target=self._refresh_loop, args=(options.blocklist_refresh,), daemon=True
            )
            self._thread.start()

    def resolve(
        self, query: dns.message.Message, client: ClientInfo
    ) -> Optional[dns.message.Message]:
        with self._lock:
            db = self._db
        result = db.match(client.source_ip)
        if result.matched:
            self._blocked.add(1)
            target = self.options.blocklist_resolver
            if target is not None:
                log.debug(
                    "%s: client %s on blocklist %s (rule %s) for %s, forwarding to %s",
                    self.id, client.source_ip, result.match.list, result.match.rule,
                    query_name(query), target,
                )
                return target.resolve(query, client)
            log.debug("%s: blocking client %s", self.id, client.source_ip)
            return refused(query)
        self._allowed.add(1)
        return self.resolver.resolve(query, client)

    def _refresh_loop(self, period: float) -> None:
        while not self._stop.wait(period):
            log.debug("%s: reloading blocklist", self.id)
            with self._lock:
                current = self._db
            try:
                db = current.reload()
            except Exception:
                log.exception("%s: failed to load rules", self.id)
                continue
            with self._lock:
                old, self._db = self._db, db
            old.close()

    def close(self) -> None:
        """Stop the refresh thread."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __str__(self) -> str:
        return self.id