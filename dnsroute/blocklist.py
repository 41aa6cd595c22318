"""Resolver that blocks, spoofs or forwards queries based on blocklists."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.rrset
from dns.rdtypes.IN.A import A
from dns.rdtypes.IN.AAAA import AAAA

from .base import (
    SYNTHETIC_TTL,
    BlocklistDB,
    ClientInfo,
    Resolver,
    get_var_int,
    ptr_response,
    question_of,
)

log = logging.getLogger(__name__)

# Max number of name records to reply with for PTR lookups.
MAX_PTR_RESPONSES = 10

EDETemplate = Callable[[dns.message.Message, dns.message.Message], None]


@dataclass
class BlocklistOptions:
    """Options of a blocklist resolver.

    Refresh periods are in seconds; 0 disables refreshing. The EDE template,
    if given, is called with (answer, query) to add extended errors to
    blocked responses.
    """

    blocklist_db: Optional[BlocklistDB] = None
    blocklist_resolver: Optional[Resolver] = None
    blocklist_refresh: float = 0
    allowlist_db: Optional[BlocklistDB] = None
    allowlist_resolver: Optional[Resolver] = None
    allowlist_refresh: float = 0
    edns0_ede_template: Optional[EDETemplate] = None


class Blocklist(Resolver):
    """Answers NXDOMAIN or a spoofed address for every query on the blocklist.

    Everything else, and anything on the allowlist, is passed on to the
    upstream resolver (or the allowlist resolver if one is set).
    """

    def __init__(self, id: str, resolver: Resolver, options: BlocklistOptions) -> None:
        if options.blocklist_db is None:
            raise ValueError("a blocklist database is required")
        self.id = id
        self.resolver = resolver
        self.options = options
        self._blocklist_db = options.blocklist_db
        self._allowlist_db = options.allowlist_db
        self._lock = threading.Lock()
        self._allowed = get_var_int("router", id, "allow")
        self._blocked = get_var_int("router", id, "deny")
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        if options.blocklist_refresh > 0:
            self._start_refresh("_blocklist_db", "blocklist", options.blocklist_refresh)
        if options.allowlist_db is not None and options.allowlist_refresh > 0:
            self._start_refresh("_allowlist_db", "allowlist", options.allowlist_refresh)

    def resolve(
        self, query: dns.message.Message, client: ClientInfo
    ) -> Optional[dns.message.Message]:
        question = question_of(query)
        with self._lock:
            blocklist_db = self._blocklist_db
            allowlist_db = self._allowlist_db

        if allowlist_db is not None:
            allowed = allowlist_db.match(question)
            if allowed.matched:
                self._allowed.add(1)
                target = self.options.allowlist_resolver or self.resolver
                log.debug(
                    "%s: %s matched allowlist %s rule %s, forwarding to %s",
                    self.id, question.name, allowed.match.list, allowed.match.rule, target,
                )
                return target.resolve(query, client)

        result = blocklist_db.match(question)
        if not result.matched:
            log.debug("%s: forwarding unmodified query %s to %s", self.id, question.name, self.resolver)
            self._allowed.add(1)
            return self.resolver.resolve(query, client)
        self._blocked.add(1)
        rule = result.match.rule if result.match else ""
        list_name = result.match.list if result.match else ""

        if question.qtype == dns.rdatatype.PTR and result.names:
            log.debug("%s: responding with ptr from blocklist %s", self.id, list_name)
            return ptr_response(query, result.names[:MAX_PTR_RESPONSES])

        if self.options.blocklist_resolver is not None:
            log.debug(
                "%s: %s matched blocklist %s rule %s, forwarding to %s",
                self.id, question.name, list_name, rule, self.options.blocklist_resolver,
            )
            return self.options.blocklist_resolver.resolve(query, client)

        answer = dns.message.make_response(query)
        spoof = self._spoof_rrset(question, result.ips)
        if spoof is not None:
            log.debug("%s: spoofing response for %s", self.id, question.name)
            answer.answer.append(spoof)
            return answer

        log.debug("%s: blocking %s (list %s, rule %s)", self.id, question.name, list_name, rule)
        template = self.options.edns0_ede_template
        if template is not None:
            try:
                template(answer, query)
            except Exception:
                log.exception("failed to apply edns0ede template")
        answer.set_rcode(dns.rcode.NXDOMAIN)
        return answer

    @staticmethod
    def _spoof_rrset(question, ips) -> Optional[dns.rrset.RRset]:
        if question.qtype == dns.rdatatype.A:
            family, rdtype = ipaddress.IPv4Address, A
        elif question.qtype == dns.rdatatype.AAAA:
            family, rdtype = ipaddress.IPv6Address, AAAA
        else:
            return None
        addresses = [ip for ip in ips if isinstance(ip, family)]
        if not addresses:
            return None
        rrset = dns.rrset.RRset(
            dns.name.from_text(question.name), question.qclass, question.qtype
        )
        for ip in addresses:
            rrset.add(rdtype(question.qclass, question.qtype, str(ip)), ttl=SYNTHETIC_TTL)
        return rrset

    def _start_refresh(self, attribute: str, label: str, period: float) -> None:
        thread = threading.Thread(
            target=self._refresh_loop, args=(attribute, label, period), daemon=True
        )
        self._threads.append(thread)
        thread.start()

    def _refresh_loop(self, attribute: str, label: str, period: float) -> None:
        while not self._stop.wait(period):
            log.debug("%s: reloading %s", self.id, label)
            with self._lock:
                current = getattr(self, attribute)
            try:
                db = current.reload()
            except Exception:
                log.exception("%s: failed to load rules", self.id)
                continue
            with self._lock:
                setattr(self, attribute, db)

    def close(self) -> None:
        """Stop the refresh threads."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()

    def __str__(self) -> str:
        return self.id