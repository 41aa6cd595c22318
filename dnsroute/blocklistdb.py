"""Blocklist databases matching DNS questions by domain, hosts entry or regexp."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field

import dns.exception
import dns.rdatatype
import dns.reversename

from .base import (
    BlocklistDB,
    BlocklistLoader,
    BlocklistMatch,
    InvalidRuleError,
    MatchResult,
    Question,
)

# Max number of A/AAAA records kept per name in a hosts blocklist.
MAX_HOSTS_RESPONSES = 10


class DomainDB(BlocklistDB):
    """Domain rules, possibly with wildcards.

    ``domain.com`` matches only domain.com, ``.domain.com`` matches domain.com
    and all its subdomains, ``*.domain.com`` matches subdomains only.
    """

    def __init__(self, name: str, loader: BlocklistLoader) -> None:
        self.name = name
        self.loader = loader
        self._root: dict = {}
        for rule in loader.load():
            rule = rule.strip().removesuffix(".")
            parts = rule.split(".")
            node = self._root
            last = len(parts) - 1
            for depth, part in enumerate(reversed(parts)):
                is_first_label = depth == last
                if "*" in part and (not is_first_label or len(part) != 1):
                    raise InvalidRuleError(f"invalid blocklist item: '{part}'")
                node = node.setdefault(part, {})

    def reload(self) -> "DomainDB":
        return DomainDB(self.name, self.loader)

    def match(self, question: Question) -> MatchResult:
        parts = question.name.removesuffix(".").split(".")
        matched: list[str] = []
        node = self._root
        last = len(parts) - 1
        for depth, part in enumerate(reversed(parts)):
            sub = node.get(part)
            if sub is None:
                return MatchResult()
            matched.append(part)
            if "" in sub:
                return self._result(".", matched, True)
            if "*" in sub and depth < last:
                return self._result("*.", matched, True)
            node = sub
        return self._result("", matched, not node)

    def _result(self, prefix: str, matched: list[str], ok: bool) -> MatchResult:
        rule = prefix + ".".join(reversed(matched))
        return MatchResult(matched=ok, match=BlocklistMatch(self.name, rule))

    def __str__(self) -> str:
        return "Domain"


@dataclass
class _IPRecords:
    ip4: list = field(default_factory=list)
    ip6: list = field(default_factory=list)


def _parse_host_ip(text: str):
    """Parse an address the way a hosts file uses it: (address or None, is IPv4)."""
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None, False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    is_ip4 = isinstance(ip, ipaddress.IPv4Address)
    if ip.is_unspecified:
        ip = None
    return ip, is_ip4


class HostsDB(BlocklistDB):
    """Hosts-file entries used to spoof or block queries.

    An unspecified address (0.0.0.0 or ::) blocks the name. IPv4 and IPv6 can
    be spoofed independently, but a name listed for one family still matches
    queries for the other.
    """

    def __init__(self, name: str, loader: BlocklistLoader) -> None:
        self.name = name
        self.loader = loader
        self._filters: dict[str, _IPRecords] = {}
        self._ptr_map: dict[str, list[str]] = {}
        for rule in loader.load():
            fields = rule.split()
            if not fields:
                continue
            ip_string, names = fields[0], fields[1:]
            if ip_string.startswith("#") or not names:
                continue
            ip, is_ip4 = _parse_host_ip(ip_string)
            for host in names:
                records = self._filters.setdefault(host.removesuffix("."), _IPRecords())
                target = records.ip4 if is_ip4 else records.ip6
                if len(target) > MAX_HOSTS_RESPONSES:
                    continue
                target.append(ip)
            try:
                reverse = dns.reversename.from_address(ip_string).to_text()
            except (ValueError, dns.exception.DNSException):
                continue
            self._ptr_map.setdefault(reverse, []).extend(names)

    def reload(self) -> "HostsDB":
        return HostsDB(self.name, self.loader)

    def match(self, question: Question) -> MatchResult:
        if question.qtype == dns.rdatatype.PTR:
            names = self._ptr_map.get(question.name)
            rule = names[0] if names else ""
            return MatchResult(
                matched=names is not None,
                match=BlocklistMatch(self.name, rule),
                names=list(names or []),
            )
        name = question.name.removesuffix(".")
        records = self._filters.get(name)
        ips = []
        if records is not None:
            ips = records.ip4 if question.qtype == dns.rdatatype.A else records.ip6
        return MatchResult(
            matched=records is not None,
            match=BlocklistMatch(self.name, name),
            ips=list(ips),
        )

    def __str__(self) -> str:
        return "Hosts"


class RegexpDB(BlocklistDB):
    """Regular expressions searched in the query name."""

    def __init__(self, name: str, loader: BlocklistLoader) -> None:
        self.name = name
        self.loader = loader
        self._rules: list[re.Pattern] = []
        for rule in loader.load():
            rule = rule.strip()
            if not rule or rule.startswith("#"):
                continue
            try:
                self._rules.append(re.compile(rule))
            except re.error as exc:
                raise InvalidRuleError(f"invalid regular expression '{rule}': {exc}") from exc

    def reload(self) -> "RegexpDB":
        return RegexpDB(self.name, self.loader)

    def match(self, question: Question) -> MatchResult:
        for rule in self._rules:
            if rule.search(question.name):
                return MatchResult(matched=True, match=BlocklistMatch(self.name, rule.pattern))
        return MatchResult()

    def __str__(self) -> str:
        return "Regexp"


class MultiDB(BlocklistDB):
    """Several blocklist databases queried in order; the first match wins."""

    def __init__(self, *dbs: BlocklistDB) -> None:
        self.dbs = list(dbs)

    def reload(self) -> "MultiDB":
        return MultiDB(*(db.reload() for db in self.dbs))

    def match(self, question: Question) -> MatchResult:
        for db in self.dbs:
            result = db.match(question)
            if result.matched:
                return result
        return MatchResult()

    def __str__(self) -> str:
        return "Multi-Blocklist"