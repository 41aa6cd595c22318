"""Database of IP networks used to match client or response addresses."""

from __future__ import annotations

import ipaddress
from typing import Optional, Union

from .base import BlocklistLoader, BlocklistMatch, InvalidRuleError, MatchResult

_Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class _NetworkSet:
    """Networks of one address family, grouped by prefix length."""

    def __init__(self) -> None:
        self._by_prefix: dict[int, set[_Network]] = {}

    def add(self, network: _Network) -> None:
        self._by_prefix.setdefault(network.prefixlen, set()).add(network)

    def find(self, ip) -> Optional[str]:
        """The broadest network that contains the address, as text."""
        for prefix in sorted(self._by_prefix):
            candidate = ipaddress.ip_network(f"{ip}/{prefix}", strict=False)
            if candidate in self._by_prefix[prefix]:
                return str(candidate)
        return None


def _normalize(ip):
    if ip is None:
        return None
    if not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        try:
            ip = ipaddress.ip_address(ip)
        except ValueError:
            return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip


class CidrDB:
    """A list of IPv4 and IPv6 networks; an address matches if any contains it."""

    def __init__(self, name: str, loader: BlocklistLoader) -> None:
        self.name = name
        self.loader = loader
        self._ip4 = _NetworkSet()
        self._ip6 = _NetworkSet()
        for rule in loader.load():
            rule = rule.strip()
            if not rule or rule.startswith("#"):
                continue
            if "/" not in rule:
                if "." in rule:
                    rule += "/32"
                elif ":" in rule:
                    rule += "/128"
            try:
                network = ipaddress.ip_network(rule, strict=False)
            except ValueError as exc:
                raise InvalidRuleError(f"invalid CIDR address: {rule}") from exc
            target = self._ip4 if network.version == 4 else self._ip6
            target.add(network)

    def reload(self) -> "CidrDB":
        return CidrDB(self.name, self.loader)

    def match(self, ip) -> MatchResult:
        """Match an address (object or text); ``None`` never matches."""
        address = _normalize(ip)
        rule = None
        if address is not None:
            networks = self._ip4 if address.version == 4 else self._ip6
            rule = networks.find(address)
        return MatchResult(
            matched=rule is not None,
            match=BlocklistMatch(self.name, rule or ""),
        )

    def close(self) -> None:
        """Nothing to release."""

    def __str__(self) -> str:
        return "CIDR-blocklist"