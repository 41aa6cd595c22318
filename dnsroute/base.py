"""Core types shared by resolvers, blocklists and listeners.

Resolvers answer DNS queries, usually by asking an upstream server. Groups and
routers are resolvers too and wrap other resolvers. Listeners receive queries
from clients and hand each one to a single resolver. A resolver that returns
``None`` asks the listener to drop the query.
"""

from __future__ import annotations

import ipaddress
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset
from dns.rdtypes.ANY.PTR import PTR

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# TTL of records synthesized from blocklist entries.
SYNTHETIC_TTL = 3600


@dataclass(frozen=True)
class ClientInfo:
    """Information about the client that sent a query."""

    source_ip: Optional[IPAddress] = None
    doh_path: str = ""
    tls_server_name: str = ""
    listener: str = ""


@dataclass(frozen=True)
class BlocklistMatch:
    """Which list and which rule of it matched a query."""

    list: str
    rule: str


@dataclass
class MatchResult:
    """Outcome of matching a question against a blocklist database.

    ``ips`` are addresses to answer with (``None`` entries mean "block"),
    ``names`` are used to answer PTR queries.
    """

    matched: bool = False
    match: Optional[BlocklistMatch] = None
    ips: list = field(default_factory=list)
    names: list = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.matched


@dataclass(frozen=True)
class Question:
    """A single DNS question."""

    name: str
    qtype: int
    qclass: int = dns.rdataclass.IN


class InvalidRuleError(ValueError):
    """A blocklist rule could not be parsed."""


class Resolver(ABC):
    """Anything that answers DNS queries."""

    id: str = ""

    @abstractmethod
    def resolve(
        self, query: dns.message.Message, client: ClientInfo
    ) -> Optional[dns.message.Message]:
        """Answer a query; ``None`` means the query is to be dropped."""

    def __str__(self) -> str:
        return self.id


class BlocklistLoader(ABC):
    """Source of blocklist rules."""

    @abstractmethod
    def load(self) -> list[str]:
        """Return the current list of rules."""


class BlocklistDB(ABC):
    """A set of rules that questions are matched against."""

    @abstractmethod
    def reload(self) -> "BlocklistDB":
        """Return a new database of the same kind with freshly loaded rules."""

    @abstractmethod
    def match(self, question: Question) -> MatchResult:
        """Match a question against the rules."""


class Counter:
    """A thread-safe integer metric."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, delta: int) -> None:
        with self._lock:
            self._value += delta

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class CounterMap:
    """A thread-safe map of named integer metrics."""

    def __init__(self) -> None:
        self._values: dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, key: str, delta: int) -> None:
        with self._lock:
            self._values[key] = self._values.get(key, 0) + delta

    @property
    def value(self) -> dict[str, int]:
        with self._lock:
            return dict(self._values)


_registry: dict[str, Union[Counter, CounterMap]] = {}
_registry_lock = threading.Lock()


def _register(kind, parts: tuple[str, ...]):
    key = ".".join(("routedns",) + parts)
    with _registry_lock:
        metric = _registry.get(key)
        if metric is None:
            metric = kind()
            _registry[key] = metric
        elif not isinstance(metric, kind):
            raise TypeError(f"metric {key!r} is already registered with a different type")
    return metric


def get_var_int(*args: str) -> Counter:
    """Return the counter registered under the given name parts, creating it if needed."""
    return _register(Counter, args)


def get_var_map(*args: str) -> CounterMap:
    """Return the counter map registered under the given name parts, creating it if needed."""
    return _register(CounterMap, args)


def metrics_snapshot() -> dict:
    """Current values of all registered metrics."""
    with _registry_lock:
        metrics = dict(_registry)
    return {key: metric.value for key, metric in metrics.items()}


def question_of(query: dns.message.Message) -> Question:
    """The first question of a message."""
    if not query.question:
        raise ValueError("no question in query")
    rrset = query.question[0]
    return Question(rrset.name.to_text(), int(rrset.rdtype), int(rrset.rdclass))


def query_name(query: dns.message.Message) -> str:
    """The name of the first question, or an empty string."""
    if not query.question:
        return ""
    return query.question[0].name.to_text()


def rcode_name(message: dns.message.Message) -> str:
    """Textual response code of a message, e.g. NOERROR."""
    return dns.rcode.to_text(message.rcode())


def _reply_with_rcode(query: dns.message.Message, rcode: int) -> dns.message.Message:
    answer = dns.message.make_response(query)
    answer.set_rcode(rcode)
    return answer


def nxdomain(query: dns.message.Message) -> dns.message.Message:
    """An NXDOMAIN reply to the query."""
    return _reply_with_rcode(query, dns.rcode.NXDOMAIN)


def refused(query: dns.message.Message) -> dns.message.Message:
    """A REFUSED reply to the query."""
    return _reply_with_rcode(query, dns.rcode.REFUSED)


def servfail(query: dns.message.Message) -> dns.message.Message:
    """A SERVFAIL reply to the query."""
    return _reply_with_rcode(query, dns.rcode.SERVFAIL)


def ptr_response(query: dns.message.Message, names) -> dns.message.Message:
    """A reply answering the PTR question of the query with the given names."""
    question = question_of(query)
    answer = dns.message.make_response(query)
    rrset = dns.rrset.RRset(
        dns.name.from_text(question.name), question.qclass, dns.rdatatype.PTR
    )
    for name in names:
        rrset.add(
            PTR(question.qclass, dns.rdatatype.PTR, dns.name.from_text(name)),
            ttl=SYNTHETIC_TTL,
        )
    answer.answer.append(rrset)
    return answer