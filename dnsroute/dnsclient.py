"""Plain DNS resolver over UDP or TCP."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Optional

import dns.edns
import dns.message
import dns.query

from .base import ClientInfo, IPAddress, Resolver, get_var_int, get_var_map, query_name, rcode_name

log = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 2.0


def _split_host_port(endpoint: str) -> tuple[str, str]:
    host, sep, port = endpoint.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address '{endpoint}'")
    if host.startswith("["):
        if not host.endswith("]"):
            raise ValueError(f"invalid address '{endpoint}'")
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address '{endpoint}'")
    return host, port


def valid_endpoint(endpoint: str) -> None:
    """Raise ValueError unless the endpoint has the form host:port."""
    host, port = _split_host_port(endpoint)
    if not host:
        raise ValueError(f"missing host in address '{endpoint}'")
    if not port.isdigit() or not 0 <= int(port) <= 65535:
        raise ValueError(f"invalid port in address '{endpoint}'")


def set_udp_size(query: dns.message.Message, size: int) -> dns.message.Message:
    """Set the EDNS0 UDP size of the query; a size of 0 leaves it unchanged."""
    if size == 0:
        return query
    if query.edns < 0:
        query.use_edns(0, payload=size)
    else:
        query.use_edns(query.edns, query.ednsflags, payload=size, options=list(query.options))
    return query


def strip_padding(message: dns.message.Message) -> None:
    """Remove EDNS0 padding options from the message."""
    if message.edns < 0:
        return
    options = [o for o in message.options if o.otype != dns.edns.OptionType.PADDING]
    message.use_edns(message.edns, message.ednsflags, message.payload, options=options)


@dataclass
class DNSClientOptions:
    """Options of a plain DNS client. The timeout is in seconds, 0 meaning the default."""

    local_addr: Optional[IPAddress] = None
    udp_size: int = 0
    query_timeout: float = 0


class DNSClient(Resolver):
    """Sends queries to an upstream server over UDP or TCP."""

    def __init__(
        self, id: str, endpoint: str, network: str, options: Optional[DNSClientOptions] = None
    ) -> None:
        valid_endpoint(endpoint)
        if network not in ("udp", "tcp"):
            raise ValueError(f"unsupported network '{network}'")
        self.id = id
        self.endpoint = endpoint
        self.network = network
        self.options = options or DNSClientOptions()
        self.timeout = self.options.query_timeout or DEFAULT_QUERY_TIMEOUT
        self._query = get_var_int("client", id, "query")
        self._response = get_var_map("client", id, "response")
        self._errors = get_var_map("client", id, "error")

    def _address(self) -> tuple[str, int]:
        host, port = _split_host_port(self.endpoint)
        info = socket.getaddrinfo(host, int(port), proto=socket.IPPROTO_UDP)
        return info[0][4][0], int(port)

    def resolve(self, query: dns.message.Message, client: ClientInfo) -> dns.message.Message:
        query = dns.message.from_wire(query.to_wire())
        log.debug(
            "%s: querying upstream resolver %s over %s for %s",
            self.id, self.endpoint, self.network, query_name(query),
        )
        query = set_udp_size(query, self.options.udp_size)
        strip_padding(query)
        host, port = self._address()
        source = str(self.options.local_addr) if self.options.local_addr else None
        send = dns.query.udp if self.network == "udp" else dns.query.tcp
        self._query.add(1)
        try:
            answer = send(query, host, timeout=self.timeout, port=port, source=source)
        except Exception:
            self._errors.add(self.network, 1)
            raise
        self._response.add(rcode_name(answer), 1)
        return answer

    def __str__(self) -> str:
        return self.id