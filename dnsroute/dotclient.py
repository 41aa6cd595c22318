"""DNS-over-TLS resolver."""

from __future__ import annotations

import logging
import socket
import ssl
from dataclasses import dataclass
from typing import Optional

import dns.message
import dns.query

from .base import ClientInfo, IPAddress, Resolver, get_var_int, get_var_map, query_name, rcode_name
from .dnsclient import DEFAULT_QUERY_TIMEOUT, _split_host_port, valid_endpoint
from .dohclient import _pad_query

log = logging.getLogger(__name__)


def _join_host_port(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


@dataclass
class DoTClientOptions:
    """Options of a DoT client.

    The bootstrap address is connected to instead of the endpoint's host,
    whose name is still used for TLS. The timeout is in seconds, 0 meaning
    the default.
    """

    bootstrap_addr: str = ""
    local_addr: Optional[IPAddress] = None
    tls_context: Optional[ssl.SSLContext] = None
    query_timeout: float = 0


class DoTClient(Resolver):
    """Sends queries to a DNS-over-TLS server."""

    def __init__(self, id: str, endpoint: str, options: Optional[DoTClientOptions] = None) -> None:
        valid_endpoint(endpoint)
        self.options = options or DoTClientOptions()
        host, port = _split_host_port(endpoint)
        self.server_hostname = host
        if self.options.bootstrap_addr:
            endpoint = _join_host_port(self.options.bootstrap_addr, port)
        self.id = id
        self.endpoint = endpoint
        self.timeout = self.options.query_timeout or DEFAULT_QUERY_TIMEOUT
        self._query = get_var_int("client", id, "query")
        self._response = get_var_map("client", id, "response")
        self._errors = get_var_map("client", id, "error")

    def _address(self) -> tuple[str, int]:
        host, port = _split_host_port(self.endpoint)
        info = socket.getaddrinfo(host, int(port), proto=socket.IPPROTO_TCP)
        return info[0][4][0], int(port)

    def resolve(self, query: dns.message.Message, client: ClientInfo) -> dns.message.Message:
        query = dns.message.from_wire(query.to_wire())
        log.debug(
            "%s: querying upstream resolver %s over dot for %s",
            self.id, self.endpoint, query_name(query),
        )
        _pad_query(query)
        host, port = self._address()
        source = str(self.options.local_addr) if self.options.local_addr else None
        self._query.add(1)
        try:
            answer = dns.query.tls(
                query,
                host,
                timeout=self.timeout,
                port=port,
                source=source,
                ssl_context=self.options.tls_context,
                server_hostname=self.server_hostname,
            )
        except Exception:
            self._errors.add("tls", 1)
            raise
        self._response.add(rcode_name(answer), 1)
        return answer

    def __str__(self) -> str:
        return self.id