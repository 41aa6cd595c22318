"""DNS-over-HTTPS resolver."""

from __future__ import annotations

import base64
import logging
import re
import ssl
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote

import dns.edns
import dns.message
import httpx

from .base import ClientInfo, IPAddress, Resolver, get_var_int, get_var_map, query_name, rcode_name
from .dnsclient import DEFAULT_QUERY_TIMEOUT

log = logging.getLogger(__name__)

DNS_MESSAGE_TYPE = "application/dns-message"
# RFC 8467: queries are padded to a multiple of 128 bytes.
QUERY_PADDING_BLOCK = 128

_RESERVED = ":/?#[]@!$&'()*+,;="
_VARSPEC = re.compile(r"^([A-Za-z0-9_.%]+)(?::([0-9]{1,4})|(\*))?$")

# operator: (first, separator, named, if-empty, allow reserved)
_OPERATORS = {
    "": ("", ",", False, "", False),
    "+": ("", ",", False, "", True),
    "#": ("#", ",", False, "", True),
    ".": (".", ".", False, "", False),
    "/": ("/", "/", False, "", False),
    ";": (";", ";", True, "", False),
    "?": ("?", "&", True, "=", False),
    "&": ("&", "&", True, "=", False),
}


def _parse_template(template: str) -> list:
    """Split a URI template into literal strings and (operator, variables) expressions."""
    parsed: list = []
    for position, part in enumerate(re.split(r"(\{[^{}]*\})", template)):
        if position % 2 == 0:
            if "{" in part or "}" in part:
                raise ValueError(f"malformed URI template '{template}'")
            if part:
                parsed.append(part)
            continue
        body = part[1:-1]
        operator = body[0] if body and body[0] in _OPERATORS and body[0] else ""
        variables = []
        for spec in body[len(operator):].split(","):
            found = _VARSPEC.match(spec)
            if found is None:
                raise ValueError(f"malformed variable '{spec}' in URI template '{template}'")
            prefix = int(found.group(2)) if found.group(2) else None
            variables.append((found.group(1), prefix))
        parsed.append((operator, variables))
    return parsed


def _encode(value, allow_reserved: bool) -> str:
    return quote(str(value), safe=_RESERVED if allow_reserved else "")


def _expand(parsed: list, values: dict) -> str:
    out = []
    for part in parsed:
        if isinstance(part, str):
            out.append(part)
            continue
        operator, variables = part
        first, separator, named, if_empty, allow_reserved = _OPERATORS[operator]
        items = []
        for name, prefix in variables:
            value = values.get(name)
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                if not value:
                    continue
                encoded = ",".join(_encode(v, allow_reserved) for v in value)
            else:
                text = str(value)
                if prefix is not None:
                    text = text[:prefix]
                encoded = _encode(text, allow_reserved)
            if named:
                items.append(f"{name}={encoded}" if encoded else name + if_empty)
            else:
                items.append(encoded)
        if items:
            out.append(first + separator.join(items))
    return "".join(out)


def expand_template(template: str, values: dict) -> str:
    """Expand an RFC 6570 URI template; undefined variables are left out."""
    return _expand(_parse_template(template), values)


def _pad_query(query: dns.message.Message) -> None:
    """Pad a query that uses EDNS0 to a multiple of the padding block size."""
    if query.edns < 0:
        return
    options = [o for o in query.options if o.otype != dns.edns.OptionType.PADDING]
    query.use_edns(
        query.edns, query.ednsflags, query.payload, options=options, pad=QUERY_PADDING_BLOCK
    )


@dataclass
class DoHClientOptions:
    """Options of a DoH client.

    The method is POST or GET (POST if empty). The bootstrap address is used
    to connect instead of looking up the endpoint's host name. The timeout is
    in seconds, 0 meaning the default.
    """

    method: str = ""
    bootstrap_addr: str = ""
    transport: str = ""
    local_addr: Optional[IPAddress] = None
    tls_context: Optional[ssl.SSLContext] = None
    query_timeout: float = 0
    use_0rtt: bool = False


class DoHClient(Resolver):
    """Sends queries to a DNS-over-HTTPS server."""

    def __init__(
        self,
        id: str,
        endpoint: str,
        options: Optional[DoHClientOptions] = None,
        http_transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        options = options or DoHClientOptions()
        self._template = _parse_template(endpoint)
        if options.transport not in ("tcp", ""):
            if options.transport == "quic":
                raise ValueError("quic transport is not supported")
            raise ValueError(f"unknown protocol: '{options.transport}'")
        method = options.method or "POST"
        if method not in ("POST", "GET"):
            raise ValueError(f"unsupported method '{method}'")
        self.id = id
        self.endpoint = endpoint
        self.options = options
        self.method = method
        self.timeout = options.query_timeout or DEFAULT_QUERY_TIMEOUT
        if http_transport is None:
            verify: Union[bool, ssl.SSLContext] = options.tls_context or True
            http_transport = httpx.HTTPTransport(
                verify=verify,
                local_address=str(options.local_addr) if options.local_addr else None,
            )
        self._client = httpx.Client(transport=http_transport)
        self._query = get_var_int("client", id, "query")
        self._response = get_var_map("client", id, "response")
        self._errors = get_var_map("client", id, "error")

    def resolve(self, query: dns.message.Message, client: ClientInfo) -> dns.message.Message:
        query = dns.message.from_wire(query.to_wire())
        log.debug(
            "%s: querying upstream resolver %s over doh (%s) for %s",
            self.id, self.endpoint, self.method, query_name(query),
        )
        _pad_query(query)
        self._query.add(1)
        if self.method == "POST":
            return self.resolve_post(query)
        return self.resolve_get(query)

    def resolve_post(self, query: dns.message.Message) -> dns.message.Message:
        """Send the query in the body of a POST request."""
        wire = self._pack(query)
        url = self._url({})
        headers = {"accept": DNS_MESSAGE_TYPE, "content-type": DNS_MESSAGE_TYPE}
        return self._send("POST", url, headers, wire, "post")

    def resolve_get(self, query: dns.message.Message) -> dns.message.Message:
        """Send the query base64url-encoded in the 'dns' parameter of a GET request."""
        wire = self._pack(query)
        encoded = base64.urlsafe_b64encode(wire).rstrip(b"=").decode("ascii")
        url = self._url({"dns": encoded})
        return self._send("GET", url, {"accept": DNS_MESSAGE_TYPE}, None, "get")

    def _pack(self, query: dns.message.Message) -> bytes:
        try:
            return query.to_wire()
        except Exception:
            self._errors.add("pack", 1)
            raise

    def _url(self, values: dict) -> str:
        try:
            return _expand(self._template, values)
        except Exception:
            self._errors.add("template", 1)
            raise

    def _send(self, method: str, url: str, headers: dict, content, label: str) -> dns.message.Message:
        extensions = {}
        try:
            target = httpx.URL(url)
            if self.options.bootstrap_addr:
                host = target.host
                headers = dict(headers)
                headers["Host"] = host if target.port is None else f"{host}:{target.port}"
                extensions["sni_hostname"] = host
                target = target.copy_with(host=self.options.bootstrap_addr)
            request = self._client.build_request(
                method,
                target,
                headers=headers,
                content=content,
                timeout=httpx.Timeout(self.timeout),
                extensions=extensions,
            )
        except Exception:
            self._errors.add("http", 1)
            raise
        try:
            response = self._client.send(request)
        except httpx.HTTPError:
            self._errors.add(label, 1)
            raise
        try:
            return self._response_from_http(response)
        finally:
            response.close()

    def _response_from_http(self, response: httpx.Response) -> dns.message.Message:
        if not 200 <= response.status_code <= 299:
            self._errors.add(f"http{response.status_code}", 1)
            raise httpx.HTTPStatusError(
                f"unexpected status code {response.status_code}",
                request=response.request,
                response=response,
            )
        try:
            body = response.read()
        except httpx.HTTPError:
            self._errors.add("read", 1)
            raise
        try:
            answer = dns.message.from_wire(body)
        except Exception:
            self._errors.add("unpack", 1)
            raise
        self._response.add(rcode_name(answer), 1)
        return answer

    def close(self) -> None:
        """Close the HTTP connections."""
        self._client.close()

    def __str__(self) -> str:
        return self.id