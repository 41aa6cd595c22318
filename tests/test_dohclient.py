import base64

import dns.edns
import dns.exception
import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset
import httpx
import pytest

from dnsroute.base import ClientInfo, metrics_snapshot
from dnsroute.dohclient import DoHClient, DoHClientOptions, expand_template


def _answer_for(query):
    response = dns.message.make_response(query)
    response.answer.append(
        dns.rrset.from_text(query.question[0].name, 300, "IN", "A", "192.0.2.1")
    )
    return response


class _Recorder:
    def __init__(self, status=200, body=None):
        self.requests = []
        self.status = status
        self.body = body

    def __call__(self, request):
        self.requests.append(request)
        if self.body is not None:
            return httpx.Response(self.status, content=self.body)
        if request.method == "POST":
            query = dns.message.from_wire(request.content)
        else:
            encoded = request.url.params["dns"]
            padded = encoded + "=" * (-len(encoded) % 4)
            query = dns.message.from_wire(base64.urlsafe_b64decode(padded))
        return httpx.Response(self.status, content=_answer_for(query).to_wire())


def _client(id, endpoint, recorder, **options):
    return DoHClient(
        id, endpoint, DoHClientOptions(**options), http_transport=httpx.MockTransport(recorder)
    )


def _query(name="cloudflare.com."):
    return dns.message.make_query(name, "A")


@pytest.mark.parametrize(
    "template, values, expected",
    [
        ("https://1.1.1.1/dns-query{?dns}", {}, "https://1.1.1.1/dns-query"),
        ("https://1.1.1.1/dns-query{?dns}", {"dns": "ab-_c"}, "https://1.1.1.1/dns-query?dns=ab-_c"),
        ("https://h/q{?a,b}", {"a": "1", "b": "2"}, "https://h/q?a=1&b=2"),
        ("https://h/q?x=1{&dns}", {"dns": "z"}, "https://h/q?x=1&dns=z"),
        ("https://h{+path}", {"path": "/a/b"}, "https://h/a/b"),
        ("https://h/{name}", {"name": "a b"}, "https://h/a%20b"),
        ("https://h/dns-query", {"dns": "unused"}, "https://h/dns-query"),
    ],
)
def test_expand_template(template, values, expected):
    assert expand_template(template, values) == expected


@pytest.mark.parametrize("template", ["https://h/{dns", "https://h/dns}", "https://h/{a b}"])
def test_expand_template_malformed(template):
    with pytest.raises(ValueError):
        expand_template(template, {})


def test_default_method_is_post():
    recorder = _Recorder()
    client = _client("doh-default", "https://doh.example.com/dns-query{?dns}", recorder)
    assert client.method == "POST"
    client.resolve(_query(), ClientInfo())
    assert recorder.requests[0].method == "POST"


def test_invalid_method():
    with pytest.raises(ValueError, match="unsupported method"):
        DoHClient("doh-bad", "https://doh.example.com/dns-query", DoHClientOptions(method="PUT"))


def test_unknown_transport():
    with pytest.raises(ValueError, match="unknown protocol"):
        DoHClient("doh-bad", "https://doh.example.com/dns-query", DoHClientOptions(transport="sctp"))


def test_invalid_template():
    with pytest.raises(ValueError):
        DoHClient("doh-bad", "https://doh.example.com/{dns", DoHClientOptions())


def test_resolve_post():
    recorder = _Recorder()
    client = _client("doh-post", "https://doh.example.com/dns-query{?dns}", recorder, method="POST")
    answer = client.resolve(_query(), ClientInfo())
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://doh.example.com/dns-query"
    assert request.headers["content-type"] == "application/dns-message"
    assert request.headers["accept"] == "application/dns-message"
    sent = dns.message.from_wire(request.content)
    assert sent.question[0].name.to_text() == "cloudflare.com."
    assert answer.answer[0].rdtype == dns.rdatatype.A
    assert answer.answer[0][0].address == "192.0.2.1"


def test_resolve_get():
    recorder = _Recorder()
    client = _client("doh-get", "https://doh.example.com/dns-query{?dns}", recorder, method="GET")
    query = _query()
    answer = client.resolve(query, ClientInfo())
    request = recorder.requests[0]
    assert request.method == "GET"
    encoded = request.url.params["dns"]
    assert "=" not in encoded
    assert "accept" in request.headers
    assert answer.id == query.id
    assert answer.answer[0][0].address == "192.0.2.1"


def test_unexpected_status():
    recorder = _Recorder(status=500, body=b"")
    client = _client("doh-500", "https://doh.example.com/dns-query", recorder)
    with pytest.raises(httpx.HTTPStatusError, match="unexpected status code 500"):
        client.resolve(_query(), ClientInfo())
    assert metrics_snapshot()["routedns.client.doh-500.error"]["http500"] == 1


def test_invalid_response_body():
    recorder = _Recorder(body=b"\x01\x02")
    client = _client("doh-garbage", "https://doh.example.com/dns-query", recorder)
    with pytest.raises(dns.exception.DNSException):
        client.resolve(_query(), ClientInfo())
    assert metrics_snapshot()["routedns.client.doh-garbage.error"]["unpack"] == 1


def test_query_is_padded_and_original_unchanged():
    recorder = _Recorder()
    client = _client("doh-pad", "https://doh.example.com/dns-query", recorder)
    query = dns.message.make_query("example.com.", "A", use_edns=0)
    original = query.to_wire()
    client.resolve(query, ClientInfo())
    body = recorder.requests[0].content
    assert len(body) % 128 == 0
    sent = dns.message.from_wire(body)
    assert any(o.otype == dns.edns.OptionType.PADDING for o in sent.options)
    assert query.to_wire() == original


def test_bootstrap_address():
    recorder = _Recorder()
    client = _client(
        "doh-boot", "https://doh.example.com/dns-query", recorder, bootstrap_addr="192.0.2.10"
    )
    client.resolve(_query(), ClientInfo())
    request = recorder.requests[0]
    assert request.url.host == "192.0.2.10"
    assert request.headers["host"] == "doh.example.com"
    assert request.extensions["sni_hostname"] == "doh.example.com"


def test_metrics_and_name():
    recorder = _Recorder()
    client = _client("doh-metrics", "https://doh.example.com/dns-query", recorder)
    client.resolve(_query(), ClientInfo())
    client.resolve(_query(), ClientInfo())
    snapshot = metrics_snapshot()
    assert snapshot["routedns.client.doh-metrics.query"] == 2
    assert snapshot["routedns.client.doh-metrics.response"]["NOERROR"] == 2
    assert str(client) == "doh-metrics"