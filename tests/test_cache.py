import threading

import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from dnsroute.base import ClientInfo, Resolver
from dnsroute.cache import (
    Cache,
    CacheOptions,
    answer_shuffle_random,
    answer_shuffle_round_robin,
    min_ttl,
)

START = 1_000_000.0


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


class CountingResolver(Resolver):
    def __init__(self, func=None):
        self.id = "test-resolver"
        self.func = func or (lambda q, ci: dns.message.make_response(q))
        self._hits = 0
        self._lock = threading.Lock()
        self.called = threading.Event()

    def resolve(self, query, client):
        with self._lock:
            self._hits += 1
        self.called.set()
        return self.func(query, client)

    def hit_count(self):
        with self._lock:
            return self._hits


def a_reply(ttl):
    def func(q, ci):
        a = dns.message.make_response(q)
        a.answer.append(dns.rrset.from_text(q.question[0].name, ttl, "IN", "A", "127.0.0.1"))
        return a

    return func


def rcode_reply(rcode):
    def func(q, ci):
        a = dns.message.make_response(q)
        a.set_rcode(rcode)
        return a

    return func


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_cache(clock):
    caches = []

    def factory(resolver, options=None):
        cache = Cache("test-cache", resolver, options or CacheOptions(), clock=clock)
        caches.append(cache)
        return cache

    yield factory
    for cache in caches:
        cache.close()


CI = ClientInfo()


def test_cache(make_cache, clock):
    answer_ttl = {"value": 3600}
    r = CountingResolver(lambda q, ci: a_reply(answer_ttl["value"])(q, ci))
    c = make_cache(r, CacheOptions(gc_period=60))

    q = dns.message.make_query("example.com.", "A")
    a = c.resolve(q, CI)
    assert r.hit_count() == 1
    assert a.answer[0].ttl == 3600

    clock.now += 1

    a = c.resolve(q, CI)
    assert r.hit_count() == 1
    assert a.answer[0].ttl < 3600

    answer_ttl["value"] = 1
    q = dns.message.make_query("example2.com.", "A")
    a = c.resolve(q, CI)
    assert r.hit_count() == 2
    assert a.answer[0].ttl == 1

    clock.now += 1

    q = dns.message.make_query("example2.com.", "A")
    c.resolve(q, CI)
    assert r.hit_count() == 3


def test_cache_nxdomain(make_cache):
    r = CountingResolver(rcode_reply(dns.rcode.NXDOMAIN))
    c = make_cache(r, CacheOptions(gc_period=60))
    q = dns.message.make_query("example.com.", "A")
    c.resolve(q, CI)
    assert r.hit_count() == 1
    a = c.resolve(q, CI)
    assert r.hit_count() == 1
    assert a.rcode() == dns.rcode.NXDOMAIN


def test_cache_harden_below_nxdomain(make_cache):
    r = CountingResolver(rcode_reply(dns.rcode.NXDOMAIN))
    c = make_cache(r, CacheOptions(gc_period=60, harden_below_nxdomain=True))
    c.resolve(dns.message.make_query("example.com.", "A"), CI)
    assert r.hit_count() == 1

    a = c.resolve(dns.message.make_query("not.exist.example.com.", "A"), CI)
    assert r.hit_count() == 1
    assert a.rcode() == dns.rcode.NXDOMAIN


def build_round_robin_message():
    q = dns.message.make_query("round-robin.example.", "A")
    msg = dns.message.make_response(q)
    msg.answer.append(dns.rrset.from_text("test.example.", 0, "IN", "CNAME", "test.example."))
    msg.answer.append(dns.rrset.from_text("test.example.", 0, "IN", "A", "0.0.0.1", "0.0.0.2"))
    return msg


def addresses(rrset):
    return [rd.address for rd in rrset]


def test_round_robin_shuffle():
    msg = build_round_robin_message()

    msg1 = dns.message.from_wire(msg.to_wire())
    answer_shuffle_round_robin(msg1)

    assert msg.answer[0].rdtype == dns.rdatatype.CNAME
    assert msg.answer[1].rdtype == dns.rdatatype.A
    assert addresses(msg.answer[1]) == ["0.0.0.1", "0.0.0.2"]
    assert msg1.answer[0].rdtype == dns.rdatatype.CNAME
    assert addresses(msg1.answer[1]) == ["0.0.0.2", "0.0.0.1"]

    msg2 = dns.message.from_wire(msg.to_wire())
    answer_shuffle_round_robin(msg2)
    assert addresses(msg2.answer[1]) == ["0.0.0.1", "0.0.0.2"]


def test_random_shuffle_keeps_records():
    msg = build_round_robin_message()
    answer_shuffle_random(msg)
    assert msg.answer[0].rdtype == dns.rdatatype.CNAME
    assert sorted(addresses(msg.answer[1])) == ["0.0.0.1", "0.0.0.2"]


def test_cache_no_truncated(make_cache):
    def truncated(q, ci):
        a = dns.message.make_response(q)
        a.flags |= dns.flags.TC
        return a

    r = CountingResolver(truncated)
    c = make_cache(r)
    q = dns.message.make_query("example.com.", "A")
    c.resolve(q, CI)
    assert r.hit_count() == 1
    c.resolve(q, CI)
    assert r.hit_count() == 2


def test_servfail_capped(make_cache, clock):
    r = CountingResolver(rcode_reply(dns.rcode.SERVFAIL))
    c = make_cache(r, CacheOptions(negative_ttl=600))
    q = dns.message.make_query("example.com.", "A")
    c.resolve(q, CI)
    clock.now += 299
    c.resolve(q, CI)
    assert r.hit_count() == 1
    clock.now += 2
    c.resolve(q, CI)
    assert r.hit_count() == 2


def test_rcode_max_ttl(make_cache, clock):
    r = CountingResolver(rcode_reply(dns.rcode.NXDOMAIN))
    c = make_cache(r, CacheOptions(cache_rcode_max_ttl={3: 10}))
    q = dns.message.make_query("example.com.", "A")
    c.resolve(q, CI)
    clock.now += 9
    c.resolve(q, CI)
    assert r.hit_count() == 1
    clock.now += 2
    c.resolve(q, CI)
    assert r.hit_count() == 2


def test_flush_query(make_cache):
    r = CountingResolver(a_reply(3600))
    c = make_cache(r, CacheOptions(flush_query="flush.cache."))
    q = dns.message.make_query("example.com.", "A")
    c.resolve(q, CI)
    flushed = c.resolve(dns.message.make_query("flush.cache.", "A"), CI)
    assert flushed.rcode() == dns.rcode.NOERROR
    assert r.hit_count() == 1
    c.resolve(q, CI)
    assert r.hit_count() == 2


def test_multiple_questions_bypass_cache(make_cache):
    r = CountingResolver()
    c = make_cache(r)
    q = dns.message.make_query("a.example.", "A")
    q.question.append(dns.rrset.RRset(dns.name.from_text("b.example."), 1, dns.rdatatype.A))
    c.resolve(q, CI)
    c.resolve(q, CI)
    assert r.hit_count() == 2


def test_no_question_raises(make_cache):
    c = make_cache(CountingResolver())
    with pytest.raises(ValueError):
        c.resolve(dns.message.Message(), CI)


def test_drop_is_passed_through(make_cache):
    r = CountingResolver(lambda q, ci: None)
    c = make_cache(r)
    assert c.resolve(dns.message.make_query("example.com.", "A"), CI) is None
    assert r.hit_count() == 1


def test_prefetch_refreshes_record(make_cache, clock):
    r = CountingResolver(a_reply(200))
    c = make_cache(r, CacheOptions(prefetch_trigger=100))
    q = dns.message.make_query("example.com.", "A")
    c.resolve(q, CI)
    r.called.clear()
    clock.now += 150
    a = c.resolve(q, CI)
    assert a.answer[0].ttl == 50
    assert r.called.wait(5)
    assert r.hit_count() == 2


def test_min_ttl():
    q = dns.message.make_query("example.com.", "A")
    msg = dns.message.make_response(q)
    assert min_ttl(msg) is None
    msg.answer.append(dns.rrset.from_text("example.com.", 300, "IN", "A", "127.0.0.1"))
    msg.authority.append(dns.rrset.from_text("example.com.", 100, "IN", "NS", "ns.example.com."))
    assert min_ttl(msg) == 100