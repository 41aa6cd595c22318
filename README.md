# dnsroute

Building blocks for resolving, filtering and caching DNS queries.

Every piece in `dnsroute` speaks the same `Resolver` interface
(`dnsroute.base.Resolver`): `resolve(query, client)` takes a DNS query (a
`dns.message.Message` from dnspython) and a `ClientInfo` describing who asked,
and returns a response message, or `None` to signal that the query should be
dropped. Because filters and caches are resolvers that wrap other resolvers,
they can be stacked: a cache in front of a blocklist in front of an upstream
client.

## Upstream clients

- `DNSClient` (`dnsroute.dnsclient`): plain DNS over `"udp"` or `"tcp"`.
  `DNSClientOptions` sets a local source address, an EDNS0 UDP size
  (`udp_size`, 0 leaves queries unchanged) and a query timeout in seconds
  (0 means 2 seconds). EDNS0 padding is removed before sending.
  `valid_endpoint()` checks a `host:port` string and `set_udp_size()` sets the
  EDNS0 payload size of a query.
- `DoTClient` (`dnsroute.dotclient`): DNS-over-TLS. `DoTClientOptions` takes an
  `ssl.SSLContext`, a local address, a timeout and a `bootstrap_addr` that is
  connected to instead of the endpoint's host, whose name is still used for
  TLS. Queries using EDNS0 are padded to 128-byte blocks.
- `DoHClient` (`dnsroute.dohclient`): DNS-over-HTTPS with `POST` (the default)
  or `GET`. The endpoint may be an RFC 6570 URI template such as
  `https://resolver.example.com/dns-query{?dns}`; `expand_template()` is
  available on its own. A bootstrap address, an `ssl.SSLContext`, a local
  address and a timeout can be set in `DoHClientOptions`, and an
  `httpx.BaseTransport` can be passed in. Only the `"tcp"` transport is
  supported; `"quic"` raises `ValueError`.

## Filtering resolvers

- `Blocklist` (`dnsroute.blocklist`): queries matching the blocklist get
  NXDOMAIN, a spoofed A/AAAA answer taken from the rule, or a PTR answer (at
  most 10 names). An allowlist overrides the blocklist. Matches can instead be
  forwarded to a `blocklist_resolver`, and allowlisted queries to an
  `allowlist_resolver`. With a refresh period (seconds) the databases are
  reloaded in a background thread; `close()` stops it. An optional
  `edns0_ede_template` callable is applied to blocked answers.
- `ClientBlocklist` (`dnsroute.clientblocklist`): matches the client's source
  IP against a database such as `CidrDB` and answers REFUSED, or forwards to a
  `blocklist_resolver`.
- `DropResolver` (`dnsroute.drop`): returns `None` for every query.

## Rule databases and loaders

- `DomainDB`, `HostsDB`, `RegexpDB` and `MultiDB` (`dnsroute.blocklistdb`):
  - `DomainDB`: `domain.com` matches only that name, `.domain.com` the name and
    all subdomains, `*.domain.com` subdomains only. Invalid wildcards raise
    `InvalidRuleError`.
  - `HostsDB`: hosts-file lines; `0.0.0.0` or `::` block, other addresses are
    returned for spoofing, and reverse names answer PTR queries.
  - `RegexpDB`: regular expressions searched in the query name.
  - `MultiDB`: several databases, first match wins.
- `CidrDB` (`dnsroute.cidrdb`): IPv4/IPv6 networks; bare addresses are treated
  as `/32` or `/128`.
- Loaders (`dnsroute.loaders`): `StaticLoader` for in-memory rules,
  `FileLoader` for a local file, and `HTTPLoader` for an HTTP(S) URL. With
  `allow_failure=True` a failed load returns the last good rule set.
  `HTTPLoader` can keep a copy in `cache_dir` (named by the SHA256 of the URL,
  see `cache_filename()`), used for the first load.

Every database has `reload()`, which builds a fresh instance from its loader,
and `match()`, which returns a `MatchResult` (truthy when matched) with the
matching `BlocklistMatch` list name and rule.

## Caching

`Cache` (`dnsroute.cache`) stores upstream answers until their lowest TTL runs
out; TTLs are reduced by the time spent in the cache. `CacheOptions` covers:

- `negative_ttl` for negative answers without records (default 60 seconds);
  SERVFAIL is kept at most 300 seconds; truncated answers are never cached;
- `cache_rcode_max_ttl`, a per-rcode upper limit in seconds;
- `flush_query`, a query name that empties the cache;
- `harden_below_nxdomain`, answering NXDOMAIN below a cached NXDOMAIN name;
- `prefetch_trigger` / `prefetch_eligible` for refreshing popular records in
  the background;
- `shuffle_answer_func`, e.g. `answer_shuffle_random` or
  `answer_shuffle_round_robin`;
- `backend`, defaulting to a `MemoryBackend` built from `capacity` and
  `gc_period`.

Backends implement `CacheBackend` (`dnsroute.memorybackend`):

- `MemoryBackend`: an LRU store with optional capacity, periodic garbage
  collection (`collect_garbage()`), and an optional JSON file that is loaded on
  start and written on `close()` and, if `save_interval` is set, periodically.
- `RedisBackend` (`dnsroute.redisbackend`): stores entries in Redis with the
  expiry as key TTL; `RedisBackendOptions.redis_options` is passed to
  `redis.Redis`, and `key_prefix` prefixes every key.

## Example

```python
import dns.message
import dns.rcode

from dnsroute.base import ClientInfo
from dnsroute.blocklist import Blocklist, BlocklistOptions
from dnsroute.blocklistdb import RegexpDB
from dnsroute.cache import Cache, CacheOptions
from dnsroute.dnsclient import DNSClient, DNSClientOptions
from dnsroute.loaders import StaticLoader

upstream = DNSClient("upstream", "192.0.2.53:53", "udp", DNSClientOptions())

rules = StaticLoader([r"(^|\.)block\.test", r"(^|\.)evil\.test"])
blocklist = Blocklist(
    "blocklist",
    upstream,
    BlocklistOptions(blocklist_db=RegexpDB("my-list", rules)),
)
cache = Cache("cache", blocklist, CacheOptions())

query = dns.message.make_query("x.evil.test.", "A")
answer = cache.resolve(query, ClientInfo())
print(dns.rcode.to_text(answer.rcode()))  # NXDOMAIN
cache.close()
```

## Metrics

Components count queries, responses by rcode, errors, cache hits and misses,
and allowed and blocked queries. `dnsroute.base.metrics_snapshot()` returns the
current values of all counters as a dictionary.

## What this package does not do

- It has no servers that accept queries from clients: there are no UDP, TCP,
  TLS or HTTPS listeners, so resolvers are used by calling `resolve()` from
  your own code.
- It provides no command-line program and does not read configuration files.
- It does not serve the metrics over HTTP; use `metrics_snapshot()`.
- It does not speak DNS-over-QUIC, DTLS or HTTP/3, and has no SOCKS proxy
  support.
- There are no query routers or failover/load-balancing groups.