# quotaguard

quotaguard decides whether a request should be let through or rate limited.

A request names a **domain** and one or more **descriptors**. Each descriptor is an
ordered list of key/value entries. The domain's configuration maps those entries
onto limits, for example "500 requests per second for `database=users`". For each
descriptor, a cache backend counts hits in the current time window and answers
`OK` or `OVER_LIMIT`.

## Installation

```
pip install quotaguard
```

To run the test suite as well:

```
pip install "quotaguard[test]"
```

## Configuration files

Each domain is configured in a YAML file:

```yaml
domain: rl
descriptors:
  - key: category
    value: account
    rate_limit:
      unit: minute
      requests_per_unit: 4
  - key: foo
    rate_limit:
      unit: minute
      requests_per_unit: 2
    descriptors:
      - key: bar
        detailed_metric: true
        rate_limit:
          unit: minute
          requests_per_unit: 3
      - key: baz
        value: shady
        shadow_mode: true
        rate_limit:
          unit: minute
          requests_per_unit: 3
      - key: bay
        rate_limit:
          unlimited: true
```

Only these keys are accepted: `domain`, `key`, `value`, `descriptors`,
`rate_limit`, `unit`, `requests_per_unit`, `unlimited`, `shadow_mode`, `name`,
`replaces` and `detailed_metric`. Any other key makes the file invalid.

Other rules:

- A file must name a non-empty `domain`, and every descriptor a non-empty `key`.
- The same key/value pair may appear only once at each level.
- `unit` is one of `second`, `minute`, `hour` or `day`, in any letter case.
- An `unlimited` limit must not also give a `unit`.
- `replaces` entries must have a non-empty `name` that differs from the limit's
  own `name`.
- A descriptor whose value (or key, when it has no value) ends in `*` matches
  every request entry whose `key_value` starts with the part before the `*`.
- A descriptor without a `value` matches any value of its key, when no more
  specific descriptor does.
- `shadow_mode` counts over-limit hits but still answers `OK`.
- `detailed_metric` keeps statistics under the actual request values instead of
  one shared set for the descriptor.

## Checking configuration files

```
quotaguard-config-check --config_dir /etc/ratelimit/config
```

The command loads every file in the directory, prints each file it opens and
stops at the first error, exiting with status 1. When all files are valid it
prints `all rate limit configs ok` and exits with status 0. With
`--merge_domain_configs`, several files may configure the same domain and their
descriptors are combined; without it, a domain that appears twice is an error.
The same check can be run from Python with `quotaguard.config_check.main(argv)`,
which returns the exit status.

## Looking up limits

```python
from quotaguard.stats import StatsStore, StatsManager
from quotaguard.cache_key import DescriptorEntry, RateLimitDescriptor
from quotaguard.config import (
    RateLimitConfigLoader,
    RateLimitConfigToLoad,
    config_file_content_to_yaml,
)

with open("rl.yaml") as handle:
    root = config_file_content_to_yaml("rl.yaml", handle.read())

manager = StatsManager(StatsStore())
config = RateLimitConfigLoader().load(
    [RateLimitConfigToLoad("rl.yaml", root)], manager, False
)

descriptor = RateLimitDescriptor([DescriptorEntry("category", "account")])
limit = config.get_limit("rl", descriptor)   # a RateLimit, or None
print(config.dump())
```

`dump()` prints one line per configured limit, for example
`rl.category_account: unit=MINUTE requests_per_unit=4, shadow_mode: false`.
A descriptor that carries its own `limit` (a `LimitDefinition`) overrides the
configuration for any known domain. A configuration error raises
`RateLimitConfigError`; the message starts with the name of the file that
caused it.

`config_xds_to_yaml` turns an xDS-style rate limit config object (any object
with `domain` and `descriptors` attributes shaped like the YAML) into the same
`YamlRoot` model, ready to be loaded.

## Deciding on requests with memcached

`quotaguard.memcached.MemcacheRateLimitCache` implements the `RateLimitCache`
interface (`do_limit` and `flush`) on top of memcached:

```python
import random

from quotaguard.cache_key import RateLimitRequest, TimeSource
from quotaguard.local_cache import LocalCache
from quotaguard.memcached import MemcacheClient, MemcacheRateLimitCache, StatsCollectingClient

store = manager.store
client = StatsCollectingClient(MemcacheClient(["127.0.0.1:11211"]), store.scope("memcache"))
cache = MemcacheRateLimitCache(
    client,
    TimeSource(),
    random.Random(),
    0,              # expiration jitter, in seconds
    LocalCache(),   # or None
    manager,
    0.8,            # near-limit ratio
    "",             # cache key prefix
)

request = RateLimitRequest("rl", [descriptor], hits_addend=1)
for status in cache.do_limit(request, [limit]):
    print(status.code.name, status.limit_remaining, status.duration_until_reset)
cache.close()
```

Counts are stored under keys made from the prefix, the domain, the descriptor
entries and the start of the current time window, for example
`rl_category_account_1200`; a new window therefore starts a new count. The
current values are read with one multi-get and the increments are done in the
background; `flush()` waits for them. Keys that have gone over their limit are
remembered in the `LocalCache` for the rest of their window, so later requests
are refused without contacting memcached.

`MemcacheClient` speaks the memcached text protocol (`get_multi`, `increment`,
`add`) over TCP or a Unix socket, spreading keys over the servers of a
`ServerList`. `refresh_servers` replaces those servers with the ones an SRV
resolver returns, leaving them untouched if resolution fails.

## Statistics

`StatsStore` holds named `Counter`, `Gauge` and `Timer` metrics; `scope(name)`
gives a view whose names are prefixed with `name.`. `StatsManager.new_stats(key)`
creates the counters kept for each limit: `total_hits`, `over_limit`,
`near_limit`, `over_limit_with_local_cache`, `within_limit` and `shadow_mode`.
`LocalCacheStats` publishes a `LocalCache`'s hit, miss, lookup, entry, expiry,
eviction and overwrite counts as gauges.

`ServerReporter(store).unary_server_interceptor()` returns a function
`interceptor(request, full_method, handler)` that calls `handler(request)`,
counting `<Method>.total_requests` and recording `<Method>.response_time` in
milliseconds.

## What is not included

quotaguard is a library and a configuration checker. It does not run a rate
limit server, has no client command for sending requests to one, offers no
backend other than memcached, and does not watch or fetch configuration by
itself: the caller loads configuration files and passes requests to
`do_limit`.