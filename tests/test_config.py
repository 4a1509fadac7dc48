from types import SimpleNamespace

import pytest

from quotaguard.cache_key import DescriptorEntry, LimitDefinition, RateLimitDescriptor, Unit
from quotaguard.config import (
    RateLimit,
    RateLimitConfig,
    RateLimitConfigError,
    RateLimitConfigLoader,
    RateLimitConfigToLoad,
    YamlRoot,
    config_file_content_to_yaml,
    config_xds_to_yaml,
)
from quotaguard.stats import StatsManager, StatsStore


def policy(unit=Unit.UNKNOWN, rpu=0, unlimited=False, name="", replaces=()):
    return SimpleNamespace(
        unit=unit,
        requests_per_unit=rpu,
        unlimited=unlimited,
        name=name,
        replaces=[SimpleNamespace(name=n) for n in replaces],
    )


def desc(key, value="", rate_limit=None, descriptors=(), shadow_mode=False, detailed_metric=False):
    return SimpleNamespace(
        key=key,
        value=value,
        rate_limit=rate_limit,
        descriptors=list(descriptors),
        shadow_mode=shadow_mode,
        detailed_metric=detailed_metric,
    )


def rls(name, domain, descriptors):
    return SimpleNamespace(name=name, domain=domain, descriptors=list(descriptors))


def manager():
    return StatsManager(StatsStore())


def load_xds(*configs, merge=False):
    to_load = [RateLimitConfigToLoad(c.name, config_xds_to_yaml(c)) for c in configs]
    return RateLimitConfig(to_load, manager(), merge)


def dump_lines(config):
    return sorted(config.dump().removesuffix("\n").split("\n"))


def load_yaml(content, name="config.yaml", merge=False):
    root = config_file_content_to_yaml(name, content)
    return RateLimitConfig([RateLimitConfigToLoad(name, root)], manager(), merge)


def request(*pairs, limit=None):
    return RateLimitDescriptor(tuple(DescriptorEntry(k, v) for k, v in pairs), limit)


# Cases carried over from the xDS provider tests.


def test_initial_xds_config():
    config = load_xds(
        rls("foo", "foo", [desc("k1", "v1", policy(Unit.MINUTE, 3))]),
    )
    assert config.dump() == "foo.k1_v1: unit=MINUTE requests_per_unit=3, shadow_mode: false\n"


def test_new_xds_config_update():
    config = load_xds(
        rls("foo", "foo", [desc("k2", "v2", policy(Unit.MINUTE, 5))]),
    )
    assert config.dump() == "foo.k2_v2: unit=MINUTE requests_per_unit=5, shadow_mode: false\n"


def test_multi_domain_xds_config():
    config = load_xds(
        rls("foo", "foo", [desc("k1", "v1", policy(Unit.MINUTE, 10))]),
        rls("bar", "bar", [desc("k1", "v1", policy(Unit.MINUTE, 100))]),
    )
    assert dump_lines(config) == sorted(
        [
            "foo.k1_v1: unit=MINUTE requests_per_unit=10, shadow_mode: false",
            "bar.k1_v1: unit=MINUTE requests_per_unit=100, shadow_mode: false",
        ]
    )


def test_deeper_limits_xds_config():
    config = load_xds(
        rls(
            "foo",
            "foo",
            [
                desc(
                    "k1",
                    "v1",
                    policy(Unit.MINUTE, 10),
                    [
                        desc("k2", rate_limit=policy(unlimited=True)),
                        desc("k2", "v2", policy(Unit.HOUR, 15)),
                    ],
                ),
                desc(
                    "j1",
                    "v2",
                    policy(unlimited=True),
                    [
                        desc("j2", rate_limit=policy(unlimited=True)),
                        desc("j2", "v2", policy(Unit.DAY, 15), shadow_mode=True),
                    ],
                ),
            ],
        ),
        rls("bar", "bar", [desc("k1", "v1", policy(Unit.MINUTE, 100))]),
    )
    assert dump_lines(config) == sorted(
        [
            "foo.k1_v1: unit=MINUTE requests_per_unit=10, shadow_mode: false",
            "foo.k1_v1.k2: unit=UNKNOWN requests_per_unit=0, shadow_mode: false",
            "foo.k1_v1.k2_v2: unit=HOUR requests_per_unit=15, shadow_mode: false",
            "foo.j1_v2: unit=UNKNOWN requests_per_unit=0, shadow_mode: false",
            "foo.j1_v2.j2: unit=UNKNOWN requests_per_unit=0, shadow_mode: false",
            "foo.j1_v2.j2_v2: unit=DAY requests_per_unit=15, shadow_mode: true",
            "bar.k1_v1: unit=MINUTE requests_per_unit=100, shadow_mode: false",
        ]
    )


def test_same_domain_multiple_xds_configs_merged():
    config = load_xds(
        rls("foo-1", "foo", [desc("k1", "v1", policy(Unit.MINUTE, 10))]),
        rls("foo-2", "foo", [desc("k1", "v2", policy(Unit.MINUTE, 100))]),
        merge=True,
    )
    assert dump_lines(config) == sorted(
        [
            "foo.k1_v2: unit=MINUTE requests_per_unit=100, shadow_mode: false",
            "foo.k1_v1: unit=MINUTE requests_per_unit=10, shadow_mode: false",
        ]
    )


def test_same_domain_without_merge_is_rejected():
    with pytest.raises(RateLimitConfigError) as info:
        load_xds(
            rls("foo-1", "foo", [desc("k1", "v1", policy(Unit.MINUTE, 10))]),
            rls("foo-2", "foo", [desc("k1", "v2", policy(Unit.MINUTE, 100))]),
        )
    assert str(info.value) == "foo-2: duplicate domain 'foo' in config file"


def test_xds_conversion_keeps_fields():
    root = config_xds_to_yaml(
        rls(
            "rl",
            "rl",
            [desc("foo", rate_limit=policy(Unit.MINUTE, 2, name="n", replaces=["a"]), detailed_metric=True)],
        )
    )
    assert root.domain == "rl"
    only = root.descriptors[0]
    assert only.rate_limit.unit == "MINUTE"
    assert only.rate_limit.requests_per_unit == 2
    assert [r.name for r in only.rate_limit.replaces] == ["a"]
    assert only.detailed_metric is True
    assert only.rate_limit.name == "n"


# YAML loading and lookups.

CONFIG = """
domain: test-domain
descriptors:
  - key: key1
    value: value1
    rate_limit:
      unit: second
      requests_per_unit: 5
    descriptors:
      - key: subkey1
        rate_limit:
          unit: minute
          requests_per_unit: 10
  - key: key2
    rate_limit:
      unit: hour
      requests_per_unit: 20
  - key: wild
    value: foo*
    rate_limit:
      unit: day
      requests_per_unit: 1
  - key: bar
    detailed_metric: true
    rate_limit:
      unit: minute
      requests_per_unit: 3
  - key: shady
    shadow_mode: true
    rate_limit:
      unit: minute
      requests_per_unit: 7
      name: shady_limit
      replaces:
        - name: other
"""


@pytest.fixture
def config():
    return load_yaml(CONFIG)


def test_lookup_top_level(config):
    limit = config.get_limit("test-domain", request(("key1", "value1")))
    assert limit.limit == LimitDefinition(5, Unit.SECOND)
    assert limit.full_key == "test-domain.key1_value1"


def test_lookup_nested_default_value(config):
    limit = config.get_limit("test-domain", request(("key1", "value1"), ("subkey1", "anything")))
    assert limit.limit == LimitDefinition(10, Unit.MINUTE)
    assert limit.full_key == "test-domain.key1_value1.subkey1"


def test_lookup_key_only(config):
    limit = config.get_limit("test-domain", request(("key2", "x")))
    assert limit.limit == LimitDefinition(20, Unit.HOUR)


def test_lookup_wildcard(config):
    limit = config.get_limit("test-domain", request(("wild", "foobar")))
    assert limit.full_key == "test-domain.wild_foo*"
    assert config.get_limit("test-domain", request(("wild", "bar"))) is None


def test_lookup_depth_mismatch_returns_none(config):
    assert config.get_limit("test-domain", request(("key2", "x"), ("extra", "y"))) is None


def test_lookup_unknown_domain(config):
    assert config.get_limit("nope", request(("key1", "value1"))) is None


def test_lookup_override(config):
    limit = config.get_limit(
        "test-domain", request(("key1", "value1"), limit=LimitDefinition(42, Unit.HOUR))
    )
    assert limit.limit == LimitDefinition(42, Unit.HOUR)
    assert limit.full_key == "test-domain.key1_value1"
    assert limit.shadow_mode is False
    assert limit.replaces == []


def test_detailed_metric_uses_full_request_key(config):
    limit = config.get_limit("test-domain", request(("bar", "baz")))
    assert limit.full_key == "test-domain.bar"
    assert limit.stats.key == "test-domain.bar_baz"
    again = config.get_limit("test-domain", request(("bar", "qux")))
    assert again.stats.key == "test-domain.bar_qux"


def test_shadow_mode_name_and_replaces(config):
    limit = config.get_limit("test-domain", request(("shady", "x")))
    assert limit.shadow_mode is True
    assert limit.name == "shady_limit"
    assert limit.replaces == ["other"]


def test_is_empty_domains(config):
    assert config.is_empty_domains() is False
    assert RateLimitConfig([], manager()).is_empty_domains() is True


def test_loader_builds_config():
    root = config_file_content_to_yaml("a.yaml", CONFIG)
    loaded = RateLimitConfigLoader().load([RateLimitConfigToLoad("a.yaml", root)], manager(), False)
    assert "test-domain.key2: unit=HOUR requests_per_unit=20, shadow_mode: false\n" in loaded.dump()


def test_rate_limit_full_key_follows_stats():
    stats = manager().new_stats("d.k")
    limit = RateLimit(LimitDefinition(1, Unit.SECOND), stats)
    assert limit.full_key == "d.k"


def test_empty_content_has_empty_domain():
    root = config_file_content_to_yaml("empty.yaml", "")
    assert root == YamlRoot()
    with pytest.raises(RateLimitConfigError) as info:
        RateLimitConfig([RateLimitConfigToLoad("empty.yaml", root)], manager())
    assert str(info.value) == "empty.yaml: config file cannot have empty domain"


@pytest.mark.parametrize(
    "content, message",
    [
        (
            "domain: d\ndescriptors:\n  - value: v\n",
            "f.yaml: descriptor has empty key",
        ),
        (
            "domain: d\ndescriptors:\n  - key: k\n    value: v\n  - key: k\n    value: v\n",
            "f.yaml: duplicate descriptor composite key 'd.k_v'",
        ),
        (
            "domain: d\ndescriptors:\n  - key: k\n    rate_limit:\n      unit: week\n",
            "f.yaml: invalid rate limit unit 'week'",
        ),
        (
            "domain: d\ndescriptors:\n  - key: k\n    rate_limit:\n      unit: second\n      unlimited: true\n",
            "f.yaml: should not specify rate limit unit when unlimited",
        ),
        (
            "domain: d\ndescriptors:\n  - key: k\n    rate_limit:\n      unit: second\n      replaces:\n        - name: ''\n",
            "f.yaml: should not have an empty replaces entry",
        ),
        (
            "domain: d\ndescriptors:\n  - key: k\n    rate_limit:\n      unit: second\n      name: n\n      replaces:\n        - name: n\n",
            "f.yaml: replaces should not contain name of same descriptor",
        ),
    ],
)
def test_load_errors(content, message):
    with pytest.raises(RateLimitConfigError) as info:
        load_yaml(content, name="f.yaml")
    assert str(info.value) == message


@pytest.mark.parametrize(
    "content, message",
    [
        ("domain: d\nfoo: bar\n", "f.yaml: config error, unknown key 'foo'"),
        ("domain: d\n1: bar\n", "f.yaml: config error, key is not of type string: 1"),
        (
            "domain: d\ndescriptors:\n  - just_a_string\n",
            "f.yaml: config error, yaml file contains list of type other than map: just_a_string",
        ),
        ("domain: d\ndescriptors:\n  - key: k\n    value: 1.5\n", "f.yaml: error checking config"),
    ],
)
def test_key_validation_errors(content, message):
    with pytest.raises(RateLimitConfigError) as info:
        config_file_content_to_yaml("f.yaml", content)
    assert str(info.value) == message


def test_invalid_yaml_is_rejected():
    with pytest.raises(RateLimitConfigError) as info:
        config_file_content_to_yaml("f.yaml", "domain: [unclosed\n")
    assert str(info.value).startswith("f.yaml: error loading config file:")


def test_wrong_field_type_is_rejected():
    content = "domain: d\ndescriptors:\n  - key: k\n    shadow_mode: maybe\n"
    with pytest.raises(RateLimitConfigError) as info:
        config_file_content_to_yaml("f.yaml", content)
    assert str(info.value).startswith("f.yaml: error loading config file:")