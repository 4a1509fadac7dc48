"""Rate limit configuration: YAML loading, validation and descriptor lookup."""

from __future__ import annotations

import dataclasses
import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import yaml

from quotaguard.cache_key import LimitDefinition, RateLimitDescriptor, Unit
from quotaguard.stats import RateLimitStats, StatsManager

logger = logging.getLogger(__name__)

_VALID_KEYS = frozenset(
    {
        "domain",
        "key",
        "value",
        "descriptors",
        "rate_limit",
        "unit",
        "requests_per_unit",
        "unlimited",
        "shadow_mode",
        "name",
        "replaces",
        "detailed_metric",
    }
)

_UINT32_MAX = 2**32 - 1


class RateLimitConfigError(Exception):
    """Raised when a rate limit configuration cannot be loaded."""


def _config_error(name: str, message: str) -> RateLimitConfigError:
    return RateLimitConfigError(f"{name}: {message}")


@dataclass
class RateLimit:
    """A configured limit together with the stats it reports to."""

    limit: LimitDefinition
    stats: RateLimitStats
    unlimited: bool = False
    shadow_mode: bool = False
    name: str = ""
    replaces: list[str] = field(default_factory=list)
    detailed_metric: bool = False
    full_key: str = ""

    def __post_init__(self) -> None:
        if not self.full_key:
            self.full_key = self.stats.key


@dataclass
class YamlReplaces:
    name: str = ""


@dataclass
class YamlRateLimit:
    requests_per_unit: int = 0
    unit: str = ""
    unlimited: bool = False
    name: str = ""
    replaces: list[YamlReplaces] = field(default_factory=list)


@dataclass
class YamlDescriptor:
    key: str = ""
    value: str = ""
    rate_limit: YamlRateLimit | None = None
    descriptors: list["YamlDescriptor"] = field(default_factory=list)
    shadow_mode: bool = False
    detailed_metric: bool = False


@dataclass
class YamlRoot:
    domain: str = ""
    descriptors: list[YamlDescriptor] = field(default_factory=list)


@dataclass
class RateLimitConfigToLoad:
    """A parsed config file and the name used in error messages."""

    name: str
    config_yaml: YamlRoot


class _DescriptorNode:
    def __init__(self, limit: RateLimit | None = None) -> None:
        self.descriptors: dict[str, _DescriptorNode] = {}
        self.limit = limit
        self.wildcard_keys: list[str] = []

    def dump(self) -> str:
        lines = []
        if self.limit is not None:
            lines.append(
                f"{self.limit.full_key}: unit={Unit(self.limit.limit.unit).name} "
                f"requests_per_unit={self.limit.limit.requests_per_unit}, "
                f"shadow_mode: {str(self.limit.shadow_mode).lower()}\n"
            )
        lines.extend(child.dump() for child in self.descriptors.values())
        return "".join(lines)

    def load_descriptors(
        self,
        config_name: str,
        parent_key: str,
        descriptors: Iterable[YamlDescriptor],
        stats_manager: StatsManager,
    ) -> None:
        for descriptor in descriptors:
            if not descriptor.key:
                raise _config_error(config_name, "descriptor has empty key")

            final_key = descriptor.key
            if descriptor.value:
                final_key += "_" + descriptor.value

            new_parent_key = parent_key + final_key
            if final_key in self.descriptors:
                raise _config_error(
                    config_name, f"duplicate descriptor composite key '{new_parent_key}'"
                )

            rate_limit = None
            if descriptor.rate_limit is not None:
                rate_limit = _build_rate_limit(
                    config_name, new_parent_key, descriptor, stats_manager
                )
                logger.debug(
                    "loading descriptor: key=%s ratelimit={requests_per_unit=%d, unit=%s, "
                    "unlimited=%s, shadow_mode=%s}",
                    new_parent_key,
                    rate_limit.limit.requests_per_unit,
                    Unit(rate_limit.limit.unit).name,
                    rate_limit.unlimited,
                    rate_limit.shadow_mode,
                )
            else:
                logger.debug("loading descriptor: key=%s", new_parent_key)

            node = _DescriptorNode(rate_limit)
            node.load_descriptors(
                config_name, new_parent_key + ".", descriptor.descriptors, stats_manager
            )
            self.descriptors[final_key] = node

            if final_key.endswith("*"):
                self.wildcard_keys.append(final_key)


def _build_rate_limit(
    config_name: str, key: str, descriptor: YamlDescriptor, stats_manager: StatsManager
) -> RateLimit:
    yaml_limit = descriptor.rate_limit
    assert yaml_limit is not None
    unit = Unit.__members__.get(yaml_limit.unit.upper(), Unit.UNKNOWN)
    valid_unit = unit != Unit.UNKNOWN

    if yaml_limit.unlimited:
        if valid_unit:
            raise _config_error(config_name, "should not specify rate limit unit when unlimited")
    elif not valid_unit:
        raise _config_error(config_name, f"invalid rate limit unit '{yaml_limit.unit}'")

    rate_limit = RateLimit(
        limit=LimitDefinition(yaml_limit.requests_per_unit, unit),
        stats=stats_manager.new_stats(key),
        unlimited=yaml_limit.unlimited,
        shadow_mode=descriptor.shadow_mode,
        name=yaml_limit.name,
        replaces=[replace.name for replace in yaml_limit.replaces],
        detailed_metric=descriptor.detailed_metric,
    )

    for replace in yaml_limit.replaces:
        if not replace.name:
            raise _config_error(config_name, "should not have an empty replaces entry")
        if replace.name == yaml_limit.name:
            raise _config_error(config_name, "replaces should not contain name of same descriptor")
    return rate_limit


def _descriptor_key(domain: str, descriptor: RateLimitDescriptor) -> str:
    parts = [
        f"{entry.key}_{entry.value}" if entry.value else entry.key
        for entry in descriptor.entries
    ]
    return f"{domain}.{'.'.join(parts)}"


class RateLimitConfig:
    """A loaded set of rate limit domains that can be queried for limits."""

    def __init__(
        self,
        configs: Iterable[RateLimitConfigToLoad],
        stats_manager: StatsManager,
        merge_domain_configs: bool = False,
    ) -> None:
        self._domains: dict[str, _DescriptorNode] = {}
        self._stats_manager = stats_manager
        self._merge_domain_configs = merge_domain_configs
        for config in configs:
            self._load_config(config)

    def _load_config(self, config: RateLimitConfigToLoad) -> None:
        root = config.config_yaml
        if not root.domain:
            raise _config_error(config.name, "config file cannot have empty domain")

        existing = self._domains.get(root.domain)
        if existing is not None:
            if not self._merge_domain_configs:
                raise _config_error(
                    config.name, f"duplicate domain '{root.domain}' in config file"
                )
            logger.debug("patching domain: %s", root.domain)
            existing.load_descriptors(
                config.name, root.domain + ".", root.descriptors, self._stats_manager
            )
            return

        logger.debug("loading domain: %s", root.domain)
        domain = _DescriptorNode()
        domain.load_descriptors(config.name, root.domain + ".", root.descriptors, self._stats_manager)
        self._domains[root.domain] = domain

    def dump(self) -> str:
        """Describe every configured limit, one line each."""
        return "".join(domain.dump() for domain in self._domains.values())

    def is_empty_domains(self) -> bool:
        return not self._domains

    def get_limit(self, domain: str, descriptor: RateLimitDescriptor) -> RateLimit | None:
        """Return the limit that applies to `descriptor` in `domain`, or None."""
        root = self._domains.get(domain)
        if root is None:
            logger.debug("unknown domain '%s'", domain)
            return None

        if descriptor.limit is not None:
            # Overrides supplied with the request never run in shadow mode.
            return RateLimit(
                limit=LimitDefinition(
                    descriptor.limit.requests_per_unit, Unit(descriptor.limit.unit)
                ),
                stats=self._stats_manager.new_stats(_descriptor_key(domain, descriptor)),
            )

        rate_limit: RateLimit | None = None
        descriptors_map = root.descriptors
        previous = root
        detailed_key_parts = [domain]
        last_index = len(descriptor.entries) - 1

        for index, entry in enumerate(descriptor.entries):
            final_key = f"{entry.key}_{entry.value}"
            detailed_key_parts.append(final_key)

            logger.debug("looking up key: %s", final_key)
            next_node = descriptors_map.get(final_key)

            if next_node is None:
                for wildcard_key in previous.wildcard_keys:
                    if final_key.startswith(wildcard_key.removesuffix("*")):
                        next_node = descriptors_map.get(wildcard_key)
                        break

            if next_node is None:
                final_key = entry.key
                logger.debug("looking up key: %s", final_key)
                next_node = descriptors_map.get(final_key)

            if next_node is not None and next_node.limit is not None:
                logger.debug("found rate limit: %s", final_key)
                if index == last_index:
                    rate_limit = next_node.limit
                else:
                    logger.debug("request has more entries than the configured depth")

            if next_node is None or not next_node.descriptors:
                break
            descriptors_map = next_node.descriptors
            previous = next_node

        if rate_limit is not None and rate_limit.detailed_metric:
            rate_limit = dataclasses.replace(
                rate_limit,
                stats=self._stats_manager.new_stats(".".join(detailed_key_parts)),
            )
        return rate_limit


class RateLimitConfigLoader:
    """Builds a RateLimitConfig from parsed config files."""

    def load(
        self,
        configs: Iterable[RateLimitConfigToLoad],
        stats_manager: StatsManager,
        merge_domain_configs: bool,
    ) -> RateLimitConfig:
        return RateLimitConfig(configs, stats_manager, merge_domain_configs)


def _validate_yaml_keys(file_name: str, config_map: dict) -> None:
    for key, value in config_map.items():
        if not isinstance(key, str):
            raise _config_error(file_name, f"config error, key is not of type string: {key}")
        if key not in _VALID_KEYS:
            raise _config_error(file_name, f"config error, unknown key '{key}'")
        if isinstance(value, list):
            for element in value:
                if not isinstance(element, dict):
                    raise _config_error(
                        file_name,
                        "config error, yaml file contains list of type other than map: "
                        f"{element}",
                    )
                _validate_yaml_keys(file_name, element)
        elif isinstance(value, dict):
            _validate_yaml_keys(file_name, value)
        elif value is None or isinstance(value, (str, int, datetime.date)):
            continue
        else:
            raise _config_error(file_name, "error checking config")


class _DecodeError(Exception):
    pass


def _as_str(value: Any, name: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, datetime.date)):
        return str(value)
    raise _DecodeError(f"cannot unmarshal {type(value).__name__} into {name} of type string")


def _as_bool(value: Any, name: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise _DecodeError(f"cannot unmarshal {value!r} into {name} of type bool")


def _as_uint32(value: Any, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= _UINT32_MAX:
        return value
    raise _DecodeError(f"cannot unmarshal {value!r} into {name} of type uint32")


def _as_maps(value: Any, name: str) -> list[dict]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise _DecodeError(f"cannot unmarshal {value!r} into {name} of type list")


def _decode_rate_limit(value: Any) -> YamlRateLimit | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise _DecodeError(f"cannot unmarshal {value!r} into rate_limit")
    return YamlRateLimit(
        requests_per_unit=_as_uint32(value.get("requests_per_unit"), "requests_per_unit"),
        unit=_as_str(value.get("unit"), "unit"),
        unlimited=_as_bool(value.get("unlimited"), "unlimited"),
        name=_as_str(value.get("name"), "name"),
        replaces=[
            YamlReplaces(name=_as_str(item.get("name"), "name"))
            for item in _as_maps(value.get("replaces"), "replaces")
        ],
    )


def _decode_descriptor(value: dict) -> YamlDescriptor:
    return YamlDescriptor(
        key=_as_str(value.get("key"), "key"),
        value=_as_str(value.get("value"), "value"),
        rate_limit=_decode_rate_limit(value.get("rate_limit")),
        descriptors=[
            _decode_descriptor(item) for item in _as_maps(value.get("descriptors"), "descriptors")
        ],
        shadow_mode=_as_bool(value.get("shadow_mode"), "shadow_mode"),
        detailed_metric=_as_bool(value.get("detailed_metric"), "detailed_metric"),
    )


def config_file_content_to_yaml(file_name: str, content: str) -> YamlRoot:
    """Parse and validate one YAML config file."""
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise _config_error(file_name, f"error loading config file: {exc}") from exc
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise _config_error(
            file_name, "error loading config file: document is not a mapping"
        )

    _validate_yaml_keys(file_name, document)

    try:
        return YamlRoot(
            domain=_as_str(document.get("domain"), "domain"),
            descriptors=[
                _decode_descriptor(item)
                for item in _as_maps(document.get("descriptors"), "descriptors")
            ],
        )
    except _DecodeError as exc:
        raise _config_error(file_name, f"error loading config file: {exc}") from exc


def _unit_name(unit: Any) -> str:
    if isinstance(unit, str):
        return unit
    if unit is None:
        return Unit.UNKNOWN.name
    return Unit(int(unit)).name


def _xds_policy_to_yaml(policy: Any) -> YamlRateLimit | None:
    if policy is None:
        return None
    return YamlRateLimit(
        requests_per_unit=getattr(policy, "requests_per_unit", 0),
        unit=_unit_name(getattr(policy, "unit", Unit.UNKNOWN)),
        unlimited=getattr(policy, "unlimited", False),
        name=getattr(policy, "name", ""),
        replaces=[YamlReplaces(name=r.name) for r in getattr(policy, "replaces", None) or ()],
    )


def _xds_descriptors_to_yaml(descriptors: Iterable[Any] | None) -> list[YamlDescriptor]:
    return [
        YamlDescriptor(
            key=getattr(d, "key", ""),
            value=getattr(d, "value", ""),
            rate_limit=_xds_policy_to_yaml(getattr(d, "rate_limit", None)),
            descriptors=_xds_descriptors_to_yaml(getattr(d, "descriptors", None)),
            shadow_mode=getattr(d, "shadow_mode", False),
            detailed_metric=getattr(d, "detailed_metric", False),
        )
        for d in descriptors or ()
    ]


def config_xds_to_yaml(xds_config: Any) -> YamlRoot:
    """Convert an xDS rate limit config message into the YAML model."""
    return YamlRoot(
        domain=getattr(xds_config, "domain", ""),
        descriptors=_xds_descriptors_to_yaml(getattr(xds_config, "descriptors", None)),
    )