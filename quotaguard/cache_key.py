"""Request model, time units and cache key generation for rate limiting."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


class Unit(enum.IntEnum):
    """Time unit of a rate limit."""

    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4


_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 60 * 60,
    Unit.DAY: 60 * 60 * 24,
}


def unit_to_divider(unit: Unit) -> int:
    """Number of seconds in one `unit`."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unit {unit!r} has no time divider") from None


def calculate_reset(unit: Unit, now: int) -> int:
    """Seconds from `now` until the current window of `unit` ends."""
    divider = unit_to_divider(unit)
    return divider - now % divider


def is_per_second_limit(unit: Unit) -> bool:
    return unit == Unit.SECOND


@dataclass(frozen=True)
class LimitDefinition:
    """The number of requests allowed per unit of time."""

    requests_per_unit: int
    unit: Unit


@dataclass(frozen=True)
class DescriptorEntry:
    key: str
    value: str = ""


@dataclass(frozen=True)
class RateLimitDescriptor:
    """An ordered list of entries, optionally carrying a limit override."""

    entries: tuple[DescriptorEntry, ...] = ()
    limit: LimitDefinition | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))


@dataclass(frozen=True)
class RateLimitRequest:
    domain: str
    descriptors: tuple[RateLimitDescriptor, ...] = field(default_factory=tuple)
    hits_addend: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "descriptors", tuple(self.descriptors))


class TimeSource:
    """Supplies the current Unix time in whole seconds."""

    def unix_now(self) -> int:
        return int(time.time())


@dataclass(frozen=True)
class CacheKey:
    key: str
    per_second: bool = False


class CacheKeyGenerator:
    """Builds backend keys from a domain, a descriptor and the current window."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    def generate_cache_key(
        self,
        domain: str,
        descriptor: RateLimitDescriptor,
        limit: Any,
        now: int,
    ) -> CacheKey:
        """Return the key for `limit` (an object with a `limit` definition) or an empty key if None."""
        if limit is None:
            return CacheKey("", False)

        unit = limit.limit.unit
        divider = unit_to_divider(unit)
        parts = [f"{self.prefix}{domain}_"]
        parts.extend(f"{entry.key}_{entry.value}_" for entry in descriptor.entries)
        parts.append(str((now // divider) * divider))
        return CacheKey("".join(parts), is_per_second_limit(unit))