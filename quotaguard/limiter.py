"""Shared rate limiting logic used by cache backends."""

from __future__ import annotations

import abc
import enum
import logging
import math
import random
import struct
from dataclasses import dataclass
from typing import Sequence

from quotaguard.cache_key import (
    CacheKey,
    CacheKeyGenerator,
    LimitDefinition,
    RateLimitRequest,
    TimeSource,
    calculate_reset,
    unit_to_divider,
)
from quotaguard.config import RateLimit
from quotaguard.local_cache import LocalCache
from quotaguard.stats import StatsManager

logger = logging.getLogger(__name__)


def _f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


class Code(enum.IntEnum):
    """Outcome of a rate limit check."""

    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2


@dataclass
class DescriptorStatus:
    """The result for one descriptor of a request."""

    code: Code
    current_limit: LimitDefinition | None = None
    limit_remaining: int = 0
    duration_until_reset: int | None = None


@dataclass
class LimitInfo:
    """Counter values around one increment, and the thresholds derived from them."""

    limit: RateLimit
    limit_before_increase: int
    limit_after_increase: int
    near_limit_threshold: int = 0
    over_limit_threshold: int = 0


class BaseRateLimiter:
    """Key generation, local over-limit cache and status/stat bookkeeping."""

    def __init__(
        self,
        time_source: TimeSource | None,
        jitter_rand: random.Random | None,
        expiration_jitter_max_seconds: int,
        local_cache: LocalCache | None,
        near_limit_ratio: float,
        cache_key_prefix: str,
        stats_manager: StatsManager,
    ) -> None:
        self.time_source = time_source
        self.jitter_rand = jitter_rand
        self.expiration_jitter_max_seconds = expiration_jitter_max_seconds
        self.cache_key_generator = CacheKeyGenerator(cache_key_prefix)
        self.local_cache = local_cache
        self.near_limit_ratio = near_limit_ratio
        self.stats_manager = stats_manager

    def _now(self) -> int:
        if self.time_source is None:
            raise RuntimeError("rate limiter has no time source")
        return self.time_source.unix_now()

    def generate_cache_keys(
        self,
        request: RateLimitRequest,
        limits: Sequence[RateLimit | None],
        hits_addend: int,
    ) -> list[CacheKey]:
        """One key per descriptor (empty where there is no limit); counts total hits."""
        if len(request.descriptors) != len(limits):
            raise ValueError(
                f"{len(request.descriptors)} descriptors but {len(limits)} limits"
            )
        now = self._now()
        keys = []
        for descriptor, limit in zip(request.descriptors, limits):
            keys.append(
                self.cache_key_generator.generate_cache_key(request.domain, descriptor, limit, now)
            )
            if limit is not None:
                limit.stats.total_hits.add(hits_addend)
        return keys

    def is_over_limit_with_local_cache(self, key: str) -> bool:
        if self.local_cache is None:
            return False
        try:
            self.local_cache.get(key)
        except KeyError:
            return False
        return True

    def is_over_limit_threshold_reached(self, limit_info: LimitInfo) -> bool:
        limit_info.over_limit_threshold = limit_info.limit.limit.requests_per_unit
        return limit_info.limit_after_increase > limit_info.over_limit_threshold

    def get_response_descriptor_status(
        self,
        key: str,
        limit_info: LimitInfo | None,
        is_over_limit_with_local_cache: bool,
        hits_addend: int,
    ) -> DescriptorStatus:
        """Decide the status for one key; thresholds are checked in order and exclusive."""
        if key == "" or limit_info is None:
            return self._status(Code.OK, None, 0)

        limit = limit_info.limit
        stats = limit.stats
        is_over_limit = False

        if is_over_limit_with_local_cache:
            is_over_limit = True
            stats.over_limit.add(hits_addend)
            stats.over_limit_with_local_cache.add(hits_addend)
            status = self._status(Code.OVER_LIMIT, limit.limit, 0)
        else:
            limit_info.over_limit_threshold = limit.limit.requests_per_unit
            limit_info.near_limit_threshold = int(
                math.floor(
                    _f32(_f32(limit_info.over_limit_threshold) * _f32(self.near_limit_ratio))
                )
            )
            logger.debug("cache key: %s current: %d", key, limit_info.limit_after_increase)
            if limit_info.limit_after_increase > limit_info.over_limit_threshold:
                is_over_limit = True
                status = self._status(Code.OVER_LIMIT, limit.limit, 0)
                self._check_over_limit_threshold(limit_info, hits_addend)
                if self.local_cache is not None:
                    # The key changes with each window, so a full-window TTL is enough.
                    try:
                        ttl = unit_to_divider(limit.limit.unit)
                        self.local_cache.set(key, b"", ttl)
                    except ValueError:
                        logger.error("Failing to set local cache key: %s", key)
            else:
                status = self._status(
                    Code.OK,
                    limit.limit,
                    limit_info.over_limit_threshold - limit_info.limit_after_increase,
                )
                self._check_near_limit_threshold(limit_info, hits_addend)
                stats.within_limit.add(hits_addend)

        if is_over_limit and limit.shadow_mode:
            logger.debug("Limit with key %s, is in shadow_mode", limit.full_key)
            status.code = Code.OK
            self._increase_shadow_mode_stats(is_over_limit_with_local_cache, limit_info, hits_addend)

        return status

    def _check_over_limit_threshold(self, info: LimitInfo, hits_addend: int) -> None:
        stats = info.limit.stats
        if info.limit_before_increase >= info.over_limit_threshold:
            stats.over_limit.add(hits_addend)
        else:
            stats.over_limit.add(info.limit_after_increase - info.over_limit_threshold)
            stats.near_limit.add(
                info.over_limit_threshold
                - max(info.near_limit_threshold, info.limit_before_increase)
            )

    def _check_near_limit_threshold(self, info: LimitInfo, hits_addend: int) -> None:
        if info.limit_after_increase > info.near_limit_threshold:
            if info.limit_before_increase >= info.near_limit_threshold:
                info.limit.stats.near_limit.add(hits_addend)
            else:
                info.limit.stats.near_limit.add(
                    info.limit_after_increase - info.near_limit_threshold
                )

    def _increase_shadow_mode_stats(
        self, over_with_local_cache: bool, info: LimitInfo, hits_addend: int
    ) -> None:
        if over_with_local_cache or info.limit_before_increase >= info.over_limit_threshold:
            info.limit.stats.shadow_mode.add(hits_addend)
        else:
            info.limit.stats.shadow_mode.add(
                info.limit_after_increase - info.over_limit_threshold
            )

    def _status(
        self, code: Code, limit: LimitDefinition | None, remaining: int
    ) -> DescriptorStatus:
        if limit is None:
            return DescriptorStatus(code, None, remaining)
        return DescriptorStatus(code, limit, remaining, calculate_reset(limit.unit, self._now()))


class RateLimitCache(abc.ABC):
    """A cache backend that performs rate limiting for a request."""

    @abc.abstractmethod
    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[RateLimit | None]
    ) -> list[DescriptorStatus]:
        """Return one status per descriptor/limit pair; a None limit is not checked."""

    @abc.abstractmethod
    def flush(self) -> None:
        """Wait for any unfinished background work."""