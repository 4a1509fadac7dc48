"""Descriptor-based rate limiting: YAML configuration, cache keys, limit decisions and a memcached backend."""

__version__ = "0.1.0"
__all__ = [
    "stats",
    "cache_key",
    "config",
    "config_check",
    "local_cache",
    "limiter",
    "memcached",
]