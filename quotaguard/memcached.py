"""Memcached-backed rate limiting: a small text-protocol client and the limiter.

Lookups fetch all keys with one multi-get, and the increments happen in the
background, since memcached has no multi-increment. A missing key is not
created by incrementing it, so a failed increment is followed by an "add",
and a failed "add" (lost race) by another increment.

Keys longer than 250 bytes are rejected as malformed.
"""

from __future__ import annotations

import contextlib
import logging
import re
import socket
import threading
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import IO, Iterable, Iterator, Mapping, Protocol, Sequence

from quotaguard.cache_key import RateLimitRequest, TimeSource, unit_to_divider
from quotaguard.config import RateLimit
from quotaguard.limiter import BaseRateLimiter, DescriptorStatus, LimitInfo, RateLimitCache
from quotaguard.local_cache import LocalCache
from quotaguard.stats import StatsManager, StatsStore

logger = logging.getLogger(__name__)

_UINT32_MASK = 0xFFFFFFFF
_MAX_KEY_LENGTH = 250
_DECIMAL = re.compile(rb"[+-]?[0-9]+")


class MemcacheError(Exception):
    """Raised when talking to memcached fails or it is misconfigured."""


class CacheMissError(MemcacheError):
    """The requested key is not stored."""


class NotStoredError(MemcacheError):
    """An add was refused because the key already exists."""


@dataclass
class Item:
    """A value stored in memcached."""

    key: str
    value: bytes = b""
    flags: int = 0
    expiration: int = 0


class _Client(Protocol):
    def get_multi(self, keys: Sequence[str]) -> Mapping[str, Item]: ...

    def increment(self, key: str, delta: int) -> int: ...

    def add(self, item: Item) -> None: ...


class _SrvResolver(Protocol):
    def server_strings_from_srv(self, srv: str) -> Sequence[str]: ...


def _validate_address(address: str) -> str:
    if "/" in address:
        return address
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 <= int(port) <= 65535:
        raise MemcacheError(f"invalid memcache server address '{address}'")
    return address


class ServerList:
    """The set of memcached servers, replaceable while in use."""

    def __init__(self) -> None:
        self._servers: tuple[str, ...] = ()
        self._lock = threading.Lock()

    def set_servers(self, *args: str) -> None:
        """Replace the servers; nothing changes if any address is invalid."""
        servers = tuple(_validate_address(address) for address in args)
        with self._lock:
            self._servers = servers

    def servers(self) -> list[str]:
        with self._lock:
            return list(self._servers)

    def pick_server(self, key: str) -> str:
        with self._lock:
            servers = self._servers
        if not servers:
            raise MemcacheError("no servers configured or available")
        if len(servers) == 1:
            return servers[0]
        return servers[zlib.crc32(key.encode()) % len(servers)]


def _check_key(key: str) -> None:
    raw = key.encode()
    if len(raw) > _MAX_KEY_LENGTH or any(b <= 0x20 or b == 0x7F for b in raw):
        raise MemcacheError(f"malformed: key is too long or contains invalid characters: {key!r}")


def _read_line(stream: IO[bytes]) -> bytes:
    line = stream.readline()
    if not line:
        raise MemcacheError("unexpected EOF")
    line = line.rstrip(b"\r\n")
    if line == b"ERROR" or line.startswith((b"CLIENT_ERROR", b"SERVER_ERROR")):
        raise MemcacheError(f"server error: {line.decode(errors='replace')}")
    return line


class MemcacheClient:
    """A minimal memcached text-protocol client."""

    def __init__(self, servers: ServerList | Iterable[str], timeout: float = 0.5) -> None:
        if isinstance(servers, ServerList):
            self.server_list = servers
        else:
            self.server_list = ServerList()
            self.server_list.set_servers(*servers)
        self.timeout = timeout

    def _connect(self, address: str) -> socket.socket:
        if "/" in address:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(self.timeout)
            try:
                sock.connect(address)
            except OSError:
                sock.close()
                raise
            return sock
        host, _, port = address.rpartition(":")
        return socket.create_connection((host.strip("[]"), int(port)), self.timeout)

    @contextlib.contextmanager
    def _connection(self, address: str) -> Iterator[IO[bytes]]:
        try:
            sock = self._connect(address)
        except OSError as exc:
            raise MemcacheError(f"connecting to {address}: {exc}") from exc
        try:
            with sock, sock.makefile("rwb") as stream:
                yield stream
        except OSError as exc:
            raise MemcacheError(f"talking to {address}: {exc}") from exc

    def get_multi(self, keys: Sequence[str]) -> dict[str, Item]:
        """Fetch the keys that exist; missing keys are simply absent from the result."""
        by_server: dict[str, list[str]] = {}
        for key in keys:
            _check_key(key)
            by_server.setdefault(self.server_list.pick_server(key), []).append(key)

        result: dict[str, Item] = {}
        for address, server_keys in by_server.items():
            with self._connection(address) as stream:
                stream.write(b"get " + " ".join(server_keys).encode() + b"\r\n")
                stream.flush()
                while (line := _read_line(stream)) != b"END":
                    parts = line.split()
                    if len(parts) < 4 or parts[0] != b"VALUE":
                        raise MemcacheError(f"unexpected line in get response: {line!r}")
                    key, flags, size = parts[1].decode(), int(parts[2]), int(parts[3])
                    data = stream.read(size + 2)
                    if len(data) != size + 2 or not data.endswith(b"\r\n"):
                        raise MemcacheError("corrupt get result read")
                    result[key] = Item(key, data[:-2], flags)
        return result

    def increment(self, key: str, delta: int) -> int:
        """Add `delta` to a stored number and return the new value."""
        _check_key(key)
        with self._connection(self.server_list.pick_server(key)) as stream:
            stream.write(f"incr {key} {delta}\r\n".encode())
            stream.flush()
            line = _read_line(stream)
        if line == b"NOT_FOUND":
            raise CacheMissError(f"cache miss: {key}")
        if not line.isdigit():
            raise MemcacheError(f"unexpected response to incr: {line!r}")
        return int(line)

    def add(self, item: Item) -> None:
        """Store the item only if its key does not exist yet."""
        _check_key(item.key)
        with self._connection(self.server_list.pick_server(item.key)) as stream:
            header = f"add {item.key} {item.flags} {item.expiration} {len(item.value)}\r\n"
            stream.write(header.encode() + item.value + b"\r\n")
            stream.flush()
            line = _read_line(stream)
        if line == b"NOT_STORED":
            raise NotStoredError(f"item not stored: {item.key}")
        if line != b"STORED":
            raise MemcacheError(f"unexpected response to add: {line!r}")


def refresh_servers(server_list: ServerList, srv: str, resolver: _SrvResolver) -> None:
    """Replace the servers with those the SRV record names; raises and keeps them on failure."""
    servers = resolver.server_strings_from_srv(srv)
    server_list.set_servers(*servers)


def _refresh_servers_periodically(
    server_list: ServerList,
    srv: str,
    interval: float,
    resolver: _SrvResolver,
    finish: threading.Event,
) -> None:
    while not finish.wait(interval):
        try:
            refresh_servers(server_list, srv, resolver)
        except Exception:
            logger.warning("failed to refresh memcache hosts")
        else:
            logger.debug("refreshed memcache hosts")


def _client_from_srv(srv: str, refresh_interval: float, resolver: _SrvResolver) -> MemcacheClient:
    server_list = ServerList()
    try:
        refresh_servers(server_list, srv, resolver)
    except Exception as exc:
        logger.error("Unable to fetch servers from SRV")
        raise MemcacheError("Unable to fetch servers from SRV") from exc

    if refresh_interval > 0:
        logger.info("refreshing memcache hosts every: %s seconds", refresh_interval)
        thread = threading.Thread(
            target=_refresh_servers_periodically,
            args=(server_list, srv, refresh_interval, resolver, threading.Event()),
            daemon=True,
        )
        thread.start()
    else:
        logger.debug("not periodically refreshing memcached hosts")
    return MemcacheClient(server_list)


class StatsCollectingClient:
    """Wraps a client and counts the outcome of every call."""

    def __init__(self, client: _Client, scope: StatsStore) -> None:
        self.client = client
        self._multiget_success = scope.new_counter("multiget.success")
        self._multiget_error = scope.new_counter("multiget.error")
        self._increment_success = scope.new_counter("increment.success")
        self._increment_miss = scope.new_counter("increment.miss")
        self._increment_error = scope.new_counter("increment.error")
        self._add_success = scope.new_counter("add.success")
        self._add_error = scope.new_counter("add.error")
        self._add_not_stored = scope.new_counter("add.not_stored")
        self._keys_requested = scope.new_counter("keys_requested")
        self._keys_found = scope.new_counter("keys_found")

    def get_multi(self, keys: Sequence[str]) -> Mapping[str, Item]:
        self._keys_requested.add(len(keys))
        try:
            results = self.client.get_multi(keys)
        except Exception:
            self._multiget_error.inc()
            raise
        self._keys_found.add(len(results))
        self._multiget_success.inc()
        return results

    def increment(self, key: str, delta: int) -> int:
        try:
            value = self.client.increment(key, delta)
        except CacheMissError:
            self._increment_miss.inc()
            raise
        except Exception:
            self._increment_error.inc()
            raise
        self._increment_success.inc()
        return value

    def add(self, item: Item) -> None:
        try:
            self.client.add(item)
        except NotStoredError:
            self._add_not_stored.inc()
            raise
        except Exception:
            self._add_error.inc()
            raise
        self._add_success.inc()


def _parse_counter(item: Item) -> int | None:
    if not _DECIMAL.fullmatch(item.value):
        return None
    decoded = int(item.value)
    if not -(2**31) <= decoded < 2**31:
        return None
    return decoded & _UINT32_MASK


class MemcacheRateLimitCache(RateLimitCache):
    """Rate limiting against memcached with background increments."""

    def __init__(
        self,
        client: _Client,
        time_source: TimeSource,
        jitter_rand,
        expiration_jitter_max_seconds: int,
        local_cache: LocalCache | None,
        stats_manager: StatsManager,
        near_limit_ratio: float,
        cache_key_prefix: str,
        *,
        auto_flush: bool = False,
        max_workers: int = 4,
    ) -> None:
        self.client = client
        self.jitter_rand = jitter_rand
        self.expiration_jitter_max_seconds = expiration_jitter_max_seconds
        self.auto_flush = auto_flush
        self.base_rate_limiter = BaseRateLimiter(
            time_source,
            jitter_rand,
            expiration_jitter_max_seconds,
            local_cache,
            near_limit_ratio,
            cache_key_prefix,
            stats_manager,
        )
        self._executor = ThreadPoolExecutor(max_workers, thread_name_prefix="memcache-increment")
        self._pending = 0
        self._idle = threading.Condition()

    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[RateLimit | None]
    ) -> list[DescriptorStatus]:
        logger.debug("starting cache lookup")
        # An unset hits_addend arrives as 0.
        hits_addend = max(1, request.hits_addend)
        base = self.base_rate_limiter
        cache_keys = base.generate_cache_keys(request, limits, hits_addend)

        over_with_local_cache = [False] * len(cache_keys)
        keys_to_get = []
        for index, cache_key in enumerate(cache_keys):
            if not cache_key.key:
                continue
            if base.is_over_limit_with_local_cache(cache_key.key):
                over_with_local_cache[index] = True
                logger.debug("cache key is over the limit: %s", cache_key.key)
                continue
            logger.debug("looking up cache key: %s", cache_key.key)
            keys_to_get.append(cache_key.key)

        values: Mapping[str, Item] = {}
        if keys_to_get:
            try:
                values = self.client.get_multi(keys_to_get)
            except Exception as exc:
                logger.error("Error multi-getting memcache keys (%s): %s", keys_to_get, exc)

        statuses = []
        for index, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
            before = 0
            item = values.get(cache_key.key)
            if item is not None:
                parsed = _parse_counter(item)
                if parsed is None:
                    logger.error("Unexpected non-numeric value in memcached: %r", item)
                else:
                    before = parsed
            after = (before + hits_addend) & _UINT32_MASK
            info = LimitInfo(limit, before, after) if limit is not None else None
            statuses.append(
                base.get_response_descriptor_status(
                    cache_key.key, info, over_with_local_cache[index], hits_addend
                )
            )

        with self._idle:
            self._pending += 1
        self._executor.submit(
            self._increase_async, cache_keys, over_with_local_cache, list(limits), hits_addend
        )
        if self.auto_flush:
            self.flush()
        return statuses

    def _increase_async(self, cache_keys, over_with_local_cache, limits, hits_addend) -> None:
        try:
            for cache_key, skip, limit in zip(cache_keys, over_with_local_cache, limits):
                if not cache_key.key or skip or limit is None:
                    continue
                self._increase_one(cache_key.key, limit, hits_addend)
        finally:
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()

    def _increase_one(self, key: str, limit: RateLimit, hits_addend: int) -> None:
        try:
            self.client.increment(key, hits_addend)
            return
        except CacheMissError:
            pass
        except Exception as exc:
            logger.error("Failed to increment key %s: %s", key, exc)
            return

        expiration = unit_to_divider(limit.limit.unit)
        if self.expiration_jitter_max_seconds > 0:
            expiration += self.jitter_rand.randrange(self.expiration_jitter_max_seconds)
        try:
            self.client.add(Item(key, str(hits_addend).encode(), 0, expiration))
        except NotStoredError:
            # Lost a race to add the key; it exists now, so increment it.
            try:
                self.client.increment(key, hits_addend)
            except Exception as exc:
                logger.error("Failed to increment key %s after failing to add: %s", key, exc)
        except Exception as exc:
            logger.error("Failed to add key %s: %s", key, exc)

    def flush(self) -> None:
        with self._idle:
            self._idle.wait_for(lambda: self._pending == 0)

    def close(self) -> None:
        """Finish pending work and stop the background workers."""
        self.flush()
        self._executor.shutdown(wait=True)