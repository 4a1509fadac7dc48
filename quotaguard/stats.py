"""In-process metric primitives, rate limit stats and server request metrics."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

_MetricT = TypeVar("_MetricT", "Counter", "Gauge", "Timer")


class Counter:
    """A monotonically increasing, thread-safe counter."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0
        self._lock = threading.Lock()

    def add(self, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name!r} cannot be decreased by {amount}")
        with self._lock:
            self._value += amount

    def inc(self) -> None:
        self.add(1)

    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:
        return f"Counter({self.name!r}, {self.value()})"


class Gauge:
    """A thread-safe value that can be set to any non-negative integer."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0
        self._lock = threading.Lock()

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:
        return f"Gauge({self.name!r}, {self.value()})"


class Timer:
    """Collects timing samples; `total` is the sum of all samples recorded."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._samples: list[float] = []
        self._lock = threading.Lock()

    def add_value(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    def total(self) -> float:
        with self._lock:
            return sum(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def __repr__(self) -> str:
        return f"Timer({self.name!r}, total={self.total()})"


class _Registry:
    def __init__(self) -> None:
        self._metrics: dict[str, Counter | Gauge | Timer] = {}
        self._lock = threading.Lock()

    def get(self, kind: type[_MetricT], name: str) -> _MetricT:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = kind(name)
                self._metrics[name] = metric
            elif not isinstance(metric, kind):
                raise TypeError(
                    f"metric {name!r} is already registered as {type(metric).__name__}"
                )
            return metric


class StatsStore:
    """A named collection of metrics; scopes share the metrics of their store."""

    def __init__(self, prefix: str = "", *, _registry: _Registry | None = None) -> None:
        self.prefix = prefix
        self._registry = _registry if _registry is not None else _Registry()

    def _full_name(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def new_counter(self, name: str) -> Counter:
        return self._registry.get(Counter, self._full_name(name))

    def new_gauge(self, name: str) -> Gauge:
        return self._registry.get(Gauge, self._full_name(name))

    def new_timer(self, name: str) -> Timer:
        return self._registry.get(Timer, self._full_name(name))

    def scope(self, name: str) -> "StatsStore":
        return StatsStore(self._full_name(name), _registry=self._registry)


@dataclass
class RateLimitStats:
    """Counters kept for one rate limit key."""

    key: str
    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


class StatsManager:
    """Creates the per-key stats of rate limits inside a store."""

    def __init__(self, store: StatsStore) -> None:
        self.store = store

    def new_stats(self, key: str) -> RateLimitStats:
        def counter(suffix: str) -> Counter:
            return self.store.new_counter(f"{key}.{suffix}")

        return RateLimitStats(
            key=key,
            total_hits=counter("total_hits"),
            over_limit=counter("over_limit"),
            near_limit=counter("near_limit"),
            over_limit_with_local_cache=counter("over_limit_with_local_cache"),
            within_limit=counter("within_limit"),
            shadow_mode=counter("shadow_mode"),
        )


def split_method_name(full_method_name: str) -> tuple[str, str]:
    """Split "/Service/Method" into its service and method names."""
    name = full_method_name.removeprefix("/")
    service, sep, method = name.partition("/")
    if not sep:
        return "unknown", "unknown"
    return service, method


Handler = Callable[[Any], Any]
Interceptor = Callable[[Any, str, Handler], Any]


class ServerReporter:
    """Records request counts and response times for unary server calls."""

    def __init__(self, scope: StatsStore) -> None:
        self.scope = scope

    def unary_server_interceptor(self) -> Interceptor:
        def interceptor(request: Any, full_method: str, handler: Handler) -> Any:
            start = time.perf_counter()
            _, method = split_method_name(full_method)
            total_requests = self.scope.new_counter(f"{method}.total_requests")
            response_time = self.scope.new_timer(f"{method}.response_time")
            total_requests.inc()
            try:
                return handler(request)
            finally:
                elapsed_ms = int((time.perf_counter() - start) * 1000)
                response_time.add_value(float(elapsed_ms))

        return interceptor