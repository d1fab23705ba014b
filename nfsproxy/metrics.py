"""Thread-safe metric collectors rendered in the Prometheus text format."""

from __future__ import annotations

import bisect
import itertools
import math
import threading
from dataclasses import dataclass
from typing import Iterable, Protocol

DELAY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30)
ROUNDTRIP_BUCKETS = (
    0.0001,
    0.00025,
    0.0005,
    0.001,
    0.005,
    0.01,
    0.05,
    0.1,
    0.25,
    0.5,
    1,
    2,
    5,
    10,
    30,
)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{name}="{_escape_label(value)}"' for name, value in pairs)
    return f"{{{body}}}" if body else ""


class Counter:
    """A monotonically increasing value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self) -> None:
        """Increase the counter by one."""
        self.add(1.0)

    def add(self, amount: float) -> None:
        """Increase the counter by a non-negative amount."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += float(amount)


class Histogram:
    """Counts observations into fixed upper-bound buckets."""

    def __init__(self, buckets: Iterable[float]) -> None:
        bounds = tuple(float(b) for b in buckets)
        if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in strictly increasing order")
        self._bounds = bounds
        self._lock = threading.Lock()
        self._per_bucket = [0] * len(bounds)
        self._count = 0
        self._sum = 0.0

    def observe(self, value: float) -> None:
        """Record one observation."""
        value = float(value)
        index = bisect.bisect_left(self._bounds, value)
        with self._lock:
            if index < len(self._per_bucket):
                self._per_bucket[index] += 1
            self._count += 1
            self._sum += value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """Upper bounds paired with cumulative observation counts."""
        with self._lock:
            counts = list(itertools.accumulate(self._per_bucket))
        return list(zip(self._bounds, counts))


class _MetricVec:
    kind = "untyped"

    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], object] = {}

    def _new_child(self) -> object:
        raise NotImplementedError

    def _child(self, values: tuple) -> object:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(values)}"
            )
        key = tuple(str(v) for v in values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
        return child

    def _sample_lines(self, labels: list[tuple[str, str]], child: object) -> list[str]:
        raise NotImplementedError

    def _render(self) -> str:
        with self._lock:
            children = sorted(self._children.items())
        if not children:
            return ""
        lines = [
            f"# HELP {self.name} {_escape_help(self.help)}",
            f"# TYPE {self.name} {self.kind}",
        ]
        for values, child in children:
            lines.extend(self._sample_lines(list(zip(self.label_names, values)), child))
        return "\n".join(lines) + "\n"


class CounterVec(_MetricVec):
    """A family of counters partitioned by label values."""

    kind = "counter"

    def _new_child(self) -> Counter:
        return Counter()

    def labels(self, *args: str) -> Counter:
        """Return the counter for the given label values, creating it if needed."""
        return self._child(args)

    def _sample_lines(self, labels: list[tuple[str, str]], child: Counter) -> list[str]:
        return [f"{self.name}{_label_text(labels)} {_format_float(child.value)}"]

    def render(self) -> str:
        """Render the family in text exposition format; empty when it has no series."""
        return self._render()


class HistogramVec(_MetricVec):
    """A family of histograms partitioned by label values."""

    kind = "histogram"

    def __init__(
        self, name: str, help: str, label_names: Iterable[str], buckets: Iterable[float]
    ) -> None:
        super().__init__(name, help, label_names)
        self.bucket_bounds = tuple(float(b) for b in buckets)
        Histogram(self.bucket_bounds)  # validates ordering up front

    def _new_child(self) -> Histogram:
        return Histogram(self.bucket_bounds)

    def labels(self, *args: str) -> Histogram:
        """Return the histogram for the given label values, creating it if needed."""
        return self._child(args)

    def _sample_lines(self, labels: list[tuple[str, str]], child: Histogram) -> list[str]:
        with child._lock:
            total = child._count
            total_sum = child._sum
            cumulative = list(itertools.accumulate(child._per_bucket))
        lines = [
            f"{self.name}_bucket{_label_text(labels + [('le', _format_float(bound))])} {count}"
            for bound, count in zip(self.bucket_bounds, cumulative)
        ]
        lines.append(f"{self.name}_bucket{_label_text(labels + [('le', '+Inf')])} {total}")
        lines.append(f"{self.name}_sum{_label_text(labels)} {_format_float(total_sum)}")
        lines.append(f"{self.name}_count{_label_text(labels)} {total}")
        return lines

    def render(self) -> str:
        """Render the family in text exposition format; empty when it has no series."""
        return self._render()


class _Collector(Protocol):
    name: str

    def render(self) -> str: ...


class Registry:
    """A set of uniquely named collectors."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collectors: dict[str, _Collector] = {}

    def register(self, collector: _Collector) -> None:
        """Add a collector; a second collector with the same name is an error."""
        with self._lock:
            if collector.name in self._collectors:
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {collector.name}"
                )
            self._collectors[collector.name] = collector

    def exposition(self) -> str:
        """Render every registered collector, ordered by metric name."""
        with self._lock:
            collectors = [self._collectors[name] for name in sorted(self._collectors)]
        return "".join(collector.render() for collector in collectors)


@dataclass(frozen=True)
class MetricSet:
    """The proxy's metrics."""

    rpc_delay_applied_total: CounterVec
    rpc_delay_seconds_total: CounterVec
    rpc_delay_injected_seconds: HistogramVec
    rpc_drop_applied_total: CounterVec
    call_forwarded_total: CounterVec
    rpc_backend_roundtrip_seconds: HistogramVec
    rpc_roundtrip_seconds: HistogramVec


def new_metric_set(registry: Registry) -> MetricSet:
    """Create the proxy's metrics and register them with ``registry``."""
    metrics = MetricSet(
        rpc_delay_applied_total=CounterVec(
            "rpc_injection_delay_applied_total",
            "Count of injected RPC reply delays",
            ["procedure"],
        ),
        rpc_delay_seconds_total=CounterVec(
            "rpc_injection_delay_seconds_total",
            "Total injected RPC delay seconds",
            ["procedure", "mode"],
        ),
        rpc_delay_injected_seconds=HistogramVec(
            "rpc_injection_delay_seconds",
            "Distribution of injected RPC delay seconds",
            ["procedure", "mode"],
            DELAY_BUCKETS,
        ),
        rpc_drop_applied_total=CounterVec(
            "rpc_injection_drop_applied_total",
            "Count of injected RPC connection drops",
            ["procedure"],
        ),
        call_forwarded_total=CounterVec(
            "rpc_call_forwarded_total",
            "Count of forwarded RPC calls for NFS program",
            ["procedure"],
        ),
        rpc_backend_roundtrip_seconds=HistogramVec(
            "rpc_backend_roundtrip_seconds",
            "Observed backend RPC round-trip time in proxy (forward call to backend reply)",
            ["program", "procedure"],
            ROUNDTRIP_BUCKETS,
        ),
        rpc_roundtrip_seconds=HistogramVec(
            "rpc_roundtrip_seconds",
            "Observed client-visible end-to-end RPC round-trip time in proxy "
            "(forward call to client reply, includes injected delay)",
            ["program", "procedure"],
            ROUNDTRIP_BUCKETS,
        ),
    )
    for collector in (
        metrics.rpc_delay_applied_total,
        metrics.rpc_delay_seconds_total,
        metrics.rpc_delay_injected_seconds,
        metrics.rpc_drop_applied_total,
        metrics.call_forwarded_total,
        metrics.rpc_backend_roundtrip_seconds,
        metrics.rpc_roundtrip_seconds,
    ):
        registry.register(collector)
    return metrics