"""Metric primitives and stream metric helpers shared by client and agent."""

from __future__ import annotations

import math
import threading
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .packet import PacketType

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)


class Segment(str, Enum):
    """One of the four tunnel segments."""

    FROM_CLIENT = "from_client"
    TO_CLIENT = "to_client"
    FROM_AGENT = "from_agent"
    TO_AGENT = "to_agent"

    def __str__(self) -> str:
        return self.value


class StreamError(Exception):
    """A stream failure carrying a status code name such as ``Unavailable``."""

    def __init__(self, message: str = "", code: str = "Unknown") -> None:
        super().__init__(message)
        self.code = code


def status_code(err: Optional[BaseException]) -> str:
    """Return the status code name describing ``err``."""
    if err is None:
        return "OK"
    if isinstance(err, StreamError):
        return err.code
    return "Unknown"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts of a metric name with underscores."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


class Counter:
    """A monotonically increasing value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class Gauge:
    """A value that can go up and down."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self) -> None:
        with self._lock:
            self._value += 1

    def dec(self) -> None:
        with self._lock:
            self._value -= 1

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)


class Histogram:
    """Counts observations into cumulative buckets."""

    def __init__(self, buckets: Iterable[float] = DEFAULT_BUCKETS) -> None:
        self._lock = threading.Lock()
        self._bounds = tuple(sorted(float(b) for b in buckets))
        self._counts = [0] * len(self._bounds)
        self.sum = 0.0
        self.count = 0

    @property
    def buckets(self) -> List[Tuple[float, int]]:
        """Upper bounds paired with cumulative counts."""
        return list(zip(self._bounds, self._counts))

    def observe(self, value: float) -> None:
        with self._lock:
            for i, bound in enumerate(self._bounds):
                if value <= bound:
                    self._counts[i] += 1
            self.sum += value
            self.count += 1


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class _MetricVec:
    _kind = ""

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Sequence[str] = (),
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        self.fq_name = build_fq_name(namespace, subsystem, name)
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        self._children: Dict[Tuple[str, ...], object] = {}

    def _new_child(self):
        raise NotImplementedError

    def with_label_values(self, *args: str):
        if len(args) != len(self.label_names):
            raise ValueError(
                f"inconsistent label cardinality: expected {len(self.label_names)} "
                f"label values but got {len(args)}"
            )
        key = tuple(str(a) for a in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
            return child

    def reset(self) -> None:
        with self._lock:
            self._children.clear()

    def _sorted_children(self):
        with self._lock:
            return sorted(self._children.items())

    def samples(self) -> List[Tuple[str, Dict[str, str], float]]:
        """Return ``(name, labels, value)`` tuples for every child."""
        return [
            (self.fq_name, dict(zip(self.label_names, key)), child.value)
            for key, child in self._sorted_children()
        ]

    def expose(self) -> str:
        """Render the metric in the text exposition format."""
        samples = self.samples()
        if not samples:
            return ""
        lines = [
            f"# HELP {self.fq_name} {_escape_help(self.help)}",
            f"# TYPE {self.fq_name} {self._kind}",
        ]
        for name, labels, value in samples:
            if labels:
                rendered = ",".join(f'{k}="{_escape_label(v)}"' for k, v in labels.items())
                lines.append(f"{name}{{{rendered}}} {_format_value(value)}")
            else:
                lines.append(f"{name} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class CounterVec(_MetricVec):
    """Counters partitioned by label values."""

    _kind = "counter"

    def _new_child(self) -> Counter:
        return Counter()

    def with_label_values(self, *args: str) -> Counter:
        return super().with_label_values(*args)

    def reset(self) -> None:
        super().reset()

    def samples(self) -> List[Tuple[str, Dict[str, str], float]]:
        return super().samples()

    def expose(self) -> str:
        return super().expose()


class GaugeVec(_MetricVec):
    """Gauges partitioned by label values."""

    _kind = "gauge"

    def _new_child(self) -> Gauge:
        return Gauge()

    def with_label_values(self, *args: str) -> Gauge:
        return super().with_label_values(*args)

    def reset(self) -> None:
        super().reset()

    def samples(self) -> List[Tuple[str, Dict[str, str], float]]:
        return super().samples()

    def expose(self) -> str:
        return super().expose()


class HistogramVec(_MetricVec):
    """Histograms partitioned by label values."""

    _kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Sequence[str] = (),
        namespace: str = "",
        subsystem: str = "",
        buckets: Optional[Iterable[float]] = None,
    ) -> None:
        super().__init__(name, help, label_names, namespace, subsystem)
        self.buckets = tuple(buckets) if buckets is not None else DEFAULT_BUCKETS

    def _new_child(self) -> Histogram:
        return Histogram(self.buckets)

    def with_label_values(self, *args: str) -> Histogram:
        return super().with_label_values(*args)

    def reset(self) -> None:
        super().reset()

    def samples(self) -> List[Tuple[str, Dict[str, str], float]]:
        result = []
        for key, child in self._sorted_children():
            labels = dict(zip(self.label_names, key))
            for bound, count in child.buckets:
                result.append(
                    (f"{self.fq_name}_bucket", {**labels, "le": _format_value(bound)}, count)
                )
            result.append((f"{self.fq_name}_bucket", {**labels, "le": "+Inf"}, child.count))
            result.append((f"{self.fq_name}_sum", dict(labels), child.sum))
            result.append((f"{self.fq_name}_count", dict(labels), child.count))
        return result

    def expose(self) -> str:
        return super().expose()


class Registry:
    """A set of collectors that can be rendered together."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collectors: Dict[str, _MetricVec] = {}

    def register(self, collector: _MetricVec) -> None:
        with self._lock:
            if collector.fq_name in self._collectors:
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {collector.fq_name}"
                )
            self._collectors[collector.fq_name] = collector

    def must_register(self, *args: _MetricVec) -> None:
        for collector in args:
            self.register(collector)

    def gather(self, *args: str) -> str:
        """Render registered metrics, limited to the given names if any."""
        with self._lock:
            collectors = sorted(self._collectors.items())
        return "".join(c.expose() for name, c in collectors if not args or name in args)


DEFAULT_REGISTRY = Registry()

MustRegisterFn = Callable[..., None]


def make_stream_packets_total_metric(namespace: str, subsystem: str) -> CounterVec:
    return CounterVec(
        "stream_packets_total",
        "Count of packets processed, by segment and packet type (example: from_client, DIAL_REQ)",
        ("segment", "packet_type"),
        namespace=namespace,
        subsystem=subsystem,
    )


def make_stream_errors_total_metric(namespace: str, subsystem: str) -> CounterVec:
    return CounterVec(
        "stream_errors_total",
        "Count of gRPC stream errors, by segment, grpc Code, packet type. "
        "(example: from_agent, Code.Unavailable, DIAL_RSP)",
        ("segment", "code", "packet_type"),
        namespace=namespace,
        subsystem=subsystem,
    )


def observe_packet(metric: CounterVec, segment: Segment, packet_type: PacketType) -> None:
    metric.with_label_values(Segment(segment).value, PacketType(packet_type).name).inc()


def observe_stream_error_no_packet(
    metric: CounterVec, segment: Segment, err: Optional[BaseException]
) -> None:
    metric.with_label_values(Segment(segment).value, status_code(err), "Unknown").inc()


def observe_stream_error(
    metric: CounterVec,
    segment: Segment,
    err: Optional[BaseException],
    packet_type: PacketType,
) -> None:
    metric.with_label_values(
        Segment(segment).value, status_code(err), PacketType(packet_type).name
    ).inc()