"""Metrics kept by the proxy agent."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Optional, Union

from .metrics import (
    DEFAULT_REGISTRY,
    CounterVec,
    GaugeVec,
    HistogramVec,
    Registry,
    Segment,
    make_stream_errors_total_metric,
    make_stream_packets_total_metric,
    observe_packet,
    observe_stream_error,
    observe_stream_error_no_packet,
)
from .packet import PacketType

NAMESPACE = "konnectivity_network_proxy"
SUBSYSTEM = "agent"

# Buckets ranging from 5 ms to 30 seconds.
LATENCY_BUCKETS = (0.005, 0.025, 0.1, 0.5, 2.5, 10, 30)


class Direction(str, Enum):
    """Whether the agent was sending to or receiving from the proxy server."""

    TO_SERVER = "to_server"
    FROM_SERVER = "from_server"

    def __str__(self) -> str:
        return self.value


class AgentDialFailureReason(str, Enum):
    """Why dialing the remote endpoint failed."""

    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class AgentMetrics:
    """All metrics of the proxy agent."""

    def __init__(self) -> None:
        self.dial_latencies = HistogramVec(
            "dial_duration_seconds",
            "Latency of dial to the remote endpoint in seconds",
            (),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
            buckets=LATENCY_BUCKETS,
        )
        self.server_failures = CounterVec(
            "server_connection_failure_count",
            "Count of failures to send to or receive from the proxy server, labeled by the "
            "direction (from_server or to_server). DEPRECATED, please use stream_events_error_total",
            ("direction",),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
        )
        self.dial_failures = CounterVec(
            "endpoint_dial_failure_total",
            "Number of failures dialing the remote endpoint, by reason (example: timeout).",
            ("reason",),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
        )
        self.server_connections = GaugeVec(
            "open_server_connections",
            "Current number of open server connections.",
            (),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
        )
        self.endpoint_connections = GaugeVec(
            "open_endpoint_connections",
            "Current number of open endpoint connections.",
            (),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
        )
        self.stream_packets = make_stream_packets_total_metric(NAMESPACE, SUBSYSTEM)
        self.stream_errors = make_stream_errors_total_metric(NAMESPACE, SUBSYSTEM)

    def _collectors(self):
        return (
            self.dial_latencies,
            self.server_failures,
            self.dial_failures,
            self.server_connections,
            self.endpoint_connections,
            self.stream_packets,
            self.stream_errors,
        )

    def register_metrics(self, registry: Registry) -> None:
        registry.must_register(*self._collectors())

    def reset(self) -> None:
        for collector in self._collectors():
            collector.reset()

    def observe_server_failure_deprecated(self, direction: Direction) -> None:
        self.server_failures.with_label_values(Direction(direction).value).inc()

    def observe_dial_latency(self, elapsed: Union[timedelta, float]) -> None:
        seconds = elapsed.total_seconds() if isinstance(elapsed, timedelta) else float(elapsed)
        self.dial_latencies.with_label_values().observe(seconds)

    def observe_dial_failure(self, reason: AgentDialFailureReason) -> None:
        self.dial_failures.with_label_values(AgentDialFailureReason(reason).value).inc()

    def set_server_connections_count(self, count: int) -> None:
        self.server_connections.with_label_values().set(float(count))

    def endpoint_connection_inc(self) -> None:
        self.endpoint_connections.with_label_values().inc()

    def endpoint_connection_dec(self) -> None:
        self.endpoint_connections.with_label_values().dec()

    def observe_packet(self, segment: Segment, packet_type: PacketType) -> None:
        observe_packet(self.stream_packets, segment, packet_type)

    def observe_stream_error_no_packet(
        self, segment: Segment, err: Optional[BaseException]
    ) -> None:
        observe_stream_error_no_packet(self.stream_errors, segment, err)

    def observe_stream_error(
        self, segment: Segment, err: Optional[BaseException], packet_type: PacketType
    ) -> None:
        observe_stream_error(self.stream_errors, segment, err, packet_type)


AGENT_METRICS = AgentMetrics()
AGENT_METRICS.register_metrics(DEFAULT_REGISTRY)