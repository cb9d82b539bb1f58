"""Metrics kept by the tunnel client."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, Optional

from .metrics import (
    CounterVec,
    GaugeVec,
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
SUBSYSTEM = "client"


class DialFailureReason(str, Enum):
    """Why a dial through the tunnel failed."""

    UNKNOWN = "unknown"
    TIMEOUT = "timeout"
    CONTEXT = "context"
    ENDPOINT = "endpoint"
    DIAL_CLOSED = "dialclosed"
    TUNNEL_CLOSED = "tunnelclosed"
    ALREADY_STARTED = "tunnelstarted"

    def __str__(self) -> str:
        return self.value


class ClientConnectionStatus(str, Enum):
    """Lifecycle state of a client connection."""

    CREATED = "created"
    DIALING = "dialing"
    OK = "ok"
    CLOSING = "closing"

    def __str__(self) -> str:
        return self.value


class ClientMetrics:
    """All metrics of the tunnel client; registration happens at most once."""

    def __init__(self) -> None:
        self._register_lock = threading.Lock()
        self._registered = False
        self.stream_packets = make_stream_packets_total_metric(NAMESPACE, SUBSYSTEM)
        self.stream_errors = make_stream_errors_total_metric(NAMESPACE, SUBSYSTEM)
        self.dial_failures = CounterVec(
            "dial_failure_total",
            "Number of dial failures observed, by reason (example: remote endpoint error)",
            ("reason",),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
        )
        self.client_connections = GaugeVec(
            "client_connections",
            "Number of open client connections, by status (Example: dialing)",
            ("status",),
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
        )

    def _collectors(self):
        return (self.stream_packets, self.stream_errors, self.dial_failures, self.client_connections)

    def _register_once(self, register: Callable[..., None]) -> None:
        with self._register_lock:
            if self._registered:
                return
            self._registered = True
            for collector in self._collectors():
                register(collector)

    def register_metrics(self, registry: Registry) -> None:
        self._register_once(registry.must_register)

    def legacy_register_metrics(self, must_register_fn: Callable[..., None]) -> None:
        self._register_once(must_register_fn)

    def reset(self) -> None:
        for collector in self._collectors():
            collector.reset()

    def observe_dial_failure(self, reason: DialFailureReason) -> None:
        self.dial_failures.with_label_values(DialFailureReason(reason).value).inc()

    def observe_packet(self, segment: Segment, packet_type: PacketType) -> None:
        observe_packet(self.stream_packets, segment, packet_type)

    def observe_stream_error_no_packet(self, segment: Segment, err: Optional[BaseException]) -> None:
        observe_stream_error_no_packet(self.stream_errors, segment, err)

    def observe_stream_error(
        self, segment: Segment, err: Optional[BaseException], packet_type: PacketType
    ) -> None:
        observe_stream_error(self.stream_errors, segment, err, packet_type)


CLIENT_METRICS = ClientMetrics()