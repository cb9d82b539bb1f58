"""Agent-side bookkeeping for connections to the node network."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from .agent_metrics import AGENT_METRICS, AgentMetrics

logger = logging.getLogger(__name__)

XFR_CHANNEL_SIZE = 150
"""Number of payload chunks queued per endpoint connection."""


class _DataChannel:
    """Bounded FIFO of payload chunks; writers block while it is full."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._cond = threading.Condition()
        self._items: Deque[bytes] = deque()
        self._closed = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, msg: bytes) -> bool:
        """Queue ``msg``, waiting for room; False if the channel is closed."""
        with self._cond:
            self._cond.wait_for(lambda: self._closed or len(self._items) < self.capacity)
            if self._closed:
                return False
            self._items.append(msg)
            self._cond.notify_all()
            return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[bytes]:
        """Yield chunks until the channel is closed and drained."""
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._closed or self._items)
                if not self._items:
                    return
                item = self._items.popleft()
                self._cond.notify_all()
            yield item


class EndpointConn:
    """A connection from the agent to an endpoint on the node network."""

    def __init__(
        self,
        conn_id: int = 0,
        conn: Any = None,
        clean_func: Optional[Callable[[], None]] = None,
        warn_ch_lim: bool = False,
        capacity: int = XFR_CHANNEL_SIZE,
    ) -> None:
        self.conn = conn
        self.conn_id = conn_id
        self.clean_func = clean_func
        self.warn_ch_lim = warn_ch_lim
        self.data_ch = _DataChannel(capacity)
        self.dial_done = threading.Event()
        self._clean_lock = threading.Lock()
        self._cleaned = False

    def cleanup(self) -> None:
        """Run the clean-up function, at most once over the connection's life."""
        with self._clean_lock:
            if self._cleaned:
                return
            self._cleaned = True
            if self.clean_func is not None:
                self.clean_func()

    def send(self, msg: bytes) -> None:
        """Queue data for the endpoint; data for a closed connection is dropped."""
        if self.warn_ch_lim and len(self.data_ch) >= self.data_ch.capacity:
            logger.info("Data channel on agent is full connectionID=%s", self.conn_id)
        if not self.data_ch.put(msg):
            logger.info("Recovered from attempt to write to closed channel")


class ConnectionManager:
    """Thread-safe map of connection IDs to endpoint connections."""

    def __init__(self, metrics: Optional[AgentMetrics] = None) -> None:
        self._metrics = metrics if metrics is not None else AGENT_METRICS
        self._lock = threading.RLock()
        self._connections: Dict[int, EndpointConn] = {}

    def add(self, conn_id: int, endpoint: EndpointConn) -> None:
        with self._lock:
            self._metrics.endpoint_connection_inc()
            self._connections[conn_id] = endpoint

    def get(self, conn_id: int) -> Optional[EndpointConn]:
        with self._lock:
            return self._connections.get(conn_id)

    def delete(self, conn_id: int) -> None:
        # Called from an endpoint's clean-up, which runs only once per connection.
        with self._lock:
            self._metrics.endpoint_connection_dec()
            self._connections.pop(conn_id, None)

    def list(self) -> List[EndpointConn]:
        with self._lock:
            return list(self._connections.values())