"""A stream connection carried over a proxy tunnel."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Optional, Protocol

from .packet import Packet, close_dial_packet, close_request_packet, data_packet

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT = 10.0
"""Seconds to wait for CLOSE_RSP after CLOSE_REQ was delivered."""

READ_BUFFER_SIZE = 10
"""Number of received chunks held before the tunnel has to wait."""

_POLL_INTERVAL = 0.05


class TunnelClosedError(ConnectionError):
    """The tunnel finished before the connection was confirmed closed."""

    def __init__(self, message: str = "tunnel closed") -> None:
        super().__init__(message)


class CloseTimeoutError(ConnectionError):
    """No close confirmation arrived in time."""

    def __init__(self, message: str = "close timeout") -> None:
        super().__init__(message)


class _TunnelLike(Protocol):
    def send(self, packet: Packet) -> None: ...

    def wait_done(self, timeout: Optional[float] = None) -> bool: ...

    def _close_tunnel(self) -> None: ...


class _ReadBuffer:
    """Bounded FIFO of received chunks that can be closed by the producer."""

    def __init__(self, capacity: int) -> None:
        self._cond = threading.Condition()
        self._items: Deque[bytes] = deque()
        self._capacity = capacity
        self._closed = False

    def push(self, data: bytes, timeout: Optional[float] = None) -> bool:
        """Queue ``data``; False if the buffer stayed full or is closed."""
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed or len(self._items) < self._capacity, timeout
            )
            if not ready or self._closed:
                return False
            self._items.append(data)
            self._cond.notify_all()
            return True

    def pop(self) -> Optional[bytes]:
        """Next chunk, or None once the buffer is closed and drained."""
        with self._cond:
            self._cond.wait_for(lambda: self._closed or self._items)
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class Conn:
    """A connection whose bytes travel as DATA packets through a tunnel."""

    def __init__(
        self,
        tunnel: _TunnelLike,
        random: int,
        connect_id: int = 0,
        close_timeout: float = CLOSE_TIMEOUT,
    ) -> None:
        self.tunnel = tunnel
        self.random = random
        self.connect_id = connect_id
        self.close_timeout = close_timeout
        self.local_address = None
        self.remote_address = None
        self._reads = _ReadBuffer(READ_BUFFER_SIZE)
        self._pending: Optional[bytes] = None
        self._close_done = threading.Event()
        self._close_error = ""
        self._closing_lock = threading.Lock()
        self._closing = False

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _deliver(self, data: bytes, timeout: Optional[float] = None) -> bool:
        """Hand received bytes to the reader; False if they could not be queued."""
        return self._reads.push(bytes(data), timeout)

    def _close_reads(self) -> None:
        """Mark the end of the incoming byte stream."""
        self._reads.close()

    def _finish_close(self, error: str = "") -> None:
        """Record the far side's close confirmation."""
        self._close_error = error
        self._close_done.set()

    def write(self, data: bytes) -> int:
        """Send ``data`` through the tunnel and return its length."""
        self.tunnel.send(data_packet(self.connect_id, data))
        return len(data)

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; an empty result means end of stream."""
        data = self._pending if self._pending is not None else self._reads.pop()
        if data is None:
            return b""
        if len(data) > size:
            self._pending = data[size:]
            return data[:size]
        self._pending = None
        return data

    def close(self) -> None:
        """Ask the far side to close, wait for confirmation and shut the tunnel."""
        with self._closing_lock:
            if self._closing:
                return
            self._closing = True
        logger.debug("closing connection dialID=%s connectionID=%s", self.random, self.connect_id)
        try:
            try:
                if self.connect_id:
                    self.tunnel.send(close_request_packet(self.connect_id))
                else:
                    self.tunnel.send(close_dial_packet(self.random))
            except Exception as err:  # best effort, as the wait below decides the outcome
                logger.debug("sending close failed: %s", err)
            self._await_close()
        finally:
            self.tunnel._close_tunnel()

    def _await_close(self) -> None:
        deadline = time.monotonic() + self.close_timeout
        while True:
            if self._close_done.is_set():
                if self._close_error:
                    raise ConnectionError(self._close_error)
                return
            if self.tunnel.wait_done(0):
                raise TunnelClosedError()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CloseTimeoutError()
            self._close_done.wait(min(_POLL_INTERVAL, remaining))