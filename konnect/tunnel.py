"""Single-use tunnel that dials one connection through a proxy stream."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from .client_metrics import (
    CLIENT_METRICS,
    ClientConnectionStatus,
    ClientMetrics,
    DialFailureReason,
)
from .conn import CLOSE_TIMEOUT, Conn
from .metrics import Segment
from .packet import (
    CloseDial,
    CloseResponse,
    Data,
    DialResponse,
    Packet,
    PacketType,
    close_dial_packet,
    close_request_packet,
    dial_request_packet,
)

logger = logging.getLogger(__name__)

READ_TIMEOUT = 10.0
"""Seconds the reader may lag behind before the tunnel is closed."""

DIAL_TIMEOUT = 30.0
"""Hard limit in seconds on waiting for a dial response."""

_POLL_INTERVAL = 0.02

_rng = random.Random()


class Stream(Protocol):
    """A bidirectional packet stream; ``recv`` raises EOFError at end of stream."""

    def send(self, packet: Packet) -> None: ...

    def recv(self) -> Optional[Packet]: ...


class ClientConn(Protocol):
    """The transport underneath a stream."""

    def close(self) -> None: ...


class DialFailure(ConnectionError):
    """A dial through the tunnel failed for a known reason."""

    def __init__(self, message: str, reason: DialFailureReason) -> None:
        super().__init__(message)
        self.reason = DialFailureReason(reason)


def get_dial_failure_reason(err: Optional[BaseException]) -> Tuple[bool, DialFailureReason]:
    """Find a DialFailure in ``err`` or its causes and return its reason."""
    seen = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, DialFailure):
            return True, err.reason
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return False, DialFailureReason.UNKNOWN


def _is_set(event: Optional[threading.Event]) -> bool:
    return event is not None and event.is_set()


@dataclass
class _DialResult:
    connect_id: int = 0
    error: Optional[DialFailure] = None


class _PendingDial:
    """Hand-off point between the serving loop and a waiting dial."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._result: Optional[_DialResult] = None
        self._cancelled = False

    def deliver(self, result: _DialResult) -> bool:
        """Pass ``result`` to the dialer; False if it has stopped waiting."""
        with self._cond:
            if self._cancelled:
                return False
            self._result = result
            self._cond.notify_all()
            return True

    def wait(self, timeout: float) -> Optional[_DialResult]:
        with self._cond:
            self._cond.wait_for(lambda: self._result is not None, timeout)
            return self._result

    def cancel(self) -> Optional[_DialResult]:
        """Stop accepting results; return one that already arrived."""
        with self._cond:
            self._cancelled = True
            return self._result


class Tunnel:
    """A tunnel that carries exactly one dialed connection over a stream."""

    def __init__(
        self,
        stream: Stream,
        client_conn: ClientConn,
        metrics: Optional[ClientMetrics] = None,
        read_timeout: float = READ_TIMEOUT,
        dial_timeout: float = DIAL_TIMEOUT,
        close_timeout: float = CLOSE_TIMEOUT,
    ) -> None:
        self._stream = stream
        self._client_conn = client_conn
        self._metrics = metrics if metrics is not None else CLIENT_METRICS
        self.read_timeout = read_timeout
        self.dial_timeout = dial_timeout
        self.close_timeout = close_timeout
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: Dict[int, _PendingDial] = {}
        self._conns_lock = threading.Lock()
        self._conns: Dict[int, Conn] = {}
        self._done = threading.Event()
        self._flags_lock = threading.Lock()
        self._started = False
        self._closing = False
        self._status_lock = threading.Lock()
        self._status = ClientConnectionStatus.CREATED
        self._metrics.client_connections.with_label_values(self._status.value).inc()

    @property
    def done(self) -> bool:
        """True once the tunnel has stopped serving."""
        return self._done.is_set()

    def wait_done(self, timeout: Optional[float] = None) -> bool:
        """Wait until the tunnel stops serving; False if ``timeout`` ran out."""
        return self._done.wait(timeout)

    def _update_metric(self, status: ClientConnectionStatus) -> None:
        if self._done.is_set():
            return
        with self._status_lock:
            previous, self._status = self._status, status
        gauge = self._metrics.client_connections
        gauge.with_label_values(previous.value).dec()
        gauge.with_label_values(status.value).inc()

    def _close_metric(self) -> None:
        if self._done.is_set():
            return
        with self._status_lock:
            previous = self._status
        self._metrics.client_connections.with_label_values(previous.value).dec()

    def _get_pending(self, dial_id: int) -> Optional[_PendingDial]:
        with self._pending_lock:
            return self._pending.get(dial_id)

    def _get_conn(self, connect_id: int) -> Optional[Conn]:
        with self._conns_lock:
            return self._conns.get(connect_id)

    def _close_all_conns(self) -> None:
        with self._conns_lock:
            for conn in self._conns.values():
                conn._close_reads()

    def serve(self, tunnel_ctx: Optional[threading.Event] = None) -> None:
        """Dispatch incoming packets until the tunnel is finished."""
        try:
            self._serve_loop(tunnel_ctx)
        finally:
            try:
                self._client_conn.close()
            except Exception as err:
                logger.debug("closing transport failed: %s", err)
            # Connections never confirmed closed still have readers waiting.
            self._close_all_conns()
            self._close_metric()
            self._done.set()

    def _serve_loop(self, tunnel_ctx: Optional[threading.Event]) -> None:
        while True:
            try:
                pkt = self.recv()
            except EOFError:
                return
            except Exception as err:
                if not self._is_closing():
                    logger.error("stream read failure: %s", err)
                return
            if pkt is None:
                if not self._is_closing():
                    logger.error("stream read failure: empty packet")
                return
            if self._is_closing():
                return
            logger.debug("[tracing] recv packet type=%s", pkt.type)

            if pkt.type is PacketType.DIAL_RSP:
                stop = self._on_dial_response(pkt, tunnel_ctx)
            elif pkt.type is PacketType.DIAL_CLS:
                stop = self._on_close_dial(pkt, tunnel_ctx)
            elif pkt.type is PacketType.DATA:
                stop = self._on_data(pkt, tunnel_ctx)
            elif pkt.type is PacketType.CLOSE_RSP:
                stop = self._on_close_response(pkt)
            else:
                stop = False
            if stop:
                return

    def _on_dial_response(self, pkt: Packet, tunnel_ctx: Optional[threading.Event]) -> bool:
        resp = pkt.dial_response or DialResponse()
        pending = self._get_pending(resp.random)
        if pending is None:
            # A duplicate response, or the dial already gave up: the tunnel is no longer needed.
            logger.info(
                "DialResp not recognized; dropped dialID=%s connectionID=%s error=%s",
                resp.random,
                resp.connect_id,
                resp.error,
            )
            return True
        if resp.error:
            result = _DialResult(resp.connect_id, DialFailure(resp.error, DialFailureReason.ENDPOINT))
        else:
            self._update_metric(ClientConnectionStatus.OK)
            result = _DialResult(resp.connect_id)
        if _is_set(tunnel_ctx):
            logger.info(
                "Tunnel has been closed; dropped connectionID=%s dialID=%s",
                resp.connect_id,
                resp.random,
            )
            return True
        if not pending.deliver(result):
            logger.info(
                "Pending dial has been cancelled; dropped connectionID=%s dialID=%s",
                resp.connect_id,
                resp.random,
            )
            return True
        return bool(resp.error)

    def _on_close_dial(self, pkt: Packet, tunnel_ctx: Optional[threading.Event]) -> bool:
        resp = pkt.close_dial or CloseDial()
        pending = self._get_pending(resp.random)
        if pending is None:
            logger.info("DIAL_CLS after dial finished dialID=%s", resp.random)
        elif not _is_set(tunnel_ctx):
            pending.deliver(
                _DialResult(error=DialFailure("dial closed", DialFailureReason.DIAL_CLOSED))
            )
        return True

    def _on_data(self, pkt: Packet, tunnel_ctx: Optional[threading.Event]) -> bool:
        data = pkt.data or Data()
        if not data.connect_id:
            logger.error("Received packet missing ConnectID packetType=DATA")
            return False
        conn = self._get_conn(data.connect_id)
        if conn is None:
            logger.error("Connection not recognized connectionID=%s packetType=DATA", data.connect_id)
            try:
                self._send_close_request(data.connect_id)
            except Exception as err:
                logger.debug("sending CLOSE_REQ failed: %s", err)
            return False
        deadline = time.monotonic() + self.read_timeout
        while not conn._deliver(data.data, _POLL_INTERVAL):
            if _is_set(tunnel_ctx):
                logger.info(
                    "Tunnel has been closed, the connection to the proxy server will be closed "
                    "connectionID=%s",
                    conn.connect_id,
                )
                break
            if time.monotonic() >= deadline:
                logger.error(
                    "readTimeout has been reached, the connection to the proxy server will be "
                    "closed connectionID=%s readTimeout=%s",
                    conn.connect_id,
                    self.read_timeout,
                )
                return True
        return False

    def _on_close_response(self, pkt: Packet) -> bool:
        resp = pkt.close_response or CloseResponse()
        conn = self._get_conn(resp.connect_id)
        if conn is None:
            logger.info(
                "Connection not recognized connectionID=%s packetType=CLOSE_RSP", resp.connect_id
            )
            return False
        conn._close_reads()
        conn._finish_close(resp.error)
        with self._conns_lock:
            self._conns.pop(resp.connect_id, None)
        return True

    def dial(
        self, protocol: str, address: str, request_ctx: Optional[threading.Event] = None
    ) -> Conn:
        """Open a connection to ``address``; only "tcp" is supported, and only once."""
        try:
            return self._dial(protocol, address, request_ctx)
        except Exception as err:
            _, reason = get_dial_failure_reason(err)
            self._metrics.observe_dial_failure(reason)
            raise

    def _dial(self, protocol: str, address: str, request_ctx: Optional[threading.Event]) -> Conn:
        with self._flags_lock:
            already_started, self._started = self._started, True
        if already_started:
            raise DialFailure(
                "single-use dialer already dialed", DialFailureReason.ALREADY_STARTED
            )
        if self._done.is_set():
            raise ConnectionError("tunnel is closed")
        if protocol != "tcp":
            raise ValueError("protocol not supported")

        self._update_metric(ClientConnectionStatus.DIALING)
        dial_id = _rng.getrandbits(63)
        pending = _PendingDial()
        with self._pending_lock:
            self._pending[dial_id] = pending
        try:
            self.send(dial_request_packet(protocol, address, dial_id))
            logger.debug("DIAL_REQ sent to proxy server")
            result = self._await_dial(pending, dial_id, request_ctx)
        finally:
            pending.cancel()
            with self._pending_lock:
                self._pending.pop(dial_id, None)

        if result.error is not None:
            raise result.error
        conn = Conn(self, dial_id, connect_id=result.connect_id, close_timeout=self.close_timeout)
        with self._conns_lock:
            self._conns[result.connect_id] = conn
        return conn

    def _await_dial(
        self, pending: _PendingDial, dial_id: int, request_ctx: Optional[threading.Event]
    ) -> _DialResult:
        deadline = time.monotonic() + self.dial_timeout
        while True:
            result = pending.wait(_POLL_INTERVAL)
            if result is not None:
                return result
            if time.monotonic() >= deadline:
                failure = DialFailure("dial timeout, backstop", DialFailureReason.TIMEOUT)
                abandon = True
            elif _is_set(request_ctx):
                failure = DialFailure("dial timeout, context", DialFailureReason.CONTEXT)
                abandon = True
            elif self._done.is_set():
                failure = DialFailure("tunnel closed", DialFailureReason.TUNNEL_CLOSED)
                abandon = False
            else:
                continue
            late = pending.cancel()
            if late is not None:
                return late
            if abandon:
                logger.debug("Giving up waiting for DialResp dialID=%s", dial_id)
                threading.Thread(target=self._abandon_dial, args=(dial_id,), daemon=True).start()
            raise failure

    def _abandon_dial(self, dial_id: int) -> None:
        try:
            self._send_dial_close(dial_id)
        except Exception as err:
            logger.debug("sending DIAL_CLS failed: %s", err)
        finally:
            self._close_tunnel()

    def _send_close_request(self, connect_id: int) -> None:
        self.send(close_request_packet(connect_id))

    def _send_dial_close(self, dial_id: int) -> None:
        self.send(close_dial_packet(dial_id))

    def _close_tunnel(self) -> None:
        with self._flags_lock:
            self._closing = True
        self._client_conn.close()

    def _is_closing(self) -> bool:
        with self._flags_lock:
            return self._closing

    def send(self, packet: Packet) -> None:
        """Send one packet, recording it in the metrics."""
        with self._send_lock:
            segment = Segment.FROM_CLIENT
            self._metrics.observe_packet(segment, packet.type)
            try:
                self._stream.send(packet)
            except EOFError:
                raise
            except Exception as err:
                self._metrics.observe_stream_error(segment, err, packet.type)
                raise

    def recv(self) -> Optional[Packet]:
        """Receive one packet; EOFError marks the end of the stream."""
        with self._recv_lock:
            segment = Segment.TO_CLIENT
            try:
                packet = self._stream.recv()
            except EOFError:
                raise
            except Exception as err:
                self._metrics.observe_stream_error_no_packet(segment, err)
                raise
            if packet is not None:
                self._metrics.observe_packet(segment, packet.type)
            return packet


def create_single_use_tunnel(
    open_stream: Callable[[str, Optional[threading.Event]], Tuple[Stream, ClientConn]],
    address: str,
    tunnel_ctx: Optional[threading.Event] = None,
) -> Tunnel:
    """Open a stream to the proxy at ``address`` and start serving a tunnel on it.

    ``open_stream(address, tunnel_ctx)`` returns the stream and its transport,
    releasing anything it opened if it raises.
    """
    stream, client_conn = open_stream(address, tunnel_ctx)
    tunnel = Tunnel(stream, client_conn)
    threading.Thread(target=tunnel.serve, args=(tunnel_ctx,), daemon=True).start()
    return tunnel