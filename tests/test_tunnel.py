import queue
import threading
import time

import pytest

from konnect.client_metrics import ClientMetrics, DialFailureReason
from konnect.conn import CloseTimeoutError
from konnect.packet import (
    Packet,
    PacketType,
    close_dial_packet,
    close_response_packet,
    data_packet,
    dial_response_packet,
)
from konnect.tunnel import (
    DialFailure,
    Tunnel,
    create_single_use_tunnel,
    get_dial_failure_reason,
)


class FakeStream:
    def __init__(self, r, w, done):
        self.r = r
        self.w = w
        self.done = done
        self.closed = threading.Event()

    def _check(self, op):
        if self.done.is_set():
            raise ConnectionError(f"{op} on cancelled stream")
        if self.closed.is_set():
            raise ConnectionError(f"{op} on closed stream")

    def send(self, packet):
        if packet is None:
            return
        while True:
            self._check("Send")
            try:
                self.w.put(packet, timeout=0.01)
                return
            except queue.Full:
                continue

    def recv(self):
        deadline = time.monotonic() + 30
        while True:
            self._check("Recv")
            try:
                return self.r.get(timeout=0.01)
            except queue.Empty:
                if time.monotonic() > deadline:
                    raise TimeoutError("timeout recv")

    def close(self):
        self.closed.set()


class SlowSendStream:
    def __init__(self, inner):
        self.inner = inner

    def send(self, packet):
        self.inner.send(packet)
        time.sleep(0.5)

    def recv(self):
        return self.inner.recv()


class FakeConn:
    def __init__(self, stream=None):
        self.stream = stream

    def close(self):
        if self.stream is not None:
            self.stream.close()


class EofStream:
    def send(self, packet):
        raise EOFError()

    def recv(self):
        raise EOFError()


def pipe(done=None):
    done = done if done is not None else threading.Event()
    r, w = queue.Queue(2), queue.Queue(2)
    return FakeStream(r, w, done), FakeStream(w, r, done)


class ProxyServer:
    def __init__(self, stream, connid):
        self.stream = stream
        self.connid = connid
        self.data = bytearray()
        self.packets = []
        self.lock = threading.Lock()
        self.handlers = {
            PacketType.CLOSE_REQ: self.handle_close,
            PacketType.DIAL_REQ: self.handle_dial,
            PacketType.DATA: self.handle_data,
        }

    def start(self):
        threading.Thread(target=self.serve, daemon=True).start()

    def serve(self):
        while True:
            try:
                pkt = self.stream.recv()
            except Exception:
                return
            if pkt is None:
                return
            with self.lock:
                self.packets.append(pkt)
            handler = self.handlers.get(pkt.type)
            if handler is None:
                continue
            reply = handler(pkt)
            if reply is not None:
                try:
                    self.stream.send(reply)
                except Exception:
                    return

    def packet(self, index):
        with self.lock:
            return self.packets[index]

    def handle_dial(self, pkt):
        return dial_response_packet(pkt.dial_request.random, self.connid)

    def handle_close(self, pkt):
        return close_response_packet(pkt.close_request.connect_id)

    def handle_data(self, pkt):
        self.data.extend(pkt.data.data)
        return data_packet(pkt.data.connect_id, b"echo: " + pkt.data.data)


def connections(metrics):
    return {labels["status"]: value for _, labels, value in metrics.client_connections.samples()}


def dial_failures(metrics):
    return {labels["reason"]: value for _, labels, value in metrics.dial_failures.samples()}


def start_serving(tunnel, ctx=None):
    threading.Thread(target=tunnel.serve, args=(ctx,), daemon=True).start()


@pytest.fixture
def env():
    s, ps = pipe()
    server = ProxyServer(ps, 100)
    metrics = ClientMetrics()
    yield s, server, metrics
    ps.close()
    s.close()


def test_dial(env):
    s, server, metrics = env
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    assert connections(metrics) == {"created": 1}

    start_serving(tunnel)
    server.start()

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    assert conn.connect_id == 100
    assert server.packet(0).type is PacketType.DIAL_REQ
    assert server.packet(0).dial_request.address == "127.0.0.1:80"
    assert connections(metrics) == {"created": 0, "dialing": 0, "ok": 1}
    assert dial_failures(metrics) == {}


def test_dial_race(env):
    s, server, metrics = env
    tunnel = Tunnel(SlowSendStream(s), FakeConn(), metrics=metrics)
    start_serving(tunnel)
    server.start()

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    assert conn.connect_id == 100
    assert server.packet(0).type is PacketType.DIAL_REQ
    assert server.packet(0).dial_request.address == "127.0.0.1:80"
    assert dial_failures(metrics) == {}


def test_already_dialed(env):
    s, server, metrics = env
    tunnel = Tunnel(SlowSendStream(s), FakeConn(), metrics=metrics)
    start_serving(tunnel)
    server.start()

    tunnel.dial("tcp", "127.0.0.1:80")
    with pytest.raises(DialFailure) as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert info.value.reason is DialFailureReason.ALREADY_STARTED
    assert dial_failures(metrics) == {"tunnelstarted": 1}


def test_data(env):
    s, server, metrics = env
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    start_serving(tunnel)
    server.start()

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    chunks = [b"hello", b", ", b"world."]
    for chunk in chunks:
        assert conn.write(chunk) == len(chunk)
    for chunk in chunks:
        assert conn.read(64) == b"echo: " + chunk
    assert bytes(server.data) == b"hello, world."


def test_close(env):
    s, server, metrics = env
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    start_serving(tunnel)
    server.start()

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    assert connections(metrics) == {"created": 0, "dialing": 0, "ok": 1}

    conn.close()
    assert server.packet(1).type is PacketType.CLOSE_REQ
    assert server.packet(1).close_request.connect_id == 100

    assert tunnel.wait_done(5)
    assert connections(metrics) == {"created": 0, "dialing": 0, "ok": 0}


def test_close_timeout(env):
    s, server, metrics = env
    server.handlers[PacketType.CLOSE_REQ] = lambda pkt: None
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics, close_timeout=0.5)
    start_serving(tunnel)
    server.start()

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    read_results = []
    reader = threading.Thread(target=lambda: read_results.append(conn.read(10)), daemon=True)
    reader.start()

    with pytest.raises(CloseTimeoutError):
        conn.close()

    assert tunnel.wait_done(5)
    reader.join(5)
    assert read_results == [b""]
    assert connections(metrics) == {"created": 0, "dialing": 0, "ok": 0}


def test_create_single_use_tunnel_failure():
    def refuse(address, ctx):
        raise ConnectionRefusedError(f"cannot reach {address}")

    with pytest.raises(ConnectionRefusedError, match="127.0.0.1:12345"):
        create_single_use_tunnel(refuse, "127.0.0.1:12345")


def test_create_single_use_tunnel_success():
    s, ps = pipe()
    server = ProxyServer(ps, 7)
    server.start()
    requested = []

    def open_stream(address, ctx):
        requested.append(address)
        return s, FakeConn(s)

    try:
        tunnel = create_single_use_tunnel(open_stream, "proxy:8090")
        conn = tunnel.dial("tcp", "10.0.0.1:443")
        assert requested == ["proxy:8090"]
        assert conn.connect_id == 7
    finally:
        ps.close()
        s.close()


def test_dial_after_tunnel_cancelled():
    ctx = threading.Event()
    ctx.set()
    s, ps = pipe(ctx)
    server = ProxyServer(ps, 100)
    metrics = ClientMetrics()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    start_serving(tunnel, ctx)
    server.start()

    with pytest.raises(ConnectionError):
        tunnel.dial("tcp", "127.0.0.1:80")
    assert tunnel.wait_done(30)


def test_dial_request_context_cancelled(env):
    s, server, metrics = env
    req_ctx = threading.Event()
    close_seen = threading.Event()

    def on_dial(pkt):
        req_ctx.set()
        return None

    def on_dial_close(pkt):
        close_seen.set()
        return None

    server.handlers[PacketType.DIAL_REQ] = on_dial
    server.handlers[PacketType.DIAL_CLS] = on_dial_close
    server.start()

    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    start_serving(tunnel)

    with pytest.raises(DialFailure) as info:
        tunnel.dial("tcp", "127.0.0.1:80", req_ctx)
    assert get_dial_failure_reason(info.value) == (True, DialFailureReason.CONTEXT)
    assert dial_failures(metrics) == {"context": 1}

    assert server.packet(0).type is PacketType.DIAL_REQ
    assert close_seen.wait(30)
    assert server.packet(1).type is PacketType.DIAL_CLS
    assert tunnel.wait_done(30)


def test_dial_backend_error(env):
    s, server, metrics = env
    server.handlers[PacketType.DIAL_REQ] = lambda pkt: dial_response_packet(
        pkt.dial_request.random, error="fake backend error"
    )
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    start_serving(tunnel)
    server.start()

    with pytest.raises(DialFailure, match="fake backend error") as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert get_dial_failure_reason(info.value) == (True, DialFailureReason.ENDPOINT)
    assert server.packet(0).type is PacketType.DIAL_REQ
    assert dial_failures(metrics) == {"endpoint": 1}


def test_dial_closed(env):
    s, server, metrics = env
    server.handlers[PacketType.DIAL_REQ] = lambda pkt: close_dial_packet(pkt.dial_request.random)
    server.start()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    start_serving(tunnel)

    with pytest.raises(DialFailure) as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert get_dial_failure_reason(info.value) == (True, DialFailureReason.DIAL_CLOSED)
    assert server.packet(0).type is PacketType.DIAL_REQ
    assert dial_failures(metrics) == {"dialclosed": 1}
    assert tunnel.wait_done(30)


def test_unsupported_protocol():
    s, ps = pipe()
    metrics = ClientMetrics()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    with pytest.raises(ValueError, match="protocol not supported"):
        tunnel.dial("udp", "127.0.0.1:53")
    assert dial_failures(metrics) == {"unknown": 1}
    assert connections(metrics) == {"created": 1}


def test_data_for_unknown_connection_requests_close():
    s, ps = pipe()
    tunnel = Tunnel(s, FakeConn(s), metrics=ClientMetrics())
    start_serving(tunnel)
    try:
        ps.send(data_packet(999, b"x"))
        reply = ps.recv()
        assert reply.type is PacketType.CLOSE_REQ
        assert reply.close_request.connect_id == 999
    finally:
        ps.close()
        s.close()
    assert tunnel.wait_done(5)


def test_send_and_recv_count_packets():
    s, ps = pipe()
    metrics = ClientMetrics()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    try:
        tunnel.send(close_dial_packet(5))
        assert ps.recv() == close_dial_packet(5)
        ps.send(Packet(PacketType.DATA, None))
        assert tunnel.recv().type is PacketType.DATA
    finally:
        ps.close()
        s.close()
    counts = {
        (labels["segment"], labels["packet_type"]): value
        for _, labels, value in metrics.stream_packets.samples()
    }
    assert counts == {("from_client", "DIAL_CLS"): 1, ("to_client", "DATA"): 1}


def test_recv_error_is_counted():
    s, ps = pipe()
    metrics = ClientMetrics()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    s.close()
    with pytest.raises(ConnectionError, match="Recv on closed stream"):
        tunnel.recv()
    samples = [(labels, value) for _, labels, value in metrics.stream_errors.samples()]
    assert samples == [({"segment": "to_client", "code": "Unknown", "packet_type": "Unknown"}, 1)]


def test_get_dial_failure_reason_plain_error():
    assert get_dial_failure_reason(ValueError("boom")) == (False, DialFailureReason.UNKNOWN)


def test_get_dial_failure_reason_chained():
    try:
        try:
            raise DialFailure("dial timeout, backstop", DialFailureReason.TIMEOUT)
        except DialFailure as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert get_dial_failure_reason(outer) == (True, DialFailureReason.TIMEOUT)