"""Agent side of the proxy: serves dial, data and close requests from one proxy server."""

from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from .agent_metrics import AGENT_METRICS, AgentDialFailureReason, AgentMetrics, Direction
from .endpoint import ConnectionManager, EndpointConn
from .metrics import Segment
from .packet import (
    DialRequest,
    Packet,
    PacketType,
    close_dial_packet,
    close_response_packet,
    data_packet,
    dial_response_packet,
)

logger = logging.getLogger(__name__)

AGENT_ID_KEY = "agentID"
AGENT_IDENTIFIERS_KEY = "agentIdentifiers"
SERVER_ID_KEY = "serverID"
SERVER_COUNT_KEY = "serverCount"
AUTHENTICATION_TOKEN_KEY = "Authorization"
AUTHENTICATION_TOKEN_SCHEME_PREFIX = "Bearer "

DIAL_TIMEOUT = 5.0
"""Seconds allowed for dialing an endpoint on the node network."""

READ_SIZE = 1 << 12
"""Largest chunk read from an endpoint at once."""

Header = Mapping[str, Union[str, Sequence[str]]]
Metadata = List[Tuple[str, str]]


class AgentStream(Protocol):
    """The packet stream to a proxy server; ``recv`` raises EOFError at end of stream."""

    def send(self, packet: Packet) -> None: ...

    def recv(self) -> Optional[Packet]: ...

    def header(self) -> Header: ...


class Transport(Protocol):
    """A connection to a proxy server that can carry one agent stream."""

    def open_stream(self, metadata: Metadata) -> AgentStream: ...

    def close(self) -> None: ...

    def is_ready(self) -> bool: ...


EndpointDialer = Callable[[str, str, float], Any]


def _header_values(header: Header, key: str) -> List[str]:
    wanted = key.lower()
    for name, values in header.items():
        if name.lower() == wanted:
            return [values] if isinstance(values, str) else list(values)
    return []


def server_count(header: Header) -> int:
    """Return the number of proxy servers announced in a stream header."""
    counts = _header_values(header, SERVER_COUNT_KEY)
    if len(counts) != 1:
        raise ValueError(f"expected one server count, got {len(counts)}")
    return int(counts[0])


def server_id(header: Header) -> str:
    """Return the ID of the proxy server announced in a stream header."""
    ids = _header_values(header, SERVER_ID_KEY)
    if len(ids) != 1:
        raise ValueError(f"expected one server ID in the context, got {ids}")
    return ids[0]


def _split_host_port(address: str) -> Tuple[str, int]:
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        port = rest[1:]
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError(f"address {address}: missing port in address")
    return host, int(port)


def _dial_tcp(protocol: str, address: str, timeout: float) -> socket.socket:
    if protocol not in ("tcp", "tcp4", "tcp6"):
        raise OSError(f"dial {protocol}: unknown network {protocol}")
    sock = socket.create_connection(_split_host_port(address), timeout=timeout)
    sock.settimeout(None)
    return sock


def _close_endpoint(conn: Any) -> None:
    # Shutting down first wakes any thread blocked reading the socket.
    shutdown = getattr(conn, "shutdown", None)
    if shutdown is not None:
        try:
            shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    conn.close()


class AgentClient:
    """Connects to one proxy server and relays its traffic to the node network."""

    def __init__(
        self,
        address: str = "",
        agent_id: str = "",
        agent_identifiers: str = "",
        client_set: Any = None,
        dialer: Optional[Callable[[str], Transport]] = None,
        *,
        probe_interval: float = 1.0,
        service_account_token_path: str = "",
        warn_on_channel_limit: bool = False,
        stop_event: Optional[threading.Event] = None,
        endpoint_dialer: Optional[EndpointDialer] = None,
        metrics: Optional[AgentMetrics] = None,
    ) -> None:
        self.address = address
        self.agent_id = agent_id
        self.agent_identifiers = agent_identifiers
        self.client_set = client_set
        self.dialer = dialer
        self.probe_interval = probe_interval
        self.service_account_token_path = service_account_token_path
        self.warn_on_channel_limit = warn_on_channel_limit
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.endpoint_dialer = endpoint_dialer if endpoint_dialer is not None else _dial_tcp
        self._metrics = metrics if metrics is not None else AGENT_METRICS
        self.conn_manager = ConnectionManager(self._metrics)
        self.conn: Optional[Transport] = None
        self.stream: Optional[AgentStream] = None
        self.server_id = ""
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._id_lock = threading.Lock()
        self._conn_ids = itertools.count(1)

    def _next_conn_id(self) -> int:
        with self._id_lock:
            return next(self._conn_ids)

    def _remove_from_set(self) -> None:
        if self.client_set is not None:
            self.client_set.remove_client(self.server_id)

    def connect(self) -> int:
        """Open the stream to the proxy server and return the announced server count."""
        if self.dialer is None:
            raise ValueError("no dialer configured")
        transport = self.dialer(self.address)
        metadata: Metadata = [
            (AGENT_ID_KEY, self.agent_id),
            (AGENT_IDENTIFIERS_KEY, self.agent_identifiers),
        ]
        try:
            if self.service_account_token_path:
                metadata.append(self._auth_metadata())
            stream = transport.open_stream(metadata)
            header = stream.header()
            sid = server_id(header)
            count = server_count(header)
        except BaseException:
            try:
                transport.close()
            except Exception as err:
                logger.error("failed to close connection agentID=%s: %s", self.agent_id, err)
            raise
        self.conn = transport
        self.stream = stream
        self.server_id = sid
        logger.debug("Connect to server serverID=%s", sid)
        return count

    def _auth_metadata(self) -> Tuple[str, str]:
        try:
            token = Path(self.service_account_token_path).read_bytes().decode()
        except OSError as err:
            logger.error("Failed to read token path=%s: %s", self.service_account_token_path, err)
            raise
        return AUTHENTICATION_TOKEN_KEY, AUTHENTICATION_TOKEN_SCHEME_PREFIX + token

    def close(self) -> None:
        """Close the connection to the proxy server and stop serving."""
        if self.conn is None:
            logger.error("Unexpected empty AgentClient.conn")
        else:
            try:
                self.conn.close()
            except Exception as err:
                logger.error(
                    "failed to close connection serverID=%s agentID=%s: %s",
                    self.server_id,
                    self.agent_id,
                    err,
                )
        self.stop_event.set()

    def send(self, packet: Packet) -> None:
        """Send one packet to the proxy server; a failed send drops this client from its set."""
        with self._send_lock:
            segment = Segment.FROM_AGENT
            self._metrics.observe_packet(segment, packet.type)
            try:
                self.stream.send(packet)
            except EOFError:
                raise
            except Exception as err:
                self._metrics.observe_server_failure_deprecated(Direction.TO_SERVER)
                self._metrics.observe_stream_error(segment, err, packet.type)
                self._remove_from_set()
                raise

    def recv(self) -> Optional[Packet]:
        """Receive one packet; EOFError marks the end of the stream."""
        with self._recv_lock:
            segment = Segment.TO_AGENT
            try:
                packet = self.stream.recv()
            except EOFError:
                raise
            except Exception as err:
                self._metrics.observe_server_failure_deprecated(Direction.FROM_SERVER)
                self._metrics.observe_stream_error_no_packet(segment, err)
                raise
            if packet is not None:
                self._metrics.observe_packet(segment, packet.type)
            return packet

    def serve(self) -> None:
        """Handle requests from the proxy server until the stream ends or the client stops."""
        try:
            logger.debug("Start serving serverID=%s agentID=%s", self.server_id, self.agent_id)
            threading.Thread(target=self._probe, daemon=True).start()
            self._serve_loop()
        finally:
            for endpoint in self.conn_manager.list():
                endpoint.cleanup()
            logger.debug("cleanup all of conn contexts when client exits")
            self._remove_from_set()

    def _serve_loop(self) -> None:
        while True:
            if self.stop_event.is_set():
                logger.debug("stop agent client.")
                return
            try:
                pkt = self.recv()
            except EOFError:
                logger.debug(
                    "received EOF, exit serverID=%s agentID=%s", self.server_id, self.agent_id
                )
                return
            except Exception as err:
                logger.error(
                    "could not read stream serverID=%s agentID=%s: %s",
                    self.server_id,
                    self.agent_id,
                    err,
                )
                return
            if pkt is None:
                logger.debug("empty packet received")
                continue
            logger.debug("[tracing] recv packet type=%s", pkt.type)
            if pkt.type is PacketType.DIAL_REQ:
                self._handle_dial_request(pkt.dial_request or DialRequest())
            elif pkt.type is PacketType.DATA:
                self._handle_data(pkt)
            elif pkt.type is PacketType.CLOSE_REQ:
                self._handle_close_request(pkt)
            else:
                logger.debug("unrecognized packet type=%s", pkt.type)

    def _handle_dial_request(self, req: DialRequest) -> None:
        logger.debug(
            "Received DIAL_REQ serverID=%s agentID=%s dialID=%s dialAddress=%s",
            self.server_id,
            self.agent_id,
            req.random,
            req.address,
        )
        endpoint = EndpointConn(self._next_conn_id(), warn_ch_lim=self.warn_on_channel_limit)
        endpoint.clean_func = lambda: self._clean_endpoint(endpoint, req)
        threading.Thread(target=self._dial_endpoint, args=(endpoint, req), daemon=True).start()

    def _clean_endpoint(self, endpoint: EndpointConn, req: DialRequest) -> None:
        endpoint.dial_done.wait()
        if endpoint.conn is None:
            logger.error("could not send CLOSE_RESP to nil connection: remote connection is nil")
            return
        logger.debug(
            "close connection dialID=%s connectionID=%s dialAddress=%s",
            req.random,
            endpoint.conn_id,
            req.address,
        )
        if endpoint.conn_id == 0:
            close_pkt = close_dial_packet(req.random)
        else:
            close_pkt = close_response_packet(endpoint.conn_id)
        try:
            self.send(close_pkt)
        except Exception as err:
            logger.error("close response failure: %s", err)
        endpoint.data_ch.close()
        self.conn_manager.delete(endpoint.conn_id)
        try:
            _close_endpoint(endpoint.conn)
        except OSError as err:
            logger.error(
                "failed to close connection to remote dialID=%s connectionID=%s: %s",
                req.random,
                endpoint.conn_id,
                err,
            )

    def _dial_endpoint(self, endpoint: EndpointConn, req: DialRequest) -> None:
        conn_id = endpoint.conn_id
        try:
            start = time.monotonic()
            try:
                conn = self.endpoint_dialer(req.protocol, req.address, DIAL_TIMEOUT)
            except Exception as err:
                reason = (
                    AgentDialFailureReason.TIMEOUT
                    if isinstance(err, TimeoutError)
                    else AgentDialFailureReason.UNKNOWN
                )
                self._metrics.observe_dial_failure(reason)
                logger.info(
                    "error dialing backend error=%s dialID=%s connectionID=%s dialAddress=%s",
                    err,
                    req.random,
                    conn_id,
                    req.address,
                )
                try:
                    self.send(dial_response_packet(req.random, error=str(err)))
                except Exception as send_err:
                    logger.error("could not send DIAL_RSP with error: %s", send_err)
                return
            self._metrics.observe_dial_latency(time.monotonic() - start)
            logger.debug(
                "Endpoint connection established dialID=%s connectionID=%s dialAddress=%s",
                req.random,
                conn_id,
                req.address,
            )
            endpoint.conn = conn
            self.conn_manager.add(conn_id, endpoint)
            try:
                self.send(dial_response_packet(req.random, conn_id))
            except Exception as err:
                logger.error(
                    "could not send DIAL_RSP dialID=%s connectionID=%s: %s",
                    req.random,
                    conn_id,
                    err,
                )
                # Clean-up waits for the dial to be marked done, so it runs on its own thread.
                threading.Thread(target=endpoint.cleanup, daemon=True).start()
                return
            threading.Thread(target=self._remote_to_proxy, args=(endpoint,), daemon=True).start()
            threading.Thread(target=self._proxy_to_remote, args=(endpoint,), daemon=True).start()
        finally:
            endpoint.dial_done.set()

    def _handle_data(self, pkt: Packet) -> None:
        data = pkt.data
        connect_id = data.connect_id if data is not None else 0
        logger.debug("received DATA connectionID=%s", connect_id)
        if not connect_id:
            logger.error("Received packet missing ConnectID from frontend packetType=DATA")
            return
        endpoint = self.conn_manager.get(connect_id)
        if endpoint is not None:
            endpoint.send(data.data)
            return
        logger.debug("received DATA for unrecognized connection connectionID=%s", connect_id)
        try:
            self.send(close_response_packet(connect_id, "unrecognized connectID"))
        except Exception as err:
            logger.debug("could not send CLOSE_RSP: %s", err)

    def _handle_close_request(self, pkt: Packet) -> None:
        connect_id = pkt.close_request.connect_id if pkt.close_request is not None else 0
        logger.debug("received CLOSE_REQ connectionID=%s", connect_id)
        endpoint = self.conn_manager.get(connect_id)
        if endpoint is not None:
            endpoint.cleanup()
            return
        logger.debug("Failed to find connection context for close connectionID=%s", connect_id)
        try:
            self.send(close_response_packet(connect_id, "Unknown connectID"))
        except Exception as err:
            logger.error("could not send CLOSE_RSP connectionID=%s: %s", connect_id, err)

    def _remote_to_proxy(self, endpoint: EndpointConn) -> None:
        conn_id = endpoint.conn_id
        try:
            while True:
                try:
                    chunk = endpoint.conn.recv(READ_SIZE)
                except OSError as err:
                    # Reads fail once a CLOSE_REQ has closed the connection.
                    if self.conn_manager.get(conn_id) is None:
                        logger.debug("reading from a closed connection connectionID=%s", conn_id)
                    else:
                        logger.error("connection read failure connectionID=%s: %s", conn_id, err)
                    return
                if not chunk:
                    logger.debug("remote connection EOF connectionID=%s", conn_id)
                    return
                try:
                    self.send(data_packet(conn_id, chunk))
                except Exception as err:
                    logger.error("could not send DATA connectionID=%s: %s", conn_id, err)
        finally:
            endpoint.cleanup()
            logger.debug("Exiting remoteToProxy connectionID=%s", conn_id)

    def _proxy_to_remote(self, endpoint: EndpointConn) -> None:
        conn_id = endpoint.conn_id
        try:
            for chunk in endpoint.data_ch:
                try:
                    endpoint.conn.sendall(chunk)
                except OSError as err:
                    if self.conn_manager.get(conn_id) is None:
                        logger.debug("writing to a closed connection connectionID=%s", conn_id)
                    else:
                        logger.error("conn write failure connectionID=%s: %s", conn_id, err)
                    return
        finally:
            # The serving loop may be blocked writing, so drain until the channel closes.
            discarded = sum(1 for _ in endpoint.data_ch)
            if discarded:
                logger.debug(
                    "Discard packets while exiting proxyToRemote pktCount=%s connectionID=%s",
                    discarded,
                    conn_id,
                )

    def _probe(self) -> None:
        while not self.stop_event.wait(self.probe_interval):
            if self.conn is None or self.conn.is_ready():
                continue
            logger.info("Removing client used for server connection serverID=%s", self.server_id)
            self._remove_from_set()
            return