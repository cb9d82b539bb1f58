"""The set of agent clients, one per proxy server instance."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .agent_client import AgentClient, EndpointDialer, Transport
from .agent_metrics import AGENT_METRICS, AgentMetrics

logger = logging.getLogger(__name__)

MAX_STEPS = 2**31 - 1
BACKOFF_JITTER = 0.1
BACKOFF_FACTOR = 1.5

_rng = random.Random()


class DuplicateServerError(Exception):
    """A client for this proxy server is already in the set."""

    def __init__(self, server_id: str) -> None:
        super().__init__(f"duplicate server: {server_id}")
        self.server_id = server_id


def jitter(duration: float, factor: float) -> float:
    """Return ``duration`` plus a random extra of up to ``factor`` times it."""
    if factor <= 0.0:
        factor = 1.0
    return duration + _rng.random() * factor * duration


@dataclass
class Backoff:
    """Exponential back-off whose interval grows by ``factor`` up to ``cap``."""

    duration: float
    factor: float = 0.0
    jitter: float = 0.0
    steps: int = 0
    cap: float = 0.0

    def step(self) -> float:
        """Return the next wait in seconds and advance the back-off."""
        if self.steps < 1:
            if self.jitter > 0:
                return jitter(self.duration, self.jitter)
            return self.duration
        self.steps -= 1
        current = self.duration
        if self.factor != 0:
            self.duration = self.duration * self.factor
            if self.cap > 0 and self.duration > self.cap:
                self.duration = self.cap
                self.steps = 0
        if self.jitter > 0:
            current = jitter(current, self.jitter)
        return current


class ClientSet:
    """Clients connected to each instance of a (possibly replicated) proxy server."""

    def __init__(
        self,
        address: str = "",
        agent_id: str = "",
        agent_identifiers: str = "",
        *,
        sync_interval: float = 1.0,
        probe_interval: float = 1.0,
        sync_interval_cap: float = 10.0,
        dialer: Optional[Callable[[str], Transport]] = None,
        service_account_token_path: str = "",
        warn_on_channel_limit: bool = False,
        sync_forever: bool = False,
        stop_event: Optional[threading.Event] = None,
        endpoint_dialer: Optional[EndpointDialer] = None,
        metrics: Optional[AgentMetrics] = None,
    ) -> None:
        self.address = address
        self.agent_id = agent_id
        self.agent_identifiers = agent_identifiers
        self.sync_interval = sync_interval
        self.probe_interval = probe_interval
        self.sync_interval_cap = sync_interval_cap
        self.dialer = dialer
        self.service_account_token_path = service_account_token_path
        self.warn_on_channel_limit = warn_on_channel_limit
        self.sync_forever = sync_forever
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.endpoint_dialer = endpoint_dialer
        self._metrics = metrics if metrics is not None else AGENT_METRICS
        # Number of proxy server instances; 0 until the first client connects.
        self.server_count = 0
        self._lock = threading.RLock()
        self._clients: Dict[str, AgentClient] = {}

    def clients_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def healthy_clients_count(self) -> int:
        with self._lock:
            return sum(
                1 for c in self._clients.values() if c.conn is not None and c.conn.is_ready()
            )

    def has_id(self, server_id: str) -> bool:
        with self._lock:
            return server_id in self._clients

    def add_client(self, server_id: str, client: AgentClient) -> None:
        """Add ``client`` for ``server_id``; raise DuplicateServerError if one exists."""
        with self._lock:
            if server_id in self._clients:
                raise DuplicateServerError(server_id)
            self._clients[server_id] = client
            self._metrics.set_server_connections_count(len(self._clients))

    def remove_client(self, server_id: str) -> None:
        """Close and forget the client for ``server_id``, if any."""
        with self._lock:
            client = self._clients.get(server_id)
            if client is None:
                return
            client.close()
            del self._clients[server_id]
            self._metrics.set_server_connections_count(len(self._clients))

    def _new_agent_client(self) -> tuple:
        client = AgentClient(
            self.address,
            self.agent_id,
            self.agent_identifiers,
            self,
            self.dialer,
            probe_interval=self.probe_interval,
            service_account_token_path=self.service_account_token_path,
            warn_on_channel_limit=self.warn_on_channel_limit,
            endpoint_dialer=self.endpoint_dialer,
            metrics=self._metrics,
        )
        count = client.connect()
        return client, count

    def _reset_backoff(self) -> Backoff:
        return Backoff(
            duration=self.sync_interval,
            factor=BACKOFF_FACTOR,
            jitter=BACKOFF_JITTER,
            steps=MAX_STEPS,
            cap=self.sync_interval_cap,
        )

    def _sync(self) -> None:
        """Keep at least as many clients as there are proxy servers."""
        try:
            backoff = self._reset_backoff()
            duration = 0.0
            while True:
                try:
                    self._connect_once()
                except DuplicateServerError as err:
                    logger.debug(
                        "duplicate server serverID=%s serverCount=%s clientsCount=%s",
                        err.server_id,
                        self.server_count,
                        self.clients_count(),
                    )
                    if self.server_count and self.clients_count() >= self.server_count:
                        duration = backoff.step()
                except Exception as err:
                    logger.error("cannot connect once: %s", err)
                    duration = backoff.step()
                else:
                    backoff = self._reset_backoff()
                    duration = jitter(backoff.duration, backoff.jitter)
                if self.stop_event.wait(duration):
                    return
        finally:
            self._shutdown()

    def _connect_once(self) -> None:
        if (
            not self.sync_forever
            and self.server_count
            and self.clients_count() >= self.server_count
        ):
            return
        client, count = self._new_agent_client()
        if self.server_count and self.server_count != count:
            logger.debug(
                "Server count change suggestion by server current=%s serverID=%s actual=%s",
                self.server_count,
                client.server_id,
                count,
            )
        self.server_count = count
        try:
            self.add_client(client.server_id, client)
        except DuplicateServerError:
            client.close()
            raise
        logger.debug("sync added client connecting to proxy server serverID=%s", client.server_id)
        threading.Thread(target=client.serve, daemon=True).start()

    def serve(self) -> None:
        """Start keeping the set in sync on a background thread."""
        threading.Thread(target=self._sync, daemon=True).start()

    def _shutdown(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            for client in clients:
                client.close()


@dataclass
class ClientSetConfig:
    """Settings from which a ClientSet is built."""

    address: str = ""
    agent_id: str = ""
    agent_identifiers: str = ""
    sync_interval: float = 1.0
    probe_interval: float = 1.0
    sync_interval_cap: float = 10.0
    dialer: Optional[Callable[[str], Transport]] = None
    service_account_token_path: str = ""
    warn_on_channel_limit: bool = False
    sync_forever: bool = False
    endpoint_dialer: Optional[EndpointDialer] = field(default=None)

    def new_agent_client_set(self, stop_event: Optional[threading.Event] = None) -> ClientSet:
        return ClientSet(
            self.address,
            self.agent_id,
            self.agent_identifiers,
            sync_interval=self.sync_interval,
            probe_interval=self.probe_interval,
            sync_interval_cap=self.sync_interval_cap,
            dialer=self.dialer,
            service_account_token_path=self.service_account_token_path,
            warn_on_channel_limit=self.warn_on_channel_limit,
            sync_forever=self.sync_forever,
            stop_event=stop_event,
            endpoint_dialer=self.endpoint_dialer,
        )