"""Packets exchanged over a proxy tunnel stream."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union


class PacketType(IntEnum):
    """Kind of a tunnel packet."""

    DIAL_REQ = 0
    DIAL_RSP = 1
    CLOSE_REQ = 2
    CLOSE_RSP = 3
    DATA = 4
    DIAL_CLS = 5

    def __str__(self) -> str:
        return self.name


@dataclass
class DialRequest:
    """Ask the far side to open a connection to ``address``."""

    protocol: str = ""
    address: str = ""
    random: int = 0


@dataclass
class DialResponse:
    """Answer to a dial request; ``error`` is empty on success."""

    random: int = 0
    connect_id: int = 0
    error: str = ""


@dataclass
class CloseRequest:
    """Ask the far side to close an established connection."""

    connect_id: int = 0


@dataclass
class CloseResponse:
    """Confirmation that a connection was closed."""

    connect_id: int = 0
    error: str = ""


@dataclass
class CloseDial:
    """Abandon a dial that has not been answered yet."""

    random: int = 0


@dataclass
class Data:
    """A chunk of connection payload."""

    connect_id: int = 0
    data: bytes = b""


Payload = Union[DialRequest, DialResponse, CloseRequest, CloseResponse, CloseDial, Data]

_PAYLOAD_TYPES = {
    PacketType.DIAL_REQ: DialRequest,
    PacketType.DIAL_RSP: DialResponse,
    PacketType.CLOSE_REQ: CloseRequest,
    PacketType.CLOSE_RSP: CloseResponse,
    PacketType.DATA: Data,
    PacketType.DIAL_CLS: CloseDial,
}


@dataclass
class Packet:
    """A typed packet carrying at most one payload matching its type."""

    type: PacketType
    payload: Optional[Payload] = None

    def __post_init__(self) -> None:
        self.type = PacketType(self.type)
        expected = _PAYLOAD_TYPES[self.type]
        if self.payload is not None and not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.type} packet needs a {expected.__name__} payload, "
                f"got {type(self.payload).__name__}"
            )

    def _payload_of(self, kind: type):
        return self.payload if isinstance(self.payload, kind) else None

    @property
    def dial_request(self) -> Optional[DialRequest]:
        return self._payload_of(DialRequest)

    @property
    def dial_response(self) -> Optional[DialResponse]:
        return self._payload_of(DialResponse)

    @property
    def close_request(self) -> Optional[CloseRequest]:
        return self._payload_of(CloseRequest)

    @property
    def close_response(self) -> Optional[CloseResponse]:
        return self._payload_of(CloseResponse)

    @property
    def close_dial(self) -> Optional[CloseDial]:
        return self._payload_of(CloseDial)

    @property
    def data(self) -> Optional[Data]:
        return self._payload_of(Data)


def dial_request_packet(protocol: str, address: str, random: int) -> Packet:
    return Packet(PacketType.DIAL_REQ, DialRequest(protocol, address, random))


def dial_response_packet(random: int, connect_id: int = 0, error: str = "") -> Packet:
    return Packet(PacketType.DIAL_RSP, DialResponse(random, connect_id, error))


def data_packet(connect_id: int, data: bytes) -> Packet:
    return Packet(PacketType.DATA, Data(connect_id, bytes(data)))


def close_request_packet(connect_id: int) -> Packet:
    return Packet(PacketType.CLOSE_REQ, CloseRequest(connect_id))


def close_response_packet(connect_id: int, error: str = "") -> Packet:
    return Packet(PacketType.CLOSE_RSP, CloseResponse(connect_id, error))


def close_dial_packet(random: int) -> Packet:
    return Packet(PacketType.DIAL_CLS, CloseDial(random))