"""MQTT packet types handled by the broker."""

from __future__ import annotations

import base64
import enum
from dataclasses import dataclass, field


class ConnAckCode(enum.IntEnum):
    """CONNACK return codes."""

    CONNECTION_ACCEPTED = 0
    REFUSED_UNACCEPTABLE_PROTOCOL_VERSION = 1
    REFUSED_IDENTIFIER_REJECTED = 2
    REFUSED_SERVER_UNAVAILABLE = 3
    REFUSED_BAD_USERNAME_OR_PASSWORD = 4
    REFUSED_NOT_AUTHORIZED = 5


@dataclass
class Header:
    dup: bool = False
    qos: int = 0
    retain: bool = False


@dataclass
class Publish:
    header: Header = field(default_factory=Header)
    topic: bytes = b""
    payload: bytes = b""
    message_id: int = 0

    def to_dict(self) -> dict:
        return {
            "header": {
                "dup": self.header.dup,
                "qos": self.header.qos,
                "retain": self.header.retain,
            },
            "topic": base64.b64encode(self.topic).decode("ascii"),
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "message_id": self.message_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Publish:
        header = data.get("header") or {}
        return cls(
            header=Header(
                dup=bool(header.get("dup", False)),
                qos=int(header.get("qos", 0)),
                retain=bool(header.get("retain", False)),
            ),
            topic=base64.b64decode(data.get("topic", "")),
            payload=base64.b64decode(data.get("payload", "")),
            message_id=int(data.get("message_id", 0)),
        )


@dataclass
class Connect:
    header: Header = field(default_factory=Header)
    client_id: bytes = b""
    username: bytes = b""
    password: bytes = b""
    keepalive_timer: int = 30
    clean_session: bool = False
    will_topic: bytes = b""
    will_payload: bytes = b""
    will_qos: int = 0
    will_retain: bool = False


@dataclass
class ConnAck:
    header: Header = field(default_factory=Header)
    return_code: ConnAckCode = ConnAckCode.CONNECTION_ACCEPTED


@dataclass
class PubAck:
    header: Header = field(default_factory=Header)
    message_id: int = 0


@dataclass
class Subscribe:
    header: Header = field(default_factory=Header)
    message_id: int = 0
    topics: list[bytes] = field(default_factory=list)
    qos: list[int] = field(default_factory=list)


@dataclass
class SubAck:
    header: Header = field(default_factory=Header)
    message_id: int = 0
    qos: list[int] = field(default_factory=list)


@dataclass
class Unsubscribe:
    header: Header = field(default_factory=Header)
    message_id: int = 0
    topics: list[bytes] = field(default_factory=list)


@dataclass
class UnsubAck:
    header: Header = field(default_factory=Header)
    message_id: int = 0


@dataclass
class Disconnect:
    header: Header = field(default_factory=Header)


@dataclass
class PingReq:
    header: Header = field(default_factory=Header)


@dataclass
class PingResp:
    header: Header = field(default_factory=Header)


_TYPE_NAMES: dict[type, str] = {
    Connect: "CONNECT",
    ConnAck: "CONNACK",
    Publish: "PUBLISH",
    PubAck: "PUBACK",
    Subscribe: "SUBSCRIBE",
    SubAck: "SUBACK",
    Unsubscribe: "UNSUBSCRIBE",
    UnsubAck: "UNSUBACK",
    PingReq: "PINGREQ",
    PingResp: "PINGRESP",
    Disconnect: "DISCONNECT",
}


def type_string(pkt: object) -> str:
    """Name of a packet's type, used as a metrics label."""
    return _TYPE_NAMES.get(type(pkt), "UNKNOWN")