"""Connected MQTT sessions and their local registry."""

from __future__ import annotations

import threading
from typing import Any

from waspbroker.packet import Connect, Header, Publish


def prefix_mount_point(mount_point: str, topic: bytes) -> bytes:
    """Place a topic under a mount point."""
    return mount_point.encode("utf-8") + b"/" + bytes(topic)


def trim_mount_point(mount_point: str, topic: bytes) -> bytes:
    """Strip a mount point and its separator from a topic."""
    return bytes(topic)[len(mount_point) + 1 :]


class Session:
    """A client session bound to a connection and a packet encoder.

    The encoder is any object offering one method per outgoing packet type
    (publish, conn_ack, pub_ack, sub_ack, unsub_ack, ping_resp).
    """

    def __init__(self, conn: Any, encoder: Any) -> None:
        self.id = ""
        self.client_id = ""
        self.mount_point = ""
        self.lwt: Publish | None = None
        self.encoder = encoder
        self.disconnected = False
        self._conn = conn
        self._lock = threading.Lock()
        self._topics: list[bytes] = []

    def process_connect(self, connect: Connect) -> None:
        self.client_id = bytes(connect.client_id).decode("utf-8", errors="replace")
        if connect.will_topic:
            self.lwt = Publish(
                header=Header(retain=connect.will_retain, qos=connect.will_qos),
                topic=connect.will_topic,
                payload=connect.will_payload,
            )

    @property
    def topics(self) -> list[bytes]:
        with self._lock:
            return list(self._topics)

    def add_topic(self, topic: bytes) -> None:
        with self._lock:
            self._topics.append(topic)

    def remove_topic(self, topic: bytes) -> None:
        with self._lock:
            self._topics = [t for t in self._topics if t != topic]

    def close(self) -> None:
        self._conn.close()

    def send(self, publish: Publish) -> None:
        """Deliver a publish with the session's mount point trimmed off."""
        if len(self.mount_point) > len(publish.topic):
            return
        outgoing = Publish(
            header=publish.header,
            topic=trim_mount_point(self.mount_point, publish.topic),
            message_id=1,
            payload=publish.payload,
        )
        self.encoder.publish(outgoing)


class SessionStore:
    """Thread-safe registry of sessions by id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, Session] = {}

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._data.get(session_id)

    def save(self, session_id: str, session: Session) -> None:
        with self._lock:
            self._data[session_id] = session

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._data.pop(session_id, None)