"""Replicated broker state: subscriptions, retained messages and session metadata."""

from __future__ import annotations

import base64
import binascii
import json
import threading
from dataclasses import dataclass

from waspbroker import stats
from waspbroker.packet import Publish
from waspbroker.sessions import Session, SessionStore
from waspbroker.subscriptions import Recipient, Subscription, SubscriptionTree
from waspbroker.topics import RetainedStore


class SessionNotFoundError(LookupError):
    """Raised when subscribing for a session with no metadata."""

    def __str__(self) -> str:
        return "session not found"


@dataclass
class SessionMetadata:
    """What the cluster knows about a connected session."""

    session_id: str
    client_id: str
    connected_at: int
    peer: int
    mount_point: str
    lwt: Publish | None = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "client_id": self.client_id,
            "connected_at": self.connected_at,
            "peer": self.peer,
            "mount_point": self.mount_point,
            "lwt": None if self.lwt is None else self.lwt.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionMetadata:
        lwt = data.get("lwt")
        return cls(
            session_id=str(data["session_id"]),
            client_id=str(data.get("client_id", "")),
            connected_at=int(data.get("connected_at", 0)),
            peer=int(data.get("peer", 0)),
            mount_point=str(data.get("mount_point", "")),
            lwt=None if lwt is None else Publish.from_dict(lwt),
        )


class SessionMetadataStore:
    """Thread-safe session metadata keyed by session id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, SessionMetadata] = {}

    def save(self, metadata: SessionMetadata) -> None:
        with self._lock:
            self._data[metadata.session_id] = metadata

    def by_id(self, session_id: str) -> SessionMetadata | None:
        with self._lock:
            return self._data.get(session_id)

    def by_client_id(self, client_id: str) -> SessionMetadata | None:
        with self._lock:
            return next((md for md in self._data.values() if md.client_id == client_id), None)

    def all(self) -> list[SessionMetadata]:
        with self._lock:
            return list(self._data.values())

    def delete(self, session_id: str) -> SessionMetadata | None:
        with self._lock:
            return self._data.pop(session_id, None)

    def delete_peer(self, peer: int) -> None:
        with self._lock:
            self._data = {key: md for key, md in self._data.items() if md.peer != peer}

    def dump(self) -> bytes:
        with self._lock:
            return json.dumps({key: md.to_dict() for key, md in self._data.items()}).encode("utf-8")

    def load(self, buf: bytes) -> None:
        """Merge a dump into the store."""
        try:
            raw = json.loads(buf)
            loaded = (
                {}
                if raw is None
                else {key: SessionMetadata.from_dict(value) for key, value in raw.items()}
            )
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise ValueError(f"invalid session metadata dump: {exc}") from exc
        with self._lock:
            self._data.update(loaded)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: object) -> bytes:
    if value is None:
        return b""
    if not isinstance(value, str):
        raise ValueError("state dump fields must be base64 strings")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 in state dump: {exc}") from exc


class State:
    """The broker's shared state and the local session registry."""

    def __init__(self) -> None:
        self.sessions = SessionStore()
        self.subscriptions = SubscriptionTree()
        self.topics = RetainedStore()
        self.session_metadatas = SessionMetadataStore()

    def load(self, buf: bytes) -> None:
        """Restore the state from a ``dump``."""
        try:
            dump = json.loads(buf)
        except ValueError as exc:
            raise ValueError(f"invalid state dump: {exc}") from exc
        if not isinstance(dump, dict):
            raise ValueError("invalid state dump: expected an object")
        self.session_metadatas.load(_unb64(dump.get("SessionMetadatas")))
        self.subscriptions.load(_unb64(dump.get("Subscriptions")))
        stats.gauge("subscriptionsCount").set(self.subscriptions.count())
        self.topics.load(_unb64(dump.get("Topics")))
        stats.gauge("retainedMessagesCount").set(self.topics.count())

    def dump(self) -> bytes:
        return json.dumps(
            {
                "Subscriptions": _b64(self.subscriptions.dump()),
                "Topics": _b64(self.topics.dump()),
                "SessionMetadatas": _b64(self.session_metadatas.dump()),
            }
        ).encode("utf-8")

    def subscribe(self, peer: int, session_id: str, pattern: bytes, qos: int) -> None:
        if self.session_metadatas.by_id(session_id) is None:
            raise SessionNotFoundError(session_id)
        self.subscriptions.insert(peer, pattern, qos, session_id)
        stats.gauge("subscriptionsCount").inc()

    def unsubscribe(self, session_id: str, pattern: bytes) -> None:
        self.subscriptions.remove(pattern, session_id)
        stats.gauge("subscriptionsCount").dec()

    def remove_subscriptions_for_peer(self, peer: int) -> None:
        count = self.subscriptions.remove_peer(peer)
        if count > 0:
            stats.gauge("subscriptionsCount").sub(count)

    def remove_subscriptions_for_session(self, session_id: str) -> None:
        count = self.subscriptions.remove_session(session_id)
        if count > 0:
            stats.gauge("subscriptionsCount").sub(count)

    def delete_session_metadata(self, session_id: str, peer: int) -> None:
        self.session_metadatas.delete(session_id)

    def delete_session_metadatas_by_peer(self, peer: int) -> None:
        self.session_metadatas.delete_peer(peer)

    def get_session_metadatas(self, session_id: str) -> SessionMetadata | None:
        return self.session_metadatas.by_id(session_id)

    def get_session_metadatas_by_client_id(self, client_id: str) -> SessionMetadata | None:
        return self.session_metadatas.by_client_id(client_id)

    def list_session_metadatas(self) -> list[SessionMetadata]:
        return self.session_metadatas.all()

    def create_session_metadata(
        self,
        session_id: str,
        peer: int,
        client_id: str,
        connected_at: int,
        lwt: Publish | None,
        mount_point: str,
    ) -> None:
        self.session_metadatas.save(
            SessionMetadata(
                session_id=session_id,
                client_id=client_id,
                connected_at=connected_at,
                peer=peer,
                mount_point=mount_point,
                lwt=lwt,
            )
        )

    def recipients(self, topic: bytes) -> list[Recipient]:
        return self.subscriptions.match(topic)

    def list_subscriptions(self) -> list[Subscription]:
        return self.subscriptions.list()

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    def save_session(self, session_id: str, session: Session) -> None:
        stats.gauge("sessionsCount").inc()
        self.sessions.save(session_id, session)

    def close_session(self, session_id: str) -> None:
        stats.gauge("sessionsCount").dec()
        self.sessions.delete(session_id)

    def retain_message(self, publish: Publish) -> None:
        """Retain a publish, or drop the retained message when its payload is empty."""
        if publish.payload:
            self.topics.insert(publish.topic, json.dumps(publish.to_dict()).encode("utf-8"))
        else:
            self.topics.remove(publish.topic)
        stats.gauge("retainedMessagesCount").set(self.topics.count())

    def delete_retained_message(self, topic: bytes) -> None:
        self.topics.remove(topic)
        stats.gauge("retainedMessagesCount").set(self.topics.count())

    def retained_messages(self, topic: bytes) -> list[Publish]:
        """Retained publishes matching a topic pattern; unreadable entries are skipped."""
        out = []
        for payload in self.topics.match(topic):
            try:
                out.append(Publish.from_dict(json.loads(payload)))
            except (ValueError, TypeError, AttributeError):
                continue
        return out