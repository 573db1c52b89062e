"""Cluster state transitions: proposing them and applying them to the state."""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, fields

from waspbroker.audit import Event, NoneRecorder, Recorder
from waspbroker.packet import Publish
from waspbroker.state import State

_log = logging.getLogger(__name__)


@dataclass
class SubscriptionCreated:
    session_id: str
    pattern: bytes
    qos: int
    peer: int


@dataclass
class SubscriptionDeleted:
    session_id: str
    pattern: bytes


@dataclass
class PeerLost:
    peer: int


@dataclass
class SessionCreated:
    session_id: str
    client_id: str
    connected_at: int
    peer: int
    mount_point: str
    lwt: Publish | None = None


@dataclass
class SessionDeleted:
    session_id: str
    peer: int
    mount_point: str


@dataclass
class RetainedMessageStored:
    publish: Publish


@dataclass
class RetainedMessageDeleted:
    topic: bytes


_EVENT_TYPES: dict[str, type] = {
    cls.__name__: cls
    for cls in (
        SubscriptionCreated,
        SubscriptionDeleted,
        PeerLost,
        SessionCreated,
        SessionDeleted,
        RetainedMessageStored,
        RetainedMessageDeleted,
    )
}

_BYTES_FIELDS = frozenset({"pattern", "topic"})
_PUBLISH_FIELDS = frozenset({"publish", "lwt"})


def _field_to_json(name: str, value: object) -> object:
    if name in _BYTES_FIELDS:
        return base64.b64encode(bytes(value)).decode("ascii")
    if name in _PUBLISH_FIELDS:
        return None if value is None else value.to_dict()
    return value


def _field_from_json(name: str, value: object) -> object:
    if name in _BYTES_FIELDS:
        return base64.b64decode(value, validate=True)
    if name in _PUBLISH_FIELDS:
        return None if value is None else Publish.from_dict(value)
    return value


def encode(*args: object) -> bytes:
    """Serialise a set of state transitions."""
    items = []
    for event in args:
        name = type(event).__name__
        if _EVENT_TYPES.get(name) is not type(event):
            raise TypeError(f"not a state transition: {event!r}")
        item = {"type": name}
        item.update({f.name: _field_to_json(f.name, getattr(event, f.name)) for f in fields(event)})
        items.append(item)
    return json.dumps({"events": items}).encode("utf-8")


def decode(payload: bytes) -> list:
    """Read back a set of state transitions written by ``encode``."""
    try:
        raw = json.loads(payload)
        out = []
        for item in raw["events"]:
            cls = _EVENT_TYPES[item["type"]]
            out.append(cls(**{f.name: _field_from_json(f.name, item[f.name]) for f in fields(cls)}))
        return out
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        raise ValueError(f"invalid state transition set: {exc}") from exc


def split_tenant(topic: bytes) -> tuple[str, bytes]:
    """Split a mount-point-prefixed topic into its tenant and the topic below it."""
    head, sep, rest = bytes(topic).partition(b"/")
    if not sep:
        raise ValueError(f"topic {topic!r} has no tenant prefix")
    return head.decode("utf-8", errors="replace"), rest


class FSM:
    """Proposes state transitions to the cluster and applies committed ones.

    ``propose`` takes an encoded transition set and returns once it is
    committed, raising when it could not be.
    """

    def __init__(
        self,
        peer_id: int,
        state: State,
        propose: Callable[[bytes], None],
        recorder: Recorder | None = None,
    ) -> None:
        self.peer_id = peer_id
        self.state = state
        self._propose = propose
        self.recorder = recorder if recorder is not None else NoneRecorder()

    def _record_one(self, event: object) -> None:
        match event:
            case SubscriptionCreated():
                tenant, topic = split_tenant(event.pattern)
                self.recorder.record_event(
                    tenant,
                    Event.SUBSCRIPTION_CREATED,
                    {
                        "pattern": topic.decode("utf-8", errors="replace"),
                        "qos": str(event.qos),
                        "session_id": event.session_id,
                    },
                )
            case SubscriptionDeleted():
                tenant, topic = split_tenant(event.pattern)
                self.recorder.record_event(
                    tenant,
                    Event.SUBSCRIPTION_DELETED,
                    {
                        "pattern": topic.decode("utf-8", errors="replace"),
                        "session_id": event.session_id,
                    },
                )
            case SessionCreated():
                self.recorder.record_event(
                    event.mount_point,
                    Event.SESSION_CONNECTED,
                    {"session_id": event.session_id, "client_id": event.client_id},
                )
            case SessionDeleted():
                self.recorder.record_event(
                    event.mount_point,
                    Event.SESSION_DISCONNECTED,
                    {"session_id": event.session_id},
                )

    def _record(self, events: Iterable[object]) -> None:
        try:
            for event in events:
                self._record_one(event)
        except Exception as exc:  # noqa: BLE001 - audit failures never fail a commit
            _log.warning("failed to record audit event: %s", exc)

    def _commit(self, *events: object) -> None:
        self._propose(encode(*events))
        self._record(events)

    def shutdown(self) -> None:
        self._commit(PeerLost(peer=self.peer_id))

    def retained_message(self, publish: Publish) -> None:
        self._commit(RetainedMessageStored(publish=publish))

    def delete_retained_message(self, topic: bytes) -> None:
        self._commit(RetainedMessageDeleted(topic=topic))

    def subscribe(self, session_id: str, pattern: bytes, qos: int) -> None:
        self.subscribe_from(session_id, self.peer_id, pattern, qos)

    def subscribe_from(self, session_id: str, peer: int, pattern: bytes, qos: int) -> None:
        self._commit(SubscriptionCreated(session_id=session_id, pattern=pattern, qos=qos, peer=peer))

    def create_session_metadata(
        self, session_id: str, client_id: str, lwt: Publish | None, mount_point: str
    ) -> None:
        self._commit(
            SessionCreated(
                session_id=session_id,
                client_id=client_id,
                connected_at=int(time.time()),
                peer=self.peer_id,
                mount_point=mount_point,
                lwt=lwt,
            )
        )

    def delete_session_metadata(self, session_id: str, mount_point: str) -> None:
        self._commit(
            SessionDeleted(session_id=session_id, peer=self.peer_id, mount_point=mount_point)
        )

    def unsubscribe(self, session_id: str, pattern: bytes) -> None:
        self._commit(SubscriptionDeleted(session_id=session_id, pattern=pattern))

    def apply(self, payload: bytes) -> None:
        """Apply a committed transition set to the state."""
        for event in decode(payload):
            match event:
                case RetainedMessageDeleted():
                    self.state.delete_retained_message(event.topic)
                case RetainedMessageStored():
                    self.state.retain_message(event.publish)
                case SubscriptionCreated():
                    self.state.subscribe(event.peer, event.session_id, event.pattern, event.qos)
                case SubscriptionDeleted():
                    self.state.unsubscribe(event.session_id, event.pattern)
                case PeerLost():
                    self.state.remove_subscriptions_for_peer(event.peer)
                    self.state.delete_session_metadatas_by_peer(event.peer)
                case SessionCreated():
                    self.state.create_session_metadata(
                        event.session_id,
                        event.peer,
                        event.client_id,
                        event.connected_at,
                        event.lwt,
                        event.mount_point,
                    )
                case SessionDeleted():
                    self.state.delete_session_metadata(event.session_id, event.peer)
                    self.state.remove_subscriptions_for_session(event.session_id)