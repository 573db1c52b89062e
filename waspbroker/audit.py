"""Audit recorders for session and subscription events."""

from __future__ import annotations

import abc
import enum
import queue
import sys
import threading
import time
from collections.abc import Callable, Mapping
from typing import TextIO

Consumer = Callable[[int, str, str, str, Mapping[str, str]], None]


class Event(str, enum.Enum):
    """Kinds of audited events."""

    SESSION_CONNECTED = "session_connected"
    SESSION_DISCONNECTED = "session_disconnected"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PEER_LOST = "peer_lost"


_TEMPLATES: dict[Event, str] = {
    Event.SESSION_CONNECTED: "session {session_id} connected",
    Event.SESSION_DISCONNECTED: "session {session_id} disconnected",
    Event.SUBSCRIPTION_CREATED: 'session {session_id} subscribed to topic "{pattern}"',
    Event.SUBSCRIPTION_DELETED: 'session {session_id} unsubscribed to topic "{pattern}"',
    Event.PEER_LOST: "wasp peer {peer} left the cluster",
}


def format_event(kind: Event | str, payload: Mapping[str, str]) -> str | None:
    """Render an event as a line of text, or None for kinds without a template."""
    try:
        event = Event(kind)
    except ValueError:
        return None
    fields = {
        "session_id": payload.get("session_id", "")[:8],
        "peer": payload.get("peer", "")[:8],
        "pattern": payload.get("pattern", ""),
    }
    return _TEMPLATES[event].format(**fields) + "\n"


class Recorder(abc.ABC):
    """Records audit events and feeds them to consumers."""

    @abc.abstractmethod
    def record_event(self, tenant: str, kind: Event, payload: Mapping[str, str]) -> None:
        ...

    @abc.abstractmethod
    def consume(self, consumer: Consumer, stop: threading.Event) -> None:
        """Pass events to ``consumer`` until ``stop`` is set."""


class NoneRecorder(Recorder):
    """Discards every event."""

    def record_event(self, tenant: str, kind: Event, payload: Mapping[str, str]) -> None:
        return None

    def consume(self, consumer: Consumer, stop: threading.Event) -> None:
        stop.wait()


class StdoutRecorder(Recorder):
    """Prints events as text and hands them to an active consumer."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self._queue: queue.Queue[tuple[str, str, str, Mapping[str, str]]] | None = None

    def record_event(self, tenant: str, kind: Event, payload: Mapping[str, str]) -> None:
        kind_name = Event(kind).value if isinstance(kind, Event) else str(kind)
        pending = self._queue
        if pending is not None:
            pending.put((tenant, "wasp", kind_name, payload))
        text = format_event(kind, payload)
        if text is not None:
            stream = self._stream if self._stream is not None else sys.stdout
            stream.write(text)

    def consume(self, consumer: Consumer, stop: threading.Event) -> None:
        pending: queue.Queue[tuple[str, str, str, Mapping[str, str]]] = queue.Queue()
        self._queue = pending
        try:
            while not stop.is_set():
                try:
                    tenant, service, kind, payload = pending.get(timeout=0.05)
                except queue.Empty:
                    continue
                consumer(time.time_ns(), tenant, service, kind, payload)
        finally:
            self._queue = None