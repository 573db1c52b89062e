"""Retained-message tree keyed by topic levels."""

from __future__ import annotations

import base64
import json
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field

from waspbroker.format import next_token

MWC = "#"
SWC = "+"


class TopicNotFoundError(KeyError):
    """Raised when removing a topic that is not in the tree."""

    def __str__(self) -> str:
        return "Topic not found"


@dataclass
class Node:
    """A level of the retained-message tree."""

    buf: bytes | None = None
    children: dict[str, Node] = field(default_factory=dict)

    def insert(self, topic: bytes | None, payload: bytes) -> None:
        rest, token = next_token(topic)
        if token == "":
            self.buf = payload
            return
        child = self.children.get(token)
        if child is None:
            child = self.children[token] = Node()
        child.insert(rest, payload)

    def remove(self, topic: bytes | None) -> None:
        rest, token = next_token(topic)
        if token == "":
            self.buf = None
            return
        child = self.children.get(token)
        if child is None:
            raise TopicNotFoundError(token)
        child.remove(rest)
        if not child.children:
            del self.children[token]

    def count(self) -> int:
        own = 1 if self.buf else 0
        return own + sum(child.count() for child in self.children.values())

    def match(self, topic: bytes | None) -> list[bytes]:
        return list(self._match(topic))

    def _match(self, topic: bytes | None) -> Iterator[bytes]:
        rest, token = next_token(topic)
        if token == "":
            if self.buf is not None:
                yield self.buf
            return
        if token == MWC:
            yield from self._all_retained()
        elif token == SWC:
            for child in self.children.values():
                yield from child._match(rest)
        else:
            child = self.children.get(token)
            if child is not None:
                yield from child._match(rest)

    def all_retained(self) -> list[bytes]:
        return list(self._all_retained())

    def _all_retained(self) -> Iterator[bytes]:
        if self.buf is not None:
            yield self.buf
        for child in self.children.values():
            yield from child._all_retained()

    def to_dict(self) -> dict:
        return {
            "buf": None if self.buf is None else base64.b64encode(self.buf).decode("ascii"),
            "children": {key: child.to_dict() for key, child in self.children.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> Node:
        raw = data.get("buf")
        return cls(
            buf=None if raw is None else base64.b64decode(raw),
            children={key: cls.from_dict(child) for key, child in data.get("children", {}).items()},
        )


class RetainedStore:
    """Thread-safe store of retained messages."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.root = Node()

    def insert(self, topic: bytes, payload: bytes) -> None:
        with self._lock:
            self.root.insert(topic, payload)

    def remove(self, topic: bytes) -> None:
        with self._lock:
            self.root.remove(topic)

    def match(self, topic: bytes) -> list[bytes]:
        with self._lock:
            return self.root.match(topic)

    def dump(self) -> bytes:
        with self._lock:
            return json.dumps(self.root.to_dict()).encode("utf-8")

    def load(self, buf: bytes) -> None:
        if buf:
            try:
                root = Node.from_dict(json.loads(buf))
            except (ValueError, TypeError, AttributeError) as exc:
                raise ValueError(f"invalid retained store dump: {exc}") from exc
        else:
            root = Node()
        with self._lock:
            self.root = root

    def count(self) -> int:
        with self._lock:
            return self.root.count()