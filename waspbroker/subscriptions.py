"""Subscription tree resolving MQTT topic patterns to recipients."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from waspbroker.format import next_token

MWC = "#"
SWC = "+"


class SubscriptionNotFoundError(KeyError):
    """Raised when removing a subscription that does not exist."""

    def __str__(self) -> str:
        return "Subscription not found"


@dataclass(frozen=True)
class Recipient:
    """A session subscribed at a tree node."""

    peer: int
    session_id: str
    qos: int


@dataclass(frozen=True)
class Subscription:
    """A subscription as listed from the tree."""

    pattern: bytes
    peer: int
    session_id: str
    qos: int


def _encode_token(token: str) -> bytes:
    return token.encode("utf-8", errors="surrogateescape")


@dataclass
class Node:
    """A level of the subscription tree."""

    recipients: list[Recipient] = field(default_factory=list)
    children: dict[str, Node] = field(default_factory=dict)

    def insert(self, peer: int, topic: bytes | None, qos: int, sub: str) -> None:
        rest, token = next_token(topic)
        if token == "":
            for idx, recipient in enumerate(self.recipients):
                if recipient.session_id == sub:
                    self.recipients[idx] = replace(recipient, qos=qos)
                    return
            self.recipients.append(Recipient(peer=peer, session_id=sub, qos=qos))
            return
        child = self.children.get(token)
        if child is None:
            child = self.children[token] = Node()
        child.insert(peer, rest, qos, sub)

    def remove(self, topic: bytes | None, sub: str) -> None:
        rest, token = next_token(topic)
        if token == "":
            idx = next(
                (i for i, recipient in enumerate(self.recipients) if recipient.session_id == sub),
                None,
            )
            if idx is None:
                raise SubscriptionNotFoundError(sub)
            self.recipients[idx] = self.recipients[-1]
            self.recipients.pop()
            return
        child = self.children.get(token)
        if child is None:
            raise SubscriptionNotFoundError(sub)
        child.remove(rest, sub)
        if not child.recipients and not child.children:
            del self.children[token]

    def match(self, topic: bytes | None) -> list[Recipient]:
        out: list[Recipient] = []
        self._match(topic, out)
        return out

    def _match(self, topic: bytes | None, out: list[Recipient]) -> None:
        rest, token = next_token(topic)
        if token == "":
            out.extend(self.recipients)
            return
        for key, child in self.children.items():
            if key == MWC:
                out.extend(child.recipients)
            elif key == SWC or key == token:
                child._match(rest, out)

    def list(self, key: bytes = b"") -> list[Subscription]:
        out = [
            Subscription(pattern=key, peer=r.peer, session_id=r.session_id, qos=r.qos)
            for r in self.recipients
        ]
        for token, child in self.children.items():
            token_bytes = _encode_token(token)
            child_key = key + b"/" + token_bytes if key else token_bytes
            out.extend(child.list(child_key))
        return out

    def _remove_where(self, predicate: Callable[[Recipient], bool]) -> int:
        kept = [r for r in self.recipients if not predicate(r)]
        removed = len(self.recipients) - len(kept)
        self.recipients = kept
        for token, child in tuple(self.children.items()):
            removed += child._remove_where(predicate)
            if not child.recipients and not child.children:
                del self.children[token]
        return removed

    def remove_peer(self, peer: int) -> int:
        return self._remove_where(lambda r: r.peer == peer)

    def remove_session(self, session_id: str) -> int:
        return self._remove_where(lambda r: r.session_id == session_id)

    def count(self) -> int:
        return len(self.recipients) + sum(child.count() for child in self.children.values())

    def to_dict(self) -> dict:
        return {
            "recipients": [
                {"peer": r.peer, "session_id": r.session_id, "qos": r.qos} for r in self.recipients
            ],
            "children": {key: child.to_dict() for key, child in self.children.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> Node:
        return cls(
            recipients=[
                Recipient(peer=int(r["peer"]), session_id=str(r["session_id"]), qos=int(r["qos"]))
                for r in data.get("recipients", [])
            ],
            children={key: cls.from_dict(child) for key, child in data.get("children", {}).items()},
        )


class SubscriptionTree:
    """Thread-safe subscription tree."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.root = Node()

    def insert(self, peer: int, pattern: bytes, qos: int, sub: str) -> None:
        with self._lock:
            self.root.insert(peer, pattern, qos, sub)

    def remove(self, pattern: bytes, sub: str) -> None:
        with self._lock:
            self.root.remove(pattern, sub)

    def match(self, topic: bytes) -> list[Recipient]:
        with self._lock:
            return self.root.match(topic)

    def list(self) -> list[Subscription]:
        with self._lock:
            return self.root.list()

    def remove_peer(self, peer: int) -> int:
        with self._lock:
            return self.root.remove_peer(peer)

    def remove_session(self, session_id: str) -> int:
        with self._lock:
            return self.root.remove_session(session_id)

    def dump(self) -> bytes:
        with self._lock:
            return json.dumps(self.root.to_dict()).encode("utf-8")

    def load(self, buf: bytes) -> None:
        if buf:
            try:
                root = Node.from_dict(json.loads(buf))
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                raise ValueError(f"invalid subscription tree dump: {exc}") from exc
        else:
            root = Node()
        with self._lock:
            self.root = root

    def count(self) -> int:
        with self._lock:
            return self.root.count()