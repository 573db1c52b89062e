"""Persistent, bounded log of published messages with named consumers."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from waspbroker.packet import Publish

MAX_MESSAGE_COUNT = 5000
_BATCH_SIZE = 10

_log = logging.getLogger(__name__)


def bytes_to_uint64(data: bytes | None) -> int:
    """Read a big-endian unsigned 64-bit integer; None reads as 0."""
    if data is None:
        return 0
    if len(data) < 8:
        raise ValueError(f"need 8 bytes to read a uint64, got {len(data)}")
    return int.from_bytes(bytes(data[:8]), "big")


def uint64_to_bytes(value: int) -> bytes:
    """Write an unsigned 64-bit integer as 8 big-endian bytes."""
    if not 0 <= value < 1 << 64:
        raise ValueError(f"{value} does not fit in an unsigned 64-bit integer")
    return value.to_bytes(8, "big")


@dataclass
class StoredMessage:
    """A publish together with the id of the session that sent it."""

    sender: str
    publish: Publish

    def to_bytes(self) -> bytes:
        return json.dumps({"sender": self.sender, "publish": self.publish.to_dict()}).encode(
            "utf-8"
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> StoredMessage:
        try:
            raw = json.loads(data)
            return cls(sender=str(raw.get("sender", "")), publish=Publish.from_dict(raw["publish"]))
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise ValueError(f"invalid stored message: {exc}") from exc


Handler = Callable[[str, Publish], None]


class MessageLog:
    """Append-only message log kept in ``<path>/messages``.

    Only the most recent ``max_message_count`` offsets are kept. Consumers
    remember, by name, the offset they have reached.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        no_sync: bool = False,
        max_message_count: int = MAX_MESSAGE_COUNT,
        retry_delay: float = 5.0,
    ) -> None:
        self.max_message_count = max_message_count
        self.retry_delay = retry_delay
        self._lock = threading.RLock()
        self._notifications: dict[str, threading.Event] = {}
        self._notifications_lock = threading.Lock()
        self._conn = sqlite3.connect(
            os.path.join(os.fspath(path), "messages"),
            check_same_thread=False,
            isolation_level=None,
        )
        if no_sync:
            self._conn.execute("PRAGMA synchronous=OFF")
        with self._transaction() as cur:
            cur.execute(
                "CREATE TABLE IF NOT EXISTS messages "
                "(position INTEGER PRIMARY KEY, body BLOB NOT NULL)"
            )
            cur.execute(
                "CREATE TABLE IF NOT EXISTS sequence "
                "(id INTEGER PRIMARY KEY CHECK (id = 0), value INTEGER NOT NULL)"
            )
            cur.execute(
                "CREATE TABLE IF NOT EXISTS consumers (name BLOB PRIMARY KEY, position BLOB NOT NULL)"
            )
            cur.execute("INSERT OR IGNORE INTO sequence (id, value) VALUES (0, 0)")
            self._trim(cur)

    def __enter__(self) -> MessageLog:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _sequence(self, cur: sqlite3.Cursor) -> int:
        return cur.execute("SELECT value FROM sequence WHERE id = 0").fetchone()[0]

    def _trim(self, cur: sqlite3.Cursor) -> None:
        seq = self._sequence(cur)
        if seq > self.max_message_count:
            cur.execute("DELETE FROM messages WHERE position < ?", (seq - self.max_message_count,))

    def _notify(self) -> None:
        with self._notifications_lock:
            for event in self._notifications.values():
                event.set()

    def _subscribe(self, sub_id: str, event: threading.Event) -> None:
        with self._notifications_lock:
            self._notifications[sub_id] = event

    def _unsubscribe(self, sub_id: str) -> None:
        with self._notifications_lock:
            self._notifications.pop(sub_id, None)

    def append(self, messages: Sequence[StoredMessage]) -> None:
        """Store messages at the next offsets and wake up consumers."""
        with self._transaction() as cur:
            seq = self._sequence(cur)
            for message in messages:
                seq += 1
                cur.execute(
                    "INSERT INTO messages (position, body) VALUES (?, ?)", (seq, message.to_bytes())
                )
            cur.execute("UPDATE sequence SET value = ? WHERE id = 0", (seq,))
            self._trim(cur)
        self._notify()

    def get(self, offset: int, count: int) -> tuple[list[StoredMessage], int]:
        """Read up to ``count`` messages from ``offset`` on.

        Returns the messages and the offset to read from next.
        """
        with self._lock:
            rows = self._conn.execute(
                "SELECT position, body FROM messages WHERE position >= ? ORDER BY position LIMIT ?",
                (offset, count),
            ).fetchall()
        if not rows:
            return [], offset
        return [StoredMessage.from_bytes(body) for _, body in rows], rows[-1][0] + 1

    def _advance_offset(self, consumer: bytes, offset: int) -> None:
        with self._transaction() as cur:
            cur.execute(
                "INSERT OR REPLACE INTO consumers (name, position) VALUES (?, ?)",
                (consumer, uint64_to_bytes(offset)),
            )

    def _consumer_offset(self, consumer: bytes) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT position FROM consumers WHERE name = ?", (consumer,)
            ).fetchone()
        return bytes_to_uint64(None if row is None else row[0])

    def consume(self, consumer_name: str, handler: Handler, stop: threading.Event) -> None:
        """Feed messages to ``handler`` from the consumer's offset until ``stop`` is set.

        When the handler raises, the error is logged, consumption pauses for
        ``retry_delay`` seconds and the rest of the batch is skipped.
        """
        consumer = consumer_name.encode("utf-8")
        wake = threading.Event()
        wake.set()
        sub_id = str(uuid.uuid4())
        last_seen = self._consumer_offset(consumer)
        self._subscribe(sub_id, wake)
        try:
            while not stop.is_set():
                if not wake.wait(0.05):
                    continue
                wake.clear()
                while True:
                    batch, next_offset = self.get(last_seen, _BATCH_SIZE)
                    for message in batch:
                        try:
                            handler(message.sender, message.publish)
                        except Exception as exc:  # noqa: BLE001 - consumer errors must not stop the log
                            _log.warning("message consumer %s failed: %s", consumer_name, exc)
                            if stop.wait(self.retry_delay):
                                return
                            break
                    last_seen = next_offset
                    self._advance_offset(consumer, last_seen)
                    if len(batch) < _BATCH_SIZE:
                        break
        finally:
            self._unsubscribe(sub_id)