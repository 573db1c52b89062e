"""Taps forwarding every published message to an external sink."""

from __future__ import annotations

import datetime
import logging
import os
import socket
import threading
from collections.abc import Callable
from typing import Any

from waspbroker.packet import Publish

LOG_LOCAL0 = 16 << 3

_log = logging.getLogger(__name__)

Tap = Callable[[str, Publish], None]

_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    "\\": "\\\\",
    '"': '\\"',
}


def _quote(data: bytes) -> str:
    """Double-quote bytes as text, escaping what is not printable."""
    out = ['"']
    for char in data.decode("utf-8", errors="surrogateescape"):
        code = ord(char)
        if char in _ESCAPES:
            out.append(_ESCAPES[char])
        elif 0xDC80 <= code <= 0xDCFF:
            out.append(f"\\x{code - 0xDC00:02x}")
        elif char.isprintable():
            out.append(char)
        elif code < 0x80:
            out.append(f"\\x{code:02x}")
        elif code < 0x10000:
            out.append(f"\\u{code:04x}")
        else:
            out.append(f"\\U{code:08x}")
    out.append('"')
    return "".join(out)


def _timestamp() -> str:
    now = datetime.datetime.now().astimezone().replace(microsecond=0)
    if now.utcoffset() == datetime.timedelta(0):
        return now.strftime("%Y-%m-%dT%H:%M:%SZ")
    return now.isoformat()


def _split_address(remote: str) -> tuple[str, int]:
    host, sep, port = remote.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid syslog address {remote!r}: expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


class SyslogTap:
    """Sends each message as a line to a remote syslog server over UDP."""

    def __init__(self, remote: str, *, hostname: str | None = None, tag: str = "wasp") -> None:
        host, port = _split_address(remote)
        family, kind, proto, _, address = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
        self._sock = socket.socket(family, kind, proto)
        try:
            self._sock.connect(address)
        except OSError:
            self._sock.close()
            raise
        self.hostname = hostname if hostname is not None else socket.gethostname()
        self.tag = tag
        self.priority = LOG_LOCAL0

    def __enter__(self) -> SyslogTap:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __call__(self, sender: str, publish: Publish) -> None:
        text = f"{publish.topic.decode('utf-8', errors='replace')} <- {_quote(publish.payload)}"
        newline = "" if text.endswith("\n") else "\n"
        line = (
            f"<{self.priority}>{_timestamp()} {self.hostname} "
            f"{self.tag}[{os.getpid()}]: {text}{newline}"
        )
        self._sock.send(line.encode("utf-8"))

    def close(self) -> None:
        self._sock.close()


def run(name: str, message_log: Any, tap: Tap, stop: threading.Event) -> None:
    """Feed the message log, as consumer ``name``, into ``tap`` until ``stop`` is set."""

    def handle(sender: str, publish: Publish) -> None:
        try:
            tap(sender, publish)
        except Exception as exc:
            _log.error("failed to send message to tap %s: %s", name, exc)
            raise

    message_log.consume(name, handle, stop)