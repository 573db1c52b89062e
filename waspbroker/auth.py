"""Authentication handlers deciding a session's identity and mount point."""

from __future__ import annotations

import csv
import hashlib
import os
import uuid
from dataclasses import dataclass
from typing import Protocol

DEFAULT_MOUNT_POINT = "_default"
AUTHENTICATION_FAILED_MOUNT_POINT = "_authentication_failed"


@dataclass(frozen=True)
class Principal:
    """The identity granted to an authenticated session."""

    id: str
    mount_point: str


class AuthenticationFailedError(Exception):
    """Raised when credentials are refused.

    ``principal`` carries the identity a handler assigned to the refused
    session, when it assigns one.
    """

    def __init__(self, principal: Principal | None = None) -> None:
        super().__init__("authentication failed")
        self.principal = principal


@dataclass(frozen=True)
class ApplicationContext:
    """MQTT-level credentials taken from a CONNECT packet."""

    client_id: bytes = b""
    username: bytes = b""
    password: bytes = b""


@dataclass(frozen=True)
class TransportContext:
    """Details of the connection a client came in on."""

    encrypted: bool = False
    remote_address: str = ""
    x509_certificate: bytes = b""


class AuthenticationHandler(Protocol):
    def authenticate(self, mqtt: ApplicationContext, transport: TransportContext) -> Principal:
        ...


def fingerprint(data: bytes | str) -> str:
    """Hex SHA-256 digest of some bytes or of a UTF-8 string."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(bytes(data)).hexdigest()


def _random_id() -> str:
    return str(uuid.uuid4())


class NoopHandler:
    """Accepts every client under the default mount point."""

    def authenticate(self, mqtt: ApplicationContext, transport: TransportContext) -> Principal:
        return Principal(id=_random_id(), mount_point=DEFAULT_MOUNT_POINT)


class StaticHandler:
    """Accepts a single username and password pair."""

    def __init__(self, username: bytes | str, password: bytes | str) -> None:
        self._username_hash = fingerprint(username)
        self._password_hash = fingerprint(password)

    def authenticate(self, mqtt: ApplicationContext, transport: TransportContext) -> Principal:
        if (
            fingerprint(mqtt.username) != self._username_hash
            or fingerprint(mqtt.password) != self._password_hash
        ):
            raise AuthenticationFailedError(
                Principal(id=_random_id(), mount_point=AUTHENTICATION_FAILED_MOUNT_POINT)
            )
        return Principal(id=_random_id(), mount_point=DEFAULT_MOUNT_POINT)


@dataclass(frozen=True)
class _FileRecord:
    password_hash: str
    mount_point: str


class FileHandler:
    """Authenticates against colon-separated records.

    Each line reads ``username:password_sha256_hex`` or
    ``username:password_sha256_hex:mountpoint``; two-field lines use the
    default mount point. All lines must have the same number of fields.
    """

    def __init__(self, records: dict[str, _FileRecord]) -> None:
        self._db = dict(records)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> FileHandler:
        with open(path, newline="", encoding="utf-8") as fd:
            try:
                rows = [row for row in csv.reader(fd, delimiter=":", strict=True) if row]
            except csv.Error as exc:
                raise ValueError(f"invalid credentials file {path}: {exc}") from exc
        if rows:
            expected = len(rows[0])
            for number, row in enumerate(rows, start=1):
                if len(row) != expected:
                    raise ValueError(
                        f"invalid credentials file {path}: record {number} "
                        f"has {len(row)} fields, expected {expected}"
                    )
        records: dict[str, _FileRecord] = {}
        for row in rows:
            if len(row) == 2:
                username, password_hash = row
                mount_point = DEFAULT_MOUNT_POINT
            elif len(row) == 3:
                username, password_hash, mount_point = row
            else:
                continue
            records.setdefault(fingerprint(username), _FileRecord(password_hash, mount_point))
        return cls(records)

    def authenticate(self, mqtt: ApplicationContext, transport: TransportContext) -> Principal:
        record = self._db.get(fingerprint(mqtt.username))
        if record is not None and record.password_hash == fingerprint(mqtt.password):
            return Principal(id=_random_id(), mount_point=record.mount_point)
        raise AuthenticationFailedError()