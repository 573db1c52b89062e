import uuid

import pytest

from waspbroker.auth import (
    AUTHENTICATION_FAILED_MOUNT_POINT,
    DEFAULT_MOUNT_POINT,
    ApplicationContext,
    AuthenticationFailedError,
    FileHandler,
    NoopHandler,
    Principal,
    StaticHandler,
    TransportContext,
    fingerprint,
)

TRANSPORT = TransportContext(encrypted=False, remote_address="127.0.0.1:1883")


def _context(username: bytes, password: bytes) -> ApplicationContext:
    return ApplicationContext(client_id=b"client", username=username, password=password)


def test_fingerprint_of_empty_input_is_sha256_of_nothing():
    assert fingerprint(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_fingerprint_string_and_bytes_agree():
    assert fingerprint("alice") == fingerprint(b"alice")
    assert len(fingerprint(b"alice")) == 64
    assert fingerprint(b"alice") != fingerprint(b"bob")


def test_noop_handler_accepts_anyone_with_default_mount_point():
    handler = NoopHandler()
    first = handler.authenticate(_context(b"", b""), TRANSPORT)
    second = handler.authenticate(_context(b"", b""), TRANSPORT)
    assert first.mount_point == DEFAULT_MOUNT_POINT
    assert str(uuid.UUID(first.id)) == first.id
    assert first.id != second.id


def test_static_handler_accepts_matching_credentials():
    password = b"password"
    handler = StaticHandler("alice", password=password)
    principal = handler.authenticate(_context(b"alice", password), TRANSPORT)
    assert principal.mount_point == DEFAULT_MOUNT_POINT


def test_static_handler_refuses_wrong_password():
    password = b"password"
    handler = StaticHandler("alice", password=password)
    password = b"secret"
    with pytest.raises(AuthenticationFailedError) as info:
        handler.authenticate(_context(b"alice", password), TRANSPORT)
    assert info.value.principal.mount_point == AUTHENTICATION_FAILED_MOUNT_POINT


def test_static_handler_refuses_wrong_username():
    password = b"password"
    handler = StaticHandler("alice", password=password)
    with pytest.raises(AuthenticationFailedError):
        handler.authenticate(_context(b"bob", password), TRANSPORT)


def test_file_handler_two_fields_uses_default_mount_point(tmp_path):
    password = b"password"
    path = tmp_path / "users"
    path.write_text(f"alice:{fingerprint(password)}\nbob:{fingerprint(b'token')}\n")
    handler = FileHandler.from_file(path)
    principal = handler.authenticate(_context(b"alice", password), TRANSPORT)
    assert principal.mount_point == DEFAULT_MOUNT_POINT
    other = handler.authenticate(_context(b"bob", b"token"), TRANSPORT)
    assert other.mount_point == DEFAULT_MOUNT_POINT


def test_file_handler_three_fields_uses_given_mount_point(tmp_path):
    password = b"password"
    path = tmp_path / "users"
    path.write_text(f"alice:{fingerprint(password)}:tenant-a\n")
    principal = FileHandler.from_file(path).authenticate(_context(b"alice", password), TRANSPORT)
    assert principal == Principal(id=principal.id, mount_point="tenant-a")


def test_file_handler_refuses_wrong_password_and_unknown_user(tmp_path):
    password = b"password"
    path = tmp_path / "users"
    path.write_text(f"alice:{fingerprint(password)}\n")
    handler = FileHandler.from_file(path)
    password = b"secret"
    with pytest.raises(AuthenticationFailedError):
        handler.authenticate(_context(b"alice", password), TRANSPORT)
    with pytest.raises(AuthenticationFailedError):
        handler.authenticate(_context(b"carol", b"password"), TRANSPORT)


def test_file_handler_rejects_inconsistent_field_counts(tmp_path):
    path = tmp_path / "users"
    path.write_text("alice:abc\nbob:def:tenant\n")
    with pytest.raises(ValueError):
        FileHandler.from_file(path)


def test_file_handler_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        FileHandler.from_file(tmp_path / "absent")