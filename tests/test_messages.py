import threading

import pytest

from waspbroker.messages import (
    MessageLog,
    StoredMessage,
    bytes_to_uint64,
    uint64_to_bytes,
)
from waspbroker.packet import Header, Publish


def _message(i: int) -> StoredMessage:
    return StoredMessage(
        sender=f"session-{i}",
        publish=Publish(header=Header(qos=1), topic=f"_default/t/{i}".encode(), payload=str(i).encode()),
    )


@pytest.fixture
def log(tmp_path):
    with MessageLog(tmp_path, retry_delay=0.0) as message_log:
        yield message_log


def test_uint64_big_endian_encoding():
    assert uint64_to_bytes(1) == b"\x00\x00\x00\x00\x00\x00\x00\x01"


@pytest.mark.parametrize("value", [0, 1, 255, 5000, (1 << 64) - 1])
def test_uint64_round_trip(value):
    assert bytes_to_uint64(uint64_to_bytes(value)) == value


def test_bytes_to_uint64_none_is_zero():
    assert bytes_to_uint64(None) == 0


def test_bytes_to_uint64_short_input():
    with pytest.raises(ValueError):
        bytes_to_uint64(b"\x01\x02")


def test_uint64_to_bytes_out_of_range():
    with pytest.raises(ValueError):
        uint64_to_bytes(-1)
    with pytest.raises(ValueError):
        uint64_to_bytes(1 << 64)


def test_stored_message_round_trip():
    message = _message(7)
    assert StoredMessage.from_bytes(message.to_bytes()) == message


def test_stored_message_invalid():
    with pytest.raises(ValueError):
        StoredMessage.from_bytes(b"not json")


def test_append_and_get(log):
    messages = [_message(i) for i in range(3)]
    log.append(messages)
    got, next_offset = log.get(0, 10)
    assert got == messages
    again, after = log.get(next_offset, 10)
    assert again == []
    assert after == next_offset


def test_get_respects_count(log):
    messages = [_message(i) for i in range(5)]
    log.append(messages)
    first, next_offset = log.get(0, 2)
    assert first == messages[:2]
    rest, _ = log.get(next_offset, 10)
    assert rest == messages[2:]


def test_trim_drops_old_messages(tmp_path):
    with MessageLog(tmp_path, max_message_count=3) as message_log:
        messages = [_message(i) for i in range(5)]
        message_log.append(messages)
        got, _ = message_log.get(0, 10)
        assert messages[0] not in got
        assert got[-1] == messages[-1]
        assert len(got) <= 4


def test_sequence_persists_across_reopen(tmp_path):
    with MessageLog(tmp_path) as message_log:
        message_log.append([_message(0)])
        _, next_offset = message_log.get(0, 10)
    with MessageLog(tmp_path) as message_log:
        message_log.append([_message(1)])
        got, _ = message_log.get(next_offset, 10)
        assert got == [_message(1)]


def _run_consumer(message_log, name, expected, handler=None):
    received = []
    stop = threading.Event()

    def collect(sender, publish):
        if handler is not None:
            handler(sender, publish)
        received.append((sender, publish))
        if len(received) >= expected:
            stop.set()

    thread = threading.Thread(target=message_log.consume, args=(name, collect, stop))
    thread.start()
    thread.join(timeout=5)
    stop.set()
    thread.join(timeout=5)
    return received, thread


def test_consume_delivers_messages(log):
    messages = [_message(i) for i in range(3)]
    log.append(messages)
    received, thread = _run_consumer(log, "reader", 3)
    assert not thread.is_alive()
    assert received == [(m.sender, m.publish) for m in messages]


def test_consume_resumes_from_saved_offset(log):
    log.append([_message(i) for i in range(2)])
    first, _ = _run_consumer(log, "reader", 2)
    assert len(first) == 2
    log.append([_message(9)])
    second, _ = _run_consumer(log, "reader", 1)
    assert second == [(_message(9).sender, _message(9).publish)]


def test_consume_wakes_on_append(log):
    received = []
    stop = threading.Event()

    def collect(sender, publish):
        received.append((sender, publish))
        stop.set()

    thread = threading.Thread(target=log.consume, args=("late", collect, stop))
    thread.start()
    log.append([_message(4)])
    thread.join(timeout=5)
    stop.set()
    thread.join(timeout=5)
    stored, _ = log.get(0, 10)
    assert [sender for sender, _ in received] == ["session-4"]
    assert received == [(m.sender, m.publish) for m in stored]


def test_consume_skips_batch_after_handler_error(log):
    log.append([_message(i) for i in range(3)])
    calls = []
    stop = threading.Event()

    def failing(sender, publish):
        calls.append((sender, publish))
        stop.set()
        raise RuntimeError("boom")

    log.consume("broken", failing, stop)
    stored, _ = log.get(0, 1)
    assert [sender for sender, _ in calls] == ["session-0"]
    assert calls == [(stored[0].sender, stored[0].publish)]