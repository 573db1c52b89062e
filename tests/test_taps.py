import re
import socket
import threading

import pytest

from waspbroker.messages import StoredMessage
from waspbroker.packet import Publish
from waspbroker.taps import SyslogTap, run


class FakeLog:
    def __init__(self, messages):
        self.messages = messages
        self.consumer_name = None
        self.errors = []

    def consume(self, consumer_name, handler, stop):
        self.consumer_name = consumer_name
        for message in self.messages:
            try:
                handler(message.sender, message.publish)
            except Exception as exc:
                self.errors.append(exc)


@pytest.fixture
def udp_server():
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    server.settimeout(2)
    yield server
    server.close()


def test_run_feeds_messages_to_tap():
    messages = [
        StoredMessage(sender="s1", publish=Publish(topic=b"a", payload=b"1")),
        StoredMessage(sender="s2", publish=Publish(topic=b"b", payload=b"2")),
    ]
    log = FakeLog(messages)
    received = []
    run("archive", log, lambda sender, p: received.append((sender, p.topic)), threading.Event())
    assert log.consumer_name == "archive"
    assert received == [("s1", b"a"), ("s2", b"b")]
    assert log.errors == []


def test_run_propagates_tap_errors_to_log():
    log = FakeLog([StoredMessage(sender="s1", publish=Publish(topic=b"a", payload=b"1"))])

    def failing(sender, publish):
        raise ConnectionError("sink down")

    run("archive", log, failing, threading.Event())
    assert len(log.errors) == 1
    assert isinstance(log.errors[0], ConnectionError)


def test_syslog_tap_sends_line(udp_server):
    port = udp_server.getsockname()[1]
    publish = Publish(topic=b"a/b", payload=b"hello")
    with SyslogTap(f"127.0.0.1:{port}", hostname="broker") as tap:
        tap("s1", publish)
        data, _ = udp_server.recvfrom(4096)
    line = data.decode("utf-8")
    assert line.startswith("<128>")
    assert re.search(r" broker wasp\[\d+\]: ", line)
    assert line.endswith('a/b <- "hello"\n')
    assert publish.topic.decode("utf-8") in line


def test_syslog_tap_quotes_payload(udp_server):
    port = udp_server.getsockname()[1]
    publish = Publish(topic=b"t", payload=b'he said "hi"\n')
    with SyslogTap(f"127.0.0.1:{port}", hostname="broker") as tap:
        tap("s1", publish)
        data, _ = udp_server.recvfrom(4096)
    line = data.decode("utf-8")
    assert line.endswith('t <- "he said \\"hi\\"\\n"\n')
    assert f"{publish.topic.decode('utf-8')} <- " in line


def test_syslog_tap_rejects_address_without_port():
    with pytest.raises(ValueError):
        SyslogTap("localhost")