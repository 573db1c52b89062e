import queue

import pytest

from waspbroker.fsm import FSM
from waspbroker.mqttserver import MqttServer
from waspbroker.packet import Publish
from waspbroker.state import State


def make_server(local_size=0, remote_size=0):
    state = State()
    fsm = None

    def propose(payload):
        fsm.apply(payload)

    fsm = FSM(1, state, propose)
    server = MqttServer(state, fsm, queue.Queue(local_size), queue.Queue(remote_size))
    return server, state


def test_create_and_list_subscriptions():
    server, state = make_server()
    state.create_session_metadata("s1", 2, "c1", 0, None, "_default")
    server.create_subscription("s1", 2, b"_default/a", 1)
    subs = server.list_subscriptions()
    assert [(s.pattern, s.peer, s.session_id, s.qos) for s in subs] == [
        (b"_default/a", 2, "s1", 1)
    ]


def test_delete_subscription():
    server, state = make_server()
    state.create_session_metadata("s1", 2, "c1", 0, None, "_default")
    server.create_subscription("s1", 2, b"_default/a", 1)
    server.delete_subscription("s1", b"_default/a")
    assert server.list_subscriptions() == []


def test_distribute_to_local_queue():
    server, _ = make_server()
    message = Publish(topic=b"_default/a", payload=b"x")
    server.distribute_message(message, True)
    stored = server.local_publishes.get_nowait()
    assert stored.sender == "_rpc"
    assert stored.publish == message
    assert server.remote_publishes.empty()


def test_distribute_to_remote_queue():
    server, _ = make_server()
    message = Publish(topic=b"_default/a", payload=b"x")
    server.distribute_message(message, False)
    assert server.remote_publishes.get_nowait().publish == message
    assert server.local_publishes.empty()


def test_distribute_times_out_on_full_queue():
    server, _ = make_server(remote_size=1)
    server.distribute_message(Publish(topic=b"a"), False)
    with pytest.raises(TimeoutError):
        server.distribute_message(Publish(topic=b"b"), False, 0.01)


def test_list_session_metadatas():
    server, state = make_server()
    state.create_session_metadata("s1", 2, "c1", 0, None, "_default")
    assert [m.session_id for m in server.list_session_metadatas()] == ["s1"]