"""Handling of packets received from sessions and of published messages."""

from __future__ import annotations

import logging
import queue
import time
from collections.abc import Sequence
from typing import Any

from waspbroker import stats
from waspbroker.fsm import FSM
from waspbroker.messages import StoredMessage
from waspbroker.packet import (
    Connect,
    Disconnect,
    Header,
    PingReq,
    PingResp,
    PubAck,
    Publish,
    SubAck,
    Subscribe,
    UnsubAck,
    Unsubscribe,
)
from waspbroker.sessions import Session, prefix_mount_point
from waspbroker.state import State

_PACKET_TIMEOUT = 0.8
_REMOTE_TIMEOUT = 0.8

_log = logging.getLogger(__name__)


class SessionDisconnectedError(Exception):
    """Raised when a session has disconnected or reconnected elsewhere."""

    def __str__(self) -> str:
        return "Session disconnected"


def get_lower_qos(a: int, b: int) -> int:
    return min(a, b)


def process_packet(
    peer: int,
    fsm: FSM,
    state: State,
    publishes: queue.Queue,
    session: Session,
    pkt: object,
) -> None:
    """Handle one packet received on an established session."""
    match pkt:
        case Connect():
            session.close()
        case Publish():
            pkt.topic = prefix_mount_point(session.mount_point, pkt.topic)
            try:
                publishes.put(
                    StoredMessage(sender=session.id, publish=pkt), timeout=_PACKET_TIMEOUT
                )
            except queue.Full:
                raise TimeoutError("publish queue is full") from None
            if pkt.header.qos == 1:
                session.encoder.pub_ack(PubAck(header=Header(), message_id=pkt.message_id))
        case Subscribe():
            topics = [prefix_mount_point(session.mount_point, t) for t in pkt.topics]
            for topic, qos in zip(topics, pkt.qos):
                fsm.subscribe(session.id, topic, qos)
                session.add_topic(topic)
            session.encoder.sub_ack(
                SubAck(header=pkt.header, message_id=pkt.message_id, qos=pkt.qos)
            )
            for topic in topics:
                for message in state.retained_messages(topic):
                    session.send(message)
        case Unsubscribe():
            topics = [prefix_mount_point(session.mount_point, t) for t in pkt.topics]
            for topic in topics:
                fsm.unsubscribe(session.id, topic)
                session.remove_topic(topic)
            session.encoder.unsub_ack(UnsubAck(header=pkt.header, message_id=pkt.message_id))
        case Disconnect():
            raise SessionDisconnectedError()
        case PingReq():
            metadata = state.get_session_metadatas_by_client_id(session.client_id)
            if metadata is None or metadata.session_id != session.id:
                # The client has reconnected on another peer.
                raise SessionDisconnectedError()
            session.encoder.ping_resp(PingResp(header=pkt.header))


def process_publish(
    peer_id: int,
    membership: Any,
    fsm: FSM,
    state: State,
    local: bool,
    publish: Publish,
) -> None:
    """Retain a publish if asked to and deliver it to its recipients.

    Local sessions get it directly; when ``local`` is set, every other peer
    with recipients gets it once through ``membership.call``.
    """
    start = time.perf_counter()
    try:
        if publish.header.retain:
            if not publish.payload:
                fsm.delete_retained_message(publish.topic)
            else:
                fsm.retained_message(publish)
            publish.header.retain = False
        peers_done: set[int] = set()
        for recipient in state.recipients(publish.topic):
            outgoing = Publish(
                header=Header(
                    dup=publish.header.dup,
                    qos=get_lower_qos(recipient.qos, publish.header.qos),
                ),
                payload=publish.payload,
                topic=publish.topic,
            )
            if recipient.peer == peer_id:
                session = state.get_session(recipient.session_id)
                if session is not None:
                    try:
                        session.send(outgoing)
                    except Exception as exc:  # noqa: BLE001 - one bad session must not stop delivery
                        _log.debug("failed to deliver to session %s: %s", recipient.session_id, exc)
            elif local and recipient.peer not in peers_done:
                peers_done.add(recipient.peer)
                try:
                    membership.call(
                        recipient.peer,
                        lambda client, message=outgoing: client.distribute_message(
                            message, False, _REMOTE_TIMEOUT
                        ),
                    )
                except Exception as exc:  # noqa: BLE001 - remote failures are only reported
                    _log.warning(
                        "failed to distribute message to remote peer %x: %s", recipient.peer, exc
                    )
    finally:
        name = "publishLocalProcessingTime" if local else "publishRemoteProcessingTime"
        stats.histogram(name).observe(stats.milliseconds_elapsed(start))


def store_publish(message_log: Any, messages: Sequence[StoredMessage]) -> None:
    message_log.append(messages)