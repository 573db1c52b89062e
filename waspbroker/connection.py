"""Lifecycle of one client connection, from CONNECT to teardown."""

from __future__ import annotations

import contextlib
import logging
import queue
import time
from collections.abc import Iterable
from typing import Any

from waspbroker import stats
from waspbroker.auth import ApplicationContext, AuthenticationFailedError, TransportContext
from waspbroker.fsm import FSM
from waspbroker.handlers import SessionDisconnectedError, process_packet
from waspbroker.messages import StoredMessage
from waspbroker.packet import ConnAck, ConnAckCode, Connect, type_string
from waspbroker.sessions import Session, prefix_mount_point
from waspbroker.state import State

CONNECT_TIMEOUT = 10.0

_log = logging.getLogger(__name__)


class ConnectNotDoneError(Exception):
    """Raised when a connection does not open with a CONNECT packet."""

    def __str__(self) -> str:
        return "CONNECT not done"


def _set_timeout(conn: Any, seconds: float | None) -> None:
    settimeout = getattr(conn, "settimeout", None)
    if settimeout is not None:
        settimeout(seconds)


def _keepalive_timeout(keepalive: int) -> float | None:
    return 2.0 * keepalive if keepalive > 0 else None


def _teardown(
    fsm: FSM,
    state: State,
    session: Session,
    publishes: queue.Queue,
    loss_reason: str | None,
) -> None:
    metadata = state.get_session_metadatas_by_client_id(session.client_id)
    try:
        fsm.delete_session_metadata(session.id, session.mount_point)
    except Exception as exc:  # noqa: BLE001 - teardown goes on regardless
        _log.debug("session %s: failed to delete metadata: %s", session.id, exc)
    reconnected_elsewhere = metadata is None or metadata.session_id != session.id
    if not reconnected_elsewhere and not session.disconnected and loss_reason is not None:
        _log.debug("session %s lost: %s", session.id, loss_reason)
        if session.lwt is not None:
            publishes.put(StoredMessage(sender=session.id, publish=session.lwt))

    for topic in list(getattr(session, "topics", ())):
        try:
            fsm.unsubscribe(session.id, topic)
        except Exception as exc:  # noqa: BLE001 - subscriptions may already be gone
            _log.debug("session %s: failed to unsubscribe %r: %s", session.id, topic, exc)

    state.close_session(session.id)


def run_session(
    peer: int,
    fsm: FSM,
    state: State,
    conn: Any,
    packets: Iterable[object],
    encoder: Any,
    publishes: queue.Queue,
    auth_handler: Any,
) -> None:
    """Serve one client connection until it disconnects or is lost.

    ``packets`` yields decoded packets read from ``conn``; it ends, or raises,
    when the connection goes away. ``encoder`` writes packets back to the
    client. A session lost without a DISCONNECT has its last will put on
    ``publishes``. The connection is always closed on return.
    """
    with contextlib.closing(conn):
        _set_timeout(conn, CONNECT_TIMEOUT)
        stream = iter(packets)
        try:
            first = next(stream)
        except StopIteration:
            raise EOFError("connection closed before CONNECT") from None
        if not isinstance(first, Connect):
            _log.debug("first packet was not CONNECT: %r", first)
            raise ConnectNotDoneError()

        session = Session(conn=conn, encoder=encoder)
        session.process_connect(first)
        try:
            principal = auth_handler.authenticate(
                ApplicationContext(
                    client_id=first.client_id,
                    username=first.username,
                    password=first.password,
                ),
                TransportContext(),
            )
        except AuthenticationFailedError as exc:
            if exc.principal is not None:
                session.id = exc.principal.id
                session.mount_point = exc.principal.mount_point
            _log.info(
                "authentication failed for username %r: %s",
                first.username.decode("utf-8", errors="replace"),
                exc,
            )
            encoder.conn_ack(
                ConnAck(
                    header=first.header,
                    return_code=ConnAckCode.REFUSED_BAD_USERNAME_OR_PASSWORD,
                )
            )
            return

        session.id = principal.id
        session.mount_point = principal.mount_point
        if session.lwt is not None:
            session.lwt.topic = prefix_mount_point(session.mount_point, session.lwt.topic)
        _log.debug("session %s connected on %s", session.id, session.mount_point)

        previous = state.get_session_metadatas_by_client_id(session.client_id)
        if previous is not None:
            fsm.delete_session_metadata(previous.session_id, previous.mount_point)
        fsm.create_session_metadata(session.id, session.client_id, session.lwt, session.mount_point)
        state.save_session(session.id, session)

        loss_reason: str | None = None
        timeout = _keepalive_timeout(first.keepalive_timer)
        _set_timeout(conn, timeout)
        try:
            encoder.conn_ack(
                ConnAck(header=first.header, return_code=ConnAckCode.CONNECTION_ACCEPTED)
            )
            while True:
                try:
                    pkt = next(stream)
                except StopIteration:
                    loss_reason = "EOF"
                    break
                except Exception as exc:  # noqa: BLE001 - any read failure loses the session
                    loss_reason = str(exc) or type(exc).__name__
                    break
                start = time.perf_counter()
                try:
                    process_packet(peer, fsm, state, publishes, session, pkt)
                except SessionDisconnectedError:
                    _log.debug("session %s closed", session.id)
                    session.disconnected = True
                    session.close()
                    return
                except Exception as exc:  # noqa: BLE001 - a bad packet does not end the session
                    _log.warning("session %s: packet processing failed: %s", session.id, exc)
                finally:
                    stats.histogram_vec("sessionPacketHandling").with_labels(
                        {"packet_type": type_string(pkt)}
                    ).observe(stats.milliseconds_elapsed(start))
                _set_timeout(conn, timeout)
        finally:
            _teardown(fsm, state, session, publishes, loss_reason)