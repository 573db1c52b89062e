"""Peer-facing service for subscriptions, sessions and message distribution."""

from __future__ import annotations

import queue

from waspbroker.fsm import FSM
from waspbroker.messages import StoredMessage
from waspbroker.packet import Publish
from waspbroker.state import SessionMetadata, State
from waspbroker.subscriptions import Subscription

RPC_SENDER = "_rpc"


class MqttServer:
    """Operations other peers invoke on this node."""

    def __init__(
        self,
        state: State,
        fsm: FSM,
        local_publishes: queue.Queue,
        remote_publishes: queue.Queue,
    ) -> None:
        self.state = state
        self.fsm = fsm
        self.local_publishes = local_publishes
        self.remote_publishes = remote_publishes

    def create_subscription(self, session_id: str, peer: int, pattern: bytes, qos: int) -> None:
        self.fsm.subscribe_from(session_id, peer, pattern, qos)

    def delete_subscription(self, session_id: str, pattern: bytes) -> None:
        self.fsm.unsubscribe(session_id, pattern)

    def list_subscriptions(self) -> list[Subscription]:
        return self.state.list_subscriptions()

    def distribute_message(
        self,
        message: Publish,
        resolve_remote_recipients: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Queue a message for delivery.

        With ``resolve_remote_recipients`` it goes through the local publish
        path, which also forwards to other peers; otherwise it is only
        delivered to sessions on this node. Raises TimeoutError when the queue
        stays full past ``timeout`` seconds.
        """
        target = self.local_publishes if resolve_remote_recipients else self.remote_publishes
        try:
            target.put(StoredMessage(sender=RPC_SENDER, publish=message), timeout=timeout)
        except queue.Full:
            raise TimeoutError("publish queue is full") from None

    def list_session_metadatas(self) -> list[SessionMetadata]:
        return self.state.list_session_metadatas()