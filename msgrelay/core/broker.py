from __future__ import annotations

import logging
import threading
import zlib
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol

from .errors import BrokerStateError, DeliveryError, DuplicateMessageId, ProtocolError
from .proto import Message, MessageStatus, MessageType, Outbound


"""
Message broker
--------------
Routes CHAT messages to recipients, queues them while the recipient is away and
forgets them once acknowledged.

Delivery policy is enqueue-then-drain:
  1) append the message to the recipient's pending queue (status QUEUED)
  2) if the recipient has a live consumer, offer it there
  3) only when the offer succeeds, move it to the unacked ledger (DELIVERED)

A recipient that disconnects between a presence check and the offer therefore
never loses the message; it stays queued and is drained on the next
registration. Messages handed to a consumer but never acknowledged are replayed
ahead of the pending queue when the identity registers again, so a record can
be seen twice but is never lost. Acknowledgment is idempotent.

Consumers are bounded. A refused offer only pauses the drain: the backlog is
always offered from its head, and the consumer calls pump() once it has room
again, so a backlog larger than the consumer never reorders or strands
messages.

Locking is partitioned: each identity maps onto one lock from a fixed array of
shards, so mutations for one identity are linearizable while unrelated
identities proceed in parallel. Broker calls never perform I/O; consumers must
accept or refuse an offer without blocking.
"""


log = logging.getLogger("msgrelay.broker")


class Consumer(Protocol):
    """Delivery entry point registered for one identity (see Mailbox)."""

    identity: str

    def offer(self, item: Outbound) -> None:
        """Accept ``item`` without blocking or raise DeliveryError."""


@dataclass
class _Partition:
    identity: str
    pending: "OrderedDict[str, Message]" = field(default_factory=OrderedDict)
    unacked: "OrderedDict[str, Message]" = field(default_factory=OrderedDict)
    consumer: Optional[Consumer] = None
    # unacked ids not yet re-offered to the current consumer
    replay: Deque[str] = field(default_factory=deque)

    def idle(self) -> bool:
        return self.consumer is None and not self.pending and not self.unacked


class MessageBroker:
    """Routing, queuing and acknowledgment for every identity in the process."""

    def __init__(self, *, shards: int = 64) -> None:
        if shards < 1:
            raise ValueError("shards must be positive")
        self._locks = [threading.Lock() for _ in range(shards)]
        self._partitions: Dict[str, _Partition] = {}
        # message id -> identity whose partition holds it
        self._index: Dict[str, str] = {}
        self._index_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def register_consumer(self, identity: str, consumer: Consumer) -> int:
        """Make ``identity`` reachable through ``consumer`` and drain its backlog.

        Any previous consumer for the identity is displaced and never offered
        anything again. Returns the number of messages handed over now; whatever
        the consumer has no room for is offered later through :meth:`pump`.
        """

        if consumer.identity != identity:
            raise BrokerStateError(f"consumer for {consumer.identity!r} registered as {identity!r}")

        with self._lock_for(identity):
            part = self._partition(identity)
            previous = part.consumer
            part.consumer = consumer
            if previous is not None and previous is not consumer:
                log.info("Consumer for %s replaced", identity)
            part.replay = deque(part.unacked)
            handed = self._drain(part)
            backlog = len(part.replay) + len(part.pending)

        if handed:
            log.info("Drained %d message(s) to %s", handed, identity)
        if backlog:
            log.info("%d message(s) for %s wait for consumer room", backlog, identity)
        return handed

    def pump(self, identity: str, consumer: Consumer) -> int:
        """Offer more of the backlog to ``consumer`` after it freed room.

        A no-op unless ``consumer`` is still the one registered for ``identity``.
        """

        with self._lock_for(identity):
            part = self._partitions.get(identity)
            if part is None or part.consumer is not consumer:
                return 0
            if not part.replay and not part.pending:
                return 0
            return self._drain(part)

    def unregister_consumer(self, identity: str, consumer: Optional[Consumer] = None) -> bool:
        """Drop the routing entry for ``identity``; queued messages stay.

        With ``consumer`` given, the entry is only dropped while it still is that
        consumer.
        """

        with self._lock_for(identity):
            part = self._partitions.get(identity)
            if part is None or part.consumer is None:
                return False
            if consumer is not None and part.consumer is not consumer:
                log.debug("Kept newer consumer for %s", identity)
                return False
            part.consumer = None
            part.replay.clear()
            self._discard_if_idle(part)
        log.debug("Unregistered consumer for %s", identity)
        return True

    def is_registered(self, identity: str) -> bool:
        part = self._partitions.get(identity)
        return part is not None and part.consumer is not None

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def send_message(self, message: Message, receiver: Optional[Consumer]) -> bool:
        """Queue ``message`` for its receiver and deliver it if reachable.

        ``receiver`` is the caller's local view of the receiver (None when the
        receiver is not known to be online). Delivery goes to the registered
        consumer, after everything queued ahead of it. Returns True iff the
        message was delivered within this call.
        """

        if message.type is not MessageType.CHAT:
            raise ProtocolError(f"cannot route a {message.type.value} record")
        identity = message.receiver_id
        if not identity:
            raise ProtocolError("message has no receiver")

        with self._lock_for(identity):
            self._track(message.id, identity)
            part = self._partition(identity)
            message.advance(MessageStatus.QUEUED)
            part.pending[message.id] = message

            if receiver is None or part.consumer is None:
                log.debug("Queued %s for %s (offline)", message.id, identity)
                return False
            self._drain(part)
            return message.id not in part.pending

    def acknowledge_message(self, message_id: str) -> bool:
        """Forget ``message_id``. Unknown ids are ignored."""

        identity = self._index.get(message_id)
        if identity is None:
            log.debug("Ack for unknown message %s ignored", message_id)
            return False

        with self._lock_for(identity):
            part = self._partitions.get(identity)
            message = None
            if part is not None:
                message = part.pending.pop(message_id, None)
                if message is None:
                    message = part.unacked.pop(message_id, None)
            if message is None:
                return False
            with self._index_lock:
                self._index.pop(message_id, None)
            self._discard_if_idle(part)
        log.debug("Acknowledged %s for %s", message_id, identity)
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending(self, identity: str) -> List[Message]:
        with self._lock_for(identity):
            part = self._partitions.get(identity)
            return list(part.pending.values()) if part else []

    def unacked(self, identity: str) -> List[Message]:
        with self._lock_for(identity):
            part = self._partitions.get(identity)
            return list(part.unacked.values()) if part else []

    def stats(self) -> Dict[str, int]:
        parts = list(self._partitions.values())
        return {
            "identities": len(parts),
            "consumers": sum(1 for p in parts if p.consumer is not None),
            "pending": sum(len(p.pending) for p in parts),
            "unacked": sum(len(p.unacked) for p in parts),
        }

    # ------------------------------------------------------------------
    # Internals (caller holds the identity's shard lock)
    # ------------------------------------------------------------------

    def _lock_for(self, identity: str) -> threading.Lock:
        return self._locks[zlib.crc32(identity.encode("utf-8")) % len(self._locks)]

    def _partition(self, identity: str) -> _Partition:
        part = self._partitions.get(identity)
        if part is None:
            part = _Partition(identity)
            self._partitions[identity] = part
        return part

    def _discard_if_idle(self, part: _Partition) -> None:
        if part.idle():
            self._partitions.pop(part.identity, None)

    def _track(self, message_id: str, identity: str) -> None:
        with self._index_lock:
            if message_id in self._index:
                raise DuplicateMessageId(f"message id {message_id} is already in use")
            self._index[message_id] = identity

    def _drain(self, part: _Partition) -> int:
        """Offer replayed then pending messages, in order, until one is refused."""

        handed = 0
        while part.replay:
            message = part.unacked.get(part.replay[0])
            if message is None:
                # acknowledged before it was re-offered
                part.replay.popleft()
                continue
            try:
                part.consumer.offer(message)
            except DeliveryError as exc:
                log.debug("Redelivery to %s paused: %s", part.identity, exc)
                return handed
            part.replay.popleft()
            handed += 1

        while part.pending:
            if not self._hand_over(part, next(iter(part.pending.values()))):
                break
            handed += 1
        return handed

    def _hand_over(self, part: _Partition, message: Message) -> bool:
        if part.pending.get(message.id) is not message:
            raise BrokerStateError(f"message {message.id} is not pending for {part.identity}")
        if message.receiver_id != part.identity:
            raise BrokerStateError(f"message {message.id} for {message.receiver_id} queued under {part.identity}")
        try:
            part.consumer.offer(message)
        except DeliveryError as exc:
            log.debug("Delivery of %s to %s deferred, keeping it queued: %s", message.id, part.identity, exc)
            return False
        del part.pending[message.id]
        message.advance(MessageStatus.DELIVERED)
        part.unacked[message.id] = message
        log.debug("Delivered %s to %s", message.id, part.identity)
        return True


__all__ = ["MessageBroker", "Consumer"]
