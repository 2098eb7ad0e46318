# tests/test_broker.py
from __future__ import annotations

import threading

import pytest

from msgrelay.core.broker import MessageBroker
from msgrelay.core.errors import BrokerStateError, DeliveryError, DuplicateMessageId, ProtocolError
from msgrelay.core.proto import Message, MessageStatus, MessageType


# -----------------------------
# Helpers
# -----------------------------

class RecordingConsumer:
    """Consumer stub: records offers, optionally refusing them."""

    def __init__(self, identity: str, *, refuse: bool = False) -> None:
        self.identity = identity
        self.refuse = refuse
        self.received: list = []

    def offer(self, item) -> None:
        if self.refuse:
            raise DeliveryError("refused")
        self.received.append(item)

    @property
    def ids(self) -> list:
        return [m.id for m in self.received]


def chat(sender="x@example.com", receiver="y@example.com", content="hi", **kw) -> Message:
    return Message(sender_id=sender, receiver_id=receiver, content=content, **kw)


# -----------------------------
# Immediate delivery
# -----------------------------

def test_online_receiver_gets_message_exactly_once(broker):
    y = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", y)

    msg = chat()
    assert broker.send_message(msg, y) is True

    assert y.ids == [msg.id]
    assert msg.status is MessageStatus.DELIVERED
    assert broker.pending("y@example.com") == []
    # delivered but not yet acknowledged
    assert broker.unacked("y@example.com") == [msg]


def test_delivery_goes_to_registered_consumer_not_the_hint(broker):
    current = RecordingConsumer("y@example.com")
    stale_hint = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", current)

    assert broker.send_message(chat(), stale_hint) is True
    assert len(current.received) == 1
    assert stale_hint.received == []


def test_missing_hint_means_queued_even_if_registered(broker):
    y = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", y)

    msg = chat()
    assert broker.send_message(msg, None) is False
    assert y.received == []
    assert msg.status is MessageStatus.QUEUED
    assert broker.pending("y@example.com") == [msg]


# -----------------------------
# Queuing and drain
# -----------------------------

def test_offline_receiver_queues_then_drains_in_order(broker):
    sent = [chat(content=f"m{i}") for i in range(5)]
    for msg in sent:
        assert broker.send_message(msg, None) is False
        assert msg.status is MessageStatus.QUEUED

    y = RecordingConsumer("y@example.com")
    handed = broker.register_consumer("y@example.com", y)

    assert handed == 5
    assert y.ids == [m.id for m in sent]
    assert all(m.status is MessageStatus.DELIVERED for m in sent)
    assert broker.pending("y@example.com") == []


def test_failed_delivery_keeps_message_queued(broker):
    y = RecordingConsumer("y@example.com", refuse=True)
    broker.register_consumer("y@example.com", y)

    msg = chat()
    assert broker.send_message(msg, y) is False
    assert msg.status is MessageStatus.QUEUED
    assert broker.pending("y@example.com") == [msg]

    fresh = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", fresh)
    assert fresh.ids == [msg.id]


def test_drain_stops_at_first_refusal_and_preserves_order(broker):
    msgs = [chat(content=str(i)) for i in range(3)]
    for m in msgs:
        broker.send_message(m, None)

    class RefuseSecond(RecordingConsumer):
        def offer(self, item):
            if len(self.received) == 1:
                raise DeliveryError("full")
            super().offer(item)

    first = RefuseSecond("y@example.com")
    assert broker.register_consumer("y@example.com", first) == 1
    assert [m.id for m in broker.pending("y@example.com")] == [msgs[1].id, msgs[2].id]


def test_refused_offer_never_lets_newer_message_overtake(broker):
    class RefuseFirst(RecordingConsumer):
        refused = False

        def offer(self, item):
            if not self.refused:
                self.refused = True
                raise DeliveryError("busy")
            super().offer(item)

    y = RefuseFirst("y@example.com")
    broker.register_consumer("y@example.com", y)

    m1, m2 = chat(content="1"), chat(content="2")
    assert broker.send_message(m1, y) is False
    assert broker.send_message(m2, y) is True
    assert y.ids == [m1.id, m2.id]
    assert broker.pending("y@example.com") == []


def test_pump_feeds_backlog_as_consumer_frees_room(broker):
    class Bounded(RecordingConsumer):
        def __init__(self, identity, capacity):
            super().__init__(identity)
            self.capacity = capacity
            self.inbox: list = []

        def offer(self, item):
            if len(self.inbox) >= self.capacity:
                raise DeliveryError("full")
            self.inbox.append(item)
            super().offer(item)

    backlog = [chat(content=str(i)) for i in range(5)]
    for m in backlog:
        broker.send_message(m, None)

    y = Bounded("y@example.com", capacity=2)
    assert broker.register_consumer("y@example.com", y) == 2
    assert broker.pump("y@example.com", y) == 0

    # a stale consumer cannot pull the backlog
    assert broker.pump("y@example.com", Bounded("y@example.com", capacity=9)) == 0

    y.inbox.clear()
    assert broker.pump("y@example.com", y) == 2
    y.inbox.clear()
    assert broker.pump("y@example.com", y) == 1
    assert y.ids == [m.id for m in backlog]
    assert broker.pending("y@example.com") == []

    # the consumer is full again: a new message is queued and pumped later
    y.inbox.append("reply")
    late = chat(content="late")
    assert broker.send_message(late, y) is False
    y.inbox.clear()
    assert broker.pump("y@example.com", y) == 1
    assert y.ids[-1] == late.id


def test_replay_longer_than_consumer_resumes_and_skips_acked(broker):
    first = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", first)
    delivered = [chat(content=f"d{i}") for i in range(3)]
    for m in delivered:
        broker.send_message(m, first)
    broker.unregister_consumer("y@example.com", first)
    queued = chat(content="q")
    broker.send_message(queued, None)

    class Gate(RecordingConsumer):
        def offer(self, item):
            if len(self.received) >= self.limit:
                raise DeliveryError("full")
            super().offer(item)

    second = Gate("y@example.com")
    second.limit = 2
    assert broker.register_consumer("y@example.com", second) == 2
    assert second.ids == [delivered[0].id, delivered[1].id]

    broker.acknowledge_message(delivered[2].id)
    second.limit = 10
    assert broker.pump("y@example.com", second) == 1
    assert second.ids == [delivered[0].id, delivered[1].id, queued.id]


def test_unregister_keeps_pending_queue(broker):
    y = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", y)
    assert broker.unregister_consumer("y@example.com") is True
    assert not broker.is_registered("y@example.com")

    msg = chat()
    assert broker.send_message(msg, y) is False
    assert broker.pending("y@example.com") == [msg]
    assert y.received == []


def test_per_pair_order_with_interleaved_senders(broker):
    a = [chat(sender="x@example.com", content=f"x{i}") for i in range(3)]
    b = [chat(sender="z@example.com", content=f"z{i}") for i in range(3)]
    for mx, mz in zip(a, b):
        broker.send_message(mx, None)
        broker.send_message(mz, None)

    y = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", y)
    from_x = [m.content for m in y.received if m.sender_id == "x@example.com"]
    from_z = [m.content for m in y.received if m.sender_id == "z@example.com"]
    assert from_x == ["x0", "x1", "x2"]
    assert from_z == ["z0", "z1", "z2"]


# -----------------------------
# Acknowledgment
# -----------------------------

def test_ack_removes_delivered_message_once(broker):
    y = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", y)
    msg = chat()
    broker.send_message(msg, y)

    assert broker.acknowledge_message(msg.id) is True
    assert broker.unacked("y@example.com") == []
    assert broker.acknowledge_message(msg.id) is False
    assert broker.stats()["unacked"] == 0


def test_ack_removes_queued_message(broker):
    msg = chat()
    broker.send_message(msg, None)
    assert broker.acknowledge_message(msg.id) is True
    assert broker.pending("y@example.com") == []

    y = RecordingConsumer("y@example.com")
    assert broker.register_consumer("y@example.com", y) == 0
    assert y.received == []


def test_ack_unknown_id_is_noop(broker):
    broker.send_message(chat(), None)
    before = broker.stats()
    assert broker.acknowledge_message("never-queued") is False
    assert broker.stats() == before


def test_ack_removes_only_the_referenced_message(broker):
    first, second = chat(content="1"), chat(content="2")
    broker.send_message(first, None)
    broker.send_message(second, None)
    broker.acknowledge_message(first.id)
    assert broker.pending("y@example.com") == [second]


# -----------------------------
# Registration
# -----------------------------

def test_reregistration_displaces_old_consumer(broker):
    old = RecordingConsumer("y@example.com")
    new = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", old)
    broker.register_consumer("y@example.com", new)

    for _ in range(3):
        broker.send_message(chat(), old)
    assert old.received == []
    assert len(new.received) == 3


def test_unacked_messages_replay_on_next_registration(broker):
    first = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", first)
    delivered = chat(content="delivered")
    broker.send_message(delivered, first)
    broker.unregister_consumer("y@example.com", first)
    queued = chat(content="queued")
    broker.send_message(queued, None)

    second = RecordingConsumer("y@example.com")
    assert broker.register_consumer("y@example.com", second) == 2
    assert second.ids == [delivered.id, queued.id]
    # replay never regresses the status
    assert delivered.status is MessageStatus.DELIVERED


def test_stale_unregister_keeps_newer_consumer(broker):
    old = RecordingConsumer("y@example.com")
    new = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", old)
    broker.register_consumer("y@example.com", new)

    assert broker.unregister_consumer("y@example.com", old) is False
    assert broker.is_registered("y@example.com")
    assert broker.send_message(chat(), new) is True


def test_register_with_mismatched_identity_is_loud(broker):
    with pytest.raises(BrokerStateError):
        broker.register_consumer("y@example.com", RecordingConsumer("z@example.com"))


# -----------------------------
# Validation
# -----------------------------

def test_duplicate_id_rejected(broker):
    msg = chat()
    broker.send_message(msg, None)
    with pytest.raises(DuplicateMessageId):
        broker.send_message(chat(id=msg.id), None)
    assert len(broker.pending("y@example.com")) == 1


def test_id_reusable_after_ack(broker):
    msg = chat()
    broker.send_message(msg, None)
    broker.acknowledge_message(msg.id)
    assert broker.send_message(chat(id=msg.id), None) is False


def test_non_chat_and_receiverless_messages_rejected(broker):
    with pytest.raises(ProtocolError):
        broker.send_message(Message(type=MessageType.ERROR, content="x"), None)
    with pytest.raises(ProtocolError):
        broker.send_message(chat(receiver=None), None)


def test_idle_partitions_are_dropped(broker):
    y = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", y)
    msg = chat()
    broker.send_message(msg, y)
    broker.unregister_consumer("y@example.com")
    assert broker.stats()["identities"] == 1  # unacked message keeps it alive
    broker.acknowledge_message(msg.id)
    assert broker.stats() == {"identities": 0, "consumers": 0, "pending": 0, "unacked": 0}


def test_shards_must_be_positive():
    with pytest.raises(ValueError):
        MessageBroker(shards=0)


# -----------------------------
# Concurrency
# -----------------------------

def test_concurrent_sends_during_registration_exactly_once():
    """Senders race a registration on other threads: nothing lost, nothing doubled."""

    broker = MessageBroker(shards=4)
    y = RecordingConsumer("y@example.com")
    start = threading.Barrier(3)
    sent: dict = {"x": [], "z": []}

    def sender(name):
        start.wait()
        for i in range(200):
            msg = chat(sender=f"{name}@example.com", content=f"{name}{i}")
            sent[name].append(msg.id)
            broker.send_message(msg, y)

    def registrar():
        start.wait()
        broker.register_consumer("y@example.com", y)

    threads = [threading.Thread(target=sender, args=("x",)), threading.Thread(target=sender, args=("z",)),
               threading.Thread(target=registrar)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # anything still pending was sent before the registration and is drained now
    late = RecordingConsumer("y@example.com")
    broker.register_consumer("y@example.com", late)
    seen = [m.id for m in y.received] + [m.id for m in late.received if m.id not in set(y.ids)]
    assert sorted(seen) == sorted(sent["x"] + sent["z"])
    assert len(set(y.ids)) == len(y.ids)
    for name in ("x", "z"):
        order = [i for i in y.ids if i in set(sent[name])]
        assert order == [i for i in sent[name] if i in set(order)]


def test_identities_on_different_shards_do_not_block_each_other():
    broker = MessageBroker(shards=64)
    ids = [f"user{i}@example.com" for i in range(64)]
    shard_of = {i: broker._lock_for(i) for i in ids}
    a, b = next((p, q) for p in ids for q in ids if shard_of[p] is not shard_of[q])

    with broker._lock_for(a):
        done = threading.Event()

        def other():
            broker.send_message(chat(receiver=b), None)
            done.set()

        t = threading.Thread(target=other)
        t.start()
        assert done.wait(2.0)
        t.join()
    assert len(broker.pending(b)) == 1
