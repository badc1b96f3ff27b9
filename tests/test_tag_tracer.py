from dataclasses import replace
from datetime import timedelta

import pytest

from meshsub.subscription import Message
from meshsub.tag_tracer import (
    CONN_TAG_MESSAGE_DELIVERY_CAP,
    ConnManager,
    TagTracer,
    topic_tag,
)
from meshsub.tracer import RejectReason


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def add(self, delta: timedelta) -> None:
        self.now += delta.total_seconds()


def _msg(peer: str, topic: str, i: int) -> Message:
    return Message(
        topic=topic,
        data=f"msg-{i}".encode(),
        from_peer=peer,
        seqno=str(i).encode(),
        received_from=peer,
    )


def test_topic_tag():
    assert topic_tag("a-topic") == "pubsub:a-topic"


def test_mesh_tags():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    p, topic = "a-peer", "a-topic"
    tt.join(topic)
    tt.graft(p, topic)
    assert cmgr.is_protected(p, "pubsub:" + topic)
    tt.prune(p, topic)
    assert not cmgr.is_protected(p, "pubsub:" + topic)


def test_direct_peer_tags():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    tt.direct = {"1"}
    for p in ("1", "2", "3"):
        tt.add_peer(p, "/meshsub/1.0.0")
    assert cmgr.is_protected("1", "pubsub:<direct>")
    assert not cmgr.is_protected("2", "pubsub:<direct>")
    assert not cmgr.is_protected("3", "pubsub:<direct>")


def test_delivery_tags_cap_and_decay():
    clk = FakeClock()
    cmgr = ConnManager(clock=clk)
    tt = TagTracer(cmgr)
    p = "a-peer"
    tt.join("topic-1")
    tt.join("topic-2")
    for i in range(20):
        topic = "topic-2" if i < 5 else "topic-1"
        tt.deliver_message(_msg(p, topic, i))

    tag1, tag2 = "pubsub-deliveries:topic-1", "pubsub-deliveries:topic-2"
    assert cmgr.tag_value(p, tag1) == CONN_TAG_MESSAGE_DELIVERY_CAP
    assert cmgr.tag_value(p, tag2) == 5

    clk.add(timedelta(minutes=51))
    assert cmgr.tag_value(p, tag1) == CONN_TAG_MESSAGE_DELIVERY_CAP - 5
    assert cmgr.tag_value(p, tag2) == 0

    assert cmgr.has_tag(p, tag1)
    tt.leave("topic-1")
    assert not cmgr.has_tag(p, tag1)
    assert cmgr.tag_value(p, tag1) == 0


def test_delivery_tags_near_first():
    clk = FakeClock()
    cmgr = ConnManager(clock=clk)
    tt = TagTracer(cmgr)
    topic = "test"
    p, p2, p3 = "a-peer", "another-peer", "slow-peer"
    tt.join(topic)
    for i in range(CONN_TAG_MESSAGE_DELIVERY_CAP + 5):
        msg = _msg(p, topic, i)
        dup = replace(msg, received_from=p2)
        tt.validate_message(msg)
        tt.duplicate_message(dup)
        tt.deliver_message(msg)
        tt.duplicate_message(replace(msg, received_from=p3))

    clk.add(timedelta(minutes=1))
    tag = "pubsub-deliveries:test"
    assert cmgr.tag_value(p, tag) == CONN_TAG_MESSAGE_DELIVERY_CAP
    assert cmgr.tag_value(p2, tag) == CONN_TAG_MESSAGE_DELIVERY_CAP
    assert cmgr.tag_value(p3, tag) == 0


@pytest.mark.parametrize(
    "reason",
    [
        RejectReason.VALIDATION_FAILED,
        RejectReason.VALIDATION_IGNORED,
        "validation throttled",
    ],
)
def test_reject_after_validation_forgets_near_first(reason):
    cmgr = ConnManager(clock=FakeClock())
    tt = TagTracer(cmgr)
    tt.join("t")
    msg = _msg("a", "t", 1)
    tt.validate_message(msg)
    tt.reject_message(msg, reason)
    tt.duplicate_message(replace(msg, received_from="b"))
    tt.deliver_message(msg)
    assert cmgr.tag_value("b", "pubsub-deliveries:t") == 0
    assert cmgr.tag_value("a", "pubsub-deliveries:t") == 1


def test_reject_before_validation_keeps_near_first():
    cmgr = ConnManager(clock=FakeClock())
    tt = TagTracer(cmgr)
    tt.join("t")
    msg = _msg("a", "t", 1)
    tt.validate_message(msg)
    tt.reject_message(msg, RejectReason.MISSING_SIGNATURE)
    tt.duplicate_message(replace(msg, received_from="b"))
    tt.deliver_message(msg)
    assert cmgr.tag_value("b", "pubsub-deliveries:t") == 1


def test_deliver_without_join_applies_no_tag():
    cmgr = ConnManager(clock=FakeClock())
    tt = TagTracer(cmgr)
    tt.deliver_message(_msg("a", "unjoined", 1))
    assert cmgr.tag_value("a", "pubsub-deliveries:unjoined") == 0


def test_duplicate_registration_rejected():
    cmgr = ConnManager()
    cmgr.register_decaying_tag("x", 60, 1, 10)
    with pytest.raises(ValueError):
        cmgr.register_decaying_tag("x", 60, 1, 10)


def test_bump_bounded_and_closed_tag():
    cmgr = ConnManager(clock=FakeClock())
    tag = cmgr.register_decaying_tag("x", 60, 1, 3)
    assert tag.bump("p", 5) == 3
    assert tag.bump("p", -10) == 0
    tag.close()
    with pytest.raises(RuntimeError):
        tag.bump("p", 1)


def test_unprotect_reports_remaining_protection():
    cmgr = ConnManager()
    cmgr.protect("p", "a")
    cmgr.protect("p", "b")
    assert cmgr.unprotect("p", "a") is True
    assert cmgr.unprotect("p", "b") is False
    assert not cmgr.is_protected("p")