import threading

import pytest

from meshsub.subscription import Message, Subscription, SubscriptionClosed


def make_messages(count, topic="foobar"):
    return [Message(topic=topic, data=f"message {i}".encode()) for i in range(count)]


def test_next_returns_messages_in_order():
    sub = Subscription("foobar")
    first, second = make_messages(2)
    assert sub.deliver(first)
    assert sub.deliver(second)
    assert sub.next(timeout=1) is first
    assert sub.next(timeout=1) is second


def test_next_times_out_without_messages():
    sub = Subscription("foobar")
    with pytest.raises(TimeoutError):
        sub.next(timeout=0.01)


def test_close_drains_buffer_then_raises_with_cause():
    sub = Subscription("foobar")
    (msg,) = make_messages(1)
    sub.deliver(msg)
    err = RuntimeError("pubsub shut down")
    sub.close(err)
    assert sub.next(timeout=1) is msg
    with pytest.raises(SubscriptionClosed) as info:
        sub.next(timeout=1)
    assert info.value.__cause__ is err


def test_close_without_error_has_no_cause():
    sub = Subscription("foobar")
    sub.close()
    with pytest.raises(SubscriptionClosed) as info:
        sub.next()
    assert info.value.__cause__ is None


def test_only_first_close_counts():
    sub = Subscription("foobar")
    first_err = RuntimeError("first")
    sub.close(first_err)
    sub.close(RuntimeError("second"))
    with pytest.raises(SubscriptionClosed) as info:
        sub.next()
    assert info.value.__cause__ is first_err


def test_deliver_refused_when_full():
    sub = Subscription("foobar", buffer_size=2)
    results = [sub.deliver(m) for m in make_messages(3)]
    assert results == [True, True, False]


def test_deliver_refused_after_close():
    sub = Subscription("foobar")
    sub.close()
    assert sub.deliver(make_messages(1)[0]) is False


def test_cancel_calls_owner():
    cancelled = []
    sub = Subscription("foobar", on_cancel=cancelled.append)
    sub.cancel()
    sub.cancel()
    assert cancelled == [sub, sub]
    assert sub.closed is False


def test_cancel_without_owner_closes():
    sub = Subscription("foobar")
    sub.cancel()
    assert sub.closed is True


def test_next_wakes_when_message_arrives_from_other_thread():
    sub = Subscription("foobar")
    (msg,) = make_messages(1)
    timer = threading.Timer(0.05, sub.deliver, args=(msg,))
    timer.start()
    try:
        assert sub.next(timeout=5) is msg
    finally:
        timer.cancel()


def test_iteration_stops_on_close():
    sub = Subscription("foobar")
    msgs = make_messages(3)
    for m in msgs:
        sub.deliver(m)
    sub.close()
    assert list(sub) == msgs


def test_invalid_buffer_size():
    with pytest.raises(ValueError):
        Subscription("foobar", buffer_size=0)