"""Topic subscriptions that hand delivered messages to a consumer."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

DEFAULT_BUFFER_SIZE = 32


class SubscriptionClosed(Exception):
    """Raised by Subscription.next once the subscription is closed and drained."""


@dataclass
class Message:
    """A pubsub message together with its local delivery details."""

    topic: str
    data: bytes = b""
    from_peer: str = ""
    seqno: Optional[bytes] = None
    signature: Optional[bytes] = None
    key: Optional[bytes] = None
    received_from: str = ""
    validator_data: Any = None
    local: bool = False
    id: str = ""


class Subscription:
    """A bounded queue of messages for one topic.

    Messages delivered after the buffer is full are refused; once closed,
    buffered messages can still be read before :class:`SubscriptionClosed`
    is raised.
    """

    def __init__(
        self,
        topic: str,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer size must be at least 1")
        self.topic = topic
        self._buffer_size = buffer_size
        self._on_cancel = on_cancel
        self._pending: deque[Message] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        """Whether the subscription has been closed."""
        with self._cond:
            return self._closed

    def next(self, timeout: Optional[float] = None) -> Message:
        """Return the next message, waiting at most ``timeout`` seconds.

        Raises TimeoutError when nothing arrives in time and SubscriptionClosed,
        chained to the closing error if any, once closed and drained.
        """
        with self._cond:
            ready = self._cond.wait_for(lambda: self._pending or self._closed, timeout)
            if not ready:
                raise TimeoutError(f"no message for topic {self.topic} in time")
            if self._pending:
                return self._pending.popleft()
            raise SubscriptionClosed(
                f"subscription to topic {self.topic} is closed"
            ) from self._error

    def deliver(self, msg: Message) -> bool:
        """Queue ``msg``; return False if the subscription is closed or full."""
        with self._cond:
            if self._closed or len(self._pending) >= self._buffer_size:
                return False
            self._pending.append(msg)
            self._cond.notify()
            return True

    def cancel(self) -> None:
        """Ask the owner to drop this subscription, or close it if there is no owner."""
        if self._on_cancel is not None:
            self._on_cancel(self)
        else:
            self.close()

    def close(self, error: Optional[BaseException] = None) -> None:
        """Close the subscription; only the first call has any effect."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._error = error
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Message]:
        while True:
            try:
                yield self.next()
            except SubscriptionClosed:
                return