"""Connection tagging driven by pubsub events: mesh, direct and delivery tags."""

from __future__ import annotations

import logging
import math
import threading
import time
from datetime import timedelta
from typing import Callable, Iterable, Optional, Union

from .subscription import Message
from .tracer import RejectReason

_log = logging.getLogger("meshsub.tag_tracer")

Duration = Union[float, int, timedelta]

CONN_TAG_BUMP_MESSAGE_DELIVERY = 1
"""Amount added to a peer's delivery tag each time it first delivers a message."""

CONN_TAG_DECAY_INTERVAL = timedelta(minutes=10)
"""Interval at which delivery tags decay."""

CONN_TAG_DECAY_AMOUNT = 1
"""Amount subtracted from delivery tags at every decay interval."""

CONN_TAG_MESSAGE_DELIVERY_CAP = 15
"""Maximum value of a delivery tag."""

DIRECT_PEER_TAG = "pubsub:<direct>"

_VALIDATION_OUTCOMES = frozenset(
    {
        RejectReason.VALIDATION_THROTTLED,
        RejectReason.VALIDATION_IGNORED,
        RejectReason.VALIDATION_FAILED,
    }
)


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def topic_tag(topic: str) -> str:
    """Protection tag applied to mesh peers of ``topic``."""
    return f"pubsub:{topic}"


def _delivery_tag_name(topic: str) -> str:
    return f"pubsub-deliveries:{topic}"


class DecayingTag:
    """A per-peer counter that is bumped within [0, cap] and decays at a fixed rate.

    Decay is applied in whole intervals counted from the tag's registration;
    a peer whose value drops to zero loses the tag.
    """

    def __init__(
        self,
        manager: "ConnManager",
        name: str,
        interval: Duration,
        decay_amount: int,
        cap: int,
    ) -> None:
        seconds = _seconds(interval)
        if seconds <= 0:
            raise ValueError("decay interval must be positive")
        self.name = name
        self._manager = manager
        self._interval = seconds
        self._decay_amount = decay_amount
        self._cap = cap
        self._values: dict[str, int] = {}
        self._last_decay = manager.clock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _apply_decay(self) -> None:
        now = self._manager.clock()
        steps = math.floor((now - self._last_decay) / self._interval)
        if steps <= 0:
            return
        self._last_decay += steps * self._interval
        reduction = steps * self._decay_amount
        self._values = {
            peer: value - reduction
            for peer, value in self._values.items()
            if value - reduction > 0
        }

    def bump(self, peer: str, delta: int) -> int:
        """Add ``delta`` to ``peer``'s value, bounded to [0, cap]; return the new value."""
        with self._manager._lock:
            if self._closed:
                raise RuntimeError(f"decaying tag {self.name} is closed")
            self._apply_decay()
            value = min(max(self._values.get(peer, 0) + delta, 0), self._cap)
            if value > 0:
                self._values[peer] = value
            else:
                self._values.pop(peer, None)
            return value

    def value(self, peer: str) -> int:
        """Current value for ``peer`` after decay, 0 if untagged."""
        with self._manager._lock:
            self._apply_decay()
            return self._values.get(peer, 0)

    def peers(self) -> set[str]:
        """Peers that currently carry this tag."""
        with self._manager._lock:
            self._apply_decay()
            return set(self._values)

    def close(self) -> None:
        """Unregister the tag and drop it from every peer; later calls do nothing."""
        with self._manager._lock:
            if self._closed:
                return
            self._closed = True
            self._values.clear()
            self._manager._decaying.pop(self.name, None)


class ConnManager:
    """Keeps connection protections and decaying tags for peers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._lock = threading.RLock()
        self._protected: dict[str, set[str]] = {}
        self._decaying: dict[str, DecayingTag] = {}

    def protect(self, peer: str, tag: str) -> None:
        """Protect ``peer``'s connections under ``tag``."""
        with self._lock:
            self._protected.setdefault(peer, set()).add(tag)

    def unprotect(self, peer: str, tag: str) -> bool:
        """Remove protection ``tag``; return True if ``peer`` is still protected by another tag."""
        with self._lock:
            tags = self._protected.get(peer)
            if tags is None:
                return False
            tags.discard(tag)
            if not tags:
                del self._protected[peer]
                return False
            return True

    def is_protected(self, peer: str, tag: str = "") -> bool:
        """Whether ``peer`` is protected by ``tag``, or by any tag when ``tag`` is empty."""
        with self._lock:
            tags = self._protected.get(peer, set())
            return bool(tags) if tag == "" else tag in tags

    def register_decaying_tag(
        self, name: str, interval: Duration, decay_amount: int, cap: int
    ) -> DecayingTag:
        """Create a decaying tag; raise ValueError if ``name`` is already registered."""
        with self._lock:
            if name in self._decaying:
                raise ValueError(f"decaying tag with name {name} already exists")
            tag = DecayingTag(self, name, interval, decay_amount, cap)
            self._decaying[name] = tag
            return tag

    def tag_value(self, peer: str, name: str) -> int:
        """Value of decaying tag ``name`` on ``peer``, 0 if absent."""
        with self._lock:
            tag = self._decaying.get(name)
            return 0 if tag is None else tag.value(peer)

    def has_tag(self, peer: str, name: str) -> bool:
        """Whether ``peer`` currently carries decaying tag ``name``."""
        with self._lock:
            tag = self._decaying.get(name)
            return tag is not None and peer in tag.peers()


def _default_message_id(msg: Message) -> str:
    if msg.id:
        return msg.id
    return msg.from_peer + (msg.seqno or b"").decode("latin-1")


def _as_reject_reason(reason: Union[str, RejectReason]) -> Optional[RejectReason]:
    try:
        return RejectReason(reason)
    except ValueError:
        return None


class TagTracer:
    """Applies connection-manager tags to peers according to their behaviour.

    Direct peers are protected; mesh peers are protected per topic; peers that
    deliver a message first, or while it is still validating, get their
    per-topic delivery tag bumped.
    """

    def __init__(
        self,
        cmgr: ConnManager,
        direct: Optional[Iterable[str]] = None,
        msg_id: Callable[[Message], str] = _default_message_id,
        decay_interval: Duration = CONN_TAG_DECAY_INTERVAL,
        decay_amount: int = CONN_TAG_DECAY_AMOUNT,
        delivery_cap: int = CONN_TAG_MESSAGE_DELIVERY_CAP,
        bump_amount: int = CONN_TAG_BUMP_MESSAGE_DELIVERY,
    ) -> None:
        self._cmgr = cmgr
        self.direct: Optional[set[str]] = None if direct is None else set(direct)
        self._msg_id = msg_id
        self._decay_interval = decay_interval
        self._decay_amount = decay_amount
        self._delivery_cap = delivery_cap
        self._bump_amount = bump_amount
        self._lock = threading.RLock()
        self._decaying: dict[str, DecayingTag] = {}
        # message id -> peers that delivered it after the first delivery, during validation
        self._near_first: dict[str, set[str]] = {}

    def add_peer(self, peer: str, protocol: str) -> None:
        """Protect ``peer`` if it is a direct peer."""
        if self.direct is not None and peer in self.direct:
            self._cmgr.protect(peer, DIRECT_PEER_TAG)

    def join(self, topic: str) -> None:
        """Register the delivery tag for ``topic``."""
        with self._lock:
            try:
                tag = self._cmgr.register_decaying_tag(
                    _delivery_tag_name(topic),
                    self._decay_interval,
                    self._decay_amount,
                    self._delivery_cap,
                )
            except ValueError as err:
                _log.warning("unable to create decaying delivery tag: %s", err)
                return
            self._decaying[topic] = tag

    def leave(self, topic: str) -> None:
        """Remove the delivery tag for ``topic``."""
        with self._lock:
            tag = self._decaying.pop(topic, None)
            if tag is not None:
                tag.close()

    def graft(self, peer: str, topic: str) -> None:
        """Protect a peer added to the mesh of ``topic``."""
        self._cmgr.protect(peer, topic_tag(topic))

    def prune(self, peer: str, topic: str) -> None:
        """Lift the mesh protection of a peer pruned from ``topic``."""
        self._cmgr.unprotect(peer, topic_tag(topic))

    def validate_message(self, msg: Message) -> None:
        """Start tracking peers that deliver ``msg`` while it validates."""
        with self._lock:
            self._near_first.setdefault(self._msg_id(msg), set())

    def duplicate_message(self, msg: Message) -> None:
        """Credit the sender of a duplicate if the original is still validating."""
        with self._lock:
            peers = self._near_first.get(self._msg_id(msg))
            if peers is not None:
                peers.add(msg.received_from)

    def deliver_message(self, msg: Message) -> None:
        """Bump the delivery tag of the first and near-first deliverers of ``msg``."""
        msg_id = self._msg_id(msg)
        with self._lock:
            near_first = list(self._near_first.get(msg_id, ()))
        for peer in [msg.received_from, *near_first]:
            self._bump_delivery_tag(peer, msg.topic)
        with self._lock:
            self._near_first.pop(msg_id, None)

    def reject_message(self, msg: Message, reason: Union[str, RejectReason]) -> None:
        """Forget near-first tracking for messages that went through validation."""
        if _as_reject_reason(reason) in _VALIDATION_OUTCOMES:
            with self._lock:
                self._near_first.pop(self._msg_id(msg), None)

    def _bump_delivery_tag(self, peer: str, topic: str) -> None:
        with self._lock:
            tag = self._decaying.get(topic)
        if tag is None:
            _log.warning(
                "error bumping delivery tag: no decaying tag registered for topic %s", topic
            )
            return
        try:
            tag.bump(peer, self._bump_amount)
        except RuntimeError as err:
            _log.warning("error bumping delivery tag: %s", err)