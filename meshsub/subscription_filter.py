"""Filters that decide which topic subscriptions are tracked and allowed."""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Union


@dataclass(frozen=True)
class SubOpts:
    """A subscription announcement: subscribe to or unsubscribe from a topic."""

    topic_id: str = ""
    subscribe: bool = False


class TooManySubscriptionsError(Exception):
    """Raised when an RPC carries more subscriptions than a filter allows."""

    def __init__(self, message: str = "too many subscriptions") -> None:
        super().__init__(message)


def filter_subscriptions(
    subs: Iterable[SubOpts], accept: Callable[[str], bool]
) -> list[SubOpts]:
    """Keep subscriptions to topics ``accept`` allows, dropping contradictory pairs.

    Repeated announcements for a topic collapse into one; two announcements
    for the same topic that disagree cancel each other out.
    """
    accepted: dict[str, SubOpts] = {}
    for sub in subs:
        topic = sub.topic_id
        if not accept(topic):
            continue
        other = accepted.get(topic)
        if other is None:
            accepted[topic] = sub
        elif other.subscribe != sub.subscribe:
            del accepted[topic]
    return list(accepted.values())


class SubscriptionFilter(abc.ABC):
    """Decides which topics may be joined and which peer subscriptions are tracked."""

    @abc.abstractmethod
    def can_subscribe(self, topic: str) -> bool:
        """Return True if the topic is of interest and may be subscribed to."""

    @abc.abstractmethod
    def filter_incoming_subscriptions(
        self, peer: str, subs: list[SubOpts]
    ) -> list[SubOpts]:
        """Return the subscriptions of interest from ``peer``'s announcement."""


class AllowlistSubscriptionFilter(SubscriptionFilter):
    """Allows only an explicit set of topics."""

    def __init__(self, *topics: str) -> None:
        self._allow = frozenset(topics)

    def can_subscribe(self, topic: str) -> bool:
        return topic in self._allow

    def filter_incoming_subscriptions(
        self, peer: str, subs: list[SubOpts]
    ) -> list[SubOpts]:
        return filter_subscriptions(subs, self.can_subscribe)


class RegexpSubscriptionFilter(SubscriptionFilter):
    """Allows topics matched anywhere by a regular expression.

    Anchor the pattern with ^ and $ to avoid matching unwanted topics.
    """

    def __init__(self, pattern: Union[str, "re.Pattern[str]"]) -> None:
        self._allow = re.compile(pattern) if isinstance(pattern, str) else pattern

    def can_subscribe(self, topic: str) -> bool:
        return self._allow.search(topic) is not None

    def filter_incoming_subscriptions(
        self, peer: str, subs: list[SubOpts]
    ) -> list[SubOpts]:
        return filter_subscriptions(subs, self.can_subscribe)


class LimitSubscriptionFilter(SubscriptionFilter):
    """Wraps a filter with a hard limit on subscriptions per announcement."""

    def __init__(self, inner: SubscriptionFilter, limit: int) -> None:
        self._inner = inner
        self._limit = limit

    def can_subscribe(self, topic: str) -> bool:
        return self._inner.can_subscribe(topic)

    def filter_incoming_subscriptions(
        self, peer: str, subs: list[SubOpts]
    ) -> list[SubOpts]:
        if len(subs) > self._limit:
            raise TooManySubscriptionsError()
        return self._inner.filter_incoming_subscriptions(peer, subs)