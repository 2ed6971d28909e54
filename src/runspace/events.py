"""
Per-channel append notifications.

Manifesto:
    Callers want to react to output as it is produced ("an error was
    written!") without polling collectors.  The producer, though, is the
    engine's worker thread: a slow or broken observer must never stall
    or crash the script.

The dispatcher keeps one subscriber list per channel and invokes every
observer synchronously on the writer thread, right after the item became
visible in its collector.  Because a channel has exactly one writer,
observers see that channel's items in sequence-index order.  Exceptions
raised by an observer are caught per observer, logged, and counted.

Example::

    dispatcher = EventDispatcher()

    def on_error(item: StreamItem) -> None:
        print(f"error #{item.index}: {item.payload}")

    sub_id = dispatcher.subscribe(Channel.ERROR, on_error)
    dispatcher.publish(StreamItem(Channel.ERROR, 0, "boom"))
    # Output: error #0: boom

Tags:
    runspace, events, observers, publish-subscribe

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from .logging import get_logger
from .models import Channel, StreamItem

__all__ = ["EventDispatcher", "Observer", "Subscription"]

logger = get_logger(__name__)

Observer = Callable[[StreamItem], None]


@dataclass(frozen=True)
class Subscription:
    """Internal subscription record."""

    id: str
    channel: Channel
    observer: Observer


class EventDispatcher:
    """Fan-out of appended items to per-channel observers.

    Subscribing and unsubscribing are safe from any thread; a change made
    while an item is being delivered takes effect from the next item.
    """

    def __init__(self, *, source: str | None = None) -> None:
        self._subscriptions: dict[Channel, list[Subscription]] = {c: [] for c in Channel}
        self._lock = threading.Lock()
        self._closed = False
        self._fault_count = 0
        self._source = source

    def subscribe(self, channel: Channel | str, observer: Observer) -> str:
        """Register *observer* for every item appended to *channel*.

        Returns:
            Subscription ID (accepted by :meth:`unsubscribe`)
        """
        if not callable(observer):
            raise TypeError(f"observer must be callable, got {type(observer).__name__}")
        resolved = Channel.parse(channel)
        sub = Subscription(id=f"sub_{uuid.uuid4().hex[:12]}", channel=resolved, observer=observer)
        with self._lock:
            # copy-on-write so publish() can iterate without holding the lock
            self._subscriptions[resolved] = [*self._subscriptions[resolved], sub]
        return sub.id

    def unsubscribe(self, channel: Channel | str, observer: Observer | str) -> bool:
        """Remove one subscription, by observer or by subscription ID.

        Returns:
            True if a subscription was removed
        """
        resolved = Channel.parse(channel)
        with self._lock:
            current = self._subscriptions[resolved]
            for position, sub in enumerate(current):
                if sub.id == observer or sub.observer is observer:
                    self._subscriptions[resolved] = current[:position] + current[position + 1:]
                    return True
        return False

    def publish(self, item: StreamItem) -> int:
        """Deliver *item* to the observers of its channel.

        Returns:
            Number of observers that handled the item without raising
        """
        if self._closed:
            return 0

        delivered = 0
        for sub in self._subscriptions[item.channel]:
            try:
                sub.observer(item)
            except Exception as e:
                with self._lock:
                    self._fault_count += 1
                logger.warning(
                    "observer_error",
                    subscription_id=sub.id,
                    channel=item.channel.value,
                    index=item.index,
                    source=self._source,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                delivered += 1
        return delivered

    def observer_count(self, channel: Channel | str | None = None) -> int:
        """Number of active subscriptions, for one channel or all of them."""
        if channel is None:
            return sum(len(subs) for subs in self._subscriptions.values())
        return len(self._subscriptions[Channel.parse(channel)])

    @property
    def fault_count(self) -> int:
        """Observer invocations that raised since creation."""
        return self._fault_count

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop delivering and drop all subscriptions."""
        self._closed = True
        with self._lock:
            self._subscriptions = {c: [] for c in Channel}
