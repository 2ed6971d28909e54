"""Stream collectors — one append-only log per channel.

WHY
───
An invocation writes to six channels at once and the caller may read any
of them while the script is still running.  A collector gives each
channel a single-writer / multi-reader log with:

- monotonically increasing sequence indices (no gaps, no duplicates)
- atomic appends (readers never see a half-built item)
- a closed flag that freezes the log once the invocation is terminal
- synchronous append notification through an :class:`EventDispatcher`

ARCHITECTURE
────────────
::

    StreamCollector(channel, capacity=None, dispatcher=...)
      ├── .append(payload)    ─ writer only; index assigned under the lock
      ├── .snapshot()         ─ copy of retained items, any thread
      ├── .wait_for_items(n)  ─ block until n items were ever appended
      └── .close()            ─ writer only; further appends raise

    With a bounded ``capacity`` the oldest items are evicted.  Indices
    never restart, so the retained window is always contiguous.

Closed-channel policy:
    ``append`` on a closed collector raises :class:`ClosedChannelError`
    for every channel.

Related modules:
    events.py      — EventDispatcher (observer fan-out)
    invocation.py  — InvocationHandle owns one collector per channel
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterator
from typing import Any

from .errors import ClosedChannelError
from .events import EventDispatcher
from .models import Channel, StreamItem


class StreamCollector:
    """Ordered, append-only collection of :class:`StreamItem` for one channel.

    Example:
        >>> collector = StreamCollector(Channel.OUTPUT)
        >>> collector.append("a").index
        0
        >>> collector.append("b").index
        1
        >>> collector.payloads()
        ['a', 'b']
        >>> collector.close()
        >>> collector.append("c")
        Traceback (most recent call last):
        ...
        ClosedChannelError: Channel 'output' is closed
    """

    def __init__(
        self,
        channel: Channel | str,
        *,
        capacity: int | None = None,
        dispatcher: EventDispatcher | None = None,
        owner_id: str | None = None,
    ):
        """Initialize an empty, open collector.

        Args:
            channel: Channel this collector records
            capacity: Maximum retained items (None = unbounded)
            dispatcher: Receives every appended item after it is visible
            owner_id: Invocation ID, used in error context
        """
        if capacity is not None and capacity < 1:
            raise ValueError(f"capacity must be >= 1 or None, got {capacity}")
        self._channel = Channel.parse(channel)
        self._capacity = capacity
        self._items: deque[StreamItem] = deque(maxlen=capacity)
        self._dispatcher = dispatcher
        self._owner_id = owner_id
        self._next_index = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def capacity(self) -> int | None:
        return self._capacity

    @property
    def total_appended(self) -> int:
        """Items ever appended, including evicted ones."""
        return self._next_index

    def append(self, payload: Any) -> StreamItem:
        """Append *payload* and notify observers.

        Returns:
            The stored item, carrying its sequence index

        Raises:
            ClosedChannelError: If the collector is closed
        """
        with self._cond:
            if self._closed:
                raise ClosedChannelError(
                    f"Channel {self._channel.value!r} is closed"
                ).with_context(channel=self._channel.value, invocation_id=self._owner_id)
            item = StreamItem(channel=self._channel, index=self._next_index, payload=payload)
            self._items.append(item)
            self._next_index += 1
            self._cond.notify_all()

        if self._dispatcher is not None:
            self._dispatcher.publish(item)
        return item

    def snapshot(self) -> list[StreamItem]:
        """All retained items in append order."""
        with self._cond:
            return list(self._items)

    def payloads(self) -> list[Any]:
        """Payloads of :meth:`snapshot`."""
        return [item.payload for item in self.snapshot()]

    def wait_for_items(self, count: int, timeout: float | None = None) -> bool:
        """Block until at least *count* items were appended or the collector closes.

        Returns:
            True if *count* items were appended within *timeout*
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._next_index >= count or self._closed,
                timeout=timeout,
            )
            return self._next_index >= count

    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Freeze the collector. Idempotent."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[StreamItem]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"StreamCollector({self._channel.value!r}, items={self._next_index}, {state})"


__all__ = ["StreamCollector"]
