"""Routing primitives: the broadcast fan-out and the slave command queue.

``BroadcastChannel`` carries slave frames to masters.  Publishing never
blocks: each subscriber owns a bounded buffer and the configured
:class:`~openvibe.config.OverflowPolicy` decides what a full buffer means.

``CommandQueue`` carries master frames to the slave.  Many masters may send
concurrently; a full queue makes the sender wait, so a slow slave only slows
down the masters that talk to it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import deque
from typing import Union

from openvibe.config import OverflowPolicy
from openvibe.errors import GroupClosed, RelayError, SubscriberOverflow

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


def _fresh(error: RelayError) -> RelayError:
    """A per-raise copy, so concurrent receivers never share a traceback."""
    clone = copy.copy(error)
    clone.__traceback__ = None
    return clone


# ── Broadcast ─────────────────────────────────────────────────────


class Subscription:
    """One master's read cursor into a :class:`BroadcastChannel`."""

    def __init__(self, channel: BroadcastChannel, capacity: int, policy: OverflowPolicy) -> None:
        self.channel = channel
        self._capacity = capacity
        self._policy = policy
        self._buffer: deque[Frame] = deque()
        self._ready = asyncio.Event()
        self._error: RelayError | None = None
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._error is not None

    @property
    def pending(self) -> int:
        """Frames published but not yet received."""
        return len(self._buffer)

    async def recv(self) -> Frame:
        """Wait for the next frame.

        Raises the terminal error (``GroupClosed``, ``SubscriberOverflow``)
        once the subscription is closed.  Frames still buffered at close
        time are discarded.
        """
        while True:
            if self._error is not None:
                raise _fresh(self._error)
            if self._buffer:
                return self._buffer.popleft()
            self._ready.clear()
            await self._ready.wait()

    def _deliver(self, frame: Frame) -> bool:
        if self._error is not None:
            return False
        if len(self._buffer) >= self._capacity:
            if self._policy is OverflowPolicy.DISCONNECT:
                self._close(SubscriberOverflow(
                    f"{self._capacity} unread frames on '{self.channel.name}'"
                ))
                return False
            self._buffer.popleft()
            self.dropped += 1
            if self.dropped == 1:
                logger.warning(
                    "Subscriber on %s is lagging, dropping oldest frames", self.channel.name,
                )
            else:
                logger.debug("Subscriber on %s dropped %d frames", self.channel.name, self.dropped)
        self._buffer.append(frame)
        self._ready.set()
        return True

    def _close(self, error: RelayError) -> None:
        if self._error is not None:
            return
        self._error = error
        self._buffer.clear()
        self._ready.set()


class BroadcastChannel:
    """Single-publisher, multi-subscriber fan-out with per-subscriber buffers."""

    def __init__(
        self,
        name: str,
        capacity: int = 100,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ) -> None:
        self.name = name
        self.capacity = capacity
        self.policy = policy
        self._subscribers: list[Subscription] = []
        self._error: RelayError | None = None

    @property
    def closed(self) -> bool:
        return self._error is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Attach a new subscriber; it only sees frames published from now on."""
        sub = Subscription(self, self.capacity, self.policy)
        if self._error is not None:
            sub._close(self._error)
        else:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Detach *sub*.  Other subscribers are untouched."""
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass

    def publish(self, frame: Frame) -> int:
        """Deliver *frame* to every current subscriber.

        Returns the number of subscribers that accepted it.  Subscribers
        terminated by overflow are detached here.
        """
        if self._error is not None:
            raise _fresh(self._error)
        delivered = 0
        for sub in list(self._subscribers):
            if sub._deliver(frame):
                delivered += 1
            elif sub.closed:
                self.unsubscribe(sub)
                logger.warning("Disconnecting lagging subscriber on %s", self.name)
        return delivered

    def close(self, error: RelayError | None = None) -> None:
        """Close the channel; every subscriber's next ``recv`` is terminal."""
        if self._error is not None:
            return
        self._error = error or GroupClosed(f"'{self.name}' closed")
        subscribers, self._subscribers = self._subscribers, []
        for sub in subscribers:
            sub._close(self._error)


# ── Commands ──────────────────────────────────────────────────────


class CommandQueue:
    """Bounded many-sender, single-receiver queue of master commands."""

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = capacity
        self._items: deque[Frame] = deque()
        self._cond = asyncio.Condition()
        self._error: RelayError | None = None

    @property
    def closed(self) -> bool:
        return self._error is not None

    def __len__(self) -> int:
        return len(self._items)

    async def send(self, frame: Frame) -> bool:
        """Queue *frame*, waiting for space.  Returns False once closed."""
        async with self._cond:
            await self._cond.wait_for(
                lambda: self._error is not None or len(self._items) < self.capacity
            )
            if self._error is not None:
                return False
            self._items.append(frame)
            self._cond.notify_all()
            return True

    async def recv(self) -> Frame:
        """Take the next frame; raises the close reason once closed."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._error is not None or bool(self._items))
            if self._error is not None:
                raise _fresh(self._error)
            frame = self._items.popleft()
            self._cond.notify_all()
            return frame

    async def close(self, error: RelayError) -> None:
        """Invalidate the queue.  Pending commands are discarded."""
        async with self._cond:
            if self._error is not None:
                return
            self._error = error
            self._items.clear()
            self._cond.notify_all()
