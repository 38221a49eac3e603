"""Change-feed transport and the subscriber-side client.

The hub is the backend half: committed row changes are published to it and it
forwards them to every subscription whose :class:`ResourceFilter` matches. It
carries row values, but consumers never see them. :class:`ChangeFeedClient`
narrows each delivery to ``on_invalidate(resource_key)`` so that callers always
refetch canonical state instead of trusting incremental payloads.

Deliveries are hints. They can be duplicated, they include the subscriber's
own writes, and a burst of changes may be coalesced into fewer wake-ups.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from itertools import count
from typing import Any

logger = logging.getLogger(__name__)

EVENT_TYPES: frozenset[str] = frozenset({"INSERT", "UPDATE", "DELETE"})

InvalidateCallback = Callable[[str], Awaitable[None]]
ChangeListener = Callable[["RowChange"], None]


@dataclass(frozen=True)
class RowChange:
    """A single committed row mutation as captured by the session."""

    table: str
    event: str
    record: Mapping[str, Any]


@dataclass(frozen=True)
class ResourceFilter:
    """Table, event types and an optional ``column = value`` equality filter."""

    table: str
    events: frozenset[str] = EVENT_TYPES
    column: str | None = None
    value: Any = None

    def __post_init__(self) -> None:
        unknown = set(self.events) - EVENT_TYPES
        if unknown or not self.events:
            raise ValueError(f"Unsupported change events: {sorted(unknown) or 'none'}")

    @property
    def key(self) -> str:
        """Stable resource key, e.g. ``posts:community_id=eq.7``."""
        name = self.table
        if self.events != EVENT_TYPES:
            name = f"{name}[{','.join(sorted(self.events))}]"
        if self.column is None:
            return f"{name}:*"
        return f"{name}:{self.column}=eq.{self.value}"

    def matches(self, change: RowChange) -> bool:
        if change.table != self.table or change.event not in self.events:
            return False
        if self.column is None:
            return True
        return change.record.get(self.column) == self.value


class ChangeFeedHub:
    """In-process change feed: routes published row changes to listeners."""

    def __init__(self) -> None:
        self._listeners: dict[int, tuple[ResourceFilter, ChangeListener]] = {}
        self._tokens = count(1)

    def subscribe(self, resource_filter: ResourceFilter, listener: ChangeListener) -> int:
        token = next(self._tokens)
        self._listeners[token] = (resource_filter, listener)
        return token

    def unsubscribe(self, token: int) -> bool:
        return self._listeners.pop(token, None) is not None

    def publish(self, changes: Iterable[RowChange]) -> int:
        """Forward ``changes`` to matching listeners; returns deliveries made."""
        delivered = 0
        for change in changes:
            for resource_filter, listener in list(self._listeners.values()):
                if resource_filter.matches(change):
                    listener(change)
                    delivered += 1
        return delivered

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


change_feed_hub = ChangeFeedHub()


@dataclass(eq=False)
class SubscriptionHandle:
    """Returned by :meth:`ChangeFeedClient.subscribe`; release it exactly once."""

    id: int
    resource_filter: ResourceFilter
    released: bool = False

    @property
    def key(self) -> str:
        return self.resource_filter.key


@dataclass(eq=False)
class _Channel:
    handle: SubscriptionHandle
    callback: InvalidateCallback
    token: int = 0
    queue: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    queued: bool = False
    in_flight: bool = False
    closed: bool = False
    task: asyncio.Task[None] | None = None

    @property
    def idle(self) -> bool:
        return self.queue.empty() and not self.in_flight


class ChangeFeedClient:
    """Subscriber side of the change feed.

    Each subscription gets its own queue and dispatcher task, so callbacks for
    one channel run one at a time and in order, cooperatively with the rest of
    the event loop.
    """

    def __init__(self, hub: ChangeFeedHub | None = None) -> None:
        self.hub = hub or change_feed_hub
        self._channels: dict[int, _Channel] = {}
        self._ids = count(1)

    @property
    def open_channels(self) -> int:
        return len(self._channels)

    async def subscribe(
        self,
        resource_filter: ResourceFilter,
        on_invalidate: InvalidateCallback,
    ) -> SubscriptionHandle:
        """Open a channel for ``resource_filter``."""
        handle = SubscriptionHandle(id=next(self._ids), resource_filter=resource_filter)
        channel = _Channel(handle=handle, callback=on_invalidate)
        channel.token = self.hub.subscribe(
            resource_filter,
            lambda _change: self._enqueue(channel),
        )
        channel.task = asyncio.create_task(self._dispatch(channel))
        self._channels[handle.id] = channel
        logger.debug("Opened change feed channel %d for %s", handle.id, handle.key)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Release the channel behind ``handle``.

        Returns False (and logs) when the handle was already released.
        """
        channel = self._channels.pop(handle.id, None)
        if channel is None:
            logger.warning("Change feed channel %d for %s already released", handle.id, handle.key)
            return False

        self.hub.unsubscribe(channel.token)
        handle.released = True
        channel.closed = True
        if channel.task is not None and channel.task is not asyncio.current_task():
            channel.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await channel.task
        while not channel.queue.empty():
            channel.queue.get_nowait()
            channel.queue.task_done()
        logger.debug("Closed change feed channel %d for %s", handle.id, handle.key)
        return True

    async def wait_idle(self) -> None:
        """Wait until every queued invalidation has been delivered."""
        while True:
            busy = [channel for channel in self._channels.values() if not channel.idle]
            if not busy:
                return
            for channel in busy:
                await channel.queue.join()
            await asyncio.sleep(0)

    async def close(self) -> None:
        """Release every open channel."""
        for channel in list(self._channels.values()):
            await self.unsubscribe(channel.handle)

    def _enqueue(self, channel: _Channel) -> None:
        # One queued invalidation per channel is enough; later ones coalesce into it.
        if channel.queued:
            return
        channel.queued = True
        channel.queue.put_nowait(channel.handle.key)

    async def _dispatch(self, channel: _Channel) -> None:
        while not channel.closed:
            key = await channel.queue.get()
            channel.queued = False
            channel.in_flight = True
            try:
                await channel.callback(key)
            except Exception:
                logger.exception("Change feed callback for %s failed", key)
            finally:
                channel.in_flight = False
                channel.queue.task_done()
