"""Keeps mounted screen contexts in sync with the change feed.

A context declares which resources it depends on. Mounting it opens one
change-feed channel per resource and runs the first fetch; every invalidation
afterwards triggers a refetch of canonical state. Unmounting releases every
channel the context holds.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from circlekit.core.security import Actor
from circlekit.errors import CircleError, NotFoundError, ValidationError
from circlekit.repositories import PostRepository
from circlekit.services.change_feed import ChangeFeedClient, ResourceFilter, SubscriptionHandle
from circlekit.services.feed_items import FeedItem
from circlekit.services.membership import CommunitySnapshot, MembershipStateMachine
from circlekit.services.reconciler import FeedReconciler
from circlekit.services.visibility import FEED_TABS, CommunityVisibilityPolicy

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SyncContext(ABC):
    """Base for anything the orchestrator can mount."""

    actor: Actor
    handles: list[SubscriptionHandle] = field(default_factory=list, init=False)
    _started: int = field(default=0, init=False, repr=False)
    _applied: int = field(default=0, init=False, repr=False)

    @property
    def mounted(self) -> bool:
        return bool(self.handles)

    @abstractmethod
    def resource_filters(self) -> list[ResourceFilter]:
        """Resources whose changes invalidate this context."""

    @abstractmethod
    async def load(self, session: AsyncSession) -> object:
        """Fetch canonical state; the result is passed to :meth:`apply`."""

    @abstractmethod
    def apply(self, loaded: object) -> None:
        """Install what :meth:`load` fetched."""


@dataclass(eq=False)
class FeedContext(SyncContext):
    """A post feed: the home feed, or one tab of a community feed."""

    community_id: int | None = None
    tab: str = "community"
    reconciler: FeedReconciler = field(default_factory=FeedReconciler)

    def __post_init__(self) -> None:
        if self.tab not in FEED_TABS:
            raise ValidationError(f"Unknown feed tab: {self.tab}")

    @property
    def view(self) -> list[FeedItem]:
        return self.reconciler.items

    def resource_filters(self) -> list[ResourceFilter]:
        if self.community_id is None:
            return [
                ResourceFilter("posts"),
                ResourceFilter("likes"),
                ResourceFilter("comments"),
                # Joining or leaving changes which community posts the home feed shows.
                ResourceFilter("community_members", column="user_id", value=self.actor.user_id),
            ]
        return [
            ResourceFilter("posts", column="community_id", value=self.community_id),
            ResourceFilter("likes"),
            ResourceFilter("comments"),
        ]

    async def load(self, session: AsyncSession) -> list[FeedItem]:
        policy = CommunityVisibilityPolicy(session)
        try:
            clause = await policy.feed_clause(self.actor, self.community_id, self.tab)
        except NotFoundError:
            # The community vanished or was never visible; nothing to show.
            return []
        return await PostRepository(session).fetch_feed(
            self.actor.user_id, clause, self.reconciler.max_items
        )

    def apply(self, loaded: object) -> None:
        self.reconciler.replace_canonical(loaded)  # type: ignore[arg-type]


@dataclass(eq=False)
class CommunityContext(SyncContext):
    """A community screen: the community, the actor's role and the member count."""

    community_id: int
    snapshot: CommunitySnapshot | None = field(default=None, init=False)
    deleted: bool = field(default=False, init=False)

    def resource_filters(self) -> list[ResourceFilter]:
        return [
            ResourceFilter("community_members", column="community_id", value=self.community_id),
            ResourceFilter(
                "communities",
                events=frozenset({"DELETE"}),
                column="id",
                value=self.community_id,
            ),
        ]

    async def load(self, session: AsyncSession) -> CommunitySnapshot | None:
        try:
            return await MembershipStateMachine(session).describe(self.actor, self.community_id)
        except NotFoundError:
            return None

    def apply(self, loaded: object) -> None:
        if loaded is None:
            if not self.deleted:
                logger.info("Community %d is gone", self.community_id)
            self.deleted = True
            self.snapshot = None
            return
        self.snapshot = loaded  # type: ignore[assignment]


class SyncOrchestrator:
    """Mounts contexts, wires their channels and refetches on invalidation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: ChangeFeedClient | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.client = client or ChangeFeedClient()
        self._contexts: list[SyncContext] = []

    @property
    def contexts(self) -> list[SyncContext]:
        return list(self._contexts)

    async def mount(self, context: SyncContext) -> SyncContext:
        """Subscribe ``context`` to its resources and run the initial fetch."""
        if context in self._contexts:
            logger.warning("Context %r is already mounted", context)
            return context
        if isinstance(context, FeedContext) and context.reconciler.session_factory is None:
            context.reconciler.session_factory = self.session_factory
        self._contexts.append(context)
        await self._subscribe(context)
        await self.refresh(context)
        return context

    async def unmount(self, context: SyncContext) -> None:
        """Release every channel ``context`` holds."""
        if context not in self._contexts:
            logger.warning("Context %r is not mounted", context)
            return
        self._contexts.remove(context)
        await self._release(context)

    async def set_community_filter(self, context: FeedContext, community_id: int | None) -> None:
        """Point a feed at another community; the old channels are released first."""
        if context.community_id == community_id:
            return
        await self._release(context)
        context.community_id = community_id
        context.reconciler.clear()
        if context in self._contexts:
            await self._subscribe(context)
            await self.refresh(context)

    async def shutdown(self) -> None:
        for context in list(self._contexts):
            await self.unmount(context)

    async def refresh(self, context: SyncContext) -> bool:
        """Refetch canonical state for ``context``.

        A failed fetch is logged and leaves the current view in place. A fetch
        that finishes after a newer one is discarded.

        Returns:
            True when the fetched state was applied.
        """
        context._started += 1
        generation = context._started
        try:
            async with self.session_factory() as session:
                loaded = await context.load(session)
        except (CircleError, SQLAlchemyError, TimeoutError) as exc:
            logger.warning("Refetch for %s failed; keeping previous view: %s", type(context).__name__, exc)
            return False
        if generation < context._applied:
            logger.debug("Discarding stale refetch %d for %s", generation, type(context).__name__)
            return False
        context._applied = generation
        context.apply(loaded)
        return True

    async def _subscribe(self, context: SyncContext) -> None:
        async def on_invalidate(resource_key: str) -> None:
            logger.debug("Invalidated %s; refetching %s", resource_key, type(context).__name__)
            await self.refresh(context)

        for resource_filter in context.resource_filters():
            context.handles.append(await self.client.subscribe(resource_filter, on_invalidate))

    async def _release(self, context: SyncContext) -> None:
        handles, context.handles = context.handles, []
        for handle in handles:
            await self.client.unsubscribe(handle)
