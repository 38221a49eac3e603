"""Optimistic feed state and its reconciliation with canonical data.

Each feed item is tracked as a canonical *base* (the last value the backend
confirmed) plus an ordered list of pending optimistic edits. The visible
value is always ``base`` with the pending edits folded on top, in the order
the user issued them. Consequences:

* an edit shows up immediately, before the backend answers;
* rolling back one edit recomputes the item from the base and the remaining
  edits, so a later edit to the same item is not clobbered;
* when a refetch delivers a new base, pending edits are re-applied on top of
  it, unless the canonical item already shows the actor's own result, in
  which case the edit counts as confirmed and is dropped. Like edits on one
  item are judged together against the state the last of them asks for, so
  a like followed by an unlike is never half confirmed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from itertools import count

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from circlekit.core.security import Actor
from circlekit.core.settings import settings
from circlekit.db.session import unit_of_work
from circlekit.db.time import utcnow
from circlekit.errors import BackendError, NotFoundError, ValidationError
from circlekit.repositories import PostRepository
from circlekit.services.feed_items import TEMP_COMMENT_PREFIX, AuthorInfo, FeedComment, FeedItem

logger = logging.getLogger(__name__)

COMMENT_MAX_LENGTH = 2000


@dataclass(frozen=True)
class LikeDelta:
    """Bring the actor's like state on a post to ``liked``."""

    actor_id: str
    liked: bool

    def apply(self, item: FeedItem) -> FeedItem:
        if item.is_liked == self.liked:
            return item
        step = 1 if self.liked else -1
        return replace(item, is_liked=self.liked, likes_count=max(0, item.likes_count + step))

    def confirmed_by(self, item: FeedItem) -> bool:
        return item.is_liked == self.liked


@dataclass(frozen=True)
class CommentDelta:
    """Append ``comment`` (a local draft, or its confirmed replacement)."""

    actor_id: str
    comment: FeedComment

    def apply(self, item: FeedItem) -> FeedItem:
        if any(existing.id == self.comment.id for existing in item.comments):
            return item
        return replace(
            item,
            comments=(*item.comments, self.comment),
            comments_count=item.comments_count + 1,
        )

    def confirmed_by(self, item: FeedItem) -> bool:
        if self.comment.is_temporary:
            return any(
                existing.user_id == self.actor_id
                and existing.content == self.comment.content
                and not existing.is_temporary
                for existing in item.comments
            )
        return any(existing.id == self.comment.id for existing in item.comments)


Delta = LikeDelta | CommentDelta


@dataclass(eq=False)
class EditHandle:
    """Ticket for one optimistic edit; pass it to commit or rollback once."""

    id: int
    post_id: int
    delta: Delta
    prior: FeedItem
    settled: bool = False


@dataclass
class _Entry:
    base: FeedItem
    pending: list[EditHandle] = field(default_factory=list)

    def visible(self) -> FeedItem:
        item = self.base
        for handle in self.pending:
            item = handle.delta.apply(item)
        return item


def _unconfirmed(pending: list[EditHandle], item: FeedItem) -> list[EditHandle]:
    """Settle the edits ``item`` already reflects and return the rest, in order."""
    likes = [handle for handle in pending if isinstance(handle.delta, LikeDelta)]
    likes_confirmed = bool(likes) and likes[-1].delta.confirmed_by(item)
    remaining: list[EditHandle] = []
    for handle in pending:
        if isinstance(handle.delta, LikeDelta):
            confirmed = likes_confirmed
        else:
            confirmed = handle.delta.confirmed_by(item)
        if confirmed:
            handle.settled = True
            logger.debug("Edit %d on post %d confirmed by refetch", handle.id, item.id)
        else:
            remaining.append(handle)
    return remaining


class FeedReconciler:
    """Owns the materialized feed of one screen context.

    ``apply_optimistic``, ``commit``, ``rollback`` and ``replace_canonical`` are
    synchronous and never touch the backend. ``toggle_like`` and
    ``submit_comment`` wrap them around the actual backend commands.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        max_items: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.max_items = max_items if max_items is not None else settings.feed_window_size
        self._entries: dict[int, _Entry] = {}
        self._order: list[int] = []
        self._handles = count(1)

    # ------------------------------------------------------------------
    # Materialized view
    # ------------------------------------------------------------------

    @property
    def items(self) -> list[FeedItem]:
        return [self._entries[post_id].visible() for post_id in self._order]

    def get(self, post_id: int) -> FeedItem | None:
        entry = self._entries.get(post_id)
        return entry.visible() if entry is not None else None

    def pending_edits(self, post_id: int | None = None) -> list[EditHandle]:
        if post_id is not None:
            entry = self._entries.get(post_id)
            return list(entry.pending) if entry is not None else []
        return [handle for entry in self._entries.values() for handle in entry.pending]

    def replace_canonical(self, items: Iterable[FeedItem]) -> list[FeedItem]:
        """Install freshly fetched canonical items as the new bases.

        Pending edits survive the refresh unless the canonical item already
        reflects them. Items missing from ``items`` are dropped, pending edits
        included.
        """
        fresh = list(items)[: self.max_items]
        entries: dict[int, _Entry] = {}
        for item in fresh:
            entry = _Entry(base=item)
            previous = self._entries.get(item.id)
            if previous is not None:
                entry.pending = _unconfirmed(previous.pending, item)
            entries[item.id] = entry

        for post_id, previous in self._entries.items():
            if post_id not in entries:
                for handle in previous.pending:
                    handle.settled = True

        self._entries = entries
        self._order = [item.id for item in fresh]
        return self.items

    def clear(self) -> None:
        self._entries.clear()
        self._order.clear()

    # ------------------------------------------------------------------
    # Optimistic edits
    # ------------------------------------------------------------------

    def apply_optimistic(self, post_id: int, delta: Delta) -> EditHandle:
        """Show ``delta`` on ``post_id`` immediately and return its handle."""
        entry = self._entries.get(post_id)
        if entry is None:
            raise NotFoundError(f"Post {post_id} is not in this feed")
        handle = EditHandle(
            id=next(self._handles),
            post_id=post_id,
            delta=delta,
            prior=entry.visible(),
        )
        entry.pending.append(handle)
        return handle

    def commit(self, handle: EditHandle, confirmed: FeedComment | None = None) -> FeedItem | None:
        """Fold a backend-confirmed edit into the item's base.

        For comment edits ``confirmed`` carries the server-assigned comment,
        which replaces the local draft in place.
        """
        entry = self._settle(handle)
        if entry is None:
            return None
        delta = handle.delta
        if isinstance(delta, CommentDelta) and confirmed is not None:
            delta = replace(delta, comment=confirmed)
        entry.base = delta.apply(entry.base)
        return entry.visible()

    def rollback(self, handle: EditHandle) -> FeedItem | None:
        """Undo an edit whose backend command failed."""
        entry = self._settle(handle)
        if entry is None:
            return None
        logger.debug("Rolled back edit %d on post %d", handle.id, handle.post_id)
        return entry.visible()

    def _settle(self, handle: EditHandle) -> _Entry | None:
        if handle.settled:
            return None
        handle.settled = True
        entry = self._entries.get(handle.post_id)
        if entry is None or handle not in entry.pending:
            return None
        entry.pending.remove(handle)
        return entry

    # ------------------------------------------------------------------
    # Intents with backend dispatch
    # ------------------------------------------------------------------

    async def toggle_like(self, actor: Actor, post_id: int) -> FeedItem:
        """Flip the actor's like on ``post_id`` optimistically, then persist it."""
        current = self.get(post_id)
        if current is None:
            raise NotFoundError(f"Post {post_id} is not in this feed")
        handle = self.apply_optimistic(post_id, LikeDelta(actor_id=actor.user_id, liked=not current.is_liked))
        liked = handle.delta.liked  # type: ignore[union-attr]
        try:
            async with self._session() as session:
                repo = PostRepository(session)
                async with unit_of_work(session, "update like"):
                    post = await repo.get_by_id(post_id)
                    if post is None:
                        raise NotFoundError("Post not found")
                    if liked:
                        await repo.like(post, actor.user_id)
                    else:
                        await repo.unlike(post, actor.user_id)
        except (BackendError, NotFoundError, TimeoutError) as exc:
            self.rollback(handle)
            logger.warning("Like update on post %d by %s failed: %s", post_id, actor.user_id, exc)
            raise
        self.commit(handle)
        return self.get(post_id) or current

    async def submit_comment(self, actor: Actor, post_id: int, content: str) -> FeedComment:
        """Append a draft comment immediately, then persist it.

        Returns:
            The confirmed comment carrying its server id and timestamp.
        """
        text = content.strip()
        if not text:
            raise ValidationError("Comment cannot be empty")
        if len(text) > COMMENT_MAX_LENGTH:
            raise ValidationError("Comment is too long")
        if post_id not in self._entries:
            raise NotFoundError(f"Post {post_id} is not in this feed")

        draft = FeedComment(
            id=f"{TEMP_COMMENT_PREFIX}{uuid.uuid4().hex}",
            user_id=actor.user_id,
            content=text,
            created_at=utcnow(),
            author=AuthorInfo(id=actor.user_id),
            pending=True,
        )
        handle = self.apply_optimistic(post_id, CommentDelta(actor_id=actor.user_id, comment=draft))
        try:
            async with self._session() as session:
                repo = PostRepository(session)
                async with unit_of_work(session, "add comment"):
                    post = await repo.get_by_id(post_id)
                    if post is None:
                        raise NotFoundError("Post not found")
                    comment = await repo.add_comment(post, actor.user_id, text)
                confirmed = FeedComment(
                    id=str(comment.id),
                    user_id=comment.user_id,
                    content=comment.content,
                    created_at=comment.created_at,
                    author=draft.author,
                )
        except (BackendError, NotFoundError, TimeoutError) as exc:
            self.rollback(handle)
            logger.warning("Comment on post %d by %s failed: %s", post_id, actor.user_id, exc)
            raise
        self.commit(handle, confirmed=confirmed)
        return confirmed

    def _session(self) -> AsyncSession:
        if self.session_factory is None:
            raise RuntimeError("FeedReconciler has no session factory; it cannot dispatch commands")
        return self.session_factory()
