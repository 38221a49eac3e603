"""Data access helpers for working with posts, likes and comments."""
from __future__ import annotations

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from circlekit.models import Comment, Post, PostLike
from circlekit.services.feed_items import FeedItem, feed_items_from_posts

__all__ = ["PostRepository"]


class PostRepository:
    """Thin wrapper around database access for post entities.

    Counter columns are maintained here and only here: every write that
    changes likes or comments recomputes the cached count with an aggregate
    query inside the same transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the repository with an async SQLAlchemy session."""
        self.session = session

    async def get_by_id(self, post_id: int) -> Post | None:
        """Return a post by identifier."""
        result = await self.session.execute(
            select(Post).where(Post.id == post_id).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def fetch_feed(
        self,
        viewer_id: str,
        clause: ColumnElement[bool],
        limit: int,
    ) -> list[FeedItem]:
        """Return canonical feed items matching ``clause``, newest first.

        Author, community and comments are expanded in the same round trip
        and ``is_liked`` is resolved for ``viewer_id``.
        """
        result = await self.session.execute(
            select(Post)
            .where(clause)
            .options(
                selectinload(Post.author),
                selectinload(Post.community),
                selectinload(Post.comments).selectinload(Comment.author),
            )
            .order_by(Post.created_at.desc(), Post.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        posts = list(result.scalars())
        if not posts:
            return []

        liked = await self.session.execute(
            select(PostLike.post_id).where(
                PostLike.user_id == viewer_id,
                PostLike.post_id.in_([post.id for post in posts]),
            )
        )
        return feed_items_from_posts(posts, set(liked.scalars()))

    async def create(self, post: Post) -> Post:
        """Insert a new post and return the persisted ORM instance."""
        self.session.add(post)
        await self.session.flush()
        return post

    async def delete(self, post: Post) -> None:
        """Delete a post together with its likes and comments."""
        for model in (PostLike, Comment):
            rows = await self.session.scalars(select(model).where(model.post_id == post.id))
            for row in rows.all():
                await self.session.delete(row)
        await self.session.flush()
        await self.session.delete(post)
        await self.session.flush()

    async def is_liked(self, post_id: int, user_id: str) -> bool:
        return await self.session.get(PostLike, (post_id, user_id)) is not None

    async def like(self, post: Post, user_id: str) -> int:
        """Record a like by ``user_id``; liking twice is a no-op.

        Returns:
            The recomputed likes count.
        """
        if await self.session.get(PostLike, (post.id, user_id)) is None:
            self.session.add(PostLike(post_id=post.id, user_id=user_id))
        return await self.refresh_likes_count(post)

    async def unlike(self, post: Post, user_id: str) -> int:
        """Remove the like by ``user_id`` if present; returns the new count."""
        existing = await self.session.get(PostLike, (post.id, user_id))
        if existing is not None:
            await self.session.delete(existing)
        return await self.refresh_likes_count(post)

    async def add_comment(self, post: Post, user_id: str, content: str) -> Comment:
        """Append a comment and refresh the post's comment count."""
        comment = Comment(post_id=post.id, user_id=user_id, content=content)
        self.session.add(comment)
        await self.session.flush()
        await self.refresh_comments_count(post)
        return comment

    async def refresh_likes_count(self, post: Post) -> int:
        await self.session.flush()
        post.likes_count = int(
            await self.session.scalar(
                select(func.count()).select_from(PostLike).where(PostLike.post_id == post.id)
            )
            or 0
        )
        await self.session.flush()
        return post.likes_count

    async def refresh_comments_count(self, post: Post) -> int:
        await self.session.flush()
        post.comments_count = int(
            await self.session.scalar(
                select(func.count()).select_from(Comment).where(Comment.post_id == post.id)
            )
            or 0
        )
        await self.session.flush()
        return post.comments_count
