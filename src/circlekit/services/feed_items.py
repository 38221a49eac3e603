"""Immutable feed snapshots shared by the repository, reconciler and API."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from circlekit.models import Comment, Post, Profile

TEMP_COMMENT_PREFIX = "temp-"


@dataclass(frozen=True)
class AuthorInfo:
    id: str
    full_name: str | None = None
    username: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_profile(cls, profile: Profile | None) -> AuthorInfo | None:
        if profile is None:
            return None
        return cls(
            id=profile.id,
            full_name=profile.full_name,
            username=profile.username,
            avatar_url=profile.avatar_url,
        )


@dataclass(frozen=True)
class FeedComment:
    """A comment in a feed item; ``pending`` marks an unconfirmed local draft."""

    id: str
    user_id: str
    content: str
    created_at: datetime
    author: AuthorInfo | None = None
    pending: bool = False

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_COMMENT_PREFIX)

    @classmethod
    def from_comment(cls, comment: Comment) -> FeedComment:
        return cls(
            id=str(comment.id),
            user_id=comment.user_id,
            content=comment.content,
            created_at=comment.created_at,
            author=AuthorInfo.from_profile(comment.author),
        )


@dataclass(frozen=True)
class FeedItem:
    """A post as seen by one viewer, including whether that viewer liked it."""

    id: int
    author_id: str
    community_id: int | None
    post_type: str
    content: str
    media_url: str | None
    media_type: str
    likes_count: int
    comments_count: int
    is_liked: bool
    created_at: datetime
    community_name: str | None = None
    author: AuthorInfo | None = None
    comments: tuple[FeedComment, ...] = field(default_factory=tuple)

    @classmethod
    def from_post(cls, post: Post, *, liked: bool) -> FeedItem:
        return cls(
            id=post.id,
            author_id=post.author_id,
            community_id=post.community_id,
            post_type=post.post_type,
            content=post.content,
            media_url=post.media_url,
            media_type=post.media_type,
            likes_count=post.likes_count,
            comments_count=post.comments_count,
            is_liked=liked,
            created_at=post.created_at,
            community_name=post.community.name if post.community is not None else None,
            author=AuthorInfo.from_profile(post.author),
            comments=tuple(FeedComment.from_comment(comment) for comment in post.comments),
        )


def feed_items_from_posts(posts: Iterable[Post], liked_ids: set[int]) -> list[FeedItem]:
    return [FeedItem.from_post(post, liked=post.id in liked_ids) for post in posts]
