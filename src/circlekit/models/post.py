"""SQLAlchemy models for posts, likes and comments."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from circlekit.db.session import Base
from circlekit.db.time import utcnow

from .community import Community
from .profile import Profile

POST_TYPE_GENERAL = "general"
POST_TYPE_COMMUNITY = "community"
MEDIA_TYPES = ("none", "image", "video")


class Post(Base):
    """Primary content entity.

    ``likes_count`` and ``comments_count`` are caches of the likes and
    comments tables and may briefly disagree with them.
    """

    __tablename__ = "posts"
    __table_args__ = (
        CheckConstraint("media_type IN ('none', 'image', 'video')", name="ck_posts_media_type"),
        CheckConstraint("post_type IN ('general', 'community')", name="ck_posts_post_type"),
        Index("ix_posts_community_created", "community_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        nullable=False,
    )
    # NULL means the post lives in the general feed.
    community_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("communities.id", ondelete="CASCADE"),
        nullable=True,
    )
    post_type: Mapped[str] = mapped_column(String(16), nullable=False, default=POST_TYPE_GENERAL)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_type: Mapped[str] = mapped_column(String(8), nullable=False, default="none")
    likes_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comments_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    author: Mapped[Profile] = relationship(Profile)
    community: Mapped[Community | None] = relationship(Community)
    likes: Mapped[list[PostLike]] = relationship(
        "PostLike",
        back_populates="post",
        passive_deletes=True,
    )
    comments: Mapped[list[Comment]] = relationship(
        "Comment",
        back_populates="post",
        order_by="Comment.id",
        passive_deletes=True,
    )


class PostLike(Base):
    """A user's like on a post; the composite key allows at most one per pair."""

    __tablename__ = "likes"

    post_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("posts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    post: Mapped[Post] = relationship(Post, back_populates="likes")


class Comment(Base):
    """Append-only comment on a post."""

    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    post: Mapped[Post] = relationship(Post, back_populates="comments")
    author: Mapped[Profile] = relationship(Profile)
