"""SQLAlchemy models for communities and their memberships."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from circlekit.db.session import Base
from circlekit.db.time import utcnow

ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
STATUS_ACTIVE = "active"
STATUS_LEFT = "left"


class Community(Base):
    """A group of members with its own feed.

    ``creator_id`` always points at an active admin member; a community with no
    active members is deleted rather than left ownerless.
    """

    __tablename__ = "communities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    creator_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        nullable=False,
    )
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Monetization; prices are informational, payment happens elsewhere.
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    discounted_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    seats_left: Mapped[int | None] = mapped_column(Integer, nullable=True)
    offer_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bonus_1: Mapped[str | None] = mapped_column(Text, nullable=True)
    bonus_2: Mapped[str | None] = mapped_column(Text, nullable=True)
    bonus_3: Mapped[str | None] = mapped_column(Text, nullable=True)

    cover_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Denormalized; recomputed from community_members on every membership change.
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

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


class CommunityMember(Base):
    """Membership of a user in a community.

    The composite primary key allows one row per (community, user); leaving
    flips ``status`` to ``left`` and re-joining reactivates the same row.
    """

    __tablename__ = "community_members"
    __table_args__ = (
        CheckConstraint("role IN ('member', 'admin')", name="ck_community_members_role"),
        CheckConstraint("status IN ('active', 'left')", name="ck_community_members_status"),
        Index("ix_community_members_user_status", "user_id", "status"),
    )

    community_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("communities.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        primary_key=True,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_MEMBER)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_ACTIVE)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
