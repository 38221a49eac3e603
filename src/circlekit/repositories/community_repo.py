"""Data access helpers for communities and memberships."""
from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from circlekit.db.time import utcnow
from circlekit.models import (
    Comment,
    Community,
    CommunityMember,
    Course,
    CourseLesson,
    CourseSection,
    Post,
    PostLike,
)
from circlekit.models.community import ROLE_ADMIN, STATUS_ACTIVE, STATUS_LEFT

__all__ = ["CommunityRepository"]


class CommunityRepository:
    """Thin wrapper around database access for communities and their members.

    Nothing here commits; callers wrap a sequence of calls in one transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the repository with an async SQLAlchemy session."""
        self.session = session

    async def get(self, community_id: int) -> Community | None:
        """Return a community by identifier, refreshed from the store."""
        result = await self.session.execute(
            select(Community)
            .where(Community.id == community_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def lock(self, community_id: int) -> Community | None:
        """Take the community's write lock for the rest of the transaction.

        The row is touched with an UPDATE before anything else is read, which
        makes a second writer on the same community wait until this
        transaction ends, on SQLite as well as on databases that honour
        ``FOR UPDATE``. Everything read afterwards reflects the writes of
        whoever held the lock before.

        Returns:
            The locked community, or None if it no longer exists.
        """
        await self.session.execute(
            update(Community)
            .where(Community.id == community_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            select(Community)
            .where(Community.id == community_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_where(self, *clauses: ColumnElement[bool]) -> list[Community]:
        """Return communities matching ``clauses`` ordered by name."""
        result = await self.session.execute(
            select(Community).where(*clauses).order_by(Community.name, Community.id)
        )
        return list(result.scalars())

    async def get_membership(self, community_id: int, user_id: str) -> CommunityMember | None:
        """Return the membership row for the pair, whatever its status."""
        result = await self.session.execute(
            select(CommunityMember)
            .where(
                CommunityMember.community_id == community_id,
                CommunityMember.user_id == user_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_active_members(
        self,
        community_id: int,
        *,
        exclude_user_id: str | None = None,
    ) -> list[CommunityMember]:
        """Return active memberships, earliest joined first, ties by user id.

        This order is also the successor order of the ownership transfer.
        """
        stmt = select(CommunityMember).where(
            CommunityMember.community_id == community_id,
            CommunityMember.status == STATUS_ACTIVE,
        )
        if exclude_user_id is not None:
            stmt = stmt.where(CommunityMember.user_id != exclude_user_id)
        stmt = stmt.order_by(CommunityMember.joined_at, CommunityMember.user_id)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars())

    async def active_community_ids(self, user_id: str) -> list[int]:
        result = await self.session.execute(
            select(CommunityMember.community_id).where(
                CommunityMember.user_id == user_id,
                CommunityMember.status == STATUS_ACTIVE,
            )
        )
        return list(result.scalars())

    async def active_admin_ids(self, community_id: int) -> list[str]:
        result = await self.session.execute(
            select(CommunityMember.user_id).where(
                CommunityMember.community_id == community_id,
                CommunityMember.status == STATUS_ACTIVE,
                CommunityMember.role == ROLE_ADMIN,
            )
        )
        return list(result.scalars())

    async def count_active_members(self, community_id: int) -> int:
        """Count active members with a server-side aggregate."""
        count = await self.session.scalar(
            select(func.count())
            .select_from(CommunityMember)
            .where(
                CommunityMember.community_id == community_id,
                CommunityMember.status == STATUS_ACTIVE,
            )
        )
        return int(count or 0)

    async def member_counts(self, community_ids: Iterable[int]) -> dict[int, int]:
        """Return active member counts for several communities in one query."""
        ids = list(community_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(CommunityMember.community_id, func.count())
            .where(
                CommunityMember.community_id.in_(ids),
                CommunityMember.status == STATUS_ACTIVE,
            )
            .group_by(CommunityMember.community_id)
        )
        counts = {community_id: 0 for community_id in ids}
        counts.update({community_id: int(total) for community_id, total in result.all()})
        return counts

    async def add(self, community: Community) -> Community:
        self.session.add(community)
        await self.session.flush()
        return community

    async def add_membership(self, membership: CommunityMember) -> CommunityMember:
        self.session.add(membership)
        await self.session.flush()
        return membership

    async def promote(self, membership: CommunityMember) -> None:
        """Give ``membership`` the admin role."""
        membership.role = ROLE_ADMIN
        await self.session.flush()

    async def set_creator(self, community: Community, user_id: str) -> None:
        community.creator_id = user_id
        await self.session.flush()

    async def mark_left(self, membership: CommunityMember) -> None:
        """End ``membership``; the row is kept with status ``left``."""
        membership.status = STATUS_LEFT
        await self.session.flush()

    async def refresh_member_count(self, community: Community) -> int:
        """Recompute the denormalized member count from the membership table."""
        await self.session.flush()
        community.member_count = await self.count_active_members(community.id)
        await self.session.flush()
        return community.member_count

    async def delete_with_content(self, community: Community) -> None:
        """Delete the community and everything hanging off it.

        Rows are deleted through the ORM, children first, so each removal is
        captured by the change feed and foreign keys are never violated.
        """
        post_ids = select(Post.id).where(Post.community_id == community.id)
        course_ids = select(Course.id).where(Course.community_id == community.id)
        section_ids = select(CourseSection.id).where(CourseSection.course_id.in_(course_ids))
        steps: list[tuple[type, ColumnElement[bool]]] = [
            (PostLike, PostLike.post_id.in_(post_ids)),
            (Comment, Comment.post_id.in_(post_ids)),
            (Post, Post.community_id == community.id),
            (CourseLesson, CourseLesson.section_id.in_(section_ids)),
            (CourseSection, CourseSection.id.in_(section_ids)),
            (Course, Course.community_id == community.id),
            (CommunityMember, CommunityMember.community_id == community.id),
        ]
        for model, clause in steps:
            rows = await self.session.scalars(select(model).where(clause))
            for row in rows.all():
                await self.session.delete(row)
            await self.session.flush()
        await self.session.delete(community)
        await self.session.flush()
