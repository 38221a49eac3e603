"""Data access helpers for courses and their sections and lessons."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from circlekit.models import Course, CourseSection

__all__ = ["CourseRepository"]


class CourseRepository:
    """Thin wrapper around database access for courses."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _with_content(self):
        return select(Course).options(
            selectinload(Course.sections).selectinload(CourseSection.lessons)
        )

    async def get(self, course_id: int) -> Course | None:
        """Return a course with its sections and lessons loaded."""
        result = await self.session.execute(
            self._with_content()
            .where(Course.id == course_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_for_community(self, community_id: int) -> list[Course]:
        """Return a community's courses, newest first."""
        result = await self.session.execute(
            self._with_content()
            .where(Course.community_id == community_id)
            .order_by(Course.created_at.desc(), Course.id.desc())
        )
        return list(result.scalars())

    async def add(self, course: Course) -> Course:
        """Insert a course; its sections and their lessons cascade with it."""
        self.session.add(course)
        await self.session.flush()
        return course
