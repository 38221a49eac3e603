"""Courses published inside a community.

Only active admins publish courses. Anyone who can see the community can list
its courses, so private communities keep their courses to their members.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from circlekit.core.security import Actor
from circlekit.db.session import unit_of_work
from circlekit.errors import NotFoundError, PermissionDeniedError
from circlekit.models import Course, CourseLesson, CourseSection
from circlekit.models.community import ROLE_ADMIN, STATUS_ACTIVE
from circlekit.repositories import CommunityRepository, CourseRepository
from circlekit.schemas.course import CourseCreate
from circlekit.services.visibility import CommunityVisibilityPolicy

logger = logging.getLogger(__name__)


class CourseCatalog:
    """Course reads and writes on behalf of one actor at a time."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.courses = CourseRepository(session)
        self.communities = CommunityRepository(session)

    async def list_courses(self, actor: Actor, community_id: int) -> list[Course]:
        """Courses of a community, newest first, with sections and lessons in order.

        Raises:
            NotFoundError: If the community does not exist or is hidden from ``actor``.
        """
        community = await self.communities.get(community_id)
        if community is None or not await CommunityVisibilityPolicy(self.session).can_view(actor, community):
            raise NotFoundError("Community not found")
        return await self.courses.list_for_community(community_id)

    async def create_course(self, actor: Actor, community_id: int, data: CourseCreate) -> Course:
        """Publish a course; sections and lessons are numbered in the order given.

        Raises:
            NotFoundError: If the community does not exist.
            PermissionDeniedError: If ``actor`` is not an active admin of it.
        """
        async with unit_of_work(self.session, "create course"):
            if await self.communities.lock(community_id) is None:
                raise NotFoundError("Community not found")
            membership = await self.communities.get_membership(community_id, actor.user_id)
            if membership is None or membership.status != STATUS_ACTIVE or membership.role != ROLE_ADMIN:
                raise PermissionDeniedError("Only admins can publish courses")
            course = await self.courses.add(
                Course(
                    community_id=community_id,
                    creator_id=actor.user_id,
                    title=data.title,
                    description=data.description,
                    cover_image=data.cover_image,
                    price=data.price,
                    sections=[
                        CourseSection(
                            title=section.title,
                            description=section.description,
                            order_index=section_index,
                            lessons=[
                                CourseLesson(**lesson.model_dump(), order_index=lesson_index)
                                for lesson_index, lesson in enumerate(section.lessons)
                            ],
                        )
                        for section_index, section in enumerate(data.sections)
                    ],
                )
            )
        logger.info("User %s published course %d in community %d", actor.user_id, course.id, community_id)
        created = await self.courses.get(course.id)
        if created is None:
            raise NotFoundError("Course not found")
        return created
