# src/circlekit/api/v1/endpoints/courses.py
"""Course endpoints, nested under the owning community."""

from __future__ import annotations

from fastapi import APIRouter, status

from circlekit.api.v1.dependencies import CurrentActorDep, SessionDep
from circlekit.models import Course
from circlekit.schemas.course import CourseCreate, CourseResponse
from circlekit.services.courses import CourseCatalog

router = APIRouter(prefix="/communities", tags=["courses"])


@router.get("/{community_id}/courses", response_model=list[CourseResponse])
async def list_courses(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
) -> list[Course]:
    """List a community's courses, newest first."""
    return await CourseCatalog(db).list_courses(actor, community_id)


@router.post(
    "/{community_id}/courses",
    response_model=CourseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_course(
    community_id: int,
    course_data: CourseCreate,
    actor: CurrentActorDep,
    db: SessionDep,
) -> Course:
    """Publish a course in a community the caller administers."""
    return await CourseCatalog(db).create_course(actor, community_id, course_data)
