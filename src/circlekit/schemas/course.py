"""Course, section and lesson Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _required_title(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Title is required")
    return value


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


Title = Annotated[str, Field(max_length=120), AfterValidator(_required_title)]
OptionalText = Annotated[str | None, AfterValidator(_optional_text)]


class LessonCreate(BaseModel):
    title: Title
    description: OptionalText = None
    video_url: str | None = None
    thumbnail_url: str | None = None
    duration: int = Field(default=0, ge=0, description="Length in seconds")


class SectionCreate(BaseModel):
    title: Title
    description: OptionalText = None
    lessons: list[LessonCreate] = Field(default_factory=list)


class CourseCreate(BaseModel):
    """Schema for publishing a course; sections and lessons keep their list order."""

    title: Title
    description: OptionalText = None
    cover_image: str | None = None
    price: Decimal = Field(default=Decimal("0"), ge=0)
    sections: list[SectionCreate] = Field(default_factory=list)


class LessonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    video_url: str | None
    thumbnail_url: str | None
    duration: int
    order_index: int


class SectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    order_index: int
    lessons: list[LessonResponse]


class CourseResponse(BaseModel):
    """A course with its sections and lessons in order."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    community_id: int
    creator_id: str
    title: str
    description: str | None
    cover_image: str | None
    price: Decimal
    created_at: datetime
    sections: list[SectionResponse]
