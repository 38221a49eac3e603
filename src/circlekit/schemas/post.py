# src/circlekit/schemas/post.py
"""Post, comment and feed Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PostCreate(BaseModel):
    """Schema for creating a new post."""

    content: str = Field(default="", max_length=5000)
    community_id: int | None = None
    media_url: str | None = None
    media_type: Literal["none", "image", "video"] = "none"

    @field_validator("content")
    @classmethod
    def _strip_content(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def _check_body(self) -> "PostCreate":
        if not self.content and not self.media_url:
            raise ValueError("A post needs text or media")
        if self.media_url is None:
            self.media_type = "none"
        elif self.media_type == "none":
            raise ValueError("media_type is required when media_url is set")
        return self


class CommentCreate(BaseModel):
    """Schema for adding a comment to a post."""

    content: str = Field(..., max_length=2000)


class AuthorSummary(BaseModel):
    """Author fields expanded into feed items and comments."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: str | None = None
    username: str | None = None
    avatar_url: str | None = None


class CommentResponse(BaseModel):
    """A comment as shown under a post."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    content: str
    created_at: datetime
    author: AuthorSummary | None = None
    pending: bool = False


class FeedItemResponse(BaseModel):
    """A post as materialized for one viewer."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    author_id: str
    community_id: int | None
    community_name: str | None = None
    post_type: Literal["general", "community"]
    content: str
    media_url: str | None
    media_type: Literal["none", "image", "video"]
    likes_count: int
    comments_count: int
    is_liked: bool
    created_at: datetime
    author: AuthorSummary | None = None
    comments: list[CommentResponse] = []


class LikeResponse(BaseModel):
    """Like state of a post for the caller."""

    post_id: int
    is_liked: bool
    likes_count: int


class MediaUploadResponse(BaseModel):
    """Stored media ready to be referenced by a new post."""

    url: str
    media_type: Literal["image", "video"]
    content_type: str
    size: int
