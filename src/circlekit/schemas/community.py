# src/circlekit/schemas/community.py
"""Community-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CommunityCreate(BaseModel):
    """Schema for creating a new community."""

    name: str = Field(..., max_length=80)
    description: str | None = None
    is_private: bool = False
    is_paid: bool = False
    price: Decimal | None = Field(default=None, gt=0)
    discounted_price: Decimal | None = Field(default=None, gt=0)
    seats_left: int | None = Field(default=None, ge=0)
    offer_end_time: datetime | None = None
    bonus_1: str | None = None
    bonus_2: str | None = None
    bonus_3: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Community name is required")
        return value

    @field_validator("description", "bonus_1", "bonus_2", "bonus_3")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def _check_pricing(self) -> "CommunityCreate":
        if not self.is_paid:
            # Price fields only mean something for paid communities.
            self.price = None
            self.discounted_price = None
            self.seats_left = None
            self.offer_end_time = None
            return self
        if self.price is None:
            raise ValueError("Paid communities need a price")
        if self.discounted_price is not None and self.discounted_price >= self.price:
            raise ValueError("Discounted price must be lower than the price")
        return self


class CommunityResponse(BaseModel):
    """Schema for community information returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    creator_id: str
    is_private: bool
    is_paid: bool
    price: Decimal | None
    discounted_price: Decimal | None
    seats_left: int | None
    offer_end_time: datetime | None
    bonus_1: str | None
    bonus_2: str | None
    bonus_3: str | None
    cover_image: str | None
    video_url: str | None
    member_count: int
    created_at: datetime


class MembershipResponse(BaseModel):
    """A user's membership in a community."""

    model_config = ConfigDict(from_attributes=True)

    community_id: int
    user_id: str
    role: Literal["member", "admin"]
    status: Literal["active", "left"]
    joined_at: datetime


class LeaveResponse(BaseModel):
    """Outcome of leaving a community."""

    outcome: Literal["left", "ownership_transferred", "community_deleted"]
    new_admin_id: str | None = None


class CommunityDetailResponse(CommunityResponse):
    """A community together with the caller's role in it."""

    role: Literal["member", "admin"] | None = None


class CommunityUpdate(BaseModel):
    """Fields an admin may change after creation; omitted fields stay as they are."""

    name: str | None = Field(default=None, max_length=80)
    description: str | None = None
    remove_cover: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("Community name cannot be blank")
        return value

    @field_validator("description")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None
