# src/circlekit/api/v1/endpoints/communities.py
"""Community-related endpoints for the circlekit API."""

from __future__ import annotations

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status
from pydantic import ValidationError as PydanticValidationError

from circlekit.api.v1.dependencies import BlobStoreDep, CurrentActorDep, SessionDep
from circlekit.errors import NotFoundError, ValidationError
from circlekit.models import Community, CommunityMember
from circlekit.schemas.community import (
    CommunityCreate,
    CommunityDetailResponse,
    CommunityResponse,
    CommunityUpdate,
    LeaveResponse,
    MembershipResponse,
)
from circlekit.services.membership import MediaUpload, MembershipStateMachine
from circlekit.services.visibility import SEARCH_MAX_LENGTH, CommunityVisibilityPolicy

router = APIRouter(prefix="/communities", tags=["communities"])


@router.get("/discover", response_model=list[CommunityResponse])
async def discover_communities(
    db: SessionDep,
    _actor: CurrentActorDep,
    q: str | None = Query(None, max_length=SEARCH_MAX_LENGTH, description="Name search"),
) -> list[Community]:
    """List public communities, optionally filtered by name."""
    return await CommunityVisibilityPolicy(db).discoverable(q)


@router.get("/mine", response_model=list[CommunityResponse])
async def my_communities(db: SessionDep, actor: CurrentActorDep) -> list[Community]:
    """List the communities the caller is an active member of."""
    return await CommunityVisibilityPolicy(db).my_communities(actor)


@router.post("/", response_model=CommunityResponse, status_code=status.HTTP_201_CREATED)
async def create_community(
    community_data: CommunityCreate,
    actor: CurrentActorDep,
    db: SessionDep,
    blob_store: BlobStoreDep,
) -> Community:
    """Create a new community with the caller as its admin."""
    return await MembershipStateMachine(db, blob_store).create_community(actor, community_data)


@router.get("/{community_id}", response_model=CommunityDetailResponse)
async def get_community(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
) -> CommunityDetailResponse:
    """Get a community and the caller's role in it.

    Private communities are reported as missing to non-members.
    """
    machine = MembershipStateMachine(db)
    snapshot = await machine.describe(actor, community_id)
    if not await CommunityVisibilityPolicy(db).can_view(actor, snapshot.community):
        raise NotFoundError("Community not found")
    detail = CommunityDetailResponse.model_validate(snapshot.community)
    return detail.model_copy(update={"role": snapshot.role, "member_count": snapshot.member_count})


@router.get("/{community_id}/members", response_model=list[MembershipResponse])
async def list_members(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
) -> list[CommunityMember]:
    """List active members in join order."""
    machine = MembershipStateMachine(db)
    community = await machine.get_community(community_id)
    if not await CommunityVisibilityPolicy(db).can_view(actor, community):
        raise NotFoundError("Community not found")
    return await machine.list_members(community_id)


@router.post(
    "/{community_id}/join",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_community(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
) -> CommunityMember:
    """Join a public community."""
    return await MembershipStateMachine(db).join(actor, community_id)


@router.post("/{community_id}/leave", response_model=LeaveResponse)
async def leave_community(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
) -> LeaveResponse:
    """Leave a community, transferring ownership if the caller is its admin."""
    result = await MembershipStateMachine(db).leave(actor, community_id)
    return LeaveResponse(outcome=result.outcome.value, new_admin_id=result.new_admin_id)


@router.delete("/{community_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_community(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
) -> Response:
    """Delete a community; deleting one that is already gone also succeeds."""
    await MembershipStateMachine(db).delete_community(actor, community_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/{community_id}", response_model=CommunityResponse)
async def update_community(
    community_id: int,
    actor: CurrentActorDep,
    db: SessionDep,
    blob_store: BlobStoreDep,
    name: str | None = Form(None),
    description: str | None = Form(None),
    remove_cover: bool = Form(False),
    cover: UploadFile | None = File(None),
) -> Community:
    """Edit a community's name, description or cover; admins only.

    Fields left out of the form keep their current value.
    """
    fields: dict[str, object] = {"remove_cover": remove_cover}
    if name is not None:
        fields["name"] = name
    if description is not None:
        fields["description"] = description
    try:
        data = CommunityUpdate(**fields)
    except PydanticValidationError as exc:
        raise ValidationError(exc.errors()[0]["msg"]) from exc

    upload = None
    if cover is not None:
        content_type = (cover.content_type or "").strip()
        if not content_type:
            raise ValidationError("Uploaded file must declare a content type")
        upload = MediaUpload(data=await cover.read(), content_type=content_type, filename=cover.filename)
    return await MembershipStateMachine(db, blob_store).update_community(
        actor, community_id, data, cover=upload
    )
