"""Membership lifecycle and the admin ownership-transfer protocol.

Per (community, user) the lifecycle is ``none -> member -> admin`` with
``left`` as the end state; a user who left may join again. Every transition
runs inside one database transaction, so a reader either sees all of its
writes (membership row, role, creator, member count) or none of them.

When an admin leaves, the community is handed to the earliest-joined active
member (ties broken by user id). The successor is promoted and made creator
*before* the departing admin's row is ended; if nobody is left, the community
is deleted instead. A failure at any step rolls the whole transition back and
surfaces as :class:`MembershipTransitionError`.

Transitions on one community are serialized: each starts by taking the
community's write lock and only then reads memberships, so two admins leaving
at the same time are handled one after the other and the second sees the
first one's result.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from circlekit.core.security import Actor
from circlekit.db.session import unit_of_work
from circlekit.db.time import utcnow
from circlekit.errors import (
    AlreadyMemberError,
    BackendError,
    CircleError,
    MembershipTransitionError,
    NotFoundError,
    NotMemberError,
    PermissionDeniedError,
    PrivateCommunityError,
    ValidationError,
)
from circlekit.models import Community, CommunityMember
from circlekit.models.community import ROLE_ADMIN, ROLE_MEMBER, STATUS_ACTIVE
from circlekit.repositories import CommunityRepository
from circlekit.schemas.community import CommunityCreate, CommunityUpdate
from circlekit.services.storage import (
    COMMUNITY_MEDIA_BUCKET,
    BlobStore,
    media_kind,
    object_path,
)

logger = logging.getLogger(__name__)


class LeaveOutcome(str, enum.Enum):
    """What leaving a community amounted to."""

    LEFT = "left"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    COMMUNITY_DELETED = "community_deleted"


@dataclass(frozen=True)
class LeaveResult:
    outcome: LeaveOutcome
    new_admin_id: str | None = None


@dataclass(frozen=True)
class MediaUpload:
    """Raw media handed over by the UI layer."""

    data: bytes
    content_type: str
    filename: str | None = None


@dataclass(frozen=True)
class CommunitySnapshot:
    """Community plus the viewer's role, as shown on a community screen."""

    community: Community
    role: str | None
    member_count: int

    @property
    def is_member(self) -> bool:
        return self.role is not None


class MembershipStateMachine:
    """Enforces membership transitions for one session's worth of work."""

    def __init__(self, session: AsyncSession, blob_store: BlobStore | None = None) -> None:
        self.session = session
        self.communities = CommunityRepository(session)
        self.blob_store = blob_store

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    async def get_community(self, community_id: int) -> Community:
        community = await self.communities.get(community_id)
        if community is None:
            raise NotFoundError("Community not found")
        return community

    async def get_membership(self, user_id: str, community_id: int) -> CommunityMember | None:
        """Return the active membership of ``user_id``, if any."""
        membership = await self.communities.get_membership(community_id, user_id)
        if membership is None or membership.status != STATUS_ACTIVE:
            return None
        return membership

    async def get_role(self, user_id: str, community_id: int) -> str | None:
        membership = await self.get_membership(user_id, community_id)
        return membership.role if membership is not None else None

    async def list_members(self, community_id: int) -> list[CommunityMember]:
        await self.get_community(community_id)
        return await self.communities.list_active_members(community_id)

    async def describe(self, actor: Actor, community_id: int) -> CommunitySnapshot:
        community = await self.get_community(community_id)
        role = await self.get_role(actor.user_id, community_id)
        member_count = await self.communities.count_active_members(community_id)
        return CommunitySnapshot(community=community, role=role, member_count=member_count)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create_community(
        self,
        actor: Actor,
        data: CommunityCreate,
        *,
        cover: MediaUpload | None = None,
        video: MediaUpload | None = None,
    ) -> Community:
        """Create a community with ``actor`` as its sole admin.

        Media is uploaded after the community exists. An upload failure is
        logged and leaves the community without that media.
        """
        if cover is not None and media_kind(cover.content_type) != "image":
            raise ValidationError("Cover must be an image")
        if video is not None and media_kind(video.content_type) != "video":
            raise ValidationError("Intro media must be a video")

        async with unit_of_work(self.session, "create community"):
            community = await self.communities.add(
                Community(**data.model_dump(), creator_id=actor.user_id, member_count=0)
            )
            await self.communities.add_membership(
                CommunityMember(
                    community_id=community.id,
                    user_id=actor.user_id,
                    role=ROLE_ADMIN,
                    status=STATUS_ACTIVE,
                )
            )
            await self.communities.refresh_member_count(community)
        logger.info("User %s created community %d", actor.user_id, community.id)

        media = {"cover_image": ("cover", cover), "video_url": ("intro", video)}
        urls: dict[str, str] = {}
        for column, (stem, upload) in media.items():
            if upload is not None:
                url = await self._upload_media(community, stem, upload)
                if url is not None:
                    urls[column] = url
        if urls:
            async with unit_of_work(self.session, "attach community media"):
                for column, url in urls.items():
                    setattr(community, column, url)
        return community

    async def join(self, actor: Actor, community_id: int) -> CommunityMember:
        """Join a public community as a member."""
        async with unit_of_work(self.session, "join community"):
            community = await self._lock_community(community_id)
            if community.is_private:
                raise PrivateCommunityError("Private communities can only be joined by invitation")

            membership = await self.communities.get_membership(community_id, actor.user_id)
            if membership is not None and membership.status == STATUS_ACTIVE:
                raise AlreadyMemberError("Already a member of this community")

            if membership is None:
                membership = await self.communities.add_membership(
                    CommunityMember(
                        community_id=community_id,
                        user_id=actor.user_id,
                        role=ROLE_MEMBER,
                        status=STATUS_ACTIVE,
                    )
                )
            else:
                membership.role = ROLE_MEMBER
                membership.status = STATUS_ACTIVE
                membership.joined_at = utcnow()
            await self.communities.refresh_member_count(community)
        logger.info("User %s joined community %d", actor.user_id, community_id)
        return membership

    async def leave(self, actor: Actor, community_id: int) -> LeaveResult:
        """Leave a community, handing it over first when ``actor`` is an admin."""
        steps: list[str] = ["load membership"]
        is_admin = False
        try:
            async with unit_of_work(self.session, "leave community"):
                community = await self._lock_community(community_id)
                membership = await self.get_membership(actor.user_id, community_id)
                if membership is None:
                    raise NotMemberError("Not a member of this community")
                is_admin = membership.role == ROLE_ADMIN
                if is_admin:
                    result = await self._leave_as_admin(community, membership, steps)
                else:
                    steps.append("remove membership")
                    await self.communities.mark_left(membership)
                    await self.communities.refresh_member_count(community)
                    result = LeaveResult(LeaveOutcome.LEFT)
        except BackendError as exc:
            if not is_admin or isinstance(exc, MembershipTransitionError):
                raise
            logger.error(
                "Admin %s leaving community %d aborted at step %r: %s",
                actor.user_id,
                community_id,
                steps[-1],
                exc,
            )
            raise MembershipTransitionError(
                f"Could not leave the community: {steps[-1]} failed",
                step=steps[-1],
                code=exc.code,
            ) from exc

        logger.info(
            "User %s left community %d (%s)",
            actor.user_id,
            community_id,
            result.outcome.value,
        )
        return result

    async def _leave_as_admin(
        self,
        community: Community,
        departing: CommunityMember,
        steps: list[str],
    ) -> LeaveResult:
        steps.append("query successors")
        others = await self.communities.list_active_members(
            community.id, exclude_user_id=departing.user_id
        )

        if not others:
            steps.append("delete community")
            await self.communities.delete_with_content(community)
            return LeaveResult(LeaveOutcome.COMMUNITY_DELETED)

        creator_stays = community.creator_id != departing.user_id and any(
            member.user_id == community.creator_id and member.role == ROLE_ADMIN
            for member in others
        )
        if creator_stays:
            # Another admin already owns the community; nothing to hand over.
            steps.append("remove departing admin")
            await self.communities.mark_left(departing)
            await self.communities.refresh_member_count(community)
            await self._ensure_owned(community, steps)
            return LeaveResult(LeaveOutcome.LEFT)

        successor = others[0]
        steps.append("promote successor")
        await self.communities.promote(successor)
        steps.append("reassign creator")
        await self.communities.set_creator(community, successor.user_id)
        steps.append("remove departing admin")
        await self.communities.mark_left(departing)
        await self.communities.refresh_member_count(community)
        await self._ensure_owned(community, steps)
        return LeaveResult(LeaveOutcome.OWNERSHIP_TRANSFERRED, new_admin_id=successor.user_id)

    async def delete_community(self, actor: Actor, community_id: int) -> bool:
        """Delete a community on behalf of its creator.

        Returns:
            True if this call removed the community, False if it was already gone.
        """
        async with unit_of_work(self.session, "delete community"):
            community = await self.communities.lock(community_id)
            if community is None:
                logger.info("Community %d already deleted", community_id)
                return False
            role = await self.get_role(actor.user_id, community_id)
            if community.creator_id != actor.user_id or role != ROLE_ADMIN:
                raise PermissionDeniedError("Only the community owner can delete it")
            await self.communities.delete_with_content(community)
        logger.info("User %s deleted community %d", actor.user_id, community_id)
        return True

    async def update_community(
        self,
        actor: Actor,
        community_id: int,
        data: CommunityUpdate,
        *,
        cover: MediaUpload | None = None,
    ) -> Community:
        """Edit name, description and cover of a community; admins only.

        A new cover is uploaded before the transaction and replaces the old
        one, which is removed from storage once the edit is committed.
        """
        await self.get_community(community_id)
        if await self.get_role(actor.user_id, community_id) != ROLE_ADMIN:
            raise PermissionDeniedError("Only admins can edit the community")
        if cover is not None and media_kind(cover.content_type) != "image":
            raise ValidationError("Cover must be an image")
        if cover is not None and self.blob_store is None:
            raise BackendError("No blob store configured", code="upload_failed")

        new_cover: str | None = None
        if cover is not None:
            path = object_path(str(community_id), "cover", cover.filename, cover.content_type)
            stored = await self.blob_store.upload(
                COMMUNITY_MEDIA_BUCKET, path, cover.data, cover.content_type
            )
            new_cover = stored.url

        try:
            async with unit_of_work(self.session, "update community"):
                community = await self._lock_community(community_id)
                if await self.get_role(actor.user_id, community_id) != ROLE_ADMIN:
                    raise PermissionDeniedError("Only admins can edit the community")
                old_cover = community.cover_image
                if data.name is not None:
                    community.name = data.name
                if "description" in data.model_fields_set:
                    community.description = data.description
                if new_cover is not None:
                    community.cover_image = new_cover
                elif data.remove_cover:
                    community.cover_image = None
        except CircleError:
            if new_cover is not None:
                await self._discard_media(new_cover)
            raise

        if old_cover and old_cover != community.cover_image:
            await self._discard_media(old_cover)
        logger.info("User %s updated community %d", actor.user_id, community_id)
        return community

    async def _lock_community(self, community_id: int) -> Community:
        community = await self.communities.lock(community_id)
        if community is None:
            raise NotFoundError("Community not found")
        return community

    async def _ensure_owned(self, community: Community, steps: list[str]) -> None:
        steps.append("verify ownership")
        if community.creator_id not in await self.communities.active_admin_ids(community.id):
            raise BackendError(
                f"Community {community.id} would be left without an owning admin",
                code="ownership_lost",
            )

    async def _discard_media(self, url: str) -> None:
        if self.blob_store is None:
            return
        path = self.blob_store.path_from_url(COMMUNITY_MEDIA_BUCKET, url)
        if path is None:
            logger.warning("Not removing %s: not a community media URL", url)
            return
        try:
            await self.blob_store.delete(COMMUNITY_MEDIA_BUCKET, path)
        except CircleError as exc:
            logger.warning("Removing old media %s failed: %s", url, exc)

    async def _upload_media(self, community: Community, stem: str, upload: MediaUpload) -> str | None:
        if self.blob_store is None:
            logger.warning("No blob store configured; dropping %s for community %d", stem, community.id)
            return None
        path = object_path(str(community.id), stem, upload.filename, upload.content_type)
        try:
            stored = await self.blob_store.upload(
                COMMUNITY_MEDIA_BUCKET, path, upload.data, upload.content_type
            )
        except CircleError as exc:
            logger.warning("Uploading %s for community %d failed: %s", stem, community.id, exc)
            return None
        return stored.url
