"""Which communities and posts a user may list or query."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import ColumnElement, and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from circlekit.core.security import Actor
from circlekit.errors import NotFoundError, ValidationError
from circlekit.models import Community, CommunityMember, Post
from circlekit.models.community import ROLE_ADMIN, STATUS_ACTIVE
from circlekit.models.post import POST_TYPE_COMMUNITY
from circlekit.repositories import CommunityRepository

SEARCH_MAX_LENGTH = 80
FEED_TABS = ("community", "announcements")


class CommunityVisibilityPolicy:
    """Visibility rules for communities and the feeds built on them.

    Private communities never appear in discovery or search; they are
    reachable only through an active membership.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.communities = CommunityRepository(session)

    async def discoverable(self, query: str | None = None) -> list[Community]:
        """Public communities, optionally filtered by a name substring."""
        clauses: list[ColumnElement[bool]] = [Community.is_private.is_(False)]
        term = (query or "").strip()[:SEARCH_MAX_LENGTH]
        if term:
            clauses.append(Community.name.ilike(f"%{_escape_like(term)}%", escape="\\"))
        return await self.communities.list_where(*clauses)

    async def my_communities(self, actor: Actor) -> list[Community]:
        """Every community the actor is an active member of, private ones included."""
        member_of = select(CommunityMember.community_id).where(
            CommunityMember.user_id == actor.user_id,
            CommunityMember.status == STATUS_ACTIVE,
        )
        return await self.communities.list_where(Community.id.in_(member_of))

    async def can_view(self, actor: Actor, community: Community) -> bool:
        if not community.is_private:
            return True
        membership = await self.communities.get_membership(community.id, actor.user_id)
        return membership is not None and membership.status == STATUS_ACTIVE

    async def active_community_ids(self, actor: Actor) -> list[int]:
        return await self.communities.active_community_ids(actor.user_id)

    async def member_counts(self, community_ids: Iterable[int]) -> dict[int, int]:
        return await self.communities.member_counts(community_ids)

    async def feed_clause(
        self,
        actor: Actor,
        community_id: int | None = None,
        tab: str = "community",
    ) -> ColumnElement[bool]:
        """Resolve the post filter for the home feed or a community tab.

        Raises:
            ValidationError: If ``tab`` is unknown.
            NotFoundError: If the community is missing or hidden from ``actor``.
        """
        if tab not in FEED_TABS:
            raise ValidationError(f"Unknown feed tab: {tab}")
        if community_id is None:
            return self.home_feed_clause(await self.active_community_ids(actor))
        community = await self.communities.get(community_id)
        if community is None or not await self.can_view(actor, community):
            raise NotFoundError("Community not found")
        if tab == "announcements":
            return self.announcements_clause(community_id)
        return self.community_feed_clause(community_id)

    @staticmethod
    def home_feed_clause(community_ids: Iterable[int]) -> ColumnElement[bool]:
        """General posts plus posts of the given communities."""
        ids = list(community_ids)
        if not ids:
            return Post.community_id.is_(None)
        return or_(Post.community_id.is_(None), Post.community_id.in_(ids))

    @staticmethod
    def community_feed_clause(community_id: int) -> ColumnElement[bool]:
        return and_(Post.community_id == community_id, Post.post_type == POST_TYPE_COMMUNITY)

    @staticmethod
    def announcements_clause(community_id: int) -> ColumnElement[bool]:
        """Community posts written by the community's active admins."""
        admins = select(CommunityMember.user_id).where(
            CommunityMember.community_id == community_id,
            CommunityMember.status == STATUS_ACTIVE,
            CommunityMember.role == ROLE_ADMIN,
        )
        return and_(
            CommunityVisibilityPolicy.community_feed_clause(community_id),
            Post.author_id.in_(admins),
        )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
