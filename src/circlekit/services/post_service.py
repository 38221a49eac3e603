"""Service-level helpers for creating and deleting posts."""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from circlekit.core.security import Actor
from circlekit.db.session import unit_of_work
from circlekit.errors import NotFoundError, PermissionDeniedError
from circlekit.models import Post
from circlekit.models.community import STATUS_ACTIVE
from circlekit.models.post import POST_TYPE_COMMUNITY, POST_TYPE_GENERAL
from circlekit.repositories import CommunityRepository, PostRepository
from circlekit.schemas.post import PostCreate
from circlekit.services.membership import MediaUpload
from circlekit.services.storage import POST_MEDIA_BUCKET, BlobStore, StoredObject, media_kind, object_path

logger = logging.getLogger(__name__)


async def create_post(session: AsyncSession, actor: Actor, data: PostCreate) -> Post:
    """Create a post in the general feed or in one of the actor's communities.

    Args:
        session: Session the post is written through.
        actor: Author of the post.
        data: Validated post payload.

    Returns:
        The persisted post.

    Raises:
        NotFoundError: If ``data.community_id`` names no community.
        PermissionDeniedError: If the actor is not an active member of it.
    """
    communities = CommunityRepository(session)
    async with unit_of_work(session, "create post"):
        post_type = POST_TYPE_GENERAL
        if data.community_id is not None:
            if await communities.get(data.community_id) is None:
                raise NotFoundError("Community not found")
            membership = await communities.get_membership(data.community_id, actor.user_id)
            if membership is None or membership.status != STATUS_ACTIVE:
                raise PermissionDeniedError("Join the community to post in it")
            post_type = POST_TYPE_COMMUNITY
        post = await PostRepository(session).create(
            Post(
                author_id=actor.user_id,
                community_id=data.community_id,
                post_type=post_type,
                content=data.content,
                media_url=data.media_url,
                media_type=data.media_type,
            )
        )
    logger.info("User %s created post %d", actor.user_id, post.id)
    return post


async def delete_post(session: AsyncSession, actor: Actor, post_id: int) -> None:
    """Delete a post; only its author may do so."""
    repo = PostRepository(session)
    async with unit_of_work(session, "delete post"):
        post = await repo.get_by_id(post_id)
        if post is None:
            raise NotFoundError("Post not found")
        if post.author_id != actor.user_id:
            raise PermissionDeniedError("Only the author can delete this post")
        await repo.delete(post)
    logger.info("User %s deleted post %d", actor.user_id, post_id)


async def upload_post_media(blob_store: BlobStore, actor: Actor, upload: MediaUpload) -> StoredObject:
    """Store media for a post that is about to be written.

    The returned URL goes into ``PostCreate.media_url``; the kind of media is
    ``media_kind(stored.content_type)``.
    """
    media_kind(upload.content_type)
    path = object_path(actor.user_id, "post", upload.filename, upload.content_type)
    return await blob_store.upload(POST_MEDIA_BUCKET, path, upload.data, upload.content_type)
