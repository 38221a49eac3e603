# src/circlekit/api/v1/endpoints/posts.py
"""Post, feed, like and comment endpoints for the circlekit API."""

from __future__ import annotations

from fastapi import APIRouter, File, Query, Response, UploadFile, status

from circlekit.api.v1.dependencies import BlobStoreDep, CurrentActorDep, SessionDep
from circlekit.core.security import Actor
from circlekit.core.settings import settings
from circlekit.db.session import unit_of_work
from circlekit.errors import NotFoundError, ValidationError
from circlekit.models import Post
from circlekit.repositories import PostRepository
from circlekit.schemas.post import (
    CommentCreate,
    CommentResponse,
    FeedItemResponse,
    LikeResponse,
    MediaUploadResponse,
    PostCreate,
)
from circlekit.services import post_service
from circlekit.services.feed_items import FeedComment, FeedItem
from circlekit.services.membership import MediaUpload
from circlekit.services.storage import media_kind
from circlekit.services.visibility import CommunityVisibilityPolicy

router = APIRouter(prefix="/posts", tags=["posts"])


async def _visible_post(repo: PostRepository, actor: Actor, post_id: int) -> Post:
    post = await repo.get_by_id(post_id)
    if post is None:
        raise NotFoundError("Post not found")
    if post.community_id is not None:
        policy = CommunityVisibilityPolicy(repo.session)
        community = await policy.communities.get(post.community_id)
        if community is None or not await policy.can_view(actor, community):
            raise NotFoundError("Post not found")
    return post


async def _feed_item(repo: PostRepository, actor: Actor, post_id: int) -> FeedItem:
    items = await repo.fetch_feed(actor.user_id, Post.id == post_id, 1)
    if not items:
        raise NotFoundError("Post not found")
    return items[0]


@router.get("/feed", response_model=list[FeedItemResponse])
async def get_feed(
    db: SessionDep,
    actor: CurrentActorDep,
    community_id: int | None = Query(None, description="Community feed instead of home feed"),
    tab: str = Query("community", description="Community tab: community or announcements"),
    limit: int = Query(50, ge=1, description="Maximum number of posts to return"),
) -> list[FeedItem]:
    """Return the home feed, or one tab of a community feed, newest first."""
    clause = await CommunityVisibilityPolicy(db).feed_clause(actor, community_id, tab)
    return await PostRepository(db).fetch_feed(
        actor.user_id, clause, min(limit, settings.feed_window_size)
    )


@router.post("/", response_model=FeedItemResponse, status_code=status.HTTP_201_CREATED)
async def create_post(
    post_data: PostCreate,
    actor: CurrentActorDep,
    db: SessionDep,
) -> FeedItem:
    """Create a post in the general feed or in a community the caller belongs to."""
    post = await post_service.create_post(db, actor, post_data)
    return await _feed_item(PostRepository(db), actor, post.id)


@router.post("/media", response_model=MediaUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_media(
    actor: CurrentActorDep,
    blob_store: BlobStoreDep,
    file: UploadFile = File(...),
) -> MediaUploadResponse:
    """Store an image or video to attach to a post."""
    content_type = (file.content_type or "").strip()
    if not content_type:
        raise ValidationError("Uploaded file must declare a content type")
    data = await file.read()
    stored = await post_service.upload_post_media(
        blob_store,
        actor,
        MediaUpload(data=data, content_type=content_type, filename=file.filename),
    )
    return MediaUploadResponse(
        url=stored.url,
        media_type=media_kind(stored.content_type),
        content_type=stored.content_type,
        size=stored.size,
    )


@router.get("/{post_id}", response_model=FeedItemResponse)
async def get_post(post_id: int, actor: CurrentActorDep, db: SessionDep) -> FeedItem:
    """Get a single post as seen by the caller."""
    repo = PostRepository(db)
    await _visible_post(repo, actor, post_id)
    return await _feed_item(repo, actor, post_id)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(post_id: int, actor: CurrentActorDep, db: SessionDep) -> Response:
    """Delete one of the caller's posts."""
    await post_service.delete_post(db, actor, post_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{post_id}/like", response_model=LikeResponse)
async def like_post(post_id: int, actor: CurrentActorDep, db: SessionDep) -> LikeResponse:
    """Like a post; liking it again changes nothing."""
    repo = PostRepository(db)
    async with unit_of_work(db, "like post"):
        post = await _visible_post(repo, actor, post_id)
        likes_count = await repo.like(post, actor.user_id)
    return LikeResponse(post_id=post_id, is_liked=True, likes_count=likes_count)


@router.delete("/{post_id}/like", response_model=LikeResponse)
async def unlike_post(post_id: int, actor: CurrentActorDep, db: SessionDep) -> LikeResponse:
    """Remove the caller's like, if any."""
    repo = PostRepository(db)
    async with unit_of_work(db, "unlike post"):
        post = await _visible_post(repo, actor, post_id)
        likes_count = await repo.unlike(post, actor.user_id)
    return LikeResponse(post_id=post_id, is_liked=False, likes_count=likes_count)


@router.get("/{post_id}/comments", response_model=list[CommentResponse])
async def list_comments(post_id: int, actor: CurrentActorDep, db: SessionDep) -> list[FeedComment]:
    """List a post's comments, oldest first."""
    repo = PostRepository(db)
    await _visible_post(repo, actor, post_id)
    item = await _feed_item(repo, actor, post_id)
    return list(item.comments)


@router.post(
    "/{post_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    post_id: int,
    comment_data: CommentCreate,
    actor: CurrentActorDep,
    db: SessionDep,
) -> FeedComment:
    """Add a comment to a post."""
    content = comment_data.content.strip()
    if not content:
        raise ValidationError("Comment cannot be empty")
    repo = PostRepository(db)
    async with unit_of_work(db, "add comment"):
        post = await _visible_post(repo, actor, post_id)
        comment = await repo.add_comment(post, actor.user_id, content)
    return FeedComment(
        id=str(comment.id),
        user_id=comment.user_id,
        content=comment.content,
        created_at=comment.created_at,
    )
