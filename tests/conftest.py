# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-circlekit")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from circlekit.api.v1.dependencies import get_blob_store
from circlekit.core.security import Actor, create_access_token
from circlekit.db.session import Base, make_session_factory
from circlekit.db.session import get_db as app_get_session
from circlekit.db.time import utcnow
from circlekit.main import app as fastapi_app
from circlekit.models import Comment, Community, CommunityMember, Post, Profile
from circlekit.models.community import ROLE_ADMIN, STATUS_ACTIVE
from circlekit.models.post import POST_TYPE_COMMUNITY, POST_TYPE_GENERAL
from circlekit.services.change_feed import ChangeFeedClient, ChangeFeedHub
from circlekit.services.storage import LocalBlobStore

TEST_DB_URL = "sqlite+aiosqlite://"


@pytest.fixture()
def database_url() -> str:
    """In-memory by default; override with a file URL to get separate connections."""
    return TEST_DB_URL


@pytest.fixture()
async def engine(database_url: str) -> AsyncIterator[AsyncEngine]:
    if database_url == TEST_DB_URL:
        engine = create_async_engine(database_url, poolclass=StaticPool)
    else:
        engine = create_async_engine(database_url)

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def hub() -> ChangeFeedHub:
    return ChangeFeedHub()


@pytest.fixture()
def session_factory(engine: AsyncEngine, hub: ChangeFeedHub) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine, hub)


@pytest.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def feed_client(hub: ChangeFeedHub) -> AsyncIterator[ChangeFeedClient]:
    client = ChangeFeedClient(hub)
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture()
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(root=tmp_path / "media", base_url="http://cdn.test/media")


@pytest.fixture()
def app(
    session_factory: async_sessionmaker[AsyncSession],
    blob_store: LocalBlobStore,
) -> Iterator[FastAPI]:
    async def _get_session_override() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[app_get_session] = _get_session_override
    fastapi_app.dependency_overrides[get_blob_store] = lambda: blob_store
    try:
        yield fastapi_app
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client


ProfileFactory = Callable[..., Awaitable[Actor]]


@pytest.fixture()
def make_profile(session_factory: async_sessionmaker[AsyncSession]) -> ProfileFactory:
    """Persist a profile and return the matching actor."""

    async def _make(user_id: str, full_name: str | None = None) -> Actor:
        async with session_factory() as session:
            session.add(Profile(id=user_id, username=user_id, full_name=full_name or user_id.title()))
            await session.commit()
        return Actor(user_id=user_id)

    return _make


@pytest.fixture()
async def alice(make_profile: ProfileFactory) -> Actor:
    return await make_profile("alice")


@pytest.fixture()
async def bob(make_profile: ProfileFactory) -> Actor:
    return await make_profile("bob")


@pytest.fixture()
async def carol(make_profile: ProfileFactory) -> Actor:
    return await make_profile("carol")


@pytest.fixture()
def auth_headers() -> Callable[[Actor], dict[str, str]]:
    """Build bearer headers for an actor."""

    def _headers(actor: Actor) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(actor.user_id)}"}

    return _headers


CommunityFactory = Callable[..., Awaitable[int]]


@pytest.fixture()
def make_community(session_factory: async_sessionmaker[AsyncSession]) -> CommunityFactory:
    """Insert a community with explicit members, bypassing the state machine.

    ``members`` maps user ids to roles; join times follow the mapping order,
    one minute apart, so successor order is predictable.
    """

    async def _make(
        name: str,
        creator: Actor,
        members: dict[str, str] | None = None,
        *,
        is_private: bool = False,
    ) -> int:
        roster = members or {creator.user_id: ROLE_ADMIN}
        start = utcnow() - timedelta(hours=1)
        async with session_factory() as session:
            community = Community(
                name=name,
                creator_id=creator.user_id,
                is_private=is_private,
                member_count=len(roster),
            )
            session.add(community)
            await session.flush()
            for offset, (user_id, role) in enumerate(roster.items()):
                session.add(
                    CommunityMember(
                        community_id=community.id,
                        user_id=user_id,
                        role=role,
                        status=STATUS_ACTIVE,
                        joined_at=start + timedelta(minutes=offset),
                    )
                )
            await session.commit()
            return community.id

    return _make


PostFactory = Callable[..., Awaitable[int]]


@pytest.fixture()
def make_post(session_factory: async_sessionmaker[AsyncSession]) -> PostFactory:
    async def _make(
        author: Actor,
        content: str = "hello",
        *,
        community_id: int | None = None,
        created_at: datetime | None = None,
        comments: list[tuple[str, str]] | None = None,
    ) -> int:
        async with session_factory() as session:
            post = Post(
                author_id=author.user_id,
                community_id=community_id,
                post_type=POST_TYPE_GENERAL if community_id is None else POST_TYPE_COMMUNITY,
                content=content,
                created_at=created_at or utcnow(),
                comments_count=len(comments or []),
            )
            session.add(post)
            await session.flush()
            for user_id, text in comments or []:
                session.add(Comment(post_id=post.id, user_id=user_id, content=text))
            await session.commit()
            return post.id

    return _make

