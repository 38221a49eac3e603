import logging

import pytest
from sqlalchemy.exc import OperationalError

from circlekit.core.security import Actor
from circlekit.errors import ValidationError
from circlekit.models.community import ROLE_ADMIN, ROLE_MEMBER
from circlekit.repositories import PostRepository
from circlekit.services.change_feed import ChangeFeedClient
from circlekit.services.membership import MembershipStateMachine
from circlekit.services.sync import CommunityContext, FeedContext, SyncContext, SyncOrchestrator


@pytest.fixture()
def orchestrator(session_factory, feed_client: ChangeFeedClient) -> SyncOrchestrator:
    return SyncOrchestrator(session_factory, feed_client)


async def test_mount_fetches_and_unmount_releases(
    orchestrator: SyncOrchestrator, feed_client: ChangeFeedClient, alice, bob, make_post
) -> None:
    post_id = await make_post(bob, "hello world")
    context = FeedContext(alice)

    await orchestrator.mount(context)

    assert [item.id for item in context.view] == [post_id]
    assert context.mounted
    assert feed_client.open_channels == len(context.resource_filters())

    await orchestrator.unmount(context)

    assert not context.mounted
    assert feed_client.open_channels == 0
    assert orchestrator.contexts == []


async def test_new_posts_arrive_through_change_feed(
    orchestrator: SyncOrchestrator, feed_client: ChangeFeedClient, alice, bob, make_post
) -> None:
    context = await orchestrator.mount(FeedContext(alice))
    assert context.view == []

    post_id = await make_post(bob, "fresh")
    await feed_client.wait_idle()

    assert [item.id for item in context.view] == [post_id]


async def test_own_like_is_reconciled_after_refetch(
    orchestrator: SyncOrchestrator, feed_client: ChangeFeedClient, alice, bob, make_post
) -> None:
    post_id = await make_post(bob)
    context = await orchestrator.mount(FeedContext(alice))

    await context.reconciler.toggle_like(alice, post_id)
    await feed_client.wait_idle()

    (item,) = context.view
    assert item.is_liked
    assert item.likes_count == 1
    assert context.reconciler.pending_edits() == []


async def test_set_community_filter_swaps_channels(
    orchestrator: SyncOrchestrator,
    feed_client: ChangeFeedClient,
    alice,
    bob,
    make_community,
    make_post,
) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    await make_post(bob, "general")
    community_post = await make_post(bob, "club only", community_id=community_id)
    context = await orchestrator.mount(FeedContext(alice))
    old_handles = list(context.handles)
    assert len(context.view) == 2

    await orchestrator.set_community_filter(context, community_id)

    assert all(handle.released for handle in old_handles)
    assert feed_client.open_channels == len(context.handles) == 3
    assert f"posts:community_id=eq.{community_id}" in [h.key for h in context.handles]
    assert [item.id for item in context.view] == [community_post]


async def test_hidden_community_feed_is_empty(orchestrator: SyncOrchestrator, alice, bob, make_community, make_post) -> None:
    private_id = await make_community("Private", alice, is_private=True)
    await make_post(alice, "members only", community_id=private_id)

    context = await orchestrator.mount(FeedContext(bob, community_id=private_id))

    assert context.view == []


def test_unknown_tab_is_rejected() -> None:
    with pytest.raises(ValidationError):
        FeedContext(Actor(user_id="alice"), tab="pinned")


async def test_community_context_tracks_members_and_deletion(
    orchestrator: SyncOrchestrator,
    feed_client: ChangeFeedClient,
    session_factory,
    alice,
    bob,
    make_community,
) -> None:
    community_id = await make_community("Club", alice)
    context = await orchestrator.mount(CommunityContext(alice, community_id))
    assert context.snapshot.role == ROLE_ADMIN
    assert context.snapshot.member_count == 1

    async with session_factory() as session:
        await MembershipStateMachine(session).join(bob, community_id)
    await feed_client.wait_idle()
    assert context.snapshot.member_count == 2

    async with session_factory() as session:
        assert await MembershipStateMachine(session).delete_community(alice, community_id)
    await feed_client.wait_idle()

    assert context.deleted
    assert context.snapshot is None


async def test_refetch_failure_keeps_previous_view(
    orchestrator: SyncOrchestrator,
    alice,
    bob,
    make_post,
    mocker,
    caplog: pytest.LogCaptureFixture,
) -> None:
    await make_post(bob)
    context = await orchestrator.mount(FeedContext(alice))
    before = context.view
    mocker.patch.object(
        PostRepository,
        "fetch_feed",
        side_effect=OperationalError("SELECT posts", {}, Exception("db down")),
    )

    with caplog.at_level(logging.WARNING, logger="circlekit.services.sync"):
        applied = await orchestrator.refresh(context)

    assert applied is False
    assert context.view == before
    assert "keeping previous view" in caplog.text


async def test_shutdown_unmounts_everything(
    orchestrator: SyncOrchestrator, feed_client: ChangeFeedClient, alice, make_community
) -> None:
    community_id = await make_community("Club", alice)
    await orchestrator.mount(FeedContext(alice))
    await orchestrator.mount(CommunityContext(alice, community_id))
    assert feed_client.open_channels == 6

    await orchestrator.shutdown()

    assert feed_client.open_channels == 0
    assert orchestrator.contexts == []


def test_sync_context_is_abstract() -> None:
    with pytest.raises(TypeError):
        SyncContext(Actor(user_id="alice"))
