from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from circlekit.errors import (
    AlreadyMemberError,
    BackendError,
    MembershipTransitionError,
    NotFoundError,
    NotMemberError,
    PermissionDeniedError,
    PrivateCommunityError,
    ValidationError,
)
from circlekit.models import (
    Comment,
    Community,
    CommunityMember,
    Course,
    CourseLesson,
    CourseSection,
    Post,
    PostLike,
)
from circlekit.models.community import ROLE_ADMIN, ROLE_MEMBER, STATUS_ACTIVE, STATUS_LEFT
from circlekit.repositories import CommunityRepository
from circlekit.schemas.community import CommunityCreate, CommunityUpdate
from circlekit.services.membership import LeaveOutcome, MediaUpload, MembershipStateMachine
from circlekit.services.storage import BlobStore


async def fetch_community(session_factory, community_id: int) -> Community | None:
    async with session_factory() as session:
        return await session.get(Community, community_id)


async def fetch_membership(session_factory, community_id: int, user_id: str) -> CommunityMember | None:
    async with session_factory() as session:
        return await session.get(CommunityMember, (community_id, user_id))


async def assert_admin_invariant(session_factory) -> None:
    """Every existing community has an active admin who is its creator."""
    async with session_factory() as session:
        communities = (await session.scalars(select(Community))).all()
        for community in communities:
            admins = (
                await session.scalars(
                    select(CommunityMember.user_id).where(
                        CommunityMember.community_id == community.id,
                        CommunityMember.status == STATUS_ACTIVE,
                        CommunityMember.role == ROLE_ADMIN,
                    )
                )
            ).all()
            assert admins, f"community {community.id} has no active admin"
            assert community.creator_id in admins


async def test_create_community_makes_creator_sole_admin(db_session, session_factory, alice) -> None:
    machine = MembershipStateMachine(db_session)

    community = await machine.create_community(alice, CommunityCreate(name="  Alpha  "))

    assert community.name == "Alpha"
    assert community.creator_id == "alice"
    assert community.member_count == 1
    membership = await fetch_membership(session_factory, community.id, "alice")
    assert membership.role == ROLE_ADMIN
    assert membership.status == STATUS_ACTIVE
    await assert_admin_invariant(session_factory)


async def test_create_paid_community_with_cover(db_session, session_factory, alice, blob_store) -> None:
    machine = MembershipStateMachine(db_session, blob_store)
    data = CommunityCreate(
        name="Masterclass",
        is_paid=True,
        price=Decimal("49.00"),
        discounted_price=Decimal("29.00"),
        seats_left=10,
        bonus_1="Workbook",
    )

    community = await machine.create_community(
        alice,
        data,
        cover=MediaUpload(data=b"\x89PNG", content_type="image/png", filename="cover.png"),
    )

    stored = await fetch_community(session_factory, community.id)
    assert stored.is_paid
    assert stored.seats_left == 10
    assert stored.bonus_1 == "Workbook"
    assert stored.cover_image.startswith(f"http://cdn.test/media/community-media/{community.id}/cover-")
    assert stored.cover_image.endswith(".png")
    relative = stored.cover_image.removeprefix("http://cdn.test/media/")
    assert (blob_store.root / relative).read_bytes() == b"\x89PNG"


async def test_cover_upload_failure_keeps_community(db_session, session_factory, alice, mocker) -> None:
    store = mocker.AsyncMock(spec=BlobStore)
    store.upload.side_effect = BackendError("bucket offline", code="upload_failed")
    machine = MembershipStateMachine(db_session, store)

    community = await machine.create_community(
        alice,
        CommunityCreate(name="Gamma"),
        cover=MediaUpload(data=b"img", content_type="image/jpeg"),
    )

    stored = await fetch_community(session_factory, community.id)
    assert stored is not None
    assert stored.cover_image is None
    store.upload.assert_awaited_once()


async def test_create_rejects_wrong_cover_type_before_writing(db_session, session_factory, alice) -> None:
    machine = MembershipStateMachine(db_session)

    with pytest.raises(ValidationError):
        await machine.create_community(
            alice,
            CommunityCreate(name="Delta"),
            cover=MediaUpload(data=b"clip", content_type="video/mp4"),
        )

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(Community)) == 0


async def test_join_rules(db_session, alice, bob, make_community) -> None:
    public_id = await make_community("Public", alice)
    private_id = await make_community("Private", alice, is_private=True)
    machine = MembershipStateMachine(db_session)

    membership = await machine.join(bob, public_id)
    assert membership.role == ROLE_MEMBER
    assert (await machine.get_community(public_id)).member_count == 2

    with pytest.raises(AlreadyMemberError):
        await machine.join(bob, public_id)
    with pytest.raises(PrivateCommunityError):
        await machine.join(bob, private_id)
    with pytest.raises(NotFoundError):
        await machine.join(bob, 9999)


async def test_member_leave_and_rejoin(db_session, session_factory, alice, bob, make_community) -> None:
    community_id = await make_community("Public", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    machine = MembershipStateMachine(db_session)

    result = await machine.leave(bob, community_id)

    assert result.outcome is LeaveOutcome.LEFT
    assert (await fetch_membership(session_factory, community_id, "bob")).status == STATUS_LEFT
    assert (await fetch_community(session_factory, community_id)).member_count == 1
    assert await machine.get_role("bob", community_id) is None

    await machine.join(bob, community_id)
    rejoined = await fetch_membership(session_factory, community_id, "bob")
    assert rejoined.status == STATUS_ACTIVE
    assert rejoined.role == ROLE_MEMBER
    assert (await fetch_community(session_factory, community_id)).member_count == 2


async def test_leave_requires_active_membership(db_session, alice, bob, make_community) -> None:
    community_id = await make_community("Public", alice)
    machine = MembershipStateMachine(db_session)

    with pytest.raises(NotMemberError):
        await machine.leave(bob, community_id)


async def test_alpha_scenario(db_session, session_factory, alice, bob) -> None:
    machine = MembershipStateMachine(db_session)
    alpha = await machine.create_community(alice, CommunityCreate(name="Alpha"))
    assert alpha.member_count == 1

    await machine.join(bob, alpha.id)
    assert (await fetch_community(session_factory, alpha.id)).member_count == 2
    assert await machine.get_role("bob", alpha.id) == ROLE_MEMBER
    await assert_admin_invariant(session_factory)

    result = await machine.leave(alice, alpha.id)

    assert result.outcome is LeaveOutcome.OWNERSHIP_TRANSFERRED
    assert result.new_admin_id == "bob"
    stored = await fetch_community(session_factory, alpha.id)
    assert stored.creator_id == "bob"
    assert stored.member_count == 1
    assert await machine.get_role("bob", alpha.id) == ROLE_ADMIN
    assert await machine.get_membership("alice", alpha.id) is None
    await assert_admin_invariant(session_factory)


async def test_admin_leave_promotes_earliest_member(
    db_session, session_factory, alice, bob, carol, make_community
) -> None:
    community_id = await make_community(
        "Club",
        alice,
        {"alice": ROLE_ADMIN, "carol": ROLE_MEMBER, "bob": ROLE_MEMBER},
    )
    machine = MembershipStateMachine(db_session)

    result = await machine.leave(alice, community_id)

    assert result.new_admin_id == "carol"
    members = await machine.list_members(community_id)
    assert [(m.user_id, m.role) for m in members] == [("carol", ROLE_ADMIN), ("bob", ROLE_MEMBER)]
    stored = await fetch_community(session_factory, community_id)
    assert stored.creator_id == "carol"
    assert stored.member_count == 2
    assert (await fetch_membership(session_factory, community_id, "alice")).status == STATUS_LEFT
    await assert_admin_invariant(session_factory)


async def test_second_admin_leaving_keeps_creator(
    db_session, session_factory, alice, bob, carol, make_community
) -> None:
    community_id = await make_community(
        "Club",
        alice,
        {"alice": ROLE_ADMIN, "bob": ROLE_ADMIN, "carol": ROLE_MEMBER},
    )
    machine = MembershipStateMachine(db_session)

    result = await machine.leave(bob, community_id)

    assert result.outcome is LeaveOutcome.LEFT
    stored = await fetch_community(session_factory, community_id)
    assert stored.creator_id == "alice"
    assert await machine.get_role("carol", community_id) == ROLE_MEMBER
    await assert_admin_invariant(session_factory)


async def test_beta_scenario_deletes_community_and_content(
    db_session, session_factory, alice, bob, make_community, make_post
) -> None:
    beta_id = await make_community("Beta", alice)
    post_id = await make_post(alice, "only post", community_id=beta_id, comments=[("bob", "hi")])
    async with session_factory() as session:
        session.add(PostLike(post_id=post_id, user_id="bob"))
        course = Course(community_id=beta_id, creator_id="alice", title="Intro")
        session.add(course)
        await session.flush()
        section = CourseSection(course_id=course.id, title="Week 1")
        session.add(section)
        await session.flush()
        session.add(CourseLesson(section_id=section.id, title="Welcome", duration=60))
        await session.commit()
    machine = MembershipStateMachine(db_session)

    result = await machine.leave(alice, beta_id)

    assert result.outcome is LeaveOutcome.COMMUNITY_DELETED
    with pytest.raises(NotFoundError):
        await machine.get_community(beta_id)
    async with session_factory() as session:
        for model in (Post, Comment, PostLike, CommunityMember, Course, CourseSection, CourseLesson):
            assert await session.scalar(select(func.count()).select_from(model)) == 0

    # A second delete of the same community is not an error.
    assert await machine.delete_community(alice, beta_id) is False
    await assert_admin_invariant(session_factory)


async def test_failed_removal_rolls_back_transfer(
    db_session, session_factory, alice, bob, make_community, mocker
) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    mocker.patch.object(
        CommunityRepository,
        "mark_left",
        side_effect=OperationalError("UPDATE community_members", {}, Exception("db down")),
    )
    machine = MembershipStateMachine(db_session)

    with pytest.raises(MembershipTransitionError) as exc_info:
        await machine.leave(alice, community_id)

    assert exc_info.value.step == "remove departing admin"
    assert exc_info.value.code == "backend_unavailable"
    assert (await fetch_membership(session_factory, community_id, "alice")).role == ROLE_ADMIN
    assert (await fetch_membership(session_factory, community_id, "alice")).status == STATUS_ACTIVE
    assert (await fetch_membership(session_factory, community_id, "bob")).role == ROLE_MEMBER
    assert (await fetch_community(session_factory, community_id)).creator_id == "alice"
    await assert_admin_invariant(session_factory)


async def test_failed_promotion_never_removes_admin(
    db_session, session_factory, alice, bob, make_community, mocker
) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    mark_left = mocker.patch.object(CommunityRepository, "mark_left")
    mocker.patch.object(
        CommunityRepository,
        "promote",
        side_effect=OperationalError("UPDATE community_members", {}, Exception("db down")),
    )
    machine = MembershipStateMachine(db_session)

    with pytest.raises(MembershipTransitionError) as exc_info:
        await machine.leave(alice, community_id)

    assert exc_info.value.step == "promote successor"
    mark_left.assert_not_called()
    assert (await fetch_membership(session_factory, community_id, "alice")).status == STATUS_ACTIVE


async def test_delete_community_permissions(db_session, alice, bob, make_community) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    machine = MembershipStateMachine(db_session)

    with pytest.raises(PermissionDeniedError):
        await machine.delete_community(bob, community_id)

    assert await machine.delete_community(alice, community_id) is True
    assert await machine.delete_community(alice, community_id) is False


async def test_describe_reports_role_and_count(db_session, alice, bob, make_community) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    machine = MembershipStateMachine(db_session)

    snapshot = await machine.describe(bob, community_id)

    assert snapshot.is_member
    assert snapshot.role == ROLE_MEMBER
    assert snapshot.member_count == 2
    assert snapshot.community.name == "Club"


async def test_transfer_that_loses_the_owner_is_rolled_back(
    db_session, session_factory, alice, bob, make_community, mocker
) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    # Creator reassignment silently does nothing, so the departing admin stays creator.
    mocker.patch.object(CommunityRepository, "set_creator")
    machine = MembershipStateMachine(db_session)

    with pytest.raises(MembershipTransitionError) as exc_info:
        await machine.leave(alice, community_id)

    assert exc_info.value.step == "verify ownership"
    assert exc_info.value.code == "ownership_lost"
    assert (await fetch_membership(session_factory, community_id, "alice")).status == STATUS_ACTIVE
    assert (await fetch_membership(session_factory, community_id, "bob")).role == ROLE_MEMBER
    await assert_admin_invariant(session_factory)


async def test_join_of_missing_community_fails(db_session, alice) -> None:
    machine = MembershipStateMachine(db_session)

    with pytest.raises(NotFoundError):
        await machine.join(alice, 404)


async def add_cover(session_factory, blob_store, community_id: int) -> str:
    stored = await blob_store.upload("community-media", f"{community_id}/cover-old.jpg", b"old", "image/jpeg")
    async with session_factory() as session:
        community = await session.get(Community, community_id)
        community.cover_image = stored.url
        await session.commit()
    return stored.url


async def test_admin_updates_community_and_replaces_cover(
    db_session, session_factory, alice, bob, make_community, blob_store
) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    await add_cover(session_factory, blob_store, community_id)
    old_file = blob_store.root / "community-media" / str(community_id) / "cover-old.jpg"
    machine = MembershipStateMachine(db_session, blob_store)

    community = await machine.update_community(
        alice,
        community_id,
        CommunityUpdate(name="  Club Two ", description="   "),
        cover=MediaUpload(data=b"png", content_type="image/png", filename="new.png"),
    )

    assert community.name == "Club Two"
    assert community.description is None
    assert community.cover_image.startswith(f"http://cdn.test/media/community-media/{community_id}/cover-")
    assert community.cover_image.endswith(".png")
    assert not old_file.exists()
    stored = await fetch_community(session_factory, community_id)
    assert stored.name == "Club Two"
    assert stored.cover_image == community.cover_image
    assert stored.member_count == 2


async def test_update_keeps_omitted_fields(
    db_session, session_factory, alice, make_community, blob_store
) -> None:
    community_id = await make_community("Club", alice)
    async with session_factory() as session:
        (await session.get(Community, community_id)).description = "Weekly runs"
        await session.commit()
    cover_url = await add_cover(session_factory, blob_store, community_id)
    machine = MembershipStateMachine(db_session, blob_store)

    await machine.update_community(alice, community_id, CommunityUpdate(name="Runners"))

    stored = await fetch_community(session_factory, community_id)
    assert stored.name == "Runners"
    assert stored.description == "Weekly runs"
    assert stored.cover_image == cover_url


async def test_update_can_remove_cover(
    db_session, session_factory, alice, make_community, blob_store
) -> None:
    community_id = await make_community("Club", alice)
    await add_cover(session_factory, blob_store, community_id)
    machine = MembershipStateMachine(db_session, blob_store)

    community = await machine.update_community(alice, community_id, CommunityUpdate(remove_cover=True))

    assert community.cover_image is None
    assert not (blob_store.root / "community-media" / str(community_id) / "cover-old.jpg").exists()


async def test_update_requires_admin(db_session, alice, bob, make_community, blob_store) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    machine = MembershipStateMachine(db_session, blob_store)

    with pytest.raises(PermissionDeniedError):
        await machine.update_community(
            bob,
            community_id,
            CommunityUpdate(name="Mine now"),
            cover=MediaUpload(data=b"png", content_type="image/png"),
        )
    with pytest.raises(NotFoundError):
        await machine.update_community(alice, 404, CommunityUpdate(name="Ghost"))
    with pytest.raises(ValidationError):
        await machine.update_community(
            alice,
            community_id,
            CommunityUpdate(),
            cover=MediaUpload(data=b"mp4", content_type="video/mp4"),
        )

    assert not (blob_store.root / "community-media").exists()


async def test_failed_update_discards_new_cover(
    db_session, session_factory, alice, make_community, blob_store, mocker
) -> None:
    community_id = await make_community("Club", alice)
    mocker.patch.object(
        CommunityRepository,
        "lock",
        side_effect=OperationalError("UPDATE communities", {}, Exception("db down")),
    )
    machine = MembershipStateMachine(db_session, blob_store)

    with pytest.raises(BackendError):
        await machine.update_community(
            alice,
            community_id,
            CommunityUpdate(name="Renamed"),
            cover=MediaUpload(data=b"png", content_type="image/png"),
        )

    assert list((blob_store.root / "community-media" / str(community_id)).iterdir()) == []
    assert (await fetch_community(session_factory, community_id)).name == "Club"
