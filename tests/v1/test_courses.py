# tests/v1/test_courses.py
"""Tests for course endpoints."""

from fastapi import status

from circlekit.models.community import ROLE_ADMIN, ROLE_MEMBER

COURSE = {
    "title": "Getting started",
    "price": "19.99",
    "sections": [
        {
            "title": "Basics",
            "lessons": [
                {"title": "Welcome", "duration": 120, "video_url": "https://videos.test/1.mp4"},
                {"title": "Setup", "duration": 300},
            ],
        },
        {"title": "Next steps", "lessons": []},
    ],
}


async def test_admin_publishes_and_members_list_courses(
    client, alice, bob, make_community, auth_headers
) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})

    created = await client.post(
        f"/api/v1/communities/{community_id}/courses",
        json=COURSE,
        headers=auth_headers(alice),
    )

    assert created.status_code == status.HTTP_201_CREATED
    body = created.json()
    assert body["community_id"] == community_id
    assert body["creator_id"] == "alice"
    assert [section["title"] for section in body["sections"]] == ["Basics", "Next steps"]
    assert [lesson["order_index"] for lesson in body["sections"][0]["lessons"]] == [0, 1]

    listed = await client.get(f"/api/v1/communities/{community_id}/courses", headers=auth_headers(bob))
    assert listed.status_code == status.HTTP_200_OK
    assert [course["id"] for course in listed.json()] == [body["id"]]


async def test_course_permissions(client, alice, bob, carol, make_community, auth_headers) -> None:
    community_id = await make_community("Club", alice, {"alice": ROLE_ADMIN, "bob": ROLE_MEMBER})
    hidden_id = await make_community("Hidden", alice, is_private=True)

    by_member = await client.post(
        f"/api/v1/communities/{community_id}/courses",
        json=COURSE,
        headers=auth_headers(bob),
    )
    assert by_member.status_code == status.HTTP_403_FORBIDDEN

    hidden = await client.get(f"/api/v1/communities/{hidden_id}/courses", headers=auth_headers(carol))
    assert hidden.status_code == status.HTTP_404_NOT_FOUND

    untitled = await client.post(
        f"/api/v1/communities/{community_id}/courses",
        json={"title": "  "},
        headers=auth_headers(alice),
    )
    assert untitled.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
