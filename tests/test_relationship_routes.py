"""HTTP contract of the follow / unfollow / followers / following endpoints."""
import asyncio
import time
from datetime import datetime, timedelta

import httpx
import pytest

from conftest import auth_headers
from app.main import app
from app.services.follow_orchestrator import FollowOrchestrator


@pytest.fixture
async def users(make_user):
    for user_id in ("user1", "user2", "user3"):
        await make_user(user_id, f"{user_id}_name")


@pytest.mark.asyncio
async def test_follow_is_accepted_then_visible_in_followers(client, supervisor, users):
    resp = await client.post("/users/user2/follow", headers=auth_headers("user1"))

    assert resp.status_code == 202
    assert resp.json() == {
        "message": "Follow request accepted",
        "status": "processing",
        "followerId": "user1",
        "followingId": "user2",
    }

    await supervisor.drain(timeout=5)

    resp = await client.get("/users/user2/followers", params={"page": 1, "limit": 20})
    assert resp.status_code == 200
    body = resp.json()
    assert [u["id"] for u in body["followers"]] == ["user1"]
    assert body["followers"][0]["authUserId"] == "auth-user1"
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "hasMore": False}


@pytest.mark.asyncio
async def test_repeated_follow_publishes_once(client, supervisor, publisher, count_edges, users):
    for _ in range(2):
        resp = await client.post("/users/user2/follow", headers=auth_headers("user1"))
        assert resp.status_code == 202
        await supervisor.drain(timeout=5)

    assert await count_edges() == 1
    assert len(publisher.on("user-followed")) == 1


@pytest.mark.asyncio
async def test_unfollow_without_edge_is_accepted_and_dead_lettered(
    client, supervisor, publisher, count_edges, users
):
    resp = await client.post("/users/user3/unfollow", headers=auth_headers("user1"))

    assert resp.status_code == 202
    assert resp.json()["message"] == "Unfollow request accepted"

    await supervisor.drain(timeout=5)
    assert await count_edges() == 0
    [(_, payload, _)] = publisher.on("dead-letter-queue")
    assert payload["operation"] == "unfollow"
    assert payload["followerId"] == "user1"
    assert payload["followingId"] == "user3"


@pytest.mark.asyncio
async def test_follow_unfollow_round_trip(client, supervisor, users):
    await client.post("/users/user2/follow", headers=auth_headers("user1"))
    await supervisor.drain(timeout=5)
    following = (await client.get("/users/user1/following")).json()
    assert [u["id"] for u in following["following"]] == ["user2"]

    await client.post("/users/user2/unfollow", headers=auth_headers("user1"))
    await supervisor.drain(timeout=5)

    following = (await client.get("/users/user1/following")).json()
    followers = (await client.get("/users/user2/followers")).json()
    assert following["following"] == []
    assert followers["followers"] == []
    assert followers["pagination"]["total"] == 0


@pytest.mark.asyncio
async def test_response_does_not_wait_for_the_store(
    session_factory, cache, publisher, supervisor, wire, count_edges, users
):
    class SlowStoreOrchestrator(FollowOrchestrator):
        async def _load_participants(self, session, follower_id, following_id):
            await asyncio.sleep(1.5)
            return await super()._load_participants(session, follower_id, following_id)

    wire(SlowStoreOrchestrator(session_factory, cache, publisher, supervisor, transaction_timeout=5))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as slow_client:
        t0 = time.perf_counter()
        resp = await slow_client.post("/users/user2/follow", headers=auth_headers("user1"))
        elapsed = time.perf_counter() - t0

    assert resp.status_code == 202
    assert elapsed < 1.0
    assert supervisor.in_flight == 1
    assert await count_edges() == 0

    await supervisor.drain(timeout=5)
    assert await count_edges() == 1


@pytest.mark.asyncio
async def test_self_follow_is_rejected(client, supervisor, users):
    resp = await client.post("/users/user1/follow", headers=auth_headers("user1"))

    assert resp.status_code == 400
    assert resp.json() == {"error": "Cannot follow yourself", "statusCode": 400}
    assert supervisor.in_flight == 0


@pytest.mark.asyncio
async def test_token_without_user_id_is_a_validation_error(client, supervisor):
    resp = await client.post("/users/user2/follow", headers=auth_headers(None))

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing required user IDs"
    assert supervisor.in_flight == 0


@pytest.mark.asyncio
async def test_missing_and_invalid_tokens(client):
    resp = await client.post("/users/user2/unfollow")
    assert resp.status_code == 401

    resp = await client.post(
        "/users/user2/unfollow", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert resp.status_code == 403
    assert resp.json() == {"error": "Invalid token", "statusCode": 403}


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"page": 0}, {"limit": 0}, {"limit": 101}, {"page": "x"}])
async def test_bad_pagination_is_400(client, params):
    resp = await client.get("/users/user2/followers", params=params)

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Validation failed"
    assert body["details"]


@pytest.mark.asyncio
async def test_paging_following_list(client, make_user, make_edge):
    await make_user("reader")
    base = datetime(2024, 6, 1)
    for i in range(5):
        await make_user(f"author{i}")
        await make_edge("reader", f"author{i}", base + timedelta(hours=i))

    ids = []
    for page in (1, 2, 3):
        body = (await client.get("/users/reader/following", params={"page": page, "limit": 2})).json()
        ids.extend(u["id"] for u in body["following"])
        assert body["pagination"]["total"] == 5
        assert body["pagination"]["hasMore"] is (page < 3)

    assert ids == ["author4", "author3", "author2", "author1", "author0"]
