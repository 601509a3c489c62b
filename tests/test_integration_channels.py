"""Channel, subscription, like, history, comment and dashboard endpoints."""

import uuid

import pytest
from fastapi.testclient import TestClient

from vidtube import app as app_module
from vidtube.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app, base_url="https://testserver")


def _signup(client, username):
    registered = client.post(
        "/v1/users/register",
        json={
            "username": username,
            "email": f"{username}@example.com",
            "full_name": username.title(),
            "password": PASSWORD,
        },
    )
    assert registered.status_code == 201
    login = client.post("/v1/users/login", json={"username": username, "password": PASSWORD})
    data = login.json()["data"]
    return {
        "id": data["user"]["id"],
        "headers": {"Authorization": f"Bearer {data['access_token']}"},
    }


@pytest.fixture
def users(client):
    return {name: _signup(client, name) for name in ("alice", "bob", "carol")}


@pytest.fixture
def video(users):
    store = get_runtime().store
    return store.create_video(users["alice"]["id"], "intro", "intro.mp4", "intro.png", views=3)


class TestChannelProfile:
    def test_profile_reflects_subscriptions(self, client, users):
        alice, bob = users["alice"], users["bob"]

        before = client.get("/v1/users/c/alice", headers=bob["headers"])
        assert before.status_code == 200
        assert before.json()["data"]["subscribers_count"] == 0
        assert before.json()["data"]["is_subscribed"] is False

        toggled = client.post(f"/v1/subscriptions/c/{alice['id']}", headers=bob["headers"])
        assert toggled.json()["data"] == {"active": True}
        assert toggled.json()["message"] == "subscribed"

        after = client.get("/v1/users/c/ALICE", headers=bob["headers"]).json()["data"]
        assert after["subscribers_count"] == 1
        assert after["is_subscribed"] is True
        assert "password_hash" not in after

    def test_unknown_channel(self, client, users):
        response = client.get("/v1/users/c/nobody", headers=users["bob"]["headers"])
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_requires_auth(self, client, users):
        response = TestClient(app_module.app, base_url="https://testserver").get("/v1/users/c/alice")
        assert response.status_code == 401


class TestSubscriptions:
    def test_lists_follow_toggles(self, client, users):
        alice, bob, carol = users["alice"], users["bob"], users["carol"]
        client.post(f"/v1/subscriptions/c/{alice['id']}", headers=bob["headers"])
        client.post(f"/v1/subscriptions/c/{alice['id']}", headers=carol["headers"])

        subscribers = client.get(f"/v1/subscriptions/c/{alice['id']}").json()["data"]
        assert sorted(row["username"] for row in subscribers) == ["bob", "carol"]

        channels = client.get(f"/v1/subscriptions/u/{bob['id']}").json()["data"]
        assert [row["id"] for row in channels] == [alice["id"]]

        off = client.post(f"/v1/subscriptions/c/{alice['id']}", headers=bob["headers"])
        assert off.json()["data"] == {"active": False}
        assert off.json()["message"] == "unsubscribed"
        assert client.get(f"/v1/subscriptions/u/{bob['id']}").json()["data"] == []

    def test_self_subscription(self, client, users):
        alice = users["alice"]
        response = client.post(f"/v1/subscriptions/c/{alice['id']}", headers=alice["headers"])
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"

    def test_malformed_channel_id(self, client, users):
        response = client.post("/v1/subscriptions/c/not-a-uuid", headers=users["bob"]["headers"])
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"


class TestLikes:
    def test_video_like_round_trip(self, client, users, video):
        bob = users["bob"]

        liked = client.post(f"/v1/likes/toggle/v/{video.id}", headers=bob["headers"])
        assert liked.json()["data"] == {"active": True}

        rows = client.get("/v1/likes/videos", headers=bob["headers"]).json()["data"]
        assert [row["id"] for row in rows] == [video.id]

        unliked = client.post(f"/v1/likes/toggle/v/{video.id}", headers=bob["headers"])
        assert unliked.json()["data"] == {"active": False}
        assert client.get("/v1/likes/videos", headers=bob["headers"]).json()["data"] == []

    def test_comment_and_tweet_likes(self, client, users, video):
        store = get_runtime().store
        comment = store.create_comment(video.id, users["alice"]["id"], "pinned")
        tweet = store.create_tweet(users["alice"]["id"], "new upload")
        bob = users["bob"]

        assert client.post(f"/v1/likes/toggle/c/{comment.id}", headers=bob["headers"]).json()[
            "data"
        ] == {"active": True}
        assert client.post(f"/v1/likes/toggle/t/{tweet.id}", headers=bob["headers"]).json()[
            "data"
        ] == {"active": True}

    def test_missing_video(self, client, users):
        response = client.post(
            f"/v1/likes/toggle/v/{uuid.uuid4()}", headers=users["bob"]["headers"]
        )
        assert response.status_code == 404


class TestHistory:
    def test_view_is_counted_and_listed(self, client, users, video):
        bob = users["bob"]

        first = client.post(f"/v1/users/history/{video.id}", headers=bob["headers"])
        assert first.json()["data"] == {"video_id": video.id, "views": 4}
        client.post(f"/v1/users/history/{video.id}", headers=bob["headers"])

        history = client.get("/v1/users/history", headers=bob["headers"]).json()["data"]
        assert [row["id"] for row in history] == [video.id, video.id]
        assert history[0]["owner"]["username"] == "alice"

    def test_unknown_video(self, client, users):
        response = client.post(
            f"/v1/users/history/{uuid.uuid4()}", headers=users["bob"]["headers"]
        )
        assert response.status_code == 404


class TestComments:
    def test_pagination(self, client, users, video):
        store = get_runtime().store
        for text in ("one", "two", "three"):
            store.create_comment(video.id, users["bob"]["id"], text)

        first = client.get(f"/v1/comments/{video.id}", params={"page": "1", "limit": "2"})
        second = client.get(f"/v1/comments/{video.id}", params={"page": "2", "limit": "2"})

        assert [row["content"] for row in first.json()["data"]] == ["one", "two"]
        assert [row["content"] for row in second.json()["data"]] == ["three"]
        assert first.json()["data"][0]["owner"]["username"] == "bob"

    def test_no_comments(self, client, users, video):
        response = client.get(f"/v1/comments/{video.id}")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.parametrize("page", ["abc", "²"])
    def test_bad_page(self, client, users, video, page):
        response = client.get(f"/v1/comments/{video.id}", params={"page": page})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"


class TestDashboard:
    def test_stats_and_videos(self, client, users, video):
        alice, bob = users["alice"], users["bob"]
        store = get_runtime().store
        store.create_comment(video.id, bob["id"], "hi")
        client.post(f"/v1/likes/toggle/v/{video.id}", headers=bob["headers"])
        client.post(f"/v1/subscriptions/c/{alice['id']}", headers=bob["headers"])

        stats = client.get("/v1/dashboard/stats", headers=alice["headers"]).json()["data"]
        assert stats["total_videos"] == 1
        assert stats["total_views"] == 3
        assert stats["total_likes"] == 1
        assert stats["total_comments"] == 1
        assert stats["subscribers"] == 1

        videos = client.get("/v1/dashboard/videos", headers=alice["headers"]).json()["data"]
        assert [(row["id"], row["likes_count"], row["comments_count"]) for row in videos] == [
            (video.id, 1, 1)
        ]

    def test_empty_channel(self, client, users):
        stats = client.get("/v1/dashboard/stats", headers=users["carol"]["headers"]).json()["data"]
        assert stats["total_videos"] == 0
        assert stats["total_views"] == 0


class TestVideoFeed:
    def test_search_and_owner_filter(self, client, users, video):
        store = get_runtime().store
        store.create_video(users["bob"]["id"], "Bob's Intro", "b.mp4", "b.png")
        store.create_video(users["bob"]["id"], "other", "o.mp4", "o.png")

        response = client.get("/v1/videos", params={"query": "INTRO", "sort_by": "title", "sort_type": "asc"})
        assert response.status_code == 200
        rows = response.json()["data"]
        assert [row["title"] for row in rows] == ["Bob's Intro", "intro"]
        assert rows[1]["owner"]["username"] == "alice"

        mine = client.get("/v1/videos", params={"user_id": users["bob"]["id"], "limit": "1"})
        assert len(mine.json()["data"]) == 1

    def test_bad_sort(self, client, users):
        response = client.get("/v1/videos", params={"sort_by": "email"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"


class TestUserTweets:
    def test_owner_summary(self, client, users):
        get_runtime().store.create_tweet(users["alice"]["id"], "new upload soon")

        response = client.get(f"/v1/tweets/u/{users['alice']['id']}")

        assert response.status_code == 200
        (tweet,) = response.json()["data"]
        assert tweet["content"] == "new upload soon"
        assert tweet["owner"]["username"] == "alice"

    def test_malformed_user_id(self, client):
        response = client.get("/v1/tweets/u/alice")
        assert response.status_code == 400
