"""HTTP API served by ApiServer, exercised over a real socket."""

from urllib.parse import urlparse

import aiohttp
import pytest
import pytest_asyncio
from sqlalchemy import update

from karatapp.models.enums import UserRole
from karatapp.models.models import UserRoleAssignment

PASSWORD = "Kiai#Dojo42"


@pytest_asyncio.fixture
async def http():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest_asyncio.fixture
async def token(http, api_url) -> str:
    async with http.post(
        f"{api_url}/api/auth/sign-up",
        json={"email": "deshi@example.com", "password": PASSWORD, "full_name": "Deshi"},
    ) as resp:
        assert resp.status == 201
        body = await resp.json()
    return body["access_token"]


@pytest_asyncio.fixture
async def host_token(http, api_url, container) -> str:
    async with http.post(
        f"{api_url}/api/auth/sign-up",
        json={"email": "sensei@example.com", "password": PASSWORD, "full_name": "Sensei"},
    ) as resp:
        body = await resp.json()
    async with container.async_sessionmaker() as session:
        await session.execute(
            update(UserRoleAssignment)
            .where(UserRoleAssignment.user_id == body["user"]["id"])
            .values(role=UserRole.HOST.value)
        )
        await session.commit()
    return body["access_token"]


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_health(http, api_url):
    async with http.get(f"{api_url}/health") as resp:
        assert resp.status == 200
        assert await resp.json() == {"ok": True, "app": "Karatapp"}


@pytest.mark.asyncio
async def test_sign_up_and_me(http, api_url, token):
    async with http.get(f"{api_url}/api/me", headers=_auth(token)) as resp:
        assert resp.status == 200
        body = await resp.json()

    assert body["user"]["email"] == "deshi@example.com"
    assert body["user"]["user_metadata"]["full_name"] == "Deshi"
    assert body["role"] == "user"
    assert body["mute"] is None

    async with http.post(
        f"{api_url}/api/auth/sign-in", json={"email": "deshi@example.com", "password": "wrong-pass"}
    ) as resp:
        assert resp.status == 401
        assert await resp.json() == {"ok": False, "error": "Invalid email or password"}


@pytest.mark.asyncio
async def test_errors_are_mapped_to_status_codes(http, api_url):
    async with http.get(f"{api_url}/api/me") as resp:
        assert resp.status == 401
        assert await resp.json() == {"ok": False, "error": "User not authenticated"}

    async with http.get(f"{api_url}/api/forum/posts/999") as resp:
        assert resp.status == 404

    async with http.get(f"{api_url}/api/forum/posts", params={"limit": "many"}) as resp:
        assert resp.status == 400
        assert "limit" in (await resp.json())["error"]

    async with http.post(f"{api_url}/api/auth/sign-in", json=["not", "an", "object"]) as resp:
        assert resp.status == 400


@pytest.mark.asyncio
async def test_forum_post_flow(http, api_url, token):
    async with http.post(
        f"{api_url}/api/forum/posts",
        json={"title": "Gasshuku", "content": "Who joins?", "category": "events"},
        headers=_auth(token),
    ) as resp:
        assert resp.status == 201
        post = await resp.json()
    assert post["author_name"] == "Deshi"

    async with http.post(
        f"{api_url}/api/forum/posts/{post['id']}/comments", json={"content": "Me!"}, headers=_auth(token)
    ) as resp:
        assert resp.status == 201

    async with http.get(f"{api_url}/api/forum/posts/{post['id']}") as resp:
        bundle = await resp.json()
    assert bundle["post"]["comment_count"] == 1
    assert [c["content"] for c in bundle["comments"]] == ["Me!"]

    async with http.get(f"{api_url}/api/forum/posts", params={"category": "general"}) as resp:
        assert await resp.json() == []


@pytest.mark.asyncio
async def test_anonymous_post_is_rejected(http, api_url):
    async with http.post(f"{api_url}/api/forum/posts", json={"title": "t", "content": "c"}) as resp:
        assert resp.status == 401


@pytest.mark.asyncio
async def test_only_hosts_manage_katas_and_ohyos(http, api_url, host_token, token):
    async with http.post(f"{api_url}/api/ohyos", json={"name": "Ohyo 1"}, headers=_auth(token)) as resp:
        assert resp.status == 403
        assert (await resp.json())["error"] == "Only hosts can manage katas and ohyos"
    async with http.get(f"{api_url}/api/ohyos") as resp:
        assert await resp.json() == []

    async with http.post(f"{api_url}/api/ohyos", json={"name": "Ohyo 1"}, headers=_auth(host_token)) as resp:
        assert resp.status == 201
        ohyo = await resp.json()

    async with http.delete(f"{api_url}/api/ohyos/{ohyo['id']}", headers=_auth(token)) as resp:
        assert resp.status == 403
    async with http.delete(f"{api_url}/api/ohyos/{ohyo['id']}", headers=_auth(host_token)) as resp:
        assert resp.status == 200


@pytest.mark.asyncio
async def test_kata_with_images_and_likes(http, api_url, host_token, token):
    form = aiohttp.FormData()
    form.add_field("name", "Heian Shodan")
    form.add_field("style", "Basis")
    form.add_field("video_urls", '["https://youtu.be/abc"]')
    form.add_field("images", b"jpeg-bytes", filename="step1.jpg", content_type="image/jpeg")

    async with http.post(f"{api_url}/api/katas", data=form, headers=_auth(host_token)) as resp:
        assert resp.status == 201
        kata = await resp.json()
    assert kata["video_urls"] == ["https://youtu.be/abc"]
    assert len(kata["image_urls"]) == 1

    async with http.get(f"{api_url}/api/katas", params={"q": "heian"}) as resp:
        assert [k["name"] for k in await resp.json()] == ["Heian Shodan"]

    async with http.get(f"{api_url}/api/katas/{kata['id']}") as resp:
        detail = await resp.json()
    assert len(detail["images"]) == 1

    stored = urlparse(kata["image_urls"][0])
    async with http.get(f"{api_url}{stored.path}") as resp:
        assert resp.status == 200
        assert await resp.read() == b"jpeg-bytes"

    async with http.post(f"{api_url}/api/likes/kata/{kata['id']}", headers=_auth(token)) as resp:
        assert await resp.json() == {"liked": True}
    async with http.get(f"{api_url}/api/likes/kata/{kata['id']}", headers=_auth(token)) as resp:
        likes = await resp.json()
    assert likes["count"] == 1
    assert likes["liked"] is True


@pytest.mark.asyncio
async def test_signed_downloads(http, api_url, container):
    store = container.object_store
    await store.upload("forum_images", "posts/1/a.png", b"png")
    signed = urlparse(await store.create_signed_url("forum_images", "posts/1/a.png", 60))

    async with http.get(f"{api_url}{signed.path}?{signed.query}") as resp:
        assert resp.status == 200
        assert resp.content_type == "image/png"

    async with http.get(f"{api_url}{signed.path}?token=forged&expires=9999999999") as resp:
        assert resp.status == 403

    # forum buckets are only served through signed URLs
    async with http.get(f"{api_url}/storage/v1/object/public/forum_images/posts/1/a.png") as resp:
        assert resp.status == 404
