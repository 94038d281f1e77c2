"""AuthService and SessionPersistence tests."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from werkzeug.security import check_password_hash

from karatapp.core.errors import AuthError, InvalidInputError, NotAuthenticatedError
from karatapp.models.avatars import AvatarType
from karatapp.models.models import UserAccount, UserProfile, UserRoleAssignment
from karatapp.services.auth import AuthService, SessionPersistence, auth_error_message
from karatapp.services.settings import LocalSettingsStore

PASSWORD = "Kiai#Dojo42"


@pytest.mark.parametrize(
    ("status", "message", "expected"),
    [
        (400, "invalid email", "Invalid email address"),
        (400, "weak password", "Password must be at least 6 characters"),
        (401, "anything", "Invalid email or password"),
        (422, "email already registered", "Email address is already registered"),
        (429, "slow down", "Too many requests. Please wait a moment and try again"),
        (503, "down", "Server error. Please try again later"),
        (418, "teapot", "Sign in failed: teapot"),
    ],
)
def test_auth_error_message(status, message, expected):
    assert auth_error_message(status, message, "Sign in failed") == expected


@pytest.mark.asyncio
async def test_sign_up_creates_profile_and_role(container):
    auth = AuthService(container)

    session = await auth.sign_up(" Sensei@Example.com ", PASSWORD, "Sensei")

    assert session.user.email == "sensei@example.com"
    assert session.user.user_metadata == {"full_name": "Sensei"}
    async with container.async_sessionmaker() as db:
        profile = await db.get(UserProfile, session.user.id)
        role = await db.scalar(select(UserRoleAssignment.role).where(UserRoleAssignment.user_id == session.user.id))
    assert profile is not None and profile.full_name == "Sensei"
    assert role == "user"

    assert (await auth.get_user(session.access_token)).id == session.user.id


@pytest.mark.asyncio
async def test_sign_up_rejects_duplicate_email(container):
    auth = AuthService(container)
    await auth.sign_up("dup@example.com", PASSWORD, "A")

    with pytest.raises(AuthError) as exc_info:
        await auth.sign_up("DUP@example.com", PASSWORD, "B")
    assert exc_info.value.message == "Email address is already registered"


@pytest.mark.asyncio
async def test_sign_up_stores_salted_hash(container):
    auth = AuthService(container)
    first = await auth.sign_up("hash1@example.com", PASSWORD, "A")
    second = await auth.sign_up("hash2@example.com", PASSWORD, "B")

    async with container.async_sessionmaker() as db:
        hashes = [(await db.get(UserAccount, s.user.id)).password_hash for s in (first, second)]

    assert PASSWORD not in hashes[0]
    assert hashes[0] != hashes[1]
    assert all(check_password_hash(h, PASSWORD) for h in hashes)
    assert not check_password_hash(hashes[0], "Wrong#Pass1")


@pytest.mark.asyncio
async def test_concurrent_sign_up_with_same_email(container, monkeypatch):
    auth = AuthService(container)
    await auth.sign_up("race@example.com", PASSWORD, "A")

    async def lookup_misses(self, *args, **kwargs):
        return None

    # the other sign-up commits after this one looked the address up
    monkeypatch.setattr(AsyncSession, "scalar", lookup_misses)

    with pytest.raises(AuthError) as exc_info:
        await auth.sign_up("race@example.com", PASSWORD, "B")
    assert exc_info.value.status_code == 422
    assert exc_info.value.message == "Email address is already registered"


@pytest.mark.asyncio
async def test_sign_up_rejects_invalid_input(container):
    auth = AuthService(container)

    with pytest.raises(AuthError, match="Invalid email address"):
        await auth.sign_up("not-an-email", PASSWORD, "A")
    with pytest.raises(AuthError, match="at least 6 characters"):
        await auth.sign_up("a@example.com", "abc", "A")


@pytest.mark.asyncio
async def test_sign_up_reports_every_policy_violation(container):
    auth = AuthService(container)

    with pytest.raises(AuthError) as exc_info:
        await auth.sign_up("a@example.com", "abcdefg", "A")

    lines = exc_info.value.message.split("\n")
    assert "Password must be at least 8 characters long" in lines
    assert "Password must contain at least one uppercase letter" in lines
    assert "Password must contain at least one number" in lines


@pytest.mark.asyncio
async def test_sign_in_and_sign_out(container):
    auth = AuthService(container)
    await auth.sign_up("karate@example.com", PASSWORD, "Karate")

    with pytest.raises(AuthError, match="Invalid email or password"):
        await auth.sign_in("karate@example.com", "Wrong#Pass1")

    session = await auth.sign_in("KARATE@example.com", PASSWORD)
    assert (await auth.require_user(session.access_token)).email == "karate@example.com"

    await auth.sign_out(session.access_token, session.refresh_token)
    assert await auth.get_user(session.access_token) is None
    with pytest.raises(NotAuthenticatedError):
        await auth.require_user(session.access_token)


@pytest.mark.asyncio
async def test_refresh_rotates_tokens(container):
    auth = AuthService(container)
    first = await auth.sign_up("rotate@example.com", PASSWORD, "R")

    second = await auth.refresh(first.refresh_token)

    assert second.access_token != first.access_token
    assert second.user.id == first.user.id
    with pytest.raises(AuthError, match="Session expired"):
        await auth.refresh(first.refresh_token)


@pytest.mark.asyncio
async def test_get_user_without_token(container):
    assert await AuthService(container).get_user(None) is None
    assert await AuthService(container).get_user("unknown") is None


@pytest.mark.asyncio
async def test_update_user_name(container, user):
    auth = AuthService(container)

    updated = await auth.update_user_name(user, "  Sensei Kim ")

    assert updated.user_metadata["full_name"] == "Sensei Kim"
    async with container.async_sessionmaker() as db:
        assert (await db.get(UserProfile, user.id)).full_name == "Sensei Kim"

    with pytest.raises(InvalidInputError):
        await auth.update_user_name(user, "   ")
    with pytest.raises(NotAuthenticatedError):
        await auth.update_user_name(None, "x")


@pytest.mark.asyncio
async def test_update_user_avatar_switches_keys(container, user):
    auth = AuthService(container)

    custom = await auth.update_user_avatar(user, avatar_type=AvatarType.CUSTOM, avatar_url="http://x/a.png")
    assert custom.user_metadata["avatar_type"] == "custom"
    assert custom.user_metadata["avatar_url"] == "http://x/a.png"
    assert "avatar_id" not in custom.user_metadata

    preset = await auth.update_user_avatar(user, avatar_type=AvatarType.PRESET, avatar_id="karate_1")
    assert preset.user_metadata["avatar_id"] == "karate_1"
    assert "avatar_url" not in preset.user_metadata

    with pytest.raises(InvalidInputError):
        await auth.update_user_avatar(user, avatar_type=AvatarType.PRESET)


@pytest.mark.asyncio
async def test_restore_session_from_persistence(container, tmp_path):
    auth = AuthService(container)
    persistence = SessionPersistence(LocalSettingsStore(tmp_path / "settings.json"))
    session = await auth.sign_up("persist@example.com", PASSWORD, "P")
    await persistence.save(session)

    restored = await auth.restore_session(persistence)
    assert restored is not None
    assert restored.access_token == session.access_token
    assert await persistence.user_id() == session.user.id


@pytest.mark.asyncio
async def test_restore_session_refreshes_expired_access_token(container, tmp_path):
    auth = AuthService(container)
    persistence = SessionPersistence(LocalSettingsStore(tmp_path / "settings.json"))
    session = await auth.sign_up("refresh@example.com", PASSWORD, "R")
    await persistence.save(session)
    await container.cache.delete(AuthService.ACCESS_PREFIX + session.access_token)

    restored = await auth.restore_session(persistence)

    assert restored is not None
    assert restored.access_token != session.access_token
    assert (await persistence.tokens())[0] == restored.access_token


@pytest.mark.asyncio
async def test_restore_session_clears_unusable_session(container, tmp_path):
    auth = AuthService(container)
    persistence = SessionPersistence(LocalSettingsStore(tmp_path / "settings.json"))
    session = await auth.sign_up("gone@example.com", PASSWORD, "G")
    await persistence.save(session)
    await auth.sign_out(session.access_token, session.refresh_token)

    assert await auth.restore_session(persistence) is None
    assert await persistence.tokens() == (None, None)
    assert not await persistence.has_valid_session()


@pytest.mark.asyncio
async def test_restore_session_with_corrupt_settings_file(container, tmp_path):
    path = tmp_path / "settings.json"
    path.write_bytes(b"\x00garbage{")
    persistence = SessionPersistence(LocalSettingsStore(path))

    assert await AuthService(container).restore_session(persistence) is None
    assert await persistence.tokens() == (None, None)


@pytest.mark.asyncio
async def test_restore_session_without_refresh_token(container, tmp_path, monkeypatch):
    persistence = SessionPersistence(LocalSettingsStore(tmp_path / "settings.json"))
    await persistence.store.set(SessionPersistence.ACCESS_TOKEN, "a")

    async def looks_valid():
        return True

    monkeypatch.setattr(persistence, "has_valid_session", looks_valid)

    assert await AuthService(container).restore_session(persistence) is None
    assert await persistence.tokens() == (None, None)


@pytest.mark.asyncio
async def test_persisted_session_expires_after_max_age(tmp_path):
    store = LocalSettingsStore(tmp_path / "settings.json")
    persistence = SessionPersistence(store, max_age_days=30)
    await store.set_many(
        {
            SessionPersistence.ACCESS_TOKEN: "a",
            SessionPersistence.REFRESH_TOKEN: "r",
            SessionPersistence.TIMESTAMP: 0,
        }
    )

    assert not await persistence.has_valid_session()
