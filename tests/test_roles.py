import pytest
from sqlalchemy import select

from karatapp.core.errors import NotAuthenticatedError, PermissionDeniedError
from karatapp.models.enums import Permission, UserRole
from karatapp.models.models import UserAccount, UserProfile, UserRoleAssignment
from karatapp.services.roles import RoleService, role_allows


@pytest.mark.parametrize(
    ("role", "permission", "expected"),
    [
        (UserRole.USER, Permission.MUTE_USERS, False),
        (UserRole.MEDIATOR, Permission.MUTE_USERS, True),
        (UserRole.MEDIATOR, Permission.DELETE_ANY_POST, False),
        (UserRole.HOST, Permission.DELETE_ANY_POST, True),
        (UserRole.HOST, "pin_posts", True),
        (UserRole.HOST, "launch_rockets", False),
    ],
)
def test_role_allows(role, permission, expected):
    assert role_allows(role, permission) is expected


@pytest.mark.asyncio
async def test_role_lookup(container, user, host, mediator):
    roles = RoleService(container)

    assert await roles.get_user_role(user.id) is UserRole.USER
    assert await roles.get_user_role("no-such-user") is UserRole.USER
    assert await roles.is_host(host.id)
    assert await roles.can_assign_roles(mediator.id)
    assert not await roles.can_assign_roles(user.id)
    assert await roles.has_permission(mediator.id, Permission.LOCK_POSTS)


@pytest.mark.asyncio
async def test_assign_role_replaces_previous_grants(container, user, mediator):
    roles = RoleService(container)

    await roles.assign_role(mediator, user.id, UserRole.MEDIATOR)
    await roles.assign_role(mediator, user.id, UserRole.USER)

    assert await roles.get_user_role(user.id) is UserRole.USER
    async with container.async_sessionmaker() as session:
        rows = (await session.scalars(select(UserRoleAssignment).where(UserRoleAssignment.user_id == user.id))).all()
    assert len(rows) == 1
    assert rows[0].granted_by == mediator.id


@pytest.mark.asyncio
async def test_assign_role_requires_moderator(container, user, other_user):
    roles = RoleService(container)

    with pytest.raises(PermissionDeniedError):
        await roles.assign_role(user, other_user.id, UserRole.HOST)
    with pytest.raises(NotAuthenticatedError):
        await roles.assign_role(None, other_user.id, UserRole.HOST)


@pytest.mark.asyncio
async def test_host_roles_only_by_host(container, user, host, mediator):
    roles = RoleService(container)

    with pytest.raises(PermissionDeniedError, match="Only hosts"):
        await roles.grant_host(mediator, user.id)

    await roles.grant_host(host, user.id)
    assert await roles.is_host(user.id)
    await roles.revoke_host(host, user.id)
    assert await roles.get_user_role(user.id) is UserRole.USER


@pytest.mark.asyncio
async def test_get_all_users_with_roles(container, user, host):
    users = await RoleService(container).get_all_users_with_roles()

    by_id = {u.id: u for u in users}
    assert by_id[user.id].role == "user"
    assert by_id[host.id].role == "host"
    assert by_id[host.id].full_name == "Host"


@pytest.mark.asyncio
async def test_create_user_profile_is_idempotent(container):
    roles = RoleService(container)

    assert await roles.create_user_profile("u-1", "u1@example.com", "U1")
    assert not await roles.create_user_profile("u-1", "u1@example.com", "U1")


@pytest.mark.asyncio
async def test_create_missing_user_profiles(container, user):
    async with container.async_sessionmaker() as session:
        session.add(UserAccount(id="orphan", email="orphan@example.com", password_hash="x", user_metadata={}))
        session.add(
            UserAccount(
                id="named", email="named@example.com", password_hash="x", user_metadata={"full_name": "Named"}
            )
        )
        await session.commit()

    roles = RoleService(container)
    assert await roles.create_missing_user_profiles() == 2
    assert await roles.create_missing_user_profiles() == 0

    async with container.async_sessionmaker() as session:
        assert (await session.get(UserProfile, "orphan")).full_name == "orphan"
        assert (await session.get(UserProfile, "named")).full_name == "Named"
    assert await roles.get_user_role("orphan") is UserRole.USER
