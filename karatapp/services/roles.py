"""User roles, profiles and permission checks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from ..core.datastore import DataStore
from ..core.errors import NotAuthenticatedError, PermissionDeniedError
from ..models.enums import Permission, UserRole
from ..models.models import UserAccount, UserProfile, UserRoleAssignment, utcnow
from ..models.schemas import UserWithRole

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from ..core.container import Container
    from ..models.schemas import AuthUser

log = logging.getLogger("roles")

_MODERATOR_PERMISSIONS = frozenset(
    {
        Permission.MODERATE_CONTENT,
        Permission.MUTE_USERS,
        Permission.ASSIGN_ROLES,
        Permission.PIN_POSTS,
        Permission.LOCK_POSTS,
    }
)
_HOST_PERMISSIONS = frozenset({Permission.DELETE_ANY_POST})


def role_allows(role: UserRole, permission: Permission | str) -> bool:
    """Whether ``role`` grants ``permission``. Unknown permissions are denied."""
    try:
        permission = Permission(permission)
    except ValueError:
        return False
    if permission in _MODERATOR_PERMISSIONS:
        return role in (UserRole.MEDIATOR, UserRole.HOST)
    if permission in _HOST_PERMISSIONS:
        return role is UserRole.HOST
    return False


class RoleService:
    """Role assignments and profiles.

    The role of a user is the most recent ``user_roles`` row; users without
    one are plain users.
    """

    def __init__(self, container: Container):
        self.container = container
        self.datastore = DataStore(container)

    @staticmethod
    async def _latest_role(session: AsyncSession, user_id: str) -> UserRole:
        stmt = (
            select(UserRoleAssignment.role)
            .where(UserRoleAssignment.user_id == user_id)
            .order_by(UserRoleAssignment.granted_at.desc(), UserRoleAssignment.id.desc())
            .limit(1)
        )
        value = await session.scalar(stmt)
        return UserRole.parse(value) if value is not None else UserRole.USER

    async def get_user_role(self, user_id: str) -> UserRole:
        async with self.datastore.get_session() as session:
            return await self._latest_role(session, user_id)

    async def is_host(self, user_id: str) -> bool:
        return await self.get_user_role(user_id) is UserRole.HOST

    async def can_assign_roles(self, user_id: str) -> bool:
        return await self.get_user_role(user_id) in (UserRole.HOST, UserRole.MEDIATOR)

    async def has_permission(self, user_id: str, permission: Permission | str) -> bool:
        return role_allows(await self.get_user_role(user_id), permission)

    async def assign_role(self, actor: AuthUser | None, user_id: str, role: UserRole) -> None:
        """Replace every role row of ``user_id`` with a single new grant.

        Raises:
            NotAuthenticatedError: no acting user.
            PermissionDeniedError: the actor is neither host nor mediator.
        """
        if actor is None:
            raise NotAuthenticatedError()
        if not await self.can_assign_roles(actor.id):
            raise PermissionDeniedError("You do not have permission to assign roles")

        async with self.datastore.get_session() as session:
            await session.execute(delete(UserRoleAssignment).where(UserRoleAssignment.user_id == user_id))
            session.add(
                UserRoleAssignment(user_id=user_id, role=role.value, granted_by=actor.id, granted_at=utcnow())
            )
            await session.commit()
        self.datastore.record("assign", UserRoleAssignment.__tablename__)
        log.info("User %s assigned role %s to %s", actor.id, role.value, user_id)

    async def grant_host(self, actor: AuthUser | None, user_id: str) -> None:
        await self._require_host(actor)
        await self.assign_role(actor, user_id, UserRole.HOST)

    async def revoke_host(self, actor: AuthUser | None, user_id: str) -> None:
        await self._require_host(actor)
        await self.assign_role(actor, user_id, UserRole.USER)

    async def _require_host(self, actor: AuthUser | None) -> None:
        if actor is None:
            raise NotAuthenticatedError()
        if not await self.is_host(actor.id):
            raise PermissionDeniedError("Only hosts can change host roles")

    async def get_all_users_with_roles(self) -> list[UserWithRole]:
        """Profiles with their latest role, newest profile first."""
        async with self.datastore.get_session() as session:
            profiles = (
                await session.scalars(select(UserProfile).order_by(UserProfile.created_at.desc()))
            ).all()
            assignments = (
                await session.scalars(
                    select(UserRoleAssignment).order_by(
                        UserRoleAssignment.granted_at.asc(), UserRoleAssignment.id.asc()
                    )
                )
            ).all()

        latest: dict[str, str] = {}
        for assignment in assignments:
            latest[assignment.user_id] = assignment.role

        return [
            UserWithRole(
                id=profile.id,
                email=profile.email,
                full_name=profile.full_name,
                role=UserRole.parse(latest.get(profile.id)).value,
                created_at=profile.created_at,
            )
            for profile in profiles
        ]

    async def create_user_profile(self, user_id: str, email: str, full_name: str | None) -> bool:
        """Create the profile of a user if it does not exist. Returns True when created."""
        async with self.datastore.get_session() as session:
            if await session.get(UserProfile, user_id) is not None:
                return False
            session.add(UserProfile(id=user_id, email=email, full_name=full_name or None))
            await session.commit()
        self.datastore.record("insert", UserProfile.__tablename__)
        return True

    async def create_missing_user_profiles(self) -> int:
        """Backfill profiles and default roles for accounts that lack them.

        Returns:
            Number of profiles created.
        """
        created = 0
        async with self.datastore.get_session() as session:
            accounts = (
                await session.scalars(
                    select(UserAccount).where(UserAccount.id.not_in(select(UserProfile.id)))
                )
            ).all()
            users_with_role = set(
                (await session.scalars(select(UserRoleAssignment.user_id).distinct())).all()
            )
            for account in accounts:
                metadata = account.user_metadata or {}
                full_name = metadata.get("full_name") or account.email.split("@", 1)[0]
                session.add(UserProfile(id=account.id, email=account.email, full_name=full_name))
                if account.id not in users_with_role:
                    session.add(
                        UserRoleAssignment(user_id=account.id, role=UserRole.USER.value, granted_by=account.id)
                    )
                created += 1
            await session.commit()
        if created:
            self.datastore.record("backfill", UserProfile.__tablename__)
        return created
