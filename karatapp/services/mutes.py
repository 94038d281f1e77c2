"""Forum mutes issued by moderators."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_, select, update

from ..core.datastore import DataStore
from ..core.errors import NotAuthenticatedError, PermissionDeniedError
from ..core.lock import hold_lock
from ..models.enums import Permission
from ..models.models import UserMute, utcnow
from ..models.schemas import MuteInfo, MuteStatistics
from .roles import RoleService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from ..core.container import Container
    from ..models.enums import MuteDuration
    from ..models.schemas import AuthUser

log = logging.getLogger("mutes")


class MuteService:
    """Mute and unmute users, and report on mutes.

    Expired mutes are deactivated lazily before every status read. Changes to
    the mutes of one user are serialised with a lock.
    """

    def __init__(self, container: Container):
        self.container = container
        self.datastore = DataStore(container)
        self.roles = RoleService(container)
        if container.lock_manager is None:
            raise RuntimeError("Container is not set up properly.")
        self.lock_manager = container.lock_manager

    def _lock_key(self, user_id: str) -> str:
        return f"lock:mute:{user_id}"

    @staticmethod
    async def _deactivate_expired(session: AsyncSession) -> int:
        now = utcnow()
        result = await session.execute(
            update(UserMute)
            .where(UserMute.is_active.is_(True), UserMute.muted_until < now)
            .values(is_active=False, updated_at=now)
        )
        await session.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def cleanup_expired_mutes(self) -> int:
        async with self.datastore.get_session() as session:
            count = await self._deactivate_expired(session)
        if count:
            log.info("Deactivated %d expired mutes", count)
        return count

    async def get_current_mute(self, user_id: str) -> MuteInfo | None:
        async with self.datastore.get_session() as session:
            await self._deactivate_expired(session)
            mute = await session.scalar(
                select(UserMute)
                .where(UserMute.user_id == user_id, UserMute.is_active.is_(True), UserMute.muted_until > utcnow())
                .order_by(UserMute.muted_at.desc())
                .limit(1)
            )
        return MuteInfo.model_validate(mute) if mute is not None else None

    async def is_user_muted(self, user_id: str) -> bool:
        return await self.get_current_mute(user_id) is not None

    async def can_mute_users(self, user: AuthUser | None) -> bool:
        if user is None:
            return False
        return await self.roles.has_permission(user.id, Permission.MUTE_USERS)

    async def _require_moderator(self, actor: AuthUser | None) -> AuthUser:
        if actor is None:
            raise NotAuthenticatedError("No authenticated user")
        if not await self.can_mute_users(actor):
            raise PermissionDeniedError("You do not have permission to mute users")
        return actor

    async def mute_user(
        self,
        actor: AuthUser | None,
        user_id: str,
        duration: MuteDuration,
        reason: str,
    ) -> MuteInfo:
        """Mute ``user_id`` for ``duration``, replacing any active mute."""
        actor = await self._require_moderator(actor)
        now = utcnow()
        async with hold_lock(self.lock_manager, self._lock_key(user_id)):
            async with self.datastore.get_session() as session:
                await session.execute(
                    update(UserMute)
                    .where(UserMute.user_id == user_id, UserMute.is_active.is_(True))
                    .values(is_active=False, unmuted_at=now, unmuted_by=actor.id, updated_at=now)
                )
                mute = UserMute(
                    user_id=user_id,
                    muted_by=actor.id,
                    reason=reason.strip(),
                    muted_at=now,
                    muted_until=now + duration.duration,
                    is_active=True,
                )
                session.add(mute)
                await session.commit()
        self.datastore.record("mute", UserMute.__tablename__)
        log.info("User %s muted %s until %s", actor.id, user_id, mute.muted_until.isoformat())
        return MuteInfo.model_validate(mute)

    async def unmute_user(self, actor: AuthUser | None, user_id: str) -> bool:
        """Lift the active mutes of ``user_id``. Returns False when none was active."""
        actor = await self._require_moderator(actor)
        now = utcnow()
        async with hold_lock(self.lock_manager, self._lock_key(user_id)):
            async with self.datastore.get_session() as session:
                result = await session.execute(
                    update(UserMute)
                    .where(UserMute.user_id == user_id, UserMute.is_active.is_(True))
                    .values(is_active=False, unmuted_at=now, unmuted_by=actor.id, updated_at=now)
                )
                await session.commit()
        lifted = (result.rowcount or 0) > 0  # type: ignore[attr-defined]
        if lifted:
            self.datastore.record("unmute", UserMute.__tablename__)
            log.info("User %s unmuted %s", actor.id, user_id)
        return lifted

    async def get_mute_history(self, user_id: str) -> list[MuteInfo]:
        async with self.datastore.get_session() as session:
            mutes = (
                await session.scalars(
                    select(UserMute).where(UserMute.user_id == user_id).order_by(UserMute.muted_at.desc())
                )
            ).all()
        return [MuteInfo.model_validate(m) for m in mutes]

    async def get_active_mutes(self) -> list[MuteInfo]:
        async with self.datastore.get_session() as session:
            await self._deactivate_expired(session)
            mutes = (
                await session.scalars(
                    select(UserMute)
                    .where(UserMute.is_active.is_(True), UserMute.muted_until > utcnow())
                    .order_by(UserMute.muted_at.desc())
                )
            ).all()
        return [MuteInfo.model_validate(m) for m in mutes]

    async def get_mute_statistics(self) -> MuteStatistics:
        """Counts of active mutes, all mutes, and mutes that ended in the last 24 hours."""
        now = utcnow()
        since = now - timedelta(days=1)
        count = select(func.count()).select_from(UserMute)
        async with self.datastore.get_session() as session:
            active = await session.scalar(
                count.where(UserMute.is_active.is_(True), UserMute.muted_until > now)
            )
            total = await session.scalar(count)
            ended = await session.scalar(
                count.where(
                    UserMute.is_active.is_(False),
                    or_(
                        UserMute.unmuted_at >= since,
                        and_(UserMute.unmuted_at.is_(None), UserMute.muted_until >= since),
                    ),
                )
            )
        return MuteStatistics(active=active or 0, total=total or 0, expired_today=ended or 0)
