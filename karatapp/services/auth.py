"""Account authentication and session tokens.

Accounts live in the row store; sessions are opaque tokens kept in the
cashews cache with a TTL (``auth:access:{token}`` and
``auth:refresh:{token}``). Refreshing rotates both tokens.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from ..core.datastore import DataStore
from ..core.errors import AuthError, InvalidInputError, KaratappError, NotAuthenticatedError
from ..core.metrics import AUTH_EVENTS
from ..core.retry import RetryPolicy, retry_async, should_retry_auth_error, should_retry_error
from ..models.avatars import AvatarType
from ..models.enums import UserRole
from ..models.models import UserAccount, UserProfile, UserRoleAssignment, utcnow
from ..models.schemas import AuthSession, AuthUser
from .password import BreachChecker, PasswordPolicy, validate_new_password

if TYPE_CHECKING:
    from cashews import Cache

    from ..core.container import Container
    from .settings import LocalSettingsStore

log = logging.getLogger("auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def auth_error_message(status: int | None, message: str, operation: str) -> str:
    """Map an auth failure to the message shown to the user."""
    lowered = message.lower()
    match status:
        case 400:
            if "email" in lowered:
                return "Invalid email address"
            if "password" in lowered:
                return "Password must be at least 6 characters"
            return f"Invalid request: {message}"
        case 401:
            return "Invalid email or password"
        case 403:
            return "Access denied. Please check your permissions"
        case 422:
            if "email" in lowered:
                return "Email address is already registered"
            return f"Invalid data provided: {message}"
        case 429:
            return "Too many requests. Please wait a moment and try again"
        case 500 | 502 | 503 | 504:
            return "Server error. Please try again later"
        case _:
            return f"{operation}: {message}"


def _auth_error(status: int, message: str, operation: str) -> AuthError:
    return AuthError(auth_error_message(status, message, operation), status_code=status)


def to_auth_user(account: UserAccount) -> AuthUser:
    return AuthUser(id=account.id, email=account.email, user_metadata=dict(account.user_metadata or {}))


class AuthService:
    """Sign-up, sign-in and session handling.

    Attributes:
        container (Container): dependency container
        datastore (DataStore): row store access
        retry_policy (RetryPolicy): policy for credential operations
    """

    ACCESS_PREFIX = "auth:access:"
    REFRESH_PREFIX = "auth:refresh:"

    def __init__(self, container: Container):
        self.container = container
        self.datastore = DataStore(container)
        self.config = container.config.auth
        self.retry_policy = RetryPolicy.auth()
        self.update_policy = RetryPolicy.network()
        self.password_policy = PasswordPolicy() if self.config.enforce_password_policy else None
        self.breach_checker = BreachChecker(container) if self.config.breach_check else None

    @property
    def cache(self) -> Cache:
        if self.container.cache is None:
            raise RuntimeError("Container is not set up properly.")
        return self.container.cache

    async def _issue_session(self, user: AuthUser) -> AuthSession:
        access_token = secrets.token_urlsafe(32)
        refresh_token = secrets.token_urlsafe(48)
        await self.cache.set(
            self.ACCESS_PREFIX + access_token, user.id, expire=self.config.access_token_ttl_seconds
        )
        await self.cache.set(
            self.REFRESH_PREFIX + refresh_token, user.id, expire=self.config.refresh_token_ttl_seconds
        )
        return AuthSession(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(seconds=self.config.access_token_ttl_seconds),
            user=user,
        )

    async def _load_user(self, user_id: str) -> AuthUser | None:
        account = await self.datastore.get(UserAccount, user_id)
        return to_auth_user(account) if account is not None else None

    async def sign_up(self, email: str, password: str, full_name: str) -> AuthSession:
        """Create an account with its profile and default role, then sign in.

        Raises:
            AuthError: invalid email, weak or breached password, or an
                already registered address.
        """
        operation = "Sign up failed"
        email = email.strip().lower()
        full_name = full_name.strip()
        if not _EMAIL_RE.match(email):
            raise _auth_error(400, "invalid email", operation)
        if len(password) < self.config.min_password_length:
            raise _auth_error(400, "weak password", operation)

        violations = await validate_new_password(
            password, policy=self.password_policy, breach_checker=self.breach_checker
        )
        if violations:
            AUTH_EVENTS.labels(event="sign_up", status="rejected").inc()
            raise AuthError("\n".join(violations), status_code=400)

        password_hash = generate_password_hash(password)

        async def create() -> AuthSession:
            try:
                async with self.datastore.get_session() as session:
                    existing = await session.scalar(select(UserAccount.id).where(UserAccount.email == email))
                    if existing is not None:
                        raise _auth_error(422, "email already registered", operation)

                    metadata: dict[str, Any] = {"full_name": full_name} if full_name else {}
                    account = UserAccount(email=email, password_hash=password_hash, user_metadata=metadata)
                    session.add(account)
                    await session.flush()
                    session.add(UserProfile(id=account.id, email=email, full_name=full_name or None))
                    session.add(UserRoleAssignment(user_id=account.id, role=UserRole.USER.value))
                    await session.commit()
                    user = to_auth_user(account)
            except IntegrityError as e:
                # a concurrent sign-up claimed the address between the check and the insert
                raise _auth_error(422, "email already registered", operation) from e
            return await self._issue_session(user)

        try:
            result = await retry_async(create, self.retry_policy, should_retry_auth_error, operation="auth.sign_up")
        except KaratappError:
            AUTH_EVENTS.labels(event="sign_up", status="error").inc()
            raise
        AUTH_EVENTS.labels(event="sign_up", status="success").inc()
        log.info("Registered user %s", result.user.id)
        return result

    async def sign_in(self, email: str, password: str) -> AuthSession:
        operation = "Sign in failed"
        email = email.strip().lower()

        async def authenticate() -> AuthSession:
            async with self.datastore.get_session() as session:
                account = await session.scalar(select(UserAccount).where(UserAccount.email == email))
                if account is None or not check_password_hash(account.password_hash, password):
                    raise _auth_error(401, "invalid credentials", operation)
                account.last_sign_in_at = utcnow()
                await session.commit()
                user = to_auth_user(account)
            return await self._issue_session(user)

        try:
            result = await retry_async(
                authenticate, self.retry_policy, should_retry_auth_error, operation="auth.sign_in"
            )
        except KaratappError:
            AUTH_EVENTS.labels(event="sign_in", status="error").inc()
            raise
        AUTH_EVENTS.labels(event="sign_in", status="success").inc()
        return result

    async def sign_out(self, access_token: str, refresh_token: str | None = None) -> None:
        await self.cache.delete(self.ACCESS_PREFIX + access_token)
        if refresh_token:
            await self.cache.delete(self.REFRESH_PREFIX + refresh_token)
        AUTH_EVENTS.labels(event="sign_out", status="success").inc()

    async def refresh(self, refresh_token: str) -> AuthSession:
        """Exchange a refresh token for a new session. The old token is revoked."""
        key = self.REFRESH_PREFIX + refresh_token
        user_id = await self.cache.get(key)
        if user_id is None:
            AUTH_EVENTS.labels(event="refresh", status="expired").inc()
            raise AuthError("Session expired. Please sign in again.", status_code=401)
        await self.cache.delete(key)

        user = await self._load_user(user_id)
        if user is None:
            AUTH_EVENTS.labels(event="refresh", status="error").inc()
            raise AuthError("Session expired. Please sign in again.", status_code=401)
        AUTH_EVENTS.labels(event="refresh", status="success").inc()
        return await self._issue_session(user)

    async def get_user(self, access_token: str | None) -> AuthUser | None:
        """Return the user owning ``access_token``, or None when it is unknown or expired."""
        if not access_token:
            return None
        user_id = await self.cache.get(self.ACCESS_PREFIX + access_token)
        if user_id is None:
            return None
        return await self._load_user(user_id)

    async def require_user(self, access_token: str | None) -> AuthUser:
        user = await self.get_user(access_token)
        if user is None:
            raise NotAuthenticatedError()
        return user

    async def _update_metadata(self, user: AuthUser, changes: dict[str, Any], *, operation: str) -> AuthUser:
        async def update() -> AuthUser:
            async with self.datastore.get_session() as session:
                account = await session.get(UserAccount, user.id)
                if account is None:
                    raise NotAuthenticatedError("No authenticated user found")
                metadata = dict(account.user_metadata or {})
                for key, value in changes.items():
                    if value is None:
                        metadata.pop(key, None)
                    else:
                        metadata[key] = value
                account.user_metadata = metadata
                if "full_name" in changes:
                    profile = await session.get(UserProfile, user.id)
                    if profile is not None:
                        profile.full_name = changes["full_name"]
                await session.commit()
                return to_auth_user(account)

        return await retry_async(update, self.update_policy, should_retry_error, operation=operation)

    async def update_user_name(self, user: AuthUser | None, name: str) -> AuthUser:
        if user is None:
            raise NotAuthenticatedError("No authenticated user found")
        name = name.strip()
        if not name:
            raise InvalidInputError("Name cannot be empty")
        updated = await self._update_metadata(user, {"full_name": name}, operation="auth.update_user_name")
        AUTH_EVENTS.labels(event="update_name", status="success").inc()
        return updated

    async def update_user_avatar(
        self,
        user: AuthUser | None,
        *,
        avatar_type: AvatarType,
        avatar_id: str | None = None,
        avatar_url: str | None = None,
    ) -> AuthUser:
        """Write the avatar keys of the user metadata.

        A preset clears ``avatar_url``; a custom avatar clears ``avatar_id``.
        """
        if user is None:
            raise NotAuthenticatedError("No authenticated user found")
        if avatar_type is AvatarType.PRESET and not avatar_id:
            raise InvalidInputError("A preset avatar needs an avatar id")
        if avatar_type is AvatarType.CUSTOM and not avatar_url:
            raise InvalidInputError("A custom avatar needs an avatar url")

        changes = {
            "avatar_type": avatar_type.value,
            "avatar_id": avatar_id if avatar_type is AvatarType.PRESET else None,
            "avatar_url": avatar_url if avatar_type is AvatarType.CUSTOM else None,
            "avatar_updated_at": utcnow().isoformat(),
        }
        updated = await self._update_metadata(user, changes, operation="auth.update_user_avatar")
        AUTH_EVENTS.labels(event="update_avatar", status="success").inc()
        return updated

    async def restore_session(self, persistence: SessionPersistence) -> AuthSession | None:
        """Resume a persisted session.

        The stored access token is used while it is valid; otherwise the
        refresh token is exchanged. When neither works the stored session is
        cleared and None is returned.
        """
        if not await persistence.has_valid_session():
            await persistence.clear()
            return None
        access_token, refresh_token = await persistence.tokens()
        if not access_token or not refresh_token:
            await persistence.clear()
            return None

        user = await self.get_user(access_token)
        if user is not None:
            ttl = await self.cache.get_expire(self.ACCESS_PREFIX + access_token)
            AUTH_EVENTS.labels(event="restore", status="success").inc()
            return AuthSession(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=utcnow() + timedelta(seconds=max(ttl or 0, 0)),
                user=user,
            )

        try:
            session = await self.refresh(refresh_token)
        except AuthError as e:
            log.info("Stored session could not be refreshed: %s", e.message)
            await persistence.clear()
            AUTH_EVENTS.labels(event="restore", status="expired").inc()
            return None
        await persistence.save(session)
        AUTH_EVENTS.labels(event="restore", status="refreshed").inc()
        return session


class SessionPersistence:
    """Persists the current session in the local settings file."""

    ACCESS_TOKEN = "auth_access_token"
    REFRESH_TOKEN = "auth_refresh_token"
    USER_ID = "auth_user_id"
    TIMESTAMP = "auth_session_timestamp"

    def __init__(self, store: LocalSettingsStore, *, max_age_days: int = 30):
        self.store = store
        self.max_age = timedelta(days=max_age_days)

    async def save(self, session: AuthSession) -> None:
        await self.store.set_many(
            {
                self.ACCESS_TOKEN: session.access_token,
                self.REFRESH_TOKEN: session.refresh_token,
                self.USER_ID: session.user.id,
                self.TIMESTAMP: int(utcnow().timestamp() * 1000),
            }
        )

    async def tokens(self) -> tuple[str | None, str | None]:
        values = await self.store.get_many(self.ACCESS_TOKEN, self.REFRESH_TOKEN)
        return values[self.ACCESS_TOKEN], values[self.REFRESH_TOKEN]

    async def user_id(self) -> str | None:
        return await self.store.get(self.USER_ID)

    async def has_valid_session(self) -> bool:
        values = await self.store.get_many(self.ACCESS_TOKEN, self.REFRESH_TOKEN, self.TIMESTAMP)
        if not values[self.ACCESS_TOKEN] or not values[self.REFRESH_TOKEN]:
            return False
        timestamp = values[self.TIMESTAMP]
        if not isinstance(timestamp, int):
            return False
        saved_at = datetime.fromtimestamp(timestamp / 1000, tz=UTC)
        return utcnow() - saved_at < self.max_age

    async def clear(self) -> None:
        await self.store.delete(self.ACCESS_TOKEN, self.REFRESH_TOKEN, self.USER_ID, self.TIMESTAMP)
