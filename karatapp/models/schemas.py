"""Pydantic models and lightweight records passed between services.

These are the shapes handed to callers (and serialised by the API). Rows
come from the ORM models; some records also accept the older JSON shapes the
mobile client used to store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .enums import TargetType
from .models import ForumComment, ForumPost, ensure_aware, utcnow


@dataclass(slots=True, frozen=True)
class AuthUser:
    """The authenticated caller.

    Attributes:
        id: user id.
        email: account email.
        user_metadata: metadata dict (full_name, avatar_id, avatar_url, avatar_type).
    """

    id: str
    email: str
    user_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def full_name(self) -> str | None:
        name = self.user_metadata.get("full_name")
        return name if isinstance(name, str) and name.strip() else None


@dataclass(slots=True, frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: AuthUser


@dataclass(slots=True)
class PostWithComments:
    post: ForumPost
    comments: list[ForumComment]


def _legacy_target(data: dict[str, Any]) -> dict[str, Any]:
    # Rows written before target_type/target_id carried kata_id or forum_post_id.
    if "target_type" in data and "target_id" in data:
        return data
    data = dict(data)
    if data.get("kata_id") is not None:
        data["target_type"] = TargetType.KATA.value
        data["target_id"] = data["kata_id"]
    elif data.get("forum_post_id") is not None:
        data["target_type"] = TargetType.FORUM_POST.value
        data["target_id"] = data["forum_post_id"]
    return data


class _InteractionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    target_type: TargetType
    target_id: int
    created_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shape(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return _legacy_target(data)
        return data

    @field_validator("created_at", mode="after")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return ensure_aware(v) or v

    @property
    def kata_id(self) -> int | None:
        return self.target_id if self.target_type is TargetType.KATA else None

    @property
    def forum_post_id(self) -> int | None:
        return self.target_id if self.target_type is TargetType.FORUM_POST else None


class LikeRecord(_InteractionRecord):
    """A like, in either the target_type/target_id or the legacy shape."""

    user_name: str = "Unknown User"

    @field_validator("user_name", mode="before")
    @classmethod
    def _default_name(cls, v: Any) -> Any:
        return v or "Unknown User"


class FavoriteRecord(_InteractionRecord):
    pass


class MuteInfo(BaseModel):
    """A mute as seen by moderators and by the muted user.

    Attributes:
        muted_until: end of the mute (UTC).
        is_active: False once expired or lifted.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    muted_by: str
    reason: str = ""
    muted_at: datetime
    muted_until: datetime
    is_active: bool = True
    unmuted_at: datetime | None = None
    unmuted_by: str | None = None

    @field_validator("muted_at", "muted_until", "unmuted_at", mode="after")
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        return ensure_aware(v)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.muted_until

    def time_remaining(self, now: datetime | None = None) -> timedelta:
        remaining = self.muted_until - (now or utcnow())
        return max(remaining, timedelta(0))

    def time_remaining_text(self, now: datetime | None = None) -> str:
        if self.is_expired(now):
            return "Expired"
        remaining = self.time_remaining(now)
        days = remaining.days
        hours = int(remaining.total_seconds() // 3600)
        minutes = int(remaining.total_seconds() // 60)
        if days > 0:
            return f"{days} day{'' if days == 1 else 's'}"
        if hours > 0:
            return f"{hours} hour{'' if hours == 1 else 's'}"
        if minutes > 0:
            return f"{minutes} minute{'' if minutes == 1 else 's'}"
        return "Less than a minute"


class UserWithRole(BaseModel):
    id: str
    email: str
    full_name: str | None = None
    role: str = "user"
    created_at: datetime | None = None


class MuteStatistics(BaseModel):
    active: int = 0
    total: int = 0
    expired_today: int = 0


@dataclass(slots=True, frozen=True)
class UploadFile:
    """A file handed in for upload.

    Attributes:
        name: original file name; only its extension is used for storage.
        data: file contents.
        content_type: MIME type if the caller knows it.
    """

    name: str
    data: bytes
    content_type: str | None = None

    @property
    def extension(self) -> str:
        """Lowercased extension with the leading dot, or an empty string."""
        stem, dot, ext = self.name.rpartition(".")
        if not dot or not stem or "/" in ext:
            return ""
        return f".{ext.lower()}"
