"""SQLAlchemy ORM models.

Tables mirror the row store the mobile app reads and writes: user accounts
and profiles, role assignments, mutes, forum posts and comments, katas and
ohyos with their ordered attachment URL lists, comments on techniques and
the likes/favorites of every content kind.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    BIGINT,
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from .enums import ForumCategory, TargetType, UserRole

Base = declarative_base()

# BIGINT identity on PostgreSQL, INTEGER on SQLite so rowid autoincrement works.
BigIntId = BIGINT().with_variant(Integer(), "sqlite")
JsonList = JSON().with_variant(JSONB(), "postgresql")

__all__ = [
    "Base",
    "UserAccount",
    "UserProfile",
    "UserRoleAssignment",
    "UserMute",
    "ForumPost",
    "ForumComment",
    "Kata",
    "Ohyo",
    "KataComment",
    "OhyoComment",
    "Like",
    "Favorite",
]


def utcnow() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(UTC)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes coming back from drivers that drop tz."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def new_uuid() -> str:
    return str(uuid.uuid4())


class MixinBase(Base):
    """Common helpers for all ORM models."""

    __abstract__ = True

    def to_dict(self) -> dict[str, Any]:
        """Return the column values of this row as a plain dict.

        Datetimes are normalised to timezone-aware UTC.
        """
        result = {}
        for c in self.__table__.columns:
            value = getattr(self, c.key)
            if isinstance(value, datetime):
                value = ensure_aware(value)
            result[c.key] = value
        return result


class UserAccount(MixinBase):
    """Authentication record.

    Attributes:
        id: user id (uuid string), shared with profiles, roles and content.
        email: unique, stored lowercased.
        password_hash: scrypt hash string.
        user_metadata: free-form metadata such as full_name and avatar keys.
    """

    __tablename__ = "auth_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    user_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_sign_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserProfile(MixinBase):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class UserRoleAssignment(MixinBase):
    """A role granted to a user. The most recent grant wins."""

    __tablename__ = "user_roles"
    __table_args__ = (Index("idx_user_roles_user_granted", "user_id", "granted_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    role: Mapped[str] = mapped_column(String(32), default=UserRole.USER.value)
    granted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class UserMute(MixinBase):
    """A forum mute. Active while ``is_active`` and ``muted_until`` is ahead."""

    __tablename__ = "user_mutes"
    __table_args__ = (Index("idx_user_mutes_user_active", "user_id", "is_active"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    muted_by: Mapped[str] = mapped_column(String(36))
    reason: Mapped[str] = mapped_column(Text, default="")
    muted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    muted_until: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    unmuted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unmuted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ForumPost(MixinBase):
    """Forum post.

    Attributes:
        image_urls: signed URLs of attached images, in display order.
        file_urls: signed URLs of attached files.
        category: a ForumCategory value.
        comment_count: maintained by the forum service.
        likes_count: maintained by the interaction service.
    """

    __tablename__ = "forum_posts"
    __table_args__ = (Index("idx_forum_posts_listing", "is_pinned", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255))
    content: Mapped[str] = mapped_column(Text)
    author_id: Mapped[str] = mapped_column(String(36), index=True)
    author_name: Mapped[str] = mapped_column(String(255))
    author_avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_urls: Mapped[list[str]] = mapped_column(JsonList, default=list)
    file_urls: Mapped[list[str]] = mapped_column(JsonList, default=list)
    category: Mapped[str] = mapped_column(String(32), default=ForumCategory.GENERAL.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)
    likes_count: Mapped[int] = mapped_column(Integer, default=0)


class ForumComment(MixinBase):
    __tablename__ = "forum_comments"
    __table_args__ = (Index("idx_forum_comments_post_time", "post_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(BIGINT, index=True)
    content: Mapped[str] = mapped_column(Text)
    author_id: Mapped[str] = mapped_column(String(36), index=True)
    author_name: Mapped[str] = mapped_column(String(255))
    author_avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_urls: Mapped[list[str]] = mapped_column(JsonList, default=list)
    file_urls: Mapped[list[str]] = mapped_column(JsonList, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    parent_comment_id: Mapped[int | None] = mapped_column(BIGINT, nullable=True, index=True)


class TechniqueMixin:
    """Columns shared by katas and ohyos.

    ``image_urls`` is the persisted display order of the bucket images; an
    empty list means no order has been stored yet.
    """

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    style: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    image_urls: Mapped[list[str]] = mapped_column(JsonList, default=list)
    video_urls: Mapped[list[str] | None] = mapped_column(JsonList, nullable=True)
    order: Mapped[int] = mapped_column("order", Integer, default=0)


class Kata(TechniqueMixin, MixinBase):
    __tablename__ = "katas"


class Ohyo(TechniqueMixin, MixinBase):
    __tablename__ = "ohyo"


class TechniqueCommentMixin:
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(Text)
    author_id: Mapped[str] = mapped_column(String(36), index=True)
    author_name: Mapped[str] = mapped_column(String(255))
    author_avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    parent_comment_id: Mapped[int | None] = mapped_column(BIGINT, nullable=True)


class KataComment(TechniqueCommentMixin, MixinBase):
    __tablename__ = "kata_comments"

    kata_id: Mapped[int] = mapped_column(BIGINT, index=True)


class OhyoComment(TechniqueCommentMixin, MixinBase):
    __tablename__ = "ohyo_comments"

    ohyo_id: Mapped[int] = mapped_column(BIGINT, index=True)


class Like(MixinBase):
    __tablename__ = "likes"
    __table_args__ = (UniqueConstraint("user_id", "target_type", "target_id", name="uq_likes_user_target"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    user_name: Mapped[str] = mapped_column(String(255), default="Unknown User")
    target_type: Mapped[str] = mapped_column(String(32), default=TargetType.KATA.value)
    target_id: Mapped[int] = mapped_column(BIGINT, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Favorite(MixinBase):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "target_type", "target_id", name="uq_favorites_user_target"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    target_type: Mapped[str] = mapped_column(String(32), default=TargetType.KATA.value)
    target_id: Mapped[int] = mapped_column(BIGINT, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
