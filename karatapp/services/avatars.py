"""Preset and uploaded profile avatars."""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from ..core.errors import InvalidInputError, NotAuthenticatedError, StorageError
from ..core.retry import RetryPolicy, retry_async, should_retry_image_error
from ..models.avatars import AvatarType, UserAvatar, avatar_by_id, default_avatar
from .auth import AuthService

if TYPE_CHECKING:
    from ..core.container import Container
    from ..core.storage import ObjectStore
    from ..models.schemas import AuthUser

log = logging.getLogger("avatars")

AVATAR_EXTENSIONS = ("jpg", "jpeg", "png", "webp")
_CONTENT_TYPES = {"jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png", "webp": "image/webp"}


def avatar_extension(file_name: str) -> str | None:
    _, dot, ext = file_name.rpartition(".")
    ext = ext.lower()
    return ext if dot and ext in AVATAR_EXTENSIONS else None


class AvatarService:
    """Avatar selection and custom avatar storage.

    A custom avatar is a single object ``{user_id}/avatar.{ext}`` in the
    avatars bucket; the user metadata keeps its unsigned URL.
    """

    def __init__(self, container: Container):
        if container.object_store is None:
            raise RuntimeError("Container is not set up properly.")
        self.container = container
        self.store: ObjectStore = container.object_store
        self.auth = AuthService(container)
        self.bucket = container.config.buckets.avatars
        self.max_bytes = container.config.storage.max_avatar_bytes
        self.expires_in = container.config.storage.avatar_url_expires_seconds
        self.retry_policy = RetryPolicy.image()

    async def select_preset(self, user: AuthUser | None, avatar_id: str) -> AuthUser:
        if user is None:
            raise NotAuthenticatedError()
        if avatar_by_id(avatar_id) is None:
            raise InvalidInputError(f"Unknown avatar: {avatar_id}")
        return await self.auth.update_user_avatar(user, avatar_type=AvatarType.PRESET, avatar_id=avatar_id)

    async def _avatar_paths(self, user_id: str) -> list[str]:
        if not await self.store.bucket_exists(self.bucket):
            return []
        entries = await self.store.list(self.bucket, user_id)
        return [f"{user_id}/{entry.name}" for entry in entries if entry.name.startswith("avatar.")]

    async def upload_custom(self, user: AuthUser | None, data: bytes, file_name: str) -> UserAvatar:
        """Store an uploaded image as the user's avatar and select it.

        Raises:
            InvalidInputError: empty, larger than the limit, or not JPG/PNG/WebP.
        """
        if user is None:
            raise NotAuthenticatedError()
        if not data:
            raise InvalidInputError("The selected file is empty")
        if len(data) > self.max_bytes:
            raise InvalidInputError(f"File size exceeds {self.max_bytes // (1024 * 1024)}MB limit")
        ext = avatar_extension(file_name)
        if ext is None:
            raise InvalidInputError("Invalid image format. Use JPG, PNG or WebP.")

        if not await self.store.bucket_exists(self.bucket):
            await self.store.create_bucket(self.bucket)
        path = f"{user.id}/avatar.{ext}"
        stale = [p for p in await self._avatar_paths(user.id) if p != path]

        async def put() -> str:
            return await self.store.upload(self.bucket, path, data, content_type=_CONTENT_TYPES[ext], upsert=True)

        await retry_async(put, self.retry_policy, should_retry_image_error, operation="avatars.upload")
        if stale:
            await self.store.remove(self.bucket, stale)

        updated = await self.auth.update_user_avatar(
            user, avatar_type=AvatarType.CUSTOM, avatar_url=self.store.public_url(self.bucket, path)
        )
        log.info("User %s uploaded a custom avatar (%d bytes)", user.id, len(data))
        return await self.get_user_avatar(updated)

    async def get_avatar_url(self, user_id: str | None) -> str | None:
        """Short-lived signed URL of the custom avatar, or None if there is none."""
        if not user_id:
            return None
        try:
            paths = await self._avatar_paths(user_id)
            if not paths:
                return None
            return await self.store.create_signed_url(self.bucket, paths[0], self.expires_in)
        except StorageError as e:
            log.debug("No avatar URL for %s: %s", user_id, e.message)
            return None

    async def has_custom_avatar(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        try:
            return bool(await self._avatar_paths(user_id))
        except StorageError:
            return False

    async def delete_custom(self, user: AuthUser | None) -> bool:
        """Remove the uploaded avatar and fall back to the default preset.

        Returns:
            False when the user had no uploaded avatar.
        """
        if user is None:
            raise NotAuthenticatedError()
        paths = await self._avatar_paths(user.id)
        if paths:
            await self.store.remove(self.bucket, paths)
        if UserAvatar.from_metadata(user.user_metadata).type is AvatarType.CUSTOM:
            await self.auth.update_user_avatar(user, avatar_type=AvatarType.PRESET, avatar_id=default_avatar().id)
        return bool(paths)

    async def get_user_avatar(self, user: AuthUser | None) -> UserAvatar:
        """The avatar to show for ``user``, with a fresh URL for custom avatars."""
        if user is None:
            return UserAvatar(type=AvatarType.PRESET, avatar_id=default_avatar().id)
        avatar = UserAvatar.from_metadata(user.user_metadata)
        if avatar.type is AvatarType.CUSTOM:
            signed = await self.get_avatar_url(user.id)
            if signed is not None:
                avatar = dataclasses.replace(avatar, custom_url=signed)
        return avatar
