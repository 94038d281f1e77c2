"""Forum posts and comments.

Attachments are stored in the first existing bucket of the configured
candidates under ``posts/{id}`` or ``comments/{id}`` and referenced by signed
URLs valid for one year.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, delete, or_, select, update

from ..core.datastore import DataStore
from ..core.errors import (
    InvalidInputError,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    UserMutedError,
)
from ..core.publisher import emit
from ..core.retry import RetryPolicy, retry_async, should_retry_image_error
from ..core.storage import URL_PREFIX, bucket_from_url, path_from_url
from ..models.enums import ForumCategory
from ..models.models import ForumComment, ForumPost, utcnow
from ..models.schemas import PostWithComments
from ..utils.comments import descendant_ids_depth_first
from ..utils.search import matches_normalized
from .mutes import MuteService
from .roles import RoleService

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from ..core.container import Container
    from ..core.storage import ObjectStore
    from ..models.schemas import AuthUser, UploadFile

log = logging.getLogger("forum")


def author_avatar(metadata: dict[str, Any] | None) -> str | None:
    """Avatar reference stored with posts and comments.

    Custom avatars are referenced by URL, presets (or untyped metadata) by
    preset id; anything else falls back to ``avatar_url``.
    """
    if not metadata:
        return None
    avatar_type = metadata.get("avatar_type")
    if avatar_type == "custom":
        return metadata.get("avatar_url")
    if avatar_type in ("preset", None):
        return metadata.get("avatar_id") or metadata.get("preset_avatar_id")
    return metadata.get("avatar_url")


def post_author_name(user: AuthUser) -> str:
    return user.full_name or user.email or "Anonymous"


def comment_author_name(user: AuthUser) -> str:
    if user.full_name:
        return user.full_name
    if user.email:
        return user.email.split("@", 1)[0]
    return "Anonymous User"


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class ForumAttachments:
    """Upload, sign and remove forum attachments."""

    def __init__(self, container: Container):
        if container.object_store is None:
            raise RuntimeError("Container is not set up properly.")
        self.store: ObjectStore = container.object_store
        self.buckets = container.config.buckets
        self.expires_in = container.config.storage.forum_url_expires_seconds
        self.retry_policy = RetryPolicy.image()
        self._resolved: dict[str, str] = {}

    async def _resolve(self, kind: str, candidates: Sequence[str]) -> str | None:
        if kind in self._resolved:
            return self._resolved[kind]
        for bucket in candidates:
            if await self.store.bucket_exists(bucket):
                self._resolved[kind] = bucket
                return bucket
        return None

    async def images_bucket(self) -> str:
        bucket = await self._resolve("images", self.buckets.forum_images)
        if bucket is None:
            raise StorageError("Storage bucket for forum images not found or not accessible.", status_code=404)
        return bucket

    async def files_bucket(self) -> str:
        bucket = await self._resolve("files", self.buckets.forum_files)
        if bucket is None:
            raise StorageError("Storage bucket for forum files not found or not accessible.", status_code=404)
        return bucket

    async def _upload(
        self, bucket: str, folder: str, prefix: str, item_id: int, files: Sequence[UploadFile]
    ) -> list[str]:
        urls = []
        for i, upload in enumerate(files):
            if not upload.data:
                continue
            ext = upload.extension or ".jpg"
            path = f"{folder}/{prefix}_{item_id}_{int(time.time() * 1000)}_{i}{ext}"

            async def put(path: str = path, upload: UploadFile = upload) -> str:
                return await self.store.upload(bucket, path, upload.data, content_type=upload.content_type)

            await retry_async(put, self.retry_policy, should_retry_image_error, operation="forum.upload")
            try:
                url = await self.store.create_signed_url(bucket, path, self.expires_in)
            except StorageError as e:
                log.warning("Could not sign %s/%s, using public URL: %s", bucket, path, e.message)
                url = self.store.public_url(bucket, path)
            urls.append(url)
        return urls

    async def upload_images(self, folder: str, prefix: str, item_id: int, files: Sequence[UploadFile]) -> list[str]:
        if not files:
            return []
        return await self._upload(await self.images_bucket(), folder, prefix, item_id, files)

    async def upload_files(self, folder: str, prefix: str, item_id: int, files: Sequence[UploadFile]) -> list[str]:
        if not files:
            return []
        return await self._upload(await self.files_bucket(), folder, prefix, item_id, files)

    async def refresh_urls(self, urls: Iterable[str]) -> list[str]:
        """Re-sign storage URLs. URLs that cannot be signed are returned unchanged."""
        refreshed = []
        for url in urls:
            bucket, path = bucket_from_url(url), path_from_url(url)
            if URL_PREFIX not in url or bucket is None or path is None:
                refreshed.append(url)
                continue
            try:
                refreshed.append(await self.store.create_signed_url(bucket, path, self.expires_in))
            except StorageError:
                refreshed.append(url)
        return refreshed

    async def remove(self, urls: Iterable[str]) -> int:
        """Delete the objects behind ``urls``. Best effort: failures are logged."""
        by_bucket: dict[str, list[str]] = {}
        for url in urls:
            bucket, path = bucket_from_url(url), path_from_url(url)
            if bucket is not None and path is not None:
                by_bucket.setdefault(bucket, []).append(path)

        removed = 0
        for bucket, paths in by_bucket.items():
            try:
                removed += len(await self.store.remove(bucket, paths))
            except StorageError as e:
                log.warning("Failed to clean up %d objects in %s: %s", len(paths), bucket, e.message)
        return removed


class ForumService:
    """Forum posts, comments and moderation.

    Attributes:
        container (Container): dependency container
        datastore (DataStore): row store access
        attachments (ForumAttachments): attachment storage
    """

    def __init__(self, container: Container):
        self.container = container
        self.datastore = DataStore(container)
        self.roles = RoleService(container)
        self.mutes = MuteService(container)
        self.attachments = ForumAttachments(container)

    # ------------------------------------------------------------------ reads

    async def _signed(self, post: ForumPost) -> ForumPost:
        post.image_urls = await self.attachments.refresh_urls(post.image_urls or [])
        post.file_urls = await self.attachments.refresh_urls(post.file_urls or [])
        return post

    async def get_posts(
        self,
        category: ForumCategory | None = None,
        search_query: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ForumPost]:
        """Pinned posts first, then newest first."""
        stmt = select(ForumPost)
        if category is not None:
            stmt = stmt.where(ForumPost.category == category.value)
        if search_query and search_query.strip():
            pattern = _like_pattern(search_query.strip())
            stmt = stmt.where(
                or_(
                    ForumPost.title.ilike(pattern, escape="\\"),
                    ForumPost.content.ilike(pattern, escape="\\"),
                    ForumPost.author_name.ilike(pattern, escape="\\"),
                )
            )
        stmt = stmt.order_by(ForumPost.is_pinned.desc(), ForumPost.created_at.desc()).offset(offset).limit(limit)

        async with self.datastore.get_session() as session:
            posts = list((await session.scalars(stmt)).all())
        return [await self._signed(post) for post in posts]

    async def get_post(self, post_id: int) -> ForumPost:
        post = await self.datastore.get(ForumPost, post_id)
        if post is None:
            raise NotFoundError("Post not found")
        return await self._signed(post)

    async def get_comments(self, post_id: int) -> list[ForumComment]:
        async with self.datastore.get_session() as session:
            comments = (
                await session.scalars(
                    select(ForumComment)
                    .where(ForumComment.post_id == post_id)
                    .order_by(ForumComment.created_at.asc(), ForumComment.id.asc())
                )
            ).all()
        return list(comments)

    async def get_post_with_comments(self, post_id: int) -> PostWithComments:
        post = await self.get_post(post_id)
        return PostWithComments(post=post, comments=await self.get_comments(post_id))

    async def get_comments_paginated(self, post_id: int, limit: int = 20, offset: int = 0) -> list[ForumComment]:
        async with self.datastore.get_session() as session:
            comments = (
                await session.scalars(
                    select(ForumComment)
                    .where(ForumComment.post_id == post_id)
                    .order_by(ForumComment.created_at.asc(), ForumComment.id.asc())
                    .offset(offset)
                    .limit(limit)
                )
            ).all()
        return list(comments)

    # ----------------------------------------------------------------- checks

    async def _require_can_write(self, user: AuthUser | None) -> AuthUser:
        if user is None:
            raise NotAuthenticatedError()
        mute = await self.mutes.get_current_mute(user.id)
        if mute is not None:
            raise UserMutedError(
                f"You are muted and cannot post or comment for {mute.time_remaining_text()}"
            )
        return user

    @staticmethod
    def _require_user(user: AuthUser | None) -> AuthUser:
        if user is None:
            raise NotAuthenticatedError()
        return user

    async def is_app_host(self, user: AuthUser | None) -> bool:
        if user is None:
            return False
        return await self.roles.is_host(user.id)

    # ------------------------------------------------------------------ posts

    async def create_post(
        self,
        user: AuthUser | None,
        title: str,
        content: str,
        category: ForumCategory = ForumCategory.GENERAL,
        image_files: Sequence[UploadFile] = (),
        files: Sequence[UploadFile] = (),
    ) -> ForumPost:
        """Create a post and upload its attachments.

        When an upload fails the post is removed again and the error is
        re-raised.
        """
        user = await self._require_can_write(user)
        title, content = title.strip(), content.strip()
        if not title or not content:
            raise InvalidInputError("Title and content are required")

        now = utcnow()
        post = await self.datastore.add(
            ForumPost(
                title=title,
                content=content,
                category=category.value,
                author_id=user.id,
                author_name=post_author_name(user),
                author_avatar=author_avatar(user.user_metadata),
                image_urls=[],
                file_urls=[],
                created_at=now,
                updated_at=now,
                is_pinned=False,
                is_locked=False,
                comment_count=0,
                likes_count=0,
            )
        )

        if image_files or files:
            uploaded: list[str] = []
            try:
                image_urls = await self.attachments.upload_images(f"posts/{post.id}", "post", post.id, image_files)
                uploaded.extend(image_urls)
                file_urls = await self.attachments.upload_files(f"posts/{post.id}", "post", post.id, files)
                uploaded.extend(file_urls)
            except Exception:
                await self.datastore.delete(ForumPost, post.id)
                await self.attachments.remove(uploaded)
                raise
            post = await self._set_post_columns(post.id, image_urls=image_urls, file_urls=file_urls)

        log.info("User %s created post %d", user.id, post.id)
        await emit(self.container.publisher, "forum_post", "created", post.id, post.to_dict(), actor_id=user.id)
        return post

    async def _set_post_columns(self, post_id: int, **values: Any) -> ForumPost:
        async with self.datastore.get_session() as session:
            post = await session.get(ForumPost, post_id)
            if post is None:
                raise NotFoundError("Post not found")
            for key, value in values.items():
                setattr(post, key, value)
            post.updated_at = utcnow()
            await session.commit()
        self.datastore.record("update", ForumPost.__tablename__)
        return post

    async def _require_post_owner_or_host(self, user: AuthUser, post_id: int, action: str) -> ForumPost:
        post = await self.datastore.get(ForumPost, post_id)
        if post is None:
            raise NotFoundError("Post not found")
        if post.author_id != user.id and not await self.roles.is_host(user.id):
            raise PermissionDeniedError(f"You do not have permission to {action} this post")
        return post

    async def update_post(
        self,
        user: AuthUser | None,
        post_id: int,
        title: str,
        content: str,
        category: ForumCategory | None = None,
    ) -> ForumPost:
        user = self._require_user(user)
        await self._require_post_owner_or_host(user, post_id, "edit")
        title, content = title.strip(), content.strip()
        if not title or not content:
            raise InvalidInputError("Title and content are required")
        values: dict[str, Any] = {"title": title, "content": content}
        if category is not None:
            values["category"] = category.value
        post = await self._set_post_columns(post_id, **values)
        await emit(self.container.publisher, "forum_post", "updated", post.id, post.to_dict(), actor_id=user.id)
        return post

    async def update_post_images(self, user: AuthUser | None, post_id: int, image_urls: list[str]) -> ForumPost:
        user = self._require_user(user)
        await self._require_post_owner_or_host(user, post_id, "edit")
        return await self._set_post_columns(post_id, image_urls=list(image_urls))

    async def update_post_files(self, user: AuthUser | None, post_id: int, file_urls: list[str]) -> ForumPost:
        user = self._require_user(user)
        await self._require_post_owner_or_host(user, post_id, "edit")
        return await self._set_post_columns(post_id, file_urls=list(file_urls))

    async def upload_post_images(self, user: AuthUser | None, post_id: int, files: Sequence[UploadFile]) -> list[str]:
        user = self._require_user(user)
        await self._require_post_owner_or_host(user, post_id, "edit")
        return await self.attachments.upload_images(f"posts/{post_id}", "post", post_id, files)

    async def upload_post_files(self, user: AuthUser | None, post_id: int, files: Sequence[UploadFile]) -> list[str]:
        user = self._require_user(user)
        await self._require_post_owner_or_host(user, post_id, "edit")
        return await self.attachments.upload_files(f"posts/{post_id}", "post", post_id, files)

    async def delete_post(self, user: AuthUser | None, post_id: int) -> None:
        """Delete a post with all its comments, then clean up attachments."""
        user = self._require_user(user)
        await self._require_post_owner_or_host(user, post_id, "delete")

        async with self.datastore.get_session() as session:
            post = await session.get(ForumPost, post_id)
            if post is None:
                raise NotFoundError("Post not found")
            urls = [*(post.image_urls or []), *(post.file_urls or [])]
            comments = (await session.scalars(select(ForumComment).where(ForumComment.post_id == post_id))).all()
            for comment in comments:
                urls.extend(comment.image_urls or [])
                urls.extend(comment.file_urls or [])

            await session.execute(delete(ForumComment).where(ForumComment.post_id == post_id))
            await session.delete(post)
            await session.commit()
        self.datastore.record("delete", ForumPost.__tablename__)

        removed = await self.attachments.remove(urls)
        log.info("Deleted post %d (%d comments, %d attachments removed)", post_id, len(comments), removed)
        await emit(self.container.publisher, "forum_post", "deleted", post_id, {"id": post_id}, actor_id=user.id)

    async def _toggle_flag(self, user: AuthUser | None, post_id: int, column: str, action: str) -> ForumPost:
        if user is None:
            raise NotAuthenticatedError()
        if not await self.roles.is_host(user.id):
            raise PermissionDeniedError(f"Only the app host can {action} posts")
        async with self.datastore.get_session() as session:
            post = await session.get(ForumPost, post_id)
            if post is None:
                raise NotFoundError("Post not found")
            setattr(post, column, not getattr(post, column))
            post.updated_at = utcnow()
            await session.commit()
        await emit(self.container.publisher, "forum_post", "updated", post.id, post.to_dict(), actor_id=user.id)
        return post

    async def toggle_pin(self, user: AuthUser | None, post_id: int) -> ForumPost:
        return await self._toggle_flag(user, post_id, "is_pinned", "pin/unpin")

    async def toggle_lock(self, user: AuthUser | None, post_id: int) -> ForumPost:
        return await self._toggle_flag(user, post_id, "is_locked", "lock/unlock")

    # --------------------------------------------------------------- comments

    async def add_comment(
        self,
        user: AuthUser | None,
        post_id: int,
        content: str,
        parent_comment_id: int | None = None,
        image_files: Sequence[UploadFile] = (),
        files: Sequence[UploadFile] = (),
    ) -> ForumComment:
        user = await self._require_can_write(user)
        content = content.strip()
        if not content:
            raise InvalidInputError("Comment cannot be empty")

        async with self.datastore.get_session() as session:
            post = await session.get(ForumPost, post_id)
            if post is None:
                raise NotFoundError("Post not found")
            if post.is_locked:
                raise PermissionDeniedError("This post is locked and cannot receive new comments")
            if parent_comment_id is not None:
                parent = await session.get(ForumComment, parent_comment_id)
                if parent is None or parent.post_id != post_id:
                    raise NotFoundError("Parent comment not found")

            now = utcnow()
            comment = ForumComment(
                post_id=post_id,
                content=content,
                author_id=user.id,
                author_name=comment_author_name(user),
                author_avatar=author_avatar(user.user_metadata),
                image_urls=[],
                file_urls=[],
                created_at=now,
                updated_at=now,
                parent_comment_id=parent_comment_id,
            )
            session.add(comment)
            await session.execute(
                update(ForumPost)
                .where(ForumPost.id == post_id)
                .values(comment_count=ForumPost.comment_count + 1)
            )
            await session.commit()
        self.datastore.record("insert", ForumComment.__tablename__)

        if image_files or files:
            folder = f"comments/{comment.id}"
            image_urls = await self.attachments.upload_images(folder, "comment", comment.id, image_files)
            file_urls = await self.attachments.upload_files(folder, "comment", comment.id, files)
            async with self.datastore.get_session() as session:
                stored = await session.get(ForumComment, comment.id)
                if stored is not None:
                    stored.image_urls = image_urls
                    stored.file_urls = file_urls
                    await session.commit()
                    comment = stored

        await emit(
            self.container.publisher, "forum_comment", "created", comment.id, comment.to_dict(), actor_id=user.id
        )
        return comment

    async def update_comment(
        self,
        user: AuthUser | None,
        comment_id: int,
        content: str,
        image_urls: list[str] | None = None,
        file_urls: list[str] | None = None,
    ) -> ForumComment:
        if user is None:
            raise NotAuthenticatedError()
        content = content.strip()
        if not content:
            raise InvalidInputError("Comment cannot be empty")
        async with self.datastore.get_session() as session:
            comment = await session.get(ForumComment, comment_id)
            if comment is None:
                raise NotFoundError("Comment not found")
            if comment.author_id != user.id:
                raise PermissionDeniedError("You can only edit your own comments")
            comment.content = content
            comment.updated_at = utcnow()
            if image_urls is not None:
                comment.image_urls = list(image_urls)
            if file_urls is not None:
                comment.file_urls = list(file_urls)
            await session.commit()
        await emit(
            self.container.publisher, "forum_comment", "updated", comment.id, comment.to_dict(), actor_id=user.id
        )
        return comment

    async def delete_comment(self, user: AuthUser | None, comment_id: int) -> int:
        """Delete a comment and its whole reply tree.

        Allowed for the comment author, the post author and hosts. Replies
        are removed children first.

        Returns:
            Number of comments deleted.
        """
        if user is None:
            raise NotAuthenticatedError()

        async with self.datastore.get_session() as session:
            comment = await session.get(ForumComment, comment_id)
            if comment is None:
                raise NotFoundError("Comment not found")
            post = await session.get(ForumPost, comment.post_id)
            is_allowed = (
                comment.author_id == user.id
                or (post is not None and post.author_id == user.id)
                or await self.roles.is_host(user.id)
            )
            if not is_allowed:
                raise PermissionDeniedError("You do not have permission to delete this comment")

            siblings = list(
                (await session.scalars(select(ForumComment).where(ForumComment.post_id == comment.post_id))).all()
            )
            by_id = {c.id: c for c in siblings}
            order = [*descendant_ids_depth_first(siblings, comment_id), comment_id]

            urls: list[str] = []
            for target_id in order:
                target = by_id[target_id]
                urls.extend(target.image_urls or [])
                urls.extend(target.file_urls or [])
                await session.delete(target)
                await session.flush()

            await session.execute(
                update(ForumPost)
                .where(ForumPost.id == comment.post_id)
                .values(
                    comment_count=case(
                        (ForumPost.comment_count > len(order), ForumPost.comment_count - len(order)), else_=0
                    )
                )
            )
            await session.commit()
        self.datastore.record("delete", ForumComment.__tablename__)

        await self.attachments.remove(urls)
        await emit(
            self.container.publisher,
            "forum_comment",
            "deleted",
            comment_id,
            {"id": comment_id, "post_id": comment.post_id, "deleted_ids": order},
            actor_id=user.id,
        )
        return len(order)


@dataclass
class ForumFeed:
    """Loaded posts with the category and search filters of a forum screen.

    Matching ignores case and accents; results are pinned first, then newest.
    """

    posts: list[ForumPost] = field(default_factory=list)
    category: ForumCategory | None = None
    search_query: str = ""

    async def load(self, service: ForumService, *, limit: int = 50) -> list[ForumPost]:
        self.posts = await service.get_posts(limit=limit)
        return self.filtered_posts

    def search(self, query: str) -> list[ForumPost]:
        self.search_query = query
        return self.filtered_posts

    def filter_by_category(self, category: ForumCategory | None) -> list[ForumPost]:
        self.category = category
        return self.filtered_posts

    def upsert(self, post: ForumPost) -> None:
        self.posts = [post, *(p for p in self.posts if p.id != post.id)]

    def remove(self, post_id: int) -> None:
        self.posts = [p for p in self.posts if p.id != post_id]

    @property
    def filtered_posts(self) -> list[ForumPost]:
        result = self.posts
        if self.category is not None:
            result = [p for p in result if ForumCategory.parse(p.category) is self.category]
        query = self.search_query.strip()
        if query:
            result = [
                p
                for p in result
                if matches_normalized(p.title, query)
                or matches_normalized(p.content, query)
                or matches_normalized(p.author_name, query)
            ]
        return sorted(result, key=lambda p: (not p.is_pinned, -p.created_at.timestamp()))
