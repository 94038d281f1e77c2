"""Comments on techniques, likes and favorites."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, delete, select, update

from ..core.datastore import DataStore
from ..core.errors import InvalidInputError, NotAuthenticatedError, NotFoundError, PermissionDeniedError
from ..core.lock import hold_lock
from ..core.publisher import emit
from ..models.enums import ContentKind, TargetType
from ..models.models import Favorite, ForumPost, KataComment, Like, OhyoComment, utcnow
from ..models.schemas import FavoriteRecord, LikeRecord
from .forum import author_avatar, post_author_name

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from ..core.container import Container
    from ..core.publisher import ObjectType
    from ..models.schemas import AuthUser

log = logging.getLogger("interactions")

type TechniqueComment = KataComment | OhyoComment

_COMMENT_OBJECT_TYPES: dict[ContentKind, ObjectType] = {
    ContentKind.KATA: "kata_comment",
    ContentKind.OHYO: "ohyo_comment",
}


def _comment_model(kind: ContentKind) -> type[KataComment] | type[OhyoComment]:
    return KataComment if kind is ContentKind.KATA else OhyoComment


def _comment_target_column(kind: ContentKind) -> Any:
    return KataComment.kata_id if kind is ContentKind.KATA else OhyoComment.ohyo_id


class InteractionService:
    """Technique comments plus the like and favorite toggles of every content kind.

    Toggles are serialised per (user, target) so a double tap cannot insert
    twice. Likes on forum posts keep ``forum_posts.likes_count`` in step.
    """

    def __init__(self, container: Container):
        self.container = container
        self.datastore = DataStore(container)
        if container.lock_manager is None:
            raise RuntimeError("Container is not set up properly.")
        self.lock_manager = container.lock_manager

    # --------------------------------------------------------------- comments

    async def get_comments(self, kind: ContentKind, item_id: int) -> list[TechniqueComment]:
        model = _comment_model(kind)
        async with self.datastore.get_session() as session:
            comments = (
                await session.scalars(
                    select(model)
                    .where(_comment_target_column(kind) == item_id)
                    .order_by(model.created_at.asc(), model.id.asc())
                )
            ).all()
        return list(comments)

    async def add_comment(
        self,
        user: AuthUser | None,
        kind: ContentKind,
        item_id: int,
        content: str,
        parent_comment_id: int | None = None,
    ) -> TechniqueComment:
        if user is None:
            raise NotAuthenticatedError()
        content = content.strip()
        if not content:
            raise InvalidInputError("Comment cannot be empty")

        now = utcnow()
        values: dict[str, Any] = {
            "content": content,
            "author_id": user.id,
            "author_name": post_author_name(user),
            "author_avatar": author_avatar(user.user_metadata),
            "created_at": now,
            "updated_at": now,
            "parent_comment_id": parent_comment_id,
        }
        if kind is ContentKind.KATA:
            comment: TechniqueComment = KataComment(kata_id=item_id, **values)
        else:
            comment = OhyoComment(ohyo_id=item_id, **values)
        comment = await self.datastore.add(comment)

        await emit(
            self.container.publisher,
            _COMMENT_OBJECT_TYPES[kind],
            "created",
            comment.id,
            comment.to_dict(),
            actor_id=user.id,
        )
        return comment

    async def _own_comment(
        self, session: AsyncSession, user: AuthUser, kind: ContentKind, comment_id: int, action: str
    ) -> TechniqueComment:
        comment = await session.get(_comment_model(kind), comment_id)
        if comment is None:
            raise NotFoundError("Comment not found")
        if comment.author_id != user.id:
            raise PermissionDeniedError(f"You do not have permission to {action} this comment")
        return comment

    async def update_comment(
        self, user: AuthUser | None, kind: ContentKind, comment_id: int, content: str
    ) -> TechniqueComment:
        if user is None:
            raise NotAuthenticatedError()
        content = content.strip()
        if not content:
            raise InvalidInputError("Comment cannot be empty")
        async with self.datastore.get_session() as session:
            comment = await self._own_comment(session, user, kind, comment_id, "edit")
            comment.content = content
            comment.updated_at = utcnow()
            await session.commit()
        return comment

    async def delete_comment(self, user: AuthUser | None, kind: ContentKind, comment_id: int) -> None:
        if user is None:
            raise NotAuthenticatedError()
        async with self.datastore.get_session() as session:
            comment = await self._own_comment(session, user, kind, comment_id, "delete")
            await session.delete(comment)
            await session.commit()
        self.datastore.record("delete", _comment_model(kind).__tablename__)
        await emit(
            self.container.publisher,
            _COMMENT_OBJECT_TYPES[kind],
            "deleted",
            comment_id,
            {"id": comment_id},
            actor_id=user.id,
        )

    # ---------------------------------------------------------------- toggles

    def _lock_key(self, name: str, user_id: str, target_type: TargetType, target_id: int) -> str:
        return f"lock:{name}:{user_id}:{target_type.value}:{target_id}"

    async def toggle_like(self, user: AuthUser | None, target_type: TargetType, target_id: int) -> bool:
        """Like or unlike a target. Returns the new state."""
        if user is None:
            raise NotAuthenticatedError()

        async with hold_lock(self.lock_manager, self._lock_key("like", user.id, target_type, target_id)):
            async with self.datastore.get_session() as session:
                existing = await session.scalar(
                    select(Like).where(
                        Like.user_id == user.id,
                        Like.target_type == target_type.value,
                        Like.target_id == target_id,
                    )
                )
                if existing is not None:
                    await session.delete(existing)
                    delta = -1
                else:
                    session.add(
                        Like(
                            user_id=user.id,
                            user_name=post_author_name(user),
                            target_type=target_type.value,
                            target_id=target_id,
                            created_at=utcnow(),
                        )
                    )
                    delta = 1
                if target_type is TargetType.FORUM_POST:
                    await session.execute(
                        update(ForumPost)
                        .where(ForumPost.id == target_id)
                        .values(
                            likes_count=case(
                                (ForumPost.likes_count + delta < 0, 0), else_=ForumPost.likes_count + delta
                            )
                        )
                    )
                await session.commit()

        liked = delta > 0
        await emit(
            self.container.publisher,
            "like",
            "toggled",
            f"{target_type.value}:{target_id}",
            {"target_type": target_type.value, "target_id": target_id, "liked": liked},
            actor_id=user.id,
        )
        return liked

    async def is_liked(self, user: AuthUser | None, target_type: TargetType, target_id: int) -> bool:
        if user is None:
            return False
        async with self.datastore.get_session() as session:
            found = await session.scalar(
                select(Like.id).where(
                    Like.user_id == user.id,
                    Like.target_type == target_type.value,
                    Like.target_id == target_id,
                )
            )
        return found is not None

    async def get_likes(self, target_type: TargetType, target_id: int) -> list[LikeRecord]:
        """Likes of a target, newest first."""
        async with self.datastore.get_session() as session:
            likes = (
                await session.scalars(
                    select(Like)
                    .where(Like.target_type == target_type.value, Like.target_id == target_id)
                    .order_by(Like.created_at.desc(), Like.id.desc())
                )
            ).all()
        return [LikeRecord.model_validate(like) for like in likes]

    async def toggle_favorite(self, user: AuthUser | None, target_type: TargetType, target_id: int) -> bool:
        """Add or remove a favorite. Returns the new state."""
        if user is None:
            raise NotAuthenticatedError()

        async with hold_lock(self.lock_manager, self._lock_key("favorite", user.id, target_type, target_id)):
            async with self.datastore.get_session() as session:
                result = await session.execute(
                    delete(Favorite).where(
                        Favorite.user_id == user.id,
                        Favorite.target_type == target_type.value,
                        Favorite.target_id == target_id,
                    )
                )
                favorited = (result.rowcount or 0) == 0  # type: ignore[attr-defined]
                if favorited:
                    session.add(
                        Favorite(
                            user_id=user.id,
                            target_type=target_type.value,
                            target_id=target_id,
                            created_at=utcnow(),
                        )
                    )
                await session.commit()

        await emit(
            self.container.publisher,
            "favorite",
            "toggled",
            f"{target_type.value}:{target_id}",
            {"target_type": target_type.value, "target_id": target_id, "favorited": favorited},
            actor_id=user.id,
        )
        return favorited

    async def is_favorited(self, user: AuthUser | None, target_type: TargetType, target_id: int) -> bool:
        if user is None:
            return False
        async with self.datastore.get_session() as session:
            found = await session.scalar(
                select(Favorite.id).where(
                    Favorite.user_id == user.id,
                    Favorite.target_type == target_type.value,
                    Favorite.target_id == target_id,
                )
            )
        return found is not None

    async def get_favorites(self, target_type: TargetType, target_id: int) -> list[FavoriteRecord]:
        async with self.datastore.get_session() as session:
            favorites = (
                await session.scalars(
                    select(Favorite)
                    .where(Favorite.target_type == target_type.value, Favorite.target_id == target_id)
                    .order_by(Favorite.created_at.desc(), Favorite.id.desc())
                )
            ).all()
        return [FavoriteRecord.model_validate(favorite) for favorite in favorites]

    async def get_user_favorite_ids(self, user: AuthUser | None, target_type: TargetType) -> list[int]:
        """Ids of the targets of one kind the user favorited. Empty when anonymous."""
        if user is None:
            return []
        async with self.datastore.get_session() as session:
            ids = (
                await session.scalars(
                    select(Favorite.target_id)
                    .where(Favorite.user_id == user.id, Favorite.target_type == target_type.value)
                    .order_by(Favorite.created_at.desc())
                )
            ).all()
        return list(ids)
