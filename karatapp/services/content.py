"""Kata and ohyo collections.

``ContentService`` keeps the last list read from the row store together with
the search and category filters of the list screen. Katas are searched by
name and description with name matches ranked first; ohyos are also found by
their number (``5``, ``ohyo5``, ``o-5``, ``fifth``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from ..core.datastore import DataStore
from ..core.errors import InvalidInputError, KaratappError, NotFoundError
from ..core.publisher import emit
from ..core.retry import RetryPolicy, retry_async, should_retry_error, with_retry
from ..models.enums import ContentKind, OhyoCategory
from ..models.models import Kata, Ohyo, utcnow
from ..utils.search import (
    matches_exact_number,
    normalize_search_text,
    ordinal_forms,
    search_number,
    split_into_words,
)
from .attachments import AttachmentEditSession, AttachmentStore, move_item

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from ..core.container import Container
    from ..core.publisher import ObjectType
    from ..models.schemas import UploadFile

    type Technique = Kata | Ohyo

log = logging.getLogger("content")

_OBJECT_TYPES: dict[ContentKind, ObjectType] = {
    ContentKind.KATA: "kata",
    ContentKind.OHYO: "ohyo",
}


def in_category(item: Technique, category: OhyoCategory | None) -> bool:
    if category is None or category is OhyoCategory.ALL:
        return True
    return OhyoCategory.from_style(item.style) is category


def rank_by_name(items: Sequence[Technique], query: str) -> list[Technique]:
    """Items whose name or description contains ``query``, best match first.

    Exact names come first, then names starting with the query, then other
    name matches, then description matches; ties are sorted by name.
    """
    needle = normalize_search_text(query)
    if not needle:
        return list(items)

    def sort_key(item: Technique) -> tuple[bool, bool, bool, str]:
        name = normalize_search_text(item.name)
        return (name != needle, not name.startswith(needle), needle not in name, name)

    matches = [
        item
        for item in items
        if needle in normalize_search_text(item.name) or needle in normalize_search_text(item.description or "")
    ]
    return sorted(matches, key=sort_key)


def _matches_ohyo_text(item: Technique, query: str, needle: str) -> bool:
    name = normalize_search_text(item.name)
    if name.startswith(needle):
        return True
    name_words = split_into_words(item.name)
    if any(word.startswith(needle) or needle.startswith(word) for word in name_words):
        return True
    description = normalize_search_text(item.description or "")
    style = normalize_search_text(item.style or "")
    if needle in description or needle in style:
        return True
    words = [*name_words, *split_into_words(item.description or ""), *split_into_words(item.style or "")]
    query_words = split_into_words(query)
    return bool(query_words) and all(any(q in word for word in words) for q in query_words)


def search_by_number(items: Sequence[Technique], query: str) -> list[Technique]:
    """Ohyo search.

    A number query matches the order, a standalone number or ordinal in the
    name, or the id; the item at that order comes first, the rest follow by
    order. Text queries match name prefixes, words, description and style.
    """
    needle = normalize_search_text(query)
    if not needle:
        return list(items)

    number = search_number(query)
    if number is None:
        return [item for item in items if _matches_ohyo_text(item, query, needle)]

    ordinals = ordinal_forms(number)
    matches = [
        item
        for item in items
        if str(item.order) == number
        or matches_exact_number(normalize_search_text(item.name), number, ordinals)
        or str(item.id) == number
    ]
    return sorted(matches, key=lambda item: (str(item.order) != number, item.order))


class ContentService:
    """Katas or ohyos with their list state.

    Attributes:
        kind (ContentKind): which collection
        items (list): last successful read, in display order
        search_query (str): active search text
        category (OhyoCategory | None): active category filter
        attachments (AttachmentStore): image storage of the kind
    """

    def __init__(self, container: Container, kind: ContentKind):
        self.container = container
        self.kind = kind
        self.model: type[Kata] | type[Ohyo] = Kata if kind is ContentKind.KATA else Ohyo
        self.datastore = DataStore(container)
        self.attachments = AttachmentStore(container, kind)
        self.retry_policy = RetryPolicy.network()

        self.items: list[Technique] = []
        self.search_query = ""
        self.category: OhyoCategory | None = None

    @property
    def label(self) -> str:
        return self.kind.value.capitalize()

    async def _with_retry[T](self, func: Callable[[], Awaitable[T]], operation: str) -> T:
        return await retry_async(
            func, self.retry_policy, should_retry_error, operation=f"{self.kind.value}.{operation}"
        )

    # ------------------------------------------------------------------ reads

    @with_retry()
    async def _fetch_all(self) -> list[Technique]:
        async with self.datastore.get_session() as session:
            rows = await session.scalars(select(self.model).order_by(self.model.order.asc(), self.model.id.asc()))
            return list(rows.all())

    async def load(self) -> list[Technique]:
        """Read the whole collection ordered by ``order``."""
        self.items = await self._fetch_all()
        return self.items

    @property
    def filtered_items(self) -> list[Technique]:
        items = [item for item in self.items if in_category(item, self.category)]
        if not self.search_query.strip():
            return items
        if self.kind is ContentKind.OHYO:
            return search_by_number(items, self.search_query)
        return rank_by_name(items, self.search_query)

    async def list_items(self, search: str = "", category: OhyoCategory | None = None) -> list[Technique]:
        await self.load()
        self.search_query = search
        self.category = category
        return self.filtered_items

    def search(self, query: str) -> list[Technique]:
        self.search_query = query
        return self.filtered_items

    def filter_by_category(self, category: OhyoCategory | None) -> list[Technique]:
        self.category = category
        return self.filtered_items

    async def get_item(self, item_id: int) -> Technique:
        item = await self.datastore.get(self.model, item_id)
        if item is None:
            raise NotFoundError(f"{self.label} not found")
        return item

    async def edit_session(self, item_id: int) -> AttachmentEditSession:
        """Start editing an item with its images loaded."""
        session = AttachmentEditSession(self, await self.get_item(item_id))
        await session.load()
        return session

    # ----------------------------------------------------------------- writes

    def _replace_cached(self, item: Technique) -> None:
        self.items = [item if existing.id == item.id else existing for existing in self.items]

    async def add_item(
        self,
        name: str,
        description: str,
        style: str,
        images: Sequence[UploadFile] = (),
        video_urls: list[str] | None = None,
    ) -> Technique:
        """Insert a new item at the end of the list and upload its images.

        The id is one past the highest existing id.
        """
        name = name.strip()
        if not name:
            raise InvalidInputError(f"{self.label} name is required")

        async def insert() -> Technique:
            async with self.datastore.get_session() as session:
                max_id = await session.scalar(select(func.max(self.model.id)))
                count = await session.scalar(select(func.count()).select_from(self.model))
                item = self.model(
                    id=(max_id or 0) + 1,
                    name=name,
                    description=description.strip(),
                    style=style.strip(),
                    created_at=utcnow(),
                    image_urls=[],
                    video_urls=list(video_urls) if video_urls else None,
                    order=count or 0,
                )
                session.add(item)
                await session.commit()
                return item

        item = await self._with_retry(insert, "add")
        self.datastore.record("insert", self.model.__tablename__)

        if images:
            urls = await self.attachments.upload_images(item.id, images)
            item = await self.update_image_urls(item.id, urls)

        self.items = [*(i for i in self.items if i.id != item.id), item]
        log.info("Added %s %d (%s)", self.kind.value, item.id, item.name)
        await emit(self.container.publisher, _OBJECT_TYPES[self.kind], "created", item.id, item.to_dict())
        return item

    async def _set_columns(self, item_id: int, operation: str, **values: Any) -> Technique:
        async def write() -> Technique:
            async with self.datastore.get_session() as session:
                item = await session.get(self.model, item_id)
                if item is None:
                    raise NotFoundError(f"{self.label} not found")
                for key, value in values.items():
                    setattr(item, key, value)
                await session.commit()
                return item

        item = await self._with_retry(write, operation)
        self.datastore.record("update", self.model.__tablename__)
        self._replace_cached(item)
        return item

    async def update_item(
        self,
        item_id: int,
        *,
        name: str,
        description: str,
        style: str,
        video_urls: list[str] | None = None,
    ) -> Technique:
        """Write the text fields and video links. Empty video lists are stored as NULL."""
        if not name.strip():
            raise InvalidInputError(f"{self.label} name is required")
        item = await self._set_columns(
            item_id,
            "update",
            name=name.strip(),
            description=description,
            style=style,
            video_urls=list(video_urls) if video_urls else None,
        )
        await emit(self.container.publisher, _OBJECT_TYPES[self.kind], "updated", item.id, item.to_dict())
        return item

    async def update_image_urls(self, item_id: int, urls: Sequence[str]) -> Technique:
        """Persist the display order of the images. Signed URLs are stored unsigned."""
        stored = [self.attachments.public_url(url) for url in urls]
        item = await self._set_columns(item_id, "update_images", image_urls=stored)
        await emit(
            self.container.publisher,
            _OBJECT_TYPES[self.kind],
            "updated",
            item.id,
            {"id": item.id, "image_urls": stored},
        )
        return item

    async def delete_item(self, item_id: int) -> None:
        """Delete the images of an item, then the item.

        Image cleanup is best effort so that a storage problem cannot leave
        the row behind.
        """
        try:
            await self.attachments.delete_all(item_id)
        except KaratappError as e:
            log.warning("Could not delete images of %s %d: %s", self.kind.value, item_id, e.message)

        async def remove() -> bool:
            return await self.datastore.delete(self.model, item_id)

        if not await self._with_retry(remove, "delete"):
            raise NotFoundError(f"{self.label} not found")

        self.items = [item for item in self.items if item.id != item_id]
        log.info("Deleted %s %d", self.kind.value, item_id)
        await emit(self.container.publisher, _OBJECT_TYPES[self.kind], "deleted", item_id, {"id": item_id})

    async def reorder_items(self, old_index: int, new_index: int) -> bool:
        """Move an item in the list and persist every ``order``.

        Indexes follow drag-and-drop lists (see ``move_item``). Nothing
        happens while a search is active, since the visible list is then not
        the full one.

        Returns:
            False when skipped because of an active search.

        Raises:
            Whatever the write raised, after the list is reloaded.
        """
        if self.search_query.strip():
            log.debug("Ignoring reorder of %s while searching", self.kind.value)
            return False

        reordered = move_item(self.items, old_index, new_index)
        for position, item in enumerate(reordered):
            item.order = position
        self.items = reordered

        async def persist() -> None:
            async with self.datastore.get_session() as session:
                for item in reordered:
                    await session.execute(
                        update(self.model).where(self.model.id == item.id).values(order=item.order)
                    )
                await session.commit()

        try:
            await self._with_retry(persist, "reorder")
        except Exception:
            log.exception("Failed to reorder %s, reloading", self.kind.value)
            await self.load()
            raise
        self.datastore.record("reorder", self.model.__tablename__)
        return True
