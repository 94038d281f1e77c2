"""Kata and ohyo image attachments.

Images of an item live in the kind's bucket under ``{item_id}/``. The
``image_urls`` column of the item stores the display order; listings of the
bucket are signed for previews and cached for a short time.

``AttachmentEditSession`` holds the state of one edit of an item: text
fields, existing images (removed or reordered), new local files and video
links. Saving reconciles it against the stores in one pass.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..core.errors import InvalidInputError, KaratappError, StorageError
from ..core.metrics import ATTACHMENT_SAVE_DURATION
from ..core.retry import RetryPolicy, retry_async, should_retry_image_error
from ..core.storage import bucket_from_url, file_name_from_url, path_from_url
from ..models.enums import ContentKind
from ..utils.video import is_valid_video_url

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from cashews import Cache

    from ..core.container import Container
    from ..core.storage import ObjectStore
    from ..models.models import Kata, Ohyo
    from ..models.schemas import UploadFile
    from .content import ContentService

    type Technique = Kata | Ohyo

log = logging.getLogger("attachments")

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp"})
TEMP_FOLDERS = ("temp_upload", "temp_processing", "temp_backup")

# Traditional order of the Cho-in no kata photos, by file name.
CHO_IN_SEQUENCE = (
    "Buiging.jpg",
    "Gedan barai rechts.jpg",
    "Jun zuki rechts.jpg",
    "Gedan barai links.jpg",
    "Jun zuki links.jpg",
    "Gedan Barai voor.jpg",
    "Jodsn uke links.jpg",
    "Jodan uke rehts.jpg",
    "Jodan uke links 2.jpg",
    "Gedan barai schuin links.jpg",
    "Jun zuki schuin link.jpg",
    "Gedan barai schuin rechts.jpg",
    "Jun zuki schuin rechts.jpg",
    "Gedan barai midden rug.jpg",
    "Junzuki midden rechts.jpg",
    "Junzuki midden links.jpg",
    "Junzuki midden rechts 2.jpg",
    "Gedan barai schuin rechts voor.jpg",
    "Junzuki schuin rechts voor.jpg",
    "Gedan Barai schuin links voor.jpg",
    "Junzyuki schuin links voor.jpg",
    "Yehoi.jpg",
    "Buiging 2.jpg",
)

# Corrected spellings of the same steps, position for position.
CHO_IN_ALTERNATIVES = (
    "buiging.jpg",
    "gedan barai rechts.jpg",
    "jun zuki rechts.jpg",
    "gedan barai links.jpg",
    "jun zuki links.jpg",
    "gedan barai voor.jpg",
    "jodan uke links.jpg",
    "jodan uke rechts.jpg",
    "jodan uke links 2.jpg",
    "gedan barai schuin links.jpg",
    "jun zuki schuin links.jpg",
    "gedan barai schuin rechts.jpg",
    "jun zuki schuin rechts.jpg",
    "gedan barai midden rug.jpg",
    "jun zuki midden rechts.jpg",
    "jun zuki midden links.jpg",
    "jun zuki midden rechts 2.jpg",
    "gedan barai schuin rechts voor.jpg",
    "jun zuki schuin rechts voor.jpg",
    "gedan barai schuin links voor.jpg",
    "jun zuki schuin links voor.jpg",
    "yehoi.jpg",
    "buiging 2.jpg",
)

UNKNOWN_POSITION = 999

_CHO_IN_POSITIONS = {
    name.lower(): i for names in (CHO_IN_SEQUENCE, CHO_IN_ALTERNATIVES) for i, name in enumerate(names)
}


def is_cho_in(name: str) -> bool:
    lowered = name.lower()
    return "choin" in lowered or "cho-in" in lowered


def cho_in_position(url: str) -> int:
    return _CHO_IN_POSITIONS.get(file_name_from_url(url).lower(), UNKNOWN_POSITION)


def sort_by_cho_in_sequence(urls: Iterable[str]) -> list[str]:
    """Order photos by the Cho-in sequence. Unknown files go last, in their original order."""
    return sorted(urls, key=cho_in_position)


def is_image_name(name: str) -> bool:
    if not name or name.startswith("."):
        return False
    _, dot, ext = name.rpartition(".")
    return bool(dot) and ext.lower() in IMAGE_EXTENSIONS


def move_item[T](items: Sequence[T], old_index: int, new_index: int) -> list[T]:
    """Return ``items`` with one element moved.

    ``new_index`` is the drop position in the list before the move, as
    reported by drag-and-drop lists: moving down shifts it by one.
    """
    if not 0 <= old_index < len(items):
        raise InvalidInputError(f"Index out of range: {old_index}")
    if new_index > old_index:
        new_index -= 1
    if not 0 <= new_index < len(items):
        raise InvalidInputError(f"Index out of range: {new_index}")
    result = list(items)
    result.insert(new_index, result.pop(old_index))
    return result


def object_key(url: str) -> str:
    """Identity of a stored image: bucket and path, independent of URL signing."""
    bucket, path = bucket_from_url(url), path_from_url(url)
    if bucket is None or path is None:
        return url
    return f"{bucket}/{path}"


@dataclass(slots=True)
class ReconcilePlan:
    """What saving an edit has to do.

    Attributes:
        removed: original URLs no longer in the edited list; to be deleted.
        new_files: local files to upload, in display order.
        kept_order: edited list of existing URLs; uploads are appended to it.
    """

    removed: list[str] = field(default_factory=list)
    new_files: list[UploadFile] = field(default_factory=list)
    kept_order: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.removed and not self.new_files


def plan_reconcile(original: Sequence[str], edited: Sequence[str], new_files: Sequence[UploadFile]) -> ReconcilePlan:
    edited_keys = {object_key(url) for url in edited}
    return ReconcilePlan(
        removed=[url for url in original if object_key(url) not in edited_keys],
        new_files=list(new_files),
        kept_order=list(edited),
    )


class AttachmentStore:
    """Images of one content kind in its bucket.

    Attributes:
        kind (ContentKind): kata or ohyo
        bucket (str): bucket name of the kind
    """

    def __init__(self, container: Container, kind: ContentKind):
        if container.object_store is None or container.cache is None:
            raise RuntimeError("Container is not set up properly.")
        self.store: ObjectStore = container.object_store
        self.cache: Cache = container.cache
        self.kind = kind
        buckets = container.config.buckets
        self.bucket = buckets.kata_images if kind is ContentKind.KATA else buckets.ohyo_images
        self.preview_expires_in = container.config.storage.preview_url_expires_seconds
        self.list_ttl = container.config.image_list_ttl_seconds
        self.retry_policy = RetryPolicy.image()

    def _cache_key(self, item_id: int) -> str:
        return f"images:{self.kind.value}:{item_id}"

    async def invalidate(self, item_id: int) -> None:
        await self.cache.delete(self._cache_key(item_id))

    async def _preview_url(self, path: str) -> str:
        try:
            return await self.store.create_signed_url(self.bucket, path, self.preview_expires_in)
        except StorageError as e:
            log.debug("Signing %s/%s failed, using public URL: %s", self.bucket, path, e.message)
            return self.store.public_url(self.bucket, path)

    def public_url(self, url: str) -> str:
        """Unsigned URL of a stored image. Foreign URLs are returned unchanged."""
        path = path_from_url(url)
        if path is None or bucket_from_url(url) != self.bucket:
            return url
        return self.store.public_url(self.bucket, path)

    async def list_images(self, item_id: int) -> list[str]:
        """Preview URLs of the images of an item, sorted by file name."""
        key = self._cache_key(item_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return list(cached)

        async def fetch():
            if not await self.store.bucket_exists(self.bucket):
                return []
            return await self.store.list(self.bucket, str(item_id))

        objects = await retry_async(
            fetch, self.retry_policy, should_retry_image_error, operation=f"{self.kind.value}.list_images"
        )
        names = sorted(obj.name for obj in objects if is_image_name(obj.name))
        urls = [await self._preview_url(f"{item_id}/{name}") for name in names]
        await self.cache.set(key, urls, expire=self.list_ttl)
        return urls

    async def upload_images(self, item_id: int, files: Sequence[UploadFile]) -> list[str]:
        """Upload files in order and return their public URLs in the same order."""
        files = [f for f in files if f.data]
        if not files:
            return []
        if not await self.store.bucket_exists(self.bucket):
            await self.store.create_bucket(self.bucket)

        urls = []
        for i, upload in enumerate(files):
            ext = upload.extension or ".jpg"
            path = f"{item_id}/{self.kind.value}_{item_id}_{i}_{int(time.time() * 1000)}{ext}"

            async def put(path: str = path, upload: UploadFile = upload) -> str:
                return await self.store.upload(self.bucket, path, upload.data, content_type=upload.content_type)

            await retry_async(put, self.retry_policy, should_retry_image_error, operation=f"{self.kind.value}.upload")
            urls.append(self.store.public_url(self.bucket, path))

        await self.invalidate(item_id)
        log.info("Uploaded %d images for %s %d", len(urls), self.kind.value, item_id)
        return urls

    async def delete_images(self, urls: Iterable[str]) -> int:
        """Delete images by URL. URLs outside this bucket are ignored."""
        paths = []
        for url in urls:
            path = path_from_url(url)
            if path is None or bucket_from_url(url) != self.bucket:
                log.warning("Skipping image outside %s: %s", self.bucket, url)
                continue
            paths.append(path)
        if not paths:
            return 0

        async def remove() -> list[str]:
            return await self.store.remove(self.bucket, paths)

        removed = await retry_async(
            remove, self.retry_policy, should_retry_image_error, operation=f"{self.kind.value}.delete_images"
        )
        for item_id in {path.split("/", 1)[0] for path in paths}:
            if item_id.isdigit():
                await self.invalidate(int(item_id))
        return len(removed)

    async def delete_all(self, item_id: int) -> bool:
        """Remove the whole image folder of an item. Returns False when it was empty."""

        async def remove() -> bool:
            return await self.store.remove_folder(self.bucket, str(item_id))

        removed = await retry_async(
            remove, self.retry_policy, should_retry_image_error, operation=f"{self.kind.value}.delete_all"
        )
        await self.invalidate(item_id)
        return removed

    async def cleanup_temp_folders(self) -> list[str]:
        """Empty the known temporary upload folders of the bucket.

        Nothing outside ``TEMP_FOLDERS`` is touched.

        Returns:
            Paths that were deleted.
        """
        if not await self.store.bucket_exists(self.bucket):
            return []
        policy = RetryPolicy(max_retries=2, initial_delay=self.retry_policy.initial_delay)
        deleted: list[str] = []
        for folder in TEMP_FOLDERS:

            async def clean(folder: str = folder) -> list[str]:
                entries = await self.store.list(self.bucket, folder)
                paths = [f"{folder}/{entry.name}" for entry in entries]
                if not paths:
                    return []
                return await self.store.remove(self.bucket, paths)

            removed = await retry_async(clean, policy, should_retry_image_error, operation="cleanup_temp_folders")
            if removed:
                log.info("Removed %d temporary files from %s/%s", len(removed), self.bucket, folder)
            deleted.extend(removed)
        return deleted


class AttachmentEditSession:
    """In-progress edit of one kata or ohyo.

    Image reorders are persisted immediately; if that fails the move is
    undone and the session is marked dirty so the next ``save()`` writes
    the order. Every other change waits for ``save()``.

    Attributes:
        name, description, style: edited text fields.
        current_urls: existing images in their edited order.
        new_files: local files selected for upload.
        video_urls: edited video links.
        is_dirty: True when ``save()`` has something to write.
    """

    def __init__(self, content: ContentService, item: Technique):
        self.content = content
        self.attachments = content.attachments
        self.item_id = item.id
        self.item_name = item.name
        self.name = item.name
        self.description = item.description or ""
        self.style = item.style or ""
        self.video_urls: list[str] = list(item.video_urls or [])
        self.stored_order: list[str] = list(item.image_urls or [])
        self.original_urls: list[str] = []
        self.current_urls: list[str] = []
        self.new_files: list[UploadFile] = []
        self.is_dirty = False

    @property
    def kind(self) -> ContentKind:
        return self.content.kind

    def _apply_stored_order(self, listed: list[str]) -> list[str]:
        by_key = {object_key(url): url for url in listed}
        ordered = [by_key.pop(object_key(url)) for url in self.stored_order if object_key(url) in by_key]
        return [*ordered, *by_key.values()]

    async def load(self) -> list[str]:
        """Load the existing images.

        The bucket listing is arranged in the stored order, with unknown
        files after it. Cho-in katas without a stored order get the
        traditional sequence. If listing fails the stored URLs are used.
        """
        try:
            listed = await self.attachments.list_images(self.item_id)
        except KaratappError as e:
            log.warning("Listing images of %s %d failed, using stored order: %s", self.kind, self.item_id, e.message)
            urls = list(self.stored_order)
        else:
            if self.stored_order:
                urls = self._apply_stored_order(listed)
            elif self.kind is ContentKind.KATA and is_cho_in(self.item_name) and listed:
                urls = sort_by_cho_in_sequence(listed)
                log.info("Applied the Cho-in sequence to kata %d", self.item_id)
            else:
                urls = listed

        self.original_urls = list(urls)
        self.current_urls = list(urls)
        self.new_files = []
        self.is_dirty = False
        return self.current_urls

    def update_fields(
        self, *, name: str | None = None, description: str | None = None, style: str | None = None
    ) -> None:
        if name is not None and name != self.name:
            self.name = name
            self.is_dirty = True
        if description is not None and description != self.description:
            self.description = description
            self.is_dirty = True
        if style is not None and style != self.style:
            self.style = style
            self.is_dirty = True

    def remove_image(self, index: int) -> str:
        if not 0 <= index < len(self.current_urls):
            raise InvalidInputError(f"Index out of range: {index}")
        self.is_dirty = True
        return self.current_urls.pop(index)

    def add_images(self, files: Iterable[UploadFile]) -> None:
        files = list(files)
        if files:
            self.new_files.extend(files)
            self.is_dirty = True

    def remove_new_image(self, index: int) -> UploadFile:
        if not 0 <= index < len(self.new_files):
            raise InvalidInputError(f"Index out of range: {index}")
        self.is_dirty = True
        return self.new_files.pop(index)

    def reorder_new_images(self, old_index: int, new_index: int) -> None:
        self.new_files = move_item(self.new_files, old_index, new_index)
        self.is_dirty = True

    async def reorder_images(self, old_index: int, new_index: int) -> bool:
        """Move an existing image.

        Kata orders are persisted right away. Ohyo orders stay local until
        ``save()``, like every other ohyo edit.

        Returns:
            True when the order was saved, False when it is left for
            ``save()`` (ohyos, or a kata write that failed and was reverted).
        """
        previous = list(self.current_urls)
        self.current_urls = move_item(self.current_urls, old_index, new_index)
        if self.kind is ContentKind.OHYO:
            self.is_dirty = True
            return False
        try:
            await self.content.update_image_urls(self.item_id, self.current_urls)
        except Exception as e:
            log.warning("Saving image order of %s %d failed, reverted: %s", self.kind, self.item_id, e)
            self.current_urls = previous
            self.is_dirty = True
            return False
        self.stored_order = list(self.current_urls)
        return True

    def add_video_url(self, url: str) -> None:
        url = url.strip()
        if not url:
            return
        if not is_valid_video_url(url):
            raise InvalidInputError("Invalid video URL. Use an http or https link.")
        self.video_urls.append(url)
        self.is_dirty = True

    def remove_video_url(self, url: str) -> bool:
        if url not in self.video_urls:
            return False
        self.video_urls.remove(url)
        self.is_dirty = True
        return True

    def plan(self) -> ReconcilePlan:
        return plan_reconcile(self.original_urls, self.current_urls, self.new_files)

    async def save(self) -> bool:
        """Write the edit.

        Text fields and videos are saved first, then removed images are
        deleted and new files uploaded. Uploads are appended to the kept
        images and the final order is written once. Errors propagate and
        leave the session dirty.

        Returns:
            False when there was nothing to save.
        """
        if not self.is_dirty:
            return False

        with ATTACHMENT_SAVE_DURATION.labels(kind=self.kind.value).time():
            await self.content.update_item(
                self.item_id,
                name=self.name.strip(),
                description=self.description.strip(),
                style=self.style.strip(),
                video_urls=self.video_urls or None,
            )

            plan = self.plan()
            if plan.removed:
                await self.attachments.delete_images(plan.removed)
            uploaded = await self.attachments.upload_images(self.item_id, plan.new_files)
            final = [*plan.kept_order, *uploaded]
            await self.content.update_image_urls(self.item_id, final)

        log.info(
            "Saved %s %d: %d removed, %d uploaded, %d images",
            self.kind.value,
            self.item_id,
            len(plan.removed),
            len(uploaded),
            len(final),
        )
        self.original_urls = list(final)
        self.current_urls = list(final)
        self.stored_order = list(final)
        self.new_files = []
        self.is_dirty = False
        return True
