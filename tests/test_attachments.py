"""Image attachments of katas and ohyos."""

import pytest

from karatapp.core.errors import InvalidInputError, StorageError
from karatapp.core.storage import file_name_from_url, path_from_url
from karatapp.models.enums import ContentKind
from karatapp.models.schemas import UploadFile
from karatapp.services.attachments import (
    UNKNOWN_POSITION,
    AttachmentEditSession,
    AttachmentStore,
    cho_in_position,
    is_cho_in,
    is_image_name,
    move_item,
    object_key,
    plan_reconcile,
    sort_by_cho_in_sequence,
)
from karatapp.services.content import ContentService

PUBLIC = "http://localhost:8080/storage/v1/object/public/kata_images"
SIGNED = "http://localhost:8080/storage/v1/object/sign/kata_images"


@pytest.mark.parametrize(
    ("old", "new", "expected"),
    [
        (0, 3, ["b", "c", "a"]),
        (2, 0, ["c", "a", "b"]),
        (1, 1, ["a", "b", "c"]),
        (0, 1, ["a", "b", "c"]),
    ],
)
def test_move_item(old, new, expected):
    assert move_item(["a", "b", "c"], old, new) == expected


def test_move_item_out_of_range():
    with pytest.raises(InvalidInputError):
        move_item(["a"], 1, 0)
    with pytest.raises(InvalidInputError):
        move_item(["a", "b"], 0, 5)


def test_cho_in_sequence():
    urls = [
        f"{PUBLIC}/1/extra.jpg",
        f"{PUBLIC}/1/yehoi.jpg",
        f"{SIGNED}/1/Gedan%20barai%20rechts.jpg?token=t&expires=1",
        f"{PUBLIC}/1/Buiging.jpg",
        f"{PUBLIC}/1/notes.jpg",
    ]

    assert [file_name_from_url(u) for u in sort_by_cho_in_sequence(urls)] == [
        "Buiging.jpg",
        "Gedan barai rechts.jpg",
        "yehoi.jpg",
        "extra.jpg",
        "notes.jpg",
    ]
    assert cho_in_position(f"{PUBLIC}/1/Jodan%20uke%20rehts.jpg") == cho_in_position(
        f"{PUBLIC}/1/jodan%20uke%20rechts.jpg"
    )
    assert cho_in_position("https://example.com/other.jpg") == UNKNOWN_POSITION
    assert is_cho_in("Cho-in no kata")
    assert is_cho_in("CHOIN")
    assert not is_cho_in("Heian Shodan")


@pytest.mark.parametrize(
    ("name", "expected"),
    [("a.JPG", True), ("b.webp", True), ("notes.txt", False), (".hidden.jpg", False), ("noext", False), ("", False)],
)
def test_is_image_name(name, expected):
    assert is_image_name(name) is expected


def test_object_key_ignores_signing():
    assert object_key(f"{SIGNED}/1/a.jpg?token=t&expires=1") == object_key(f"{PUBLIC}/1/a.jpg") == "kata_images/1/a.jpg"
    assert object_key("https://example.com/a.jpg") == "https://example.com/a.jpg"


def test_plan_reconcile():
    original = [f"{SIGNED}/1/a.jpg?token=t&expires=1", f"{SIGNED}/1/b.jpg?token=t&expires=1"]
    edited = [f"{PUBLIC}/1/b.jpg"]
    files = [UploadFile(name="c.jpg", data=b"c")]

    plan = plan_reconcile(original, edited, files)

    assert plan.removed == [original[0]]
    assert plan.kept_order == edited
    assert plan.new_files == files
    assert not plan.is_empty
    assert plan_reconcile(edited, edited, []).is_empty


@pytest.mark.asyncio
async def test_list_images_is_cached(container):
    store = AttachmentStore(container, ContentKind.KATA)
    await container.object_store.upload("kata_images", "1/b.jpg", b"b")
    await container.object_store.upload("kata_images", "1/notes.txt", b"n")

    first = await store.list_images(1)
    await container.object_store.upload("kata_images", "1/a.jpg", b"a")

    assert [file_name_from_url(u) for u in first] == ["b.jpg"]
    assert "token=" in first[0]
    assert await store.list_images(1) == first

    await store.invalidate(1)
    assert [file_name_from_url(u) for u in await store.list_images(1)] == ["a.jpg", "b.jpg"]


@pytest.mark.asyncio
async def test_upload_and_delete_images(container):
    store = AttachmentStore(container, ContentKind.OHYO)

    files = [
        UploadFile(name="x.PNG", data=b"x"),
        UploadFile(name="empty.jpg", data=b""),
        UploadFile(name="y", data=b"y"),
    ]
    urls = await store.upload_images(4, files)

    assert len(urls) == 2
    assert path_from_url(urls[0]).startswith("4/ohyo_4_0_")
    assert path_from_url(urls[0]).endswith(".png")
    assert path_from_url(urls[1]).endswith(".jpg")
    assert len(await store.list_images(4)) == 2

    removed = await store.delete_images([urls[0], "https://example.com/x.jpg", f"{PUBLIC}/4/x.jpg"])

    assert removed == 1
    assert len(await store.list_images(4)) == 1
    assert await store.delete_all(4)
    assert await store.list_images(4) == []


@pytest.mark.asyncio
async def test_cleanup_temp_folders(container):
    await container.object_store.upload("kata_images", "temp_upload/x.jpg", b"x")
    await container.object_store.upload("kata_images", "temp_backup/y.jpg", b"y")
    await container.object_store.upload("kata_images", "1/a.jpg", b"a")

    deleted = await AttachmentStore(container, ContentKind.KATA).cleanup_temp_folders()

    assert deleted == ["temp_upload/x.jpg", "temp_backup/y.jpg"]
    assert [o.name for o in await container.object_store.list("kata_images", "1")] == ["a.jpg"]


async def _kata_with_images(container, name: str, files: list[str], *, stored: list[str] | None = None):
    katas = ContentService(container, ContentKind.KATA)
    item = await katas.add_item(name, "", "")
    for file_name in files:
        await container.object_store.upload("kata_images", f"{item.id}/{file_name}", file_name.encode())
    if stored is not None:
        await katas.update_image_urls(
            item.id, [container.object_store.public_url("kata_images", f"{item.id}/{f}") for f in stored]
        )
    return katas, item


@pytest.mark.asyncio
async def test_edit_session_applies_stored_order(container):
    katas, item = await _kata_with_images(container, "Jion", ["a.jpg", "b.jpg", "c.jpg"], stored=["c.jpg", "a.jpg"])

    session = await katas.edit_session(item.id)

    assert [file_name_from_url(u) for u in session.current_urls] == ["c.jpg", "a.jpg", "b.jpg"]
    assert not session.is_dirty


@pytest.mark.asyncio
async def test_edit_session_cho_in_sequence(container):
    files = ["extra.jpg", "yehoi.jpg", "Buiging 2.jpg", "Gedan barai rechts.jpg", "Buiging.jpg"]
    katas, item = await _kata_with_images(container, "Cho-in no kata", files)

    session = await katas.edit_session(item.id)

    assert [file_name_from_url(u) for u in session.current_urls] == [
        "Buiging.jpg",
        "Gedan barai rechts.jpg",
        "yehoi.jpg",
        "Buiging 2.jpg",
        "extra.jpg",
    ]


@pytest.mark.asyncio
async def test_edit_session_falls_back_to_stored_order(container, monkeypatch):
    katas, item = await _kata_with_images(container, "Jion", ["a.jpg"], stored=["a.jpg"])

    async def broken(item_id):
        raise StorageError("Storage unavailable", status_code=503)

    monkeypatch.setattr(katas.attachments, "list_images", broken)
    session = AttachmentEditSession(katas, await katas.get_item(item.id))

    assert await session.load() == (await katas.get_item(item.id)).image_urls


@pytest.mark.asyncio
async def test_reorder_images_persists_immediately(container):
    katas, item = await _kata_with_images(container, "Jion", ["a.jpg", "b.jpg", "c.jpg"])
    session = await katas.edit_session(item.id)

    assert await session.reorder_images(2, 0)

    stored = (await katas.get_item(item.id)).image_urls
    assert [file_name_from_url(u) for u in stored] == ["c.jpg", "a.jpg", "b.jpg"]
    assert all("token=" not in u for u in stored)
    assert not session.is_dirty


@pytest.mark.asyncio
async def test_failed_reorder_is_reverted(container, monkeypatch):
    katas, item = await _kata_with_images(container, "Jion", ["a.jpg", "b.jpg"])
    session = await katas.edit_session(item.id)
    before = list(session.current_urls)

    async def failing(item_id, urls):
        raise StorageError("Server error", status_code=500)

    monkeypatch.setattr(katas, "update_image_urls", failing)

    assert not await session.reorder_images(1, 0)
    assert session.current_urls == before
    assert session.is_dirty


@pytest.mark.asyncio
async def test_ohyo_reorder_waits_for_save(container):
    ohyos = ContentService(container, ContentKind.OHYO)
    item = await ohyos.add_item("Ohyo 1", "", "")
    for file_name in ("a.jpg", "b.jpg", "c.jpg"):
        await container.object_store.upload("ohyo_images", f"{item.id}/{file_name}", b"x")
    session = await ohyos.edit_session(item.id)

    assert not await session.reorder_images(2, 0)

    assert [file_name_from_url(u) for u in session.current_urls] == ["c.jpg", "a.jpg", "b.jpg"]
    assert session.is_dirty
    assert (await ohyos.get_item(item.id)).image_urls == []

    assert await session.save()
    stored = (await ohyos.get_item(item.id)).image_urls
    assert [file_name_from_url(u) for u in stored] == ["c.jpg", "a.jpg", "b.jpg"]


@pytest.mark.asyncio
async def test_video_urls(container):
    katas, item = await _kata_with_images(container, "Jion", [])
    session = await katas.edit_session(item.id)

    session.add_video_url("  ")
    assert not session.is_dirty
    with pytest.raises(InvalidInputError):
        session.add_video_url("ftp://example.com/video.mp4")

    session.add_video_url(" https://youtu.be/abc ")
    assert session.video_urls == ["https://youtu.be/abc"]
    assert session.remove_video_url("https://youtu.be/abc")
    assert not session.remove_video_url("https://youtu.be/abc")


@pytest.mark.asyncio
async def test_save_reconciles_images(container):
    katas, item = await _kata_with_images(container, "Jion", ["a.jpg", "b.jpg"])
    session = await katas.edit_session(item.id)
    assert not await session.save()

    session.remove_image(0)
    session.add_images([UploadFile(name="new.png", data=b"n"), UploadFile(name="other.jpg", data=b"o")])
    session.reorder_new_images(1, 0)
    session.update_fields(name="Jion (temple)", description="Advanced")
    session.add_video_url("https://youtu.be/abc")

    assert await session.save()

    saved = await katas.get_item(item.id)
    assert saved.name == "Jion (temple)"
    assert saved.description == "Advanced"
    assert saved.video_urls == ["https://youtu.be/abc"]
    assert file_name_from_url(saved.image_urls[0]) == "b.jpg"
    assert path_from_url(saved.image_urls[1]).endswith(".jpg")
    assert path_from_url(saved.image_urls[2]).endswith(".png")
    names = {o.name for o in await container.object_store.list("kata_images", str(item.id))}
    assert "a.jpg" not in names
    assert len(names) == 3
    assert not session.is_dirty
    assert session.new_files == []
