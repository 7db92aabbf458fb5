from __future__ import annotations

import asyncio

from chanwatch.events import EventEmitter, FileCreateEvent, FileDeleteEvent, ThreadCreateEvent
from chanwatch.stasher import LINK_ATTEMPTS, FileStasher
from chanwatch.storage import sha256

from .conftest import make_file, make_post, make_thread


class FakeDownloader:
    def __init__(self, blobs: dict[str, bytes]) -> None:
        self.blobs = blobs
        self.requested: list[str] = []

    async def download(self, url: str) -> bytes | None:
        self.requested.append(url)
        return self.blobs.get(url)


class FakeStorage:
    def __init__(self) -> None:
        self.stored: list[tuple] = []

    def store(self, data, ext, *, thumbnail=None, thumbnail_ext=".jpg", generate_thumb=False):
        self.stored.append((data, ext, thumbnail, thumbnail_ext, generate_thumb))
        return {
            "hash_sha256": sha256(data),
            "mime_type": "image/jpeg",
            "file_size": len(data),
            "width": None,
            "height": None,
            "storage_key": f"files/{sha256(data)}{ext}",
            "thumb_key": None,
        }


class FakeMediaStore:
    def __init__(self, known: dict[str, int] | None = None) -> None:
        self.known = dict(known or {})
        self.inserted: list[dict] = []
        self.links: list[tuple[int, int]] = []

    async def media_hash_exists(self, sha: str):
        media_id = self.known.get(sha)
        return {"id": media_id} if media_id is not None else None

    async def insert_media_object(self, **kw) -> int:
        self.inserted.append(kw)
        media_id = 100 + len(self.inserted)
        self.known[kw["hash_sha256"]] = media_id
        return media_id

    async def link_file_media(self, file_id: int, media_id: int) -> None:
        self.links.append((file_id, media_id))


def _stasher(blobs, store=None, **kw):
    storage = FakeStorage()
    stasher = FileStasher(FakeDownloader(blobs), storage, store, delay=0, **kw)
    return stasher, storage


def test_create_events_fill_the_queue():
    stasher, _ = _stasher({})
    emitter = EventEmitter()
    stasher.attach(emitter)
    a, b = make_file("https://i/g/a.jpg"), make_file("https://i/g/b.jpg", is_deleted=True)
    c = make_file("https://i/g/c.jpg")
    thread = make_thread(1, posts=[make_post(1, [a, b], is_op=True)])

    emitter.emit(ThreadCreateEvent(thread))
    emitter.emit(FileCreateEvent(thread, thread.posts[0], c))

    assert list(stasher.queue) == [a, c]

    emitter.emit(FileDeleteEvent(thread, thread.posts[0], a))
    assert list(stasher.queue) == [c]

    stasher.detach(emitter)
    emitter.emit(FileCreateEvent(thread, thread.posts[0], a))
    assert list(stasher.queue) == [c]


async def test_stash_stores_and_links():
    store = FakeMediaStore()
    f = make_file("https://i/g/a.jpg", upload_name="cat", id=7)
    stasher, storage = _stasher({f.url: b"image", f.thumbnail_url: b"thumb"}, store)

    media_id = await stasher.stash(f)

    assert media_id == 101
    assert storage.stored == [(b"image", ".jpg", b"thumb", ".jpg", False)]
    assert store.inserted[0]["original_filename"] == "cat.jpg"
    assert store.inserted[0]["hash_sha256"] == sha256(b"image")
    assert store.links == [(7, 101)]
    assert stasher.stats["stashed"] == 1


async def test_stash_generates_thumbnails_when_asked():
    f = make_file("https://i/g/a.jpg")
    stasher, storage = _stasher({f.url: b"image"}, generate_thumbnails=True)

    await stasher.stash(f)

    assert storage.stored[0][2] is None
    assert storage.stored[0][4] is True
    assert stasher.api.requested == [f.url]


async def test_duplicate_content_is_not_uploaded_twice():
    store = FakeMediaStore(known={sha256(b"image"): 5})
    f = make_file("https://i/g/a.jpg", id=9)
    stasher, storage = _stasher({f.url: b"image"}, store)

    assert await stasher.stash(f) == 5

    assert storage.stored == []
    assert store.links == [(9, 5)]
    assert stasher.stats["deduplicated"] == 1


async def test_missing_file_is_counted():
    stasher, storage = _stasher({})

    assert await stasher.stash(make_file("https://i/g/gone.jpg")) is None

    assert storage.stored == []
    assert stasher.stats["missing"] == 1


async def test_run_drains_queue_until_stopped():
    files = [make_file("https://i/g/a.jpg"), make_file("https://i/g/b.jpg")]
    stasher, storage = _stasher({f.url: f.url.encode() for f in files})
    stasher.queue.extend(files)

    task = asyncio.create_task(stasher.run())
    while stasher.queue or len(storage.stored) < 2:
        await asyncio.sleep(0.01)
    stasher.stop()
    await asyncio.wait_for(task, timeout=5)

    assert [s[0] for s in storage.stored] == [b"https://i/g/a.jpg", b"https://i/g/b.jpg"]


async def test_link_waits_for_file_row():
    store = FakeMediaStore()
    f = make_file("https://i/g/a.jpg")
    stasher, _ = _stasher({f.url: b"image"}, store)

    media_id = await stasher.stash(f)
    assert store.links == []

    f.id = 3
    await stasher.flush_links()

    assert store.links == [(3, media_id)]
    assert not stasher.pending_links


async def test_link_is_dropped_after_attempts_run_out():
    store = FakeMediaStore()
    f = make_file("https://i/g/a.jpg")
    stasher, _ = _stasher({f.url: b"image"}, store)
    await stasher.stash(f)

    for _ in range(LINK_ATTEMPTS):
        await stasher.flush_links()

    assert store.links == []
    assert not stasher.pending_links
    assert stasher.stats["unlinked"] == 1
