from __future__ import annotations

import copy
from typing import Any

import pytest

from chanwatch.config import ObserverConfig
from chanwatch.errors import FetchError
from chanwatch.events import EventEmitter
from chanwatch.models import CatalogThread, File, Post, Thread
from chanwatch.observer import ThreadsObserver


def make_file(url: str, **kw: Any) -> File:
    defaults = dict(
        thumbnail_url=url.replace(".jpg", "s.jpg"),
        upload_name="upload",
        cdn_name=url.rsplit("/", 1)[-1].split(".")[0],
        check_sum="md5==",
    )
    defaults.update(kw)
    return File(url=url, **defaults)


def make_post(number: int, files: list[File] | None = None, **kw: Any) -> Post:
    defaults = dict(create_timestamp=1_700_000_000 + number, name="Anonymous", comment=f"post {number}")
    defaults.update(kw)
    return Post(number=number, files=files or [], **defaults)


def make_thread(number: int, posts: list[Post] | None = None, **kw: Any) -> Thread:
    defaults = dict(board="g", image_board="4chan", title=f"thread {number}", posters_count=3, create_timestamp=1_700_000_000)
    defaults.update(kw)
    return Thread(number=number, posts=posts or [make_post(number, is_op=True)], **defaults)


def make_catalog_thread(number: int, views: int = 0, last_activity: int = 0) -> CatalogThread:
    return CatalogThread(
        number=number,
        board="g",
        image_board="4chan",
        create_timestamp=1_700_000_000,
        views_count=views,
        posts_count=1,
        last_activity=last_activity,
    )


class FakeAPI:
    """Serves canned catalogs and threads; a fresh copy on every fetch."""

    def __init__(self) -> None:
        self.catalog: list[CatalogThread] | None | Exception = []
        self.threads: dict[int, Thread | None | Exception] = {}
        self.thread_calls: list[int] = []
        self.catalog_calls = 0

    async def fetch_catalog(self, image_board: str, board: str) -> list[CatalogThread] | None:
        self.catalog_calls += 1
        if isinstance(self.catalog, Exception):
            raise self.catalog
        return list(self.catalog) if self.catalog is not None else None

    async def fetch_thread(self, image_board: str, board: str, number: int) -> Thread | None:
        self.thread_calls.append(number)
        value = self.threads.get(number)
        if isinstance(value, Exception):
            raise value
        return copy.deepcopy(value)


class FakeStore:
    """Records every call and hands out increasing ids."""

    def __init__(self, fail: set[str] | None = None) -> None:
        self.calls: list[tuple] = []
        self.fail = fail or set()
        self.tracked: list[Thread] = []
        self.deleted: list[int] = []
        self._next_id = 0

    def _record(self, name: str, *args: Any) -> int | None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")
        if not name.startswith("insert"):
            return None
        self._next_id += 1
        return self._next_id

    async def insert_thread(self, thread: Thread) -> int:
        return self._record("insert_thread", thread.number)

    async def insert_post(self, thread: Thread, post: Post) -> int:
        return self._record("insert_post", thread.id, post.number)

    async def insert_file(self, post: Post, file: File) -> int:
        return self._record("insert_file", post.id, file.url)

    async def update_thread(self, thread: Thread, fields: list[str]) -> None:
        self._record("update_thread", thread.number, list(fields))

    async def update_post(self, post: Post, fields: list[str]) -> None:
        self._record("update_post", post.number, list(fields))

    async def update_file(self, file: File, fields: list[str]) -> None:
        self._record("update_file", file.url, list(fields))

    async def select_tracked_threads(self, image_board: str, board: str) -> list[Thread]:
        self._record("select_tracked_threads", image_board, board)
        return copy.deepcopy(self.tracked)

    async def select_deleted_numbers(self, image_board: str, board: str) -> list[int]:
        self._record("select_deleted_numbers", image_board, board)
        return list(self.deleted)

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class Recorder:
    def __init__(self, emitter: EventEmitter) -> None:
        self.events: list = []
        emitter.on_any(self.events.append)

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list:
        return [e for e in self.events if e.name == name]


@pytest.fixture
def api() -> FakeAPI:
    return FakeAPI()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def recorder(emitter: EventEmitter) -> Recorder:
    return Recorder(emitter)


@pytest.fixture
def cfg() -> ObserverConfig:
    return ObserverConfig(image_board="4chan", board="g", catalog_delay=0, thread_delay=0)


@pytest.fixture
def observer(cfg: ObserverConfig, api: FakeAPI, emitter: EventEmitter) -> ThreadsObserver:
    return ThreadsObserver(cfg, api, emitter)


@pytest.fixture
def fetch_error() -> FetchError:
    return FetchError("connection reset", url="https://a.4cdn.org/g/thread/100.json")
