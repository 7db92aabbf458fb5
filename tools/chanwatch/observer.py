"""Board observer – polls catalog and threads, diffs them, emits events.

One observer watches one board. Each cycle runs a catalog pass that
discovers new threads, pushes view/activity counters onto tracked threads
and re-fetches those whose last activity moved. A tracked thread missing
from the catalog is fetched directly, and only a 404 on that fetch marks it
deleted. Requests are strictly sequential and spaced by ``thread_delay``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Union

from .config import ObserverConfig
from .diff import FileArraysDiff, PostArraysDiff, ThreadsDiff, diff_threads
from .errors import ChanWatchError
from .events import (
    EventEmitter,
    FileCreateEvent,
    FileDeleteEvent,
    FileModifyEvent,
    PostCreateEvent,
    PostDeleteEvent,
    PostModifyEvent,
    ThreadCreateEvent,
    ThreadDeleteEvent,
    ThreadModifyEvent,
    ThreadNotFoundEvent,
)
from .models import CatalogThread, Post, Thread

logger = logging.getLogger("chanwatch.observer")

# Owned by the catalog pass; the thread pass never diffs or applies them.
CATALOG_FIELDS = ("views_count", "last_activity")

# Sentinels and flags that are never copied from a fresh snapshot.
_NOT_APPLIED = frozenset({"posts", "files", "is_deleted"})


# ── per-thread state ─────────────────────────────────────────────


@dataclass
class Discovered:
    catalog_thread: CatalogThread


@dataclass
class Tracked:
    thread: Thread


@dataclass
class Deleted:
    thread: Thread


@dataclass
class NotFoundBeforeFirstFetch:
    catalog_thread: CatalogThread


Entry = Union[Discovered, Tracked, Deleted, NotFoundBeforeFirstFetch]


def _apply(target: Any, source: Any, fields: list[str]) -> list[str]:
    applied = [f for f in fields if f not in _NOT_APPLIED]
    for name in applied:
        setattr(target, name, getattr(source, name))
    return applied


def _settle(diff: ThreadsDiff) -> ThreadsDiff:
    """Drop removals of posts and files that are already marked deleted."""
    pd = diff.posts_diff
    if pd is None:
        return diff
    pd.only_in_old = [p for p in pd.only_in_old if not p.is_deleted]
    for d in pd.differences:
        fd = d.files_diff
        if fd is None:
            continue
        fd.only_in_old = [f for f in fd.only_in_old if not f.is_deleted]
        if fd.is_empty():
            d.files_diff = None
            d.fields.remove("files")
    pd.differences = [d for d in pd.differences if d.fields]
    if pd.is_empty():
        diff.posts_diff = None
        diff.fields.remove("posts")
    return diff


class ThreadsObserver:
    """Keeps an in-memory view of one board in sync with upstream.

    ``api`` needs async ``fetch_catalog`` and ``fetch_thread``. ``store`` is
    optional; when given, every state change is written through it and
    failures are logged without undoing the in-memory change.
    """

    def __init__(
        self,
        cfg: ObserverConfig,
        api: Any,
        emitter: EventEmitter | None = None,
        store: Any | None = None,
    ) -> None:
        self.cfg = cfg
        self.api = api
        self.emitter = emitter or EventEmitter()
        self.store = store
        self.entries: dict[int, Entry] = {}
        # Deletion is final; these numbers are never discovered again.
        self.deleted_numbers: set[int] = set()
        self._stopped = False
        self._wake = asyncio.Event()
        self.stats = {
            "threads_created": 0,
            "threads_deleted": 0,
            "threads_not_found": 0,
            "posts_created": 0,
            "posts_deleted": 0,
            "files_created": 0,
            "files_deleted": 0,
            "fetch_errors": 0,
            "store_errors": 0,
            "errors": 0,
        }

    @property
    def label(self) -> str:
        return f"{self.cfg.image_board}/{self.cfg.board}"

    @property
    def threads(self) -> list[Thread]:
        """Threads currently tracked (fetched and not deleted)."""
        return [e.thread for e in self.entries.values() if isinstance(e, Tracked)]

    def get_thread(self, number: int) -> Thread | None:
        entry = self.entries.get(number)
        if isinstance(entry, (Tracked, Deleted)):
            return entry.thread
        return None

    # ── lifecycle ────────────────────────────────────────────────

    async def load_tracked(self) -> int:
        """Seed the working set from the store so a restart resumes."""
        if self.store is None:
            return 0
        deleted = await self._store("select_deleted_numbers", self.cfg.image_board, self.cfg.board)
        self.deleted_numbers.update(deleted or ())
        threads = await self._store("select_tracked_threads", self.cfg.image_board, self.cfg.board)
        count = 0
        for thread in threads or []:
            if thread.is_deleted:
                self.deleted_numbers.add(thread.number)
                continue
            if thread.number in self.entries:
                continue
            self.entries[thread.number] = Tracked(thread)
            count += 1
        logger.info("Resumed %d tracked threads for /%s/", count, self.label)
        return count

    async def run(self) -> None:
        self._stopped = False
        self._wake.clear()
        await self.load_tracked()
        logger.info("Observing /%s/", self.label)
        while not self._stopped:
            try:
                await self.observe_catalog()
            except Exception:
                logger.exception("Catalog cycle for /%s/ failed", self.label)
                self.stats["errors"] += 1
            await self._sleep(self.cfg.catalog_delay)
        logger.info("Stopped observing /%s/", self.label)

    def stop(self) -> None:
        """Finish the request in flight, then stop before the next one."""
        self._stopped = True
        self._wake.set()

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def _sleep(self, delay: float) -> None:
        if self._stopped:
            return
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ── store / emit helpers ─────────────────────────────────────

    async def _store(self, method: str, *args: Any) -> Any:
        if self.store is None:
            return None
        try:
            return await getattr(self.store, method)(*args)
        except Exception as exc:
            logger.error("Store %s failed for /%s/: %s", method, self.label, exc)
            self.stats["store_errors"] += 1
            return None

    async def _insert_post(self, thread: Thread, post: Post) -> None:
        if self.store is not None and thread.id is not None:
            post.id = await self._store("insert_post", thread, post)

    async def _insert_file(self, post: Post, file: Any) -> None:
        if self.store is not None and post.id is not None:
            file.id = await self._store("insert_file", post, file)

    async def _insert_tree(self, thread: Thread) -> None:
        if self.store is None:
            return
        thread.id = await self._store("insert_thread", thread)
        for post in thread.posts:
            await self._insert_post(thread, post)
            for f in post.files:
                await self._insert_file(post, f)

    async def _fetch_thread(self, image_board: str, board: str, number: int) -> tuple[bool, Thread | None]:
        """Return (ok, thread); ok is False when the fetch itself failed."""
        try:
            return True, await self.api.fetch_thread(image_board, board, number)
        except ChanWatchError as exc:
            logger.warning("Fetching /%s/%d failed: %s", self.label, number, exc)
            self.stats["fetch_errors"] += 1
            return False, None

    # ── catalog pass ─────────────────────────────────────────────

    async def observe_catalog(self) -> None:
        try:
            catalog = await self.api.fetch_catalog(self.cfg.image_board, self.cfg.board)
        except ChanWatchError as exc:
            logger.warning("Fetching catalog /%s/ failed: %s", self.label, exc)
            self.stats["fetch_errors"] += 1
            return
        if catalog is None:
            logger.warning("Catalog /%s/ returned 404", self.label)
            return

        listed = {ct.number for ct in catalog}
        for ct in catalog:
            if self._stopped:
                return
            if not self.cfg.allows(ct.number):
                continue
            try:
                await self._observe_catalog_thread(ct)
            except Exception:
                logger.exception("Unexpected error on /%s/%d", self.label, ct.number)
                self.stats["errors"] += 1

        # Catalog absence alone is not a deletion; confirm with a direct fetch.
        for number, entry in list(self.entries.items()):
            if self._stopped:
                return
            if not isinstance(entry, Tracked) or number in listed or not self.cfg.allows(number):
                continue
            logger.debug("Thread /%s/%d missing from catalog, checking", self.label, number)
            await self._sleep(self.cfg.thread_delay)
            if self._stopped:
                return
            try:
                await self.handle_thread(entry.thread)
            except Exception:
                logger.exception("Unexpected error on /%s/%d", self.label, number)
                self.stats["errors"] += 1

        self._prune(listed)

    async def _observe_catalog_thread(self, ct: CatalogThread) -> None:
        entry = self.entries.get(ct.number)
        if isinstance(entry, Tracked):
            await self._refresh_counters(entry.thread, ct)
        elif isinstance(entry, Deleted) or ct.number in self.deleted_numbers:
            logger.debug("Deleted thread /%s/%d still listed in catalog", self.label, ct.number)
        elif isinstance(entry, NotFoundBeforeFirstFetch):
            pass
        else:
            await self._discover(ct)

    async def _refresh_counters(self, thread: Thread, ct: CatalogThread) -> None:
        changed = [f for f in CATALOG_FIELDS if getattr(thread, f) != getattr(ct, f)]
        if not changed:
            return
        before = dataclasses.replace(thread)
        _apply(thread, ct, changed)
        self.emitter.emit(ThreadModifyEvent(thread, ThreadsDiff(before, thread, changed)))
        await self._store("update_thread", thread, changed)

        if "last_activity" in changed:
            await self._sleep(self.cfg.thread_delay)
            if not self._stopped:
                await self.handle_thread(thread)

    async def _discover(self, ct: CatalogThread) -> None:
        self.entries[ct.number] = Discovered(ct)
        await self._sleep(self.cfg.thread_delay)
        if self._stopped:
            return
        ok, thread = await self._fetch_thread(ct.image_board, ct.board, ct.number)
        if not ok:
            return
        if thread is None:
            self.entries[ct.number] = NotFoundBeforeFirstFetch(ct)
            self.stats["threads_not_found"] += 1
            logger.info("Thread /%s/%d gone before first fetch", self.label, ct.number)
            self.emitter.emit(ThreadNotFoundEvent(ct))
            return

        # The thread endpoint does not report these.
        thread.views_count = ct.views_count
        thread.last_activity = ct.last_activity
        self.entries[ct.number] = Tracked(thread)
        self.stats["threads_created"] += 1
        logger.info("New thread /%s/%d (%d posts)", self.label, thread.number, len(thread.posts))
        self.emitter.emit(ThreadCreateEvent(thread))
        await self._insert_tree(thread)

    def _prune(self, listed: set[int]) -> None:
        """Forget unlisted threads that are not tracked.

        Numbers of deleted threads stay in ``deleted_numbers`` after their
        entries go, so a thread listed again later is not rediscovered.
        """
        for number in [n for n, e in self.entries.items() if not isinstance(e, Tracked) and n not in listed]:
            del self.entries[number]

    # ── thread pass ──────────────────────────────────────────────

    async def handle_thread(self, thread: Thread) -> None:
        """Re-fetch a tracked thread and apply what changed."""
        if thread.is_deleted:
            return
        ok, fetched = await self._fetch_thread(thread.image_board, thread.board, thread.number)
        if not ok:
            return
        if fetched is None:
            thread.is_deleted = True
            self.entries[thread.number] = Deleted(thread)
            self.deleted_numbers.add(thread.number)
            self.stats["threads_deleted"] += 1
            logger.info("Thread /%s/%d deleted", self.label, thread.number)
            self.emitter.emit(ThreadDeleteEvent(thread))
            await self._store("update_thread", thread, ["is_deleted"])
            return

        diff = _settle(diff_threads(thread, fetched, exclude=CATALOG_FIELDS))
        if not diff.fields:
            return
        applied = _apply(thread, fetched, diff.fields)
        self.emitter.emit(ThreadModifyEvent(thread, diff))
        if applied:
            await self._store("update_thread", thread, applied)
        if diff.posts_diff is not None:
            await self._handle_posts_diff(thread, diff.posts_diff)

    async def _handle_posts_diff(self, thread: Thread, pd: PostArraysDiff) -> None:
        for post in pd.only_in_old:
            if post.is_deleted:
                continue
            files = post.mark_deleted()
            self.stats["posts_deleted"] += 1
            self.emitter.emit(PostDeleteEvent(thread, post))
            await self._store("update_post", post, ["is_deleted"])
            for f in files:
                self.stats["files_deleted"] += 1
                self.emitter.emit(FileDeleteEvent(thread, post, f))
                await self._store("update_file", f, ["is_deleted"])

        for post in pd.only_in_new:
            thread.posts.append(post)
            self.stats["posts_created"] += 1
            self.emitter.emit(PostCreateEvent(thread, post))
            await self._insert_post(thread, post)
            for f in post.files:
                self.stats["files_created"] += 1
                self.emitter.emit(FileCreateEvent(thread, post, f))
                await self._insert_file(post, f)

        for d in pd.differences:
            post = d.post1
            if post.is_deleted:
                logger.warning(
                    "Post %d of /%s/%d reappeared after deletion; keeping it deleted",
                    post.number, self.label, thread.number,
                )
            applied = _apply(post, d.post2, d.fields)
            self.emitter.emit(PostModifyEvent(thread, post, d))
            if applied:
                await self._store("update_post", post, applied)
            if d.files_diff is not None and not post.is_deleted:
                await self._handle_files_diff(thread, post, d.files_diff)

    async def _handle_files_diff(self, thread: Thread, post: Post, fd: FileArraysDiff) -> None:
        for f in fd.only_in_old:
            if f.is_deleted:
                continue
            f.is_deleted = True
            self.stats["files_deleted"] += 1
            self.emitter.emit(FileDeleteEvent(thread, post, f))
            await self._store("update_file", f, ["is_deleted"])

        for f in fd.only_in_new:
            post.files.append(f)
            self.stats["files_created"] += 1
            self.emitter.emit(FileCreateEvent(thread, post, f))
            await self._insert_file(post, f)

        for d in fd.differences:
            f = d.file1
            if f.is_deleted and "is_deleted" in d.fields:
                logger.warning(
                    "File %s of post %d in /%s/%d reappeared after deletion",
                    f.url, post.number, self.label, thread.number,
                )
            applied = _apply(f, d.file2, d.fields)
            self.emitter.emit(FileModifyEvent(thread, post, f, d))
            if applied:
                await self._store("update_file", f, applied)
