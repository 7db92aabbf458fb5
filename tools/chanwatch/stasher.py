"""File stasher – downloads attachments announced by the observer."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from .errors import ChanWatchError
from .events import EventEmitter, FileCreateEvent, FileDeleteEvent, ThreadCreateEvent
from .models import File
from .storage import MediaStorage, extension_of, sha256

logger = logging.getLogger("chanwatch.stasher")

# Loop turns a stashed file may wait for its row before the link is dropped.
LINK_ATTEMPTS = 5


class FileStasher:
    """Queue files from create events and store them one at a time.

    The stasher never touches the entities it receives beyond reading them;
    the link between a file row and its stored media goes through the store.
    """

    def __init__(
        self,
        api: Any,
        storage: MediaStorage,
        store: Any | None = None,
        *,
        delay: float = 2.0,
        generate_thumbnails: bool = False,
    ) -> None:
        self.api = api
        self.storage = storage
        self.store = store
        self.delay = delay
        self.generate_thumbnails = generate_thumbnails
        self.queue: deque[File] = deque()
        self.pending_links: deque[tuple[File, int, int]] = deque()
        self._stopped = False
        self._wake = asyncio.Event()
        self.stats = {"stashed": 0, "deduplicated": 0, "missing": 0, "unlinked": 0, "errors": 0}

    # ── event wiring ─────────────────────────────────────────────

    def attach(self, emitter: EventEmitter) -> None:
        emitter.on(ThreadCreateEvent, self._on_thread_create)
        emitter.on(FileCreateEvent, self._on_file_create)
        emitter.on(FileDeleteEvent, self._on_file_delete)

    def detach(self, emitter: EventEmitter) -> None:
        emitter.off(ThreadCreateEvent, self._on_thread_create)
        emitter.off(FileCreateEvent, self._on_file_create)
        emitter.off(FileDeleteEvent, self._on_file_delete)

    def _on_thread_create(self, event: ThreadCreateEvent) -> None:
        for post in event.thread.posts:
            for f in post.files:
                if not f.is_deleted:
                    self.queue.append(f)

    def _on_file_create(self, event: FileCreateEvent) -> None:
        self.queue.append(event.file)

    def _on_file_delete(self, event: FileDeleteEvent) -> None:
        # Already stashed files stay stored; only pending downloads are dropped.
        for queued in list(self.queue):
            if queued is event.file:
                self.queue.remove(queued)

    # ── loop ─────────────────────────────────────────────────────

    async def run(self) -> None:
        self._stopped = False
        self._wake.clear()
        while not self._stopped:
            if self.queue:
                f = self.queue.popleft()
                try:
                    await self.stash(f)
                except Exception as exc:
                    logger.error("Stashing %s failed: %s", f.url, exc)
                    self.stats["errors"] += 1
            if self.pending_links:
                try:
                    await self.flush_links()
                except Exception as exc:
                    logger.error("Linking stashed media failed: %s", exc)
                    self.stats["errors"] += 1
            await self._sleep(self.delay)

    def stop(self) -> None:
        self._stopped = True
        self._wake.set()

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

    async def _download(self, url: str) -> bytes | None:
        try:
            return await self.api.download(url)
        except ChanWatchError as exc:
            logger.warning("Download of %s failed: %s", url, exc)
            return None

    async def stash(self, f: File) -> int | None:
        """Download one file and record it; returns its media id when known."""
        data = await self._download(f.url)
        if data is None:
            logger.info("File %s is no longer available", f.url)
            self.stats["missing"] += 1
            return None

        ext = extension_of(f.url)
        existing = await self.store.media_hash_exists(sha256(data)) if self.store else None
        if existing:
            logger.debug("File %s already stored as media %s", f.url, existing["id"])
            self.stats["deduplicated"] += 1
            media_id = existing["id"]
        else:
            thumbnail = None
            if not self.generate_thumbnails and f.thumbnail_url:
                thumbnail = await self._download(f.thumbnail_url)
            info = await asyncio.to_thread(
                self.storage.store,
                data,
                ext,
                thumbnail=thumbnail,
                thumbnail_ext=extension_of(f.thumbnail_url),
                generate_thumb=self.generate_thumbnails,
            )
            self.stats["stashed"] += 1
            media_id = None
            if self.store:
                media_id = await self.store.insert_media_object(**info, original_filename=f.upload_name + ext)

        if self.store and media_id is not None:
            if f.id is not None:
                await self.store.link_file_media(f.id, media_id)
            else:
                logger.debug("File %s has no row yet, linking media %s later", f.url, media_id)
                self.pending_links.append((f, media_id, LINK_ATTEMPTS))
        return media_id

    async def flush_links(self) -> None:
        """Link stashed media to file rows that were inserted since."""
        for _ in range(len(self.pending_links)):
            f, media_id, attempts = self.pending_links.popleft()
            if f.id is not None:
                await self.store.link_file_media(f.id, media_id)
            elif attempts > 1:
                self.pending_links.append((f, media_id, attempts - 1))
            else:
                logger.warning("File %s never got a row; media %s left unlinked", f.url, media_id)
                self.stats["unlinked"] += 1
