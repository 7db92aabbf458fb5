"""Lifecycle events published by the observer and the hub that delivers them."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar, Union

from .diff import FilesDiff, PostsDiff, ThreadsDiff
from .models import CatalogThread, File, Post, Thread

logger = logging.getLogger("chanwatch.events")


@dataclass(frozen=True)
class Event:
    name: ClassVar[str] = ""


# ── thread events ────────────────────────────────────────────────


@dataclass(frozen=True)
class ThreadCreateEvent(Event):
    name: ClassVar[str] = "thread-create"
    thread: Thread


@dataclass(frozen=True)
class ThreadDeleteEvent(Event):
    name: ClassVar[str] = "thread-delete"
    thread: Thread


@dataclass(frozen=True)
class ThreadModifyEvent(Event):
    name: ClassVar[str] = "thread-modify"
    thread: Thread
    diff: ThreadsDiff


@dataclass(frozen=True)
class ThreadNotFoundEvent(Event):
    """A catalog thread returned 404 before it was ever fetched."""
    name: ClassVar[str] = "thread-not-found"
    catalog_thread: CatalogThread


# ── post events ──────────────────────────────────────────────────


@dataclass(frozen=True)
class PostCreateEvent(Event):
    name: ClassVar[str] = "post-create"
    thread: Thread
    post: Post


@dataclass(frozen=True)
class PostDeleteEvent(Event):
    name: ClassVar[str] = "post-delete"
    thread: Thread
    post: Post


@dataclass(frozen=True)
class PostModifyEvent(Event):
    name: ClassVar[str] = "post-modify"
    thread: Thread
    post: Post
    diff: PostsDiff


# ── file events ──────────────────────────────────────────────────


@dataclass(frozen=True)
class FileCreateEvent(Event):
    name: ClassVar[str] = "file-create"
    thread: Thread
    post: Post
    file: File


@dataclass(frozen=True)
class FileDeleteEvent(Event):
    name: ClassVar[str] = "file-delete"
    thread: Thread
    post: Post
    file: File


@dataclass(frozen=True)
class FileModifyEvent(Event):
    name: ClassVar[str] = "file-modify"
    thread: Thread
    post: Post
    file: File
    diff: FilesDiff


ALL_EVENTS: tuple[type[Event], ...] = (
    ThreadCreateEvent,
    ThreadDeleteEvent,
    ThreadModifyEvent,
    ThreadNotFoundEvent,
    PostCreateEvent,
    PostDeleteEvent,
    PostModifyEvent,
    FileCreateEvent,
    FileDeleteEvent,
    FileModifyEvent,
)

Handler = Callable[[Event], None]
EventKey = Union[str, type[Event]]


def _channel(key: EventKey) -> str:
    return key if isinstance(key, str) else key.name


class EventEmitter:
    """Synchronous publish/subscribe hub keyed by event channel name.

    Handlers run in registration order at the moment ``emit`` is called, so
    subscribers see events in exactly the order the observer produced them.
    A failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, key: EventKey, handler: Handler) -> None:
        self._handlers[_channel(key)].append(handler)

    def off(self, key: EventKey, handler: Handler) -> None:
        handlers = self._handlers.get(_channel(key), [])
        if handler in handlers:
            handlers.remove(handler)

    def on_any(self, handler: Handler) -> None:
        for cls in ALL_EVENTS:
            self.on(cls, handler)

    def emit(self, event: Event) -> None:
        for handler in list(self._handlers.get(event.name, ())):
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r failed on %s", handler, event.name)
