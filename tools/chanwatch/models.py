"""Entity records shared by the observer, the diff engine and the store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass
class File:
    url: str
    thumbnail_url: str
    upload_name: str
    cdn_name: str
    check_sum: str
    is_deleted: bool = False
    list_index: int = 0
    id: int | None = field(default=None, compare=False)

    # Fields compared by the diff engine, in this order.
    DIFF_FIELDS: ClassVar[tuple[str, ...]] = (
        "url",
        "thumbnail_url",
        "upload_name",
        "cdn_name",
        "check_sum",
        "is_deleted",
    )


@dataclass
class Post:
    number: int
    create_timestamp: int
    name: str = ""
    comment: str = ""
    files: list[File] = field(default_factory=list)
    is_banned: bool = False
    is_deleted: bool = False
    is_op: bool = False
    list_index: int = 0
    id: int | None = field(default=None, compare=False)

    DIFF_FIELDS: ClassVar[tuple[str, ...]] = (
        "create_timestamp",
        "name",
        "comment",
        "is_banned",
        "is_deleted",
        "is_op",
    )

    def mark_deleted(self) -> list[File]:
        """Flag the post and its files as deleted.

        Returns the files that were live before the call.
        """
        self.is_deleted = True
        cascaded = [f for f in self.files if not f.is_deleted]
        for f in cascaded:
            f.is_deleted = True
        return cascaded


@dataclass
class Thread:
    number: int
    board: str
    image_board: str
    title: str = ""
    posters_count: int = 0
    views_count: int = 0
    last_activity: int = 0
    create_timestamp: int = 0
    posts: list[Post] = field(default_factory=list)
    is_deleted: bool = False
    id: int | None = field(default=None, compare=False)

    DIFF_FIELDS: ClassVar[tuple[str, ...]] = (
        "board",
        "image_board",
        "title",
        "posters_count",
        "views_count",
        "last_activity",
        "create_timestamp",
        "is_deleted",
    )

    def get_post(self, number: int) -> Post | None:
        for post in self.posts:
            if post.number == number:
                return post
        return None

    def files_count(self) -> int:
        return sum(len(p.files) for p in self.posts)


@dataclass(frozen=True)
class CatalogThread:
    """Thread summary as listed in a board catalog."""
    number: int
    board: str
    image_board: str
    create_timestamp: int = 0
    views_count: int = 0
    posts_count: int = 0
    last_activity: int = 0
    name: str = ""
    title: str = ""
    comment: str = ""
