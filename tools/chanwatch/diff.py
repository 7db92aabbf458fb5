"""Structural diffs between snapshots of threads, posts and files.

Collections are matched by key (post number, file URL), first match wins,
and matched pairs are compared field by field over each entity's
``DIFF_FIELDS``. A non-empty nested diff adds the sentinel field ``"posts"``
or ``"files"`` to its parent so callers can spot nested changes cheaply.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .models import File, Post, Thread

T = TypeVar("T")


@dataclass
class FilesDiff:
    file1: File
    file2: File
    fields: list[str] = field(default_factory=list)


@dataclass
class FileArraysDiff:
    only_in_old: list[File] = field(default_factory=list)
    only_in_new: list[File] = field(default_factory=list)
    differences: list[FilesDiff] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.only_in_old or self.only_in_new or self.differences)


@dataclass
class PostsDiff:
    post1: Post
    post2: Post
    fields: list[str] = field(default_factory=list)
    files_diff: FileArraysDiff | None = None


@dataclass
class PostArraysDiff:
    only_in_old: list[Post] = field(default_factory=list)
    only_in_new: list[Post] = field(default_factory=list)
    differences: list[PostsDiff] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.only_in_old or self.only_in_new or self.differences)


@dataclass
class ThreadsDiff:
    thread1: Thread
    thread2: Thread
    fields: list[str] = field(default_factory=list)
    posts_diff: PostArraysDiff | None = None


def _diff_fields(a: Any, b: Any, names: Sequence[str], exclude: Collection[str] = ()) -> list[str]:
    return [n for n in names if n not in exclude and getattr(a, n) != getattr(b, n)]


def _pair_up(
    old: Sequence[T], new: Sequence[T], key: Callable[[T], Any]
) -> tuple[list[tuple[T, T]], list[T], list[T]]:
    """Match entities of ``old`` to the first unclaimed entity of ``new`` with the same key."""
    claimed = [False] * len(new)
    pairs: list[tuple[T, T]] = []
    unpaired_old: list[T] = []
    for a in old:
        k = key(a)
        for j, b in enumerate(new):
            if not claimed[j] and key(b) == k:
                claimed[j] = True
                pairs.append((a, b))
                break
        else:
            unpaired_old.append(a)
    unpaired_new = [b for j, b in enumerate(new) if not claimed[j]]
    return pairs, unpaired_old, unpaired_new


def diff_files(file1: File, file2: File) -> FilesDiff:
    if file1 is file2:
        return FilesDiff(file1, file2)
    return FilesDiff(file1, file2, _diff_fields(file1, file2, File.DIFF_FIELDS))


def diff_file_arrays(old: Sequence[File], new: Sequence[File]) -> FileArraysDiff:
    pairs, only_old, only_new = _pair_up(old, new, lambda f: f.url)
    result = FileArraysDiff(only_in_old=only_old, only_in_new=only_new)
    for a, b in pairs:
        d = diff_files(a, b)
        if d.fields:
            result.differences.append(d)
    return result


def diff_posts(post1: Post, post2: Post) -> PostsDiff:
    if post1 is post2:
        return PostsDiff(post1, post2)
    result = PostsDiff(post1, post2, _diff_fields(post1, post2, Post.DIFF_FIELDS))
    files_diff = diff_file_arrays(post1.files, post2.files)
    if not files_diff.is_empty():
        result.files_diff = files_diff
        result.fields.append("files")
    return result


def diff_post_arrays(old: Sequence[Post], new: Sequence[Post]) -> PostArraysDiff:
    pairs, only_old, only_new = _pair_up(old, new, lambda p: p.number)
    result = PostArraysDiff(only_in_old=only_old, only_in_new=only_new)
    for a, b in pairs:
        d = diff_posts(a, b)
        if d.fields:
            result.differences.append(d)
    return result


def diff_threads(thread1: Thread, thread2: Thread, exclude: Collection[str] = ()) -> ThreadsDiff:
    """Compare two snapshots of a thread, skipping the fields named in ``exclude``."""
    if thread1 is thread2:
        return ThreadsDiff(thread1, thread2)
    result = ThreadsDiff(thread1, thread2, _diff_fields(thread1, thread2, Thread.DIFF_FIELDS, exclude))
    posts_diff = diff_post_arrays(thread1.posts, thread2.posts)
    if not posts_diff.is_empty():
        result.posts_diff = posts_diff
        result.fields.append("posts")
    return result
