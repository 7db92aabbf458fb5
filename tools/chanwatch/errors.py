"""Exception types shared across the watcher."""

from __future__ import annotations


class ChanWatchError(Exception):
    """Base class for watcher errors."""


class FetchError(ChanWatchError):
    """A remote request failed in a way that says nothing about the resource.

    Network failures, unexpected status codes and non-JSON responses end up
    here. A 404 is never a FetchError; it is reported as ``None``.
    """

    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ParseError(ChanWatchError):
    """An upstream payload is missing a required field or has the wrong shape."""
