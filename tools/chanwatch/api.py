"""Image board API client – retrying async JSON fetcher for 4chan and 2ch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .config import ImageBoardConfig
from .errors import FetchError
from .models import CatalogThread, Thread
from .parsers import DVACH, FOURCHAN, parse_catalog, parse_thread

logger = logging.getLogger("chanwatch.api")


def catalog_url(cfg: ImageBoardConfig, image_board: str, board: str) -> str:
    if image_board == FOURCHAN:
        return f"{cfg.fourchan_api_base}/{board}/catalog.json"
    if image_board == DVACH:
        return f"{cfg.dvach_base}/{board}/catalog.json"
    raise ValueError(f"Unsupported image board: {image_board!r}")


def thread_url(cfg: ImageBoardConfig, image_board: str, board: str, number: int) -> str:
    if image_board == FOURCHAN:
        return f"{cfg.fourchan_api_base}/{board}/thread/{number}.json"
    if image_board == DVACH:
        return f"{cfg.dvach_base}/{board}/res/{number}.json"
    raise ValueError(f"Unsupported image board: {image_board!r}")


def _is_json(resp: httpx.Response) -> bool:
    content_type = resp.headers.get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower() == "application/json"


class ImageBoardAPI:
    """Thin async wrapper around the catalog and thread endpoints.

    Every fetch has three outcomes: a parsed result, ``None`` for a 404, or
    a raised FetchError/ParseError. A 404 is the only signal that a thread
    is gone; everything else is retried on the next cycle by the caller.
    """

    def __init__(self, cfg: ImageBoardConfig | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.cfg = cfg or ImageBoardConfig()
        self._client = client or httpx.AsyncClient(
            timeout=self.cfg.timeout,
            headers={"User-Agent": self.cfg.user_agent},
            follow_redirects=True,
        )

    async def _get(self, url: str) -> httpx.Response | None:
        for attempt in range(1, self.cfg.max_retries + 1):
            try:
                resp = await self._client.get(url)
                if resp.status_code == 404:
                    logger.debug("404: %s", url)
                    return None
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                logger.warning("Attempt %d/%d failed for %s: HTTP %d", attempt, self.cfg.max_retries, url, status)
                if status < 500 or attempt == self.cfg.max_retries:
                    raise FetchError(f"HTTP {status} for {url}", url=url, status_code=status) from exc
            except httpx.TransportError as exc:
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, self.cfg.max_retries, url, exc)
                if attempt == self.cfg.max_retries:
                    raise FetchError(f"Request to {url} failed: {exc}", url=url) from exc
            await asyncio.sleep(2 ** attempt)
        raise FetchError(f"No attempts made for {url}", url=url)

    @staticmethod
    def _decode(resp: httpx.Response, url: str) -> Any:
        if not _is_json(resp):
            raise FetchError(
                f"Expected application/json from {url}, got {resp.headers.get('content-type')!r}",
                url=url,
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise FetchError(f"Malformed JSON from {url}: {exc}", url=url, status_code=resp.status_code) from exc

    # ── public API ───────────────────────────────────────────────

    async def fetch_catalog(self, image_board: str, board: str) -> list[CatalogThread] | None:
        """Fetch and parse a board catalog, or None if the board is gone."""
        url = catalog_url(self.cfg, image_board, board)
        resp = await self._get(url)
        if resp is None:
            return None
        return parse_catalog(image_board, board, self._decode(resp, url))

    async def fetch_thread(self, image_board: str, board: str, number: int) -> Thread | None:
        """Fetch and parse a full thread, or None if it returned 404."""
        url = thread_url(self.cfg, image_board, board, number)
        resp = await self._get(url)
        if resp is None:
            return None
        return parse_thread(image_board, board, self._decode(resp, url), self.cfg)

    async def download(self, url: str) -> bytes | None:
        """Fetch raw bytes of an attachment or thumbnail."""
        resp = await self._get(url)
        return resp.content if resp is not None else None

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ImageBoardAPI:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
