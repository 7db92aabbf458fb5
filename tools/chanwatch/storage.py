"""S3/MinIO storage layer – keep stashed attachments and their thumbnails."""

from __future__ import annotations

import hashlib
import io
import logging
import posixpath
from typing import Any
from urllib.parse import urlparse

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from .config import S3Config

logger = logging.getLogger("chanwatch.storage")

# Map file extension → MIME type
MIME_MAP: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webm": "video/webm",
    ".mp4": "video/mp4",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
}

# Pillow cannot open these.
NO_THUMBNAIL = (".webm", ".mp4", ".pdf", ".svg")


def extension_of(url: str) -> str:
    return posixpath.splitext(urlparse(url).path)[1].lower()


def guess_mime(ext: str) -> str:
    return MIME_MAP.get(ext.lower(), "application/octet-stream")


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_thumbnail(data: bytes, ext: str, max_size: int) -> tuple[bytes, int, int] | None:
    """Scale an image down to fit ``max_size``.

    Returns (thumb_bytes, width, height), or None when the file is not an
    image Pillow understands. Images already small enough are re-encoded as is.
    """
    if ext.lower() in NO_THUMBNAIL:
        return None
    try:
        img = Image.open(io.BytesIO(data))
        img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        if ext.lower() in (".jpg", ".jpeg"):
            img.convert("RGB").save(buf, format="JPEG")
        else:
            img.save(buf, format="PNG")
        return buf.getvalue(), img.width, img.height
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("Thumbnail generation failed: %s", exc)
        return None


def get_dimensions(data: bytes) -> tuple[int, int] | None:
    try:
        img = Image.open(io.BytesIO(data))
        return img.width, img.height
    except (UnidentifiedImageError, OSError):
        return None


class MediaStorage:
    """Upload attachments and thumbnails to MinIO / S3 under content-hash keys."""

    def __init__(self, cfg: S3Config | None = None, thumb_max: int = 250, client: Any | None = None) -> None:
        self.cfg = cfg or S3Config.from_env()
        self.thumb_max = thumb_max
        self._s3 = client or boto3.client(
            "s3",
            endpoint_url=self.cfg.endpoint,
            aws_access_key_id=self.cfg.access_key,
            aws_secret_access_key=self.cfg.secret_key,
            config=BotoConfig(signature_version="s3v4"),
            use_ssl=self.cfg.use_ssl,
        )

    def ensure_bucket(self) -> None:
        try:
            self._s3.head_bucket(Bucket=self.cfg.bucket)
        except ClientError:
            try:
                self._s3.create_bucket(Bucket=self.cfg.bucket)
                logger.info("Created bucket: %s", self.cfg.bucket)
            except (ClientError, BotoCoreError) as exc:
                logger.warning("Could not ensure bucket %s exists: %s", self.cfg.bucket, exc)

    @staticmethod
    def storage_key(sha: str, ext: str) -> str:
        return f"files/{sha[:2]}/{sha}{ext}"

    @staticmethod
    def thumb_key(sha: str, ext: str) -> str:
        return f"thumbs/{sha[:2]}/{sha}{ext}"

    def url_for(self, key: str) -> str:
        return f"{self.cfg.endpoint}/{self.cfg.bucket}/{key}"

    def _put(self, key: str, data: bytes, ext: str) -> None:
        self._s3.put_object(Bucket=self.cfg.bucket, Key=key, Body=data, ContentType=guess_mime(ext))

    def store(
        self,
        data: bytes,
        ext: str,
        *,
        thumbnail: bytes | None = None,
        thumbnail_ext: str = ".jpg",
        generate_thumb: bool = False,
    ) -> dict:
        """Upload an attachment and, if available, its thumbnail.

        ``thumbnail`` is an upstream thumbnail already downloaded; with
        ``generate_thumb`` one is rendered locally instead.

        Returns a dict with keys matching `media_objects` columns:
            hash_sha256, mime_type, file_size, width, height,
            storage_key, thumb_key
        """
        sha = sha256(data)
        key = self.storage_key(sha, ext)
        self._put(key, data, ext)
        dims = get_dimensions(data)

        thumb_key: str | None = None
        thumb_ext = ".jpg" if ext.lower() in (".jpg", ".jpeg") else ".png"
        if generate_thumb:
            rendered = make_thumbnail(data, ext, self.thumb_max)
            thumbnail = rendered[0] if rendered else None
        elif thumbnail is not None:
            thumb_ext = thumbnail_ext or ".jpg"
        if thumbnail is not None:
            thumb_key = self.thumb_key(sha, thumb_ext)
            self._put(thumb_key, thumbnail, thumb_ext)

        return {
            "hash_sha256": sha,
            "mime_type": guess_mime(ext),
            "file_size": len(data),
            "width": dims[0] if dims else None,
            "height": dims[1] if dims else None,
            "storage_key": key,
            "thumb_key": thumb_key,
        }
