from __future__ import annotations

import io

from PIL import Image

from chanwatch.config import S3Config
from chanwatch.storage import MediaStorage, extension_of, guess_mime, make_thumbnail, sha256


def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "red").save(buf, format="PNG")
    return buf.getvalue()


class FakeS3:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    def put_object(self, *, Bucket, Key, Body, ContentType):
        self.objects[Key] = (Body, ContentType)


def test_extension_and_mime():
    assert extension_of("https://i.4cdn.org/g/123.PNG?x=1") == ".png"
    assert extension_of("https://2ch.hk/b/src/1/noext") == ""
    assert guess_mime(".webm") == "video/webm"
    assert guess_mime(".xyz") == "application/octet-stream"


def test_make_thumbnail_scales_down():
    thumb = make_thumbnail(_png(500, 250), ".png", 100)

    assert thumb is not None
    data, width, height = thumb
    assert (width, height) == (100, 50)
    assert Image.open(io.BytesIO(data)).size == (100, 50)


def test_make_thumbnail_skips_video_and_garbage():
    assert make_thumbnail(b"whatever", ".webm", 100) is None
    assert make_thumbnail(b"not an image", ".png", 100) is None


def test_store_with_upstream_thumbnail():
    s3 = FakeS3()
    storage = MediaStorage(S3Config(bucket="media"), client=s3)
    data = _png(40, 30)

    info = storage.store(data, ".png", thumbnail=b"thumb", thumbnail_ext=".jpg")

    sha = sha256(data)
    assert info["storage_key"] == f"files/{sha[:2]}/{sha}.png"
    assert info["thumb_key"] == f"thumbs/{sha[:2]}/{sha}.jpg"
    assert (info["width"], info["height"]) == (40, 30)
    assert info["mime_type"] == "image/png"
    assert s3.objects[info["thumb_key"]] == (b"thumb", "image/jpeg")


def test_store_generates_thumbnail():
    s3 = FakeS3()
    storage = MediaStorage(S3Config(), thumb_max=10, client=s3)

    info = storage.store(_png(40, 20), ".png", generate_thumb=True)

    body, _ = s3.objects[info["thumb_key"]]
    assert Image.open(io.BytesIO(body)).size == (10, 5)


def test_store_without_thumbnail():
    s3 = FakeS3()
    storage = MediaStorage(S3Config(), client=s3)

    info = storage.store(b"webm bytes", ".webm")

    assert info["thumb_key"] is None
    assert info["width"] is None
    assert list(s3.objects) == [info["storage_key"]]
