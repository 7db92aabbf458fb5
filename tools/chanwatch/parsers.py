"""Map 4chan and 2ch JSON payloads onto the shared entity records.

Both APIs describe the same things with different keys. Required keys raise
ParseError when missing or mistyped; optional text becomes "" and optional
counters become 0. The single-thread endpoints do not report views or last
activity, so parsed threads leave both at 0 for the catalog pass to fill in.
"""

from __future__ import annotations

from typing import Any

from .config import ImageBoardConfig
from .errors import ParseError
from .models import CatalogThread, File, Post, Thread

FOURCHAN = "4chan"
DVACH = "2ch"
SUPPORTED_IMAGEBOARDS = (FOURCHAN, DVACH)


# ── field helpers ────────────────────────────────────────────────


def _req_int(obj: dict, key: str, *, numeric_str: bool = False) -> int:
    value = obj.get(key)
    if isinstance(value, bool) or value is None:
        raise ParseError(f"Field {key!r} is required to be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if numeric_str and isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ParseError(f"Field {key!r} is required to be an integer, got {value!r}")


def _opt_int(obj: dict, key: str, *, numeric_str: bool = False) -> int:
    if obj.get(key) is None:
        return 0
    return _req_int(obj, key, numeric_str=numeric_str)


def _opt_str(obj: dict, key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"Field {key!r} must be a string, got {value!r}")
    return value


def _req_str(obj: dict, key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise ParseError(f"Field {key!r} is required to be a string, got {value!r}")
    return value


def _req_dict(value: Any, what: str) -> dict:
    if not isinstance(value, dict):
        raise ParseError(f"Expected an object for {what}, got {type(value).__name__}")
    return value


def _req_list(value: Any, what: str) -> list:
    if not isinstance(value, list):
        raise ParseError(f"Expected a list for {what}, got {type(value).__name__}")
    return value


def _strip_ext(name: str) -> str:
    stem, dot, _ = name.rpartition(".")
    return stem if dot else name


# ── 4chan ────────────────────────────────────────────────────────


def parse_4chan_catalog(board: str, data: Any) -> list[CatalogThread]:
    """Flatten catalog pages into catalog threads."""
    result: list[CatalogThread] = []
    for page in _req_list(data, "catalog"):
        page = _req_dict(page, "catalog page")
        for t in _req_list(page.get("threads", []), "catalog page threads"):
            t = _req_dict(t, "catalog thread")
            result.append(
                CatalogThread(
                    number=_req_int(t, "no"),
                    board=board,
                    image_board=FOURCHAN,
                    create_timestamp=_req_int(t, "time"),
                    views_count=0,
                    posts_count=_opt_int(t, "replies") + 1,
                    last_activity=_opt_int(t, "last_modified"),
                    name=_opt_str(t, "name"),
                    title=_opt_str(t, "sub"),
                    comment=_opt_str(t, "com"),
                )
            )
    return result


def parse_4chan_file(board: str, obj: dict, list_index: int, image_base: str) -> File:
    tim = _req_int(obj, "tim")
    ext = _req_str(obj, "ext")
    return File(
        url=f"{image_base}/{board}/{tim}{ext}",
        thumbnail_url=f"{image_base}/{board}/{tim}s.jpg",
        upload_name=_opt_str(obj, "filename"),
        cdn_name=str(tim),
        check_sum=_opt_str(obj, "md5"),
        list_index=list_index,
    )


def parse_4chan_post(board: str, obj: Any, list_index: int, image_base: str) -> Post:
    obj = _req_dict(obj, "post")
    files = []
    if obj.get("tim") is not None:
        files.append(parse_4chan_file(board, obj, 0, image_base))
    return Post(
        number=_req_int(obj, "no"),
        create_timestamp=_req_int(obj, "time"),
        name=_opt_str(obj, "name"),
        comment=_opt_str(obj, "com"),
        files=files,
        is_op=_opt_int(obj, "resto") == 0,
        list_index=list_index,
    )


def parse_4chan_thread(board: str, data: Any, image_base: str) -> Thread:
    data = _req_dict(data, "thread")
    raw_posts = _req_list(data.get("posts"), "thread posts")
    if not raw_posts:
        raise ParseError("Thread payload contains no posts")
    posts = [parse_4chan_post(board, p, i, image_base) for i, p in enumerate(raw_posts)]
    op_raw = raw_posts[0]
    op = posts[0]
    return Thread(
        number=op.number,
        board=board,
        image_board=FOURCHAN,
        title=_opt_str(op_raw, "sub"),
        posters_count=_opt_int(op_raw, "unique_ips"),
        create_timestamp=op.create_timestamp,
        posts=posts,
    )


# ── 2ch ──────────────────────────────────────────────────────────


def parse_2ch_catalog(board: str, data: Any) -> list[CatalogThread]:
    data = _req_dict(data, "catalog")
    result: list[CatalogThread] = []
    for t in _req_list(data.get("threads"), "catalog threads"):
        t = _req_dict(t, "catalog thread")
        result.append(
            CatalogThread(
                number=_req_int(t, "num", numeric_str=True),
                board=board,
                image_board=DVACH,
                create_timestamp=_req_int(t, "timestamp"),
                views_count=_opt_int(t, "views", numeric_str=True),
                posts_count=_opt_int(t, "posts_count", numeric_str=True),
                last_activity=_opt_int(t, "lasthit"),
                name=_opt_str(t, "name"),
                title=_opt_str(t, "subject"),
                comment=_opt_str(t, "comment"),
            )
        )
    return result


def parse_2ch_file(obj: Any, list_index: int, base: str) -> File:
    obj = _req_dict(obj, "file")
    thumbnail = _opt_str(obj, "thumbnail")
    return File(
        url=f"{base}{_req_str(obj, 'path')}",
        thumbnail_url=f"{base}{thumbnail}" if thumbnail else "",
        upload_name=_strip_ext(_opt_str(obj, "fullname")),
        cdn_name=_strip_ext(_opt_str(obj, "name")),
        check_sum=_opt_str(obj, "md5"),
        list_index=list_index,
    )


def parse_2ch_post(obj: Any, list_index: int, base: str) -> Post:
    obj = _req_dict(obj, "post")
    raw_files = obj.get("files") or []
    files = [parse_2ch_file(f, i, base) for i, f in enumerate(_req_list(raw_files, "post files"))]
    return Post(
        number=_req_int(obj, "num", numeric_str=True),
        create_timestamp=_req_int(obj, "timestamp"),
        name=_opt_str(obj, "name"),
        comment=_opt_str(obj, "comment"),
        files=files,
        is_banned=bool(_opt_int(obj, "banned")),
        is_op=bool(_opt_int(obj, "op")),
        list_index=list_index,
    )


def parse_2ch_thread(board: str, data: Any, base: str) -> Thread:
    data = _req_dict(data, "thread")
    threads = _req_list(data.get("threads"), "thread threads")
    if not threads:
        raise ParseError("Thread payload contains no thread object")
    raw_posts = _req_list(_req_dict(threads[0], "thread object").get("posts"), "thread posts")
    if not raw_posts:
        raise ParseError("Thread payload contains no posts")
    posts = [parse_2ch_post(p, i, base) for i, p in enumerate(raw_posts)]
    op = posts[0]
    number = _req_int(data, "current_thread", numeric_str=True) if "current_thread" in data else op.number
    return Thread(
        number=number,
        board=board,
        image_board=DVACH,
        title=_opt_str(data, "title"),
        posters_count=_opt_int(data, "unique_posters", numeric_str=True),
        create_timestamp=op.create_timestamp,
        posts=posts,
    )


# ── dispatch ─────────────────────────────────────────────────────


def parse_catalog(image_board: str, board: str, data: Any) -> list[CatalogThread]:
    if image_board == FOURCHAN:
        return parse_4chan_catalog(board, data)
    if image_board == DVACH:
        return parse_2ch_catalog(board, data)
    raise ValueError(f"Unsupported image board: {image_board!r}")


def parse_thread(image_board: str, board: str, data: Any, cfg: ImageBoardConfig | None = None) -> Thread:
    cfg = cfg or ImageBoardConfig()
    if image_board == FOURCHAN:
        return parse_4chan_thread(board, data, cfg.fourchan_image_base)
    if image_board == DVACH:
        return parse_2ch_thread(board, data, cfg.dvach_base)
    raise ValueError(f"Unsupported image board: {image_board!r}")
