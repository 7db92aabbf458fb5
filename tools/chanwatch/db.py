"""Database operations – persist observed threads, posts and files."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .config import DatabaseConfig
from .models import File, Post, Thread

logger = logging.getLogger("chanwatch.db")

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS threads (
           id               BIGSERIAL PRIMARY KEY,
           image_board      TEXT NOT NULL,
           board            TEXT NOT NULL,
           number           BIGINT NOT NULL,
           title            TEXT NOT NULL,
           posters_count    INTEGER NOT NULL,
           create_timestamp BIGINT NOT NULL,
           views_count      INTEGER NOT NULL,
           last_activity    BIGINT NOT NULL,
           is_deleted       BOOLEAN NOT NULL DEFAULT FALSE,
           UNIQUE (image_board, board, number)
       )""",
    """CREATE TABLE IF NOT EXISTS posts (
           id               BIGSERIAL PRIMARY KEY,
           thread_id        BIGINT NOT NULL REFERENCES threads (id) ON DELETE CASCADE,
           number           BIGINT NOT NULL,
           list_index       INTEGER NOT NULL,
           create_timestamp BIGINT NOT NULL,
           name             TEXT NOT NULL,
           comment          TEXT NOT NULL,
           is_banned        BOOLEAN NOT NULL,
           is_deleted       BOOLEAN NOT NULL,
           is_op            BOOLEAN NOT NULL,
           UNIQUE (thread_id, number)
       )""",
    """CREATE TABLE IF NOT EXISTS media_objects (
           id                BIGSERIAL PRIMARY KEY,
           hash_sha256       TEXT NOT NULL UNIQUE,
           mime_type         TEXT,
           file_size         BIGINT,
           width             INTEGER,
           height            INTEGER,
           storage_key       TEXT,
           thumb_key         TEXT,
           original_filename TEXT
       )""",
    """CREATE TABLE IF NOT EXISTS files (
           id            BIGSERIAL PRIMARY KEY,
           post_id       BIGINT NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
           list_index    INTEGER NOT NULL,
           url           TEXT NOT NULL,
           thumbnail_url TEXT NOT NULL,
           upload_name   TEXT NOT NULL,
           cdn_name      TEXT NOT NULL,
           check_sum     TEXT NOT NULL,
           is_deleted    BOOLEAN NOT NULL,
           media_id      BIGINT REFERENCES media_objects (id),
           UNIQUE (post_id, url)
       )""",
]

# Columns that update_* may touch; attribute names equal column names.
THREAD_COLUMNS = frozenset({"title", "posters_count", "views_count", "last_activity", "create_timestamp", "is_deleted"})
POST_COLUMNS = frozenset({"create_timestamp", "name", "comment", "is_banned", "is_deleted", "is_op"})
FILE_COLUMNS = frozenset({"thumbnail_url", "upload_name", "cdn_name", "check_sum", "is_deleted"})


def build_update(table: str, allowed: frozenset[str], fields: Iterable[str]) -> tuple[sql.Composed, list[str]]:
    """Compose ``UPDATE table SET a = %s, ... WHERE id = %s`` for known columns.

    Returns the statement and the column names in parameter order.
    """
    fields = list(fields)
    columns = [f for f in dict.fromkeys(fields) if f in allowed]
    if not columns:
        raise ValueError(f"No updatable {table} columns in {fields!r}")
    query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns),
    )
    return query, columns


def _file_from_row(row: dict) -> File:
    return File(
        url=row["url"],
        thumbnail_url=row["thumbnail_url"],
        upload_name=row["upload_name"],
        cdn_name=row["cdn_name"],
        check_sum=row["check_sum"],
        is_deleted=row["is_deleted"],
        list_index=row["list_index"],
        id=row["id"],
    )


def _post_from_row(row: dict) -> Post:
    return Post(
        number=row["number"],
        create_timestamp=row["create_timestamp"],
        name=row["name"],
        comment=row["comment"],
        is_banned=row["is_banned"],
        is_deleted=row["is_deleted"],
        is_op=row["is_op"],
        list_index=row["list_index"],
        id=row["id"],
    )


def _thread_from_row(row: dict) -> Thread:
    return Thread(
        number=row["number"],
        board=row["board"],
        image_board=row["image_board"],
        title=row["title"],
        posters_count=row["posters_count"],
        views_count=row["views_count"],
        last_activity=row["last_activity"],
        create_timestamp=row["create_timestamp"],
        is_deleted=row["is_deleted"],
        id=row["id"],
    )


class Database:
    """Async Postgres store for the observer and the file stasher.

    Every write commits on its own; a failed statement rolls back and
    re-raises so the caller can log it and carry on.
    """

    def __init__(self, cfg: DatabaseConfig | None = None) -> None:
        self.cfg = cfg or DatabaseConfig.from_env()
        self._conn: psycopg.AsyncConnection | None = None

    async def conn(self) -> psycopg.AsyncConnection:
        if self._conn is None or self._conn.closed:
            self._conn = await psycopg.AsyncConnection.connect(self.cfg.dsn, row_factory=dict_row, autocommit=False)
        return self._conn

    async def _execute(self, query: Any, params: Iterable[Any] = ()) -> dict | None:
        conn = await self.conn()
        try:
            cur = await conn.execute(query, tuple(params))
            row = await cur.fetchone() if cur.description else None
            await conn.commit()
            return row
        except psycopg.Error:
            await conn.rollback()
            raise

    async def _fetchall(self, query: Any, params: Iterable[Any] = ()) -> list[dict]:
        conn = await self.conn()
        cur = await conn.execute(query, tuple(params))
        rows = await cur.fetchall()
        await conn.commit()
        return rows

    async def create_tables(self) -> None:
        conn = await self.conn()
        for statement in SCHEMA:
            await conn.execute(statement)
        await conn.commit()
        logger.info("Database schema ready")

    # ── inserts ──────────────────────────────────────────────────

    async def insert_thread(self, thread: Thread) -> int:
        """Insert a thread row, returning its id. A deleted row stays deleted."""
        row = await self._execute(
            """INSERT INTO threads (image_board, board, number, title, posters_count,
                                    create_timestamp, views_count, last_activity, is_deleted)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (image_board, board, number) DO UPDATE SET
                   title         = EXCLUDED.title,
                   posters_count = EXCLUDED.posters_count,
                   views_count   = EXCLUDED.views_count,
                   last_activity = EXCLUDED.last_activity,
                   is_deleted    = threads.is_deleted OR EXCLUDED.is_deleted
               RETURNING id""",
            (
                thread.image_board, thread.board, thread.number, thread.title, thread.posters_count,
                thread.create_timestamp, thread.views_count, thread.last_activity, thread.is_deleted,
            ),
        )
        return row["id"]

    async def insert_post(self, thread: Thread, post: Post) -> int:
        row = await self._execute(
            """INSERT INTO posts (thread_id, number, list_index, create_timestamp, name,
                                  comment, is_banned, is_deleted, is_op)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (thread_id, number) DO UPDATE SET
                   comment    = EXCLUDED.comment,
                   is_banned  = EXCLUDED.is_banned,
                   is_deleted = posts.is_deleted OR EXCLUDED.is_deleted
               RETURNING id""",
            (
                thread.id, post.number, post.list_index, post.create_timestamp, post.name,
                post.comment, post.is_banned, post.is_deleted, post.is_op,
            ),
        )
        return row["id"]

    async def insert_file(self, post: Post, file: File) -> int:
        row = await self._execute(
            """INSERT INTO files (post_id, list_index, url, thumbnail_url, upload_name,
                                  cdn_name, check_sum, is_deleted)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (post_id, url) DO UPDATE SET
                   thumbnail_url = EXCLUDED.thumbnail_url,
                   check_sum     = EXCLUDED.check_sum,
                   is_deleted    = files.is_deleted OR EXCLUDED.is_deleted
               RETURNING id""",
            (
                post.id, file.list_index, file.url, file.thumbnail_url, file.upload_name,
                file.cdn_name, file.check_sum, file.is_deleted,
            ),
        )
        return row["id"]

    # ── updates ──────────────────────────────────────────────────

    async def _update(self, table: str, allowed: frozenset[str], entity: Any, fields: Iterable[str]) -> None:
        if entity.id is None:
            logger.debug("Skipping %s update for unsaved entity", table)
            return
        # Identity columns such as board or url are never rewritten.
        fields = [f for f in fields if f in allowed]
        if not fields:
            return
        query, columns = build_update(table, allowed, fields)
        await self._execute(query, [getattr(entity, c) for c in columns] + [entity.id])

    async def update_thread(self, thread: Thread, fields: Iterable[str]) -> None:
        await self._update("threads", THREAD_COLUMNS, thread, fields)

    async def update_post(self, post: Post, fields: Iterable[str]) -> None:
        await self._update("posts", POST_COLUMNS, post, fields)

    async def update_file(self, file: File, fields: Iterable[str]) -> None:
        await self._update("files", FILE_COLUMNS, file, fields)

    # ── startup ──────────────────────────────────────────────────

    async def select_tracked_threads(self, image_board: str, board: str) -> list[Thread]:
        """Load every live thread of a board with its posts and files."""
        thread_rows = await self._fetchall(
            "SELECT * FROM threads WHERE image_board = %s AND board = %s AND NOT is_deleted ORDER BY number",
            (image_board, board),
        )
        threads = {row["id"]: _thread_from_row(row) for row in thread_rows}
        if not threads:
            return []

        post_rows = await self._fetchall(
            "SELECT * FROM posts WHERE thread_id = ANY(%s) ORDER BY thread_id, id",
            (list(threads),),
        )
        posts: dict[int, Post] = {}
        for row in post_rows:
            post = _post_from_row(row)
            posts[row["id"]] = post
            threads[row["thread_id"]].posts.append(post)

        if posts:
            file_rows = await self._fetchall(
                "SELECT * FROM files WHERE post_id = ANY(%s) ORDER BY post_id, id",
                (list(posts),),
            )
            for row in file_rows:
                posts[row["post_id"]].files.append(_file_from_row(row))

        return list(threads.values())

    async def select_deleted_numbers(self, image_board: str, board: str) -> list[int]:
        rows = await self._fetchall(
            "SELECT number FROM threads WHERE image_board = %s AND board = %s AND is_deleted",
            (image_board, board),
        )
        return [row["number"] for row in rows]

    # ── media_objects dedup ──────────────────────────────────────

    async def media_hash_exists(self, sha256: str) -> dict | None:
        """Return existing media_objects row if sha256 is already stored."""
        rows = await self._fetchall("SELECT * FROM media_objects WHERE hash_sha256 = %s", (sha256,))
        return rows[0] if rows else None

    async def insert_media_object(
        self,
        *,
        hash_sha256: str,
        mime_type: str | None = None,
        file_size: int | None = None,
        width: int | None = None,
        height: int | None = None,
        storage_key: str | None = None,
        thumb_key: str | None = None,
        original_filename: str | None = None,
    ) -> int:
        row = await self._execute(
            """INSERT INTO media_objects
                   (hash_sha256, mime_type, file_size, width, height,
                    storage_key, thumb_key, original_filename)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (hash_sha256) DO UPDATE SET hash_sha256 = EXCLUDED.hash_sha256
               RETURNING id""",
            (hash_sha256, mime_type, file_size, width, height,
             storage_key, thumb_key, original_filename),
        )
        return row["id"]

    async def link_file_media(self, file_id: int, media_id: int) -> None:
        await self._execute("UPDATE files SET media_id = %s WHERE id = %s", (media_id, file_id))

    # ── lifecycle ────────────────────────────────────────────────

    async def close(self) -> None:
        if self._conn and not self._conn.closed:
            await self._conn.close()

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
