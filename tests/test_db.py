from __future__ import annotations

import pytest
from psycopg import sql

from chanwatch.config import DatabaseConfig
from chanwatch.db import (
    FILE_COLUMNS,
    POST_COLUMNS,
    SCHEMA,
    THREAD_COLUMNS,
    Database,
    _post_from_row,
    _thread_from_row,
    build_update,
)

from .conftest import make_file, make_post, make_thread


def test_build_update_keeps_known_columns_in_order():
    query, columns = build_update("threads", THREAD_COLUMNS, ["posters_count", "posts", "title", "posters_count"])

    assert isinstance(query, sql.Composed)
    assert columns == ["posters_count", "title"]


def test_build_update_rejects_nothing_to_update():
    with pytest.raises(ValueError, match="posts"):
        build_update("posts", POST_COLUMNS, (f for f in ["files"]))


def test_file_url_is_not_updatable():
    assert "url" not in FILE_COLUMNS


def test_rows_to_entities():
    thread = _thread_from_row({
        "id": 3, "number": 100, "board": "g", "image_board": "4chan", "title": "t",
        "posters_count": 2, "views_count": 9, "last_activity": 50, "create_timestamp": 1,
        "is_deleted": False,
    })
    post = _post_from_row({
        "id": 4, "number": 101, "create_timestamp": 2, "name": "", "comment": "c",
        "is_banned": True, "is_deleted": False, "is_op": False, "list_index": 1,
    })

    assert thread.id == 3 and thread.views_count == 9 and thread.posts == []
    assert post.id == 4 and post.is_banned and post.files == []


def test_dsn():
    cfg = DatabaseConfig(host="db", port=6543, dbname="x", user="u", password="p")
    assert cfg.dsn == "postgresql://u:p@db:6543/x"


async def test_update_of_unsaved_entity_is_skipped():
    db = Database(DatabaseConfig())
    # No id yet, so no connection is attempted.
    await db.update_thread(make_thread(1), ["title"])
    assert db._conn is None


class FakeCursor:
    def __init__(self, row: dict | None) -> None:
        self.description = [("id",)] if row is not None else None
        self._row = row

    async def fetchone(self):
        return self._row


class FakeConnection:
    """Stands in for psycopg's AsyncConnection and records statements."""

    closed = False

    def __init__(self) -> None:
        self.statements: list[tuple] = []
        self.commits = 0

    async def execute(self, query, params=()):
        self.statements.append((query, params))
        text = query if isinstance(query, str) else ""
        return FakeCursor({"id": 1} if "RETURNING id" in text else None)

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        pass


@pytest.fixture
def db() -> Database:
    database = Database(DatabaseConfig())
    database._conn = FakeConnection()
    return database


def test_files_are_unique_per_post():
    files_ddl = next(s for s in SCHEMA if "CREATE TABLE IF NOT EXISTS files" in s)
    assert "UNIQUE (post_id, url)" in files_ddl


@pytest.mark.parametrize("method, table", [("insert_thread", "threads"), ("insert_post", "posts"), ("insert_file", "files")])
async def test_upserts_never_clear_deleted_flag(db, method, table):
    thread = make_thread(1, id=5)
    post = make_post(1, id=6)
    args = {
        "insert_thread": (thread,),
        "insert_post": (thread, post),
        "insert_file": (post, make_file("https://i/g/a.jpg")),
    }[method]

    assert await getattr(db, method)(*args) == 1

    query, _ = db._conn.statements[-1]
    assert "ON CONFLICT" in query
    assert f"is_deleted = {table}.is_deleted OR EXCLUDED.is_deleted" in " ".join(query.split())


async def test_update_skips_identity_columns(db):
    thread = make_thread(1, id=5, title="new")

    await db.update_thread(thread, ["board", "image_board"])
    assert db._conn.statements == []

    await db.update_thread(thread, ["board", "title", "posts"])
    (_, params), = db._conn.statements
    assert params == ("new", 5)
