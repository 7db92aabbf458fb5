"""CLI entry-point for the board watcher."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .api import ImageBoardAPI
from .config import DatabaseConfig, ImageBoardConfig, ObserverConfig, S3Config, WatchConfig
from .db import Database
from .errors import ChanWatchError
from .events import Event, EventEmitter
from .models import CatalogThread, Thread
from .observer import ThreadsObserver
from .parsers import SUPPORTED_IMAGEBOARDS
from .stasher import FileStasher
from .storage import MediaStorage

console = Console()
logger = logging.getLogger("chanwatch.cli")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    for name in ("httpx", "httpcore", "boto3", "botocore", "urllib3", "s3transfer", "PIL", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _print_stats(title: str, stats: dict) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in stats.items():
        table.add_row(key.replace("_", " ").capitalize(), str(val))
    console.print(table)


def _describe(event: Event) -> str:
    thread = getattr(event, "thread", None)
    where = f"/{thread.image_board}/{thread.board}/{thread.number}" if thread else ""
    post = getattr(event, "post", None)
    if post is not None:
        where += f" #{post.number}"
    f = getattr(event, "file", None)
    if f is not None:
        where += f" {f.url}"
    diff = getattr(event, "diff", None)
    if diff is not None:
        where += f" {diff.fields}"
    ct = getattr(event, "catalog_thread", None)
    if ct is not None:
        where = f"/{ct.image_board}/{ct.board}/{ct.number}"
    return f"{event.name} {where}"


def _log_event(event: Event) -> None:
    logger.debug("%s", _describe(event))


def _parse_target(target: str) -> tuple[str, str]:
    image_board, sep, board = target.strip("/").partition("/")
    if not sep or not board or image_board not in SUPPORTED_IMAGEBOARDS:
        raise click.BadParameter(
            f"{target!r} – expected IMAGEBOARD/BOARD with IMAGEBOARD one of {', '.join(SUPPORTED_IMAGEBOARDS)}"
        )
    return image_board, board


def _check_imageboard(ctx: click.Context, param: click.Parameter, value: str) -> str:
    if value not in SUPPORTED_IMAGEBOARDS:
        raise click.BadParameter(f"must be one of {', '.join(SUPPORTED_IMAGEBOARDS)}")
    return value


def _ts(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M") if ts else ""


@click.group()
@click.option("--db-host", envvar="DB_HOST", default="localhost", help="PostgreSQL host")
@click.option("--db-port", envvar="DB_PORT", default=5432, type=int, help="PostgreSQL port")
@click.option("--db-name", envvar="DB_NAME", default="chanwatch", help="PostgreSQL database name")
@click.option("--db-user", envvar="DB_USER", default="chanwatch", help="PostgreSQL user")
@click.option("--db-password", envvar="DB_PASSWORD", default="chanwatch", help="PostgreSQL password")
@click.option("--s3-endpoint", envvar="S3_ENDPOINT", default="http://localhost:9000", help="MinIO/S3 endpoint URL")
@click.option("--s3-access-key", envvar="S3_ACCESS_KEY", default="minioadmin", help="S3 access key")
@click.option("--s3-secret-key", envvar="S3_SECRET_KEY", default="minioadmin", help="S3 secret key")
@click.option("--s3-bucket", envvar="S3_BUCKET", default="chanwatch", help="S3 bucket name")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging (includes every event)")
@click.pass_context
def cli(ctx: click.Context, **kwargs: object) -> None:
    """chanwatch – follow image board threads and record every change.

    Polls board catalogs and threads on 4chan and 2ch, diffs them against
    what was seen before and stores threads, posts and files as they
    appear, change and disappear.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    ctx.obj["db_cfg"] = DatabaseConfig(
        host=kwargs["db_host"],  # type: ignore[arg-type]
        port=kwargs["db_port"],  # type: ignore[arg-type]
        dbname=kwargs["db_name"],  # type: ignore[arg-type]
        user=kwargs["db_user"],  # type: ignore[arg-type]
        password=kwargs["db_password"],  # type: ignore[arg-type]
    )
    ctx.obj["s3_cfg"] = S3Config(
        endpoint=kwargs["s3_endpoint"],  # type: ignore[arg-type]
        access_key=kwargs["s3_access_key"],  # type: ignore[arg-type]
        secret_key=kwargs["s3_secret_key"],  # type: ignore[arg-type]
        bucket=kwargs["s3_bucket"],  # type: ignore[arg-type]
    )


# ─── watching ────────────────────────────────────────────────────


async def _watch(cfg: WatchConfig) -> list[ThreadsObserver]:
    api = ImageBoardAPI(cfg.imageboards)
    emitter = EventEmitter()
    emitter.on_any(_log_event)
    db = None if cfg.dry_run else Database(cfg.db)
    observers = [ThreadsObserver(oc, api, emitter, db) for oc in cfg.observers]

    stasher = None
    if cfg.stash_files and not cfg.dry_run:
        storage = MediaStorage(cfg.s3, thumb_max=cfg.thumbnail_max_size)
        await asyncio.to_thread(storage.ensure_bucket)
        stasher = FileStasher(
            api, storage, db, delay=cfg.stash_delay, generate_thumbnails=cfg.generate_thumbnails
        )
        stasher.attach(emitter)

    def stop_all() -> None:
        logger.info("Stopping after requests in flight…")
        for o in observers:
            o.stop()
        if stasher:
            stasher.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        if db is not None:
            await db.create_tables()
        tasks = [o.run() for o in observers]
        if stasher:
            tasks.append(stasher.run())
        await asyncio.gather(*tasks)
    finally:
        await api.close()
        if db is not None:
            await db.close()
    if stasher:
        _print_stats("Stasher Summary", stasher.stats)
    return observers


@cli.command()
@click.argument("targets", nargs=-1, required=True)
@click.option("--whitelist", "whitelist", multiple=True, type=int, help="Only follow these thread numbers (repeatable)")
@click.option("--catalog-delay", default=5.0, type=float, show_default=True, help="Seconds between catalog polls")
@click.option("--thread-delay", default=1.0, type=float, show_default=True, help="Seconds between thread fetches")
@click.option("--stash/--no-stash", default=True, help="Download attachments into S3")
@click.option("--generate-thumbs", is_flag=True, help="Render thumbnails locally instead of fetching upstream ones")
@click.option("--dry-run", is_flag=True, help="Observe and log events without touching DB or S3")
@click.pass_context
def watch(
    ctx: click.Context,
    targets: tuple[str, ...],
    whitelist: tuple[int, ...],
    catalog_delay: float,
    thread_delay: float,
    stash: bool,
    generate_thumbs: bool,
    dry_run: bool,
) -> None:
    """Watch one or more boards until interrupted.

    Example: chanwatch watch 4chan/g 2ch/b --thread-delay 1.5
    """
    observers = [
        ObserverConfig(
            image_board=ib,
            board=board,
            whitelist=frozenset(whitelist),
            whitelist_enabled=bool(whitelist),
            catalog_delay=catalog_delay,
            thread_delay=thread_delay,
        )
        for ib, board in (_parse_target(t) for t in targets)
    ]
    cfg = WatchConfig(
        db=ctx.obj["db_cfg"],
        s3=ctx.obj["s3_cfg"],
        observers=observers,
        stash_files=stash,
        generate_thumbnails=generate_thumbs,
        dry_run=dry_run,
    )
    console.print(f"[bold]Watching {', '.join(f'/{o.image_board}/{o.board}/' for o in observers)}[/bold]")
    for o in asyncio.run(_watch(cfg)):
        _print_stats(f"/{o.label}/ Summary", o.stats)


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database tables."""

    async def _init() -> None:
        async with Database(ctx.obj["db_cfg"]) as db:
            await db.create_tables()

    asyncio.run(_init())
    console.print("[green]✓[/green] Database ready")


# ─── previews ────────────────────────────────────────────────────


@cli.command(name="catalog")
@click.argument("image_board", callback=_check_imageboard)
@click.argument("board")
@click.option("--limit", default=10, type=int, help="Number of threads to show")
def catalog(image_board: str, board: str, limit: int) -> None:
    """Preview a board's catalog without recording anything.

    Example: chanwatch catalog 4chan g --limit 5
    """

    async def _fetch() -> list[CatalogThread] | None:
        async with ImageBoardAPI(ImageBoardConfig()) as api:
            return await api.fetch_catalog(image_board, board)

    try:
        threads = asyncio.run(_fetch())
    except ChanWatchError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    if threads is None:
        console.print(f"[red]✗[/red] Board /{image_board}/{board}/ not found")
        sys.exit(1)

    table = Table(title=f"/{image_board}/{board}/ Catalog Preview", show_header=True, header_style="bold cyan")
    table.add_column("No", style="bold", justify="right")
    table.add_column("Subject", max_width=40)
    table.add_column("Posts", justify="right")
    table.add_column("Views", justify="right")
    table.add_column("Last activity")
    for t in threads[:limit]:
        table.add_row(
            str(t.number),
            (t.title or t.comment)[:40],
            str(t.posts_count),
            str(t.views_count),
            _ts(t.last_activity),
        )
    console.print(table)


@cli.command(name="thread")
@click.argument("image_board", callback=_check_imageboard)
@click.argument("board")
@click.argument("number", type=int)
@click.option("--limit", default=20, type=int, help="Number of posts to show")
def thread(image_board: str, board: str, number: int, limit: int) -> None:
    """Preview a single thread without recording anything.

    Example: chanwatch thread 2ch b 123456
    """

    async def _fetch() -> Thread | None:
        async with ImageBoardAPI(ImageBoardConfig()) as api:
            return await api.fetch_thread(image_board, board, number)

    try:
        t = asyncio.run(_fetch())
    except ChanWatchError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    if t is None:
        console.print(f"[red]✗[/red] Thread /{image_board}/{board}/{number} not found")
        sys.exit(1)

    console.print(
        f"[bold]{t.title or '(no subject)'}[/bold] – {len(t.posts)} posts, "
        f"{t.files_count()} files, {t.posters_count} posters"
    )
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("No", style="bold", justify="right")
    table.add_column("Posted")
    table.add_column("Name")
    table.add_column("Comment", max_width=50)
    table.add_column("Files", justify="right")
    for p in t.posts[:limit]:
        table.add_row(str(p.number), _ts(p.create_timestamp), p.name, p.comment[:50], str(len(p.files)))
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
