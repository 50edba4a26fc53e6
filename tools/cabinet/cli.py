"""CLI entry-point for cabinet."""

from __future__ import annotations

import logging
import signal
import sys
import threading

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .app import Cabinet
from .config import ConfigProvider, DatabaseConfig, FourChanWatcherConfig
from .crawlers import ArchivedThreadCache, create_crawler
from .db import Database
from .errors import CabinetError
from .orchestrator import CycleResult
from .providers import FourChanProvider
from .watchers import WatcherService

console = Console()
logger = logging.getLogger("cabinet.cli")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("s3transfer").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def _print_stats(title: str, stats: dict) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in stats.items():
        table.add_row(key.replace("_", " ").capitalize(), str(val))
    console.print(table)


def _print_cycle(result: CycleResult) -> None:
    _print_stats(
        "Crawl Summary",
        {
            "boards": result.boards,
            "threads": result.threads,
            "posts": result.posts,
            "attachments": result.attachments,
            "seconds": f"{result.elapsed:.1f}",
        },
    )
    table = Table(title="Watchers", show_header=True, header_style="bold cyan")
    table.add_column("Watcher", style="bold")
    table.add_column("Threads", justify="right")
    table.add_column("Posts", justify="right")
    table.add_column("Attachments", justify="right")
    table.add_column("OK", justify="center")
    for r in result.watcher_results:
        ok = "[green]✓[/green]" if r.is_successful else f"[red]✗[/red] {r.error_message or ''}"
        table.add_row(r.watcher_name, str(r.threads_found), str(r.posts_found), str(r.attachments_found), ok)
    console.print(table)


def _load_config(ctx: click.Context) -> ConfigProvider:
    provider: ConfigProvider = ctx.obj["config"]
    try:
        provider.load()
    except CabinetError as exc:
        raise click.ClickException(str(exc)) from exc
    return provider


def _watcher_config(provider: ConfigProvider, name: str) -> FourChanWatcherConfig:
    for cfg in provider.watchers:
        if cfg.name == name:
            return cfg
    raise click.ClickException(f"Watcher '{name}' is not configured")


@click.group()
@click.option("-c", "--config", "config_path", envvar="CABINET_CONFIG", default="cabinet.config.json",
              type=click.Path(dir_okay=False), help="Path to the JSON configuration file")
@click.option("--db-host", envvar="DB_HOST", default="localhost", help="PostgreSQL host")
@click.option("--db-port", envvar="DB_PORT", default=5432, type=int, help="PostgreSQL port")
@click.option("--db-name", envvar="DB_NAME", default="cabinet", help="PostgreSQL database name")
@click.option("--db-user", envvar="DB_USER", default="cabinet", help="PostgreSQL user")
@click.option("--db-password", envvar="DB_PASSWORD", default="cabinet", help="PostgreSQL password")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, **kwargs: object) -> None:
    """Cabinet – watch imageboards and archive what matches.

    Crawls configured watchers on a schedule, stores boards, threads and
    posts in PostgreSQL and downloads attachments to disk or S3.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    ctx.obj["config"] = ConfigProvider(kwargs["config_path"])  # type: ignore[arg-type]
    ctx.obj["db_cfg"] = DatabaseConfig(
        host=kwargs["db_host"],  # type: ignore[arg-type]
        port=kwargs["db_port"],  # type: ignore[arg-type]
        dbname=kwargs["db_name"],  # type: ignore[arg-type]
        user=kwargs["db_user"],  # type: ignore[arg-type]
        password=kwargs["db_password"],  # type: ignore[arg-type]
    )


# ─── Commands ────────────────────────────────────────────────────


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    with Database(ctx.obj["db_cfg"]) as db:
        db.migrate()
    console.print("[green]✓[/green] Database schema is ready")


@cli.command()
@click.option("--no-worker", is_flag=True, help="Do not run attachment workers in this process")
@click.pass_context
def serve(ctx: click.Context, no_worker: bool) -> None:
    """Crawl on the configured schedule until interrupted.

    Send SIGHUP to reload the configuration file.
    """
    provider = _load_config(ctx)
    stop = threading.Event()

    with Cabinet(provider, ctx.obj["db_cfg"]) as cabinet:
        cabinet.initialize(schedule=True)
        if not no_worker:
            cabinet.create_worker().start()

        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        if hasattr(signal, "SIGHUP"):
            # reload off the signal handler; listeners may block on a running cycle
            signal.signal(
                signal.SIGHUP,
                lambda *_: threading.Thread(target=provider.reload, name="cabinet-reload", daemon=True).start(),
            )

        console.print("[bold]Cabinet is running.[/bold] Press Ctrl+C to stop.")
        stop.wait()
        console.print("[bold]Shutting down...[/bold]")


@cli.command()
@click.option("--download", is_flag=True, help="Process queued attachment jobs after crawling")
@click.pass_context
def crawl(ctx: click.Context, download: bool) -> None:
    """Run a single crawl cycle now.

    Example: cabinet crawl --download
    """
    provider = _load_config(ctx)
    with Cabinet(provider, ctx.obj["db_cfg"]) as cabinet:
        cabinet.initialize()
        try:
            result = cabinet.orchestrator.run_cycle()
        except Exception as exc:
            console.print(f"[red]✗[/red] Crawl failed: {exc}")
            sys.exit(1)
        _print_cycle(result)
        if download:
            count = cabinet.create_worker().drain()
            console.print(f"[green]✓[/green] Processed {count} attachment jobs")


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Delete threads, posts and attachments no watcher references anymore."""
    provider = _load_config(ctx)
    with Cabinet(provider, ctx.obj["db_cfg"]) as cabinet:
        cabinet.initialize()
        found = cabinet.orchestrator.clean_up_obsolete_entities()
        _print_stats(
            "Obsolete Entities",
            {"threads": len(found.threads), "posts": len(found.posts), "attachments": len(found.attachments)},
        )


@cli.command()
@click.option("--once", is_flag=True, help="Drain the queue and exit instead of polling")
@click.pass_context
def worker(ctx: click.Context, once: bool) -> None:
    """Run attachment download and deletion workers."""
    provider = _load_config(ctx)
    with Cabinet(provider, ctx.obj["db_cfg"]) as cabinet:
        cabinet.attachments.initialize()
        queue_worker = cabinet.create_worker()
        if once:
            count = queue_worker.drain()
            console.print(f"[green]✓[/green] Processed {count} attachment jobs")
            _print_stats("Attachment Queue", cabinet.queue.counts())
            return
        stop = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        queue_worker.start()
        stop.wait()


@cli.command()
@click.argument("watcher_name")
@click.argument("url")
@click.pass_context
def pin(ctx: click.Context, watcher_name: str, url: str) -> None:
    """Pin a thread URL to a watcher so it is always crawled.

    Example: cabinet pin wallpapers https://boards.4chan.org/wg/thread/123456
    """
    provider = _load_config(ctx)
    cfg = _watcher_config(provider, watcher_name)
    with Database(ctx.obj["db_cfg"]) as db:
        service = WatcherService(db)
        try:
            watcher = service.find_by_name(watcher_name)
        except CabinetError as exc:
            raise click.ClickException(str(exc)) from exc
        crawler = create_crawler(cfg, watcher, ArchivedThreadCache())
        try:
            actual = crawler.get_actual_url(url)
        finally:
            crawler.close()
        if actual is None:
            raise click.ClickException(f"Not a thread URL for a '{cfg.type}' watcher: {url}")
        service.add_watcher_thread(watcher, actual)
    console.print(f"[green]✓[/green] Pinned {actual} to '{watcher_name}'")


@cli.command()
@click.argument("watcher_name")
@click.argument("thread_id")
@click.pass_context
def exclude(ctx: click.Context, watcher_name: str, thread_id: str) -> None:
    """Stop a watcher from matching a thread.

    THREAD_ID is the stored thread id, e.g. a.4cdn.org::four-chan::g::123456
    """
    with Database(ctx.obj["db_cfg"]) as db:
        service = WatcherService(db)
        try:
            watcher = service.find_by_name(watcher_name)
        except CabinetError as exc:
            raise click.ClickException(str(exc)) from exc
        service.exclude_thread(watcher, thread_id)
    console.print(f"[green]✓[/green] '{watcher_name}' now excludes {thread_id}")


@cli.command()
@click.option("--limit", default=10, type=int, help="Number of crawls to show")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """Show recent crawl cycles and per-run averages."""
    from .activity import ActivityLog

    with Database(ctx.obj["db_cfg"]) as db:
        log = ActivityLog(db)
        table = Table(title="Recent Crawls", show_header=True, header_style="bold cyan")
        table.add_column("ID", justify="right")
        table.add_column("Started")
        table.add_column("Threads", justify="right")
        table.add_column("Posts", justify="right")
        table.add_column("Attachments", justify="right")
        table.add_column("OK", justify="center")
        for row in log.recent_crawls(limit):
            result = row.get("result") or {}
            ok = "[green]✓[/green]" if row["is_success"] else f"[red]✗[/red] {row.get('error_message') or ''}"
            table.add_row(
                str(row["id"]),
                row["start_time"].strftime("%Y-%m-%d %H:%M:%S"),
                str(result.get("threads_created", "")),
                str(result.get("posts_created", "")),
                str(result.get("attachments_created", "")),
                ok,
            )
        console.print(table)
        stats = log.crawling_statistics()
        _print_stats("Averages", {k: f"{v:.1f}" if isinstance(v, float) else v for k, v in stats.items()})


@cli.command(name="list-boards")
@click.option("--endpoint", default="https://a.4cdn.org", help="4chan API endpoint")
@click.pass_context
def list_boards(ctx: click.Context, endpoint: str) -> None:
    """List all boards a 4chan-compatible endpoint serves."""
    cfg = FourChanWatcherConfig(name="list-boards", entries=(), endpoint=endpoint)
    with FourChanProvider(cfg) as provider:
        boards = provider.get_all_boards()
    table = Table(title="Boards", show_header=True, header_style="bold cyan")
    table.add_column("Board", style="bold")
    table.add_column("Title")
    table.add_column("Id")
    for b in sorted(boards, key=lambda x: x.code):
        table.add_row(f"/{b.code}/", b.title, b.unique_id)
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
