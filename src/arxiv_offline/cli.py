"""Command-line entry point for the offline arXiv feed."""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import sys
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
from platformdirs import user_config_dir
from rich.console import Console
from rich.markup import escape as escape_markup
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn
from rich.table import Table

from arxiv_offline.config import SyncConfig, load_config
from arxiv_offline.connectivity import ConnectivityMonitor
from arxiv_offline.document_cache import (
    DOC_LOADED,
    DocumentResolver,
    DocumentStore,
    get_documents_db_path,
)
from arxiv_offline.errors import StorageError, SyncError
from arxiv_offline.feed_sync import FETCH_FAILED, FETCH_INVALID, FeedState, FeedSyncEngine
from arxiv_offline.models import (
    CONFIG_APP_NAME,
    READ_STATUSES,
    VIEW_READING_LIST,
    FeedQuery,
    Paper,
)
from arxiv_offline.scheduler import RefreshScheduler
from arxiv_offline.services.arxiv_feed_service import derive_pdf_url
from arxiv_offline.services.interfaces import build_default_app_services
from arxiv_offline.store import RecordStore, get_records_db_path

logger = logging.getLogger(__name__)

STATUS_ICONS = {"unread": " ", "skimmed": "~", "read": "✓", "deep": "★"}


@dataclass(slots=True)
class Runtime:
    """Everything one CLI invocation needs, wired to a single HTTP client."""

    config: SyncConfig
    monitor: ConnectivityMonitor
    store: RecordStore
    documents: DocumentStore
    engine: FeedSyncEngine
    resolver: DocumentResolver

    def close(self) -> None:
        self.engine.close()


def build_runtime(
    config: SyncConfig,
    client: httpx.AsyncClient | None,
    *,
    offline: bool = False,
) -> Runtime:
    """Wire stores, services and engines for the configured data dir."""
    data_dir = config.resolved_data_dir()
    services = build_default_app_services(
        client,
        timeout_seconds=config.request_timeout_seconds,
        user_agent=config.user_agent,
    )
    monitor = ConnectivityMonitor(online=not offline)
    store = RecordStore(get_records_db_path(data_dir))
    documents = DocumentStore(
        get_documents_db_path(data_dir), max_bytes=config.document_cache_max_bytes
    )
    engine = FeedSyncEngine(store, services.feed, monitor, query=config.feed_query())
    resolver = DocumentResolver(documents, services.documents, monitor)
    return Runtime(
        config=config,
        monitor=monitor,
        store=store,
        documents=documents,
        engine=engine,
        resolver=resolver,
    )


def build_actionable_error(action: str, *, next_step: str, why: str | None = None) -> str:
    """Build a 2-3 line actionable error message."""
    lines = [f"Could not {action}."]
    if why:
        lines.append(f"Why: {why.rstrip('.')}.")
    lines.append(f"Next step: {next_step.rstrip('.')}.")
    return "\n".join(lines)


def _print_error(action: str, *, next_step: str, why: str | None = None) -> None:
    print(build_actionable_error(action, why=why, next_step=next_step), file=sys.stderr)


def _format_refresh(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def _papers_table(papers: list[Paper], *, title: str) -> Table:
    table = Table(title=escape_markup(title), show_lines=False)
    table.add_column("ID", no_wrap=True)
    table.add_column("St", justify="center")
    table.add_column("★", justify="center")
    table.add_column("Title")
    table.add_column("Authors")
    for paper in papers:
        authors = ", ".join(paper.authors[:3])
        if len(paper.authors) > 3:
            authors += " et al."
        table.add_row(
            escape_markup(paper.id),
            STATUS_ICONS.get(paper.status, "?"),
            "★" if paper.bookmarked else "",
            escape_markup(paper.title),
            escape_markup(authors),
        )
    return table


def _query_from_args(args: argparse.Namespace, config: SyncConfig) -> FeedQuery:
    query = config.feed_query()
    if args.category:
        query = replace(query, categories=tuple(args.category))
    if args.keywords is not None:
        query = replace(query, keywords=args.keywords)
    return query


# ============================================================================
# Commands
# ============================================================================


async def _cmd_feed(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    engine = runtime.engine
    query = _query_from_args(args, runtime.config)
    await engine.load_cached_feed(query)

    if not args.no_fetch:
        outcome = await engine.fetch_feed()
        if outcome.result == FETCH_INVALID:
            _print_error(
                "fetch the feed",
                why=outcome.error,
                next_step="pass --category cs.AI or set categories in the config file",
            )
            return 1
        if outcome.result == FETCH_FAILED and not engine.state.papers:
            _print_error(
                "fetch the feed",
                why=outcome.error,
                next_step="check your connection and retry, or use --offline",
            )
            return 1
        if not outcome.ok and outcome.error:
            print(f"Warning: {outcome.error}", file=sys.stderr)

    visible = engine.apply_local_filter(args.filter or "")
    state = engine.state
    title = (
        f"{', '.join(query.categories)} - {len(visible)} of {len(state.papers)} papers "
        f"(refreshed {_format_refresh(state.last_refresh)})"
    )
    console.print(_papers_table(visible, title=title))
    return 0


async def _cmd_reading_list(
    args: argparse.Namespace, runtime: Runtime, console: Console
) -> int:
    engine = runtime.engine
    await engine.set_view_mode(VIEW_READING_LIST)
    if engine.state.error_kind == StorageError.kind:
        _print_error(
            "load the reading list",
            why=engine.state.error,
            next_step="check that the data directory is writable",
        )
        return 1
    visible = engine.apply_local_filter(args.filter or "")
    console.print(_papers_table(visible, title=f"Reading list ({len(visible)})"))
    return 0


async def _load_for_update(runtime: Runtime) -> None:
    # The cached feed provides the in-memory fallback for records not yet stored.
    await runtime.engine.load_cached_feed()


async def _cmd_bookmark(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    await _load_for_update(runtime)
    paper = await runtime.engine.toggle_bookmark(args.id)
    if paper is None:
        _print_error("bookmark", why=f"{args.id} is not stored locally", next_step="run feed first")
        return 1
    verb = "Bookmarked" if paper.bookmarked else "Removed bookmark from"
    console.print(f"{verb} {escape_markup(paper.title)}")
    return 0


async def _cmd_status(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    await _load_for_update(runtime)
    paper = await runtime.engine.set_status(args.id, args.status)
    if paper is None:
        _print_error("set status", why=f"{args.id} is not stored locally", next_step="run feed first")
        return 1
    console.print(f"Marked {escape_markup(paper.title)} as {paper.status}")
    return 0


async def _cmd_note(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    await _load_for_update(runtime)
    paper = await runtime.engine.set_note(args.id, args.text)
    if paper is None:
        _print_error("save note", why=f"{args.id} is not stored locally", next_step="run feed first")
        return 1
    console.print(f"Saved note for {escape_markup(paper.title)}")
    return 0


def _document_url(paper: Paper) -> str:
    if paper.pdf_url:
        return paper.pdf_url
    if paper.url:
        return derive_pdf_url(paper.url)
    return ""


async def _cmd_pdf(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    paper = await asyncio.to_thread(runtime.store.get_item, args.id)
    if paper is None:
        _print_error("open PDF", why=f"{args.id} is not stored locally", next_step="run feed first")
        return 1

    with Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        DownloadColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task(f"Downloading {paper.arxiv_id or paper.id}", total=None)

        def _on_progress(loaded: int, total: int) -> None:
            progress.update(task_id, completed=loaded, total=total or None)

        state = await runtime.resolver.resolve(paper.id, _document_url(paper), _on_progress)

    if state.status != DOC_LOADED or state.data is None:
        _print_error(
            "open PDF",
            why=state.error,
            next_step="retry when online" if not runtime.monitor.is_online else "retry later",
        )
        return 1

    source = "cache" if state.from_cache else "network"
    if args.output is not None:
        try:
            args.output.write_bytes(state.data)
        except OSError as exc:
            _print_error("write PDF", why=str(exc), next_step="choose another --output path")
            return 1
        console.print(f"Wrote {len(state.data)} bytes from {source} to {args.output}")
    else:
        console.print(f"{len(state.data)} bytes available from {source} for {paper.id}")
    return 0


async def _cmd_cache_stats(
    args: argparse.Namespace, runtime: Runtime, console: Console
) -> int:
    stats = await asyncio.to_thread(runtime.documents.stats)
    cap = runtime.documents.max_bytes
    console.print(f"Cached documents: {stats.count}")
    console.print(f"Total size: {stats.total_size / 1024 / 1024:.2f} MB")
    console.print(f"Size cap: {cap / 1024 / 1024:.0f} MB" if cap else "Size cap: unbounded")
    return 0


async def _cmd_evict(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    if args.all:
        removed = await asyncio.to_thread(runtime.documents.clear)
        console.print(f"Evicted {removed} cached documents")
        return 0
    if not args.id:
        _print_error("evict", why="no paper id was given", next_step="pass an ID or --all")
        return 1
    if not await runtime.resolver.delete(args.id):
        console.print(f"{escape_markup(args.id)} was not cached")
        return 0
    console.print(f"Evicted {escape_markup(args.id)}")
    return 0


async def _cmd_watch(
    args: argparse.Namespace,
    runtime: Runtime,
    console: Console,
    client: httpx.AsyncClient | None = None,
) -> int:
    engine = runtime.engine
    last_seen: list[float | None] = [None]

    def _report(state: FeedState) -> None:
        if state.last_refresh is not None and state.last_refresh != last_seen[0]:
            last_seen[0] = state.last_refresh
            stamp = _format_refresh(state.last_refresh)
            console.print(escape_markup(f"[{stamp}] {len(state.papers)} papers"))

    unsubscribe = engine.subscribe(_report)
    await engine.load_cached_feed()
    scheduler = RefreshScheduler(
        engine, interval_seconds=runtime.config.refresh_interval_minutes * 60
    )
    poller: asyncio.Task[None] | None = None
    if client is not None and not args.offline:
        poller = asyncio.get_running_loop().create_task(runtime.monitor.poll(client))
    scheduler.start()
    console.print("Watching for new papers (Ctrl+C to stop)")
    try:
        # The first tick happens after one interval; refresh now if stale.
        await scheduler.tick()
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
        if poller is not None:
            poller.cancel()
        unsubscribe()
    return 0


CommandHandler = Callable[[argparse.Namespace, Runtime, Console], Any]

COMMANDS: dict[str, CommandHandler] = {
    "feed": _cmd_feed,
    "reading-list": _cmd_reading_list,
    "bookmark": _cmd_bookmark,
    "status": _cmd_status,
    "note": _cmd_note,
    "pdf": _cmd_pdf,
    "cache-stats": _cmd_cache_stats,
    "evict": _cmd_evict,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arxiv-offline",
        description="Browse arXiv feeds offline with a local cache",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to file (~/.config/arxiv-offline/debug.log)",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not touch the network; use cached data only",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    feed = sub.add_parser("feed", help="Show the feed, refreshing it when online")
    feed.add_argument(
        "--category",
        action="append",
        default=None,
        help="arXiv category (repeatable; default: config value)",
    )
    feed.add_argument("--keywords", default=None, help="Comma-separated keywords")
    feed.add_argument("--filter", default=None, help="Local text filter")
    feed.add_argument("--no-fetch", action="store_true", help="Only show the cached snapshot")

    reading = sub.add_parser("reading-list", help="Show bookmarked papers")
    reading.add_argument("--filter", default=None, help="Local text filter")

    bookmark = sub.add_parser("bookmark", help="Toggle the bookmark on a paper")
    bookmark.add_argument("id")

    status = sub.add_parser("status", help="Set the read status of a paper")
    status.add_argument("id")
    status.add_argument("status", choices=READ_STATUSES)

    note = sub.add_parser("note", help="Set the note on a paper")
    note.add_argument("id")
    note.add_argument("text")

    pdf = sub.add_parser("pdf", help="Fetch a paper's PDF through the document cache")
    pdf.add_argument("id")
    pdf.add_argument("--output", "-o", type=Path, default=None, help="Write the PDF here")

    sub.add_parser("cache-stats", help="Show document cache usage")

    evict = sub.add_parser("evict", help="Remove cached PDFs")
    evict.add_argument("id", nargs="?", default=None)
    evict.add_argument("--all", action="store_true", help="Remove every cached PDF")

    sub.add_parser("watch", help="Refresh the feed periodically until interrupted")
    return parser


def _configure_logging(debug: bool) -> None:
    """Configure logging. When debug=True, logs to file at DEBUG level."""
    if not debug:
        # Default: keep library logging off the terminal output
        logging.disable(logging.CRITICAL)
        return

    log_dir = Path(user_config_dir(CONFIG_APP_NAME))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "debug.log"

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logging.root.addHandler(handler)
    logging.root.setLevel(logging.DEBUG)


async def run_command(
    args: argparse.Namespace,
    config: SyncConfig,
    *,
    client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
    console: Console | None = None,
) -> int:
    """Run one parsed command against a fresh runtime."""
    out = console or Console()
    async with client_factory() as client:
        runtime = build_runtime(config, client, offline=args.offline)
        try:
            if args.command == "watch":
                return await _cmd_watch(args, runtime, out, client)
            return await COMMANDS[args.command](args, runtime, out)
        finally:
            runtime.close()


def main(
    argv: list[str] | None = None,
    *,
    load_config_fn: Callable[[], SyncConfig] = load_config,
    configure_logging_fn: Callable[[bool], None] = _configure_logging,
    client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
) -> int:
    """Main entry point. Returns exit code."""
    args = build_parser().parse_args(argv)
    configure_logging_fn(args.debug)
    logger.debug("arxiv-offline starting, command=%s", args.command)

    config = load_config_fn()
    try:
        return asyncio.run(run_command(args, config, client_factory=client_factory))
    except KeyboardInterrupt:
        return 0
    except SyncError as exc:
        logger.warning("Command %s failed", args.command, exc_info=True)
        _print_error(
            f"run {args.command}",
            why=exc.message,
            next_step="check the data directory and retry",
        )
        return 1


__all__ = [
    "COMMANDS",
    "Runtime",
    "build_actionable_error",
    "build_parser",
    "build_runtime",
    "main",
    "run_command",
]
