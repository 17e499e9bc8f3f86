from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from hangmigrate.application.services.download_service import (
    AttachmentDownloader,
    DownloadState,
    RetryPolicy,
)
from hangmigrate.application.services.manifest_service import load_manifest
from hangmigrate.cli.context import CLIContext
from hangmigrate.core.files import ensure_directory
from hangmigrate.infrastructure.attachments.store import AttachmentStore
from hangmigrate.infrastructure.http.cookies import load_cookie_file

logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    DownloadState.STORED: "green",
    DownloadState.SKIPPED: "yellow",
    DownloadState.FAILED: "red",
}


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("download", help="Download and catalogue the attachments listed in a manifest")
    parser.add_argument("--manifest", type=Path, required=True, help="JSON or JSON Lines list of {key, urls}")
    parser.add_argument("--attachments-dir", type=Path, help="Directory to store downloaded attachments in")
    parser.add_argument("--index", type=Path, help="Attachment index JSON to resume from and write to")
    parser.add_argument("--cookies", type=Path, help="Cookie header text or cookie JSON to send with requests")
    parser.add_argument("--overwrite", action="store_true", help="Ignore existing download state")
    parser.add_argument("--concurrency", type=int, help="Maximum concurrent downloads")
    parser.add_argument(
        "--retry-max-attempts",
        type=int,
        help="Attempts per URL before giving up on it (0 retries transient failures forever)",
    )
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    attachments_dir = args.attachments_dir or ctx.paths.attachments_dir
    index_path = args.index or ctx.paths.index_path
    settings = ctx.settings

    ensure_directory(attachments_dir)
    store = AttachmentStore(attachments_dir, overwrite=args.overwrite)
    if not args.overwrite and index_path.exists():
        loaded = store.load_snapshot_file(index_path)
        ctx.console.print(f"[green]Loaded[/green] {loaded} attachment(s) from {index_path}")

    cookies: dict[str, str] = {}
    if args.cookies:
        cookies = load_cookie_file(args.cookies)
        logger.info("Loaded %d cookie(s)", len(cookies))

    items = load_manifest(args.manifest)
    max_attempts = args.retry_max_attempts if args.retry_max_attempts is not None else settings.retry_max_attempts
    retry = RetryPolicy(
        wait_min=settings.retry_wait_min_seconds,
        wait_max=settings.retry_wait_max_seconds,
        max_attempts=max_attempts or None,
    )
    downloader = AttachmentDownloader(
        store,
        cookies=cookies,
        concurrency=args.concurrency if args.concurrency is not None else settings.concurrency,
        retry=retry,
    )

    progress = Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=ctx.console,
    )

    accepted = 0
    next_flush = settings.flush_interval
    try:
        with downloader, progress:
            task = progress.add_task("Queueing", total=len(items))
            for item in items:
                if downloader.submit(item.key, item.urls):
                    accepted += 1
                if accepted >= next_flush:
                    store.save_snapshot_file(index_path)
                    next_flush = accepted + settings.flush_interval
                progress.advance(task, 1)
            progress.update(task, description="Waiting for downloads")
    finally:
        store.save_snapshot_file(index_path)

    stats = downloader.stats
    table = Table(title="Download Results")
    table.add_column("Key", overflow="fold")
    table.add_column("Status")
    table.add_column("Path", overflow="fold")
    for item in items:
        state = stats.outcomes.get(item.key, DownloadState.FAILED)
        style = _STATUS_STYLES.get(state, "white")
        table.add_row(item.key, f"[{style}]{state.value}[/{style}]", store.get_path(item.key) or "")
    ctx.console.print(table)
    ctx.console.print(
        f"stored={stats.stored} existing={stats.existing} skipped={stats.skipped} "
        f"failed={stats.failed} index={index_path}"
    )
    return 1 if stats.failed else 0
