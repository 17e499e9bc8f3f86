from __future__ import annotations

import argparse
from pathlib import Path

from rich.table import Table

from hangmigrate.application.services.export_service import BulkImportService, load_plan
from hangmigrate.cli.context import CLIContext
from hangmigrate.core.files import AtomicFileWriter, ensure_directory
from hangmigrate.infrastructure.attachments.store import AttachmentStore
from hangmigrate.infrastructure.export.writer import BulkImportWriter


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("export", help="Write a Mattermost bulk import JSONL file from an export plan")
    parser.add_argument("--plan", type=Path, required=True, help="Export plan JSON (team, channel, users, messages)")
    parser.add_argument("--out", type=Path, required=True, help="Destination JSONL path")
    parser.add_argument("--index", type=Path, help="Attachment index JSON mapping keys to files")
    parser.add_argument(
        "--remote-attachment-path",
        help="Directory the attachments will live in on the import host",
    )
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    plan = load_plan(args.plan)

    index_path = args.index or ctx.paths.index_path
    store = AttachmentStore()
    if index_path.exists():
        store.load_snapshot_file(index_path)

    service = BulkImportService(store, remote_attachment_dir=args.remote_attachment_path)
    ensure_directory(args.out.parent)
    with AtomicFileWriter(args.out, encoding="utf-8") as out:
        writer = BulkImportWriter(out)
        summary = service.build(plan, writer)

    table = Table(title="Bulk Import")
    table.add_column("Item")
    table.add_column("Count", justify="right")
    table.add_row("Lines", str(writer.lines_written))
    table.add_row("Users", str(summary.users))
    table.add_row("Posts", str(summary.posts))
    table.add_row("Skipped messages", str(summary.skipped_messages))
    table.add_row("Missing attachments", str(summary.missing_attachments))
    ctx.console.print(table)
    ctx.console.print(f"[green]Wrote[/green] {args.out}")
    return 0
