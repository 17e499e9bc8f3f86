from __future__ import annotations

import argparse
from pathlib import Path

from rich.table import Table

from hangmigrate.cli.context import CLIContext
from hangmigrate.core.errors import SnapshotError
from hangmigrate.infrastructure.attachments.store import AttachmentStore


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("attachments", help="List catalogued attachments")
    parser.add_argument("--index", type=Path, help="Attachment index JSON to read")
    parser.add_argument("--limit", type=int, default=50)
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    index_path = args.index or ctx.paths.index_path
    if not index_path.exists():
        raise SnapshotError(f"No attachment index at {index_path}. Run 'hangmigrate download' first.")

    store = AttachmentStore()
    store.load_snapshot_file(index_path)
    entries = store.entries()

    table = Table(title=f"Attachments ({len(entries)})")
    table.add_column("Key", overflow="fold")
    table.add_column("Path", overflow="fold")
    for key in sorted(entries)[: max(0, args.limit)]:
        table.add_row(key, entries[key])

    ctx.console.print(table)
    return 0
