from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from hangmigrate.cli.commands import attachments_cmd, download_cmd, export_cmd
from hangmigrate.cli.context import CLIContext
from hangmigrate.core.config import load_download_settings, load_paths
from hangmigrate.core.errors import HangMigrateError
from hangmigrate.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hangmigrate",
        description="Migrate a Hangouts archive into a Mattermost bulk import",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root to use for .hangmigrate state (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    download_cmd.register(subparsers)
    attachments_cmd.register(subparsers)
    export_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    console = Console()
    configure_logging(args.verbose)

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, settings=load_download_settings(), console=console)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except HangMigrateError as exc:
        logger.error(str(exc))
        return 1
