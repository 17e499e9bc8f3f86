from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console

from hangmigrate.core.config import AppPaths, DownloadSettings


@dataclass(slots=True)
class CLIContext:
    paths: AppPaths
    settings: DownloadSettings
    console: Console
