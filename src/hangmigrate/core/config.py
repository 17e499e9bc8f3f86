from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    state_dir: Path
    attachments_dir: Path
    index_path: Path


@dataclass(frozen=True)
class DownloadSettings:
    concurrency: int = 5
    retry_wait_min_seconds: float = 5.0
    retry_wait_max_seconds: float = 60.0
    # 0 retries transient failures forever.
    retry_max_attempts: int = 0
    flush_interval: int = 100


DEFAULT_STATE_DIRNAME = ".hangmigrate"


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("HANGMIGRATE_HOME")
    if home_raw:
        state_dir = Path(home_raw).expanduser().resolve()
    else:
        state_dir = root / DEFAULT_STATE_DIRNAME

    return AppPaths(
        project_root=root,
        state_dir=state_dir,
        attachments_dir=state_dir / "attachments",
        index_path=state_dir / "attachments.json",
    )


def load_download_settings() -> DownloadSettings:
    defaults = DownloadSettings()
    return DownloadSettings(
        concurrency=max(1, _env_non_negative_int("HANGMIGRATE_CONCURRENCY", default=defaults.concurrency)),
        retry_wait_min_seconds=float(
            _env_non_negative_int("HANGMIGRATE_RETRY_WAIT_MIN", default=int(defaults.retry_wait_min_seconds))
        ),
        retry_wait_max_seconds=float(
            _env_non_negative_int("HANGMIGRATE_RETRY_WAIT_MAX", default=int(defaults.retry_wait_max_seconds))
        ),
        retry_max_attempts=_env_non_negative_int("HANGMIGRATE_RETRY_MAX_ATTEMPTS", default=defaults.retry_max_attempts),
        flush_interval=max(1, _env_non_negative_int("HANGMIGRATE_FLUSH_INTERVAL", default=defaults.flush_interval)),
    )


def _env_non_negative_int(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(0, parsed)
