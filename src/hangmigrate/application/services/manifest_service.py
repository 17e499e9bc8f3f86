from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hangmigrate.core.errors import ManifestError
from hangmigrate.core.hashing import fingerprint_key


@dataclass(slots=True)
class DownloadItem:
    key: str
    urls: list[str] = field(default_factory=list)


def load_manifest(path: Path) -> list[DownloadItem]:
    """Read download items from a JSON array or a JSON Lines file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Could not read manifest {path}: {exc}") from exc

    stripped = text.lstrip()
    if not stripped:
        return []
    if stripped.startswith("["):
        try:
            raw_items = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ManifestError(f"Manifest {path} is not valid JSON: {exc}") from exc
    else:
        raw_items = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                raw_items.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ManifestError(f"Manifest {path} line {line_no} is not valid JSON: {exc}") from exc

    return [parse_manifest_item(item, index) for index, item in enumerate(raw_items)]


def parse_manifest_item(item: Any, index: int = 0) -> DownloadItem:
    if not isinstance(item, dict):
        raise ManifestError(f"Manifest item #{index} must be an object, got {type(item).__name__}")

    urls: list[str] = []
    raw_urls = item.get("urls")
    if raw_urls is not None:
        if not isinstance(raw_urls, list) or not all(isinstance(u, str) for u in raw_urls):
            raise ManifestError(f"Manifest item #{index} 'urls' must be a list of strings")
        urls.extend(raw_urls)
    single = item.get("url")
    if isinstance(single, str) and single.strip():
        urls.append(single)

    key = item.get("key")
    if key is None:
        # Linked things have no stable id of their own; key them by their URL.
        if not isinstance(single, str) or not single.strip():
            raise ManifestError(f"Manifest item #{index} needs a 'key' or a 'url'")
        key = fingerprint_key(single.strip())
    if not isinstance(key, str) or not key:
        raise ManifestError(f"Manifest item #{index} 'key' must be a non-empty string")

    return DownloadItem(key=key, urls=urls)
