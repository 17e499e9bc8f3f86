from __future__ import annotations

import json
from pathlib import Path

from hangmigrate.core.errors import CookieJarError


def load_cookies_from_text(text: str) -> dict[str, str]:
    """Parse a ``name=value; other=value`` cookie header copied from a browser."""
    cookies: dict[str, str] = {}
    for token in text.split(";"):
        pair = token.strip()
        if not pair:
            continue
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise CookieJarError(f"Invalid cookie: {pair!r}")
        cookies[name.strip()] = value.strip()
    return cookies


def load_cookies_from_json(text: str) -> dict[str, str]:
    """Parse a JSON list of ``{"name": ..., "value": ...}`` objects (browser export format)."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CookieJarError(f"Failed to parse cookie JSON: {exc}") from exc
    if not isinstance(data, list):
        raise CookieJarError("Cookie JSON must be a list of objects.")

    cookies: dict[str, str] = {}
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise CookieJarError(f"Invalid cookie entry: {item!r}")
        cookies[item["name"]] = str(item.get("value") or "")
    return cookies


def load_cookie_file(path: Path) -> dict[str, str]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CookieJarError(f"Could not read cookie file {path}: {exc}") from exc
    if text.lstrip().startswith("["):
        return load_cookies_from_json(text)
    return load_cookies_from_text(text)
