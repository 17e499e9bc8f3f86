from __future__ import annotations

from collections.abc import Mapping

import requests

DEFAULT_USER_AGENT = "hangmigrate/0.1 (+attachment downloader)"


def build_session(cookies: Mapping[str, str] | None = None) -> requests.Session:
    """Session shared by all download workers; cookies ride along on every request."""
    session = requests.Session()
    session.headers["User-Agent"] = DEFAULT_USER_AGENT
    for name, value in (cookies or {}).items():
        session.cookies.set(name, value)
    return session
