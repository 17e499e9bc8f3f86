from __future__ import annotations

import re

_FIXED_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
}
_AUTO_PREFIXES = ("image/", "video/")
# Subtypes become part of a file name; anything outside this set gets no extension.
_SAFE_EXTENSION = re.compile(r"^[a-z0-9][a-z0-9+-]*(?:\.[a-z0-9+-]+)*$")


def extension_for_media_type(media_type: str | None) -> str:
    """File extension (without dot) for a media type, or "" when none applies."""
    if not media_type:
        return ""
    fixed = _FIXED_EXTENSIONS.get(media_type)
    if fixed:
        return fixed
    for prefix in _AUTO_PREFIXES:
        if media_type.startswith(prefix):
            subtype = media_type[len(prefix):]
            return subtype if _SAFE_EXTENSION.match(subtype) else ""
    return ""


def parse_media_type(content_type: str | None) -> str:
    """Strip parameters from a Content-Type value: ``text/html; charset=utf-8`` -> ``text/html``."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()
