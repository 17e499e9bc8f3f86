from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Mapping
from pathlib import Path
from types import TracebackType

from hangmigrate.core.errors import (
    AttachmentExistsError,
    AttachmentNotFoundError,
    AttachmentStoreError,
    SnapshotError,
)
from hangmigrate.core.files import AtomicFileWriter, ensure_directory, write_text_atomic
from hangmigrate.core.hashing import fingerprint_key
from hangmigrate.core.media_types import extension_for_media_type

logger = logging.getLogger(__name__)

SNAPSHOT_ENTRIES_FIELD = "entries"
# Field name used by snapshots written before the rename.
_LEGACY_ENTRIES_FIELD = "Entries"


class AttachmentWriter:
    """Scoped writer for one claimed attachment key.

    Closing publishes the file at :attr:`path`. Abandoning deletes the
    temporary file and releases the key's claim so a later attempt can claim it
    again.
    """

    def __init__(self, store: AttachmentStore, key: str, writer: AtomicFileWriter) -> None:
        self.key = key
        self._store = store
        self._writer = writer

    @property
    def path(self) -> Path:
        return self._writer.dest_path

    def write(self, data: bytes) -> int:
        return self._writer.write(data)

    def close(self) -> None:
        try:
            self._writer.close()
        except BaseException:
            self._store._release(self.key, str(self.path))
            raise
        self._store._publish(self.key)

    def abandon(self) -> None:
        if self._writer.closed:
            return
        self._writer.abandon()
        self._store._release(self.key, str(self.path))

    def __enter__(self) -> AttachmentWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abandon()


class AttachmentStore:
    """Content-addressed mapping from attachment keys to files under ``base_dir``.

    Files are named by the SHA-256 of their key, so artifacts from an earlier
    run can be rediscovered by :meth:`scan_for_key` even when the index
    snapshot was lost. Every index mutation happens under one lock, which makes
    :meth:`reserve_write` a single check-and-set across threads.
    """

    def __init__(self, base_dir: Path | None = None, *, overwrite: bool = False) -> None:
        self.base_dir = base_dir
        self.overwrite = overwrite
        self._lock = threading.Lock()
        self._entries: dict[str, str] = {}
        # Claimed keys whose writer has not been closed yet.
        self._pending: set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> dict[str, str]:
        """Published key to path mappings; claims still being written are left out."""
        with self._lock:
            return {key: path for key, path in self._entries.items() if key not in self._pending}

    def has_mapping(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get_path(self, key: str) -> str | None:
        with self._lock:
            return self._entries.get(key)

    def path_for_key(self, key: str, media_type: str | None = None) -> Path:
        if self.base_dir is None:
            raise AttachmentStoreError("Cannot write attachments: no base directory set.")
        name = fingerprint_key(key)
        ext = extension_for_media_type(media_type)
        if ext:
            name = f"{name}.{ext}"
        path = self.base_dir / name
        if path.parent != self.base_dir or path.name != name:
            raise AttachmentStoreError(f"Refusing to write {key!r} outside {self.base_dir}: {name!r}")
        return path

    def reserve_write(self, key: str, media_type: str | None = None) -> AttachmentWriter:
        path = self.path_for_key(key, media_type)
        path_str = str(path)

        with self._lock:
            if key in self._entries:
                raise AttachmentExistsError(f"Attachment already recorded for {key!r}: {self._entries[key]}")
            if not self.overwrite and _file_exists(path):
                # The content address already names a finished file for this key.
                self._entries[key] = path_str
                raise AttachmentExistsError(f"Attachment file already exists for {key!r}: {path}")
            self._entries[key] = path_str
            self._pending.add(key)

        try:
            ensure_directory(path.parent)
            writer = AtomicFileWriter(path)
        except OSError as exc:
            self._release(key, path_str)
            raise AttachmentStoreError(f"Could not open writer for {key!r} at {path}: {exc}") from exc
        return AttachmentWriter(self, key, writer)

    def scan_for_key(self, key: str) -> str:
        path = self.get_path(key)
        if path is not None:
            return path
        if self.base_dir is None:
            raise AttachmentNotFoundError(f"No attachment recorded for {key!r}")

        digest = fingerprint_key(key)
        try:
            matches = sorted(
                str(candidate)
                for candidate in self.base_dir.glob(f"{digest}*")
                if candidate.name == digest or candidate.name.startswith(f"{digest}.")
            )
        except OSError as exc:
            raise AttachmentStoreError(f"Failed to scan {self.base_dir} for {key!r}: {exc}") from exc
        if not matches:
            raise AttachmentNotFoundError(f"No attachment found for {key!r} in {self.base_dir}")

        with self._lock:
            return self._entries.setdefault(key, matches[0])

    def load_snapshot(self, doc: Mapping[str, object]) -> int:
        """Merge a snapshot document; returns the number of entries added.

        Entries whose file has disappeared are dropped with a warning. Keys that
        are already mapped keep their current path.
        """
        entries = _snapshot_entries(doc)
        loaded: dict[str, str] = {}
        for key, path in entries.items():
            try:
                os.stat(path)
            except FileNotFoundError:
                logger.warning("Entry for %s does not exist; discarding: %s", key, path)
                continue
            except OSError as exc:
                raise AttachmentStoreError(f"Failed to stat key {key}, path {path}: {exc}") from exc
            loaded[key] = path

        added = 0
        with self._lock:
            for key, path in loaded.items():
                if key not in self._entries:
                    self._entries[key] = path
                    added += 1
        return added

    def save_snapshot(self) -> dict[str, dict[str, str]]:
        published = self.entries()
        return {SNAPSHOT_ENTRIES_FIELD: {key: published[key] for key in sorted(published)}}

    def load_snapshot_file(self, path: Path) -> int:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SnapshotError(f"Could not read attachment index {path}: {exc}") from exc
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SnapshotError(f"Attachment index {path} is not valid JSON: {exc}") from exc
        return self.load_snapshot(doc)

    def save_snapshot_file(self, path: Path) -> None:
        payload = json.dumps(self.save_snapshot(), indent=2, ensure_ascii=False)
        write_text_atomic(path, payload + "\n")

    def _publish(self, key: str) -> None:
        with self._lock:
            self._pending.discard(key)

    def _release(self, key: str, path: str) -> None:
        with self._lock:
            self._pending.discard(key)
            if self._entries.get(key) == path:
                del self._entries[key]


def _file_exists(path: Path) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise AttachmentStoreError(f"Checking for {path}: {exc}") from exc
    return True


def _snapshot_entries(doc: Mapping[str, object]) -> dict[str, str]:
    if not isinstance(doc, Mapping):
        raise SnapshotError("Attachment index must be a JSON object.")
    raw = doc.get(SNAPSHOT_ENTRIES_FIELD, doc.get(_LEGACY_ENTRIES_FIELD))
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise SnapshotError(f"Attachment index field {SNAPSHOT_ENTRIES_FIELD!r} must be an object.")
    entries: dict[str, str] = {}
    for key, path in raw.items():
        if not isinstance(key, str) or not isinstance(path, str):
            raise SnapshotError(f"Attachment index entry {key!r} must map a string to a string path.")
        entries[key] = path
    return entries
