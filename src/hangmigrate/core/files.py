from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from types import TracebackType
from typing import IO, Any

logger = logging.getLogger(__name__)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


class AtomicFileWriter:
    """Write to a temporary sibling file and publish it onto ``dest_path`` on close.

    The temporary file lives in the destination's directory so the final
    ``os.replace`` never crosses a filesystem. Until ``close()`` succeeds the
    destination is untouched; ``abandon()`` (or leaving a ``with`` block with an
    exception) deletes the temporary file instead. Pass ``encoding`` to write
    text instead of bytes.
    """

    def __init__(self, dest_path: Path, *, encoding: str | None = None) -> None:
        self.dest_path = Path(dest_path)
        fd, temp_name = tempfile.mkstemp(
            dir=self.dest_path.parent,
            prefix=f".{self.dest_path.name}.",
            suffix=".tmp",
        )
        self.temp_path = Path(temp_name)
        if encoding is None:
            self._file: IO[Any] = os.fdopen(fd, "wb")
        else:
            self._file = os.fdopen(fd, "w", encoding=encoding, newline="")
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._finished

    def write(self, data: bytes | str) -> int:
        if self._finished:
            raise ValueError(f"write to finished writer for {self.dest_path}")
        return self._file.write(data)

    def close(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            self._file.flush()
            self._file.close()
            os.replace(self.temp_path, self.dest_path)
        except BaseException:
            self._file.close()
            self._remove_temp()
            raise

    def abandon(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._file.close()
        self._remove_temp()

    def _remove_temp(self) -> None:
        try:
            self.temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove temporary file %s: %s", self.temp_path, exc)

    def __enter__(self) -> AtomicFileWriter:
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


def write_bytes_atomic(path: Path, data: bytes) -> None:
    ensure_directory(path.parent)
    with AtomicFileWriter(path) as writer:
        writer.write(data)


def write_text_atomic(path: Path, text: str, encoding: str = "utf-8") -> None:
    write_bytes_atomic(path, text.encode(encoding))
