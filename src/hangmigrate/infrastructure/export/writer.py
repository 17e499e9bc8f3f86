from __future__ import annotations

import json
from typing import Any, Protocol

from hangmigrate.core.errors import ExportError, RecordOrderError
from hangmigrate.domain.models.bulk_import import RecordKind


class TextSink(Protocol):
    def write(self, text: str, /) -> Any: ...


class BulkImportRecord(Protocol):
    kind: RecordKind

    def to_payload(self) -> Any: ...


class BulkImportWriter:
    """Append bulk import records to ``stream`` as JSON Lines in kind order.

    The importer consumes records in stages, so once a record of one kind has
    been written no record of an earlier kind may follow. Kinds may be skipped
    but never revisited. A rejected record writes nothing.

    Not safe for concurrent use; callers serialise access to one stream.
    """

    def __init__(self, stream: TextSink) -> None:
        self._stream = stream
        self._last_kind = RecordKind.VERSION
        self.lines_written = 0

    @property
    def last_kind(self) -> RecordKind:
        return self._last_kind

    def add(self, record: BulkImportRecord) -> None:
        kind = getattr(record, "kind", None)
        if not isinstance(kind, RecordKind):
            raise ExportError(f"Don't know how to format {type(record).__name__}")

        if kind.ordinal < self._last_kind.ordinal:
            raise RecordOrderError(
                f"Record type {kind.value} must occur before {self._last_kind.value}"
            )

        line = json.dumps(
            {"type": kind.value, kind.value: record.to_payload()},
            ensure_ascii=False,
            separators=(",", ":"),
        )
        self._stream.write(line + "\n")
        self._last_kind = kind
        self.lines_written += 1
