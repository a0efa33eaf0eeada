"""
Watch history store.

One row per content identifier (usually a magnet URI)::

    content_id|file_index|playback_time|title

The whole table is rewritten on every update so the file is never left
half-written.
"""

import csv
import io
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

log = logging.getLogger(__name__)

DELIMITER = "|"
FIELD_COUNT = 4


class HistoryError(Exception):
    """Raised when the history file cannot be read or written."""

    pass


@dataclass
class WatchRecord:
    """Last known position for one piece of content."""

    content_id: str
    file_index: int
    playback_time: int
    title: str

    def to_row(self) -> List[str]:
        return [
            self.content_id,
            str(self.file_index),
            str(self.playback_time),
            self.title,
        ]

    @classmethod
    def from_row(cls, row: List[str]) -> Optional["WatchRecord"]:
        """Parse a row, returning None if it is corrupt."""
        if len(row) < FIELD_COUNT:
            log.warning("Skipping history row with %d fields: %r", len(row), row)
            return None
        try:
            file_index = int(row[1])
            playback_time = max(int(row[2]), 0)
        except ValueError:
            log.warning("Skipping history row with invalid numbers: %r", row)
            return None
        return cls(
            content_id=row[0],
            file_index=file_index,
            playback_time=playback_time,
            title=row[3],
        )


class WatchHistory:
    """Flat-file table of WatchRecords keyed by content identifier."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def get_all(self) -> List[WatchRecord]:
        """
        Read every valid record.

        The file (and its directory) is created empty if missing. Corrupt rows
        are logged and skipped.

        Raises:
            HistoryError: if the file cannot be created or read
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise HistoryError(f"Cannot read history file {self.path}: {e}") from e

        records = []
        reader = csv.reader(io.StringIO(text), delimiter=DELIMITER)
        try:
            for row in reader:
                if not row:
                    continue
                record = WatchRecord.from_row(row)
                if record is not None:
                    records.append(record)
        except csv.Error as e:
            log.warning("Stopped reading history at line %d: %s", reader.line_num, e)
        return records

    def find(self, content_id: str) -> Optional[WatchRecord]:
        for record in self.get_all():
            if record.content_id == content_id:
                return record
        return None

    def upsert(
        self, content_id: str, file_index: int, playback_time: int, title: str
    ) -> WatchRecord:
        """
        Update the record for ``content_id`` in place, or append a new one.

        Returns:
            The stored record

        Raises:
            HistoryError: if the table cannot be rewritten
        """
        records = self.get_all()
        for record in records:
            if record.content_id == content_id:
                record.file_index = file_index
                record.playback_time = playback_time
                record.title = title
                stored = record
                break
        else:
            stored = WatchRecord(content_id, file_index, playback_time, title)
            records.append(stored)

        self._write(records)
        return stored

    def _write(self, records: List[WatchRecord]) -> None:
        fd, tmp = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".history-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                writer = csv.writer(f, delimiter=DELIMITER, lineterminator="\n")
                for record in records:
                    writer.writerow(record.to_row())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise HistoryError(f"Cannot write history file {self.path}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)
