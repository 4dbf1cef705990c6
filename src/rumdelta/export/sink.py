"""Pipe-delimited export writer for Appointment rows.

One sink per run. Rows are appended as each page is mapped, so at most one page of
rows is held in memory. The file is header-less; column order is
`APPOINTMENT_COLUMNS`. A field is quoted only when it contains the delimiter, a
quote character or a line break.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable
from pathlib import Path
from types import TracebackType
from typing import IO, Any

from ..errors import ExportError
from ..mapping.appointments import Appointment, Scalar

__all__ = ["DELIMITER", "ExportSink", "format_value"]

log = logging.getLogger(__name__)

DELIMITER = "|"


def format_value(value: Scalar) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ExportSink:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.rows_written = 0
        self._fh: IO[str] | None = None
        self._writer: Any = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> ExportSink:
        if self._fh is not None or self._closed:
            raise ExportError(f"export sink {self.path} already opened")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("w", encoding="utf-8", newline="")
        except OSError as exc:
            raise ExportError(f"cannot open export file {self.path}: {exc}") from exc
        self._writer = csv.writer(
            self._fh,
            delimiter=DELIMITER,
            lineterminator="\n",
            quoting=csv.QUOTE_MINIMAL,
        )
        return self

    def append_rows(self, rows: Iterable[Appointment]) -> int:
        """Append rows in the given order; return how many were written."""
        if self._writer is None or self._closed:
            raise ExportError(f"export sink {self.path} is not open")
        count = 0
        try:
            for row in rows:
                self._writer.writerow([format_value(v) for v in row.values()])
                count += 1
        except (OSError, csv.Error) as exc:
            raise ExportError(f"writing to {self.path} failed: {exc}") from exc
        finally:
            self.rows_written += count
        return count

    def close(self) -> None:
        """Flush and release the file. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError as exc:
                raise ExportError(f"closing {self.path} failed: {exc}") from exc
            finally:
                self._fh = None
                self._writer = None
        log.info("export-closed path=%s rows=%d", self.path, self.rows_written)

    def read_bytes(self) -> bytes:
        if not self._closed:
            raise ExportError(f"export sink {self.path} must be closed before reading")
        return self.path.read_bytes()

    def __enter__(self) -> ExportSink:
        if self._fh is None:
            self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
