"""Delta sync driver (Graph calendarView delta → pipe-delimited export + stored cursor).

One `run()` is one batch job:

  INIT → RESOLVING_CURSOR → QUERYING → PAGING → CURSOR_READY → COMMITTING → DONE
                                   └──────────┴──────→ FAILED

- RESOLVING_CURSOR: read the stored delta token. Absent, empty or unreadable all mean
  "no cursor" and select full-window mode; a read failure is recorded, never fatal.
- QUERYING: the first request carries either the delta token or the configured window.
- PAGING: each page is mapped and appended to the export before the next request.
  Follow-up requests carry only the skip token. A delta token on a page ends the walk,
  even when the same page also has a next link.
- CURSOR_READY: the new cursor is the final delta token, or empty when the walk ran
  out of pages without one (the next run then starts from the full window again).
- COMMITTING: the export is already closed. Cursor, audit copy and artifact are put
  in that order, each attempted once; a failed put is recorded and the rest proceed.
- FAILED: a query, envelope or export error aborted the walk. The export is closed,
  nothing is written to the store and the stored cursor stays as it was.

The caller-facing text never changes (`COMPLETION_MESSAGE`); the outcome is on the
returned `RunReport`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from ..config import AppConfig, StoreConfig
from ..errors import CommitError, CursorReadError, ErrorKind, QueryError, SyncError
from ..export.sink import ExportSink
from ..graph.calendar import ChangeSource, Page, PageQuery, ResumeQuery, WindowQuery
from ..mapping.appointments import map_event
from ..store import CursorStore, join_key

__all__ = [
    "COMPLETION_MESSAGE",
    "DeltaSyncDriver",
    "RunError",
    "RunKeys",
    "RunReport",
    "SyncState",
]

log = logging.getLogger(__name__)

COMPLETION_MESSAGE = "CSV File generated Successfully."
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARTIFACT_CONTENT_TYPE = "plain/text"


class SyncState(str, Enum):
    INIT = "init"
    RESOLVING_CURSOR = "resolving_cursor"
    QUERYING = "querying"
    PAGING = "paging"
    CURSOR_READY = "cursor_ready"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunError:
    kind: ErrorKind
    message: str
    fatal: bool
    state: SyncState


@dataclass(frozen=True)
class RunKeys:
    cursor: str
    audit: str
    artifact: str
    artifact_name: str

    @classmethod
    def for_run(cls, store_cfg: StoreConfig, timestamp: str) -> RunKeys:
        artifact_name = f"Appointments_{timestamp}.csv"
        return cls(
            cursor=join_key(store_cfg.prefix, store_cfg.cursor_key),
            audit=join_key(store_cfg.prefix, f"delta_{timestamp}.txt"),
            artifact=join_key(store_cfg.prefix, artifact_name),
            artifact_name=artifact_name,
        )


@dataclass
class RunReport:
    run_id: str
    keys: RunKeys
    state: SyncState = SyncState.INIT
    mode: str | None = None  # "delta" or "full"
    pages: int = 0
    rows: int = 0
    new_cursor: str | None = None
    cursor_written: bool = False
    audit_written: bool = False
    artifact_uploaded: bool = False
    artifact_path: str | None = None
    errors: list[RunError] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "done" if self.state is SyncState.DONE else "failed"

    @property
    def ok(self) -> bool:
        """True only for a completed walk whose commit writes all succeeded."""
        return self.state is SyncState.DONE and not any(
            e.kind is ErrorKind.COMMIT for e in self.errors
        )

    @property
    def message(self) -> str:
        return COMPLETION_MESSAGE

    def record(self, exc: SyncError) -> None:
        self.errors.append(
            RunError(kind=exc.kind, message=str(exc), fatal=exc.fatal, state=self.state)
        )


class DeltaSyncDriver:
    def __init__(
        self,
        cfg: AppConfig,
        store: CursorStore,
        source: ChangeSource,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.source = source
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def run(self, *, reset_cursor: bool = False) -> RunReport:
        """Run one sync pass; never raises for failures in the error taxonomy."""
        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        keys = RunKeys.for_run(self.cfg.store, timestamp)
        report = RunReport(run_id=timestamp, keys=keys)
        log.info("sync-start run_id=%s", timestamp)

        self._enter(report, SyncState.RESOLVING_CURSOR)
        token = None if reset_cursor else self._resolve_cursor(report)
        if reset_cursor:
            log.info("cursor-reset requested; ignoring stored cursor at %s", keys.cursor)

        sink = ExportSink(Path(self.cfg.sync.work_dir) / keys.artifact_name)
        report.artifact_path = str(sink.path)
        try:
            with sink:
                new_cursor = self._walk(report, sink, token)
        except SyncError as exc:
            report.record(exc)
            report.rows = sink.rows_written
            log.error(
                "sync-walk-failed state=%s kind=%s: %s; stored cursor left unchanged",
                report.state.value,
                exc.kind.value,
                exc,
            )
            self._enter(report, SyncState.FAILED)
            return report

        report.rows = sink.rows_written
        report.new_cursor = new_cursor
        log.info("next round delta token = %s", new_cursor or "(none)")

        self._commit(report, new_cursor, sink)
        self._enter(report, SyncState.DONE)
        log.info(
            "sync-done run_id=%s mode=%s pages=%d rows=%d errors=%d",
            timestamp,
            report.mode,
            report.pages,
            report.rows,
            len(report.errors),
        )
        return report

    # -------------
    # Phases
    # -------------

    def _enter(self, report: RunReport, state: SyncState) -> None:
        log.debug("sync-state %s -> %s", report.state.value, state.value)
        report.state = state

    def _resolve_cursor(self, report: RunReport) -> str | None:
        key = report.keys.cursor
        try:
            raw = self.store.get(key)
            if raw is None:
                log.info("no stored cursor at %s; full window sync", key)
                return None
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            err = CursorReadError(f"stored cursor at {key} is not UTF-8")
            err.__cause__ = exc
            report.record(err)
            log.warning("cursor-read-failed: %s; full window sync", err)
            return None
        except CursorReadError as exc:
            report.record(exc)
            log.warning("cursor-read-failed: %s; full window sync", exc)
            return None

        lines = text.splitlines()
        token = lines[0].strip() if lines else ""
        if not token:
            log.info("stored cursor at %s is empty; full window sync", key)
            return None
        log.info("existing delta token = %s", token)
        return token

    def _first_query(self, report: RunReport, token: str | None) -> ResumeQuery | WindowQuery:
        if token:
            report.mode = "delta"
            return ResumeQuery(token)
        report.mode = "full"
        start, end = self.cfg.sync.start_date_time, self.cfg.sync.end_date_time
        if not start or not end:
            raise QueryError(
                "full window sync requires sync.start_date_time and sync.end_date_time"
            )
        return WindowQuery(start, end)

    def _walk(self, report: RunReport, sink: ExportSink, token: str | None) -> str:
        page_size = self.cfg.sync.page_size
        query = self._first_query(report, token)

        self._enter(report, SyncState.QUERYING)
        log.info("processing %s changes", "delta" if report.mode == "delta" else "full window")
        page = self.source.query_changes(query, page_size)

        self._enter(report, SyncState.PAGING)
        self._append(report, sink, page)
        while page.change_cursor_token is None and page.next_page_token is not None:
            page = self.source.query_changes(PageQuery(page.next_page_token), page_size)
            self._append(report, sink, page)

        self._enter(report, SyncState.CURSOR_READY)
        return page.change_cursor_token or ""

    def _append(self, report: RunReport, sink: ExportSink, page: Page) -> None:
        report.pages += 1
        log.info(
            "page=%d records=%d next=%s delta=%s",
            report.pages,
            len(page.records),
            "yes" if page.next_page_token else "no",
            "yes" if page.change_cursor_token else "no",
        )
        sink.append_rows(map_event(record) for record in page.records)

    def _commit(self, report: RunReport, new_cursor: str, sink: ExportSink) -> None:
        self._enter(report, SyncState.COMMITTING)
        keys = report.keys
        value = new_cursor.encode("utf-8")

        report.cursor_written = self._put(report, keys.cursor, value)
        report.audit_written = self._put(report, keys.audit, value)

        try:
            artifact = sink.read_bytes()
        except (OSError, SyncError) as exc:
            err = CommitError(f"cannot read finalized export {sink.path}: {exc}")
            err.__cause__ = exc
            report.record(err)
            log.error("artifact-read-failed: %s", err)
            return
        report.artifact_uploaded = self._put(
            report, keys.artifact, artifact, content_type=ARTIFACT_CONTENT_TYPE
        )

    def _put(
        self,
        report: RunReport,
        key: str,
        data: bytes,
        content_type: str | None = None,
    ) -> bool:
        try:
            self.store.put(key, data, content_type=content_type)
        except CommitError as exc:
            report.record(exc)
            log.error("commit-put-failed key=%s: %s", key, exc)
            return False
        log.info("stored %s (%d bytes)", key, len(data))
        return True
