from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from rumdelta.config import AppConfig
from rumdelta.errors import (
    CommitError,
    CursorReadError,
    EnvelopeError,
    ErrorKind,
    QueryError,
)
from rumdelta.graph.calendar import Page, PageQuery, ResumeQuery, WindowQuery
from rumdelta.sync.driver import COMPLETION_MESSAGE, DeltaSyncDriver, SyncState

FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
TS = "20240102_030405"
CURSOR_KEY = "RUM-CSV-data/deltaToken.txt"
AUDIT_KEY = f"RUM-CSV-data/delta_{TS}.txt"
ARTIFACT_KEY = f"RUM-CSV-data/Appointments_{TS}.csv"


class FakeStore:
    def __init__(self, blobs: dict[str, bytes] | None = None) -> None:
        self.blobs: dict[str, bytes] = dict(blobs or {})
        self.puts: list[tuple[str, bytes, str | None]] = []
        self.fail_get = False
        self.fail_put_keys: set[str] = set()

    def get(self, key: str) -> bytes | None:
        if self.fail_get:
            raise CursorReadError(f"{key}: connection reset")
        return self.blobs.get(key)

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        if key in self.fail_put_keys:
            raise CommitError(f"{key}: access denied")
        self.puts.append((key, data, content_type))
        self.blobs[key] = data


class FakeSource:
    """Returns queued pages (or raises queued exceptions) and records every call."""

    def __init__(self, pages: list[Page | Exception]) -> None:
        self._pages = list(pages)
        self.calls: list[tuple[Any, int]] = []

    def query_changes(self, query: Any, page_size: int) -> Page:
        self.calls.append((query, page_size))
        item = self._pages.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _page(ids: list[str], next_token: str | None = None, delta: str | None = None) -> Page:
    return Page(
        records=tuple({"id": i, "subject": f"subj-{i}"} for i in ids),
        next_page_token=next_token,
        change_cursor_token=delta,
    )


def _cfg(tmp_path: Path, **sync: Any) -> AppConfig:
    sync_cfg = {
        "start_date_time": "2021-06-01T00:00:00-00:00",
        "end_date_time": "2021-06-30T23:59:59-00:00",
        "work_dir": str(tmp_path / "work"),
    }
    sync_cfg.update(sync)
    return AppConfig.model_validate(
        {"store": {"backend": "local", "local_root": str(tmp_path / "store")}, "sync": sync_cfg}
    )


def _driver(cfg: AppConfig, store: FakeStore, source: FakeSource) -> DeltaSyncDriver:
    return DeltaSyncDriver(cfg, store, source, clock=lambda: FIXED_NOW)


def _exported_ids(tmp_path: Path) -> list[str]:
    text = (tmp_path / "work" / f"Appointments_{TS}.csv").read_text(encoding="utf-8")
    return [line.split("|")[0] for line in text.splitlines()]


def test_two_pages_then_delta_link(tmp_path) -> None:
    store = FakeStore()
    source = FakeSource([_page(["A", "B"], next_token="t1"), _page(["C"], delta="d1")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert len(source.calls) == 2
    assert isinstance(source.calls[0][0], WindowQuery)
    assert source.calls[1][0] == PageQuery("t1")
    assert _exported_ids(tmp_path) == ["A", "B", "C"]
    assert store.blobs[CURSOR_KEY] == b"d1"
    assert report.state is SyncState.DONE
    assert report.status == "done"
    assert report.ok
    assert report.pages == 2 and report.rows == 3
    assert report.new_cursor == "d1"


def test_single_page_without_markers_persists_empty_cursor(tmp_path) -> None:
    store = FakeStore()
    source = FakeSource([_page(["A"])])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert len(source.calls) == 1
    assert _exported_ids(tmp_path) == ["A"]
    assert store.blobs[CURSOR_KEY] == b""
    assert report.new_cursor == ""
    assert report.state is SyncState.DONE


def test_commit_order_and_keys(tmp_path) -> None:
    store = FakeStore()
    source = FakeSource([_page(["A"], delta="d9")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert [p[0] for p in store.puts] == [CURSOR_KEY, AUDIT_KEY, ARTIFACT_KEY]
    assert store.puts[0][1] == store.puts[1][1] == b"d9"
    key, body, content_type = store.puts[2]
    assert content_type == "plain/text"
    assert body.decode("utf-8").split("|")[0] == "A"
    assert report.cursor_written and report.audit_written and report.artifact_uploaded


def test_first_request_without_cursor_carries_window_only(tmp_path) -> None:
    source = FakeSource([_page([], delta="d1")])

    _driver(_cfg(tmp_path), FakeStore(), source).run()

    query, _ = source.calls[0]
    assert query == WindowQuery("2021-06-01T00:00:00-00:00", "2021-06-30T23:59:59-00:00")
    assert "$deltatoken" not in query.params()


def test_first_request_with_cursor_carries_resume_token_only(tmp_path) -> None:
    store = FakeStore({CURSOR_KEY: b"prev-token\n"})
    source = FakeSource([_page(["A"], delta="d2")])

    report = _driver(_cfg(tmp_path), store, source).run()

    query, _ = source.calls[0]
    assert query == ResumeQuery("prev-token")
    assert query.params() == {"$deltatoken": "prev-token"}
    assert report.mode == "delta"
    assert store.blobs[CURSOR_KEY] == b"d2"


def test_empty_stored_cursor_means_full_window(tmp_path) -> None:
    store = FakeStore({CURSOR_KEY: b"  \n"})
    source = FakeSource([_page([], delta="d1")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert isinstance(source.calls[0][0], WindowQuery)
    assert report.mode == "full"


def test_page_size_hint_sent_on_every_request(tmp_path) -> None:
    store = FakeStore({CURSOR_KEY: b"prev"})
    source = FakeSource(
        [_page(["A"], next_token="t1"), _page(["B"], next_token="t2"), _page(["C"], delta="d")]
    )

    _driver(_cfg(tmp_path, page_size=50), store, source).run()

    assert [size for _, size in source.calls] == [50, 50, 50]
    assert [type(q) for q, _ in source.calls] == [ResumeQuery, PageQuery, PageQuery]


def test_both_markers_on_a_page_end_the_walk(tmp_path) -> None:
    store = FakeStore()
    source = FakeSource(
        [_page(["A"], next_token="t1", delta="d1"), _page(["never"], delta="d2")]
    )

    report = _driver(_cfg(tmp_path), store, source).run()

    assert len(source.calls) == 1
    assert _exported_ids(tmp_path) == ["A"]
    assert store.blobs[CURSOR_KEY] == b"d1"
    assert report.new_cursor == "d1"


def test_rows_keep_page_then_record_order_without_dedup(tmp_path) -> None:
    source = FakeSource(
        [
            _page(["Z", "A", "Z"], next_token="t1"),
            _page(["M"], next_token="t2"),
            _page(["A", "B"], delta="d"),
        ]
    )

    report = _driver(_cfg(tmp_path), FakeStore(), source).run()

    assert _exported_ids(tmp_path) == ["Z", "A", "Z", "M", "A", "B"]
    assert report.rows == 6


def test_fatal_query_failure_leaves_cursor_untouched(tmp_path) -> None:
    original = b"old-token\nsecond line kept as is"
    store = FakeStore({CURSOR_KEY: original})
    source = FakeSource([_page(["A", "B"], next_token="t1"), QueryError("HTTP 503")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert report.state is SyncState.FAILED
    assert report.status == "failed"
    assert not report.ok
    assert report.message == COMPLETION_MESSAGE
    assert store.blobs[CURSOR_KEY] == original
    assert store.puts == []
    assert [(e.kind, e.fatal) for e in report.errors] == [(ErrorKind.QUERY, True)]
    assert report.errors[0].state is SyncState.PAGING
    # rows appended before the failure are flushed to the closed local file
    assert _exported_ids(tmp_path) == ["A", "B"]
    assert report.rows == 2


def test_malformed_envelope_on_first_page_fails_run(tmp_path) -> None:
    store = FakeStore()
    source = FakeSource([EnvelopeError("page payload has no 'value' array")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert report.state is SyncState.FAILED
    assert report.errors[0].kind is ErrorKind.ENVELOPE
    assert CURSOR_KEY not in store.blobs
    assert _exported_ids(tmp_path) == []


def test_missing_window_without_cursor_fails_before_querying(tmp_path) -> None:
    source = FakeSource([])

    report = _driver(_cfg(tmp_path, start_date_time=None), FakeStore(), source).run()

    assert source.calls == []
    assert report.state is SyncState.FAILED
    assert report.errors[0].kind is ErrorKind.QUERY


def test_cursor_read_failure_degrades_to_full_window(tmp_path) -> None:
    store = FakeStore({CURSOR_KEY: b"would-have-resumed"})
    store.fail_get = True
    source = FakeSource([_page(["A"], delta="d1")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert isinstance(source.calls[0][0], WindowQuery)
    assert report.state is SyncState.DONE
    assert report.ok
    assert [(e.kind, e.fatal) for e in report.errors] == [(ErrorKind.CURSOR_READ, False)]
    assert store.blobs[CURSOR_KEY] == b"d1"


def test_undecodable_cursor_is_treated_as_absent(tmp_path) -> None:
    store = FakeStore({CURSOR_KEY: b"\xff\xfe\xfa"})
    source = FakeSource([_page([], delta="d1")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert isinstance(source.calls[0][0], WindowQuery)
    assert report.errors[0].kind is ErrorKind.CURSOR_READ


def test_cursor_write_failure_does_not_block_artifact_upload(tmp_path) -> None:
    store = FakeStore()
    store.fail_put_keys = {CURSOR_KEY}
    source = FakeSource([_page(["A"], delta="d1")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert report.state is SyncState.DONE
    assert report.status == "done"
    assert not report.ok
    assert not report.cursor_written
    assert report.audit_written and report.artifact_uploaded
    assert [p[0] for p in store.puts] == [AUDIT_KEY, ARTIFACT_KEY]
    assert [e.kind for e in report.errors] == [ErrorKind.COMMIT]


def test_artifact_upload_failure_keeps_written_cursor(tmp_path) -> None:
    store = FakeStore()
    store.fail_put_keys = {ARTIFACT_KEY}
    source = FakeSource([_page(["A"], delta="d1")])

    report = _driver(_cfg(tmp_path), store, source).run()

    assert store.blobs[CURSOR_KEY] == b"d1"
    assert report.cursor_written and not report.artifact_uploaded
    assert report.state is SyncState.DONE


def test_reset_cursor_ignores_stored_token(tmp_path) -> None:
    store = FakeStore({CURSOR_KEY: b"prev"})
    source = FakeSource([_page([], delta="fresh")])

    report = _driver(_cfg(tmp_path), store, source).run(reset_cursor=True)

    assert isinstance(source.calls[0][0], WindowQuery)
    assert report.mode == "full"
    assert store.blobs[CURSOR_KEY] == b"fresh"


def test_unexpected_errors_propagate_after_export_is_closed(tmp_path, monkeypatch) -> None:
    closed: list[bool] = []

    import rumdelta.sync.driver as driver_mod

    real_sink = driver_mod.ExportSink

    class TrackingSink(real_sink):  # type: ignore[misc, valid-type]
        def close(self) -> None:
            super().close()
            closed.append(True)

    monkeypatch.setattr(driver_mod, "ExportSink", TrackingSink)
    source = FakeSource([RuntimeError("bug")])
    store = FakeStore()

    with pytest.raises(RuntimeError, match="bug"):
        _driver(_cfg(tmp_path), store, source).run()

    assert closed == [True]
    assert store.puts == []
