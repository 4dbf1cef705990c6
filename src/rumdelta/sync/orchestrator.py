"""Top-level run orchestrator.

Responsibilities
- Construct the run's collaborators from one AppConfig: HTTP client, Graph token
  provider, calendar delta source and cursor store
- Run the delta sync driver once and release the HTTP client afterwards
- Map the run report to a process exit code for callers that want one

Exit codes (only used with --strict, see cli)
- 0: walk completed and every commit write succeeded
- 2: walk completed but a commit write failed (cursor or artifact may be stale)
- 3: walk failed; nothing was committed
"""

from __future__ import annotations

import logging

from ..config import AppConfig
from ..graph.auth import PasswordTokenProvider
from ..graph.calendar import CalendarDeltaClient
from ..store import CursorStore, build_store, join_key
from ..utils.http import create_client
from .driver import DeltaSyncDriver, RunReport, SyncState

log = logging.getLogger(__name__)

__all__ = ["Orchestrator", "exit_code_for"]


def exit_code_for(report: RunReport) -> int:
    if report.state is not SyncState.DONE:
        return 3
    return 0 if report.ok else 2


class Orchestrator:
    def __init__(self, cfg: AppConfig, store: CursorStore | None = None) -> None:
        self.cfg = cfg
        self._store = store

    def _build_store(self) -> CursorStore:
        if self._store is None:
            self._store = build_store(self.cfg.store)
        return self._store

    def run(self, *, reset_cursor: bool = False) -> RunReport:
        """Run one sync pass and return its report."""
        store = self._build_store()
        with create_client(timeout=self.cfg.sync.timeout_sec) as http:
            tokens = PasswordTokenProvider(self.cfg.graph, http)
            source = CalendarDeltaClient(self.cfg.graph.base_url, tokens, http)
            report = DeltaSyncDriver(self.cfg, store, source).run(reset_cursor=reset_cursor)

        if report.status == "failed":
            # Externally the run still reports completion text; keep the failure visible here
            log.error(
                "sync-run-failed run_id=%s errors=%s",
                report.run_id,
                [f"{e.kind.value}: {e.message}" for e in report.errors if e.fatal],
            )
        return report

    def read_cursor(self) -> bytes | None:
        """Return the stored cursor blob, or None when absent."""
        key = join_key(self.cfg.store.prefix, self.cfg.store.cursor_key)
        return self._build_store().get(key)
