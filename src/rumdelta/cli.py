"""CLI entrypoint for rumdelta.

Commands
- sync:    run one incremental export (Graph calendar delta -> pipe-delimited file + cursor)
- status:  show where the cursor lives and whether one is stored

Notes
- Configuration precedence: CLI > ENV (RUMDELTA__) > legacy Lambda ENV > YAML file.
- `sync` always prints the completion text the scheduled job has always printed.
  Pass --strict to also turn a failed or partially committed run into a non-zero exit.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer

from .config import AppConfig, load_config
from .errors import CursorReadError
from .logging import setup_logging
from .sync.orchestrator import Orchestrator, exit_code_for

app = typer.Typer(add_completion=False, help="Graph calendar → delimited export incremental sync")


def _cli_overrides_from_args(
    *,
    start: str | None,
    end: str | None,
    page_size: int | None,
    work_dir: Path | None,
    verbose: bool,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    sync_over: dict[str, Any] = {}
    if start is not None:
        sync_over["start_date_time"] = start
    if end is not None:
        sync_over["end_date_time"] = end
    if page_size is not None:
        sync_over["page_size"] = page_size
    if work_dir is not None:
        sync_over["work_dir"] = str(work_dir)
    if sync_over:
        overrides["sync"] = sync_over

    if verbose:
        overrides.setdefault("logging", {})["level"] = "DEBUG"

    return overrides


def _load(config: Path | None, overrides: dict[str, Any]) -> AppConfig:
    try:
        cfg = load_config(file_path=str(config) if config else None, cli_overrides=overrides)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=3) from exc
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


@app.command(help="Run one incremental export.")
def sync(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config file.",
    ),
    start: str | None = typer.Option(
        None,
        "--start",
        help="Full-window start (ISO 8601), used when no cursor is stored.",
        show_default=False,
    ),
    end: str | None = typer.Option(
        None,
        "--end",
        help="Full-window end (ISO 8601), used when no cursor is stored.",
        show_default=False,
    ),
    page_size: int | None = typer.Option(
        None,
        "--page-size",
        min=1,
        max=1000,
        help="Page-size hint sent with every request.",
        show_default=False,
    ),
    work_dir: Path | None = typer.Option(
        None,
        "--work-dir",
        help="Directory for the local export file.",
        show_default=False,
    ),
    reset_cursor: bool = typer.Option(
        False,
        "--reset-cursor",
        help="Ignore the stored cursor and sync the full window.",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit non-zero when the run failed (3) or a commit write failed (2).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Set log level to DEBUG (overrides config.logging.level).",
    ),
) -> None:
    """Sync command."""
    overrides = _cli_overrides_from_args(
        start=start, end=end, page_size=page_size, work_dir=work_dir, verbose=verbose
    )
    cfg = _load(config, overrides)

    report = Orchestrator(cfg).run(reset_cursor=reset_cursor)
    typer.echo(report.message)
    typer.echo(
        "rumdelta sync summary: "
        f"status={report.status} mode={report.mode} pages={report.pages} rows={report.rows} "
        f"cursor_written={report.cursor_written} artifact_uploaded={report.artifact_uploaded} "
        f"errors={len(report.errors)}"
    )
    raise typer.Exit(code=exit_code_for(report) if strict else 0)


@app.command(help="Show the cursor key and whether a cursor is stored.")
def status(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to YAML config file.", show_default=False
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
    ),
) -> None:
    cfg = _load(config, {"logging": {"level": "DEBUG"}} if verbose else {})
    orch = Orchestrator(cfg)
    location = cfg.store.bucket if cfg.store.backend == "s3" else cfg.store.local_root
    typer.echo(f"store: {cfg.store.backend} {location}")
    typer.echo(f"cursor key: {cfg.store.prefix}/{cfg.store.cursor_key}")

    try:
        raw = orch.read_cursor()
    except CursorReadError as exc:
        typer.echo(f"cursor: unreadable ({exc})", err=True)
        raise typer.Exit(code=3) from exc
    if raw is None or not raw.strip():
        typer.echo("cursor: none (next run syncs the full window)")
    else:
        typer.echo(f"cursor: present ({len(raw.strip())} bytes)")
    raise typer.Exit(code=0)


if __name__ == "__main__":  # pragma: no cover
    app()
