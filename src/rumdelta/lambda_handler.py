"""AWS Lambda entrypoint.

Configure the function with the RUMDELTA__* variables (or the legacy flat ones:
clientId, username, password, bucket, deltaToken_key, startDateTime, endDateTime)
and the handler `rumdelta.lambda_handler.handler`. The export is staged in /tmp.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any

from .config import load_config
from .logging import setup_logging
from .sync.orchestrator import Orchestrator

log = logging.getLogger(__name__)


def handler(event: Any, context: Any) -> str:
    started = time.monotonic()
    cfg = load_config(os.getenv("RUMDELTA_CONFIG_FILE"))
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)

    request_id = getattr(context, "aws_request_id", None)
    log.info("lambda-start request_id=%s", request_id)

    reset_cursor = isinstance(event, dict) and bool(event.get("reset_cursor", False))
    report = Orchestrator(cfg).run(reset_cursor=reset_cursor)

    log.info(
        "lambda-end request_id=%s status=%s rows=%d elapsed=%.1fs",
        request_id,
        report.status,
        report.rows,
        time.monotonic() - started,
    )
    return report.message
