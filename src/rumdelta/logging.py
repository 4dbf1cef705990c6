"""Structured logging with optional JSON output and secret redaction.

Exports:
- setup_logging(level: str = "INFO", json: bool = False) -> None
- mask_secrets(text: str) -> str

Redaction:
- Email addresses (Graph usernames): local-part masked except first/last char: a***z@example.com
- Continuation tokens ($deltatoken=..., $skiptoken=..., "delta token = ..."): head and tail kept
- Bearer tokens and password=... pairs: fully masked

Notes:
- Delta tokens are logged at INFO by the driver; they pass through this filter.
- Lambda installs its own root handler; setup_logging replaces it so output format is stable.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, ClassVar

__all__ = ["JsonFormatter", "RedactingFilter", "mask_secrets", "setup_logging"]


_EMAIL_RE = re.compile(r"(?P<user>[A-Za-z0-9._%+-]{1,64})@(?P<host>[A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_CONTINUATION_RE = re.compile(
    r"(?P<key>\$?(?:delta|skip)[ _]?token)(?P<sep>\s*[=:]\s*)(?P<val>[A-Za-z0-9\-_\.~%]+)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(?i)(?P<key>bearer\s+)(?P<val>[A-Za-z0-9\-_\.=]+)")
_PASSWORD_RE = re.compile(r"(?i)(?P<key>password[\"']?\s*[:=]\s*[\"']?)(?P<val>[^\s&\"',}]+)")


def _mask_email(match: re.Match[str]) -> str:
    user = match.group("user")
    host = match.group("host")
    if len(user) <= 2:
        masked_user = "*"
    else:
        masked_user = f"{user[0]}***{user[-1]}"
    return f"{masked_user}@{host}"


def _mask_continuation(match: re.Match[str]) -> str:
    val = match.group("val")
    if len(val) <= 12:
        masked = "********"
    else:
        masked = f"{val[:4]}********{val[-4:]}"
    return f"{match.group('key')}{match.group('sep')}{masked}"


def _mask_fully(match: re.Match[str]) -> str:
    return f"{match.group('key')}********"


def mask_secrets(text: str) -> str:
    """Mask usernames, continuation tokens, bearer tokens and passwords in freeform text."""
    if not text:
        return text
    t = _EMAIL_RE.sub(_mask_email, text)
    t = _CONTINUATION_RE.sub(_mask_continuation, t)
    t = _BEARER_RE.sub(_mask_fully, t)
    t = _PASSWORD_RE.sub(_mask_fully, t)
    return t


class RedactingFilter(logging.Filter):
    """A logging filter that redacts secrets in record messages and selected extras."""

    EXTRA_KEYS_TO_MASK: ClassVar[set[str]] = {
        "username",
        "cursor",
        "access_token",
        "password",
    }

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            if record.args:
                try:
                    record.msg = record.msg % record.args
                    record.args = None
                except (TypeError, ValueError):
                    pass
            record.msg = mask_secrets(record.msg)
            record._redacted = True

        for k in self.EXTRA_KEYS_TO_MASK:
            val = record.__dict__.get(k)
            if not isinstance(val, str):
                continue
            if k in {"access_token", "password"}:
                record.__dict__[k] = "********"
            elif k == "cursor":
                record.__dict__[k] = f"{val[:4]}********{val[-4:]}" if len(val) > 12 else "********"
            else:
                record.__dict__[k] = mask_secrets(val)
        return True


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter.

    Fields:
    - ts (ISO8601), level, name, msg, and known extras if present.
    """

    _DEFAULT_ATTRS: ClassVar[frozenset[str]] = frozenset(
        vars(logging.LogRecord("", 0, "", 0, "", (), None))
    ) | {"_redacted", "message"}

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        msg = record.getMessage()
        base: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": msg if getattr(record, "_redacted", False) else mask_secrets(msg),
        }

        for attr in ("funcName", "lineno", "module"):
            base[attr] = getattr(record, attr, None)

        for k, v in record.__dict__.items():
            if k in self._DEFAULT_ATTRS:
                continue
            if isinstance(v, str):
                base[k] = mask_secrets(v)
            elif isinstance(v, int | float | bool) or v is None:
                base[k] = v
            elif isinstance(v, Mapping):
                base[k] = {
                    kk: (mask_secrets(vv) if isinstance(vv, str) else vv)
                    for kk, vv in list(v.items())[:20]
                }
            else:
                base[k] = f"[{type(v).__name__}]"

        if record.exc_info:
            base["exc"] = mask_secrets(self.formatException(record.exc_info))

        return json.dumps(base, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Configure root logger for CLI and Lambda execution.

    - Level from config or CLI flag (DEBUG/INFO/WARNING/ERROR)
    - JSON or console formatting
    - Redaction filter applied globally
    """
    # Environment override to force JSON (CloudWatch log insights)
    if os.getenv("RUMDELTA_FORCE_JSON_LOGS", "").lower() in {"1", "true", "yes"}:
        json = True

    # Reset handlers in case of repeated setup in tests or warm Lambda containers
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.addFilter(RedactingFilter())

    if json:
        fmt: logging.Formatter = JsonFormatter()
    else:
        fmt = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    handler.setFormatter(fmt)

    root.addHandler(handler)

    for noisy in ("botocore", "boto3", "s3transfer", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
