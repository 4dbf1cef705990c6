"""Microsoft Graph calendar delta client (calendarView/delta with delta tokens).

Features
- Three request shapes: a full window (startDateTime/endDateTime), a resume from a
  stored delta token, or a follow-up page from a skip token.
- Each response is parsed once into a typed `Page` carrying the records in response
  order and the two optional continuation tokens.
- The page-size hint travels as the `Prefer: odata.maxpagesize` header on every call.

Notes
- Continuation links are opaque URLs; only the `$skiptoken` / `$deltatoken` query
  parameter is kept, the rest of the link is discarded.
- A follow-up page request never repeats the window or the delta token.

Refs:
- https://learn.microsoft.com/en-us/graph/delta-query-events
- https://learn.microsoft.com/en-us/graph/api/event-delta
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import parse_qs, urlsplit

import httpx

from ..errors import EnvelopeError
from ..utils.http import request_once
from .auth import PasswordTokenProvider

__all__ = [
    "CalendarDeltaClient",
    "ChangeQuery",
    "ChangeSource",
    "DELTA_LINK",
    "NEXT_LINK",
    "Page",
    "PageQuery",
    "ResumeQuery",
    "WindowQuery",
    "extract_token",
]

log = logging.getLogger(__name__)

NEXT_LINK = "@odata.nextLink"
DELTA_LINK = "@odata.deltaLink"
SKIP_TOKEN_PARAM = "$skiptoken"
DELTA_TOKEN_PARAM = "$deltatoken"


@dataclass(frozen=True)
class WindowQuery:
    start_date_time: str
    end_date_time: str

    def params(self) -> dict[str, str]:
        return {"startDateTime": self.start_date_time, "endDateTime": self.end_date_time}


@dataclass(frozen=True)
class ResumeQuery:
    delta_token: str

    def params(self) -> dict[str, str]:
        return {DELTA_TOKEN_PARAM: self.delta_token}


@dataclass(frozen=True)
class PageQuery:
    skip_token: str

    def params(self) -> dict[str, str]:
        return {SKIP_TOKEN_PARAM: self.skip_token}


ChangeQuery = WindowQuery | ResumeQuery | PageQuery


def extract_token(link: str, param: str) -> str:
    """Return the value of `param` from a continuation link's query string."""
    values = parse_qs(urlsplit(link).query, keep_blank_values=True).get(param)
    if not values or not values[0]:
        raise EnvelopeError(f"continuation link has no {param} parameter")
    return values[0]


@dataclass(frozen=True)
class Page:
    records: tuple[dict[str, Any], ...]
    next_page_token: str | None = None
    change_cursor_token: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> Page:
        if not isinstance(payload, Mapping):
            raise EnvelopeError(f"page payload must be an object, got {type(payload).__name__}")
        value = payload.get("value")
        if not isinstance(value, list):
            raise EnvelopeError("page payload has no 'value' array")
        for idx, item in enumerate(value):
            if not isinstance(item, Mapping):
                raise EnvelopeError(f"page record {idx} is not an object")

        next_link = payload.get(NEXT_LINK)
        delta_link = payload.get(DELTA_LINK)
        for name, link in ((NEXT_LINK, next_link), (DELTA_LINK, delta_link)):
            if link is not None and not isinstance(link, str):
                raise EnvelopeError(f"{name} must be a string, got {type(link).__name__}")
        return cls(
            records=tuple(dict(item) for item in value),
            next_page_token=extract_token(next_link, SKIP_TOKEN_PARAM) if next_link else None,
            change_cursor_token=extract_token(delta_link, DELTA_TOKEN_PARAM) if delta_link else None,
        )


class ChangeSource(Protocol):
    def query_changes(self, query: ChangeQuery, page_size: int) -> Page: ...


class CalendarDeltaClient:
    """Change source backed by `GET /me/calendarView/delta`."""

    def __init__(
        self,
        base_url: str,
        tokens: PasswordTokenProvider,
        client: httpx.Client,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/me/calendarView/delta"
        self._tokens = tokens
        self._client = client

    def query_changes(self, query: ChangeQuery, page_size: int) -> Page:
        headers = {
            "Authorization": f"Bearer {self._tokens.get_token()}",
            "Prefer": f"odata.maxpagesize={page_size}",
        }
        resp = request_once(self._client, "GET", self._url, headers=headers, params=query.params())
        try:
            payload = resp.json()
        except ValueError as exc:
            raise EnvelopeError("calendar delta response is not JSON") from exc
        page = Page.from_payload(payload)
        log.debug(
            "graph-page records=%d next=%s delta=%s",
            len(page.records),
            page.next_page_token is not None,
            page.change_cursor_token is not None,
        )
        return page
