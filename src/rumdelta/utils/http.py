"""HTTP utilities built on httpx.

Intended use:
- Provide a single place for timeouts, TLS verification and User-Agent.
- A single-attempt request helper that maps transport failures and unexpected
  status codes onto the run's error taxonomy.

Notes:
- There are no retries. Every call is attempted exactly once per run; a failed
  walk is retried by the next scheduled run from the previous cursor.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping, MutableMapping

import httpx

from ..errors import QueryError, SyncError

log = logging.getLogger(__name__)

__all__ = [
    "create_client",
    "request_once",
]


def _user_agent() -> str:
    return "rumdelta/0.1"


def create_client(
    timeout: float = 30.0,
    headers: Mapping[str, str] | None = None,
    verify: bool | str = True,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create a configured httpx client.

    `transport` is accepted so callers can inject an `httpx.MockTransport`.
    """
    if verify is False and os.getenv("RUMDELTA_ENVIRONMENT") == "production":
        raise ValueError(
            "SSL certificate verification cannot be disabled in production environment. "
            "Set RUMDELTA_ENVIRONMENT to 'development' or 'test' to allow insecure connections."
        )

    if verify is False:
        log.warning("SSL certificate verification is DISABLED; use only for development/testing.")

    base_headers: MutableMapping[str, str] = {"User-Agent": _user_agent()}
    if headers:
        base_headers.update(headers)
    kwargs: dict[str, object] = {
        "timeout": timeout,
        "headers": base_headers,
        "verify": verify,
    }
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.Client(**kwargs)  # type: ignore[arg-type]


def request_once(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    params: Mapping[str, str] | None = None,
    data: Mapping[str, str] | None = None,
    expected: Iterable[int] = (200,),
    error: type[SyncError] = QueryError,
) -> httpx.Response:
    """Perform a single HTTP request; raise `error` on transport failure or unexpected status."""
    try:
        resp = client.request(method, url, headers=headers, params=params, data=data)
    except httpx.HTTPError as exc:
        raise error(f"{method} {url} failed: {exc}") from exc

    if resp.status_code not in tuple(expected):
        body = resp.text[:500]
        raise error(f"{method} {url} returned HTTP {resp.status_code}: {body}")
    return resp
