"""Microsoft identity platform token helper (resource-owner password grant).

Responsibilities
- Exchange the service account's username/password for a Graph access token
- Cache the token for the lifetime of one run (runs are short; no refresh logic)

Notes
- The password grant is what the scheduled job has always used; it requires an
  account without MFA and an app registration allowing public client flows.
- Never log raw tokens; the logging filter masks bearer values regardless.
"""

from __future__ import annotations

import logging
import time

import httpx

from ..config import GraphConfig
from ..errors import AuthError
from ..utils.http import request_once

__all__ = ["PasswordTokenProvider"]

log = logging.getLogger(__name__)

# Refresh a little before the advertised expiry
_EXPIRY_SKEW_SEC = 60


class PasswordTokenProvider:
    def __init__(self, graph_cfg: GraphConfig, client: httpx.Client) -> None:
        self._cfg = graph_cfg
        self._client = client
        self._token: str | None = None
        self._expires_at: float = 0.0

    @property
    def token_url(self) -> str:
        return f"{self._cfg.authority_host}/{self._cfg.tenant}/oauth2/v2.0/token"

    def get_token(self) -> str:
        if self._token and time.monotonic() < self._expires_at:
            return self._token
        # Missing credentials surface as a failed walk, not a construction error
        if not self._cfg.client_id or not self._cfg.username or not self._cfg.password:
            raise AuthError("graph.client_id, graph.username and graph.password are required")

        log.debug("requesting graph access token", extra={"username": self._cfg.username})
        resp = request_once(
            self._client,
            "POST",
            self.token_url,
            data={
                "grant_type": "password",
                "client_id": self._cfg.client_id or "",
                "username": self._cfg.username or "",
                "password": self._cfg.password or "",
                "scope": " ".join(self._cfg.scopes),
            },
            error=AuthError,
        )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise AuthError("token endpoint response is not JSON") from exc
        if not isinstance(payload, dict):
            raise AuthError(
                f"token endpoint response must be an object, got {type(payload).__name__}"
            )
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthError("token endpoint response has no access_token")
        raw_expiry = payload.get("expires_in", 3600)
        try:
            expires_in = int(raw_expiry)
        except (TypeError, ValueError) as exc:
            raise AuthError(f"token endpoint returned a bad expires_in: {raw_expiry!r}") from exc

        self._token = token
        self._expires_at = time.monotonic() + expires_in - _EXPIRY_SKEW_SEC
        return token
