"""
Google Service-Account Access Tokens  —  OAuth2 JWT-Bearer Flow
═══════════════════════════════════════════════════════════════

Vertex AI accepts OAuth2 access tokens. A service account obtains one by
signing a short-lived JWT assertion (RS256, key from the service-account
JSON) and exchanging it at the token endpoint:

    POST https://oauth2.googleapis.com/token
      grant_type = urn:ietf:params:oauth:grant-type:jwt-bearer
      assertion  = <signed JWT>

    → {"access_token": "...", "expires_in": 3599, "token_type": "Bearer"}

Tokens live for an hour. We cache the token in-process and refresh it
EXPIRY_MARGIN_SECONDS before it expires, so a long pipeline run never sends
a request with a token that dies in flight. An asyncio.Lock collapses
concurrent refreshes (5 embedding calls starting at once) into one exchange.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from casefile_ingest.core.errors import AIAuthError, ConfigurationError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI       = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE   = "https://www.googleapis.com/auth/cloud-platform"
JWT_BEARER_GRANT       = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME     = 3600   # seconds
EXPIRY_MARGIN_SECONDS  = 60


@dataclass(frozen=True)
class ServiceAccountInfo:
    client_email:   str
    private_key:    str
    private_key_id: str
    project_id:     str
    token_uri:      str = GOOGLE_TOKEN_URI

    @classmethod
    def from_json(cls, raw: str) -> "ServiceAccountInfo":
        """Parse service-account JSON given inline or as a file path."""
        raw = raw.strip()
        if not raw:
            raise ConfigurationError("Google service-account credentials are not configured")
        if not raw.startswith("{"):
            raw = Path(raw).read_text(encoding="utf-8")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid service-account JSON: {exc}") from exc

        missing = [k for k in ("client_email", "private_key") if not data.get(k)]
        if missing:
            raise ConfigurationError(f"Service-account JSON missing fields: {missing}")

        return cls(
            client_email=data["client_email"],
            private_key=data["private_key"],
            private_key_id=data.get("private_key_id", ""),
            project_id=data.get("project_id", ""),
            token_uri=data.get("token_uri") or GOOGLE_TOKEN_URI,
        )


class ServiceAccountTokenProvider:
    """Caches an OAuth2 access token with an expiry margin."""

    def __init__(
        self,
        account:     ServiceAccountInfo,
        *,
        scope:       str = CLOUD_PLATFORM_SCOPE,
        timeout:     float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        clock:       Callable[[], float] = time.time,
    ) -> None:
        self._account    = account
        self._scope      = scope
        self._timeout    = timeout
        self._http       = http_client
        self._clock      = clock
        self._token:      str | None = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def project_id(self) -> str:
        return self._account.project_id

    def _is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at - EXPIRY_MARGIN_SECONDS

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token

        async with self._lock:
            if self._is_fresh():
                return self._token

            now = self._clock()
            token, expires_in = await self._exchange(self._build_assertion(now))
            self._token = token
            self._expires_at = now + expires_in
            logger.debug(
                "Google access token refreshed | account=%s expires_in=%ds",
                self._account.client_email, expires_in,
            )
            return token

    def _build_assertion(self, now: float) -> str:
        claims = {
            "iss":   self._account.client_email,
            "scope": self._scope,
            "aud":   self._account.token_uri,
            "iat":   int(now),
            "exp":   int(now) + ASSERTION_LIFETIME,
        }
        headers = {"kid": self._account.private_key_id} if self._account.private_key_id else None
        try:
            return jwt.encode(claims, self._account.private_key, algorithm="RS256", headers=headers)
        except JOSEError as exc:
            raise AIAuthError(f"Could not sign service-account assertion: {exc}") from exc

    async def _exchange(self, assertion: str) -> tuple[str, int]:
        form = {"grant_type": JWT_BEARER_GRANT, "assertion": assertion}
        try:
            if self._http is not None:
                resp = await self._http.post(self._account.token_uri, data=form, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._account.token_uri, data=form)
        except httpx.HTTPError as exc:
            raise AIAuthError(f"Token exchange failed: {exc}", retryable=True) from exc

        if resp.status_code != 200:
            raise AIAuthError(
                f"Token exchange rejected: {resp.status_code} {resp.text[:200]}",
                retryable=resp.status_code >= 500,
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise AIAuthError(f"Malformed token response: {resp.text[:200]}", retryable=True) from exc
        if not isinstance(body, dict):
            raise AIAuthError(f"Malformed token response: {str(body)[:200]}", retryable=True)
        token = body.get("access_token")
        if not token:
            raise AIAuthError("Token endpoint returned no access_token")
        return token, int(body.get("expires_in", ASSERTION_LIFETIME))
