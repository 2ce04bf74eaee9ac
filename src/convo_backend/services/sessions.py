"""Caller session lookup against the auth service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import Settings
from ..errors import AuthError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionData:
    """Snapshot of the caller taken once per request."""

    user_id: int
    credits_remaining: float
    token: str | None = None


class SessionLookup:
    """Resolve a bearer token to the caller's id and credit balance."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = f"{settings.auth_base_url}/session"
        self._client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    async def lookup(self, token: str) -> SessionData:
        if not token:
            raise AuthError("JWT token is missing")

        try:
            response = await self._get_http_client().get(
                self._url, headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Session lookup failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthError("Invalid or expired session", status_code=response.status_code)
        if response.status_code >= 400:
            raise UpstreamError(
                f"Session lookup returned {response.status_code}"
            )

        try:
            payload = response.json()
            return SessionData(
                user_id=int(payload["user_id"]),
                credits_remaining=float(payload["credits_remaining"]),
                token=token,
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Malformed session payload from auth service: %s", exc)
            raise AuthError("Session data is missing") from exc

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["SessionData", "SessionLookup"]
