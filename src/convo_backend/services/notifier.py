"""Signed balance updates sent to the auth/billing service."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Optional

import httpx

from ..config import Settings
from ..errors import NotifierError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


def sign_body(body: bytes, secret: str) -> str:
    """Return the base64 HMAC-SHA256 of ``body`` keyed by ``secret``."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class BillingNotifier:
    """POST ``{credits_remaining, user_id}`` to ``<auth service>/session``."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = f"{settings.auth_base_url}/session"
        self._secret = settings.internal_server_key.get_secret_value()
        self._client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        return self._client

    async def notify(
        self,
        *,
        user_id: int,
        credits_remaining: float,
        token: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "credits_remaining": credits_remaining,
            "user_id": user_id,
        }
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_body(body, self._secret),
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._get_http_client().post(
                self._url, content=body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise NotifierError(
                f"Sending updated session data for user '{user_id}' failed: {exc}"
            ) from exc

        if response.status_code >= 400:
            raise NotifierError(
                f"Billing service rejected the session update for user '{user_id}' "
                f"({response.status_code}): {response.text[:200]}"
            )
        logger.info(
            "Reported %.4f remaining credits for user %s", credits_remaining, user_id
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["BillingNotifier", "SIGNATURE_HEADER", "sign_body"]
