"""Streaming text-to-speech client for Deepgram Aura."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

import httpx

from ..config import Settings
from ..errors import UpstreamError

logger = logging.getLogger(__name__)

FIRST_CONTAINER = "wav"
CONTINUATION_CONTAINER = "none"


class TTSService:
    """
    Open one synthesis stream per sentence.

    The first request in a turn asks for a WAV container so the response starts
    with a header; later requests ask for raw frames in the same encoding and
    sample rate so the concatenated body stays a single valid WAV stream.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = (
            settings.deepgram_api_key.get_secret_value()
            if settings.deepgram_api_key
            else None
        )
        self._url = str(settings.deepgram_speak_url)
        self._model = settings.tts_model
        self._sample_rate = settings.tts_sample_rate
        self._client = http_client
        self._owns_client = http_client is None

        if not self._api_key:
            logger.warning("No Deepgram API key configured. Voice turns will fail.")

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    def build_params(self, *, first: bool) -> dict[str, str]:
        return {
            "model": self._model,
            "encoding": "linear16",
            "sample_rate": str(self._sample_rate),
            "container": FIRST_CONTAINER if first else CONTINUATION_CONTAINER,
        }

    async def stream_speech(self, text: str, *, first: bool) -> AsyncIterator[bytes]:
        """Yield audio bytes for ``text`` as they arrive from the provider."""

        if not self._api_key:
            raise UpstreamError("Deepgram API key not configured")

        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "application/json",
        }
        client = self._get_http_client()
        try:
            async with client.stream(
                "POST",
                self._url,
                params=self.build_params(first=first),
                headers=headers,
                json={"text": text},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise UpstreamError(
                        f"Deepgram returned {response.status_code}: "
                        f"{body.decode('utf-8', errors='ignore')[:200]}"
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Deepgram streaming TTS error: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["CONTINUATION_CONTAINER", "FIRST_CONTAINER", "TTSService"]
