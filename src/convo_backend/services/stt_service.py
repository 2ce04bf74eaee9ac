"""Speech-to-text for uploaded voice turns using OpenAI Whisper."""

from __future__ import annotations

import logging
from typing import Optional

import openai

from ..config import Settings
from ..errors import UpstreamError

logger = logging.getLogger(__name__)


class Transcriber:
    """Convert a recorded voice message to text before its turn starts."""

    def __init__(
        self,
        settings: Settings,
        *,
        openai_client: Optional[openai.AsyncOpenAI] = None,
    ):
        self._model = settings.transcription_model
        if openai_client is None:
            openai_client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key.get_secret_value(),
                base_url=str(settings.openai_base_url),
                timeout=settings.request_timeout,
            )
        self._client = openai_client

    async def transcribe(self, audio: bytes, filename: str | None = None) -> str:
        if not audio:
            raise UpstreamError("Voice message is empty")

        upload = (filename or "voice.webm", audio)
        try:
            result = await self._client.audio.transcriptions.create(
                model=self._model,
                file=upload,
                response_format="text",
            )
        except openai.OpenAIError as exc:
            logger.error("Transcription failed: %s", exc)
            raise UpstreamError(f"Failed to transcribe voice message: {exc}") from exc

        # ``response_format="text"`` returns a plain string; objects carry ``.text``.
        text = result if isinstance(result, str) else getattr(result, "text", "")
        logger.info("Transcribed %d bytes of audio into %d chars", len(audio), len(text))
        return text.strip()

    async def aclose(self) -> None:
        await self._client.close()


__all__ = ["Transcriber"]
