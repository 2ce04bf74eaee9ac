"""
Per-turn relay from completed sentences to forwarded audio frames.

Each sentence opens its own synthesis stream and every frame is handed to the
caller before the next sentence starts, so audio order follows sentence
order. A sentence whose synthesis fails is logged and skipped; only a turn
that submitted sentences and produced no audio at all is an error.

Only the first forwarded frame carries the WAV header, so the request
asks for ``container=wav`` until a frame has actually been forwarded. A
first sentence that fails leaves the next one requesting the header; the
response is always a single valid WAV stream.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, AsyncIterator

from ...errors import UpstreamError

if TYPE_CHECKING:
    from ..tts_service import TTSService

logger = logging.getLogger(__name__)


class SpeechRelay:
    """Synthesize sentences in order and keep a copy of every forwarded byte."""

    def __init__(self, tts_service: "TTSService"):
        self._tts = tts_service
        self._audio = bytearray()
        self._started = False
        self._sentences = 0
        self._failed = 0
        self._start_time = time.monotonic()

    @property
    def audio(self) -> bytes:
        return bytes(self._audio)

    @property
    def sentences_submitted(self) -> int:
        return self._sentences

    @property
    def sentences_failed(self) -> int:
        return self._failed

    async def speak(self, sentence: str) -> AsyncIterator[bytes]:
        """Yield audio frames for one sentence; synthesis errors end it quietly."""

        if not sentence.strip():
            return

        self._sentences += 1
        stream = self._tts.stream_speech(sentence, first=not self._started)
        try:
            async for frame in stream:
                if not self._started:
                    elapsed = (time.monotonic() - self._start_time) * 1000
                    logger.info("First audio frame in %.0fms", elapsed)
                # The container switches to raw frames once a header has gone out.
                self._started = True
                self._audio.extend(frame)
                yield frame
        except UpstreamError as exc:
            self._failed += 1
            logger.warning(
                "Skipping sentence after synthesis error (%d chars): %s",
                len(sentence),
                exc,
            )
        finally:
            await stream.aclose()

    def ensure_output(self) -> None:
        """Raise when sentences were submitted but no audio was produced."""

        if self._sentences and not self._audio:
            raise UpstreamError(
                f"Speech synthesis produced no audio for {self._sentences} sentence(s)"
            )


__all__ = ["SpeechRelay"]
