"""
Sentence segmentation for the streaming speech pipeline.

Provider deltas are appended to a buffer; each time a boundary appears the
prefix up to and including it is emitted as one sentence:

    deltas → SentenceSegmenter.feed() → sentences → SpeechRelay

A boundary is sentence punctuation followed by whitespace, or a line break.
Unlike a phrase segmenter there is no minimum length and no flush: the
unterminated tail is never synthesized. The persisted text does not depend on
this component, only the audio side-channel does.

Usage:
    segmenter = SentenceSegmenter()
    async for delta in deltas:
        for sentence in segmenter.feed(delta):
            ...
"""

import re
from typing import Iterator

SENTENCE_BOUNDARY = re.compile(r"[.!?]\s+|\r?\n")


class SentenceSegmenter:
    """Stateful splitter yielding complete sentences from streamed text."""

    def __init__(self, boundary: re.Pattern[str] = SENTENCE_BOUNDARY):
        self._boundary = boundary
        self._buffer = ""
        self._emitted = 0

    def feed(self, delta: str) -> Iterator[str]:
        """
        Append a delta and yield every sentence completed by it, in order.

        Sentences keep their trailing punctuation and whitespace verbatim.
        """
        if not delta:
            return

        self._buffer += delta

        while True:
            match = self._boundary.search(self._buffer)
            if match is None:
                break
            sentence = self._buffer[: match.end()]
            self._buffer = self._buffer[match.end():]
            self._emitted += 1
            yield sentence

    @property
    def pending(self) -> str:
        """Unterminated text still waiting for a boundary."""
        return self._buffer

    @property
    def sentences_emitted(self) -> int:
        return self._emitted


__all__ = ["SENTENCE_BOUNDARY", "SentenceSegmenter"]
