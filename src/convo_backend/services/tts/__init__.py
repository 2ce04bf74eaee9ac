"""
TTS (Text-to-Speech) relay package for voice turns.

- text_segmenter: Splits streamed completion text into whole sentences
- speech_relay: Synthesizes each sentence and forwards its audio in order

Architecture Overview:

    ┌──────────────┐     ┌───────────────────┐     ┌─────────────┐     ┌─────────────┐
    │ Provider     │────▶│ SentenceSegmenter │────▶│ SpeechRelay │────▶│ TurnChannel │
    │ deltas       │     └───────────────────┘     └─────────────┘     └─────────────┘
    └──────────────┘                                      │
                                                          ▼
                                                   ┌─────────────┐
                                                   │ TTSService  │
                                                   └─────────────┘

The first synthesis request of a turn returns a WAV header; every later
request returns headerless frames in the same encoding, so the client
receives one continuous WAV body.
"""

from .speech_relay import SpeechRelay
from .text_segmenter import SentenceSegmenter

__all__ = ["SentenceSegmenter", "SpeechRelay"]
