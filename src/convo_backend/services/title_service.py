"""Title derivation for a conversation's first turn."""

from __future__ import annotations

TITLE_WORDS = 3
TITLE_MAX_CHARS = 30


def derive_title(message: str, existing_title: str) -> str:
    """Return the title for a conversation whose first turn is ``message``.

    The title is the first three whitespace-separated words joined by single
    spaces. When that is longer than 30 characters the first 30 characters of
    the existing title are used instead.
    """
    candidate = " ".join(message.split()[:TITLE_WORDS])
    if len(candidate) > TITLE_MAX_CHARS:
        return existing_title[:TITLE_MAX_CHARS]
    return candidate


__all__ = ["TITLE_MAX_CHARS", "TITLE_WORDS", "derive_title"]
