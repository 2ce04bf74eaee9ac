"""Levels for the console, the dated log files and the turn pipeline loggers.

The settings file holds ``key = value`` lines::

    terminal = info         # console handler
    file = debug            # dated file handler
    turns = warning         # loggers listed in TURN_LOGGERS
    retention_hours = 48    # 0 keeps every file

Levels are the standard logging names (case-insensitive) or ``off``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

# Modules that log once per frame, sentence or commit of a turn.
TURN_LOGGERS = (
    "convo_backend.chat",
    "convo_backend.completion",
    "convo_backend.services.tts",
    "convo_backend.services.tts_service",
    "convo_backend.services.notifier",
)

# Above CRITICAL, so nothing passes.
SILENT = logging.CRITICAL + 1

DEFAULT_RETENTION_HOURS = 48


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None = logging.INFO
    file_level: int | None = logging.INFO
    turns_level: int | None = logging.INFO
    retention_hours: int = DEFAULT_RETENTION_HOURS

    def apply_turn_level(self) -> None:
        """Set every turn pipeline logger, silencing them when ``turns = off``."""

        level = SILENT if self.turns_level is None else self.turns_level
        for name in TURN_LOGGERS:
            logging.getLogger(name).setLevel(level)


def parse_level(value: str, default: int | None = logging.INFO) -> int | None:
    name = value.strip().upper()
    if name == "OFF":
        return None
    level = logging.getLevelNamesMapping().get(name)
    return default if level is None else level


def _pairs(text: str) -> Iterator[tuple[str, str]]:
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        key, sep, value = line.partition("=")
        if sep:
            yield key.strip().lower(), value.strip()


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Read the settings file; a missing file or bad value keeps the default."""

    if not path.exists():
        return LoggingSettings()

    values = dict(_pairs(path.read_text(encoding="utf-8")))
    try:
        retention_hours = max(0, int(values.get("retention_hours", DEFAULT_RETENTION_HOURS)))
    except ValueError:
        retention_hours = DEFAULT_RETENTION_HOURS

    return LoggingSettings(
        terminal_level=parse_level(values.get("terminal", "info")),
        file_level=parse_level(values.get("file", "info")),
        turns_level=parse_level(values.get("turns", "info")),
        retention_hours=retention_hours,
    )


__all__ = [
    "DEFAULT_RETENTION_HOURS",
    "LoggingSettings",
    "SILENT",
    "TURN_LOGGERS",
    "parse_level",
    "parse_logging_settings",
]
