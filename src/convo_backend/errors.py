"""Error taxonomy shared by the turn pipeline and the HTTP layer."""

from __future__ import annotations

from typing import Any

from fastapi import status


class TurnError(Exception):
    """Base class for failures surfaced to the caller of a turn."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: Any, *, status_code: int | None = None):
        super().__init__(str(detail))
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class TurnValidationError(TurnError):
    """Rejected before any provider call; no side effects."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidModel(TurnValidationError):
    """The model identifier has no entry in the price table."""


class InvalidMessageType(TurnValidationError):
    """The message type is neither ``text`` nor ``voice``."""


class InvalidEditTarget(TurnValidationError):
    """The edit target does not address an existing user turn."""


class InsufficientCredit(TurnValidationError):
    status_code = status.HTTP_403_FORBIDDEN


class AuthError(TurnError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFound(TurnError):
    status_code = status.HTTP_404_NOT_FOUND


class UpstreamError(TurnError):
    """Provider, synthesis, or transcription failure."""

    status_code = status.HTTP_502_BAD_GATEWAY


class PersistenceError(TurnError):
    """Store write or commit failure."""


class NotifierError(PersistenceError):
    """The billing notifier rejected or failed to receive the update."""


__all__ = [
    "AuthError",
    "InsufficientCredit",
    "InvalidEditTarget",
    "InvalidMessageType",
    "InvalidModel",
    "NotFound",
    "NotifierError",
    "PersistenceError",
    "TurnError",
    "TurnValidationError",
    "UpstreamError",
]
