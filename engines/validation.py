"""Typed errors raised by the scoring path and mapped to HTTP responses."""

from typing import Any, Dict, Optional


class ScoringError(Exception):
    """Base class for user-visible scoring errors.

    ``code`` is stable and machine-readable; ``message`` is safe to show to
    the player. ``detail`` carries internal context and is only exposed when
    the deployment allows it.
    """

    status_code = 500

    def __init__(self, code: str, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail

    def to_payload(self, expose_detail: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if expose_detail and self.detail:
            payload["detail"] = self.detail
        return payload


class SubmissionRejected(ScoringError):
    """Raised for missing or malformed input before any scoring runs."""
    status_code = 400


class ChallengeNotFound(ScoringError):
    status_code = 404


class UnknownPlayer(ScoringError):
    status_code = 404


class DuplicateAttempt(ScoringError):
    """Raised when the player already has an attempt for the challenge."""
    status_code = 409

    def __init__(self, challenge_id: str):
        super().__init__(
            "already_submitted",
            "You have already submitted an answer for this challenge.",
            detail=f"challenge_id={challenge_id}",
        )


class CooldownActive(ScoringError):
    status_code = 429

    def __init__(self, remaining_seconds: int):
        super().__init__(
            "cooldown_active",
            f"Please wait {remaining_seconds} seconds before submitting again.",
        )
        self.remaining_seconds = remaining_seconds


class ScoringUnavailable(ScoringError):
    """Raised when neither the judge nor the automated checks can score."""
    status_code = 502


class PersistenceFailed(ScoringError):
    status_code = 500
