"""Custom exception hierarchy for pytram."""

from __future__ import annotations


class TramError(Exception):
    """Base exception for all pytram errors."""


class TramConfigError(TramError):
    """Invalid or missing configuration."""


class InvalidDataError(TramError):
    """Malformed or out-of-range location data.

    Always recovered locally: the offending update is dropped.
    """

    def __init__(self, message: str, *, payload: object = None) -> None:
        self.payload = payload
        super().__init__(message)


class StaleDataError(TramError):
    """Location timestamp is older than the freshness bound."""

    def __init__(self, message: str, *, age_ms: float | None = None) -> None:
        self.age_ms = age_ms
        super().__init__(message)


class TransportError(TramError):
    """Connection-level failure (connect error, unexpected close, send failure)."""

    def __init__(self, message: str, *, reason: str = "") -> None:
        self.reason = reason
        super().__init__(message)


class ExhaustedRetriesError(TransportError):
    """Reconnect ceiling reached.

    Automatic reconnection stops once this is reported; a manual
    ``connect()`` is required to try again.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message, reason="exhausted")
