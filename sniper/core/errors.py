from __future__ import annotations


class SniperError(Exception):
    """Base pipeline error."""


class TransientError(SniperError):
    """Raised for failures worth retrying (network, 5xx, timeouts, rate limits)."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentError(SniperError):
    """Raised for failures that must not be retried."""


class AuthenticationError(PermanentError):
    """Raised when an upstream rejects the current session (401-class)."""


class SchemaDriftError(PermanentError):
    """Raised when an upstream response no longer matches the expected contract."""


class UnsupportedEnvelopeVersionError(PermanentError):
    """Raised when a persisted envelope uses an unknown format version."""


class DecryptionError(PermanentError):
    """Raised when ciphertext is truncated, tampered with, or keyed wrongly."""


class CircuitOpenError(SniperError):
    """Raised when a circuit breaker rejects a call without invoking it."""

    def __init__(self, name: str, retry_at: float | None = None) -> None:
        super().__init__(f"circuit breaker is OPEN for {name}")
        self.name = name
        self.retry_at = retry_at


class SessionError(SniperError):
    """Raised when no valid authenticated context can be obtained."""


class LockContentionError(SniperError):
    """Raised when another worker already holds the idempotency lock for a task."""

    def __init__(self, key: str) -> None:
        super().__init__(f"lock already held: {key}")
        self.key = key
