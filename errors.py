"""Error taxonomy shared by every layer of the engine.

Callers branch on the exception class (or its ``kind``), never on message
text.  ``retryable`` tells the caller whether trying again later can help.
"""

from __future__ import annotations


class PassTrackError(Exception):
    """Base class for all engine errors."""

    kind = "PassTrackError"
    retryable = False


class InvalidOrbitalElements(PassTrackError):
    """TLE lines are malformed; re-fetch or drop the satellite."""

    kind = "InvalidOrbitalElements"


class InvalidObserverLocation(PassTrackError):
    """Observer coordinates or locator are out of range."""

    kind = "InvalidObserverLocation"


class PropagationFailed(PassTrackError):
    """SGP4 rejected the epoch/time combination (no data for this instant)."""

    kind = "PropagationFailed"

    def __init__(self, message: str, error_code: int | None = None):
        super().__init__(message)
        self.error_code = error_code


class NetworkFailure(PassTrackError):
    """Fetch from an external provider failed."""

    kind = "NetworkFailure"
    retryable = True


class RequestTimeout(NetworkFailure):
    """A network call or background computation exceeded its time bound."""

    kind = "Timeout"


class RateLimitExceeded(PassTrackError):
    """Provider quota exhausted until its window resets."""

    kind = "RateLimitExceeded"

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class OffloadTerminated(PassTrackError):
    """The background compute context shut down with the request pending."""

    kind = "OffloadTerminated"


ERROR_KINDS: dict[str, type[PassTrackError]] = {
    cls.kind: cls
    for cls in (
        InvalidOrbitalElements,
        InvalidObserverLocation,
        PropagationFailed,
        NetworkFailure,
        RequestTimeout,
        RateLimitExceeded,
        OffloadTerminated,
    )
}


def error_from_kind(kind: str, message: str) -> PassTrackError:
    """Rebuild an exception from a ``{"error": {"kind", "message"}}`` reply."""
    cls = ERROR_KINDS.get(kind, PassTrackError)
    return cls(message)
