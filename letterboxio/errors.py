from __future__ import annotations


class LetterboxioError(RuntimeError):
    """Base class for failures surfaced to write-path callers."""

    code = "error"


class ItemNotFound(LetterboxioError):
    code = "not_found"


class InvalidRating(LetterboxioError, ValueError):
    code = "invalid_rating"


class NoSessionConfigured(LetterboxioError):
    code = "no_session"


class AuthenticationFailed(LetterboxioError):
    code = "authentication_failed"


class SessionInvalidated(LetterboxioError):
    code = "session_invalidated"

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status}: session rejected")
        self.status = status


class UpstreamUnexpectedResponse(LetterboxioError):
    code = "unexpected_response"


class NetworkTimeout(LetterboxioError):
    code = "network_timeout"
