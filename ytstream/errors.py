"""
Error taxonomy for the download pipeline.

Components below the request handler only raise these; the handler is the one
place that turns them into status codes and user-facing messages.
"""

from typing import Optional

DEFAULT_MESSAGE = "Failed to download video"


class YTStreamError(Exception):
    """Base class for every pipeline failure."""

    user_message: str = DEFAULT_MESSAGE
    status_code: int = 500


class ClientError(YTStreamError):
    """Malformed request. Never retried, no upstream call is made."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message


class UpstreamError(YTStreamError):
    """Upstream failure that does not fit a more specific kind."""


class UpstreamRejected(UpstreamError):
    """Upstream decided the request is automated (bot check, 403)."""

    user_message = "Unable to download video due to YouTube restrictions. Please try again later."


class UpstreamRateLimited(UpstreamError):
    user_message = "Rate limit exceeded. Please wait a moment and try again."


class UpstreamUnavailable(UpstreamError):
    """Resource is missing, private or removed. Terminal."""

    user_message = "Video is unavailable or private"


class UpstreamTransportError(UpstreamError):
    """Network failure or timeout."""

    user_message = "Request timed out. Please try again."


class FormatNotFound(YTStreamError):
    """No rendition matches the requested quality hint."""

    def __init__(self, message: str, itag: Optional[str] = None):
        super().__init__(message)
        self.itag = itag


class MuxFailed(YTStreamError):
    """The mux subprocess or one of its inputs failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


RETRYABLE_ERRORS = (UpstreamRateLimited, UpstreamTransportError, UpstreamRejected)

_UNAVAILABLE_KEYWORDS = ("video unavailable", "private video", "is private", "has been removed",
                         "been deleted", "video is not available", "does not exist", "http error 404",
                         "http error 410")
_REJECTED_KEYWORDS = ("sign in to confirm", "not a bot", "bot detection", "captcha",
                      "http error 403", "forbidden")
_RATE_LIMIT_KEYWORDS = ("http error 429", "too many requests", "rate limit", "rate-limit")
_TRANSPORT_KEYWORDS = ("timed out", "timeout", "connection", "network", "unreachable",
                       "temporary failure in name resolution", "http error 502",
                       "http error 503", "http error 504")


def classify_upstream_message(error_msg: str) -> UpstreamError:
    """Classify an upstream error string into a typed UpstreamError."""
    error_lower = error_msg.lower()

    if any(kw in error_lower for kw in _UNAVAILABLE_KEYWORDS):
        return UpstreamUnavailable(error_msg)
    if any(kw in error_lower for kw in _RATE_LIMIT_KEYWORDS):
        return UpstreamRateLimited(error_msg)
    if any(kw in error_lower for kw in _REJECTED_KEYWORDS):
        return UpstreamRejected(error_msg)
    if any(kw in error_lower for kw in _TRANSPORT_KEYWORDS):
        return UpstreamTransportError(error_msg)
    return UpstreamError(error_msg)


def classify_status_code(status_code: int, detail: str = "") -> UpstreamError:
    """Classify an HTTP status returned by the media CDN."""
    message = f"upstream HTTP {status_code}" + (f": {detail}" if detail else "")
    if status_code == 429:
        return UpstreamRateLimited(message)
    if status_code == 403:
        return UpstreamRejected(message)
    if status_code in (404, 410):
        return UpstreamUnavailable(message)
    return UpstreamTransportError(message)


def user_message_for(error: BaseException) -> str:
    """Human-readable message for an error, never exposing internals."""
    if isinstance(error, YTStreamError):
        return error.user_message
    return DEFAULT_MESSAGE
