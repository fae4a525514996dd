"""
VJSync error taxonomy.

Capture and identification failures end only the current cycle; the
orchestrator never dies from them. ConfigError is the only error that
prevents the orchestrator from starting at all.
"""

from typing import Optional


class VJSyncError(Exception):
    """Base class for all VJSync errors."""


class ConfigError(VJSyncError):
    """Missing or invalid credentials, endpoint or settings."""


class CaptureError(VJSyncError):
    """The audio snippet could not be recorded."""


class RecognitionError(VJSyncError):
    """Base class for errors raised by a Recognizer or a language-model backend."""


class NetworkError(RecognitionError):
    """Transport-level failure (DNS, connection reset, TLS...)."""

    def __init__(self, message: str = "Network error", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class InvalidResponse(RecognitionError):
    """The server answered with a non-2xx status or an empty body."""

    def __init__(self, status_code: Optional[int] = None, message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message or f"Invalid response from server (Code: {status_code or 0})")


class ApiError(RecognitionError):
    """The vendor reported an error inside an otherwise valid response."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParsingError(RecognitionError):
    """The response body could not be decoded."""


class RecognitionTimeout(RecognitionError):
    """The operation did not settle before its failsafe deadline."""


class RecognitionCancelled(RecognitionError):
    """A pending identification was cancelled via Recognizer.cancel()."""


class MissingCredentials(RecognitionError):
    """The provider was asked to work without usable credentials."""
