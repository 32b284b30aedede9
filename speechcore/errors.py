"""Error types raised and reported by speechcore components."""

from typing import Optional


class SpeechError(Exception):
    """Base class for all speech pipeline errors.

    ``provider`` and ``status_code`` are set when the error came from a
    specific backend.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        prefix = f"[{self.provider}] " if self.provider else ""
        suffix = f" (status {self.status_code})" if self.status_code is not None else ""
        return f"{prefix}{self.message}{suffix}"


class DeviceError(SpeechError):
    """Microphone missing, permission denied or audio API unavailable."""

    def __init__(self, message: str, provider: Optional[str] = None, permission_denied: bool = False):
        super().__init__(message, provider=provider)
        self.permission_denied = permission_denied

    @classmethod
    def from_exception(cls, context: str, exc: Exception, provider: Optional[str] = None) -> "DeviceError":
        """Wrap a host audio error, flagging permission failures."""
        message = str(exc)
        lowered = message.lower()
        denied = any(token in lowered for token in ("permission", "denied", "not allowed"))
        return cls(f"{context}: {message}", provider=provider, permission_denied=denied)


class NetworkError(SpeechError):
    """Backend unreachable or returned a server error."""

    retryable = True


class AuthError(SpeechError):
    """Missing or rejected credentials."""


class ProtocolError(SpeechError):
    """Backend response could not be interpreted."""


class RecognitionTimeoutError(SpeechError, TimeoutError):
    """Recognition stalled and the restart budget is exhausted."""

    retryable = True


class ValidationError(SpeechError):
    """Audio payload rejected before submission."""


class SessionError(SpeechError):
    """A recognition session is already running."""


class UnsupportedOperationError(SpeechError):
    """The adapter does not implement the requested capability."""
