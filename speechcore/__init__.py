"""Speech capture, voice activity detection and resilient multi-backend recognition."""

from .config import Config, load_config
from .errors import (
    AuthError,
    DeviceError,
    NetworkError,
    ProtocolError,
    RecognitionTimeoutError,
    SessionError,
    SpeechError,
    UnsupportedOperationError,
    ValidationError,
)
from .orchestrator import RecognitionOrchestrator
from .providers import ProviderSelector, RecognitionOptions, RecognitionResult

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "Config",
    "DeviceError",
    "NetworkError",
    "ProtocolError",
    "ProviderSelector",
    "RecognitionOptions",
    "RecognitionOrchestrator",
    "RecognitionResult",
    "RecognitionTimeoutError",
    "SessionError",
    "SpeechError",
    "UnsupportedOperationError",
    "ValidationError",
    "load_config",
]
