"""Common contract for speech recognition and synthesis backends."""

import base64
import binascii
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from ..config import ProviderConfig, VADConfig
from ..errors import SpeechError, UnsupportedOperationError, ValidationError

logger = logging.getLogger(__name__)


class ProviderId(str, Enum):
    LOCAL = "local"
    OPENAI = "openai"
    GOOGLE = "google"
    AZURE = "azure"


class Capability(str, Enum):
    SYNTHESIS = "synthesis"
    RECOGNITION = "recognition"


@dataclass(frozen=True)
class ProviderCapabilities:
    """What an adapter can do right now."""
    synthesis: bool = False
    recognition: bool = False
    streaming: bool = False
    multi_language: bool = False
    vad_passthrough: bool = False
    batch_audio: bool = False
    languages: tuple[str, ...] = ()

    def supports(self, capability: Capability) -> bool:
        if capability == Capability.SYNTHESIS:
            return self.synthesis
        return self.recognition


@dataclass
class Alternative:
    transcript: str
    confidence: float


@dataclass
class RecognitionResult:
    """A recognition update.

    For continuous sessions ``final_transcript`` holds the committed text and
    ``interim_transcript`` the volatile tail, which each update replaces.
    """
    transcript: str = ""
    confidence: float = 0.0
    is_final: bool = False
    alternatives: list[Alternative] = field(default_factory=list)
    final_transcript: Optional[str] = None
    interim_transcript: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[SpeechError] = None

    @property
    def is_empty(self) -> bool:
        return not self.transcript.strip()


@dataclass
class RecognitionOptions:
    language: str = "en-US"
    continuous: bool = True
    interim_results: bool = True
    max_alternatives: int = 1
    profanity_filter: bool = False
    punctuation: bool = True
    audio_format: str = "audio/wav"
    sample_rate: int = 16000
    channels: int = 1
    enable_vad: bool = False
    vad_config: Optional[VADConfig] = None
    buffered: bool = False


@dataclass
class SynthesisOptions:
    voice: Optional[str] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    language: str = "en-US"
    output_format: Optional[str] = None


@dataclass
class SynthesisResult:
    audio: bytes
    mime_type: str
    duration_s: float


@dataclass
class VoiceInfo:
    id: str
    name: str
    language: str
    provider: str
    gender: Optional[str] = None
    is_default: bool = False


ResultCallback = Callable[[RecognitionResult], None]
ErrorCallback = Callable[[SpeechError], None]
AudioPayload = Union[bytes, bytearray, memoryview, str]


class SpeechProviderAdapter(ABC):
    """Base class for every speech backend.

    Subclasses implement the abstract operations; the base class keeps the
    subscriber lists and the committed/pending transcript of the session.
    """

    provider_id: ProviderId

    def __init__(self, config: Optional[ProviderConfig] = None):
        self.config = config or ProviderConfig()
        self._result_callbacks: list[ResultCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._initialized = False
        self._transcript_lock = threading.Lock()
        self._committed = ""
        self._pending = ""

    # Synthesis

    @abstractmethod
    def synthesize(self, text: str, options: Optional[SynthesisOptions] = None) -> SynthesisResult:
        ...

    def cancel_synthesis(self) -> None:
        """Abort in-flight synthesis, if the backend supports it."""

    @abstractmethod
    def list_voices(self) -> list[VoiceInfo]:
        ...

    # Recognition

    @abstractmethod
    def start_recognition(self, options: Optional[RecognitionOptions] = None) -> None:
        ...

    @abstractmethod
    def stop_recognition(self) -> RecognitionResult:
        ...

    def process_audio_data(
        self,
        payload: AudioPayload,
        options: Optional[RecognitionOptions] = None,
    ) -> RecognitionResult:
        """Transcribe a whole audio file. Only batch-capable backends override this."""
        raise UnsupportedOperationError(
            "Backend does not accept whole-file audio", provider=self.provider_id.value
        )

    # Lifecycle

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        ...

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        if config is not None:
            self.config = config
        self._initialized = True

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def dispose(self) -> None:
        self.cancel_synthesis()
        self._result_callbacks.clear()
        self._error_callbacks.clear()
        self._initialized = False

    # Events

    def subscribe(self, callback: ResultCallback) -> Callable[[], None]:
        """Register for recognition updates; returns an unsubscribe function."""
        self._result_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._result_callbacks:
                self._result_callbacks.remove(callback)

        return unsubscribe

    def subscribe_errors(self, callback: ErrorCallback) -> Callable[[], None]:
        self._error_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._error_callbacks:
                self._error_callbacks.remove(callback)

        return unsubscribe

    def _notify(self, result: RecognitionResult) -> None:
        if result.provider is None:
            result.provider = self.provider_id.value
        for callback in list(self._result_callbacks):
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Recognition callback error: {e}")

    def _report_error(self, error: SpeechError) -> None:
        if error.provider is None:
            error.provider = self.provider_id.value
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback error: {e}")

    # Transcript bookkeeping

    @property
    def current_transcript(self) -> str:
        with self._transcript_lock:
            return join_transcript(self._committed, self._pending)

    def clear_transcript(self) -> None:
        """Forget the committed and pending transcript."""
        with self._transcript_lock:
            self._committed = ""
            self._pending = ""

    def _set_pending(self, text: str) -> RecognitionResult:
        with self._transcript_lock:
            self._pending = text.strip()
            return self._snapshot(is_final=False)

    def _commit(self, text: str) -> RecognitionResult:
        with self._transcript_lock:
            self._committed = join_transcript(self._committed, text)
            self._pending = ""
            return self._snapshot(is_final=True)

    def _snapshot(self, is_final: bool, confidence: float = 1.0) -> RecognitionResult:
        return RecognitionResult(
            transcript=join_transcript(self._committed, self._pending),
            confidence=confidence,
            is_final=is_final,
            final_transcript=self._committed,
            interim_transcript=self._pending,
            provider=self.provider_id.value,
        )


def join_transcript(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


def decode_payload(payload: AudioPayload) -> bytes:
    """Accept raw bytes or base64 text and return raw bytes."""
    if isinstance(payload, str):
        try:
            audio = base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ValidationError(f"Audio payload is not valid base64: {e}") from e
    else:
        audio = bytes(payload)
    if not audio:
        raise ValidationError("Audio payload is empty")
    return audio


def estimate_duration(text: str, rate: float = 1.0) -> float:
    """Spoken duration in seconds at ~150 words per minute."""
    words = len(text.split())
    return words / (150 * max(rate, 0.1)) * 60


def guess_gender(name: str) -> Optional[str]:
    lowered = name.lower()
    if re.search(r"female|woman", lowered):
        return "female"
    if re.search(r"\bmale\b|\bman\b", lowered):
        return "male"
    return None

