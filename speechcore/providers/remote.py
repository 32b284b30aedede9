"""Shared machinery for HTTP speech backends."""

import io
import logging
import threading
from abc import abstractmethod
from typing import Any, Callable, Optional

import httpx
import numpy as np
import soundfile as sf

from ..audio.capture import AudioCapture, encode_wav
from ..config import CaptureConfig, ProviderConfig
from ..errors import (
    AuthError,
    DeviceError,
    NetworkError,
    ProtocolError,
    SpeechError,
    ValidationError,
)
from ..scheduling import RepeatingTask
from .base import (
    AudioPayload,
    ProviderCapabilities,
    RecognitionOptions,
    RecognitionResult,
    SpeechProviderAdapter,
    decode_payload,
)

logger = logging.getLogger(__name__)

# Raised by response mappers when valid JSON has an unexpected shape
MALFORMED_RESPONSE_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)

BASE_PROMPT = "Please transcribe with proper punctuation and capitalization."
COMMON_TERMS = "Common terms: AI, API, UI, URL, HTTP, JSON"
CONTEXT_WORDS = 30
MIN_CONTEXT_CHARS = 20


def build_context_prompt(transcript: str) -> str:
    """Bias prompt from the recent transcript plus common vocabulary."""
    parts = [BASE_PROMPT]
    if len(transcript.strip()) > MIN_CONTEXT_CHARS:
        recent = " ".join(transcript.split()[-CONTEXT_WORDS:])
        parts.append(f"Recent context: {recent}")
    parts.append(COMMON_TERMS)
    return " ".join(parts)


class RemoteSpeechAdapter(SpeechProviderAdapter):
    """Base for backends that transcribe whole WAV files over HTTP.

    Live recognition records time-sliced chunks and periodically re-sends
    everything captured so far; each response replaces the pending
    transcript. Stopping sends the complete recording once more and commits
    the result.
    """

    # Request ceilings; oversized audio is cut from the oldest end.
    max_payload_bytes: Optional[int] = None
    truncated_payload_bytes: Optional[int] = None
    max_audio_seconds: Optional[float] = None

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        capture_config: Optional[CaptureConfig] = None,
        http_client: Optional[httpx.Client] = None,
        capture_factory: Callable[[CaptureConfig], AudioCapture] = AudioCapture,
    ):
        super().__init__(config)
        self.capture_config = capture_config or CaptureConfig()
        self._capture_factory = capture_factory
        self._client = http_client
        self._owns_client = http_client is None

        self._capture: Optional[AudioCapture] = None
        self._options = RecognitionOptions()
        self._reprocess_task: Optional[RepeatingTask] = None
        self._processed_chunks = 0
        self._request_lock = threading.Lock()

    # ------------------------------------------------------------ lifecycle

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        super().initialize(config)
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.config.request_timeout_s))
            self._owns_client = True
        if self.has_credentials():
            logger.info(f"{self.provider_id.value} speech adapter initialized")
        else:
            logger.warning(f"{self.provider_id.value} speech adapter has no credentials")

    def is_available(self) -> bool:
        return self.has_credentials()

    @abstractmethod
    def has_credentials(self) -> bool:
        ...

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            synthesis=True,
            recognition=True,
            streaming=False,
            multi_language=True,
            vad_passthrough=False,
            batch_audio=True,
        )

    def dispose(self) -> None:
        if self._capture is not None:
            self._stop_live()
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        super().dispose()

    # ---------------------------------------------------------- recognition

    def start_recognition(self, options: Optional[RecognitionOptions] = None) -> None:
        self._require_credentials()
        if self._capture is not None and self._capture.is_recording():
            logger.warning(f"{self.provider_id.value} recognition already running")
            return

        self._options = options or RecognitionOptions()
        self._processed_chunks = 0
        capture = self._capture_factory(self.capture_config)
        capture.on_error(self._report_error)
        try:
            capture.start_recording()
        except DeviceError:
            capture.dispose()
            raise
        self._capture = capture

        if self._options.continuous:
            self._reprocess_task = RepeatingTask(
                self._process_intermediate,
                self.config.reprocess_interval_ms / 1000.0,
                name=f"{self.provider_id.value}-reprocess",
            )
            self._reprocess_task.start()
        logger.info(f"{self.provider_id.value} recognition started")

    def stop_recognition(self) -> RecognitionResult:
        if self._capture is None:
            return self._snapshot(is_final=True)

        audio = self._stop_live()
        if audio:
            try:
                text = self._recognize(audio, self._options, is_final=True).transcript
            except SpeechError as e:
                logger.error(f"{self.provider_id.value} final recognition failed: {e}")
                self._report_error(e)
                text = self._pending
            result = self._commit(text)
        else:
            result = self._commit(self._pending)
        self._notify(result)
        logger.info(f"{self.provider_id.value} recognition stopped")
        return result

    def _stop_live(self) -> bytes:
        if self._reprocess_task is not None:
            self._reprocess_task.stop()
            self._reprocess_task = None
        capture, self._capture = self._capture, None
        audio = capture.stop_recording()
        capture.dispose()
        return audio

    def process_audio_data(
        self,
        payload: AudioPayload,
        options: Optional[RecognitionOptions] = None,
    ) -> RecognitionResult:
        """Transcribe a complete WAV file without touching the session transcript."""
        self._require_credentials()
        audio = decode_payload(payload)
        return self._recognize(audio, options or self._options, is_final=True)

    def _process_intermediate(self) -> None:
        capture = self._capture
        if capture is None:
            return
        chunks = capture.get_audio_chunks()
        if len(chunks) <= self._processed_chunks:
            return
        self._processed_chunks = len(chunks)

        try:
            result = self._recognize(capture.encode_chunks(chunks), self._options, is_final=False)
        except SpeechError as e:
            logger.warning(f"{self.provider_id.value} interim recognition failed: {e}")
            self._report_error(e)
            return
        if self._capture is not capture:
            return
        update = self._set_pending(result.transcript)
        update.confidence = result.confidence
        update.alternatives = result.alternatives
        self._notify(update)

    def _recognize(self, audio: bytes, options: RecognitionOptions, is_final: bool) -> RecognitionResult:
        audio = self.fit_payload(audio)
        # Concurrent requests would race on the pending transcript.
        with self._request_lock:
            try:
                result = self._transcribe(audio, options, is_final)
            except ProtocolError as e:
                logger.warning(f"Unreadable {self.provider_id.value} response: {e}")
                result = RecognitionResult(is_final=is_final, error=e)
        result.provider = self.provider_id.value
        return result

    def _map_payload(self, mapper: Callable[..., RecognitionResult], *args: Any) -> RecognitionResult:
        try:
            return mapper(*args)
        except MALFORMED_RESPONSE_ERRORS as e:
            raise ProtocolError(
                f"Malformed recognition response: {type(e).__name__}: {e}",
                provider=self.provider_id.value,
            ) from e

    @abstractmethod
    def _transcribe(self, audio: bytes, options: RecognitionOptions, is_final: bool) -> RecognitionResult:
        """Send one WAV file and map the response."""

    def context_prompt(self) -> str:
        return build_context_prompt(self.current_transcript)

    # --------------------------------------------------------------- payload

    def fit_payload(self, audio: bytes) -> bytes:
        """Drop the oldest audio until the request fits the backend ceilings."""
        if not audio:
            raise ValidationError("Audio payload is empty", provider=self.provider_id.value)
        over_bytes = self.max_payload_bytes is not None and len(audio) > self.max_payload_bytes
        if not over_bytes and self.max_audio_seconds is None:
            return audio

        try:
            samples, sample_rate = sf.read(io.BytesIO(audio), dtype="float32")
        except sf.LibsndfileError as e:
            if over_bytes:
                raise ValidationError(
                    f"Oversized audio payload could not be decoded: {e}",
                    provider=self.provider_id.value,
                ) from e
            return audio
        if samples.ndim > 1:
            samples = samples.mean(axis=1)

        keep = samples.size
        if over_bytes:
            target = self.truncated_payload_bytes or self.max_payload_bytes
            # 16-bit mono PCM after the 44-byte header
            keep = min(keep, max((target - 44) // 2, 0))
        if self.max_audio_seconds is not None:
            keep = min(keep, int(self.max_audio_seconds * sample_rate))
        if keep >= samples.size:
            return audio

        logger.warning(
            f"{self.provider_id.value} payload too large, keeping newest "
            f"{keep / sample_rate:.1f}s of {samples.size / sample_rate:.1f}s"
        )
        return encode_wav(np.asarray(samples[-keep:]), sample_rate)

    # ------------------------------------------------------------------ http

    def _require_credentials(self) -> None:
        if not self.has_credentials():
            raise AuthError(
                f"No API key configured for {self.provider_id.value}",
                provider=self.provider_id.value,
            )

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.config.request_timeout_s))
            self._owns_client = True
        return self._client

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping failures onto the speech error types."""
        provider = self.provider_id.value
        try:
            response = self._http().request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            if status in (401, 403):
                raise AuthError(f"Credentials rejected: {detail}", provider=provider, status_code=status) from e
            if status == 429 or status >= 500:
                raise NetworkError(f"Service error: {detail}", provider=provider, status_code=status) from e
            raise SpeechError(f"Request failed: {detail}", provider=provider, status_code=status) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Request failed: {e}", provider=provider) from e
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON response: {e}", provider=self.provider_id.value) from e


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if payload.get("message"):
            return str(payload["message"])
    return response.reason_phrase
