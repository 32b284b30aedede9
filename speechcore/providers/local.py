"""On-device recognition with faster-whisper, segmented by the VAD."""

import io
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import BinaryIO, Callable, Optional, Union

import numpy as np
from faster_whisper import WhisperModel

from ..audio.capture import AudioCapture
from ..audio.vad import VADEvent, VADEventType, VoiceActivityDetector
from ..config import CaptureConfig, LocalConfig, ProviderConfig, VADConfig
from ..errors import DeviceError, NetworkError, SpeechError, UnsupportedOperationError
from ..scheduling import ScheduledTask
from .base import (
    AudioPayload,
    ProviderCapabilities,
    ProviderId,
    RecognitionOptions,
    RecognitionResult,
    SpeechProviderAdapter,
    SynthesisOptions,
    SynthesisResult,
    VoiceInfo,
    decode_payload,
)

logger = logging.getLogger(__name__)

RESTART_DELAY_S = 0.3
DELAYED_RESTART_S = 2.0
MAX_RESTART_ATTEMPTS = 5
WORKER_JOIN_TIMEOUT_S = 30.0

# Adaptive silence window
PERFORMANCE_CHECK_INTERVAL_S = 30.0
CONFIDENCE_HISTORY = 20
LOW_CONFIDENCE = 0.7
HIGH_CONFIDENCE = 0.9
SILENCE_WINDOW_STEP_UP_MS = 2000
SILENCE_WINDOW_STEP_DOWN_MS = 1000
MAX_SILENCE_WINDOW_MS = 15000
MIN_SILENCE_WINDOW_MS = 5000


class NoSpeechError(SpeechError):
    """Nothing was recognized for several silence windows in a row."""


class RecognitionErrorKind(str, Enum):
    NETWORK = "network"
    PERMISSION_DENIED = "permission_denied"
    NO_SPEECH = "no_speech"
    ABORTED = "aborted"
    OTHER = "other"


class RecoveryAction(str, Enum):
    RESTART = "restart"
    DELAYED_RESTART = "delayed_restart"
    STOP = "stop"


RECOVERY_ACTIONS = {
    RecognitionErrorKind.NETWORK: RecoveryAction.DELAYED_RESTART,
    RecognitionErrorKind.PERMISSION_DENIED: RecoveryAction.STOP,
    RecognitionErrorKind.NO_SPEECH: RecoveryAction.DELAYED_RESTART,
    RecognitionErrorKind.ABORTED: RecoveryAction.RESTART,
    RecognitionErrorKind.OTHER: RecoveryAction.RESTART,
}


def classify_error(error: Exception) -> RecognitionErrorKind:
    if isinstance(error, DeviceError):
        if error.permission_denied:
            return RecognitionErrorKind.PERMISSION_DENIED
        return RecognitionErrorKind.ABORTED
    if isinstance(error, NoSpeechError):
        return RecognitionErrorKind.NO_SPEECH
    if isinstance(error, (NetworkError, ConnectionError)):
        return RecognitionErrorKind.NETWORK
    return RecognitionErrorKind.OTHER


@dataclass
class _Job:
    final: bool
    audio: np.ndarray


class LocalSpeechAdapter(SpeechProviderAdapter):
    """Continuous recognition on the local machine.

    The microphone feeds the VAD; every closed speech segment is transcribed
    and committed, and the segment in progress is re-transcribed periodically
    as an interim result. The engine restarts itself on recoverable errors
    and after repeated silence windows, keeping the committed transcript.
    """

    provider_id = ProviderId.LOCAL

    def __init__(
        self,
        local_config: Optional[LocalConfig] = None,
        capture_config: Optional[CaptureConfig] = None,
        vad_config: Optional[VADConfig] = None,
        capture_factory: Callable[[CaptureConfig], AudioCapture] = AudioCapture,
        vad_factory: Callable[[VADConfig], VoiceActivityDetector] = VoiceActivityDetector,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.local_config = local_config or LocalConfig()
        self.capture_config = capture_config or CaptureConfig()
        self.vad_config = vad_config or VADConfig(sample_rate=self.capture_config.sample_rate)
        self._capture_factory = capture_factory
        self._vad_factory = vad_factory
        self._clock = clock

        self._model: Optional[WhisperModel] = None
        self._model_failed = False
        self._model_lock = threading.Lock()

        self._capture: Optional[AudioCapture] = None
        self._vad: Optional[VoiceActivityDetector] = None
        self._jobs: Optional[queue.Queue] = None
        self._worker: Optional[threading.Thread] = None
        self._engine_lock = threading.RLock()
        self._engine_running = False

        self._options = RecognitionOptions()
        self._recording = False
        self._continuous = True
        self._restart_attempts = 0
        self._idle_restart = False
        self._last_interim_at = 0.0

        self._restart_task = ScheduledTask(self._restart_engine, name="local-restart")
        self._silence_task = ScheduledTask(self._check_silence, name="local-silence")
        self._shutdown_task = ScheduledTask(self._stop_engine, name="local-shutdown")

        self.silence_window_ms = self.local_config.silence_window_ms
        self._consecutive_silence = 0
        self._last_activity = clock()
        self._confidences: deque[float] = deque(maxlen=CONFIDENCE_HISTORY)
        self._last_performance_check = clock()

    # ------------------------------------------------------------ lifecycle

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        self._load_model()
        super().initialize(config)

    def _load_model(self) -> None:
        """Load the Whisper model."""
        with self._model_lock:
            if self._model is not None:
                return
            cfg = self.local_config
            logger.info(f"Loading Whisper model: {cfg.whisper_model} on {cfg.whisper_device}")
            try:
                self._model = WhisperModel(
                    cfg.whisper_model,
                    device=cfg.whisper_device,
                    compute_type=cfg.whisper_compute_type,
                )
            except Exception as e:
                self._model_failed = True
                logger.error(f"Failed to load Whisper model: {e}")
                raise SpeechError(f"Failed to load Whisper model: {e}", provider=self.provider_id.value) from e
            self._model_failed = False
            logger.info("Whisper model loaded")

    def is_available(self) -> bool:
        return not self._model_failed and AudioCapture.is_available()

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            synthesis=False,
            recognition=True,
            streaming=True,
            multi_language=not self.local_config.whisper_model.endswith(".en"),
            vad_passthrough=self._engine_running,
            batch_audio=True,
            languages=(self.local_config.language,),
        )

    def dispose(self) -> None:
        if self._recording or self._engine_running:
            self.stop_recognition()
        self._restart_task.cancel()
        self._silence_task.cancel()
        self._shutdown_task.cancel()
        self._model = None
        super().dispose()

    # ------------------------------------------------------------ synthesis

    def synthesize(self, text: str, options: Optional[SynthesisOptions] = None) -> SynthesisResult:
        raise UnsupportedOperationError("Local engine does not synthesize speech", provider=self.provider_id.value)

    def list_voices(self) -> list[VoiceInfo]:
        return []

    # ---------------------------------------------------------- recognition

    def start_recognition(self, options: Optional[RecognitionOptions] = None) -> None:
        if self._recording:
            logger.warning("Local recognition already running")
            return

        self._load_model()
        self._options = options or RecognitionOptions()
        self._continuous = self._options.continuous
        self._restart_attempts = 0
        self._idle_restart = False
        self._consecutive_silence = 0
        self._last_performance_check = self._clock()
        self._recording = True
        try:
            self._start_engine()
        except SpeechError:
            self._recording = False
            raise
        logger.info("Local recognition started")

    def stop_recognition(self) -> RecognitionResult:
        self._recording = False
        self._restart_task.cancel()
        self._silence_task.cancel()
        self._shutdown_task.cancel()
        self._stop_engine()

        with self._transcript_lock:
            result = self._snapshot(is_final=True, confidence=self._average_confidence())
        self._notify(result)
        logger.info("Local recognition stopped")
        return result

    def process_audio_data(
        self,
        payload: AudioPayload,
        options: Optional[RecognitionOptions] = None,
    ) -> RecognitionResult:
        """Transcribe a complete audio file without touching the session transcript."""
        audio = decode_payload(payload)
        self._load_model()
        text, confidence = self._transcribe(io.BytesIO(audio), options or self._options)
        return RecognitionResult(
            transcript=text,
            confidence=confidence,
            is_final=True,
            provider=self.provider_id.value,
        )

    @property
    def is_recording(self) -> bool:
        return self._recording

    # --------------------------------------------------------------- engine

    def _start_engine(self) -> None:
        with self._engine_lock:
            jobs: queue.Queue = queue.Queue()
            vad = self._vad_factory(self._options.vad_config or self.vad_config)
            vad.on_event(partial(self._on_vad_event, jobs))
            capture = self._capture_factory(self.capture_config)
            capture.add_callback(partial(self._on_audio, vad, jobs))
            capture.on_error(self._handle_engine_error)

            worker = threading.Thread(target=self._worker_loop, args=(jobs,), daemon=True)
            worker.start()
            self._capture, self._vad, self._jobs, self._worker = capture, vad, jobs, worker

            try:
                capture.start_recording()
            except SpeechError:
                self._stop_engine()
                raise
            self._engine_running = True

        self._last_activity = self._clock()
        self._arm_silence_timer()

    def _stop_engine(self) -> None:
        """Release the microphone and finish transcribing queued audio."""
        with self._engine_lock:
            capture, vad, jobs, worker = self._capture, self._vad, self._jobs, self._worker
            self._capture = self._vad = self._jobs = self._worker = None
            self._engine_running = False

        self._silence_task.cancel()
        if capture is not None:
            capture.stop_recording()
            capture.dispose()
        if vad is not None:
            # Closes an open segment into the job queue
            vad.flush()
            vad.dispose()
        if jobs is not None:
            jobs.put(None)
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=WORKER_JOIN_TIMEOUT_S)

    def _restart_engine(self) -> None:
        if not (self._recording and self._continuous):
            return
        if self._idle_restart:
            # Silence restarts do not count toward the restart cap
            self._idle_restart = False
            logger.info("Restarting local recognition engine after silence")
        else:
            self._restart_attempts += 1
            if self._restart_attempts > MAX_RESTART_ATTEMPTS:
                self._terminate(SpeechError(
                    f"Gave up after {MAX_RESTART_ATTEMPTS} restart attempts",
                    provider=self.provider_id.value,
                ))
                return
            logger.info(f"Restarting local recognition engine (attempt {self._restart_attempts})")
        self._stop_engine()
        try:
            self._start_engine()
        except SpeechError as e:
            self._handle_engine_error(e)

    def _terminate(self, error: SpeechError) -> None:
        logger.error(f"Local recognition stopped: {error}")
        self._recording = False
        self._restart_task.cancel()
        self._silence_task.cancel()
        self._shutdown_task.schedule(0)
        with self._transcript_lock:
            result = self._snapshot(is_final=True, confidence=self._average_confidence())
        result.error = error
        self._notify(result)

    def _handle_engine_error(self, error: SpeechError) -> None:
        kind = classify_error(error)
        action = RECOVERY_ACTIONS[kind]
        logger.warning(f"Local recognition error ({kind.value}): {error}")
        if kind != RecognitionErrorKind.NO_SPEECH:
            self._report_error(error)

        if action == RecoveryAction.STOP or not (self._recording and self._continuous):
            self._terminate(error)
            return
        self._idle_restart = kind == RecognitionErrorKind.NO_SPEECH
        delay = RESTART_DELAY_S if action == RecoveryAction.RESTART else DELAYED_RESTART_S
        self._restart_task.schedule(delay)

    # ------------------------------------------------------------ pipeline

    def _on_audio(self, vad: VoiceActivityDetector, jobs: queue.Queue, chunk: np.ndarray) -> None:
        vad.process_audio(chunk)
        if not (self._options.interim_results and vad.is_speaking):
            return
        now = self._clock()
        if (now - self._last_interim_at) * 1000 >= self.local_config.interim_interval_ms:
            self._last_interim_at = now
            jobs.put(_Job(final=False, audio=vad.current_segment_audio))

    def _on_vad_event(self, jobs: queue.Queue, event: VADEvent) -> None:
        if event.type == VADEventType.SPEECH_START:
            self._mark_activity()
        elif event.type == VADEventType.SPEECH_SEGMENT and event.audio is not None:
            jobs.put(_Job(final=True, audio=event.audio))

    def _worker_loop(self, jobs: queue.Queue) -> None:
        """Transcribe queued segments in order."""
        while True:
            job = jobs.get()
            if job is None:
                break
            # A newer job supersedes a pending interim
            if not job.final and not jobs.empty():
                continue
            if job.audio.size == 0:
                continue
            try:
                text, confidence = self._transcribe(job.audio, self._options)
            except SpeechError as e:
                self._handle_engine_error(e)
                continue
            self._handle_transcription(job, text, confidence)

    def _handle_transcription(self, job: _Job, text: str, confidence: float) -> None:
        if not text:
            if job.final:
                logger.debug("Speech segment produced no text")
            return

        self._restart_attempts = 0
        self._mark_activity()
        if job.final:
            self._confidences.append(confidence)
            self._update_performance()
            result = self._commit(text)
        else:
            result = self._set_pending(text)
        result.confidence = confidence
        self._notify(result)

        if job.final and not self._continuous and self._recording:
            self._recording = False
            self._shutdown_task.schedule(0)

    def _transcribe(self, audio: Union[np.ndarray, BinaryIO], options: RecognitionOptions) -> tuple[str, float]:
        if self._model is None:
            raise SpeechError("Whisper model not loaded", provider=self.provider_id.value)

        language = options.language.split("-")[0].lower() if options.language else self.local_config.language
        try:
            segments, info = self._model.transcribe(
                audio,
                beam_size=self.local_config.beam_size,
                language=language,
                vad_filter=False,  # Segments already come from the VAD
            )
            texts = []
            total_logprob = 0.0
            for seg in segments:
                texts.append(seg.text.strip())
                total_logprob += seg.avg_logprob
        except ConnectionError as e:
            raise NetworkError(f"Transcription failed: {e}", provider=self.provider_id.value) from e
        except Exception as e:
            raise SpeechError(f"Transcription failed: {e}", provider=self.provider_id.value) from e

        if not texts:
            return "", 0.0
        full_text = " ".join(t for t in texts if t)
        confidence = float(np.exp(total_logprob / len(texts)))
        logger.info(f"Transcribed: '{full_text[:50]}...' (conf: {confidence:.2f})")
        return full_text, confidence

    # ------------------------------------------------------ silence watchdog

    def _mark_activity(self) -> None:
        self._last_activity = self._clock()
        self._consecutive_silence = 0
        self._arm_silence_timer()

    def _arm_silence_timer(self) -> None:
        if self._recording and self._continuous:
            self._silence_task.schedule(self.silence_window_ms / 1000.0)

    def _check_silence(self) -> None:
        if not (self._recording and self._engine_running):
            return
        silent_ms = (self._clock() - self._last_activity) * 1000
        if silent_ms < self.silence_window_ms:
            self._arm_silence_timer()
            return

        self._consecutive_silence += 1
        logger.debug(f"Silence window {self._consecutive_silence} of {self.local_config.max_consecutive_silence}")
        if self._consecutive_silence >= self.local_config.max_consecutive_silence:
            self._consecutive_silence = 0
            self._handle_engine_error(NoSpeechError(
                "No speech recognized for several silence windows",
                provider=self.provider_id.value,
            ))
            return
        self._arm_silence_timer()

    def _average_confidence(self) -> float:
        if not self._confidences:
            return 1.0
        return float(sum(self._confidences) / len(self._confidences))

    def _update_performance(self) -> None:
        """Widen the silence window when confidence is low, narrow it when high."""
        now = self._clock()
        if now - self._last_performance_check < PERFORMANCE_CHECK_INTERVAL_S or not self._confidences:
            return
        self._last_performance_check = now

        average = self._average_confidence()
        if average < LOW_CONFIDENCE:
            self.silence_window_ms = min(self.silence_window_ms + SILENCE_WINDOW_STEP_UP_MS, MAX_SILENCE_WINDOW_MS)
        elif average > HIGH_CONFIDENCE:
            self.silence_window_ms = max(self.silence_window_ms - SILENCE_WINDOW_STEP_DOWN_MS, MIN_SILENCE_WINDOW_MS)
        else:
            return
        logger.info(f"Silence window adjusted to {self.silence_window_ms}ms (avg confidence {average:.2f})")
