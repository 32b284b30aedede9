"""Recognition session management with stall detection and provider rotation."""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Callable, Optional

import numpy as np

from .audio.capture import AudioCapture, AudioProcessingOptions
from .audio.vad import VADEvent, VADEventType, VADStats, VoiceActivityDetector
from .config import CaptureConfig, OrchestratorConfig, VADConfig
from .errors import (
    AuthError,
    DeviceError,
    NetworkError,
    RecognitionTimeoutError,
    SessionError,
    SpeechError,
    UnsupportedOperationError,
)
from .providers.base import (
    Capability,
    ProviderId,
    RecognitionOptions,
    RecognitionResult,
    SpeechProviderAdapter,
    join_transcript,
)
from .providers.selector import ProviderSelector
from .scheduling import RepeatingTask, ScheduledTask

logger = logging.getLogger(__name__)

RESTART_WINDOW_S = 60.0
MIN_WATCHDOG_INTERVAL_S = 2.0
NETWORK_FAILURES_BEFORE_ROTATION = 3
SUBMISSION_JOIN_TIMEOUT_S = 60.0


class OrchestratorState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


@dataclass
class OrchestratorSession:
    """State of the one active recognition session."""
    adapter: SpeechProviderAdapter
    options: RecognitionOptions
    last_progress_at: float
    restart_history: list[float] = field(default_factory=list)
    consecutive_restarts: int = 0
    network_failures: int = 0

    # Buffered mode
    capture: Optional[AudioCapture] = None
    vad: Optional[VoiceActivityDetector] = None
    submissions: Optional[queue.Queue] = None
    submission_thread: Optional[threading.Thread] = None
    reprocess_task: Optional[RepeatingTask] = None
    interim_chunk_count: int = 0
    committed: str = ""
    pending: str = ""

    # Text recognized by providers rotated away from
    carried_transcript: str = ""
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)

    @property
    def provider_id(self) -> ProviderId:
        return self.adapter.provider_id


class RecognitionOrchestrator:
    """Runs one recognition session at a time and keeps it making progress.

    In live mode the adapter captures audio itself. In buffered mode the
    orchestrator records, optionally segments the audio with a VAD, and
    submits WAV files through the adapter's batch entry point on a worker
    thread. A watchdog restarts a stalled session and rotates to another
    provider once the restart budget is spent.
    """

    def __init__(
        self,
        selector: ProviderSelector,
        config: Optional[OrchestratorConfig] = None,
        capture_config: Optional[CaptureConfig] = None,
        capture_factory: Callable[[CaptureConfig], AudioCapture] = AudioCapture,
        vad_factory: Callable[[VADConfig], VoiceActivityDetector] = VoiceActivityDetector,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.selector = selector
        self.config = config or selector.config.orchestrator
        self.capture_config = capture_config or selector.config.capture
        self._capture_factory = capture_factory
        self._vad_factory = vad_factory
        self._clock = clock
        self._sleep = sleep

        self._session: Optional[OrchestratorSession] = None
        self._lock = threading.RLock()
        self._lifecycle = threading.Lock()
        self._starting = False
        self._stop_requested = threading.Event()

        self._result_callbacks: list[Callable[[RecognitionResult], None]] = []
        self._error_callbacks: list[Callable[[SpeechError], None]] = []

        self._watchdog: Optional[RepeatingTask] = None
        self._rotation_task = ScheduledTask(self._rotate_after_failures, name="recognition-rotation")
        self._shutdown_task = ScheduledTask(self._shutdown_after_device_loss, name="recognition-shutdown")
        self._last_result: Optional[RecognitionResult] = None
        self.last_vad_stats: Optional[VADStats] = None

    # ----------------------------------------------------------- callbacks

    def on_result(self, callback: Callable[[RecognitionResult], None]) -> None:
        self._result_callbacks.append(callback)

    def on_error(self, callback: Callable[[SpeechError], None]) -> None:
        self._error_callbacks.append(callback)

    def _emit(self, result: RecognitionResult) -> None:
        for callback in list(self._result_callbacks):
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Result callback error: {e}")

    def _report_error(self, error: SpeechError) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback error: {e}")

    # -------------------------------------------------------------- status

    @property
    def state(self) -> OrchestratorState:
        return OrchestratorState.ACTIVE if self._session is not None else OrchestratorState.IDLE

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def provider_id(self) -> Optional[ProviderId]:
        session = self._session
        return session.provider_id if session else None

    @property
    def session(self) -> Optional[OrchestratorSession]:
        return self._session

    @property
    def watchdog_interval_s(self) -> float:
        return max(MIN_WATCHDOG_INTERVAL_S, self.config.progress_timeout_ms / 1000.0 / 3)

    # ----------------------------------------------------------- lifecycle

    def start(self, options: Optional[RecognitionOptions] = None) -> bool:
        """Start a session, trying providers until one starts.

        Returns whether a session became active. Start failures are
        reported through ``on_error``.
        """
        with self._lock:
            if self._session is not None or self._starting:
                raise SessionError("A recognition session is already active")
            self._starting = True
            self._stop_requested.clear()

        try:
            with self._lifecycle:
                return self._start_session(options or RecognitionOptions())
        finally:
            with self._lock:
                self._starting = False

    def _start_session(self, options: RecognitionOptions) -> bool:
        excluded: set[ProviderId] = set()
        while not self._stop_requested.is_set():
            adapter = self.selector.get_best_service_for(
                Capability.RECOGNITION, self.config.preferred_provider, exclude=excluded
            )
            if adapter.provider_id in excluded:
                break

            session = OrchestratorSession(adapter=adapter, options=options, last_progress_at=self._clock())
            with self._lock:
                self._session = session
            try:
                self._open(session)
            except Exception as e:
                error = e if isinstance(e, SpeechError) else SpeechError(str(e), provider=adapter.provider_id.value)
                logger.warning(f"Failed to start {adapter.provider_id.value} recognition: {error}")
                with self._lock:
                    self._session = None
                self._report_error(error)
                excluded.add(adapter.provider_id)
                continue

            if self._stop_requested.is_set():
                with self._lock:
                    self._session = None
                self._close(session)
                return False

            self._start_watchdog()
            logger.info(f"Recognition session started with {adapter.provider_id.value}")
            return True

        logger.error("No speech provider could start recognition")
        return False

    def stop(self) -> RecognitionResult:
        """Stop the session and return its final result. Safe in any state."""
        self._stop_requested.set()
        self._rotation_task.cancel()
        self._shutdown_task.cancel()
        self._stop_watchdog()

        with self._lifecycle:
            with self._lock:
                session, self._session = self._session, None
            if session is None:
                return self._last_result or RecognitionResult(is_final=True)
            result = self._close(session)

        self._last_result = result
        logger.info(f"Recognition session with {session.provider_id.value} stopped")
        return result

    def dispose(self) -> None:
        self.stop()
        self._result_callbacks.clear()
        self._error_callbacks.clear()

    def clear_transcript(self) -> None:
        """Forget everything recognized so far in this session."""
        with self._lock:
            self._last_result = None
            session = self._session
            if session is None:
                return
            session.committed = ""
            session.pending = ""
            session.carried_transcript = ""
        session.adapter.clear_transcript()

    # ------------------------------------------------------------- session

    def _attach(self, session: OrchestratorSession, adapter: SpeechProviderAdapter) -> None:
        session.unsubscribers = [
            adapter.subscribe(partial(self._handle_result, session, adapter)),
            adapter.subscribe_errors(partial(self._handle_adapter_error, session, adapter)),
        ]

    def _detach(self, session: OrchestratorSession) -> None:
        for unsubscribe in session.unsubscribers:
            unsubscribe()
        session.unsubscribers = []

    def _open(self, session: OrchestratorSession) -> None:
        adapter = session.adapter
        self._attach(session, adapter)
        try:
            if session.options.buffered:
                self._start_buffered(session)
            else:
                adapter.clear_transcript()
                adapter.start_recognition(session.options)
        except Exception:
            self._detach(session)
            self._release_audio(session)
            raise

    def _close(self, session: OrchestratorSession) -> RecognitionResult:
        if session.options.buffered:
            result = self._finish_buffered(session)
        else:
            try:
                final = session.adapter.stop_recognition()
            except SpeechError as e:
                logger.error(f"Error stopping {session.provider_id.value} recognition: {e}")
                self._report_error(e)
                final = RecognitionResult(is_final=True, provider=session.provider_id.value, error=e)
            result = replace(self._with_carried(session, final), is_final=True)
        self._detach(session)
        return result

    def _with_carried(self, session: OrchestratorSession, result: RecognitionResult) -> RecognitionResult:
        if not session.carried_transcript:
            return result
        return replace(
            result,
            transcript=join_transcript(session.carried_transcript, result.transcript),
            final_transcript=join_transcript(session.carried_transcript, result.final_transcript or ""),
        )

    # -------------------------------------------------------------- events

    def _handle_result(
        self,
        session: OrchestratorSession,
        adapter: SpeechProviderAdapter,
        result: RecognitionResult,
    ) -> None:
        with self._lock:
            if self._session is not session or session.adapter is not adapter:
                return
            session.last_progress_at = self._clock()
            session.network_failures = 0
            if not result.is_empty:
                session.consecutive_restarts = 0
            result = self._with_carried(session, result)
            self._last_result = result

        if result.error is not None:
            self._handle_terminal_error(result.error)
        self._emit(result)

    def _handle_adapter_error(
        self,
        session: OrchestratorSession,
        adapter: SpeechProviderAdapter,
        error: SpeechError,
    ) -> None:
        with self._lock:
            if self._session is not session or session.adapter is not adapter:
                return
        logger.warning(f"Recognition error: {error}")
        self._report_error(error)
        self._note_failure(session, error)

    def _handle_device_error(self, session: OrchestratorSession, error: SpeechError) -> None:
        if self._session is not session:
            return
        self._report_error(error)
        self._handle_terminal_error(error)

    def _handle_terminal_error(self, error: SpeechError) -> None:
        if isinstance(error, DeviceError) and error.permission_denied:
            logger.error(f"Microphone access lost, ending session: {error}")
            self._shutdown_task.schedule(0)

    def _note_failure(self, session: OrchestratorSession, error: SpeechError) -> None:
        if isinstance(error, DeviceError):
            self._handle_terminal_error(error)
            return
        if isinstance(error, AuthError):
            rotate = True
        elif isinstance(error, NetworkError):
            with self._lock:
                session.network_failures += 1
                rotate = session.network_failures >= NETWORK_FAILURES_BEFORE_ROTATION
        else:
            rotate = False
        if rotate:
            self._rotation_task.schedule(0)

    def _shutdown_after_device_loss(self) -> None:
        result = self.stop()
        self._emit(result)

    # ------------------------------------------------------------ watchdog

    def _start_watchdog(self) -> None:
        self._stop_watchdog()
        self._watchdog = RepeatingTask(self.check_progress, self.watchdog_interval_s, name="recognition-watchdog")
        self._watchdog.start()

    def _stop_watchdog(self) -> None:
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None:
            watchdog.stop()

    def check_progress(self) -> None:
        """One watchdog tick: restart or rotate when the session has stalled."""
        if not self._lifecycle.acquire(blocking=False):
            return
        try:
            with self._lock:
                session = self._session
                if session is None:
                    return
                now = self._clock()
                elapsed_ms = (now - session.last_progress_at) * 1000
                if elapsed_ms <= self.config.progress_timeout_ms:
                    return

                session.restart_history = [t for t in session.restart_history if now - t < RESTART_WINDOW_S]
                exhausted = (
                    len(session.restart_history) >= self.config.max_restarts_per_minute
                    or session.consecutive_restarts >= self.config.max_consecutive_restarts
                )
                if not exhausted:
                    session.restart_history.append(now)
                    session.consecutive_restarts += 1

            logger.warning(f"No recognition progress for {elapsed_ms:.0f}ms from {session.provider_id.value}")
            if exhausted:
                self._rotate(session)
            else:
                self._restart(session)
        finally:
            self._lifecycle.release()

    def _restart(self, session: OrchestratorSession) -> None:
        adapter = session.adapter
        logger.info(
            f"Restarting {adapter.provider_id.value} recognition "
            f"(consecutive {session.consecutive_restarts})"
        )
        try:
            if session.options.buffered:
                session.capture.stop_recording()
                self._sleep(self.config.restart_delay_ms / 1000.0)
                if not self._stop_requested.is_set():
                    session.capture.start_recording(keep_buffer=True)
            else:
                try:
                    adapter.stop_recognition()
                except SpeechError as e:
                    logger.warning(f"Error stopping {adapter.provider_id.value} before restart: {e}")
                self._sleep(self.config.restart_delay_ms / 1000.0)
                if not self._stop_requested.is_set():
                    adapter.start_recognition(session.options)
        except SpeechError as e:
            logger.error(f"Restart of {adapter.provider_id.value} failed: {e}")
            self._report_error(e)
        finally:
            with self._lock:
                session.last_progress_at = self._clock()

    def _rotate_after_failures(self) -> None:
        with self._lifecycle:
            session = self._session
            if session is not None:
                self._rotate(session)

    def _rotate(self, session: OrchestratorSession) -> None:
        current = session.adapter
        replacement = self.selector.get_best_service_for(
            Capability.RECOGNITION, self.config.preferred_provider, exclude=[current.provider_id]
        )
        viable = (
            replacement.provider_id != current.provider_id
            and self.selector.is_usable(replacement, Capability.RECOGNITION)
            and (not session.options.buffered or replacement.capabilities().batch_audio)
        )

        if not viable:
            error = RecognitionTimeoutError(
                "Recognition stalled and no alternative provider is available",
                provider=current.provider_id.value,
            )
            logger.error(str(error))
            self._report_error(error)
            with self._lock:
                session.restart_history = []
                session.consecutive_restarts = 0
                session.network_failures = 0
            self._restart(session)
            return

        logger.warning(f"Rotating recognition from {current.provider_id.value} to {replacement.provider_id.value}")
        self._detach(session)
        if not session.options.buffered:
            try:
                final = current.stop_recognition()
                session.carried_transcript = join_transcript(session.carried_transcript, final.transcript)
            except SpeechError as e:
                logger.warning(f"Error stopping {current.provider_id.value} during rotation: {e}")

        with self._lock:
            session.adapter = replacement
            session.restart_history = []
            session.consecutive_restarts = 0
            session.network_failures = 0
            session.last_progress_at = self._clock()
        self._attach(session, replacement)

        if not session.options.buffered:
            replacement.clear_transcript()
            try:
                replacement.start_recognition(session.options)
            except SpeechError as e:
                logger.error(f"Failed to start {replacement.provider_id.value} after rotation: {e}")
                self._report_error(e)

    # ------------------------------------------------------------ buffered

    def _start_buffered(self, session: OrchestratorSession) -> None:
        adapter = session.adapter
        if not adapter.capabilities().batch_audio:
            raise UnsupportedOperationError(
                "Buffered recognition needs a backend that accepts whole-file audio",
                provider=adapter.provider_id.value,
            )

        capture = self._capture_factory(self.capture_config)
        capture.on_error(partial(self._handle_device_error, session))
        session.capture = capture
        if session.options.enable_vad:
            vad = self._vad_factory(session.options.vad_config or VADConfig(sample_rate=capture.sample_rate))
            vad.on_event(partial(self._handle_vad_event, session))
            capture.add_callback(vad.process_audio)
            session.vad = vad

        session.submissions = queue.Queue()
        session.submission_thread = threading.Thread(
            target=self._submission_loop, args=(session,), daemon=True
        )
        session.submission_thread.start()
        capture.start_recording()

        if session.options.continuous and session.options.interim_results:
            session.reprocess_task = RepeatingTask(
                partial(self._reprocess_buffer, session),
                self.selector.config.providers.reprocess_interval_ms / 1000.0,
                name="recognition-reprocess",
            )
            session.reprocess_task.start()

    def _handle_vad_event(self, session: OrchestratorSession, event: VADEvent) -> None:
        if event.type != VADEventType.SPEECH_END:
            return
        with self._lock:
            if self._session is not session or session.capture is None:
                return
            chunks = session.capture.drain_audio_chunks()
            session.interim_chunk_count = 0
        if chunks:
            logger.debug(f"Flushing {len(chunks)} chunks after {event.duration:.0f}ms of speech")
            session.submissions.put((True, chunks))

    def _reprocess_buffer(self, session: OrchestratorSession) -> None:
        with self._lock:
            if self._session is not session or session.capture is None:
                return
            chunks = session.capture.get_audio_chunks()
            if len(chunks) <= session.interim_chunk_count:
                return
            session.interim_chunk_count = len(chunks)
        session.submissions.put((False, chunks))

    def _submission_loop(self, session: OrchestratorSession) -> None:
        """Submit buffered audio in order, skipping superseded interim jobs."""
        while True:
            job = session.submissions.get()
            if job is None:
                break
            final, chunks = job
            if not final and not session.submissions.empty():
                continue
            self._submit_chunks(session, chunks, final)

    def _submit_chunks(
        self,
        session: OrchestratorSession,
        chunks: list[np.ndarray],
        final: bool,
    ) -> Optional[RecognitionResult]:
        capture = session.capture
        adapter = session.adapter
        try:
            audio = capture.encode_chunks(chunks)
            audio = capture.process_audio_for_stt(audio, AudioProcessingOptions.from_config(capture.config))
            result = adapter.process_audio_data(audio, session.options)
        except Exception as e:
            error = e if isinstance(e, SpeechError) else SpeechError(str(e), provider=adapter.provider_id.value)
            logger.warning(f"Audio submission to {adapter.provider_id.value} failed: {error}")
            self._report_error(error)
            self._note_failure(session, error)
            return None

        with self._lock:
            if final:
                session.committed = join_transcript(session.committed, result.transcript)
                session.pending = ""
            else:
                session.pending = result.transcript.strip()
            session.last_progress_at = self._clock()
            session.network_failures = 0
            if not result.is_empty:
                session.consecutive_restarts = 0
            update = RecognitionResult(
                transcript=join_transcript(session.committed, session.pending),
                confidence=result.confidence,
                is_final=final,
                alternatives=result.alternatives,
                final_transcript=session.committed,
                interim_transcript=session.pending,
                provider=adapter.provider_id.value,
            )
            live = self._session is session
            if live:
                self._last_result = update

        if live:
            self._emit(update)
        return update

    def _finish_buffered(self, session: OrchestratorSession) -> RecognitionResult:
        """Drain the capture buffer and submit what no segment flush covered."""
        if session.reprocess_task is not None:
            session.reprocess_task.stop()
            session.reprocess_task = None

        confidence = 1.0
        capture = session.capture
        if capture is not None:
            capture.stop_recording()
            self._stop_submissions(session)
            remaining = capture.drain_audio_chunks()
            if remaining:
                final = self._submit_chunks(session, remaining, final=True)
                if final is not None:
                    confidence = final.confidence

        with self._lock:
            result = RecognitionResult(
                transcript=session.committed,
                confidence=confidence,
                is_final=True,
                final_transcript=session.committed,
                interim_transcript="",
                provider=session.provider_id.value,
            )

        vad = session.vad
        if vad is not None:
            if vad.get_stats().speech_segments == 0 and not result.is_empty:
                vad.mark_false_negative()
            self.last_vad_stats = vad.get_stats()
        self._release_audio(session)
        return result

    def _stop_submissions(self, session: OrchestratorSession) -> None:
        thread = session.submission_thread
        if session.submissions is not None:
            session.submissions.put(None)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=SUBMISSION_JOIN_TIMEOUT_S)
        session.submission_thread = None

    def _release_audio(self, session: OrchestratorSession) -> None:
        if session.reprocess_task is not None:
            session.reprocess_task.stop()
            session.reprocess_task = None
        if session.submission_thread is not None:
            self._stop_submissions(session)
        if session.capture is not None:
            session.capture.dispose()
            session.capture = None
        if session.vad is not None:
            session.vad.dispose()
            session.vad = None
