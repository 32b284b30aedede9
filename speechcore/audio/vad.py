"""Voice activity detection from energy, spectral and zero-crossing features."""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from ..config import VADConfig
from ..errors import DeviceError, SpeechError

logger = logging.getLogger(__name__)

HISTORY_SIZE = 10

# Feature weights for the speech score
ENERGY_WEIGHT = 0.4
SPECTRAL_WEIGHT = 0.3
ZCR_WEIGHT = 0.3
SPEECH_SCORE_THRESHOLD = 0.5


class VADEventType(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"
    SPEECH_SEGMENT = "speech_segment"
    NOISE_DETECTED = "noise_detected"
    SILENCE_DETECTED = "silence_detected"


class VADState(str, Enum):
    SILENCE = "silence"
    SPEECH = "speech"
    NOISE = "noise"


@dataclass
class VADEvent:
    """A detector event. Timestamps and durations are in milliseconds."""
    type: VADEventType
    timestamp: float
    confidence: float
    duration: Optional[float] = None
    energy: Optional[float] = None
    spectral_centroid: Optional[float] = None
    zero_crossing_rate: Optional[float] = None
    audio: Optional[np.ndarray] = None


@dataclass
class VADStats:
    """Cumulative detection statistics for the current session."""
    total_speech_time: float
    total_silence_time: float
    speech_segments: int
    average_speech_duration: float
    average_silence_duration: float
    false_positives: int
    false_negatives: int
    accuracy: float


def rms_energy(samples: np.ndarray) -> float:
    """Root-mean-square amplitude of a frame."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def spectral_centroid(samples: np.ndarray, sample_rate: int) -> float:
    """Magnitude-weighted mean frequency of a frame, in Hz."""
    if samples.size == 0:
        return 0.0
    windowed = samples * np.hanning(samples.size)
    magnitudes = np.abs(np.fft.rfft(windowed))
    total = magnitudes.sum()
    if total <= 0:
        return 0.0
    frequencies = np.fft.rfftfreq(samples.size, d=1.0 / sample_rate)
    return float((frequencies * magnitudes).sum() / total)


def zero_crossing_rate(samples: np.ndarray) -> float:
    """Fraction of adjacent sample pairs whose sign differs."""
    if samples.size < 2:
        return 0.0
    signs = samples >= 0
    crossings = np.count_nonzero(signs[1:] != signs[:-1])
    return crossings / samples.size


@dataclass
class AudioFrame:
    """One analysis window and its acoustic features."""
    samples: np.ndarray
    sample_rate: int
    timestamp: float
    energy: float = 0.0
    spectral_centroid: float = 0.0
    zero_crossing_rate: float = 0.0

    @classmethod
    def analyze(cls, samples: np.ndarray, sample_rate: int, timestamp: float) -> "AudioFrame":
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        return cls(
            samples=samples,
            sample_rate=sample_rate,
            timestamp=timestamp,
            energy=rms_energy(samples),
            spectral_centroid=spectral_centroid(samples, sample_rate),
            zero_crossing_rate=zero_crossing_rate(samples),
        )


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class VoiceActivityDetector:
    """Real-time speech/silence/noise classifier.

    Audio arrives either from the detector's own microphone stream
    (``initialize``/``start``) or from a shared capture via ``process_audio``.
    Each hop of new samples advances a ``frame_size`` analysis window by one
    tick.
    """

    def __init__(
        self,
        config: Optional[VADConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or VADConfig()
        self._clock = clock or _monotonic_ms

        self._callbacks: list[Callable[[VADEvent], None]] = []
        self._error_callbacks: list[Callable[[SpeechError], None]] = []

        # Analysis buffers
        self._window = np.zeros(self.config.frame_size, dtype=np.float32)
        self._pending = np.zeros(0, dtype=np.float32)
        self._energy_history: deque[float] = deque(maxlen=HISTORY_SIZE)
        self._spectral_history: deque[float] = deque(maxlen=HISTORY_SIZE)
        self._zcr_history: deque[float] = deque(maxlen=HISTORY_SIZE)

        # Stream handling
        self._stream: Optional[sd.InputStream] = None
        self._audio_queue: queue.Queue[np.ndarray] = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._listening = False
        self._stopping = False
        self._dormant = False
        self._lock = threading.RLock()

        self.reset_session()

    # ----------------------------------------------------------------- session

    def reset_session(self) -> None:
        """Reset state machine, statistics and noise-floor learning."""
        with self._lock:
            self._state = VADState.SILENCE
            self._speech_start_time = 0.0
            self._last_speech_time = 0.0
            self._segment_audio: list[np.ndarray] = []

            self._speech_segments = 0
            self._total_speech_time = 0.0
            self._total_silence_time = 0.0
            self._false_positives = 0
            self._false_negatives = 0

            self._noise_floor = 0.0
            self._adaptive_threshold = 0.0
            self._noise_floor_samples: list[float] = []
            self._noise_floor_learned = False
            self._learning_noise_floor = self.config.noise_floor_learning

            self._window = np.zeros(self.config.frame_size, dtype=np.float32)
            self._pending = np.zeros(0, dtype=np.float32)
            self._energy_history.clear()
            self._spectral_history.clear()
            self._zcr_history.clear()

            self._origin_ms = self._clock()
            self._samples_consumed = 0
            self._sample_timeline = False
            self._dormant = False

    def initialize(self) -> None:
        """Open the microphone stream used by ``start``."""
        if self._stream is not None:
            return
        if not self.is_available():
            raise DeviceError("No audio input device available")

        try:
            self._stream = sd.InputStream(
                samplerate=self.config.sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=self.config.hop_size,
                callback=self._audio_callback,
                finished_callback=self._on_stream_finished,
            )
        except sd.PortAudioError as e:
            raise DeviceError.from_exception("Failed to open microphone", e) from e
        logger.info(f"VAD initialized: {self.config.sample_rate}Hz, frame {self.config.frame_size}")

    def start(self) -> None:
        """Start detection on the detector's own microphone stream."""
        if self._listening:
            logger.warning("VAD already listening")
            return

        self.initialize()
        self.reset_session()
        self._listening = True
        self._stopping = False

        self._thread = threading.Thread(target=self._process_loop, daemon=True)
        self._thread.start()
        self._stream.start()
        logger.info("Voice activity detection started")

    def stop(self) -> None:
        """Stop detection, closing any open segment, and release the stream."""
        self.flush()
        if not self._listening and self._stream is None:
            return

        self._stopping = True
        self._listening = False

        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as e:
                logger.warning(f"Error closing VAD stream: {e}")
            self._stream = None

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

        while not self._audio_queue.empty():
            try:
                self._audio_queue.get_nowait()
            except queue.Empty:
                break

        self._stopping = False
        logger.info("Voice activity detection stopped")

    def dispose(self) -> None:
        self.stop()
        self._callbacks.clear()
        self._error_callbacks.clear()

    def flush(self) -> None:
        """Close the current speech segment, if any, at the current time."""
        with self._lock:
            if self._state != VADState.SPEECH:
                return
            now = self._timeline_now()
            duration = now - self._speech_start_time
            if duration >= self.config.min_speech_duration_ms:
                self._finish_segment(now, duration, None)
            else:
                self._false_positives += 1
            self._state = VADState.SILENCE
            self._segment_audio = []

    def _timeline_now(self) -> float:
        """Current time on the clock that stamped the open segment."""
        if self._sample_timeline:
            received = self._samples_consumed + self._pending.size
            return self._origin_ms + received * 1000.0 / self.config.sample_rate
        return self._clock()

    # --------------------------------------------------------------- callbacks

    def on_event(self, callback: Callable[[VADEvent], None]) -> None:
        self._callbacks.append(callback)

    def off_event(self, callback: Callable[[VADEvent], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def on_error(self, callback: Callable[[SpeechError], None]) -> None:
        self._error_callbacks.append(callback)

    def _emit(self, event: VADEvent) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"VAD event callback error: {e}")

    def _report_error(self, error: SpeechError) -> None:
        logger.error(f"VAD error: {error}")
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"VAD error callback error: {e}")

    # ----------------------------------------------------------------- config

    def update_config(self, **changes) -> None:
        """Apply new settings without restarting the session."""
        with self._lock:
            old_frame_size = self.config.frame_size
            self.config = self.config.merged(**changes)
            if self.config.frame_size != old_frame_size:
                self._window = np.zeros(self.config.frame_size, dtype=np.float32)
                self._pending = np.zeros(0, dtype=np.float32)
                logger.debug(f"VAD analysis window resized to {self.config.frame_size}")

    # ---------------------------------------------------------------- analysis

    def process_audio(self, audio_chunk: np.ndarray) -> None:
        """Feed captured samples; one analysis tick runs per complete hop."""
        if self._dormant:
            return
        chunk = np.asarray(audio_chunk, dtype=np.float32)
        if chunk.ndim > 1:
            chunk = chunk.mean(axis=1)
        with self._lock:
            self._pending = np.concatenate([self._pending, chunk])
            hop = self.config.hop_size
            self._sample_timeline = True
            while self._pending.size >= hop:
                hop_samples = self._pending[:hop]
                self._pending = self._pending[hop:]
                self._window = np.concatenate([self._window[hop:], hop_samples])
                self._samples_consumed += hop
                timestamp = self._origin_ms + self._samples_consumed * 1000.0 / self.config.sample_rate
                self._analyze(
                    AudioFrame.analyze(self._window, self.config.sample_rate, timestamp),
                    hop_samples,
                )

    def process_frame(self, samples: np.ndarray, timestamp: Optional[float] = None) -> bool:
        """Analyze one complete frame and return whether it scored as speech."""
        if timestamp is None:
            timestamp = self._clock()
        with self._lock:
            self._sample_timeline = False
            frame = AudioFrame.analyze(samples, self.config.sample_rate, timestamp)
            return self._analyze(frame, frame.samples)

    def _analyze(self, frame: AudioFrame, new_samples: np.ndarray) -> bool:
        self._energy_history.append(frame.energy)
        self._spectral_history.append(frame.spectral_centroid)
        self._zcr_history.append(frame.zero_crossing_rate)

        if self._learning_noise_floor and len(self._noise_floor_samples) < self.config.noise_floor_samples:
            self._noise_floor_samples.append(frame.energy)
            if len(self._noise_floor_samples) == self.config.noise_floor_samples:
                self._noise_floor = float(np.median(self._noise_floor_samples))
                self._adaptive_threshold = self._noise_floor * self.config.energy_ratio
                self._learning_noise_floor = False
                self._noise_floor_learned = True
                logger.info(
                    f"Noise floor learned: {self._noise_floor:.4f}, "
                    f"threshold: {self._adaptive_threshold:.4f}"
                )

        score = self.speech_score(frame.energy, frame.spectral_centroid, frame.zero_crossing_rate)
        is_speech = score > SPEECH_SCORE_THRESHOLD
        self._update_state(is_speech, score, frame, new_samples)
        return is_speech

    @property
    def energy_threshold(self) -> float:
        """Energy threshold currently in force."""
        if self.config.adaptive_threshold and self._noise_floor_learned:
            return self._adaptive_threshold
        return self.config.energy_threshold

    def speech_score(self, energy: float, centroid: float, zcr: float) -> float:
        """Weighted feature vote scaled by sensitivity."""
        energy_check = energy > self.energy_threshold
        spectral_check = centroid > self.config.spectral_centroid_hz
        zcr_check = self.config.zcr_threshold < zcr < self.config.zcr_upper_bound
        return (
            (ENERGY_WEIGHT if energy_check else 0.0)
            + (SPECTRAL_WEIGHT if spectral_check else 0.0)
            + (ZCR_WEIGHT if zcr_check else 0.0)
        ) * self.config.sensitivity

    def _update_state(
        self,
        is_speech: bool,
        score: float,
        frame: AudioFrame,
        new_samples: np.ndarray,
    ) -> None:
        now = frame.timestamp

        if self._state in (VADState.SILENCE, VADState.NOISE):
            if is_speech:
                self._state = VADState.SPEECH
                self._speech_start_time = now
                self._last_speech_time = now
                self._segment_audio = [frame.samples.copy()]
                logger.debug("Speech started")
                self._emit(VADEvent(
                    type=VADEventType.SPEECH_START,
                    timestamp=now,
                    confidence=0.8,
                    energy=frame.energy,
                    spectral_centroid=frame.spectral_centroid,
                    zero_crossing_rate=frame.zero_crossing_rate,
                ))
            elif frame.energy > self.energy_threshold:
                if self._state != VADState.NOISE:
                    self._state = VADState.NOISE
                    self._emit(VADEvent(
                        type=VADEventType.NOISE_DETECTED,
                        timestamp=now,
                        confidence=1.0 - score,
                        energy=frame.energy,
                        spectral_centroid=frame.spectral_centroid,
                        zero_crossing_rate=frame.zero_crossing_rate,
                    ))
            else:
                self._state = VADState.SILENCE
            return

        # In speech
        self._segment_audio.append(np.array(new_samples, dtype=np.float32, copy=True))
        if is_speech:
            self._last_speech_time = now
            return

        silence_duration = now - self._last_speech_time
        if silence_duration <= self.config.silence_timeout_ms:
            return

        speech_duration = self._last_speech_time - self._speech_start_time
        if speech_duration >= self.config.min_speech_duration_ms:
            self._finish_segment(now, speech_duration, frame)
        else:
            self._false_positives += 1
            logger.debug(f"Speech segment too short ({speech_duration:.0f}ms), discarding")

        self._state = VADState.SILENCE
        self._segment_audio = []
        self._total_silence_time += silence_duration
        self._emit(VADEvent(
            type=VADEventType.SILENCE_DETECTED,
            timestamp=now,
            confidence=1.0 - score,
            duration=silence_duration,
            energy=frame.energy,
        ))

    def _finish_segment(self, now: float, duration: float, frame: Optional[AudioFrame]) -> None:
        self._speech_segments += 1
        self._total_speech_time += duration
        audio = (
            np.concatenate(self._segment_audio)
            if self._segment_audio
            else np.zeros(0, dtype=np.float32)
        )
        logger.debug(f"Speech segment: {duration:.0f}ms")

        self._emit(VADEvent(
            type=VADEventType.SPEECH_END,
            timestamp=now,
            confidence=0.9,
            duration=duration,
            energy=frame.energy if frame else None,
            spectral_centroid=frame.spectral_centroid if frame else None,
            zero_crossing_rate=frame.zero_crossing_rate if frame else None,
        ))
        self._emit(VADEvent(
            type=VADEventType.SPEECH_SEGMENT,
            timestamp=now,
            confidence=0.9,
            duration=duration,
            audio=audio,
        ))

    # ------------------------------------------------------------------ stream

    def _audio_callback(
        self,
        indata: np.ndarray,
        frames: int,
        time_info: dict,
        status: sd.CallbackFlags,
    ) -> None:
        """Callback for sounddevice stream."""
        if status:
            logger.warning(f"VAD stream status: {status}")
        self._audio_queue.put(indata.copy().reshape(-1).astype(np.float32))

    def _process_loop(self) -> None:
        while self._listening:
            try:
                chunk = self._audio_queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.process_audio(chunk)
            except Exception as e:
                logger.error(f"VAD analysis error: {e}")

    def _on_stream_finished(self) -> None:
        if self._listening and not self._stopping:
            self._listening = False
            self._dormant = True
            self._report_error(DeviceError("Microphone stream ended unexpectedly"))

    # ------------------------------------------------------------------ status

    def mark_false_negative(self) -> None:
        """Record speech that the detector failed to flag."""
        with self._lock:
            self._false_negatives += 1

    def get_stats(self) -> VADStats:
        with self._lock:
            total = self._total_speech_time + self._total_silence_time
            segments = self._speech_segments
            return VADStats(
                total_speech_time=self._total_speech_time,
                total_silence_time=self._total_silence_time,
                speech_segments=segments,
                average_speech_duration=self._total_speech_time / segments if segments else 0.0,
                average_silence_duration=self._total_silence_time / segments if segments else 0.0,
                false_positives=self._false_positives,
                false_negatives=self._false_negatives,
                accuracy=(self._total_speech_time / total) * 100 if total > 0 else 0.0,
            )

    @property
    def current_state(self) -> VADState:
        return self._state

    @property
    def is_speaking(self) -> bool:
        return self._state == VADState.SPEECH

    @property
    def current_segment_audio(self) -> np.ndarray:
        """Samples of the speech segment in progress, empty outside speech."""
        with self._lock:
            if self._state != VADState.SPEECH or not self._segment_audio:
                return np.zeros(0, dtype=np.float32)
            return np.concatenate(self._segment_audio)

    @property
    def is_active(self) -> bool:
        return self._listening

    @property
    def is_dormant(self) -> bool:
        return self._dormant

    @property
    def noise_floor(self) -> float:
        return self._noise_floor

    @property
    def adaptive_threshold(self) -> float:
        return self._adaptive_threshold

    @property
    def is_learning_noise_floor(self) -> bool:
        return self._learning_noise_floor

    @property
    def feature_history(self) -> dict[str, list[float]]:
        return {
            "energy": list(self._energy_history),
            "spectral_centroid": list(self._spectral_history),
            "zero_crossing_rate": list(self._zcr_history),
        }

    @staticmethod
    def is_available() -> bool:
        """Check whether the platform exposes an audio input device."""
        try:
            sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError):
            return False
        return True
