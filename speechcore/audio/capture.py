"""Audio capture module for microphone recording and chunk buffering."""

import base64
import io
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import sounddevice as sd
import soundfile as sf

from ..config import CaptureConfig
from ..errors import DeviceError, SpeechError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class AudioProcessingOptions:
    """Optional clean-up applied before audio is sent for recognition."""
    normalize: bool = False
    noise_reduction: bool = False
    target_peak: float = 0.95

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "AudioProcessingOptions":
        return cls(normalize=config.auto_gain, noise_reduction=config.noise_suppression)

    @property
    def is_identity(self) -> bool:
        return not (self.normalize or self.noise_reduction)


class AudioCapture:
    """Microphone recorder that buffers time-sliced chunks."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self.sample_rate = self.config.sample_rate
        self.channels = self.config.channels
        self.chunk_samples = int(self.sample_rate * self.config.time_slice_ms / 1000)

        self._audio_queue: queue.Queue[np.ndarray] = queue.Queue()
        self._stream: Optional[sd.InputStream] = None
        self._recording = False
        self._stream_ended = False
        self._thread: Optional[threading.Thread] = None
        self._callbacks: list[Callable[[np.ndarray], None]] = []
        self._error_callbacks: list[Callable[[SpeechError], None]] = []

        self._chunks: list[np.ndarray] = []
        self._chunks_lock = threading.Lock()
        self._recording_started_at = 0.0

    def _audio_callback(
        self,
        indata: np.ndarray,
        frames: int,
        time_info: dict,
        status: sd.CallbackFlags,
    ) -> None:
        """Callback for sounddevice stream."""
        if status:
            logger.warning(f"Audio callback status: {status}")

        audio_data = indata.copy().astype(np.float32)
        if audio_data.ndim > 1:
            audio_data = audio_data.mean(axis=1)
        self._audio_queue.put(audio_data.reshape(-1))

    def _process_loop(self) -> None:
        """Move chunks from the stream queue into the buffer and callbacks."""
        while self._recording:
            try:
                audio_chunk = self._audio_queue.get(timeout=1.0)
            except queue.Empty:
                continue
            self._deliver(audio_chunk)

    def _deliver(self, audio_chunk: np.ndarray) -> None:
        with self._chunks_lock:
            self._chunks.append(audio_chunk)
        for callback in list(self._callbacks):
            try:
                callback(audio_chunk)
            except Exception as e:
                logger.error(f"Audio callback error: {e}")

    def add_callback(self, callback: Callable[[np.ndarray], None]) -> None:
        """Register a callback for each captured time slice."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[np.ndarray], None]) -> None:
        """Unregister a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def on_error(self, callback: Callable[[SpeechError], None]) -> None:
        """Register a callback for device failures during recording."""
        self._error_callbacks.append(callback)

    def _on_stream_finished(self) -> None:
        if not self._recording:
            return
        self._recording = False
        self._stream_ended = True
        error = DeviceError("Microphone stream ended unexpectedly")
        logger.error(str(error))
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Audio error callback error: {e}")

    def _resolve_device(self):
        if self.config.device == "default":
            return None
        try:
            return int(self.config.device)
        except ValueError:
            return self.config.device

    def initialize(self) -> None:
        """Acquire the microphone stream without starting it."""
        if self._stream_ended:
            self._release_stream()
        if self._stream is not None:
            return
        if not self.is_available():
            raise DeviceError("No audio input device available")

        try:
            self._stream = sd.InputStream(
                device=self._resolve_device(),
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=np.float32,
                blocksize=self.chunk_samples,
                callback=self._audio_callback,
                finished_callback=self._on_stream_finished,
            )
        except sd.PortAudioError as e:
            raise DeviceError.from_exception("Failed to open microphone", e) from e

        logger.info(f"Audio capture initialized: {self.sample_rate}Hz, {self.channels}ch")

    def start_recording(self, keep_buffer: bool = False) -> None:
        """Start capturing, into a fresh chunk buffer unless ``keep_buffer``."""
        if self._recording:
            logger.warning("Audio capture already recording")
            return

        self.initialize()
        if not keep_buffer:
            self.clear_audio_chunks()
        self._recording = True
        self._recording_started_at = time.monotonic()

        self._thread = threading.Thread(target=self._process_loop, daemon=True)
        self._thread.start()

        try:
            self._stream.start()
        except sd.PortAudioError as e:
            self._recording = False
            self._release_stream()
            raise DeviceError.from_exception("Failed to start recording", e) from e

        logger.info("Audio capture started")

    def stop_recording(self) -> bytes:
        """Stop capturing, release the microphone and return the audio as WAV."""
        if not self._recording:
            logger.warning("No active recording to stop")
            self._release_stream()
            return self.encode_chunks()

        logger.info("Stopping audio capture")
        self._recording = False
        self._release_stream()

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

        # Keep whatever the stream delivered after the loop exited
        while True:
            try:
                self._deliver(self._audio_queue.get_nowait())
            except queue.Empty:
                break

        duration_ms = (time.monotonic() - self._recording_started_at) * 1000
        logger.info(f"Audio capture stopped after {duration_ms:.0f}ms")
        return self.encode_chunks()

    def _release_stream(self) -> None:
        self._stream_ended = False
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError as e:
            logger.warning(f"Error closing audio stream: {e}")
        self._stream = None

    def get_audio_chunks(self) -> list[np.ndarray]:
        """Return a copy of the buffered chunk list."""
        with self._chunks_lock:
            return list(self._chunks)

    def drain_audio_chunks(self) -> list[np.ndarray]:
        """Return the buffered chunks and empty the buffer in one step."""
        with self._chunks_lock:
            chunks, self._chunks = self._chunks, []
        return chunks

    def clear_audio_chunks(self) -> None:
        with self._chunks_lock:
            self._chunks = []

    def encode_chunks(self, chunks: Optional[list[np.ndarray]] = None) -> bytes:
        """Encode chunks (default: the whole buffer) as 16-bit PCM WAV."""
        if chunks is None:
            chunks = self.get_audio_chunks()
        if not chunks:
            return b""
        return encode_wav(np.concatenate(chunks), self.sample_rate)

    def process_audio_for_stt(
        self,
        audio: bytes,
        options: Optional[AudioProcessingOptions] = None,
    ) -> bytes:
        """Validate and optionally clean up WAV audio before submission.

        Without options the payload is returned untouched.
        """
        if not audio:
            raise ValidationError("Audio payload is empty")
        if options is None or options.is_identity:
            return audio

        try:
            samples, sample_rate = sf.read(io.BytesIO(audio), dtype="float32")
        except sf.LibsndfileError as e:
            raise ValidationError(f"Audio payload is not decodable: {e}") from e
        if samples.size == 0:
            raise ValidationError("Audio payload contains no samples")
        if samples.ndim > 1:
            samples = samples.mean(axis=1)

        if options.noise_reduction:
            samples = samples - np.mean(samples)
        if options.normalize:
            peak = float(np.max(np.abs(samples)))
            if peak > 0:
                samples = samples * (options.target_peak / peak)

        return encode_wav(samples, sample_rate)

    @property
    def recording_duration_ms(self) -> float:
        if not self._recording:
            return 0.0
        return (time.monotonic() - self._recording_started_at) * 1000

    def is_recording(self) -> bool:
        return self._recording

    def dispose(self) -> None:
        """Stop any recording and release the microphone. Safe to repeat."""
        if self._recording:
            self.stop_recording()
        self._release_stream()
        self._callbacks.clear()
        self._error_callbacks.clear()
        self.clear_audio_chunks()

    @staticmethod
    def is_available() -> bool:
        """Check whether an audio input device exists."""
        try:
            sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError):
            return False
        return True

    @staticmethod
    def list_devices() -> list[dict]:
        """List available audio input devices."""
        devices = []
        for i, device in enumerate(sd.query_devices()):
            if device["max_input_channels"] > 0:
                devices.append({
                    "id": i,
                    "name": device["name"],
                    "channels": device["max_input_channels"],
                    "sample_rate": device["default_samplerate"],
                })
        return devices


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples in [-1, 1] as a 16-bit PCM WAV file."""
    buffer = io.BytesIO()
    sf.write(buffer, np.clip(samples, -1.0, 1.0), sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def audio_to_base64(audio: bytes) -> str:
    return base64.b64encode(audio).decode("ascii")


def base64_to_audio(data: str) -> bytes:
    return base64.b64decode(data)
