"""Pytest configuration and shared fixtures."""

import io
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import soundfile as sf


SAMPLE_RATE = 16000


# ==================== Path Fixtures ====================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_file(temp_dir):
    """Create a temporary config file."""
    config_path = temp_dir / "speechcore.yaml"
    config_content = """
capture:
  device: "default"
  sample_rate: 16000
  channels: 1
  time_slice_ms: 250

vad:
  sensitivity: 0.9
  min_speech_duration_ms: 150
  silence_timeout_ms: 800

local:
  whisper_model: "tiny.en"
  whisper_device: "cpu"

providers:
  openai_api_key: "sk-from-file"
  azure_region: "westeurope"
  request_timeout_s: 10.0

orchestrator:
  preferred_provider: "openai"
  progress_timeout_ms: 12000
  max_restarts_per_minute: 4

logging:
  level: "DEBUG"
  file: null
"""
    config_path.write_text(config_content)
    return config_path


# ==================== Audio Fixtures ====================

def tone(frequency: float, samples: int, amplitude: float = 0.5, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Sine tone; 2kHz at 16kHz scores as speech on every feature."""
    t = np.arange(samples) / sample_rate
    return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


@pytest.fixture
def make_tone():
    """Factory for sine tones."""
    return tone


@pytest.fixture
def speech_frame():
    """A 1024-sample frame that passes energy, centroid and ZCR checks."""
    return tone(2000.0, 1024)


@pytest.fixture
def silence_frame():
    """A silent 1024-sample frame."""
    return np.zeros(1024, dtype=np.float32)


@pytest.fixture
def sample_audio_chunk():
    """Generate 500ms of low-level noise."""
    return np.random.randn(SAMPLE_RATE // 2).astype(np.float32) * 0.1


@pytest.fixture
def wav_bytes():
    """One second of tone encoded as 16-bit WAV."""
    buffer = io.BytesIO()
    sf.write(buffer, tone(440.0, SAMPLE_RATE, amplitude=0.3), SAMPLE_RATE, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


class FakeClock:
    """Manually advanced clock for timer-driven logic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_clock():
    return FakeClock


# ==================== Mock Fixtures ====================

@pytest.fixture
def mock_input_stream():
    """Patch sounddevice so capture code sees a working input device."""
    with patch("speechcore.audio.capture.sd.InputStream") as input_stream, \
            patch("speechcore.audio.capture.sd.query_devices") as query_devices:
        query_devices.return_value = {"name": "Test Mic", "max_input_channels": 1}
        input_stream.return_value = MagicMock()
        yield input_stream


@pytest.fixture
def mock_whisper_model():
    """Create a mock Whisper model."""
    mock_model = MagicMock()
    mock_segment = MagicMock()
    mock_segment.text = " Test transcription"
    mock_segment.avg_logprob = -0.1
    mock_model.transcribe.return_value = ([mock_segment], MagicMock())
    return mock_model


@pytest.fixture
def mock_capture():
    """An AudioCapture stand-in that records without a device."""
    capture = MagicMock()
    capture.sample_rate = SAMPLE_RATE
    capture.is_recording.return_value = False
    capture.get_audio_chunks.return_value = []
    capture.drain_audio_chunks.return_value = []
    capture.stop_recording.return_value = b""
    return capture
