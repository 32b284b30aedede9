"""Audio pipeline components for microphone capture and voice activity detection."""

from .capture import AudioCapture, AudioProcessingOptions
from .vad import VADEvent, VADEventType, VADStats, VoiceActivityDetector

__all__ = [
    "AudioCapture",
    "AudioProcessingOptions",
    "VADEvent",
    "VADEventType",
    "VADStats",
    "VoiceActivityDetector",
]
