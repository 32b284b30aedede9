"""Speech backends behind a common adapter contract, and the selector that picks one."""

from .azure import AzureSpeechAdapter
from .base import (
    Alternative,
    Capability,
    ProviderCapabilities,
    ProviderId,
    RecognitionOptions,
    RecognitionResult,
    SpeechProviderAdapter,
    SynthesisOptions,
    SynthesisResult,
    VoiceInfo,
)
from .google import GoogleSpeechAdapter
from .local import LocalSpeechAdapter
from .openai import OpenAISpeechAdapter
from .remote import RemoteSpeechAdapter
from .selector import ProviderSelector

__all__ = [
    "Alternative",
    "AzureSpeechAdapter",
    "Capability",
    "GoogleSpeechAdapter",
    "LocalSpeechAdapter",
    "OpenAISpeechAdapter",
    "ProviderCapabilities",
    "ProviderId",
    "ProviderSelector",
    "RecognitionOptions",
    "RecognitionResult",
    "RemoteSpeechAdapter",
    "SpeechProviderAdapter",
    "SynthesisOptions",
    "SynthesisResult",
    "VoiceInfo",
]
