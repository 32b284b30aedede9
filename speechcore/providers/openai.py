"""OpenAI Whisper transcription and TTS adapter."""

import logging
from typing import Optional

from ..errors import ProtocolError, ValidationError
from .base import (
    ProviderId,
    RecognitionOptions,
    RecognitionResult,
    SynthesisOptions,
    SynthesisResult,
    VoiceInfo,
    estimate_duration,
)
from .remote import RemoteSpeechAdapter

logger = logging.getLogger(__name__)

TRANSCRIPTION_MODEL = "whisper-1"
SPEECH_MODEL = "tts-1"
TRANSCRIPTION_CONFIDENCE = 0.95
DEFAULT_VOICE = "nova"
MIN_SPEED = 0.25
MAX_SPEED = 4.0

VOICES = {
    "alloy": "Alloy",
    "echo": "Echo",
    "fable": "Fable",
    "onyx": "Onyx",
    "nova": "Nova",
    "shimmer": "Shimmer",
}

AUDIO_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
    "pcm": "audio/pcm",
}


class OpenAISpeechAdapter(RemoteSpeechAdapter):
    """Whisper transcriptions and text-to-speech over the OpenAI REST API."""

    provider_id = ProviderId.OPENAI

    max_payload_bytes = 25 * 1024 * 1024
    truncated_payload_bytes = 20 * 1024 * 1024

    def has_credentials(self) -> bool:
        return bool(self.config.openai_api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.openai_api_key}"}

    def _url(self, path: str) -> str:
        return f"{self.config.openai_base_url.rstrip('/')}/{path}"

    def _transcribe(self, audio: bytes, options: RecognitionOptions, is_final: bool) -> RecognitionResult:
        data = {
            "model": TRANSCRIPTION_MODEL,
            "response_format": "json",
            "prompt": self.context_prompt(),
        }
        if options.language and options.language != "auto":
            # Whisper takes ISO-639-1 codes
            data["language"] = options.language.split("-")[0].lower()

        response = self._request(
            "POST",
            self._url("audio/transcriptions"),
            headers=self._headers(),
            data=data,
            files={"file": ("audio.wav", audio, "audio/wav")},
        )
        payload = self._json(response)
        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise ProtocolError("Transcription response has no text", provider=self.provider_id.value)

        return RecognitionResult(
            transcript=text.strip(),
            confidence=TRANSCRIPTION_CONFIDENCE,
            is_final=is_final,
        )

    def synthesize(self, text: str, options: Optional[SynthesisOptions] = None) -> SynthesisResult:
        if not text.strip():
            raise ValidationError("Nothing to synthesize", provider=self.provider_id.value)
        self._require_credentials()
        options = options or SynthesisOptions()

        voice = options.voice if options.voice in VOICES else DEFAULT_VOICE
        audio_format = options.output_format or "mp3"
        speed = min(max(options.rate, MIN_SPEED), MAX_SPEED)

        response = self._request(
            "POST",
            self._url("audio/speech"),
            headers=self._headers(),
            json={
                "model": SPEECH_MODEL,
                "input": text,
                "voice": voice,
                "speed": speed,
                "response_format": audio_format,
            },
        )
        logger.debug(f"Synthesized {len(text)} chars with voice {voice}")
        return SynthesisResult(
            audio=response.content,
            mime_type=AUDIO_MIME_TYPES.get(audio_format, "application/octet-stream"),
            duration_s=estimate_duration(text, speed),
        )

    def list_voices(self) -> list[VoiceInfo]:
        return [
            VoiceInfo(
                id=voice_id,
                name=name,
                language="en-US",
                provider=self.provider_id.value,
                is_default=voice_id == DEFAULT_VOICE,
            )
            for voice_id, name in VOICES.items()
        ]
