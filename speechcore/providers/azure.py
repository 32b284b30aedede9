"""Azure Cognitive Services speech adapter."""

import logging
from typing import Any, Optional
from xml.sax.saxutils import escape, quoteattr

from ..errors import ProtocolError, SpeechError, ValidationError
from .base import (
    Alternative,
    ProviderId,
    RecognitionOptions,
    RecognitionResult,
    SynthesisOptions,
    SynthesisResult,
    VoiceInfo,
    estimate_duration,
)
from .remote import MALFORMED_RESPONSE_ERRORS, RemoteSpeechAdapter

logger = logging.getLogger(__name__)

DEFAULT_VOICE = "en-US-JennyNeural"
OUTPUT_FORMAT = "audio-16khz-32kbitrate-mono-mp3"

# Recognition statuses that mean "nothing was said" rather than failure
EMPTY_STATUSES = {"NoMatch", "InitialSilenceTimeout", "BabbleTimeout"}

DEFAULT_VOICES = [
    ("en-US-JennyNeural", "Jenny", "female"),
    ("en-US-GuyNeural", "Guy", "male"),
    ("en-US-AriaNeural", "Aria", "female"),
    ("en-US-DavisNeural", "Davis", "male"),
]


class AzureSpeechAdapter(RemoteSpeechAdapter):
    """Short-audio REST recognition and SSML synthesis for one region."""

    provider_id = ProviderId.AZURE

    # The short-audio endpoint rejects requests longer than 60 seconds.
    max_audio_seconds = 60.0

    def has_credentials(self) -> bool:
        return bool(self.config.azure_speech_key)

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {"Ocp-Apim-Subscription-Key": self.config.azure_speech_key or ""}
        headers.update(extra)
        return headers

    @property
    def recognition_url(self) -> str:
        return (
            f"https://{self.config.azure_region}.stt.speech.microsoft.com"
            "/speech/recognition/conversation/cognitiveservices/v1"
        )

    @property
    def tts_base_url(self) -> str:
        return f"https://{self.config.azure_region}.tts.speech.microsoft.com/cognitiveservices"

    def _transcribe(self, audio: bytes, options: RecognitionOptions, is_final: bool) -> RecognitionResult:
        response = self._request(
            "POST",
            self.recognition_url,
            params={
                "language": options.language,
                "format": "detailed",
                "profanity": "masked" if options.profanity_filter else "raw",
            },
            headers=self._headers(**{
                "Content-Type": f"audio/wav; codecs=audio/pcm; samplerate={options.sample_rate}",
                "Accept": "application/json",
            }),
            content=audio,
        )
        return self._map_payload(self._map_response, self._json(response), options, is_final)

    def _map_response(self, payload: Any, options: RecognitionOptions, is_final: bool) -> RecognitionResult:
        if not isinstance(payload, dict) or "RecognitionStatus" not in payload:
            raise ProtocolError("Recognition response has no status", provider=self.provider_id.value)

        status = payload["RecognitionStatus"]
        if status in EMPTY_STATUSES:
            return RecognitionResult(is_final=is_final)
        if status != "Success":
            raise SpeechError(f"Recognition failed: {status}", provider=self.provider_id.value)

        nbest = payload.get("NBest") or []
        best = nbest[0] if nbest else {}
        transcript = payload.get("DisplayText") or best.get("Display", "")
        alternatives = [
            Alternative(transcript=str(c.get("Display", "")), confidence=float(c.get("Confidence", 0.0)))
            for c in nbest[1:max(options.max_alternatives, 1)]
        ]
        return RecognitionResult(
            transcript=str(transcript).strip(),
            confidence=float(best.get("Confidence", 0.0)),
            is_final=is_final,
            alternatives=alternatives,
        )

    def build_ssml(self, text: str, options: SynthesisOptions) -> str:
        voice = options.voice or DEFAULT_VOICE
        rate = round((options.rate - 1.0) * 100)
        pitch = round((options.pitch - 1.0) * 50)
        return (
            f"<speak version='1.0' xml:lang={quoteattr(options.language)}>"
            f"<voice name={quoteattr(voice)}>"
            f"<prosody rate='{rate:+d}%' pitch='{pitch:+d}%'>{escape(text)}</prosody>"
            "</voice></speak>"
        )

    def synthesize(self, text: str, options: Optional[SynthesisOptions] = None) -> SynthesisResult:
        if not text.strip():
            raise ValidationError("Nothing to synthesize", provider=self.provider_id.value)
        self._require_credentials()
        options = options or SynthesisOptions()

        response = self._request(
            "POST",
            f"{self.tts_base_url}/v1",
            headers=self._headers(**{
                "Content-Type": "application/ssml+xml",
                "X-Microsoft-OutputFormat": OUTPUT_FORMAT,
                "User-Agent": "speechcore",
            }),
            content=self.build_ssml(text, options).encode("utf-8"),
        )
        return SynthesisResult(
            audio=response.content,
            mime_type="audio/mpeg",
            duration_s=estimate_duration(text, options.rate),
        )

    def list_voices(self) -> list[VoiceInfo]:
        if not self.has_credentials():
            return self._default_voices()
        try:
            response = self._request("GET", f"{self.tts_base_url}/voices/list", headers=self._headers())
            payload = self._json(response)
        except SpeechError as e:
            logger.warning(f"Failed to fetch Azure voices: {e}")
            return self._default_voices()

        try:
            voices = self._map_voices(payload)
        except MALFORMED_RESPONSE_ERRORS as e:
            logger.warning(f"Malformed Azure voice list: {e}")
            return self._default_voices()
        return voices or self._default_voices()

    def _map_voices(self, payload: Any) -> list[VoiceInfo]:
        return [
            VoiceInfo(
                id=voice["ShortName"],
                name=voice.get("DisplayName", voice["ShortName"]),
                language=voice.get("Locale", "en-US"),
                provider=self.provider_id.value,
                gender=str(voice.get("Gender", "")).lower() or None,
                is_default=voice["ShortName"] == DEFAULT_VOICE,
            )
            for voice in (payload if isinstance(payload, list) else [])
            if "ShortName" in voice
        ]

    def _default_voices(self) -> list[VoiceInfo]:
        return [
            VoiceInfo(
                id=voice_id,
                name=name,
                language="en-US",
                provider=self.provider_id.value,
                gender=gender,
                is_default=voice_id == DEFAULT_VOICE,
            )
            for voice_id, name, gender in DEFAULT_VOICES
        ]
