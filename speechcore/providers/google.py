"""Google Cloud Speech-to-Text and Text-to-Speech adapter."""

import base64
import binascii
import logging
from typing import Any, Optional

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
    guess_gender,
)
from .remote import MALFORMED_RESPONSE_ERRORS, RemoteSpeechAdapter

logger = logging.getLogger(__name__)

RECOGNIZE_URL = "https://speech.googleapis.com/v1/speech:recognize"
SYNTHESIZE_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"
VOICES_URL = "https://texttospeech.googleapis.com/v1/voices"
RECOGNITION_MODEL = "latest_long"

DEFAULT_VOICES = [
    ("en-US-Neural2-F", "female", True),
    ("en-US-Neural2-D", "male", False),
    ("en-US-Neural2-C", "female", False),
    ("en-US-Neural2-A", "male", False),
]


class GoogleSpeechAdapter(RemoteSpeechAdapter):
    """Synchronous recognize and synthesize calls keyed by an API key."""

    provider_id = ProviderId.GOOGLE

    # Request bodies are capped at 10MB and base64 grows audio by a third.
    max_payload_bytes = 7 * 1024 * 1024
    # Synchronous recognition accepts about a minute of audio.
    max_audio_seconds = 60.0

    def has_credentials(self) -> bool:
        return bool(self.config.google_api_key)

    def _params(self) -> dict[str, str]:
        return {"key": self.config.google_api_key}

    def _transcribe(self, audio: bytes, options: RecognitionOptions, is_final: bool) -> RecognitionResult:
        body = {
            "config": {
                "encoding": "LINEAR16",
                "sampleRateHertz": options.sample_rate,
                "audioChannelCount": options.channels,
                "languageCode": options.language,
                "maxAlternatives": max(options.max_alternatives, 1),
                "profanityFilter": options.profanity_filter,
                "enableAutomaticPunctuation": options.punctuation,
                "model": RECOGNITION_MODEL,
                "speechContexts": [{"phrases": self._context_phrases()}],
            },
            "audio": {"content": base64.b64encode(audio).decode("ascii")},
        }
        response = self._request("POST", RECOGNIZE_URL, params=self._params(), json=body)
        return self._map_payload(self._map_response, self._json(response), is_final)

    def _context_phrases(self) -> list[str]:
        words = self.current_transcript.split()[-10:]
        phrases = ["AI", "API", "UI", "URL", "HTTP", "JSON"]
        if words:
            phrases.insert(0, " ".join(words))
        return phrases

    def _map_response(self, payload: Any, is_final: bool) -> RecognitionResult:
        if not isinstance(payload, dict):
            raise ProtocolError("Recognition response is not an object", provider=self.provider_id.value)

        # Each result covers a consecutive stretch of the audio.
        transcripts: list[str] = []
        confidences: list[float] = []
        alternatives: list[Alternative] = []
        for index, result in enumerate(payload.get("results") or []):
            candidates = result.get("alternatives") or []
            if not candidates:
                continue
            best = candidates[0]
            transcripts.append(str(best.get("transcript", "")).strip())
            confidences.append(float(best.get("confidence", 0.0)))
            if index == 0:
                alternatives = [
                    Alternative(
                        transcript=str(c.get("transcript", "")).strip(),
                        confidence=float(c.get("confidence", 0.0)),
                    )
                    for c in candidates[1:]
                ]

        return RecognitionResult(
            transcript=" ".join(t for t in transcripts if t),
            confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            is_final=is_final,
            alternatives=alternatives,
        )

    def synthesize(self, text: str, options: Optional[SynthesisOptions] = None) -> SynthesisResult:
        if not text.strip():
            raise ValidationError("Nothing to synthesize", provider=self.provider_id.value)
        self._require_credentials()
        options = options or SynthesisOptions()

        voice = {"languageCode": options.language}
        if options.voice:
            voice["name"] = options.voice
        body = {
            "input": {"text": text},
            "voice": voice,
            "audioConfig": {
                "audioEncoding": "MP3",
                "speakingRate": min(max(options.rate, 0.25), 4.0),
                # Pitch is in semitones; 1.0 is the neutral multiplier.
                "pitch": min(max((options.pitch - 1.0) * 20.0, -20.0), 20.0),
                "volumeGainDb": min(max((options.volume - 1.0) * 16.0, -96.0), 16.0),
            },
        }
        response = self._request("POST", SYNTHESIZE_URL, params=self._params(), json=body)
        payload = self._json(response)
        content = payload.get("audioContent") if isinstance(payload, dict) else None
        if not content:
            raise ProtocolError("Synthesis response has no audio", provider=self.provider_id.value)
        try:
            audio = base64.b64decode(content)
        except binascii.Error as e:
            raise ProtocolError(f"Synthesis audio is not base64: {e}", provider=self.provider_id.value) from e

        return SynthesisResult(
            audio=audio,
            mime_type="audio/mpeg",
            duration_s=estimate_duration(text, options.rate),
        )

    def list_voices(self) -> list[VoiceInfo]:
        if not self.has_credentials():
            return self._default_voices()
        try:
            response = self._request("GET", VOICES_URL, params=self._params())
            payload = self._json(response)
        except SpeechError as e:
            logger.warning(f"Failed to fetch Google voices: {e}")
            return self._default_voices()

        try:
            voices = self._map_voices(payload)
        except MALFORMED_RESPONSE_ERRORS as e:
            logger.warning(f"Malformed Google voice list: {e}")
            return self._default_voices()
        return voices or self._default_voices()

    def _map_voices(self, payload: Any) -> list[VoiceInfo]:
        voices = []
        for voice in payload.get("voices", []) if isinstance(payload, dict) else []:
            languages = voice.get("languageCodes") or ["en-US"]
            gender = str(voice.get("ssmlGender", "")).lower() or None
            voices.append(VoiceInfo(
                id=voice["name"],
                name=voice["name"],
                language=languages[0],
                provider=self.provider_id.value,
                gender=gender if gender in ("male", "female") else guess_gender(voice["name"]),
                is_default=voice["name"] == DEFAULT_VOICES[0][0],
            ))
        return voices

    def _default_voices(self) -> list[VoiceInfo]:
        return [
            VoiceInfo(
                id=name,
                name=name,
                language="en-US",
                provider=self.provider_id.value,
                gender=gender,
                is_default=is_default,
            )
            for name, gender, is_default in DEFAULT_VOICES
        ]
