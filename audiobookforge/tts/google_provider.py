"""Google Cloud Text-to-Speech provider - Neural2/WaveNet/Journey voices with SSML."""

import json
import logging
import os
import threading
from typing import Optional

from audiobookforge.tts import register_provider
from audiobookforge.tts.base import (
    ProviderConfigError,
    ProviderError,
    TransientProviderError,
    TTSProvider,
)

logger = logging.getLogger(__name__)

VOICE_TYPE_ORDER = ("Neural2", "Journey", "WaveNet", "Standard")


def language_from_voice(voice_id: str) -> str:
    """'es-ES-Neural2-A' -> 'es-ES'."""
    parts = voice_id.split("-")
    if len(parts) >= 2:
        return f"{parts[0]}-{parts[1]}"
    return voice_id


def voice_type(voice_name: str) -> str:
    if "Neural2" in voice_name:
        return "Neural2"
    if "Journey" in voice_name:
        return "Journey"
    if "Wavenet" in voice_name:
        return "WaveNet"
    return "Standard"


def _translate_error(exc: Exception) -> ProviderError:
    from google.api_core import exceptions as gexc
    from google.auth import exceptions as auth_exc

    if isinstance(exc, (gexc.ResourceExhausted, gexc.ServiceUnavailable, gexc.DeadlineExceeded,
                        gexc.InternalServerError, gexc.TooManyRequests)):
        return TransientProviderError(f"Google TTS: {exc}")
    if isinstance(exc, (gexc.PermissionDenied, gexc.Unauthenticated, auth_exc.DefaultCredentialsError)):
        return ProviderConfigError(f"Google TTS credentials rejected: {exc}")
    return ProviderError(f"Google TTS: {exc}")


@register_provider("google")
class GoogleProvider(TTSProvider):
    """Google Cloud TTS. Requests are limited by UTF-8 size, not characters."""

    max_request_size = 4500
    size_unit = "bytes"
    supports_markup = True
    request_delay = 0.1

    def __init__(self, settings=None):
        super().__init__(settings)
        self._client = None
        self._client_lock = threading.Lock()

    def initialize(self) -> None:
        try:
            from google.cloud import texttospeech  # noqa: F401
        except ImportError as e:
            raise ProviderConfigError("google-cloud-texttospeech is required for Google TTS") from e

        if not self.settings.google_tts_credentials and not os.environ.get("GOOGLE_APPLICATION_CREDENTIALS"):
            raise ProviderConfigError(
                "Google Cloud TTS credentials not configured. "
                "Set GOOGLE_TTS_CREDENTIALS or GOOGLE_APPLICATION_CREDENTIALS"
            )

    @property
    def client(self):
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = self._make_client()
        return self._client

    def _make_client(self):
        from google.cloud import texttospeech

        raw = self.settings.google_tts_credentials
        if not raw:
            return texttospeech.TextToSpeechClient()

        from google.oauth2 import service_account

        try:
            info = json.loads(raw)
        except ValueError as e:
            raise ProviderConfigError("Invalid GOOGLE_TTS_CREDENTIALS format") from e
        credentials = service_account.Credentials.from_service_account_info(info)
        return texttospeech.TextToSpeechClient(credentials=credentials)

    def close(self) -> None:
        with self._client_lock:
            self._client = None

    def synthesize(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> bytes:
        from google.cloud import texttospeech

        if text.lstrip().startswith("<speak"):
            synthesis_input = texttospeech.SynthesisInput(ssml=text)
        else:
            synthesis_input = texttospeech.SynthesisInput(text=text)

        voice = texttospeech.VoiceSelectionParams(
            language_code=language_from_voice(voice_id),
            name=voice_id,
        )
        audio_config = texttospeech.AudioConfig(
            audio_encoding=texttospeech.AudioEncoding.MP3,
            speaking_rate=rate,
            pitch=pitch,
            sample_rate_hertz=24000,
        )

        try:
            response = self.client.synthesize_speech(
                input=synthesis_input,
                voice=voice,
                audio_config=audio_config,
                timeout=self.settings.provider_request_timeout,
            )
        except ProviderError:
            raise
        except Exception as e:
            raise _translate_error(e) from e

        if not response.audio_content:
            raise ProviderError("No audio content received from Google TTS")
        return response.audio_content

    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        from google.cloud import texttospeech

        try:
            response = self.client.list_voices(language_code=language or "")
        except ProviderError:
            raise
        except Exception as e:
            raise _translate_error(e) from e

        result = []
        for v in response.voices:
            kind = voice_type(v.name)
            if kind == "Standard":
                continue
            result.append({
                "name": v.name,
                "language": v.language_codes[0] if v.language_codes else "",
                "gender": texttospeech.SsmlVoiceGender(v.ssml_gender).name.title(),
                "voice_type": kind,
            })
        result.sort(key=lambda v: (v["language"], VOICE_TYPE_ORDER.index(v["voice_type"]), v["name"]))
        return result

    @property
    def name(self) -> str:
        return "Google Cloud TTS"
