"""Qwen TTS provider via the DashScope HTTP API (plain text only, short requests)."""

import base64
import json
import logging
import socket
import tempfile
import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional

from audiobookforge.blobstore import download_url
from audiobookforge.tts import register_provider
from audiobookforge.tts.base import (
    ProviderConfigError,
    ProviderError,
    TransientProviderError,
    TTSProvider,
)

logger = logging.getLogger(__name__)

DASHSCOPE_URLS = {
    "intl": "https://dashscope-intl.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation",
    "cn": "https://dashscope.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation",
}
MODEL = "qwen3-tts-flash"

QWEN_VOICES = [
    {"name": "Cherry", "language": "en", "gender": "Female", "description": "Warm and friendly"},
    {"name": "Ethan", "language": "en", "gender": "Male", "description": "Professional narrator"},
    {"name": "Jennifer", "language": "en", "gender": "Female", "description": "Clear and articulate"},
    {"name": "Ryan", "language": "en", "gender": "Male", "description": "Confident and dynamic"},
    {"name": "Katerina", "language": "es", "gender": "Female", "description": "Spanish narrator"},
    {"name": "Elias", "language": "es", "gender": "Male", "description": "Spanish narrator"},
    {"name": "Rocky", "language": "de", "gender": "Male", "description": "German narrator"},
    {"name": "Nofish", "language": "fr", "gender": "Male", "description": "French narrator"},
    {"name": "Li", "language": "it", "gender": "Female", "description": "Italian narrator"},
    {"name": "Roy", "language": "pt", "gender": "Male", "description": "Portuguese narrator"},
]


@register_provider("qwen")
class QwenProvider(TTSProvider):
    """Qwen3 TTS. Rate and pitch are not adjustable through this API."""

    max_request_size = 500
    size_unit = "chars"
    supports_markup = False
    request_delay = 0.2

    def initialize(self) -> None:
        if not self.settings.dashscope_api_key:
            raise ProviderConfigError("DASHSCOPE_API_KEY is not configured")

    @property
    def url(self) -> str:
        return DASHSCOPE_URLS.get(self.settings.dashscope_region, DASHSCOPE_URLS["intl"])

    def _post(self, body: dict) -> dict:
        req = urllib.request.Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.settings.dashscope_api_key}",
                "Content-Type": "application/json",
                "X-DashScope-Async": "disable",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.settings.provider_request_timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")
            message = f"Qwen TTS API error: {e.code} - {detail}"
            if e.code == 429 or e.code >= 500:
                raise TransientProviderError(message) from e
            if e.code in (401, 403):
                raise ProviderConfigError(message) from e
            raise ProviderError(message) from e
        except (urllib.error.URLError, socket.timeout, TimeoutError) as e:
            raise TransientProviderError(f"Qwen TTS request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Invalid response from Qwen TTS: {e}") from e

    def _download(self, url: str) -> bytes:
        with tempfile.TemporaryDirectory(prefix="qwen_") as tmp:
            dest = Path(tmp) / "audio.mp3"
            try:
                download_url(url, dest, timeout=self.settings.download_timeout)
            except urllib.error.HTTPError as e:
                raise ProviderError(f"Failed to download audio: {e.code}") from e
            except (urllib.error.URLError, socket.timeout, TimeoutError) as e:
                raise TransientProviderError(f"Failed to download audio: {e}") from e
            return dest.read_bytes()

    def synthesize(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> bytes:
        logger.debug("Qwen request: voice %s, %d chars", voice_id, len(text))
        result = self._post({
            "model": MODEL,
            "input": {"text": text, "voice": voice_id},
            "parameters": {"format": "mp3", "sample_rate": 24000},
        })

        code = result.get("code")
        if code and code != "SUCCESS":
            raise ProviderError(f"Qwen TTS error: {code} - {result.get('message')}")

        audio = (result.get("output") or {}).get("audio")
        if isinstance(audio, dict) and audio.get("url"):
            return self._download(audio["url"])
        if isinstance(audio, dict) and audio.get("data"):
            return base64.b64decode(audio["data"])
        if isinstance(audio, str) and audio:
            return base64.b64decode(audio)
        raise ProviderError("No audio received from Qwen TTS")

    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        if not language:
            return [dict(v) for v in QWEN_VOICES]
        prefix = language.split("-")[0].lower()
        return [dict(v) for v in QWEN_VOICES if v["language"] == prefix]

    @property
    def name(self) -> str:
        return "Qwen TTS"
