"""Edge TTS provider - free online neural voices via Microsoft Edge."""

import asyncio
import logging
from threading import Thread
from typing import Optional

from audiobookforge.tts import register_provider
from audiobookforge.tts.base import (
    ProviderConfigError,
    ProviderError,
    TransientProviderError,
    TTSProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_VOICES = {
    "es": "es-ES-ElviraNeural",
    "en": "en-US-AriaNeural",
    "it": "it-IT-IsabellaNeural",
    "fr": "fr-FR-DeniseNeural",
    "de": "de-DE-KatjaNeural",
}


def _run_async(coro):
    """Run a coroutine from sync code, even when an event loop is already running.

    Inside a running loop the coroutine gets a fresh loop on its own thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    result = None
    exception = None

    def _target():
        nonlocal result, exception
        try:
            result = asyncio.run(coro)
        except Exception as e:
            exception = e

    t = Thread(target=_target)
    t.start()
    t.join()

    if exception:
        raise exception
    return result


@register_provider("edge")
class EdgeProvider(TTSProvider):
    """Microsoft Edge online voices. Plain text only."""

    max_request_size = 3000
    size_unit = "chars"
    supports_markup = False

    def initialize(self) -> None:
        try:
            import edge_tts  # noqa: F401
        except ImportError as e:
            raise ProviderConfigError("edge-tts is required for the edge provider") from e

    def synthesize(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> bytes:
        import aiohttp
        import edge_tts

        try:
            audio = _run_async(self._synthesize_async(text, voice_id, rate, pitch))
        except edge_tts.exceptions.NoAudioReceived as e:
            raise ProviderError(f"Edge TTS returned no audio: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransientProviderError(f"Edge TTS request failed: {e}") from e

        if not audio:
            raise ProviderError("Edge TTS returned no audio")
        return audio

    async def _synthesize_async(self, text: str, voice_id: str, rate: float, pitch: float) -> bytes:
        import edge_tts

        voice = voice_id or DEFAULT_VOICES["es"]
        communicate = edge_tts.Communicate(
            text,
            voice,
            rate=self._speed_to_rate(rate),
            pitch=self._pitch_to_hz(pitch),
        )
        audio = bytearray()
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                audio.extend(chunk["data"])
        return bytes(audio)

    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        return _run_async(self._list_voices_async(language))

    async def _list_voices_async(self, language: Optional[str] = None) -> list[dict]:
        import edge_tts

        voices = await edge_tts.list_voices()
        result = []
        for v in voices:
            locale = v.get("Locale", "")
            if language and not locale.lower().startswith(language.lower()):
                continue
            result.append({
                "name": v["ShortName"],
                "language": locale,
                "gender": v.get("Gender", ""),
            })
        return result

    @property
    def name(self) -> str:
        return "Edge TTS"

    @staticmethod
    def _speed_to_rate(speed: float) -> str:
        """Convert speed multiplier (e.g. 1.2) to Edge TTS rate string (e.g. '+20%')."""
        percent = round((speed - 1.0) * 100)
        if percent >= 0:
            return f"+{percent}%"
        return f"{percent}%"

    @staticmethod
    def _pitch_to_hz(semitones: float) -> str:
        """Approximate a semitone shift as Edge's Hz offset (about 10 Hz per semitone)."""
        hz = round(semitones * 10)
        if hz >= 0:
            return f"+{hz}Hz"
        return f"{hz}Hz"
