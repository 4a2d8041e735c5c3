"""Abstract base class and error types for TTS providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from audiobookforge.config import Settings, get_config


class ProviderError(RuntimeError):
    """A provider could not produce audio for a request."""


class TransientProviderError(ProviderError):
    """Throttling, timeouts and 5xx responses: worth retrying."""


class ProviderConfigError(ProviderError):
    """Missing or invalid credentials or configuration; never retried."""


@dataclass
class ProviderTask:
    """State of an asynchronous provider-side synthesis task."""
    handle: str
    state: str  # "in_progress", "completed" or "failed"
    output_uri: Optional[str] = None
    reason: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state in ("completed", "failed")


class TTSProvider(ABC):
    """Abstract base class that all TTS providers must implement.

    Class attributes describe the provider's request limits; the job manager
    reads them to decide how to chunk and whether to send markup.
    """

    max_request_size: int = 3000
    size_unit: str = "chars"  # "chars" or "bytes"
    supports_markup: bool = False
    supports_tasks: bool = False
    task_size_limit: int = 0
    request_delay: float = 0.0

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_config()

    @abstractmethod
    def initialize(self) -> None:
        """Check the provider can be used (SDK importable, credentials present).

        Raises:
            ProviderConfigError: If the provider is not configured.
        """
        ...

    @abstractmethod
    def synthesize(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> bytes:
        """Synthesize one request-sized piece of text and return encoded audio.

        Args:
            text: Plain text, or an SSML document when ``supports_markup`` is set.
            voice_id: Provider-specific voice identifier.
            rate: Speaking-rate multiplier (1.0 = normal).
            pitch: Pitch shift in semitones.

        Raises:
            TransientProviderError: For errors worth retrying.
            ProviderConfigError: For credential and configuration problems.
            ProviderError: For any other failure.
        """
        ...

    @abstractmethod
    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        """Return available voices, optionally filtered by language.

        Each dict contains at least 'name' and 'language' keys.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...

    @property
    def output_format(self) -> str:
        """Audio format produced natively."""
        return "mp3"

    def start_task(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> str:
        """Start a long-running synthesis task and return its handle."""
        raise NotImplementedError(f"{self.name} does not support synthesis tasks")

    def get_task_status(self, handle: str) -> ProviderTask:
        """Poll a task started with start_task()."""
        raise NotImplementedError(f"{self.name} does not support synthesis tasks")

    def fetch_task_audio(self, task: ProviderTask) -> bytes:
        """Download the audio produced by a completed task."""
        raise NotImplementedError(f"{self.name} does not support synthesis tasks")

    def close(self) -> None:
        """Drop cached clients. The next call re-creates them."""
