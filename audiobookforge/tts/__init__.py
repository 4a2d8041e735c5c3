"""TTS provider registry and factory."""

import logging
import threading
from typing import Optional

from audiobookforge.config import Settings
from audiobookforge.tts.base import (
    ProviderConfigError,
    ProviderError,
    ProviderTask,
    TransientProviderError,
    TTSProvider,
)

logger = logging.getLogger(__name__)

PROVIDER_REGISTRY: dict[str, type[TTSProvider]] = {}


def register_provider(name: str):
    """Decorator to register a TTS provider class."""
    def decorator(cls):
        PROVIDER_REGISTRY[name] = cls
        return cls
    return decorator


def load_providers() -> None:
    """Import the bundled providers so they register themselves.

    SDKs are imported lazily by each provider, so this never fails on a
    missing optional dependency.
    """
    from audiobookforge.tts import (  # noqa: F401
        edge_provider,
        google_provider,
        polly_provider,
        qwen_provider,
    )


def get_provider(name: str, settings: Optional[Settings] = None) -> TTSProvider:
    """Instantiate a TTS provider by name."""
    load_providers()
    if name not in PROVIDER_REGISTRY:
        available = ", ".join(PROVIDER_REGISTRY.keys()) or "(none)"
        raise ProviderConfigError(f"Unknown provider '{name}'. Available: {available}")
    return PROVIDER_REGISTRY[name](settings)


def list_providers() -> list[str]:
    """Return names of all registered providers."""
    load_providers()
    return list(PROVIDER_REGISTRY.keys())


class ProviderRegistry:
    """Caches one initialized provider instance per name.

    Instances hold SDK clients bound to the credentials present when they
    were created; call invalidate() after changing credentials.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        self._instances: dict[str, TTSProvider] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> TTSProvider:
        with self._lock:
            provider = self._instances.get(name)
            if provider is None:
                provider = get_provider(name, self._settings)
                provider.initialize()
                self._instances[name] = provider
                logger.debug("Initialized provider %s", name)
            return provider

    def invalidate(self, name: Optional[str] = None) -> None:
        """Forget cached instances (all of them when ``name`` is None)."""
        with self._lock:
            names = [name] if name else list(self._instances)
            for key in names:
                provider = self._instances.pop(key, None)
                if provider is not None:
                    provider.close()
                    logger.info("Provider cache invalidated: %s", key)


__all__ = [
    "PROVIDER_REGISTRY",
    "ProviderConfigError",
    "ProviderError",
    "ProviderRegistry",
    "ProviderTask",
    "TTSProvider",
    "TransientProviderError",
    "get_provider",
    "list_providers",
    "load_providers",
    "register_provider",
]
