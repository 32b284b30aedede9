"""Provider registry with preference mapping and capability-aware fallback."""

import logging
from typing import Callable, Iterable, Optional, Union

from ..config import Config
from ..errors import SpeechError, UnsupportedOperationError
from .azure import AzureSpeechAdapter
from .base import (
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

logger = logging.getLogger(__name__)

TERMINAL_PROVIDER = ProviderId.LOCAL
DEFAULT_FALLBACK_ORDER = (
    ProviderId.LOCAL,
    ProviderId.OPENAI,
    ProviderId.GOOGLE,
    ProviderId.AZURE,
)

# User-facing preference names
PREFERENCE_ALIASES = {
    "local": ProviderId.LOCAL,
    "browser": ProviderId.LOCAL,
    "system": ProviderId.LOCAL,
    "whisper": ProviderId.LOCAL,
    "lmstudio": ProviderId.LOCAL,
    "openai": ProviderId.OPENAI,
    "google": ProviderId.GOOGLE,
    "gemini": ProviderId.GOOGLE,
    "azure": ProviderId.AZURE,
    "microsoft": ProviderId.AZURE,
}

# Hosted-model preferences that only have a speech backend through Azure
AZURE_IF_CONFIGURED = {"huggingface", "uterpi"}

AdapterFactory = Callable[[], SpeechProviderAdapter]


def default_factories(config: Config) -> dict[ProviderId, AdapterFactory]:
    """Factories for the built-in adapters, wired to ``config``."""
    return {
        ProviderId.LOCAL: lambda: LocalSpeechAdapter(config.local, config.capture, config.vad),
        ProviderId.OPENAI: lambda: OpenAISpeechAdapter(config.providers, config.capture),
        ProviderId.GOOGLE: lambda: GoogleSpeechAdapter(config.providers, config.capture),
        ProviderId.AZURE: lambda: AzureSpeechAdapter(config.providers, config.capture),
    }


class UnavailableSpeechAdapter(SpeechProviderAdapter):
    """Stand-in returned when even the terminal provider cannot be built."""

    def __init__(self, provider_id: ProviderId, reason: str):
        super().__init__()
        self.provider_id = provider_id
        self.reason = reason

    def _error(self) -> UnsupportedOperationError:
        return UnsupportedOperationError(f"Provider unavailable: {self.reason}", provider=self.provider_id.value)

    def synthesize(self, text: str, options: Optional[SynthesisOptions] = None) -> SynthesisResult:
        raise self._error()

    def list_voices(self) -> list[VoiceInfo]:
        return []

    def start_recognition(self, options: Optional[RecognitionOptions] = None) -> None:
        raise self._error()

    def stop_recognition(self) -> RecognitionResult:
        return RecognitionResult(is_final=True, provider=self.provider_id.value)

    def is_available(self) -> bool:
        return False

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()


class ProviderSelector:
    """Owns one adapter instance per provider and picks a usable one.

    Selection never raises: when nothing suitable is available the terminal
    provider is returned so callers always get an adapter.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        factories: Optional[dict[ProviderId, AdapterFactory]] = None,
        fallback_order: Iterable[ProviderId] = DEFAULT_FALLBACK_ORDER,
    ):
        self.config = config or Config()
        self._factories = factories if factories is not None else default_factories(self.config)
        self.fallback_order = tuple(fallback_order)
        self._instances: dict[ProviderId, SpeechProviderAdapter] = {}
        self._init_attempted: set[ProviderId] = set()

    def map_preference_to_provider(self, preference: Optional[str]) -> ProviderId:
        """Map a user preference name to a provider, defaulting to local."""
        if not preference:
            return TERMINAL_PROVIDER
        key = preference.strip().lower()
        if key in AZURE_IF_CONFIGURED:
            return ProviderId.AZURE if self.config.providers.azure_speech_key else TERMINAL_PROVIDER
        provider = PREFERENCE_ALIASES.get(key)
        if provider is None:
            logger.warning(f"Unknown speech provider preference '{preference}', using {TERMINAL_PROVIDER.value}")
            return TERMINAL_PROVIDER
        return provider

    def get_service(self, provider: Union[ProviderId, str]) -> SpeechProviderAdapter:
        """Return the cached adapter for ``provider``, creating it on first use."""
        provider = ProviderId(provider)
        adapter = self._instances.get(provider)
        if adapter is None:
            adapter = self._create(provider)
            self._instances[provider] = adapter

        if provider not in self._init_attempted:
            self._init_attempted.add(provider)
            try:
                adapter.initialize(self.config.providers)
            except SpeechError as e:
                logger.warning(f"Failed to initialize {provider.value} speech provider: {e}")
        return adapter

    def _create(self, provider: ProviderId) -> SpeechProviderAdapter:
        factory = self._factories.get(provider)
        if factory is None:
            return UnavailableSpeechAdapter(provider, "no factory registered")
        try:
            return factory()
        except Exception as e:
            logger.error(f"Failed to create {provider.value} speech provider: {e}")
            return UnavailableSpeechAdapter(provider, str(e))

    def is_usable(self, adapter: SpeechProviderAdapter, capability: Capability) -> bool:
        try:
            return (
                adapter.is_initialized
                and adapter.is_available()
                and adapter.capabilities().supports(capability)
            )
        except Exception as e:
            logger.warning(f"Availability check failed for {adapter.provider_id.value}: {e}")
            return False

    def candidates(self, preference: Optional[str] = None) -> list[ProviderId]:
        """Providers in the order they would be tried."""
        order = [self.map_preference_to_provider(preference or self.config.orchestrator.preferred_provider)]
        order.extend(p for p in self.fallback_order if p not in order)
        return order

    def get_best_service_for(
        self,
        capability: Union[Capability, str],
        preference: Optional[str] = None,
        exclude: Iterable[Union[ProviderId, str]] = (),
    ) -> SpeechProviderAdapter:
        """First usable adapter for ``capability``, preferred provider first."""
        capability = Capability(capability)
        excluded = {ProviderId(p) for p in exclude}

        for provider in self.candidates(preference):
            if provider in excluded:
                continue
            adapter = self.get_service(provider)
            if self.is_usable(adapter, capability):
                logger.debug(f"Selected {provider.value} for {capability.value}")
                return adapter
            logger.debug(f"Skipping {provider.value} for {capability.value}: not usable")

        logger.warning(f"No usable provider for {capability.value}, falling back to {TERMINAL_PROVIDER.value}")
        return self.get_service(TERMINAL_PROVIDER)

    def is_any_service_available(self) -> bool:
        for provider in self.fallback_order:
            adapter = self.get_service(provider)
            try:
                if adapter.is_available():
                    return True
            except Exception as e:
                logger.warning(f"Availability check failed for {provider.value}: {e}")
        return False

    @property
    def cached_providers(self) -> list[ProviderId]:
        return list(self._instances)

    def dispose_all(self) -> None:
        """Dispose every cached adapter and empty the registry."""
        for provider, adapter in list(self._instances.items()):
            try:
                adapter.dispose()
            except Exception as e:
                logger.error(f"Error disposing {provider.value} speech provider: {e}")
        self._instances.clear()
        self._init_attempted.clear()
        logger.info("All speech providers disposed")
