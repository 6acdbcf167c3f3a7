from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional

from dialogic.config import Settings, secret_from_env
from dialogic.models import Message

from .llm_base import (
    CancelToken,
    ChatAdapter,
    ChunkCallback,
    MissingCredentialError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Settings, Optional[str]], ChatAdapter]

LOCAL_PROVIDERS = ("ollama", "mock")


def _openai(settings: Settings, secret: Optional[str]) -> ChatAdapter:
    from .openai_adapter import OpenAIAdapter

    return OpenAIAdapter(api_key=secret or "", model=settings.chat_model("openai"))


def _anthropic(settings: Settings, secret: Optional[str]) -> ChatAdapter:
    from .anthropic_adapter import AnthropicAdapter

    return AnthropicAdapter(
        api_key=secret or "",
        model=settings.chat_model("anthropic"),
        validation_model=settings.validation_model("anthropic"),
        max_tokens=settings.max_output_tokens,
    )


def _gemini(settings: Settings, secret: Optional[str]) -> ChatAdapter:
    from .gemini_adapter import GeminiAdapter

    return GeminiAdapter(
        api_key=secret or "",
        model=settings.chat_model("gemini"),
        validation_model=settings.validation_model("gemini"),
    )


def _ollama(settings: Settings, secret: Optional[str]) -> ChatAdapter:
    from .ollama_adapter import OllamaAdapter

    return OllamaAdapter(host=secret or settings.ollama_host, model=settings.chat_model("ollama"))


def _mock(settings: Settings, secret: Optional[str]) -> ChatAdapter:
    from .mock_adapter import MockAdapter

    return MockAdapter()


DEFAULT_FACTORIES: Dict[str, AdapterFactory] = {
    "openai": _openai,
    "anthropic": _anthropic,
    "gemini": _gemini,
    "ollama": _ollama,
    "mock": _mock,
}


class ProviderGateway:
    """Uniform chat entry point over every supported backend.

    ``store`` only needs ``get_provider_key(provider)``; secrets fall back to
    the conventional environment variables when the store has none.
    """

    def __init__(
        self,
        settings: Settings,
        store=None,
        factories: Optional[Dict[str, AdapterFactory]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.factories = dict(DEFAULT_FACTORIES)
        if factories:
            self.factories.update(factories)

    def validate_credential(self, provider: str, secret: Optional[str]) -> bool:
        try:
            self._check_provider(provider)
            if provider not in LOCAL_PROVIDERS and not secret:
                raise MissingCredentialError(provider)
            adapter = self.factories[provider](self.settings, secret)
            adapter.validate()
        except Exception as exc:
            logger.warning("[%s] credential validation failed: %s", provider, exc)
            return False
        logger.info("[%s] credential validated", provider)
        return True

    def stream_chat(
        self,
        provider: str,
        messages: Iterable[Message],
        system_instruction: str,
        on_chunk: Optional[ChunkCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        adapter = self.adapter_for(provider)
        return adapter.stream(messages, system_instruction, on_chunk=on_chunk, cancel=cancel)

    def adapter_for(self, provider: str) -> ChatAdapter:
        self._check_provider(provider)
        secret = self.resolve_secret(provider)
        if provider not in LOCAL_PROVIDERS and not secret:
            raise MissingCredentialError(provider)
        return self.factories[provider](self.settings, secret)

    def resolve_secret(self, provider: str) -> Optional[str]:
        secret = self.store.get_provider_key(provider) if self.store is not None else None
        return secret or secret_from_env(provider)

    def _check_provider(self, provider: str) -> None:
        if provider not in self.factories:
            raise UnknownProviderError(f"Unsupported provider: {provider}")
