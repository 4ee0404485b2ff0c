"""
Sandbox Agent Provider Base - model backends behind the chat function.

This module defines the interface every LLM provider implements, a factory
that picks a provider from a model name, and ``make_chat_fn`` which adapts a
provider to the ``chat_fn(cancel_event, model, prompt, on_token)`` contract
the orchestration loop consumes.

All providers stream over httpx, so no vendor SDK is required.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Type

import httpx

from sandbox_agent.validation.config import Config

logger = logging.getLogger(__name__)

TokenSink = Callable[[str], None]


class Provider(ABC):
    """
    Abstract base class for LLM providers.

    Example:
        >>> provider = ProviderFactory.create("gpt-4o", config)
        >>> reply = provider.chat("hello", on_token=print)
    """

    def __init__(self, model: str, config: Config, client: Optional[httpx.Client] = None):
        """
        Initialize the provider.

        Args:
            model: The model identifier.
            config: Agent configuration.
            client: Optional httpx client (tests inject a mock transport).
        """
        self.model = model
        self.config = config
        self._client = client

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""

    @abstractmethod
    def chat(self, prompt: str, on_token: Optional[TokenSink] = None) -> str:
        """
        Send one prompt and stream the reply.

        Args:
            prompt: The full query.
            on_token: Called with each token as it arrives.

        Returns:
            The complete reply text.
        """

    def get_api_key(self) -> Optional[str]:
        """Get the API key for this provider."""
        return self.config.get_api_key(self.provider_name)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.agent.timeout)
        return self._client


def iter_sse_deltas(lines: Iterable[str]) -> Iterator[str]:
    """Yield content deltas from an OpenAI-style server-sent event stream."""
    for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return
        if not payload:
            continue
        chunk = json.loads(payload)
        for choice in chunk.get("choices", []):
            delta = (choice.get("delta") or {}).get("content")
            if delta:
                yield delta


class OpenAICompatibleProvider(Provider):
    """
    Base for providers that expose an OpenAI-compatible chat completions API.

    Subclasses only need to set _base_url and provider_name.
    """

    _base_url: str = ""

    def _endpoint(self) -> str:
        provider_config = self.config.get_provider_config(self.provider_name)
        if provider_config and provider_config.api_base:
            return provider_config.api_base.rstrip("/")
        return self._base_url

    def chat(self, prompt: str, on_token: Optional[TokenSink] = None) -> str:
        api_key = self.get_api_key()
        if not api_key:
            raise ValueError(f"{self.provider_name} API key not configured")

        settings = self.config.agent
        parts: List[str] = []
        with self._http().stream(
            "POST",
            f"{self._endpoint()}/chat/completions",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": settings.max_tokens,
                "temperature": settings.temperature,
                "stream": True,
            },
        ) as response:
            response.raise_for_status()
            for token in iter_sse_deltas(response.iter_lines()):
                parts.append(token)
                if on_token:
                    on_token(token)
        return "".join(parts)


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI chat completions."""

    _base_url = "https://api.openai.com/v1"

    @property
    def provider_name(self) -> str:
        return "openai"


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter - unified API for 100+ open and commercial models."""

    _base_url = "https://openrouter.ai/api/v1"

    @property
    def provider_name(self) -> str:
        return "openrouter"


class TogetherProvider(OpenAICompatibleProvider):
    """Together AI - fast inference for open-source models."""

    _base_url = "https://api.together.xyz/v1"

    @property
    def provider_name(self) -> str:
        return "together"


class GroqProvider(OpenAICompatibleProvider):
    """Groq - ultra-fast inference for open models."""

    _base_url = "https://api.groq.com/openai/v1"

    @property
    def provider_name(self) -> str:
        return "groq"


class OllamaProvider(Provider):
    """Ollama local provider."""

    @property
    def provider_name(self) -> str:
        return "ollama"

    def chat(self, prompt: str, on_token: Optional[TokenSink] = None) -> str:
        provider_config = self.config.get_provider_config("ollama")
        base_url = (
            provider_config.api_base
            if provider_config and provider_config.api_base
            else "http://localhost:11434"
        )

        parts: List[str] = []
        with self._http().stream(
            "POST",
            f"{base_url}/api/chat",
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": True,
            },
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if not line.strip():
                    continue
                chunk = json.loads(line)
                token = (chunk.get("message") or {}).get("content", "")
                if token:
                    parts.append(token)
                    if on_token:
                        on_token(token)
                if chunk.get("done"):
                    break
        return "".join(parts)


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[Provider]] = {
        "openai": OpenAIProvider,
        "ollama": OllamaProvider,
        "openrouter": OpenRouterProvider,
        "together": TogetherProvider,
        "groq": GroqProvider,
    }

    @classmethod
    def create(cls, model: str, config: Config, client: Optional[httpx.Client] = None) -> Provider:
        """
        Create a provider instance for the given model.

        Args:
            model: Model identifier (e.g., "groq/llama-3.3-70b-versatile" or "gpt-4o").
            config: Agent configuration.

        Returns:
            Provider instance.

        Raises:
            ValueError: If the provider is not recognized.
        """
        if "/" in model:
            provider_name, model_name = model.split("/", 1)
            if provider_name not in cls._providers:
                provider_name, model_name = cls._infer_provider(model), model
        else:
            provider_name = cls._infer_provider(model)
            model_name = model

        if provider_name not in cls._providers:
            raise ValueError(f"Unknown provider: {provider_name}")

        return cls._providers[provider_name](model=model_name, config=config, client=client)

    @classmethod
    def _infer_provider(cls, model: str) -> str:
        """Infer the provider from the model name."""
        model_lower = model.lower()

        if model_lower.startswith(("gpt", "o1", "o3")):
            return "openai"
        elif model_lower.startswith(("llama", "deepseek")):
            return "groq"
        elif model_lower.startswith(("mixtral", "qwen")):
            return "together"
        elif model_lower in ("codellama", "phi", "phi-2"):
            return "ollama"

        # Default to openrouter (broadest model catalog)
        return "openrouter"

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())


def make_chat_fn(config: Config, client: Optional[httpx.Client] = None):
    """
    Adapt the provider layer to the loop's chat function contract.

    Providers are cached per model so the HTTP client is reused across
    iterations.
    """
    providers: Dict[str, Provider] = {}

    def chat_fn(
        cancel_event: threading.Event, model: str, prompt: str, on_token: TokenSink
    ) -> str:
        provider = providers.get(model)
        if provider is None:
            provider = ProviderFactory.create(model, config, client=client)
            providers[model] = provider
        logger.debug("calling %s/%s", provider.provider_name, provider.model)
        return provider.chat(prompt, on_token=on_token)

    return chat_fn
