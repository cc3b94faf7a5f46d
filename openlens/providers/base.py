"""
OpenLens Provider Base - Chat-completion backends.

This module defines the interface that all LLM backends implement, the
concrete HTTP backends (Ollama, OpenAI-compatible, Anthropic), and a factory
for creating backend instances from configuration.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import anthropic
import httpx
import openai

from openlens.validation.config import Config

logger = logging.getLogger(__name__)

LOCAL = "local"
CLOUD = "cloud"


class GatewayError(Exception):
    """Raised when a backend answers with a non-success HTTP status, or cannot be reached (status 0)."""

    def __init__(self, provider: str, status_code: int, body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider} error {status_code}: {body[:200]}" if body else f"{provider} error {status_code}")


class ToolsUnsupportedError(GatewayError):
    """The backend rejected a request because it carried structured tools."""


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResponse:
    """Response from an LLM backend."""

    content: str
    processing_location: str
    tool_calls: Optional[List[ToolCall]] = None
    token_usage: int = 0
    model: str = ""


class Provider(ABC):
    """
    Abstract base class for LLM backends.

    Backends that set ``supports_native_tools`` accept a ``tools`` list in
    the structured request; all others are content-only.

    Example:
        >>> class EchoProvider(Provider):
        ...     provider_name = "echo"
        ...     def chat(self, messages, tools=None):
        ...         return ChatResponse(content=messages[-1]["content"], processing_location=LOCAL)
    """

    provider_name: str = ""
    is_local: bool = False
    supports_native_tools: bool = False

    def __init__(self, model: str, config: Config, client: Optional[httpx.Client] = None):
        """
        Initialize the provider.

        Args:
            model: The model identifier.
            config: OpenLens configuration.
            client: HTTP client; one is created from the configured timeout if omitted.
        """
        self.model = model
        self.config = config
        self._client = client or httpx.Client(timeout=config.agent.timeout)

    @property
    def processing_location(self) -> str:
        """Where this backend processes data: a classification, not a measurement."""
        return LOCAL if self.is_local else CLOUD

    @abstractmethod
    def chat(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatResponse:
        """
        Run one chat completion.

        Args:
            messages: Conversation as ``{"role", "content"}`` dicts.
            tools: Structured tool schemas; only honoured by native backends.

        Returns:
            ChatResponse with the reply.

        Raises:
            GatewayError: On a non-success HTTP status.
        """
        pass

    def validate_connection(self) -> bool:
        """Return True if the backend looks usable."""
        return self.get_api_key() is not None

    def get_api_key(self) -> Optional[str]:
        return self.config.get_api_key(self.provider_name)

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            return self._client.post(
                url, json=payload, headers={"Content-Type": "application/json", **(headers or {})},
            )
        except httpx.TransportError as exc:
            raise GatewayError(self.provider_name, 0, str(exc)) from exc

    def _check(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise GatewayError(self.provider_name, response.status_code, response.text)

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class OllamaProvider(Provider):
    """Self-hosted Ollama backend with native structured tool calling."""

    provider_name = "ollama"
    is_local = True
    supports_native_tools = True

    DEFAULT_BASE = "http://localhost:11434"
    # Status codes Ollama uses when a model cannot take a tools array
    TOOLS_REJECTED_STATUSES = (400,)

    @property
    def base_url(self) -> str:
        provider_config = self.config.get_provider_config("ollama")
        if provider_config and provider_config.api_base:
            return provider_config.api_base.rstrip("/")
        return self.DEFAULT_BASE

    def chat(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatResponse:
        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "stream": False}
        if tools:
            payload["tools"] = tools

        response = self._post(f"{self.base_url}/api/chat", payload)
        if tools and response.status_code in self.TOOLS_REJECTED_STATUSES:
            raise ToolsUnsupportedError(self.provider_name, response.status_code, response.text)
        self._check(response)

        data = self._json(response)
        message = data.get("message") or {}
        return ChatResponse(
            content=message.get("content") or "",
            processing_location=self.processing_location,
            tool_calls=self._native_tool_calls(message.get("tool_calls")),
            token_usage=data.get("eval_count") or 0,
            model=data.get("model", self.model),
        )

    @staticmethod
    def _native_tool_calls(raw: Any) -> Optional[List[ToolCall]]:
        if not raw:
            return None
        calls = []
        for item in raw:
            fn = item.get("function", {}) if isinstance(item, dict) else {}
            name = fn.get("name")
            if not name:
                continue
            args = fn.get("arguments") or {}
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except ValueError:
                    args = {}
            calls.append(ToolCall(name=name, arguments=args if isinstance(args, dict) else {}))
        return calls or None

    def validate_connection(self) -> bool:
        """Validate Ollama connection."""
        try:
            response = self._client.get(f"{self.base_url}/api/tags", timeout=3)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def list_models(self) -> List[Dict[str, Any]]:
        """Models installed on the local Ollama server."""
        response = self._client.get(f"{self.base_url}/api/tags")
        self._check(response)
        return self._json(response).get("models", [])


class OpenAICompatibleProvider(Provider):
    """
    Base for hosted backends that expose an OpenAI-compatible chat completions API.

    Subclasses only need to set _base_url and provider_name.
    """

    _base_url: str = ""

    def _extra_headers(self) -> Dict[str, str]:
        return {}

    def chat(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatResponse:
        api_key = self.get_api_key()
        if not api_key:
            raise ValueError(f"{self.provider_name} API key not configured")

        provider_config = self.config.get_provider_config(self.provider_name)
        base_url = provider_config.api_base if provider_config and provider_config.api_base else self._base_url

        client = openai.OpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers=self._extra_headers() or None,
            http_client=self._client,
            max_retries=0,
        )
        try:
            response = client.chat.completions.create(
                model=self.model.split("/")[-1] if self.provider_name == "openai" else self.model,
                messages=messages,
                max_tokens=self.config.agent.max_tokens,
            )
        except openai.APIStatusError as exc:
            raise GatewayError(self.provider_name, exc.status_code, exc.response.text)
        except openai.APIConnectionError as exc:
            raise GatewayError(self.provider_name, 0, str(exc))

        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        usage = getattr(response, "usage", None)
        return ChatResponse(
            content=getattr(message, "content", None) or "",
            processing_location=self.processing_location,
            token_usage=getattr(usage, "total_tokens", 0) or 0,
            model=getattr(response, "model", None) or self.model,
        )


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI hosted API."""

    provider_name = "openai"
    _base_url = "https://api.openai.com/v1"


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter - unified API for hosted open and commercial models."""

    provider_name = "openrouter"
    _base_url = "https://openrouter.ai/api/v1"

    def _extra_headers(self) -> Dict[str, str]:
        return {"HTTP-Referer": "https://openlens.dev", "X-Title": "OpenLens"}


class AnthropicProvider(Provider):
    """Anthropic messages API."""

    provider_name = "anthropic"
    _base_url = "https://api.anthropic.com"

    def chat(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatResponse:
        api_key = self.get_api_key()
        if not api_key:
            raise ValueError("Anthropic API key not configured")

        # The system prompt travels outside the message list
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        chat_messages = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]

        client = anthropic.Anthropic(
            api_key=api_key,
            base_url=self._base_url,
            http_client=self._client,
            max_retries=0,
        )
        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=self.config.agent.max_tokens,
                system=system or anthropic.NOT_GIVEN,
                messages=chat_messages,
            )
        except anthropic.APIStatusError as exc:
            raise GatewayError(self.provider_name, exc.status_code, exc.response.text)
        except anthropic.APIConnectionError as exc:
            raise GatewayError(self.provider_name, 0, str(exc))

        blocks = getattr(response, "content", None) or []
        text = "".join(getattr(b, "text", "") or "" for b in blocks if getattr(b, "type", "") == "text")
        usage = getattr(response, "usage", None)
        return ChatResponse(
            content=text,
            processing_location=self.processing_location,
            token_usage=(getattr(usage, "input_tokens", 0) or 0) + (getattr(usage, "output_tokens", 0) or 0),
            model=getattr(response, "model", None) or self.model,
        )


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[Provider]] = {
        "ollama": OllamaProvider,
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "openrouter": OpenRouterProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[Provider]) -> None:
        """Register a new provider."""
        cls._providers[name] = provider_class

    @classmethod
    def create(cls, config: Config, client: Optional[httpx.Client] = None) -> Provider:
        """
        Create the backend selected in ``agent.provider``.

        Raises:
            ValueError: If the provider is not recognized.
        """
        agent = config.agent
        if agent.provider not in cls._providers:
            raise ValueError(f"Unknown provider: {agent.provider}")

        model = agent.model
        if not model:
            provider_config = config.get_provider_config(agent.provider)
            model = provider_config.default_model if provider_config and provider_config.default_model else ""

        return cls._providers[agent.provider](model=model, config=config, client=client)

    @classmethod
    def is_local(cls, name: str) -> bool:
        provider_class = cls._providers.get(name)
        return bool(provider_class and provider_class.is_local)

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
