"""Tests for the LLM gateway and HTTP backends."""

import json

import httpx
import pytest

from openlens.providers.base import (
    CLOUD,
    LOCAL,
    AnthropicProvider,
    GatewayError,
    OllamaProvider,
    OpenAIProvider,
    ProviderFactory,
)
from openlens.providers.gateway import LLMGateway
from openlens.tools.registry import ToolRegistry
from openlens.validation.config import Config


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _config(**agent):
    return Config(global_config={
        "agent": {"provider": "ollama", "model": "llama3", **agent},
        "providers": {"openai": {"api_key": "sk-test"}, "anthropic": {"api_key": "ak-test"}},
    })


MESSAGES = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "What does the pro plan cost?"},
]


class TestOllamaNegotiation:
    def setup_method(self):
        self.tools = ToolRegistry().schemas()
        self.requests = []

    def test_native_tool_calls(self):
        def handler(request):
            self.requests.append(json.loads(request.content))
            return httpx.Response(200, json={
                "model": "llama3",
                "message": {
                    "content": "",
                    "tool_calls": [{"function": {"name": "find_on_page", "arguments": {"query": "pro"}}}],
                },
            })

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)))
        response = gateway.chat(MESSAGES, self.tools)

        assert response.processing_location == LOCAL
        assert response.tool_calls[0].name == "find_on_page"
        assert response.tool_calls[0].arguments == {"query": "pro"}
        assert "tools" in self.requests[0]

    def test_string_arguments_are_decoded(self):
        def handler(request):
            return httpx.Response(200, json={"message": {
                "content": "",
                "tool_calls": [{"function": {"name": "navigate", "arguments": '{"url": "https://b.example"}'}}],
            }})

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)))
        assert gateway.chat(MESSAGES, self.tools).tool_calls[0].arguments == {"url": "https://b.example"}

    def test_rejected_tools_retry_with_catalog(self):
        def handler(request):
            body = json.loads(request.content)
            self.requests.append(body)
            if "tools" in body:
                return httpx.Response(400, json={"error": "model does not support tools"})
            return httpx.Response(200, json={"message": {
                "content": 'I will search. {"tool": "find_on_page", "args": {"query": "pro"}}',
            }})

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)))
        response = gateway.chat(MESSAGES, self.tools)

        assert len(self.requests) == 2
        assert "tools" not in self.requests[1]
        system = self.requests[1]["messages"][0]
        assert system["role"] == "system"
        assert "Available tools:" in system["content"]
        assert response.tool_calls[0].name == "find_on_page"
        assert response.content == ""

    def test_plain_reply_after_retry_is_final_answer(self):
        def handler(request):
            if "tools" in json.loads(request.content):
                return httpx.Response(400, text="bad request")
            return httpx.Response(200, json={"message": {"content": "It costs 20 dollars."}})

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)))
        response = gateway.chat(MESSAGES, self.tools)
        assert response.tool_calls is None
        assert response.content == "It costs 20 dollars."

    def test_native_reply_text_is_scanned(self):
        def handler(request):
            return httpx.Response(200, json={"message": {"content": '{"tool": "read_page", "args": {}}'}})

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)))
        assert gateway.chat(MESSAGES, self.tools).tool_calls[0].name == "read_page"

    def test_parser_can_be_bypassed(self):
        def handler(request):
            return httpx.Response(200, json={"message": {"content": '{"tool": "read_page", "args": {}}'}})

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)), parser=None)
        response = gateway.chat(MESSAGES, self.tools)
        assert response.tool_calls is None

    def test_server_error_propagates(self):
        gateway = LLMGateway(OllamaProvider(
            "llama3", _config(), client=_client(lambda r: httpx.Response(500, text="boom")),
        ))
        with pytest.raises(GatewayError) as exc_info:
            gateway.chat(MESSAGES)
        assert exc_info.value.status_code == 500

    def test_unreachable_backend_is_gateway_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(handler)))
        with pytest.raises(GatewayError) as exc_info:
            gateway.chat(MESSAGES)
        assert exc_info.value.status_code == 0
        assert "connection refused" in str(exc_info.value)

    def test_missing_fields_are_empty_content(self):
        gateway = LLMGateway(OllamaProvider("llama3", _config(), client=_client(lambda r: httpx.Response(200, json={}))))
        response = gateway.chat(MESSAGES)
        assert response.content == ""
        assert response.tool_calls is None


class TestHostedBackends:
    def setup_method(self):
        self.tools = ToolRegistry().schemas()
        self.requests = []

    def test_openai_is_content_only(self):
        def handler(request):
            self.requests.append(json.loads(request.content))
            assert request.url.path == "/v1/chat/completions"
            assert request.headers["Authorization"] == "Bearer sk-test"
            return httpx.Response(200, json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "created": 0,
                "model": "gpt-4o-mini",
                "choices": [{
                    "index": 0,
                    "finish_reason": "stop",
                    "message": {"role": "assistant", "content": '{"tool": "read_page", "args": {}}'},
                }],
                "usage": {"prompt_tokens": 30, "completion_tokens": 12, "total_tokens": 42},
            })

        gateway = LLMGateway(OpenAIProvider("gpt-4o-mini", _config(), client=_client(handler)))
        response = gateway.chat(MESSAGES, self.tools)

        assert "tools" not in self.requests[0]
        assert self.requests[0]["model"] == "gpt-4o-mini"
        assert "Available tools:" in self.requests[0]["messages"][0]["content"]
        assert response.processing_location == CLOUD
        assert response.tool_calls[0].name == "read_page"
        assert response.token_usage == 42

    def test_openai_error_status_becomes_gateway_error(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "rate limited"}})

        provider = OpenAIProvider("gpt-4o-mini", _config(), client=_client(handler))
        with pytest.raises(GatewayError) as exc_info:
            provider.chat(MESSAGES)
        assert exc_info.value.status_code == 429

    def test_openai_requires_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        provider = OpenAIProvider("gpt-4o-mini", Config(), client=_client(lambda r: httpx.Response(200)))
        with pytest.raises(ValueError):
            provider.chat(MESSAGES)

    def test_anthropic_splits_system_prompt(self):
        def handler(request):
            assert request.url.path == "/v1/messages"
            assert request.headers["x-api-key"] == "ak-test"
            self.requests.append(json.loads(request.content))
            return httpx.Response(200, json={
                "id": "msg_1",
                "type": "message",
                "role": "assistant",
                "model": "claude",
                "stop_reason": "end_turn",
                "content": [{"type": "text", "text": "Twenty dollars."}],
                "usage": {"input_tokens": 10, "output_tokens": 3},
            })

        gateway = LLMGateway(AnthropicProvider("claude", _config(), client=_client(handler)))
        response = gateway.chat(MESSAGES)

        assert self.requests[0]["system"] == "You are helpful."
        assert [m["role"] for m in self.requests[0]["messages"]] == ["user"]
        assert response.content == "Twenty dollars."
        assert response.token_usage == 13

    def test_anthropic_error_status_becomes_gateway_error(self):
        def handler(request):
            return httpx.Response(500, json={"type": "error", "error": {"type": "api_error", "message": "boom"}})

        provider = AnthropicProvider("claude", _config(), client=_client(handler))
        with pytest.raises(GatewayError) as exc_info:
            provider.chat(MESSAGES)
        assert exc_info.value.status_code == 500


class TestProviderFactory:
    def test_creates_configured_provider(self):
        provider = ProviderFactory.create(_config(), client=_client(lambda r: httpx.Response(200)))
        assert isinstance(provider, OllamaProvider)
        assert provider.model == "llama3"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            ProviderFactory.create(_config(provider="nope"))

    def test_is_local(self):
        assert ProviderFactory.is_local("ollama") is True
        assert ProviderFactory.is_local("openai") is False

    def test_ollama_list_models(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "llama3:8b"}]})

        provider = OllamaProvider("llama3", _config(), client=_client(handler))
        assert provider.list_models() == [{"name": "llama3:8b"}]
        assert provider.validate_connection() is True
