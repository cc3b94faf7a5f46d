"""LLM gateway - one chat call across backends, with tool-calling negotiation."""

import logging
from typing import Any, Callable, Dict, List, Optional

from openlens.providers.base import ChatResponse, Provider, ToolCall, ToolsUnsupportedError
from openlens.providers.fallback import parse_tool_call, with_tool_catalog

logger = logging.getLogger(__name__)

ToolCallParser = Callable[[str], Optional[ToolCall]]


class LLMGateway:
    """
    Uniform ``chat(messages, tools)`` over any backend.

    Native backends get the structured ``tools`` array. If such a backend
    rejects it, the same turn is retried once with the tools removed and a
    textual catalog appended to the system message. Content-only backends
    always get the textual catalog. Free-text replies are scanned with
    ``parser``; pass ``parser=None`` to trust only structured tool calls.
    """

    def __init__(self, provider: Provider, parser: Optional[ToolCallParser] = parse_tool_call):
        self.provider = provider
        self.parser = parser

    @property
    def processing_location(self) -> str:
        return self.provider.processing_location

    @property
    def is_local(self) -> bool:
        return self.provider.is_local

    @property
    def provider_name(self) -> str:
        return self.provider.provider_name

    def chat(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatResponse:
        if not tools:
            return self.provider.chat(messages)

        if not self.provider.supports_native_tools:
            return self._chat_with_catalog(messages, tools)

        try:
            response = self.provider.chat(messages, tools=tools)
        except ToolsUnsupportedError as exc:
            logger.info("%s rejected structured tools (%s), retrying with prompt-based tools",
                        self.provider.provider_name, exc.status_code)
            return self._chat_with_catalog(messages, tools)

        if response.tool_calls:
            return response
        return self._scan(response)

    def _chat_with_catalog(self, messages: List[Dict[str, str]], tools: List[Dict[str, Any]]) -> ChatResponse:
        return self._scan(self.provider.chat(with_tool_catalog(messages, tools)))

    def _scan(self, response: ChatResponse) -> ChatResponse:
        if self.parser is None:
            return response
        call = self.parser(response.content)
        if call is None:
            return response
        logger.debug("Parsed tool call %s from reply text", call.name)
        return ChatResponse(
            content="",
            processing_location=response.processing_location,
            tool_calls=[call],
            token_usage=response.token_usage,
            model=response.model,
        )
