"""
OpenLens providers module.

This module provides the LLM backends and the gateway that negotiates
tool calling with them.
"""

from openlens.providers.base import (
    ChatResponse,
    GatewayError,
    Provider,
    ProviderFactory,
    ToolCall,
    ToolsUnsupportedError,
)
from openlens.providers.gateway import LLMGateway

__all__ = [
    "ChatResponse",
    "GatewayError",
    "LLMGateway",
    "Provider",
    "ProviderFactory",
    "ToolCall",
    "ToolsUnsupportedError",
]
