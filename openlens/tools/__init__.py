"""
OpenLens tools module.

Built-in and remote tool definitions, the registry that resolves them, and
the dispatcher that runs them behind the permission guard.
"""

from openlens.tools.schema import (
    BuiltinTool,
    Capability,
    McpServer,
    McpTool,
    ToolCallRecord,
    ToolParam,
    ToolResult,
)

__all__ = [
    "BuiltinTool",
    "Capability",
    "McpServer",
    "McpTool",
    "ToolCallRecord",
    "ToolParam",
    "ToolResult",
]
