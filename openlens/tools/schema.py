"""Data models for built-in tools, MCP servers, tool results and call records."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Capability(str, Enum):
    """Category of access a tool needs before it may run."""

    READ = "read"
    ACT = "act"
    SEND_EXTERNAL = "send-external"


class ToolParam(BaseModel):
    """A single parameter for a tool."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


class BuiltinTool(BaseModel):
    """Statically known tool executed through the host executor."""

    name: str
    description: str
    capability: Capability
    is_write_action: bool = False
    command: str  # host executor command
    params: List[ToolParam] = Field(default_factory=list)

    def parameters_schema(self) -> Dict[str, Any]:
        """JSON schema for the tool arguments."""
        return {
            "type": "object",
            "properties": {p.name: {"type": p.type, "description": p.description} for p in self.params},
            "required": [p.name for p in self.params if p.required],
        }


class McpTool(BaseModel):
    """Tool exposed by a remote MCP server."""

    name: str
    description: str = ""
    server_id: str = ""
    server_name: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    capability: Capability = Capability.ACT

    def parameters_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": self.input_schema.get("properties", {}) or {},
            "required": self.input_schema.get("required", []) or [],
        }


class McpServer(BaseModel):
    """A registered remote tool provider."""

    id: str
    name: str
    url: str
    endpoint: Optional[str] = None  # resolved JSON-RPC endpoint
    enabled: bool = True
    status: str = "disconnected"  # connected, disconnected, error
    tools: List[McpTool] = Field(default_factory=list)
    last_connected: Optional[datetime] = None
    error: Optional[str] = None


class ToolResult(BaseModel):
    """Outcome of dispatching one tool call."""

    tool_name: str
    success: bool = False
    data: Any = None
    summary: str = ""
    error: Optional[str] = None
    origin: str = "unknown"
    denied: bool = False
    duration_ms: int = 0

    def payload(self) -> Dict[str, Any]:
        """The part of the result that is fed back to the model."""
        if not self.success:
            return {"success": False, "error": self.error}
        return {"success": True, "data": self.data if self.data is not None else self.summary}

    def serialized(self) -> str:
        return json.dumps(self.payload(), default=str)


class ToolCallRecord(BaseModel):
    """One resolved tool invocation inside a task, kept for display and replay."""

    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: str = ""  # truncated for display
    iteration: int = 0
    status: str = "completed"  # completed, failed, skipped
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
