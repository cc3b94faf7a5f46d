"""Tool dispatcher - permission-gated execution of built-in and remote tools."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from openlens.core.timeouts import first_settled
from openlens.host.base import FILL_FIELDS, NAVIGATE, READ_CONTENT, HostError, HostExecutor, HostRequest
from openlens.mcp.client import McpClient, McpError
from openlens.permissions.guard import PermissionGuard
from openlens.session.sensitivity import LOW, MEDIUM
from openlens.tools.registry import ToolRegistry, UnknownTool
from openlens.tools.schema import BuiltinTool, McpTool, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_READ_TOKENS = 2000


class ToolDispatcher:
    """
    Executes resolved tool calls.

    Every built-in or remote tool goes through ``PermissionGuard.ensure``
    for its declared capability before anything runs. Failures come back as
    ``ToolResult(success=False)`` so the model can correct itself.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        guard: PermissionGuard,
        host: HostExecutor,
        mcp_client: Optional[McpClient] = None,
        tool_timeout: float = 30.0,
    ):
        self.registry = registry
        self.guard = guard
        self.host = host
        self.mcp_client = mcp_client or McpClient()
        self.tool_timeout = tool_timeout

    # ── Execution ─────────────────────────────────────────────────────────

    def dispatch(self, tool_name: str, arguments: Optional[Dict[str, Any]], handle: str) -> ToolResult:
        tool = self.registry.resolve(tool_name)
        arguments = arguments or {}

        if isinstance(tool, UnknownTool):
            return ToolResult(tool_name=tool_name, error=f"Unknown tool: {tool_name}")
        if isinstance(tool, BuiltinTool):
            return self._run_builtin(tool, arguments, handle)
        return self._run_remote(tool, arguments, handle)

    def _run_builtin(self, tool: BuiltinTool, arguments: Dict[str, Any], handle: str) -> ToolResult:
        origin = self.host.origin(handle)
        granted = self.guard.ensure(
            tool.capability, origin, handle,
            f'Tool "{tool.name}": {tool.description}',
            MEDIUM if tool.is_write_action else LOW,
        )
        if not granted:
            return ToolResult(tool_name=tool.name, denied=True, error="Permission denied", origin=origin)

        request = self._build_request(tool, arguments)
        t0 = time.perf_counter()
        try:
            response = first_settled(lambda: self.host.invoke(handle, request), self.tool_timeout)
        except HostError as exc:
            return ToolResult(tool_name=tool.name, error=str(exc), origin=origin)
        elapsed_ms = int((time.perf_counter() - t0) * 1000)

        if response is None:
            return ToolResult(tool_name=tool.name, error=f"Timed out after {self.tool_timeout:g}s",
                              origin=origin, duration_ms=elapsed_ms)
        if not response.success:
            return ToolResult(tool_name=tool.name, error=response.error or "unknown", origin=origin,
                              duration_ms=elapsed_ms)

        if tool.command == NAVIGATE:
            self.guard.revoke_page_grants(handle)

        data = response.data if response.data is not None else response.summary
        return ToolResult(
            tool_name=tool.name,
            success=True,
            data=data,
            summary=self.summarize(response.summary or json.dumps(data, default=str)),
            origin=origin,
            duration_ms=elapsed_ms,
        )

    def _run_remote(self, tool: McpTool, arguments: Dict[str, Any], handle: str) -> ToolResult:
        server = self.registry.servers.server_for_tool(tool)
        if server is None:
            return ToolResult(tool_name=tool.name, error=f"Unknown tool: {tool.name}")

        origin = urlparse(server.url).hostname or server.url
        granted = self.guard.ensure(
            tool.capability, origin, handle,
            f'Remote tool "{tool.name}" on {server.name}: {tool.description}',
            MEDIUM,
        )
        if not granted:
            return ToolResult(tool_name=tool.name, denied=True, error="Permission denied", origin=origin)

        logger.info('Calling MCP tool "%s" on server "%s"', tool.name, server.name)
        t0 = time.perf_counter()
        try:
            output = first_settled(lambda: self.mcp_client.call_tool(server, tool.name, arguments), self.tool_timeout)
        except McpError as exc:
            return ToolResult(tool_name=tool.name, error=f"MCP error: {exc}", origin=origin)
        elapsed_ms = int((time.perf_counter() - t0) * 1000)

        if output is None:
            return ToolResult(tool_name=tool.name, error=f"Timed out after {self.tool_timeout:g}s",
                              origin=origin, duration_ms=elapsed_ms)
        return ToolResult(
            tool_name=tool.name,
            success=True,
            data=output,
            summary=self.summarize(output),
            origin=origin,
            duration_ms=elapsed_ms,
        )

    @staticmethod
    def _build_request(tool: BuiltinTool, arguments: Dict[str, Any]) -> HostRequest:
        params = dict(arguments)
        if tool.command == FILL_FIELDS and isinstance(params.get("fields"), str):
            try:
                params["fields"] = json.loads(params["fields"])
            except ValueError:
                params["fields"] = {}

        max_tokens = None
        if tool.command == READ_CONTENT:
            try:
                max_tokens = int(params.get("max_tokens") or DEFAULT_READ_TOKENS)
            except (TypeError, ValueError):
                max_tokens = DEFAULT_READ_TOKENS
        return HostRequest(command=tool.command, params=params, max_tokens=max_tokens)

    # ── Summarization ─────────────────────────────────────────────────────

    @staticmethod
    def summarize(output: str, max_chars: int = 500) -> str:
        """Create a short summary of tool output for display."""
        if not output:
            return "(empty output)"
        if len(output) <= max_chars:
            return output
        head = output[: max_chars // 2]
        tail = output[-(max_chars // 2) :]
        omitted = len(output) - max_chars
        return f"{head}\n... [{omitted} chars omitted] ...\n{tail}"
