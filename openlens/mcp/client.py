"""MCP server communication via JSON-RPC 2.0 over HTTP."""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from openlens.tools.schema import McpServer, McpTool

logger = logging.getLogger(__name__)

_SSE_DATA = re.compile(r"^data:\s*(.+)$", re.MULTILINE)


class McpError(Exception):
    """Raised when MCP communication fails."""


def parse_response(text: str) -> Dict[str, Any]:
    """Decode a reply sent either as plain JSON or as a single text/event-stream event."""
    match = _SSE_DATA.search(text)
    payload = match.group(1) if match else text
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise McpError(f"Malformed MCP response: {exc}")
    if not isinstance(data, dict):
        raise McpError("Malformed MCP response: expected a JSON object")
    return data


class McpClient:
    """
    Talk to remote MCP tool servers.

    The JSON-RPC endpoint of a server is found by probing ``<base>/mcp`` and
    then ``<base>`` with an ``initialize`` request; the first that answers
    is remembered for every later call to that server.
    """

    PROTOCOL_VERSION = "2024-11-05"
    HEADERS = {
        "Content-Type": "application/json",
        "Accept": "application/json, text/event-stream",
    }

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
        probe_path: str = "/mcp",
    ):
        self._client = client or httpx.Client(timeout=timeout)
        self.probe_path = probe_path
        self._request_id = 0
        self._endpoints: Dict[str, str] = {}
        self._server_info: Dict[str, Dict[str, Any]] = {}

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    def _post(self, endpoint: str, method: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        self._request_id += 1
        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": self._request_id, "method": method}
        if params is not None:
            request["params"] = params
        try:
            return self._client.post(endpoint, json=request, headers=self.HEADERS)
        except httpx.HTTPError as exc:
            raise McpError(f"MCP transport error at {endpoint}: {exc}")

    def send(self, endpoint: str, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the result."""
        response = self._post(endpoint, method, params)
        if not response.is_success:
            raise McpError(f"{method} failed: HTTP {response.status_code}")

        data = parse_response(response.text)
        if "error" in data:
            err = data["error"] or {}
            raise McpError(f"MCP error {err.get('code')}: {err.get('message')}")
        return data.get("result") or {}

    # ── MCP Protocol ──────────────────────────────────────────────────────

    def _initialize_params(self) -> Dict[str, Any]:
        return {
            "protocolVersion": self.PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "openlens", "version": "1.0"},
        }

    def resolve_endpoint(self, base_url: str) -> str:
        """Find the JSON-RPC endpoint behind ``base_url``."""
        if base_url in self._endpoints:
            return self._endpoints[base_url]

        candidates = [base_url.rstrip("/") + self.probe_path, base_url]
        errors: List[str] = []
        for candidate in candidates:
            logger.debug("Probing MCP endpoint %s", candidate)
            try:
                result = self.send(candidate, "initialize", self._initialize_params())
            except McpError as exc:
                errors.append(f"{candidate}: {exc}")
                continue
            self._endpoints[base_url] = candidate
            self._server_info[candidate] = result.get("serverInfo") or {}
            logger.info("Resolved MCP endpoint %s", candidate)
            return candidate

        raise McpError(f"Could not find MCP endpoint for {base_url}: {'; '.join(errors)}")

    def list_tools(self, endpoint: str) -> List[Dict[str, Any]]:
        """Fetch the tool list from the MCP server."""
        return self.send(endpoint, "tools/list").get("tools", [])

    def connect(self, url: str) -> McpServer:
        """Discover the endpoint and tool list of the server at ``url``."""
        endpoint = self.resolve_endpoint(url)
        info = self._server_info.get(endpoint) or {}
        name = info.get("name") or "Unknown"
        server_id = f"mcp_{name}_{int(time.time() * 1000)}"

        tools = [
            McpTool(
                name=raw["name"],
                description=raw.get("description", "") or "",
                server_id=server_id,
                server_name=name,
                input_schema=raw.get("inputSchema") or {"type": "object", "properties": {}, "required": []},
            )
            for raw in self.list_tools(endpoint)
            if raw.get("name")
        ]

        return McpServer(
            id=server_id,
            name=name,
            url=url,
            endpoint=endpoint,
            enabled=True,
            status="connected",
            tools=tools,
            last_connected=datetime.now(timezone.utc),
        )

    def call_tool(self, server: McpServer, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """
        Call a tool and return its content blocks joined as text.

        Raises:
            McpError: On transport failure or a result flagged ``isError``.
        """
        endpoint = server.endpoint or self.resolve_endpoint(server.url)
        result = self.send(endpoint, "tools/call", {"name": name, "arguments": arguments or {}})

        content = result.get("content") or []
        if result.get("isError"):
            message = content[0].get("text") if content and isinstance(content[0], dict) else None
            raise McpError(message or "Tool call failed")

        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("text") is not None:
                parts.append(str(block["text"]))
            else:
                parts.append(json.dumps(block))
        return "\n".join(parts)
