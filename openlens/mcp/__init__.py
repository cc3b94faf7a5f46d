"""
OpenLens MCP module.

A JSON-RPC 2.0 client for remote MCP tool servers and the registry of
servers the user has connected.
"""

from openlens.mcp.client import McpClient, McpError, parse_response
from openlens.mcp.store import McpServerStore

__all__ = ["McpClient", "McpError", "McpServerStore", "parse_response"]
