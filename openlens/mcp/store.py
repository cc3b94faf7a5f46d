"""MCP server registry - the servers the user connected, persisted as one document."""

from __future__ import annotations

from typing import List, Optional

from openlens.state.store import StateStore
from openlens.tools.schema import McpServer, McpTool


class McpServerStore:
    """
    Registered MCP servers, in connection order.

    Every mutation rewrites the whole ``mcp_servers`` document when a
    StateStore is attached.
    """

    def __init__(self, store: Optional[StateStore] = None):
        self._store = store
        self._servers: List[McpServer] = []
        if store is not None:
            self._servers = [McpServer(**data) for data in store.load_servers()]

    def list(self) -> List[McpServer]:
        return list(self._servers)

    def get(self, server_id: str) -> Optional[McpServer]:
        for server in self._servers:
            if server.id == server_id:
                return server
        return None

    def save(self, server: McpServer) -> None:
        """Insert or replace by id."""
        for idx, existing in enumerate(self._servers):
            if existing.id == server.id:
                self._servers[idx] = server
                break
        else:
            self._servers.append(server)
        self._persist()

    def delete(self, server_id: str) -> bool:
        before = len(self._servers)
        self._servers = [s for s in self._servers if s.id != server_id]
        if len(self._servers) == before:
            return False
        self._persist()
        return True

    def toggle(self, server_id: str) -> Optional[bool]:
        """Flip the enabled flag without reconnecting; returns the new flag."""
        server = self.get(server_id)
        if server is None:
            return None
        server.enabled = not server.enabled
        self._persist()
        return server.enabled

    def enabled_tools(self) -> List[McpTool]:
        """Tools of every enabled server, in server order."""
        tools: List[McpTool] = []
        for server in self._servers:
            if server.enabled:
                tools.extend(server.tools)
        return tools

    def server_for_tool(self, tool: McpTool) -> Optional[McpServer]:
        server = self.get(tool.server_id)
        if server is not None and server.enabled:
            return server
        return None

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save_servers([s.model_dump(mode="json") for s in self._servers])
