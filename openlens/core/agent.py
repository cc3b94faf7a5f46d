"""
OpenLens Agent - Wires configuration, backend, guard, ledger and persistence.

Every task execution:
1. Reset the session ledger
2. Run the tool-call loop (or a plan) against a host handle
3. Write the session snapshot to .openlens/state/session.yaml
4. Return the result

Grants and MCP servers are persisted as they change, so a new Agent in
the same directory picks them up.
"""

import logging
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from openlens.core.loop import LoopResult, ToolCallLoop
from openlens.core.planner import PlanRunner, TaskPlan, TaskPlanner
from openlens.host.base import HostExecutor
from openlens.host.http import HttpPageHost
from openlens.mcp.client import McpClient
from openlens.mcp.store import McpServerStore
from openlens.permissions.guard import DecisionSurface, PermissionGrant, PermissionGuard
from openlens.providers.base import Provider, ProviderFactory
from openlens.providers.gateway import LLMGateway
from openlens.session.cross_origin import CrossOriginMonitor
from openlens.session.ledger import EventType, SessionLedger
from openlens.state.store import StateStore
from openlens.tools.dispatcher import ToolDispatcher
from openlens.tools.registry import ToolRegistry
from openlens.tools.schema import McpServer
from openlens.validation.config import Config

logger = logging.getLogger(__name__)


class Agent:
    """
    Single owner of the session, the grant set and the server registry.

    Example:
        >>> agent = Agent(decision_surface=ConsoleDecisionSurface(console))
        >>> handle = agent.host.open("https://a.example/pricing")
        >>> agent.run("What does the pro plan cost?", handle).final_answer
    """

    def __init__(
        self,
        decision_surface: DecisionSurface,
        config: Optional[Config] = None,
        host: Optional[HostExecutor] = None,
        state_dir: Optional[Path] = None,
        provider: Optional[Provider] = None,
        mcp_client: Optional[McpClient] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.config = config or Config.load()
        settings = self.config.agent
        mcp_settings = self.config.merged.mcp

        self.store = StateStore(state_dir)
        self.provider = provider or ProviderFactory.create(self.config, client=http_client)
        self.gateway = LLMGateway(self.provider)
        self.host = host or HttpPageHost()
        self.ledger = SessionLedger(context_limit=settings.context_limit)
        self.guard = PermissionGuard(
            self.ledger,
            decision_surface,
            processing_location=self.gateway.processing_location,
            store=self.store,
        )
        self.servers = McpServerStore(self.store)
        self.mcp_client = mcp_client or McpClient(timeout=mcp_settings.timeout, probe_path=mcp_settings.probe_path)
        self.registry = ToolRegistry(self.servers)
        self.dispatcher = ToolDispatcher(
            self.registry, self.guard, self.host, self.mcp_client, tool_timeout=settings.tool_timeout,
        )
        self.loop = ToolCallLoop(
            self.gateway,
            self.registry,
            self.dispatcher,
            self.guard,
            self.ledger,
            self.host,
            max_iterations=settings.max_iterations,
            generation_timeout=settings.generation_timeout,
            preread_timeout=settings.preread_timeout,
            preread_max_tokens=settings.preread_max_tokens,
        )
        self.planner = TaskPlanner(self.gateway, self.registry, generation_timeout=settings.generation_timeout)
        self.runner = PlanRunner(
            self.gateway,
            self.dispatcher,
            self.guard,
            self.ledger,
            self.host,
            CrossOriginMonitor(self.gateway.provider_name, self.gateway.is_local),
        )

    # ── Tasks ─────────────────────────────────────────────────────────────

    def run(self, intent: str, handle: str) -> LoopResult:
        """Run the tool-call loop for one intent and save the session."""
        logger.info("Running task on %s with %s", handle, self.gateway.provider_name)
        result = self.loop.run(intent, handle)
        self.save_session()
        return result

    def plan(self, intent: str, handle: str) -> TaskPlan:
        """Start a new session and draft a plan for ``intent``."""
        self.ledger.reset()
        self.ledger.add_audit_event(
            EventType.TASK_STARTED, self.host.origin(handle),
            {"intent": intent, "provider": self.gateway.provider_name, "mode": "plan"},
            processing_location=self.gateway.processing_location,
        )
        return self.planner.generate(intent, page_url=self.host.current_url(handle))

    def run_plan(self, plan: TaskPlan, handle: str) -> TaskPlan:
        """Execute every step of ``plan`` and save the session."""
        try:
            return self.runner.run(plan, handle)
        finally:
            self.save_session()

    def save_session(self) -> Path:
        return self.store.save_session(self.ledger.session.to_dict())

    # ── Permissions ───────────────────────────────────────────────────────

    def active_grants(self, handle: Optional[str] = None) -> List[PermissionGrant]:
        return self.guard.active_grants(handle)

    def close_handle(self, handle: str) -> None:
        """Tear down a handle; its grants go with it."""
        self.guard.revoke_all_for_handle(handle)
        if isinstance(self.host, HttpPageHost):
            self.host.close(handle)

    # ── MCP servers ───────────────────────────────────────────────────────

    def connect_mcp(self, url: str) -> McpServer:
        """
        Discover and register the MCP server at ``url``.

        Raises:
            McpError: If no endpoint answers or the tool list cannot be read.
        """
        server = self.mcp_client.connect(url)
        self.servers.save(server)
        self.ledger.add_audit_event(
            EventType.MCP_DISCOVERED, urlparse(url).hostname or url,
            {"server": server.name, "endpoint": server.endpoint, "tools": [t.name for t in server.tools]},
        )
        logger.info("Connected MCP server %s with %d tools", server.name, len(server.tools))
        return server

    def toggle_mcp(self, server_id: str) -> Optional[bool]:
        return self.servers.toggle(server_id)

    def delete_mcp(self, server_id: str) -> bool:
        return self.servers.delete(server_id)

    def list_mcp(self) -> List[McpServer]:
        return self.servers.list()

    # ── Backend ───────────────────────────────────────────────────────────

    def validate_connection(self) -> bool:
        return self.provider.validate_connection()
