"""Tool registry - built-in tools plus the tools of enabled MCP servers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from openlens.host.base import CLICK, FILL_FIELDS, FIND_TEXT, NAVIGATE, READ_CONTENT
from openlens.mcp.store import McpServerStore
from openlens.tools.schema import BuiltinTool, Capability, McpTool, ToolParam

BUILTIN_TOOLS: Dict[str, BuiltinTool] = {
    tool.name: tool
    for tool in [
        BuiltinTool(
            name="read_page",
            description="Extract and summarize the current page content",
            capability=Capability.READ,
            command=READ_CONTENT,
            params=[ToolParam(name="max_tokens", type="number",
                              description="Maximum tokens to extract (default 2000)")],
        ),
        BuiltinTool(
            name="extract_data",
            description="Extract structured data (prices, links, forms, headings) from the page",
            capability=Capability.READ,
            command=READ_CONTENT,
            params=[ToolParam(name="data_type",
                              description="Type of data to extract: prices, links, forms, or headings")],
        ),
        BuiltinTool(
            name="find_on_page",
            description="Search for specific text on the page",
            capability=Capability.READ,
            command=FIND_TEXT,
            params=[ToolParam(name="query", description="Text to search for on the page", required=True)],
        ),
        BuiltinTool(
            name="navigate",
            description="Open a URL",
            capability=Capability.ACT,
            is_write_action=True,
            command=NAVIGATE,
            params=[ToolParam(name="url", description="URL to open", required=True)],
        ),
        BuiltinTool(
            name="fill_form",
            description="Fill form fields (user must submit manually)",
            capability=Capability.ACT,
            is_write_action=True,
            command=FILL_FIELDS,
            params=[ToolParam(name="fields", description="JSON object of field name to value pairs",
                              required=True)],
        ),
        BuiltinTool(
            name="click_element",
            description="Click a link or button by selector or text",
            capability=Capability.ACT,
            is_write_action=True,
            command=CLICK,
            params=[ToolParam(name="selector", description="CSS selector or visible text of the element to click",
                              required=True)],
        ),
    ]
}


@dataclass
class UnknownTool:
    """A requested name that matches no built-in or enabled remote tool."""

    name: str


ResolvedTool = Union[BuiltinTool, McpTool, UnknownTool]


class ToolRegistry:
    """
    Resolves tool names and describes the catalog to the model.

    Built-in tools win over remote tools with the same name.
    """

    def __init__(self, servers: Optional[McpServerStore] = None, builtins: Optional[Dict[str, BuiltinTool]] = None):
        self.servers = servers or McpServerStore()
        self.builtins = builtins if builtins is not None else BUILTIN_TOOLS

    # ── Tool Lookup ───────────────────────────────────────────────────────

    def resolve(self, name: str) -> ResolvedTool:
        builtin = self.builtins.get(name)
        if builtin is not None:
            return builtin
        for tool in self.servers.enabled_tools():
            if tool.name == name:
                return tool
        return UnknownTool(name=name)

    def remote_tools(self) -> List[McpTool]:
        """Enabled remote tools that are not shadowed by a built-in."""
        seen = set(self.builtins)
        tools = []
        for tool in self.servers.enabled_tools():
            if tool.name not in seen:
                seen.add(tool.name)
                tools.append(tool)
        return tools

    def list_tools(self) -> List[Union[BuiltinTool, McpTool]]:
        return [*self.builtins.values(), *self.remote_tools()]

    # ── Schemas ───────────────────────────────────────────────────────────

    def schemas(self) -> List[Dict[str, Any]]:
        """Function-calling schemas for every available tool."""
        schemas = []
        for tool in self.builtins.values():
            schemas.append(self._schema(tool.name, tool.description, tool.parameters_schema()))
        for tool in self.remote_tools():
            schemas.append(self._schema(tool.name, f"[{tool.server_name}] {tool.description}",
                                        tool.parameters_schema()))
        return schemas

    @staticmethod
    def _schema(name: str, description: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "function", "function": {"name": name, "description": description, "parameters": parameters}}

    def build_prompt_fragment(self) -> str:
        """
        Tool list for planning prompts, e.g.::

            - read_page: Extract and summarize the current page content (permission: read, write: False)
        """
        lines = []
        for tool in self.builtins.values():
            lines.append(f"- {tool.name}: {tool.description} "
                         f"(permission: {tool.capability.value}, write: {tool.is_write_action})")
        return "\n".join(lines)
