"""
OpenLens CLI Completer - prompt_toolkit completion for the REPL.

Provides real-time dropdown suggestions for slash commands and MCP server ids.
"""

from typing import Callable, List, Optional

from prompt_toolkit.completion import Completer, Completion


# (command, description) pairs shown in the dropdown
SLASH_COMMANDS = [
    ("/help", "Show help"),
    ("/open", "Point the session at a URL"),
    ("/plan", "Draft and run a step-by-step plan"),
    ("/mcp", "List MCP servers"),
    ("/mcp list", "List MCP servers"),
    ("/mcp connect", "Connect an MCP server by URL"),
    ("/mcp toggle", "Enable or disable an MCP server"),
    ("/mcp delete", "Remove an MCP server"),
    ("/grants", "Show active permission grants"),
    ("/revoke", "Revoke every grant for the current page"),
    ("/audit", "Show the audit trail of the last task"),
    ("/session", "Show session totals and processing location"),
    ("/quit", "Exit OpenLens"),
    ("/exit", "Exit OpenLens"),
]

_SERVER_COMMANDS = ("/mcp toggle ", "/mcp delete ")


class OpenLensCompleter(Completer):
    """Completer for the OpenLens REPL.

    - Slash commands with descriptions when typing "/"
    - Server ids after "/mcp toggle " and "/mcp delete "
    """

    def __init__(self, server_ids_fn: Optional[Callable[[], List[str]]] = None):
        self._server_ids_fn = server_ids_fn

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor

        if not text.startswith("/"):
            return

        for command in _SERVER_COMMANDS:
            if text.startswith(command):
                yield from self._complete_server_ids(text[len(command):])
                return

        for cmd, description in SLASH_COMMANDS:
            if cmd.startswith(text):
                yield Completion(
                    cmd,
                    start_position=-len(text),
                    display_meta=description,
                )

    def _complete_server_ids(self, prefix: str):
        if not self._server_ids_fn:
            return
        for server_id in self._server_ids_fn():
            if server_id.startswith(prefix):
                yield Completion(server_id, start_position=-len(prefix), display_meta="MCP server")
