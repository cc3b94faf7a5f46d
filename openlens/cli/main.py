"""
OpenLens CLI - Run a task against a page, or chat in a REPL.

Run `openlens --url https://example.com "what is this page about?"` for a
single task, or `openlens` to start the interactive mode.
State (grants, MCP servers, last session) lives in .openlens/state/.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from openlens import __version__
from openlens.cli.completer import OpenLensCompleter
from openlens.core.agent import Agent
from openlens.core.loop import LoopResult, LoopState
from openlens.core.planner import COMPLETED, ERRORED, SKIPPED, TaskPlan
from openlens.mcp.client import McpError
from openlens.permissions.guard import Decision, DecisionSurface, DecisionSurfaceError, Scope
from openlens.providers.base import GatewayError
from openlens.tools.schema import Capability
from openlens.validation.config import ConfigError

console = Console()

SENSITIVITY_STYLES = {"low": "green", "medium": "yellow", "high": "red"}


class ConsoleDecisionSurface(DecisionSurface):
    """Asks for consent on the terminal with rich prompts."""

    def __init__(self, out: Optional[Console] = None):
        self.console = out or console

    def present(self, capability: Capability, reason: str, sensitivity: str) -> Decision:
        style = SENSITIVITY_STYLES.get(sensitivity, "white")
        self.console.print(Panel(
            f"{reason}\n\n[{style}]Sensitivity: {sensitivity}[/{style}]",
            title=f"[bold]Permission request: {capability.value}[/bold]",
            border_style=style,
        ))
        try:
            answer = Prompt.ask("Allow?", choices=["y", "n"], default="n", console=self.console)
            if answer != "y":
                return Decision(granted=False)
            scope = Prompt.ask(
                "For how long?",
                choices=[s.value for s in Scope],
                default=Scope.PAGE.value,
                console=self.console,
            )
        except EOFError as exc:
            raise DecisionSurfaceError(f"No terminal input available: {exc}")
        return Decision(granted=True, scope=Scope(scope))


# ── Rendering ─────────────────────────────────────────────────────────────


def _print_result(result: LoopResult) -> None:
    if result.state == LoopState.ERRORED:
        console.print(f"[red]Error: {result.error}[/red]")
        return

    console.print()
    console.print(Markdown(result.final_answer or "(No response)"))
    console.print()
    tools = ", ".join(c.tool_name for c in result.calls) or "none"
    console.print(f"[dim]─ {result.state.value} · {result.iterations} iterations · tools: {tools}[/dim]")


def _print_plan(plan: TaskPlan) -> None:
    for step in plan.steps:
        if step.status == COMPLETED:
            marker = "[green]✓[/green]"
        elif step.status == SKIPPED:
            marker = "[yellow]–[/yellow]"
        else:
            marker = "[dim]·[/dim]"
        console.print(f"{marker} [bold]{step.id}. {step.title}[/bold] [dim]({step.tool})[/dim]")
        if step.cross_origin_warning:
            console.print(f"   [yellow]⚠ {step.cross_origin_warning}[/yellow]")
        if step.llm_output:
            console.print(f"   {step.llm_output}")


def _print_audit(agent: Agent) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("Origin")
    table.add_column("Where")
    table.add_column("Action")
    table.add_column("Tokens", justify="right")
    for event in agent.ledger.events():
        table.add_row(
            event.timestamp.strftime("%H:%M:%S"),
            event.type.value,
            event.origin,
            event.processing_location,
            event.user_action or "",
            str(event.tokens) if event.tokens is not None else "",
        )
    console.print(table)


def _print_session(agent: Agent) -> None:
    session = agent.ledger.session
    console.print(f"[bold]Session[/bold] {session.session_id}")
    console.print(f"  Backend:     {agent.gateway.provider_name} ({agent.gateway.processing_location})")
    console.print(f"  Location:    {session.processing_location}")
    console.print(f"  Tokens:      {session.total_tokens}")
    console.print(f"  Context:     {session.context_used}/{session.context_limit} "
                  f"({session.context_ratio:.0%})")
    console.print(f"  Data entries: {len(session.data_entries)}")
    for entry in session.data_entries:
        style = SENSITIVITY_STYLES.get(entry.sensitivity, "white")
        console.print(f"    - {entry.origin} [{style}]{entry.sensitivity}[/{style}] "
                      f"{entry.data_type} · {entry.token_count} tokens")


def _print_grants(agent: Agent) -> None:
    grants = agent.active_grants()
    if not grants:
        console.print("[dim]No active grants[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Capability")
    table.add_column("Scope")
    table.add_column("Origin")
    table.add_column("Handle")
    table.add_column("Expires", style="dim")
    for grant in grants:
        expires = grant.expires_at.strftime("%H:%M:%S") if grant.expires_at else "on navigation"
        table.add_row(grant.capability.value, grant.scope.value, grant.origin, grant.handle, expires)
    console.print(table)


# ── REPL ──────────────────────────────────────────────────────────────────


class OpenLensREPL:
    """Interactive REPL over one Agent and one page handle."""

    def __init__(self, agent: Agent, handle: Optional[str] = None):
        self.agent = agent
        self.handle = handle
        self.running = True
        history_path = agent.store.state_dir / "input_history"
        self.session = PromptSession(
            history=FileHistory(str(history_path)),
            completer=OpenLensCompleter(lambda: [s.id for s in agent.list_mcp()]),
        )

    def _print_banner(self):
        console.print(f"[bold blue]OpenLens[/bold blue] [cyan]v{__version__}[/cyan]")
        console.print(f"[dim]Backend: {self.agent.gateway.provider_name} "
                      f"({self.agent.gateway.processing_location})[/dim]")
        console.print("[dim]Type a question about the page, or /help for commands. /quit to exit.[/dim]")
        console.print()

    def _print_help(self):
        console.print("""
[bold]Commands[/bold]
  /open <url>            Point the session at a URL
  /plan <intent>         Draft and run a step-by-step plan
  /mcp [list]            List MCP servers
  /mcp connect <url>     Connect an MCP server
  /mcp toggle <id>       Enable or disable an MCP server
  /mcp delete <id>       Remove an MCP server
  /grants                Show active permission grants
  /revoke [handle]       Revoke every grant for a page
  /audit                 Show the audit trail of the last task
  /session               Show session totals and processing location
  /quit                  Exit
""")

    def _require_handle(self) -> bool:
        if self.handle is None:
            console.print("[yellow]No page open. Use /open <url> first.[/yellow]")
            return False
        return True

    def _execute_task(self, intent: str):
        if not self._require_handle():
            return
        with console.status("[bold blue]Thinking...[/bold blue]", spinner="dots"):
            result = self.agent.run(intent, self.handle)
        _print_result(result)

    def _execute_plan(self, intent: str):
        if not self._require_handle():
            return
        if not intent:
            console.print("[yellow]Usage: /plan <intent>[/yellow]")
            return
        with console.status("[bold blue]Planning...[/bold blue]", spinner="dots"):
            plan = self.agent.plan(intent, self.handle)
        _print_plan(plan)
        console.print()
        self.agent.run_plan(plan, self.handle)
        _print_plan(plan)

    def _handle_mcp(self, args: str):
        parts = args.split(maxsplit=1)
        action = parts[0].lower() if parts else "list"
        target = parts[1].strip() if len(parts) > 1 else ""

        if action == "list":
            servers = self.agent.list_mcp()
            if not servers:
                console.print("[dim]No MCP servers. Use /mcp connect <url>.[/dim]")
                return
            for server in servers:
                state = "[green]enabled[/green]" if server.enabled else "[dim]disabled[/dim]"
                console.print(f"  [cyan]{server.id}[/cyan] {server.name} {state} · {len(server.tools)} tools")
        elif action == "connect" and target:
            try:
                server = self.agent.connect_mcp(target)
            except McpError as exc:
                console.print(f"[red]Could not connect: {exc}[/red]")
                return
            console.print(f"[green]Connected {server.name}[/green] ({len(server.tools)} tools)")
        elif action == "toggle" and target:
            enabled = self.agent.toggle_mcp(target)
            if enabled is None:
                console.print(f"[yellow]Unknown server: {target}[/yellow]")
            else:
                console.print(f"{target}: {'enabled' if enabled else 'disabled'}")
        elif action == "delete" and target:
            if self.agent.delete_mcp(target):
                console.print(f"[green]Removed {target}[/green]")
            else:
                console.print(f"[yellow]Unknown server: {target}[/yellow]")
        else:
            console.print("[yellow]Usage: /mcp [list|connect <url>|toggle <id>|delete <id>][/yellow]")

    def _handle_command(self, cmd: str) -> bool:
        """Handle a slash command. Returns True if should continue."""
        parts = cmd.split(maxsplit=1)
        command = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        if command in ("/exit", "/quit", "/q"):
            self.running = False
            return False

        elif command in ("/help", "/?"):
            self._print_help()

        elif command == "/open":
            if not args:
                console.print("[yellow]Usage: /open <url>[/yellow]")
            elif self.handle is None:
                self.handle = self.agent.host.open(args)
            else:
                self.agent.host.open(args, self.handle)
                self.agent.guard.revoke_page_grants(self.handle)
            if args:
                console.print(f"[dim]Page: {args}[/dim]")

        elif command == "/plan":
            self._execute_plan(args)

        elif command == "/mcp":
            self._handle_mcp(args)

        elif command == "/grants":
            _print_grants(self.agent)

        elif command == "/revoke":
            handle = args or self.handle
            if handle:
                self.agent.guard.revoke_all_for_handle(handle)
                console.print(f"[green]Revoked grants for {handle}[/green]")
            else:
                console.print("[yellow]Usage: /revoke <handle>[/yellow]")

        elif command == "/audit":
            _print_audit(self.agent)

        elif command == "/session":
            _print_session(self.agent)

        else:
            console.print(f"[yellow]Unknown command: {command}[/yellow]")
            console.print("[dim]Type /help for available commands[/dim]")

        return True

    def run(self):
        """Run the interactive REPL."""
        self._print_banner()

        while self.running:
            try:
                user_input = self.session.prompt("> ").strip()
                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if not self._handle_command(user_input):
                        break
                    continue

                self._execute_task(user_input)
                console.print()

            except EOFError:
                break
            except KeyboardInterrupt:
                console.print("[dim]Interrupted. /quit to exit.[/dim]")
                continue
            except (GatewayError, McpError) as e:
                console.print(f"[red]Error: {e}[/red]")

        self.close()
        console.print("[dim]Session saved in .openlens/state/[/dim]")

    def close(self):
        """Tear down the open page; grants tied to it go with it."""
        if self.handle is not None:
            self.agent.close_handle(self.handle)
            self.handle = None


# ── Entry point ───────────────────────────────────────────────────────────


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )


@click.command()
@click.option("--url", "-u", default=None, help="Page to run the task against")
@click.option("--plan", "plan_mode", is_flag=True, help="Draft and run a step-by-step plan")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="Where state is stored")
@click.option("--verbose", is_flag=True, help="Show debug logs")
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.argument("intent", required=False, nargs=-1)
def cli(url: Optional[str], plan_mode: bool, state_dir: Optional[Path], verbose: bool, version: bool,
        intent: tuple) -> None:
    """
    OpenLens - auditable tool-calling agent for web pages.

    Run without an intent to start interactive mode.

    \b
    Examples:
        openlens --url https://example.com "what is this page about?"
        openlens --plan --url https://shop.example "find the return policy"
        openlens                                   # Start interactive mode
    """
    if version:
        console.print(f"OpenLens v{__version__}")
        return

    _configure_logging(verbose)

    try:
        agent = Agent(ConsoleDecisionSurface(console), state_dir=state_dir)
    except (ConfigError, ValueError) as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        sys.exit(1)

    handle = agent.host.open(url) if url else None

    if not intent:
        OpenLensREPL(agent, handle).run()
        return

    if handle is None:
        console.print("[red]Error: --url is required when running a single task.[/red]")
        sys.exit(1)

    intent_str = " ".join(intent)
    try:
        if plan_mode:
            plan = agent.plan(intent_str, handle)
            agent.run_plan(plan, handle)
            _print_plan(plan)
            if plan.status == ERRORED:
                sys.exit(1)
            return

        result = agent.run(intent_str, handle)
        _print_result(result)
    finally:
        agent.close_handle(handle)

    if result.state == LoopState.ERRORED:
        sys.exit(1)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
