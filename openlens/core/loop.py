"""
OpenLens Tool-Call Loop - Turn-based controller between the model and tools.

States::

    idle -> pre_reading -> direct_answer -> tool_loop -> answered | errored | exhausted

The loop owns one Session for the duration of a task. Every action is
appended to the session ledger in the order it happens, and no tool runs
unless the permission guard granted its capability.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from openlens.core.timeouts import first_settled
from openlens.host.base import READ_CONTENT, HostExecutor, HostRequest
from openlens.permissions.guard import PermissionGuard
from openlens.providers.base import ChatResponse
from openlens.providers.fallback import PAGE_CONTENT_HEADER, TOOL_CALL_MARKER
from openlens.providers.gateway import LLMGateway
from openlens.session.ledger import EventType, SessionLedger, estimate_tokens
from openlens.session.sensitivity import LOW
from openlens.tools.dispatcher import ToolDispatcher
from openlens.tools.registry import ToolRegistry
from openlens.tools.schema import Capability, McpTool, ToolCallRecord, ToolResult

logger = logging.getLogger(__name__)

EXHAUSTED_MESSAGE = "(Reached maximum tool call iterations)"
MIN_DIRECT_ANSWER_CHARS = 10
RECORD_RESULT_CHARS = 500
MESSAGE_RESULT_CHARS = 3000

SYSTEM_PROMPT = (
    "You are a browsing assistant. You help the user understand and act on "
    "the page they are looking at. Be concise and accurate."
)


class LoopState(str, Enum):
    """Where the loop is in its state machine."""

    IDLE = "idle"
    PRE_READING = "pre_reading"
    DIRECT_ANSWER = "direct_answer"
    TOOL_LOOP = "tool_loop"
    ANSWERED = "answered"
    ERRORED = "errored"
    EXHAUSTED = "exhausted"


@dataclass
class LoopResult:
    """Final result of one task."""

    state: LoopState
    final_answer: str
    calls: List[ToolCallRecord] = field(default_factory=list)
    iterations: int = 0
    error: Optional[str] = None
    session_id: str = ""


class ToolCallLoop:
    """
    Run one intent against a handle.

    Each task:
    1. Reset the session and emit ``task_started``
    2. Pre-read the page under a short timeout (never prompts the user)
    3. If there is page content, try a direct answer without tools
    4. Otherwise iterate: chat with the tool catalog, dispatch each call,
       feed results back, until a tool-free reply or the iteration cap
    """

    def __init__(
        self,
        gateway: LLMGateway,
        registry: ToolRegistry,
        dispatcher: ToolDispatcher,
        guard: PermissionGuard,
        ledger: SessionLedger,
        host: HostExecutor,
        max_iterations: int = 5,
        generation_timeout: float = 20.0,
        preread_timeout: float = 2.0,
        preread_max_tokens: int = 2000,
    ):
        self.gateway = gateway
        self.registry = registry
        self.dispatcher = dispatcher
        self.guard = guard
        self.ledger = ledger
        self.host = host
        self.max_iterations = max_iterations
        self.generation_timeout = generation_timeout
        self.preread_timeout = preread_timeout
        self.preread_max_tokens = preread_max_tokens
        self.state = LoopState.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, intent: str, handle: str) -> LoopResult:
        """
        Execute the task.

        Args:
            intent: What the user asked for.
            handle: Host handle (tab) the task runs against.

        Returns:
            LoopResult in one of the terminal states.
        """
        self.ledger.reset()
        self._transition(LoopState.IDLE)
        origin = self.host.origin(handle)
        self.ledger.add_audit_event(
            EventType.TASK_STARTED, origin,
            {"intent": intent, "provider": self.gateway.provider_name},
            processing_location=self.gateway.processing_location,
        )

        calls: List[ToolCallRecord] = []
        try:
            return self._run(intent, handle, origin, calls)
        except Exception as exc:
            logger.warning("Task failed: %s", exc)
            self._transition(LoopState.ERRORED)
            self.ledger.add_audit_event(
                EventType.TASK_ERROR, origin,
                {"error": str(exc), "error_type": type(exc).__name__},
            )
            return self._result(LoopState.ERRORED, "", calls, error=str(exc))
        finally:
            self.ledger.go_idle()

    def _run(self, intent: str, handle: str, origin: str, calls: List[ToolCallRecord]) -> LoopResult:
        self._transition(LoopState.PRE_READING)
        snapshot = self._pre_read(handle, origin, calls)

        if snapshot:
            self._transition(LoopState.DIRECT_ANSWER)
            answer = self._direct_answer(intent, snapshot, origin)
            if answer is not None:
                self._transition(LoopState.ANSWERED)
                return self._result(LoopState.ANSWERED, answer, calls)

        self._transition(LoopState.TOOL_LOOP)
        messages = self._initial_messages(intent, snapshot)
        tools = self.registry.schemas()

        for iteration in range(1, self.max_iterations + 1):
            response = self.gateway.chat(messages, tools)
            self.ledger.record_processing(response.processing_location)

            if not response.tool_calls:
                self._record_prompt(origin, response, iteration)
                self._transition(LoopState.ANSWERED)
                return self._result(LoopState.ANSWERED, response.content, calls, iterations=iteration)

            for call in response.tool_calls:
                result = self._execute(call.name, call.arguments, handle, iteration, calls)
                if result.denied:
                    self._transition(LoopState.ANSWERED)
                    return self._result(LoopState.ANSWERED, self._denial_message(call.name), calls,
                                        iterations=iteration)

                messages.append({
                    "role": "assistant",
                    "content": json.dumps({"tool": call.name, "args": call.arguments}),
                })
                messages.append({
                    "role": "user",
                    "content": f"Tool result for {call.name}:\n{result.serialized()[:MESSAGE_RESULT_CHARS]}",
                })

        logger.info("Tool loop reached %d iterations without a final answer", self.max_iterations)
        self._transition(LoopState.EXHAUSTED)
        return self._result(LoopState.EXHAUSTED, EXHAUSTED_MESSAGE, calls, iterations=self.max_iterations)

    # ------------------------------------------------------------------
    # Pre-read and direct answer
    # ------------------------------------------------------------------

    def _pre_read(self, handle: str, origin: str, calls: List[ToolCallRecord]) -> str:
        """Fetch a capped snapshot of the page; any failure yields ''."""
        granted = self.guard.ensure(
            Capability.READ, origin, handle,
            "Read the current page to answer your question", LOW,
            interactive=False,
        )
        if not granted:
            logger.debug("Pre-read skipped for %s: no read grant", origin)
            return ""

        self.ledger.add_audit_event(EventType.TOOL_CALL_START, origin, {"tool": "read_page", "iteration": 0})
        request = HostRequest(command=READ_CONTENT, max_tokens=self.preread_max_tokens)
        try:
            response = first_settled(lambda: self.host.invoke(handle, request), self.preread_timeout)
        except Exception as exc:
            logger.warning("Pre-read failed for %s: %s", origin, exc)
            response = None

        text = ""
        if response is not None and response.success:
            text = self._page_text(response.data, response.summary)[: self.preread_max_tokens * 4]

        if not text:
            self.ledger.add_audit_event(
                EventType.TOOL_CALL_RESULT, origin,
                {"tool": "read_page", "iteration": 0, "success": False},
            )
            return ""

        entry = self.ledger.add_data_entry(origin, "page_content", "read_page", text, "pre_read")
        calls.append(ToolCallRecord(tool_name="read_page", result=text[:RECORD_RESULT_CHARS], iteration=0))
        self.ledger.add_audit_event(
            EventType.TOOL_CALL_RESULT, origin,
            {"tool": "read_page", "iteration": 0, "success": True, "sensitivity": entry.sensitivity},
            tokens=entry.token_count,
        )
        return text

    def _direct_answer(self, intent: str, snapshot: str, origin: str) -> Optional[str]:
        messages = [
            {
                "role": "system",
                "content": (
                    f"{SYSTEM_PROMPT}\n\n{PAGE_CONTENT_HEADER}\n{snapshot}\n\n"
                    "Answer the user's question directly using the page content above."
                ),
            },
            {"role": "user", "content": intent},
        ]
        try:
            response = first_settled(lambda: self.gateway.chat(messages), self.generation_timeout)
        except Exception as exc:
            logger.warning("Direct answer attempt failed: %s", exc)
            return None
        if response is None:
            return None

        self.ledger.record_processing(response.processing_location)
        content = (response.content or "").strip()
        if len(content) <= MIN_DIRECT_ANSWER_CHARS or content.startswith(TOOL_CALL_MARKER):
            logger.debug("Direct answer rejected, falling through to the tool loop")
            return None

        self._record_prompt(origin, response, 0)
        return content

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        handle: str,
        iteration: int,
        calls: List[ToolCallRecord],
    ) -> ToolResult:
        self.ledger.add_audit_event(
            EventType.TOOL_CALL_START, self.host.origin(handle),
            {"tool": tool_name, "arguments": arguments, "iteration": iteration},
        )

        result = self.dispatcher.dispatch(tool_name, arguments, handle)
        serialized = result.serialized()

        if result.denied:
            status = "skipped"
        elif result.success:
            status = "completed"
        else:
            status = "failed"
        calls.append(ToolCallRecord(
            tool_name=tool_name,
            arguments=arguments,
            result=serialized[:RECORD_RESULT_CHARS],
            iteration=iteration,
            status=status,
        ))

        tokens = None
        if result.success:
            origin_type = "user_mcp" if isinstance(self.registry.resolve(tool_name), McpTool) else "page_content"
            entry = self.ledger.add_data_entry(result.origin, origin_type, tool_name, serialized, "tool_call")
            tokens = entry.token_count
        elif not result.denied:
            self.ledger.add_context_tokens(estimate_tokens(serialized))

        self.ledger.add_audit_event(
            EventType.TOOL_CALL_RESULT, result.origin,
            {"tool": tool_name, "iteration": iteration, "success": result.success, "status": status,
             "error": result.error},
            user_action="denied" if result.denied else None,
            tokens=tokens,
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _initial_messages(intent: str, snapshot: str) -> List[Dict[str, str]]:
        system = SYSTEM_PROMPT
        if snapshot:
            system = f"{SYSTEM_PROMPT}\n\n{PAGE_CONTENT_HEADER}\n{snapshot}"
        return [{"role": "system", "content": system}, {"role": "user", "content": intent}]

    @staticmethod
    def _page_text(data: Any, summary: str) -> str:
        if isinstance(data, dict):
            return str(data.get("text") or data.get("content") or summary or "")
        if isinstance(data, str):
            return data
        return summary or ""

    @staticmethod
    def _denial_message(tool_name: str) -> str:
        return (
            f'Permission to use "{tool_name}" was denied, so I stopped here. '
            "Grant access and ask again if you want me to continue."
        )

    def _record_prompt(self, origin: str, response: ChatResponse, iteration: int) -> None:
        tokens = response.token_usage or estimate_tokens(response.content or "")
        self.ledger.add_context_tokens(tokens)
        self.ledger.add_audit_event(
            EventType.LLM_PROMPT, origin,
            {"iteration": iteration, "model": response.model},
            processing_location=response.processing_location,
            tokens=tokens,
        )

    def _transition(self, state: LoopState) -> None:
        logger.debug("Loop state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _result(
        self,
        state: LoopState,
        answer: str,
        calls: List[ToolCallRecord],
        iterations: int = 0,
        error: Optional[str] = None,
    ) -> LoopResult:
        return LoopResult(
            state=state,
            final_answer=answer,
            calls=list(calls),
            iterations=iterations,
            error=error,
            session_id=self.ledger.session.session_id,
        )
