"""
OpenLens Planner - Plan-execution mode.

The model drafts a short list of steps for an intent; each step runs one
built-in tool behind the permission guard and is followed by an analysis
call. Hosted backends need an extra send-external grant before page data
leaves the device. Plan generation never fails: a timeout or unusable
reply falls back to a heuristic plan.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from openlens.core.timeouts import first_settled
from openlens.host.base import HostExecutor
from openlens.permissions.guard import PermissionGuard
from openlens.providers.base import GatewayError
from openlens.providers.gateway import LLMGateway
from openlens.session.cross_origin import CrossOriginMonitor, StepOrigin
from openlens.session.ledger import EventType, SessionLedger, estimate_tokens
from openlens.session.sensitivity import HIGH
from openlens.tools.dispatcher import ToolDispatcher
from openlens.tools.registry import ToolRegistry
from openlens.tools.schema import Capability

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
SKIPPED = "skipped"
ERRORED = "errored"

_FIND_WORDS = re.compile(r"find|search|look for|where is|show me|locate")
_FIND_PREFIX = re.compile(r"^.*?(find|search for|look for|where is|show me|locate)\s*", re.IGNORECASE)

PLANNER_PROMPT = """You are a browser agent planner. Given a user intent, create a plan using available tools.

Available tools:
{tools}

Output a JSON array of steps, each with:
- "title": short action title
- "description": what this step does
- "tool": tool name from the list above
- "toolParams": optional params object (e.g. {{"query": "text"}} for find_on_page)

Rules:
- Always start with read_page or extract_data
- Use find_on_page for specific searches
- Only use write actions (navigate, fill_form, click_element) when clearly needed
- 2-4 steps maximum
- Output ONLY a valid JSON array"""


@dataclass
class TaskStep:
    """One step of a plan."""

    id: int
    title: str
    description: str
    tool: str
    capability: Capability = Capability.READ
    is_write_action: bool = False
    tool_params: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING  # pending, running, completed, skipped
    result: Any = None
    llm_output: Optional[str] = None
    cross_origin_warning: Optional[str] = None
    tokens: int = 0
    origin: Optional[str] = None
    sensitivity: Optional[str] = None


@dataclass
class TaskPlan:
    """An intent and the steps drafted for it."""

    intent: str
    steps: List[TaskStep]
    status: str = RUNNING  # running, completed, errored
    page_url: Optional[str] = None


class TaskPlanner:
    """Drafts a TaskPlan with the model, or heuristically when it cannot."""

    def __init__(self, gateway: LLMGateway, registry: ToolRegistry, generation_timeout: float = 20.0):
        self.gateway = gateway
        self.registry = registry
        self.generation_timeout = generation_timeout

    def generate(self, intent: str, page_url: Optional[str] = None) -> TaskPlan:
        steps = self._generate_steps(intent)
        logger.info("Plan created: %d steps", len(steps))
        return TaskPlan(intent=intent, steps=steps, page_url=page_url)

    def _generate_steps(self, intent: str) -> List[TaskStep]:
        messages = [
            {"role": "system", "content": PLANNER_PROMPT.format(tools=self.registry.build_prompt_fragment())},
            {"role": "user", "content": intent},
        ]
        try:
            response = first_settled(lambda: self.gateway.chat(messages), self.generation_timeout)
        except Exception as exc:
            logger.warning("Plan generation failed, using fallback plan: %s", exc)
            return self.fallback_plan(intent)

        if response is None:
            logger.info("Plan generation timed out, using fallback plan")
            return self.fallback_plan(intent)

        steps = self._parse_steps(response.content or "")
        if not steps:
            logger.info("Could not parse plan JSON, using fallback plan")
            return self.fallback_plan(intent)
        return steps

    def _parse_steps(self, content: str) -> Optional[List[TaskStep]]:
        start, end = content.find("["), content.rfind("]")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(content[start : end + 1])
        except ValueError:
            return None
        if not isinstance(parsed, list):
            return None

        steps = []
        for idx, raw in enumerate(parsed, start=1):
            if not isinstance(raw, dict):
                continue
            tool = self.registry.builtins.get(raw.get("tool", "")) or self.registry.builtins["read_page"]
            params = raw.get("toolParams") or {}
            steps.append(TaskStep(
                id=idx,
                title=raw.get("title") or f"Step {idx}",
                description=raw.get("description") or "",
                tool=tool.name,
                capability=tool.capability,
                is_write_action=tool.is_write_action,
                tool_params=params if isinstance(params, dict) else {},
            ))
        return steps or None

    @staticmethod
    def fallback_plan(intent: str) -> List[TaskStep]:
        """Read the page, optionally search it, then answer."""
        steps = [TaskStep(
            id=1,
            title="Read current page",
            description="Extract and analyze the content of this page",
            tool="read_page",
        )]

        target = re.split(r"[.,!?]", _FIND_PREFIX.sub("", intent, count=1))[0].strip()
        if _FIND_WORDS.search(intent.lower()) and len(target) > 2:
            steps.append(TaskStep(
                id=2,
                title=f'Search for "{target[:40]}"',
                description=f'Find "{target}" on this page',
                tool="find_on_page",
                tool_params={"query": target},
            ))

        steps.append(TaskStep(
            id=len(steps) + 1,
            title="Analyze and respond",
            description=f'Use page content to answer: "{intent}"',
            tool="read_page",
        ))
        return steps


class PlanRunner:
    """Executes plan steps one at a time and records them in the ledger."""

    def __init__(
        self,
        gateway: LLMGateway,
        dispatcher: ToolDispatcher,
        guard: PermissionGuard,
        ledger: SessionLedger,
        host: HostExecutor,
        monitor: Optional[CrossOriginMonitor] = None,
    ):
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.guard = guard
        self.ledger = ledger
        self.host = host
        self.monitor = monitor or CrossOriginMonitor(gateway.provider_name, gateway.is_local)

    def run(self, plan: TaskPlan, handle: str) -> TaskPlan:
        """
        Run every pending step in order.

        A failure part way through ends the plan as ``errored``: the step that
        was running is marked skipped and a task_error event is recorded.
        """
        try:
            for idx, step in enumerate(plan.steps):
                if step.status != PENDING:
                    continue
                self.check_cross_origin(plan, idx, handle)
                self.execute_step(plan, idx, handle)

            plan.status = COMPLETED
            self.ledger.add_audit_event(
                EventType.TASK_COMPLETED, self.host.origin(handle),
                {"intent": plan.intent,
                 "completed": sum(1 for s in plan.steps if s.status == COMPLETED),
                 "skipped": sum(1 for s in plan.steps if s.status == SKIPPED)},
            )
        except Exception as exc:
            logger.warning("Plan failed: %s", exc)
            for step in plan.steps:
                if step.status == RUNNING:
                    step.status = SKIPPED
                    step.llm_output = f"(Error: {exc})"
            plan.status = ERRORED
            self.ledger.add_audit_event(
                EventType.TASK_ERROR, self.host.origin(handle),
                {"error": str(exc), "error_type": type(exc).__name__},
            )
        finally:
            self.ledger.go_idle()
        return plan

    def execute_step(self, plan: TaskPlan, index: int, handle: str) -> Optional[TaskStep]:
        if index >= len(plan.steps):
            return None

        step = plan.steps[index]
        step.status = RUNNING
        origin = self.host.origin(handle)
        location = self.gateway.processing_location

        result = self.dispatcher.dispatch(step.tool, step.tool_params, handle)
        if result.denied:
            return self._finish(step, origin, location, SKIPPED, "(Permission denied by user)")
        if not result.success:
            step.result = result.payload()
            return self._finish(step, origin, location, COMPLETED, f"(Tool error: {result.error or 'unknown'})")

        if not self.gateway.is_local:
            granted = self.guard.ensure(
                Capability.SEND_EXTERNAL, origin, handle,
                f"Send page content to {self.gateway.provider_name} for analysis",
                HIGH,
            )
            if not granted:
                return self._finish(
                    step, origin, location, SKIPPED,
                    "(Cloud send denied. Switch to a local backend for on-device processing)",
                )

        serialized = result.serialized()
        entry = self.ledger.add_data_entry(origin, "page_content", step.tool, serialized, "tool_call")
        self.ledger.add_audit_event(
            EventType.TOOL_CALL, origin,
            {"tool": step.tool, "params": step.tool_params},
            processing_location=location,
            tokens=entry.token_count,
        )
        self.ledger.record_processing(location)

        step.result = result.data
        step.tokens = entry.token_count
        step.origin = origin
        step.sensitivity = entry.sensitivity
        return self._finish(step, origin, location, COMPLETED, self._analyze(plan, step, serialized))

    def check_cross_origin(self, plan: TaskPlan, index: int, handle: str) -> Optional[str]:
        """Advisory warning when this step brings a new origin into context."""
        completed = [
            StepOrigin(origin=s.origin, sensitivity=s.sensitivity)
            for s in plan.steps
            if s.status == COMPLETED and s.origin
        ]
        current = self.host.origin(handle)
        warning = self.monitor.check(completed, current)
        if warning is None:
            return None

        if index < len(plan.steps):
            plan.steps[index].cross_origin_warning = warning
        self.ledger.add_audit_event(
            EventType.CROSS_ORIGIN_WARNING, current,
            {"warning": warning, "origins": sorted({s.origin for s in completed} | {current})},
        )
        return warning

    # ── Internals ─────────────────────────────────────────────────────────

    def _analyze(self, plan: TaskPlan, step: TaskStep, serialized: str) -> str:
        previous = [f"{s.title}: {s.llm_output}" for s in plan.steps if s.status == COMPLETED and s.llm_output]
        page_limit = 3000 if step.tool in ("read_page", "extract_data") else 1000
        context = "\nPrevious steps:\n" + "\n".join(previous) if previous else ""
        prompt = (
            f'Task: "{plan.intent}"\nStep: {step.title}\nTool: {step.tool}\n\n'
            f"Page data:\n{serialized[:page_limit]}{context}\n\n"
            "Provide a helpful, concise response (3-4 sentences). Answer the user's question directly."
        )
        messages = [
            {"role": "system",
             "content": "You are a helpful AI assistant analyzing real browser page content. Be concise and specific."},
            {"role": "user", "content": prompt},
        ]

        try:
            response = self.gateway.chat(messages)
        except (GatewayError, httpx.HTTPError) as exc:
            logger.warning("Step analysis failed: %s", exc)
            return "(LLM unavailable, showing raw data)"

        output = response.content or "(No response)"
        tokens = estimate_tokens(prompt + output)
        self.ledger.add_context_tokens(tokens)
        self.ledger.add_audit_event(
            EventType.LLM_PROMPT, "openlens",
            {"step": step.title, "provider": self.gateway.provider_name},
            processing_location=response.processing_location,
            tokens=tokens,
        )
        return output

    def _finish(self, step: TaskStep, origin: str, location: str, status: str, output: str) -> TaskStep:
        step.status = status
        step.llm_output = output
        self.ledger.add_audit_event(
            EventType.TASK_STEP, origin,
            {"step": step.title, "tool": step.tool, "status": status},
            processing_location=location,
        )
        return step
