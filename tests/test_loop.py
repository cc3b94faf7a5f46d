"""Tests for the tool-call loop state machine."""

import json
from unittest.mock import MagicMock

import httpx

from openlens.core.loop import EXHAUSTED_MESSAGE, LoopState, ToolCallLoop
from openlens.mcp.client import McpClient
from openlens.mcp.store import McpServerStore
from openlens.permissions.guard import Decision, PermissionGuard, Scope
from openlens.providers.base import GatewayError, OllamaProvider, ToolCall
from openlens.providers.gateway import LLMGateway
from openlens.session.ledger import EventType, SessionLedger
from openlens.session.sensitivity import classify_sensitivity
from openlens.tools.dispatcher import ToolDispatcher
from openlens.tools.registry import ToolRegistry
from openlens.validation.config import Config

from tests.fakes import PAGE_TEXT, FakeHost, ScriptedProvider, ScriptedSurface


def _build(provider, surface=None, host=None, max_iterations=5, preread_timeout=1.0):
    host = host or FakeHost()
    surface = surface or ScriptedSurface()
    ledger = SessionLedger()
    guard = PermissionGuard(ledger, surface, processing_location=provider.processing_location)
    registry = ToolRegistry(McpServerStore())
    dispatcher = ToolDispatcher(registry, guard, host, MagicMock(spec=McpClient), tool_timeout=1)
    return ToolCallLoop(
        LLMGateway(provider), registry, dispatcher, guard, ledger, host,
        max_iterations=max_iterations, generation_timeout=2, preread_timeout=preread_timeout,
    )


def _types(loop):
    return [e.type for e in loop.ledger.events()]


class TestScenarios:
    def test_local_read_page_answers_directly(self):
        provider = ScriptedProvider(["The pro plan costs 20 dollars per month."])
        surface = ScriptedSurface()
        loop = _build(provider, surface)

        result = loop.run("What does the pro plan cost?", "tab-1")

        assert result.state == LoopState.ANSWERED
        assert result.final_answer == "The pro plan costs 20 dollars per month."
        assert surface.calls == []
        assert _types(loop) == [
            EventType.TASK_STARTED,
            EventType.PERMISSION_GRANTED,
            EventType.TOOL_CALL_START,
            EventType.TOOL_CALL_RESULT,
            EventType.LLM_PROMPT,
        ]
        assert loop.ledger.events()[1].detail["auto_granted"] is True
        entries = loop.ledger.entries()
        assert len(entries) == 1
        assert entries[0].origin == "a.example"
        assert entries[0].sensitivity == classify_sensitivity(PAGE_TEXT)
        # Direct answer is a content-only call embedding the page
        assert provider.requests[0]["tools"] is None
        assert PAGE_TEXT in provider.requests[0]["messages"][0]["content"]

    def test_cloud_denied_read_ends_with_explanation(self):
        provider = ScriptedProvider(['{"tool": "read_page", "args": {}}'], is_local=False, native=False)
        surface = ScriptedSurface([Decision(granted=False)])
        loop = _build(provider, surface)

        result = loop.run("Summarize this page", "tab-1")

        assert result.state == LoopState.ANSWERED
        assert "denied" in result.final_answer
        assert len(surface.calls) == 1
        assert loop.ledger.entries() == []
        assert [c.status for c in result.calls] == ["skipped"]
        assert _types(loop) == [
            EventType.TASK_STARTED,
            EventType.TOOL_CALL_START,
            EventType.PERMISSION_REQUESTED,
            EventType.PERMISSION_DENIED,
            EventType.TOOL_CALL_RESULT,
        ]

    def test_rejected_native_tools_fall_back_to_catalog(self):
        catalog_replies = [
            'Let me search. {"tool": "find_on_page", "args": {"query": "pro plan"}}',
            "The pro plan costs 20 dollars per month.",
        ]

        def handler(request):
            body = json.loads(request.content)
            if "tools" in body:
                return httpx.Response(400, json={"error": "tools not supported"})
            if "Available tools:" in body["messages"][0]["content"]:
                return httpx.Response(200, json={"message": {"content": catalog_replies.pop(0)}})
            # Direct answer attempt: reply with a tool call so it falls through
            return httpx.Response(200, json={"message": {"content": '{"tool": "read_page"}'}})

        provider = OllamaProvider("llama3", Config(), client=httpx.Client(transport=httpx.MockTransport(handler)))
        loop = _build(provider)

        result = loop.run("What does the pro plan cost?", "tab-1")

        assert result.state == LoopState.ANSWERED
        assert result.final_answer == "The pro plan costs 20 dollars per month."
        assert [c.tool_name for c in result.calls] == ["read_page", "find_on_page"]
        assert result.calls[1].status == "completed"
        assert result.iterations == 2

    def test_exhausts_after_max_iterations(self):
        provider = ScriptedProvider([ToolCall("find_on_page", {"query": "plan"})], is_local=False, native=False)
        surface = ScriptedSurface([Decision(granted=True, scope=Scope.TASK)])
        loop = _build(provider, surface)

        result = loop.run("Keep searching", "tab-1")

        assert result.state == LoopState.EXHAUSTED
        assert result.final_answer == EXHAUSTED_MESSAGE == "(Reached maximum tool call iterations)"
        assert result.iterations == 5
        assert len(provider.requests) == 5
        starts = loop.ledger.events(EventType.TOOL_CALL_START)
        results = loop.ledger.events(EventType.TOOL_CALL_RESULT)
        assert len(starts) == len(results) == 5
        assert len(surface.calls) == 1

    def test_every_result_follows_its_start(self):
        provider = ScriptedProvider([ToolCall("find_on_page", {"query": "plan"})], is_local=False, native=False)
        loop = _build(provider, ScriptedSurface([Decision(granted=True, scope=Scope.TASK)]), max_iterations=3)
        loop.run("Keep searching", "tab-1")

        pending = []
        for event in loop.ledger.events():
            key = (event.detail.get("tool"), event.detail.get("iteration"))
            if event.type == EventType.TOOL_CALL_START:
                pending.append(key)
            elif event.type == EventType.TOOL_CALL_RESULT:
                assert pending.pop() == key
        assert pending == []


class TestTransitions:
    def test_short_direct_answer_falls_through(self):
        provider = ScriptedProvider(["ok", "The pro plan costs 20 dollars per month."])
        loop = _build(provider)

        result = loop.run("What does the pro plan cost?", "tab-1")

        assert result.state == LoopState.ANSWERED
        assert result.iterations == 1
        assert provider.requests[1]["tools"] is not None

    def test_slow_pre_read_is_skipped(self):
        host = FakeHost()
        host.delay = 0.5
        provider = ScriptedProvider(["No page content was available to me."])
        loop = _build(provider, host=host, preread_timeout=0.05)

        result = loop.run("What is this?", "tab-1")

        assert result.state == LoopState.ANSWERED
        assert provider.requests[0]["tools"] is not None
        assert loop.ledger.entries() == []

    def test_cloud_pre_read_without_grant_is_silent(self):
        provider = ScriptedProvider(["I cannot see the page, but here is a general answer."],
                                    is_local=False, native=False)
        surface = ScriptedSurface()
        loop = _build(provider, surface)

        loop.run("What is this?", "tab-1")

        assert surface.calls == []
        assert _types(loop) == [EventType.TASK_STARTED, EventType.LLM_PROMPT]

    def test_tool_results_feed_the_next_turn(self):
        provider = ScriptedProvider([
            "ok",
            ToolCall("find_on_page", {"query": "pro plan"}),
            "The pro plan costs 20 dollars per month.",
        ])
        loop = _build(provider)
        loop.run("What does the pro plan cost?", "tab-1")

        last = provider.requests[-1]["messages"]
        assert json.loads(last[-2]["content"]) == {"tool": "find_on_page", "args": {"query": "pro plan"}}
        assert last[-1]["role"] == "user"
        assert last[-1]["content"].startswith("Tool result for find_on_page:")
        assert "20 dollars" in last[-1]["content"]

    def test_unknown_tool_lets_the_model_recover(self):
        provider = ScriptedProvider([ToolCall("rm_rf"), "Sorry, here is the answer instead."],
                                    is_local=False, native=False)
        loop = _build(provider)

        result = loop.run("Do something", "tab-1")

        assert result.state == LoopState.ANSWERED
        assert result.calls[0].status == "failed"
        assert "Unknown tool" in result.calls[0].result
        assert loop.ledger.entries() == []

    def test_gateway_failure_errors_the_task(self):
        provider = ScriptedProvider([GatewayError("scripted", 500, "boom")])
        loop = _build(provider)

        result = loop.run("What is this?", "tab-1")

        assert result.state == LoopState.ERRORED
        assert "500" in result.error
        last = loop.ledger.events()[-1]
        assert last.type == EventType.TASK_ERROR
        assert last.detail["error_type"] == "GatewayError"

    def test_each_run_starts_a_new_session(self):
        provider = ScriptedProvider(["The pro plan costs 20 dollars per month."])
        loop = _build(provider)

        first = loop.run("What does the pro plan cost?", "tab-1")
        second = loop.run("What does the pro plan cost?", "tab-1")

        assert first.session_id != second.session_id
        assert loop.ledger.events()[0].type == EventType.TASK_STARTED
        assert loop.ledger.session.processing_location == "idle"
