"""
Tests for tool dispatch.
Tests resolution, call-shape fallback, in-band errors and agent decisions.
"""

import logging
import pytest
from unittest.mock import AsyncMock

from orbit.decision import AgentDecision, NoDecision, ToolDecision
from orbit.dispatch import ToolDispatcher
from orbit.models import RunResult
from orbit.tool import Tool
from orbit.tool_registry import ToolRegistry


class TestToolRegistry:
    """Test the explicit registry."""

    def test_register_and_get(self, registry):
        assert registry.get("list_repos").name == "list_repos"
        assert registry.get("nonexistent") is None

    def test_insertion_order(self, registry):
        assert registry.list() == ["list_repos", "send_email", "send_gmail", "broken"]

    def test_filtered_view(self, registry):
        view = registry.filtered(["send_email", "unknown"])
        assert view.list() == ["send_email"]

    def test_wildcard_keeps_everything(self, registry):
        assert registry.filtered(["*"]) is registry
        assert registry.filtered([]) is registry

    def test_catalog_lists_params(self, registry):
        catalog = registry.catalog()
        assert "- list_repos: List repositories (params: org)" in catalog
        assert "- broken: Always fails (params: none)" in catalog


class TestExecuteTool:
    """Test tool execution through the dispatcher."""

    @pytest.mark.asyncio
    async def test_success(self, dispatcher, tool_calls):
        outcome = await dispatcher.execute_tool(ToolDecision("send_email", {"to": "a@b.c"}), "user-1")
        assert outcome.success
        assert outcome.result == {"sent": True, "to": "a@b.c"}
        assert tool_calls == [("send_email", {"to": "a@b.c"})]

    @pytest.mark.asyncio
    async def test_unknown_tool_lists_available(self, dispatcher):
        outcome = await dispatcher.execute_tool(ToolDecision("nope"), "user-1")
        assert not outcome.success
        assert outcome.error == "Tool not found: nope. Available: list_repos, send_email, send_gmail, broken"

    @pytest.mark.asyncio
    async def test_outside_allowed_set_rejected(self, dispatcher, tool_calls):
        outcome = await dispatcher.execute_tool(
            ToolDecision("send_gmail", {"to": "x"}), "user-1", allowed=["list_repos", "send_email"]
        )
        assert not outcome.success
        assert "not permitted" in outcome.error
        assert tool_calls == []

    @pytest.mark.asyncio
    async def test_context_carries_caller_and_user(self):
        seen = {}

        async def whoami(args, ctx):
            seen.update(ctx)
            return "ok"

        registry = ToolRegistry(config={}, logger=logging.getLogger("test"))
        registry.register("whoami", Tool("whoami", whoami, "Echo context"))
        outcome = await ToolDispatcher(registry, caller="orbit").execute_tool(ToolDecision("whoami"), "user-9")

        assert outcome.success
        assert seen == {"context": {"caller": "orbit", "userId": "user-9"}}

    @pytest.mark.asyncio
    async def test_falls_back_to_simple_call_shape(self):
        def legacy(args):
            return {"echo": args["x"]}

        registry = ToolRegistry(config={}, logger=logging.getLogger("test"))
        registry.register("legacy", Tool("legacy", legacy, "Single-argument tool"))
        outcome = await ToolDispatcher(registry).execute_tool(ToolDecision("legacy", {"x": 1}), "u")

        assert outcome.success
        assert outcome.result == {"echo": 1}

    @pytest.mark.asyncio
    async def test_original_error_surfaced(self, dispatcher, event_bus):
        """When both call shapes fail the first error is reported."""
        outcome = await dispatcher.execute_tool(ToolDecision("broken"), "user-1")
        assert not outcome.success
        assert outcome.error == "upstream exploded"
        assert ("tool:error", {"tool": "broken", "error": "upstream exploded"}) in event_bus.events

    @pytest.mark.asyncio
    async def test_in_band_error_string_is_failure(self):
        async def soft_fail(args, ctx):
            return "Error: rate limited by provider"

        registry = ToolRegistry(config={}, logger=logging.getLogger("test"))
        registry.register("soft", Tool("soft", soft_fail, "Reports errors in-band"))
        outcome = await ToolDispatcher(registry).execute_tool(ToolDecision("soft"), "u")

        assert not outcome.success
        assert outcome.error == "Error: rate limited by provider"

    @pytest.mark.asyncio
    async def test_args_cleaned_to_json(self, dispatcher, tool_calls):
        from datetime import date
        await dispatcher.execute_tool(ToolDecision("send_email", {"to": "x", "when": date(2024, 1, 2)}), "u")
        assert tool_calls[0][1] == {"to": "x", "when": "2024-01-02"}

    @pytest.mark.asyncio
    async def test_agent_decision_rejected_by_execute_tool(self, dispatcher):
        outcome = await dispatcher.execute_tool(AgentDecision("agent-b", {"input": "hi"}), "u")
        assert not outcome.success


class TestExecuteDecision:
    """Test decision routing."""

    @pytest.mark.asyncio
    async def test_agent_decision_uses_runner(self, dispatcher):
        runner = AsyncMock()
        runner.run.return_value = RunResult(reply="done")
        dispatcher.agent_runner = runner

        outcome = await dispatcher.execute_decision(
            AgentDecision("agent-b", {"input": "summarize"}), "user-1", delegated_from="agent-a"
        )

        assert outcome.success
        assert outcome.result == {"reply": "done"}
        runner.run.assert_awaited_once_with(
            "agent-b", "user-1", input="summarize",
            context={"agentId": "agent-b", "delegatedFrom": "agent-a", "delegationChain": ["agent-a"]},
        )

    @pytest.mark.asyncio
    async def test_agent_decision_forwards_chain(self, dispatcher):
        runner = AsyncMock()
        runner.run.return_value = RunResult(reply="done")
        dispatcher.agent_runner = runner

        await dispatcher.execute_decision(
            AgentDecision("agent-c", {"input": "x"}), "user-1",
            delegated_from="agent-b", delegation_chain=["agent-a", "agent-b"],
        )

        assert runner.run.await_args.kwargs["context"]["delegationChain"] == ["agent-a", "agent-b"]

    @pytest.mark.asyncio
    async def test_agent_decision_without_runner(self, dispatcher):
        outcome = await dispatcher.execute_decision(AgentDecision("agent-b"), "user-1")
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_no_decision(self, dispatcher):
        outcome = await dispatcher.execute_decision(NoDecision("hello"), "user-1")
        assert outcome.error == "No actionable decision"
