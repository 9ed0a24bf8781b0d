"""
Tests for the trigger matching engine.
Tests condition evaluation, pattern matching, fan-out isolation and webhooks.
"""

import hashlib
import hmac
import pytest
from unittest.mock import AsyncMock

from orbit.exceptions import DuplicateWebhookPathError, TriggerNotFoundError
from orbit.models import Event, RunResult, Trigger, TriggerType
from orbit.triggers import (
    TriggerEngine, evaluate_conditions, generate_webhook_path,
    get_nested_value, matches_pattern, verify_github_signature,
)


def make_trigger(agent_id, owner_id="user-1", type=TriggerType.INTEGRATION_EVENT, **config):
    conditions = config.pop("conditions", {})
    return Trigger(agent_id=agent_id, owner_id=owner_id, type=type, config=config, conditions=conditions)


@pytest.fixture
def runner():
    runner = AsyncMock()
    runner.run.return_value = RunResult(reply="ok")
    return runner


@pytest.fixture
def engine(store, runner, event_bus):
    return TriggerEngine(store, runner, event_bus=event_bus)


class TestConditions:
    """Test the condition language."""

    payload = {
        "action": "opened",
        "issue": {"title": "crash on start", "comments": 3, "labels": ["bug", "p1"]},
        "commits": [{"id": "c1"}],
    }

    def test_empty_conditions_match(self):
        assert evaluate_conditions({}, self.payload)
        assert evaluate_conditions(None, None)

    def test_equality_and_nested_paths(self):
        assert evaluate_conditions({"action": "opened", "commits.0.id": "c1"}, self.payload)
        assert not evaluate_conditions({"action": "closed"}, self.payload)

    def test_missing_path_is_none(self):
        assert get_nested_value(self.payload, "issue.author.login") is None
        assert evaluate_conditions({"issue.author": None}, self.payload)

    @pytest.mark.parametrize("conditions, expected", [
        ({"issue.comments": {"$gt": 2}}, True),
        ({"issue.comments": {"$gte": 3, "$lt": 4}}, True),
        ({"issue.comments": {"$lte": 2}}, False),
        ({"action": {"$ne": "closed"}}, True),
        ({"action": {"$in": ["opened", "reopened"]}}, True),
        ({"action": {"$nin": ["opened"]}}, False),
        ({"issue.labels": {"$contains": "bug"}}, True),
        ({"issue.title": {"$contains": "crash"}}, True),
        ({"issue.title": {"$regex": "^crash"}}, True),
        ({"issue.title": {"$regex": "^boom"}}, False),
    ])
    def test_operators(self, conditions, expected):
        assert evaluate_conditions(conditions, self.payload) is expected

    def test_and_or(self):
        conditions = {
            "$and": [{"action": "opened"}, {"issue.comments": {"$gte": 1}}],
            "$or": [{"issue.title": {"$regex": "^feature"}}, {"issue.labels": {"$contains": "bug"}}],
        }
        assert evaluate_conditions(conditions, self.payload)
        assert not evaluate_conditions({"$or": [{"action": "closed"}, {"action": "deleted"}]}, self.payload)

    def test_unknown_operator_ignored(self):
        assert evaluate_conditions({"action": {"$soundslike": "opend"}}, self.payload)

    def test_error_fails_closed(self):
        """Non-numeric comparison errors mean no match."""
        assert not evaluate_conditions({"action": {"$gt": 5}}, self.payload)
        assert not evaluate_conditions({"$and": {"action": "opened"}}, self.payload)

    def test_error_in_other_branch_still_fails(self):
        conditions = {"$or": [{"action": "opened"}, {"issue.title": {"$gt": 1}}]}
        assert not evaluate_conditions(conditions, self.payload)

    def test_plain_dict_is_equality(self):
        payload = {"repo": {"name": "orbit", "private": False}}
        assert evaluate_conditions({"repo": {"name": "orbit", "private": False}}, payload)


class TestPatterns:
    """Test event pattern matching."""

    event = Event(type="integration_event", source="github", event="issues.opened")

    def test_wildcard(self):
        assert matches_pattern("*", self.event)

    def test_source_wildcard(self):
        assert matches_pattern("github.*", self.event)
        assert not matches_pattern("slack.*", self.event)

    def test_exact(self):
        assert matches_pattern("github.issues.opened", self.event)
        assert not matches_pattern("github.issues.closed", self.event)

    def test_missing_pattern(self):
        assert not matches_pattern(None, self.event)


class TestTriggerEngine:
    """Test matching and fan-out."""

    @pytest.mark.asyncio
    async def test_integration_event_fan_out(self, engine, store, runner, event_bus):
        await store.save_trigger(make_trigger("agent-a", pattern="github.*"))
        await store.save_trigger(make_trigger("agent-b", pattern="github.issues.opened",
                                              conditions={"action": "opened"}))
        await store.save_trigger(make_trigger("agent-c", pattern="slack.*"))

        event = Event(type="integration_event", source="github", event="issues.opened",
                      payload={"action": "opened"}, user_id="user-1")
        results = await engine.trigger_agents_for_event(event)

        assert sorted(r["agentId"] for r in results) == ["agent-a", "agent-b"]
        assert all(r["success"] for r in results)
        _, _, kwargs = runner.run.mock_calls[0]
        assert kwargs["input"].startswith("Event triggered: integration_event from github - issues.opened.")
        assert len([e for e, _ in event_bus.events if e == "trigger:fired"]) == 2

    @pytest.mark.asyncio
    async def test_other_owner_filtered(self, engine, store):
        await store.save_trigger(make_trigger("agent-x", owner_id="user-2", pattern="*"))
        event = Event(type="integration_event", source="github", event="push", user_id="user-1")
        assert await engine.trigger_agents_for_event(event) == []

    @pytest.mark.asyncio
    async def test_disabled_trigger_skipped(self, engine, store):
        trigger = make_trigger("agent-a", pattern="*")
        trigger.enabled = False
        await store.save_trigger(trigger)
        event = Event(type="integration_event", source="github", event="push", user_id="user-1")
        assert await engine.match(event) == []

    @pytest.mark.asyncio
    async def test_failure_isolated(self, engine, store, runner):
        await store.save_trigger(make_trigger("agent-ok", pattern="*"))
        await store.save_trigger(make_trigger("agent-bad", pattern="*"))

        async def run(agent_id, user_id, input=None, context=None):
            if agent_id == "agent-bad":
                raise RuntimeError("boom")
            return RunResult(reply="fine")
        runner.run.side_effect = run

        event = Event(type="integration_event", source="github", event="push", user_id="user-1")
        results = {r["agentId"]: r for r in await engine.trigger_agents_for_event(event)}

        assert results["agent-ok"] == {"agentId": "agent-ok", "success": True}
        assert results["agent-bad"] == {"agentId": "agent-bad", "success": False, "error": "boom"}

    @pytest.mark.asyncio
    async def test_last_triggered_updated(self, engine, store):
        trigger = await store.save_trigger(make_trigger("agent-a", pattern="*"))
        event = Event(type="integration_event", source="github", event="push", user_id="user-1")
        await engine.trigger_agents_for_event(event)
        assert (await store.get_trigger(trigger.id)).last_triggered_at is not None

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, engine):
        assert await engine.match(Event(type="carrier_pigeon", source="x", event="y")) == []


class TestWebhooks:
    """Test webhook delivery."""

    @pytest.mark.asyncio
    async def test_path_runs_only_owner_agent(self, engine, store, runner):
        await store.save_trigger(make_trigger("agent-a", type=TriggerType.WEBHOOK, webhookPath="abc123"))
        await store.save_trigger(make_trigger("agent-z", owner_id="user-2", type=TriggerType.WEBHOOK, pattern="*"))

        results = await engine.handle_webhook("abc123", {"ref": "main"})

        assert results == [{"agentId": "agent-a", "success": True}]
        assert runner.run.await_count == 1
        assert runner.run.await_args.args[:2] == ("agent-a", "user-1")

    @pytest.mark.asyncio
    async def test_unknown_path(self, engine):
        with pytest.raises(TriggerNotFoundError):
            await engine.handle_webhook("nope", {})

    @pytest.mark.asyncio
    async def test_signature_checked(self, store, runner):
        engine = TriggerEngine(store, runner, webhook_secret="s3cret")
        await store.save_trigger(make_trigger("agent-a", type=TriggerType.WEBHOOK, webhookPath="abc123"))
        body = b'{"ref": "main"}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        with pytest.raises(PermissionError):
            await engine.handle_webhook("abc123", {"ref": "main"}, raw_body=body, signature="sha256=deadbeef")
        results = await engine.handle_webhook("abc123", {"ref": "main"}, raw_body=body, signature=good)
        assert results[0]["success"]

    def test_verify_signature_rejects_missing(self):
        assert not verify_github_signature(b"{}", None, "secret")
        assert not verify_github_signature(b"{}", "md5=abc", "secret")

    def test_generated_paths_unique(self):
        paths = {generate_webhook_path() for _ in range(50)}
        assert len(paths) == 50
        assert all(len(p) == 32 for p in paths)

    @pytest.mark.asyncio
    async def test_duplicate_path_rejected(self, store):
        await store.save_trigger(make_trigger("agent-a", type=TriggerType.WEBHOOK, webhookPath="abc123"))
        with pytest.raises(DuplicateWebhookPathError):
            await store.save_trigger(make_trigger("agent-b", type=TriggerType.WEBHOOK, webhookPath="abc123"))


class TestManualTrigger:
    """Test manual activation."""

    @pytest.mark.asyncio
    async def test_manual_runs_agent(self, engine, store, runner):
        trigger = await store.save_trigger(make_trigger("agent-a", type=TriggerType.MANUAL))
        result = await engine.trigger_manual(trigger.id, "user-1", input="go")
        assert result.reply == "ok"
        assert runner.run.await_args.kwargs["input"] == "go"

    @pytest.mark.asyncio
    async def test_manual_wrong_owner(self, engine, store):
        trigger = await store.save_trigger(make_trigger("agent-a", type=TriggerType.MANUAL))
        with pytest.raises(TriggerNotFoundError):
            await engine.trigger_manual(trigger.id, "user-2")
