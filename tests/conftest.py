"""Pytest configuration and shared fixtures."""
import logging
import pytest
from unittest.mock import MagicMock

from orbit.dispatch import ToolDispatcher
from orbit.llm_providers import ScriptedLLMProvider
from orbit.models import Agent, User
from orbit.monitoring import MetricsCollector
from orbit.scheduler import AgentScheduler, InMemoryJobQueue
from orbit.store import InMemoryAgentStore
from orbit.tool import Tool
from orbit.tool_registry import ToolRegistry


@pytest.fixture
def store():
    """Fresh in-memory agent store."""
    return InMemoryAgentStore()


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def scheduler(queue):
    return AgentScheduler(queue)


@pytest.fixture
def event_bus():
    """Mocked event bus recording emitted events."""
    bus = MagicMock()
    bus.events = []
    bus.emit.side_effect = lambda name, data: bus.events.append((name, data))
    return bus


@pytest.fixture
def metrics():
    return MetricsCollector(enable_prometheus=False)


@pytest.fixture
def tool_calls():
    """Shared log of (tool_name, args) for the sample tools."""
    return []


@pytest.fixture
def registry(tool_calls):
    """Registry with a data tool, two email tools and a failing tool."""
    registry = ToolRegistry(config={}, logger=logging.getLogger("test"))

    async def list_repos(args, ctx):
        tool_calls.append(("list_repos", args))
        return [{"id": i, "name": f"repo-{i}", "html_url": f"https://example.com/{i}", "size": i}
                for i in range(3)]

    async def send_email(args, ctx):
        tool_calls.append(("send_email", args))
        return {"sent": True, "to": args.get("to")}

    async def send_gmail(args, ctx):
        tool_calls.append(("send_gmail", args))
        return {"sent": True, "to": args.get("to")}

    def broken(args, ctx):
        raise RuntimeError("upstream exploded")

    registry.register("list_repos", Tool("list_repos", list_repos, "List repositories", ["org"]))
    registry.register("send_email", Tool("send_email", send_email, "Send an email", ["to", "subject", "body"]))
    registry.register("send_gmail", Tool("send_gmail", send_gmail, "Send via Gmail", ["to", "subject", "body"]))
    registry.register("broken", Tool("broken", broken, "Always fails"))
    return registry


@pytest.fixture
def dispatcher(registry, event_bus):
    return ToolDispatcher(registry, caller="orbit", event_bus=event_bus)


@pytest.fixture
def scripted_llm():
    """Factory for scripted LLM providers."""
    def make(*responses):
        return ScriptedLLMProvider(list(responses))
    return make


@pytest.fixture
def user():
    return User(id="user-1", email="owner@example.com", name="Owner")


@pytest.fixture
def agent(user):
    return Agent(
        id="agent-a",
        owner_id=user.id,
        name="Repo watcher",
        system_prompt="List my repositories and email me a summary.",
        tools=["list_repos", "send_email"],
    )


@pytest.fixture
def tool_json():
    """Render a tool decision the way a model would."""
    def render(target, **args):
        import json
        return json.dumps({"type": "tool", "target": target, "args": args})
    return render
