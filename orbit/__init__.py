"""
Orbit - Autonomous Agent Automation Platform Core

Runs user-defined agents against a reasoning model, dispatches the tools the
model decides to call, matches inbound events to agent triggers and fans
instructions out to several agents at once.
"""

__version__ = "0.1.0"
__author__ = "Thien Nguyen"
__license__ = "MIT"

from .core import Orbit, EventBus
from .tool import Tool
from .tool_registry import ToolRegistry
from .decision import ToolDecision, AgentDecision, NoDecision, parse_decision, recover_json
from .dispatch import ToolDispatcher, ToolOutcome
from .agent import DecisionLoop
from .supervisor import AgentSupervisor, RetryPolicy, is_transient_error
from .triggers import TriggerEngine, evaluate_conditions
from .routing import DelegationRouter
from .scheduler import AgentScheduler, InMemoryJobQueue, RedisJobQueue, ScheduleWorker
from .management import AgentManager
from .store import InMemoryAgentStore, JSONAgentStore
from .models import (
    Agent, Schedule, Trigger, TriggerType, Event, User,
    RunResult, DelegationResult, DelegationReport,
)
from .exceptions import (
    OrbitError, AgentNotFoundError, FatalRunError, DecisionParseError,
    TriggerNotFoundError, DuplicateWebhookPathError,
)

__all__ = [
    # Core
    "Orbit",
    "EventBus",
    "Tool",
    "ToolRegistry",
    "__version__",

    # Decisions & dispatch
    "ToolDecision",
    "AgentDecision",
    "NoDecision",
    "parse_decision",
    "recover_json",
    "ToolDispatcher",
    "ToolOutcome",

    # Execution
    "DecisionLoop",
    "AgentSupervisor",
    "RetryPolicy",
    "is_transient_error",
    "TriggerEngine",
    "evaluate_conditions",
    "DelegationRouter",

    # Scheduling & management
    "AgentScheduler",
    "InMemoryJobQueue",
    "RedisJobQueue",
    "ScheduleWorker",
    "AgentManager",
    "InMemoryAgentStore",
    "JSONAgentStore",

    # Models
    "Agent",
    "Schedule",
    "Trigger",
    "TriggerType",
    "Event",
    "User",
    "RunResult",
    "DelegationResult",
    "DelegationReport",

    # Errors
    "OrbitError",
    "AgentNotFoundError",
    "FatalRunError",
    "DecisionParseError",
    "TriggerNotFoundError",
    "DuplicateWebhookPathError",
]
