"""
Tool Dispatch.
Resolves a decision against the tool registry (or another agent) and executes it.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .decision import AgentDecision, Decision, NoDecision, ToolDecision
from .models import RunResult


class RunnableAgent(Protocol):
    """Anything that can run a stored agent by id."""

    async def run(self, agent_id: str, user_id: str, input: Optional[str] = None,
                  context: Optional[Dict] = None) -> RunResult:
        ...


@dataclass
class ToolOutcome:
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        if self.success:
            return {"success": True, "result": self.result}
        return {"success": False, "error": self.error}


class ToolDispatcher:
    """
    Executes decisions.

    Tool calls are resolved by exact name. The primary call shape is
    func(args, ctx); on failure func(args) is tried and, if that fails too,
    the first error is reported.
    """

    def __init__(self, registry, caller: str = "orbit", agent_runner: Optional[RunnableAgent] = None,
                 event_bus=None):
        self.registry = registry
        self.caller = caller
        self.agent_runner = agent_runner
        self.event_bus = event_bus
        self.logger = logging.getLogger("ToolDispatch")

    def _emit(self, name: str, data: Dict):
        if self.event_bus:
            self.event_bus.emit(name, data)

    @staticmethod
    def _clean_args(args: Dict) -> Dict:
        return json.loads(json.dumps(args or {}, default=str))

    async def execute_tool(self, decision: Decision, user_id: Optional[str],
                           allowed: Optional[Iterable[str]] = None) -> ToolOutcome:
        if not isinstance(decision, ToolDecision):
            return ToolOutcome(False, error="Decision is not a tool call")

        name = decision.target
        allowed = list(allowed) if allowed is not None else None
        if allowed and "*" not in allowed and name not in allowed:
            self.logger.warning(f"Rejected tool outside allowed set: {name}")
            return ToolOutcome(False, error=f"Tool not permitted for this agent: {name}")

        tool = self.registry.get(name)
        if tool is None:
            available = ", ".join(self.registry.list())
            return ToolOutcome(False, error=f"Tool not found: {name}. Available: {available}")

        try:
            args = self._clean_args(decision.args)
        except (TypeError, ValueError) as e:
            return ToolOutcome(False, error=f"Invalid tool arguments: {e}")
        ctx = {"context": {"caller": self.caller, "userId": user_id}}

        self._emit("tool:start", {"tool": name, "args": args, "userId": user_id})
        start = time.time()
        try:
            try:
                result = await tool.invoke(args, ctx)
            except Exception as primary:
                self.logger.debug(f"{name}(args, ctx) failed, retrying as {name}(args): {primary}")
                try:
                    result = await tool.invoke_simple(args)
                except Exception:
                    raise primary
        except Exception as e:
            self.logger.error(f"Tool {name} failed: {e}")
            self._emit("tool:error", {"tool": name, "error": str(e)})
            return ToolOutcome(False, error=str(e))

        if isinstance(result, str) and "Error" in result:
            self._emit("tool:error", {"tool": name, "error": result})
            return ToolOutcome(False, error=result)

        self._emit("tool:end", {"tool": name, "status": "success", "duration": time.time() - start})
        return ToolOutcome(True, result=result)

    async def execute_agent(self, decision: AgentDecision, user_id: Optional[str],
                            delegated_from: Optional[str] = None,
                            delegation_chain: Optional[List[str]] = None) -> ToolOutcome:
        if self.agent_runner is None:
            return ToolOutcome(False, error="Agent execution is not available")
        if delegation_chain is None:
            delegation_chain = [delegated_from] if delegated_from else []
        try:
            result = await self.agent_runner.run(
                decision.target,
                user_id,
                input=decision.input,
                context={
                    "agentId": decision.target,
                    "delegatedFrom": delegated_from,
                    "delegationChain": list(delegation_chain),
                },
            )
        except Exception as e:
            return ToolOutcome(False, error=str(e))
        return ToolOutcome(result.success, result=result.to_dict(), error=result.error)

    async def execute_decision(self, decision: Decision, user_id: Optional[str],
                               allowed: Optional[Iterable[str]] = None,
                               delegated_from: Optional[str] = None,
                               delegation_chain: Optional[List[str]] = None) -> ToolOutcome:
        if isinstance(decision, ToolDecision):
            return await self.execute_tool(decision, user_id, allowed=allowed)
        if isinstance(decision, AgentDecision):
            return await self.execute_agent(decision, user_id, delegated_from=delegated_from,
                                            delegation_chain=delegation_chain)
        if isinstance(decision, NoDecision):
            return ToolOutcome(False, error="No actionable decision")
        return ToolOutcome(False, error=f"Unknown decision type: {type(decision).__name__}")
