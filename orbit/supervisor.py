"""
Agent Run Supervisor.
Runs one agent end-to-end: mode selection, bounded retry with exponential
backoff, lifecycle events, log persistence and self-rescheduling.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .agent import DecisionLoop, build_orchestrator_prompt
from .exceptions import AgentNotFoundError, FatalRunError
from .models import Agent, RunResult, Schedule, utcnow

TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection reset",
    "connection refused",
    "429",
    "rate limit",
    "too many requests",
    "503",
    "service unavailable",
    "temporarily unavailable",
)


class TransientRunError(Exception):
    """A run that finished with a retryable error payload."""
    pass


def is_transient_error(error) -> bool:
    """Timeouts, connection resets, rate limiting and upstream unavailability."""
    if error is None or isinstance(error, (FatalRunError, AgentNotFoundError)):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_PATTERNS)


@dataclass
class RetryPolicy:
    """Exponential backoff: attempt i waits base_delay * 2**i seconds."""
    max_retries: int = 3
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def should_retry(self, error, attempt: int) -> bool:
        return attempt < self.max_retries and is_transient_error(error)


class AgentSupervisor:
    """
    Executes stored agents with resilience. Callers always get a RunResult,
    never an exception.

    Example:
        supervisor = orbit.supervisor
        result = await supervisor.run(agent.id, user_id)
    """

    def __init__(self,
                 store,
                 loop: DecisionLoop,
                 dispatcher,
                 tools,
                 scheduler=None,
                 event_bus=None,
                 retry_policy: Optional[RetryPolicy] = None,
                 metrics=None,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep,
                 max_delegation_depth: int = 5):
        self.store = store
        self.loop = loop
        self.dispatcher = dispatcher
        self.tools = tools
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics
        self._sleep = sleep
        self.max_delegation_depth = max_delegation_depth
        self.logger = logging.getLogger("Supervisor")

    def _emit(self, name: str, data: Dict):
        if self.event_bus:
            self.event_bus.emit(name, data)

    async def run(self, agent_id: str, user_id: Optional[str] = None, input: Optional[str] = None,
                  context: Optional[Dict] = None) -> RunResult:
        """Run an agent. Transient failures are retried in a bounded loop."""
        start = time.time()
        result = RunResult(error="Agent run did not start")
        error = None
        max_retries = self.retry_policy.max_retries

        for attempt in range(max_retries + 1):
            self._emit("agent:run:start", {"agentId": agent_id, "retryAttempt": attempt})
            error = None
            try:
                result = await self._execute(agent_id, user_id, input, context)
                if result.error and is_transient_error(result.error):
                    error = TransientRunError(result.error)
            except Exception as e:
                error = e
                result = RunResult(error=str(e))

            if error is None:
                self._emit("agent:run:complete", {
                    "agentId": agent_id,
                    "duration": time.time() - start,
                    "success": result.success,
                })
                break

            if self.retry_policy.should_retry(error, attempt):
                delay = self.retry_policy.delay_for(attempt)
                self.logger.warning(
                    f"Agent {agent_id} transient failure (attempt {attempt + 1}/{max_retries}), "
                    f"retrying in {delay}s: {error}"
                )
                self._emit("agent:run:retry", {
                    "agentId": agent_id,
                    "attempt": attempt + 1,
                    "delayMs": int(delay * 1000),
                    "error": str(error),
                })
                if self.metrics:
                    self.metrics.record_retry(agent_id)
                await self._sleep(delay)
                continue

            self.logger.error(f"Agent {agent_id} failed: {error}")
            self._emit("agent:run:error", {
                "agentId": agent_id,
                "error": str(error),
                "duration": time.time() - start,
                "finalRetry": attempt >= max_retries,
            })
            break

        if not isinstance(error, (AgentNotFoundError, FatalRunError)):
            await self._record(agent_id, result)

        if self.metrics:
            self.metrics.record_request(
                "supervisor", "run", time.time() - start,
                success=result.success,
                error_type=type(error).__name__ if error else None,
            )
        return result

    async def _execute(self, agent_id: str, user_id: Optional[str], input: Optional[str],
                       context: Optional[Dict]) -> RunResult:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if user_id and agent.owner_id != user_id:
            raise FatalRunError("Unauthorized")
        chain = self._delegation_chain(agent, context)

        prompt = input or agent.system_prompt or agent.description
        tools = self.tools.filtered(None if agent.allows_all_tools() else agent.tools)

        if not input or input == agent.system_prompt:
            user = await self.store.get_user(agent.owner_id)
            self.logger.info(f"Agent {agent.id} running unattended")
            return await self.loop.run_unattended(agent, prompt, user, tools, delegation_chain=chain)

        return await self._run_directed(agent, prompt, tools, context, chain)

    def _delegation_chain(self, agent: Agent, context: Optional[Dict]) -> List[str]:
        """Agent ids on the delegation path, ending with this agent. Cycles and runaway depth are fatal."""
        context = context or {}
        chain = list(context.get("delegationChain") or [])
        delegated_from = context.get("delegatedFrom")
        if delegated_from and (not chain or chain[-1] != delegated_from):
            chain.append(delegated_from)
        if agent.id in chain:
            if chain[-1] == agent.id:
                raise FatalRunError("Agent cannot delegate to itself")
            raise FatalRunError(f"Delegation cycle: {' -> '.join(chain + [agent.id])}")
        if len(chain) >= self.max_delegation_depth:
            raise FatalRunError(f"Delegation depth exceeded ({self.max_delegation_depth})")
        return chain + [agent.id]

    async def _run_directed(self, agent: Agent, prompt: str, tools, context: Optional[Dict],
                            chain: Optional[List[str]] = None) -> RunResult:
        system = build_orchestrator_prompt(tools.list())
        if context:
            system += f"\n\nContext: {json.dumps(context, default=str)}"

        result = await self.loop.run_directed(system, prompt, user_id=agent.owner_id, model=agent.model)
        if result.decision is None:
            return result

        outcome = await self.dispatcher.execute_decision(
            result.decision, agent.owner_id, allowed=tools.list(), delegated_from=agent.id,
            delegation_chain=chain,
        )
        result.raw["toolResult"] = outcome.to_dict()
        if outcome.success:
            result.raw["result"] = outcome.result
        return result

    async def _record(self, agent_id: str, result: RunResult):
        """Append the log entry and lastRunAt regardless of outcome, then apply any schedule directive."""
        try:
            agent = await self.store.get_agent(agent_id)
            if agent is None:
                return
            now = utcnow()
            agent.append_log(f"Run at {now.isoformat()}: {json.dumps(result.to_dict(), default=str)}")
            agent.last_run_at = now

            directive = result.schedule_directive()
            if directive:
                agent.schedule = Schedule.from_dict(directive)
            await self.store.save_agent(agent)

            if directive and self.scheduler:
                await self.scheduler.reschedule(agent.id, agent.owner_id, agent.schedule)
                self.logger.info(f"Agent {agent.id} re-armed its schedule: {directive}")
        except Exception as e:
            self.logger.error(f"Failed to record run for agent {agent_id}: {e}")
