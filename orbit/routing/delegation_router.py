"""
Delegation Router.
Runs one instruction across several agents concurrently, each with its own
timeout, and aggregates every outcome into a single report.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Union

from ..models import (
    Agent, DelegationReport, DelegationResult, DelegationStatus, ReportStatus,
)
from ..schemas import DelegationRequest


class DelegationRouter:
    """
    Parallel fan-out with per-agent timeouts.

    A timed-out agent keeps running in the background; the router only stops
    waiting for it.

    Example:
        report = await orbit.router.delegate({
            "userId": "u1",
            "instruction": "Summarize yesterday's activity",
            "timeout": 20000,
        })
        print(report.status, report.summary)
    """

    def __init__(self, store, runner, event_bus=None, default_timeout_ms: int = 30000, metrics=None):
        self.store = store
        self.runner = runner
        self.event_bus = event_bus
        self.default_timeout_ms = default_timeout_ms
        self.metrics = metrics
        self.logger = logging.getLogger("DelegationRouter")
        # Runs abandoned after a timeout, kept referenced until they finish
        self._background = set()

    def _emit(self, name: str, data: Dict):
        if self.event_bus:
            self.event_bus.emit(name, data)

    async def _candidates(self, request: DelegationRequest) -> List[Agent]:
        if request.preferred_agents:
            agents = []
            for agent_id in request.preferred_agents:
                agent = await self.store.get_agent(agent_id)
                if agent is not None and agent.owner_id == request.user_id:
                    agents.append(agent)
            return agents
        return await self.store.list_agents(request.user_id)

    async def _run_one(self, agent: Agent, request: DelegationRequest, timeout_s: float) -> DelegationResult:
        start = time.time()
        task = asyncio.ensure_future(self.runner.run(
            agent.id, request.user_id, input=request.instruction,
            context={"delegation": True},
        ))
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=timeout_s)
        except asyncio.TimeoutError:
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            self.logger.warning(f"Agent {agent.id} timed out after {timeout_s}s")
            return DelegationResult(
                agent_id=agent.id, agent_name=agent.name, status=DelegationStatus.TIMEOUT,
                error="TIMEOUT", execution_time_ms=int((time.time() - start) * 1000),
            )
        except Exception as e:
            return DelegationResult(
                agent_id=agent.id, agent_name=agent.name, status=DelegationStatus.FAILED,
                error=str(e), execution_time_ms=int((time.time() - start) * 1000),
            )

        elapsed = int((time.time() - start) * 1000)
        if not result.success:
            return DelegationResult(
                agent_id=agent.id, agent_name=agent.name, status=DelegationStatus.FAILED,
                error=result.error, result=result.to_dict(), execution_time_ms=elapsed,
            )
        return DelegationResult(
            agent_id=agent.id, agent_name=agent.name, status=DelegationStatus.COMPLETED,
            result=result.to_dict(), execution_time_ms=elapsed,
        )

    @staticmethod
    def aggregate_status(results: List[DelegationResult]) -> ReportStatus:
        completed = sum(1 for r in results if r.status == DelegationStatus.COMPLETED)
        if results and completed == len(results):
            return ReportStatus.SUCCESS
        if completed > 0:
            return ReportStatus.PARTIAL
        return ReportStatus.FAILED

    async def delegate(self, request: Union[DelegationRequest, Dict]) -> DelegationReport:
        """Run the instruction on every candidate agent and wait for all of them."""
        if not isinstance(request, DelegationRequest):
            request = DelegationRequest.model_validate(request)
        start = time.time()

        agents = await self._candidates(request)
        if not agents:
            return DelegationReport(
                status=ReportStatus.FAILED,
                results=[],
                summary="No agents configured for this user.",
                total_time_ms=int((time.time() - start) * 1000),
            )

        timeout_ms = request.timeout or self.default_timeout_ms
        self.logger.info(f"Delegating to {len(agents)} agents (timeout {timeout_ms}ms)")
        self._emit("delegation:start", {"userId": request.user_id, "agents": [a.id for a in agents]})

        settled = await asyncio.gather(
            *(self._run_one(agent, request, timeout_ms / 1000) for agent in agents),
            return_exceptions=True,
        )
        results = []
        for agent, outcome in zip(agents, settled):
            if isinstance(outcome, BaseException):
                outcome = DelegationResult(
                    agent_id=agent.id, agent_name=agent.name,
                    status=DelegationStatus.FAILED, error=str(outcome),
                )
            results.append(outcome)

        completed = sum(1 for r in results if r.status == DelegationStatus.COMPLETED)
        report = DelegationReport(
            status=self.aggregate_status(results),
            results=results,
            summary=f"Executed {len(results)} agents: {completed} successful, {len(results) - completed} failed.",
            total_time_ms=int((time.time() - start) * 1000),
        )
        self._emit("delegation:complete", {"userId": request.user_id, "status": report.status.value})
        if self.metrics:
            self.metrics.record_request(
                "router", "delegate", (time.time() - start),
                success=report.status != ReportStatus.FAILED,
                error_type=None if report.status != ReportStatus.FAILED else "AllAgentsFailed",
            )
        return report
