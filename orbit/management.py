"""
Agent management.
Create, update, delete and (un)schedule agents, and attach triggers to them.
Keeps the recurring queue in step with stored schedules.
"""

import logging
from typing import Dict, List, Optional, Union

from .exceptions import AgentNotFoundError
from .models import Agent, Schedule, Trigger, TriggerType
from .schemas import CreateAgentParams
from .triggers import generate_webhook_path

DEFAULT_SCHEDULE = {"enabled": True, "intervalMinutes": 5}

UPDATABLE_FIELDS = {
    "name": "name",
    "description": "description",
    "systemPrompt": "system_prompt",
    "system_prompt": "system_prompt",
    "model": "model",
    "tools": "tools",
    "integrations": "integrations",
}


class AgentManager:
    """
    Management operations. When called from a tool, pass the tool call
    context so the caller identity is checked.

    Example:
        agent = await orbit.manager.create_agent("u1", {
            "name": "Repo watcher",
            "systemPrompt": "List my repos and email me a summary",
            "tools": ["list_repos", "send_email"],
        })
    """

    def __init__(self, store, scheduler, caller: str = "orbit"):
        self.store = store
        self.scheduler = scheduler
        self.caller = caller
        self.logger = logging.getLogger("AgentManager")

    def ensure_caller(self, context: Optional[Dict]):
        """Reject tool invocations that do not come from the orchestrator."""
        if context is None:
            return
        inner = context.get("context", context)
        if inner.get("caller") != self.caller:
            raise PermissionError(f"Forbidden: caller must be {self.caller}")

    async def _owned(self, agent_id: str, owner_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None or agent.owner_id != owner_id:
            raise AgentNotFoundError(agent_id)
        return agent

    async def create_agent(self, owner_id: str, params: Union[CreateAgentParams, Dict],
                           context: Optional[Dict] = None) -> Agent:
        self.ensure_caller(context)
        if not isinstance(params, CreateAgentParams):
            params = CreateAgentParams.model_validate(params)

        schedule = (
            Schedule.from_dict(params.schedule.model_dump(by_alias=True))
            if params.schedule is not None else Schedule.from_dict(DEFAULT_SCHEDULE)
        )
        agent = Agent(
            owner_id=owner_id,
            name=params.name,
            description=params.description or "",
            system_prompt=params.system_prompt or "",
            model=params.model,
            tools=list(params.tools),
            integrations=list(params.integrations),
            schedule=schedule,
        )
        await self.store.save_agent(agent)
        if schedule.enabled:
            await self.scheduler.schedule(agent.id, owner_id, schedule)
        self.logger.info(f"[OK] Created agent {agent.id} ({agent.name})")
        return agent

    async def update_agent(self, agent_id: str, owner_id: str, updates: Dict,
                           context: Optional[Dict] = None) -> Agent:
        self.ensure_caller(context)
        agent = await self._owned(agent_id, owner_id)

        for key, attr in UPDATABLE_FIELDS.items():
            if key in updates:
                value = updates[key]
                setattr(agent, attr, list(value) if attr in ("tools", "integrations") else value)

        schedule_changed = "schedule" in updates
        if schedule_changed:
            agent.schedule = Schedule.from_dict(updates["schedule"])
        await self.store.save_agent(agent)

        if schedule_changed:
            await self.scheduler.reschedule(agent.id, owner_id, agent.schedule)
        return agent

    async def delete_agent(self, agent_id: str, owner_id: str, context: Optional[Dict] = None) -> Dict:
        """Deletes the agent, all of its recurring entries and its triggers."""
        self.ensure_caller(context)
        await self._owned(agent_id, owner_id)

        removed = await self.scheduler.unschedule(agent_id)
        triggers = await self.store.delete_triggers_for_agent(agent_id)
        await self.store.delete_agent(agent_id)
        self.logger.info(f"Deleted agent {agent_id} ({removed} recurring entries, {triggers} triggers)")
        return {"deleted": True, "agentId": agent_id, "removedJobs": removed, "removedTriggers": triggers}

    async def list_agents(self, owner_id: str, context: Optional[Dict] = None) -> List[Agent]:
        self.ensure_caller(context)
        return await self.store.list_agents(owner_id)

    async def get_agent(self, agent_id: str, owner_id: str, context: Optional[Dict] = None) -> Agent:
        self.ensure_caller(context)
        return await self._owned(agent_id, owner_id)

    async def schedule_agent(self, agent_id: str, owner_id: str, interval_minutes: Optional[int] = None,
                             cron: Optional[str] = None, context: Optional[Dict] = None) -> Agent:
        self.ensure_caller(context)
        if not interval_minutes and not cron:
            raise ValueError("Either interval_minutes or cron is required")
        agent = await self._owned(agent_id, owner_id)
        agent.schedule = Schedule(enabled=True, interval_minutes=interval_minutes, cron=cron)
        await self.store.save_agent(agent)
        await self.scheduler.reschedule(agent.id, owner_id, agent.schedule)
        return agent

    async def unschedule_agent(self, agent_id: str, owner_id: str, context: Optional[Dict] = None) -> Agent:
        self.ensure_caller(context)
        agent = await self._owned(agent_id, owner_id)
        agent.schedule.enabled = False
        await self.store.save_agent(agent)
        await self.scheduler.unschedule(agent.id)
        return agent

    async def create_trigger(self, agent_id: str, owner_id: str, type: Union[TriggerType, str],
                             config: Optional[Dict] = None, conditions: Optional[Dict] = None,
                             context: Optional[Dict] = None) -> Trigger:
        """
        Attach a trigger. Webhook triggers get a generated path unless one is
        given; schedule triggers become the agent's schedule so the agent
        keeps a single recurring entry.
        """
        self.ensure_caller(context)
        agent = await self._owned(agent_id, owner_id)
        trigger_type = TriggerType(type)
        config = dict(config or {})

        if trigger_type == TriggerType.WEBHOOK and not config.get("webhookPath"):
            config["webhookPath"] = generate_webhook_path()

        trigger = Trigger(agent_id=agent.id, owner_id=owner_id, type=trigger_type,
                          config=config, conditions=dict(conditions or {}))
        await self.store.save_trigger(trigger)

        if trigger_type == TriggerType.SCHEDULE:
            agent.schedule = Schedule(
                enabled=True,
                interval_minutes=config.get("intervalMinutes"),
                cron=config.get("cron"),
            )
            await self.store.save_agent(agent)
            await self.scheduler.reschedule(agent.id, owner_id, agent.schedule)
        return trigger
