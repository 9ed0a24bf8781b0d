"""
Agent persistence.
An id-keyed async store for agents, triggers and users, with an in-memory
implementation and a JSON file implementation for single-node deployments.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .exceptions import DuplicateWebhookPathError
from .models import Agent, Trigger, TriggerType, User


class AgentStore(ABC):
    """Document store seam. Implementations must return copies, not live objects."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        pass

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> bool:
        pass

    @abstractmethod
    async def list_agents(self, owner_id: Optional[str] = None) -> List[Agent]:
        pass

    @abstractmethod
    async def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        pass

    @abstractmethod
    async def get_trigger_by_webhook_path(self, path: str) -> Optional[Trigger]:
        pass

    @abstractmethod
    async def list_triggers(self, type: Optional[TriggerType] = None, owner_id: Optional[str] = None,
                            agent_id: Optional[str] = None, enabled_only: bool = False) -> List[Trigger]:
        pass

    @abstractmethod
    async def save_trigger(self, trigger: Trigger) -> Trigger:
        pass

    @abstractmethod
    async def delete_triggers_for_agent(self, agent_id: str) -> int:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def save_user(self, user: User) -> User:
        pass


class InMemoryAgentStore(AgentStore):
    """Process-local store. Records are kept serialized so callers never share state."""

    def __init__(self):
        self._agents: Dict[str, Dict] = {}
        self._triggers: Dict[str, Dict] = {}
        self._users: Dict[str, Dict] = {}
        self.logger = logging.getLogger("AgentStore")

    def _changed(self):
        """Hook called after every mutation."""
        pass

    # Agents

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        data = self._agents.get(agent_id)
        return Agent.from_dict(data) if data else None

    async def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.to_dict()
        self._changed()
        return agent

    async def delete_agent(self, agent_id: str) -> bool:
        removed = self._agents.pop(agent_id, None) is not None
        if removed:
            self._changed()
        return removed

    async def list_agents(self, owner_id: Optional[str] = None) -> List[Agent]:
        return [
            Agent.from_dict(data) for data in self._agents.values()
            if owner_id is None or data["ownerId"] == owner_id
        ]

    # Triggers

    async def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        data = self._triggers.get(trigger_id)
        return Trigger.from_dict(data) if data else None

    async def get_trigger_by_webhook_path(self, path: str) -> Optional[Trigger]:
        for data in self._triggers.values():
            if data["config"].get("webhookPath") == path:
                return Trigger.from_dict(data)
        return None

    async def list_triggers(self, type: Optional[TriggerType] = None, owner_id: Optional[str] = None,
                            agent_id: Optional[str] = None, enabled_only: bool = False) -> List[Trigger]:
        triggers = []
        for data in self._triggers.values():
            if type is not None and data["type"] != TriggerType(type).value:
                continue
            if owner_id is not None and data["ownerId"] != owner_id:
                continue
            if agent_id is not None and data["agentId"] != agent_id:
                continue
            if enabled_only and not data["enabled"]:
                continue
            triggers.append(Trigger.from_dict(data))
        return triggers

    async def save_trigger(self, trigger: Trigger) -> Trigger:
        path = trigger.webhook_path
        if path:
            existing = await self.get_trigger_by_webhook_path(path)
            if existing and existing.id != trigger.id:
                raise DuplicateWebhookPathError(path)
        self._triggers[trigger.id] = trigger.to_dict()
        self._changed()
        return trigger

    async def delete_triggers_for_agent(self, agent_id: str) -> int:
        doomed = [tid for tid, data in self._triggers.items() if data["agentId"] == agent_id]
        for tid in doomed:
            del self._triggers[tid]
        if doomed:
            self._changed()
        return len(doomed)

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        data = self._users.get(user_id)
        return User.from_dict(data) if data else None

    async def save_user(self, user: User) -> User:
        self._users[user.id] = user.to_dict()
        self._changed()
        return user


class JSONAgentStore(InMemoryAgentStore):
    """
    File-backed store. The whole state is rewritten after every mutation,
    which is fine for small single-process deployments.
    """

    def __init__(self, filepath: str):
        super().__init__()
        self.filepath = filepath
        self._load()

    def _load(self):
        if not os.path.exists(self.filepath):
            return
        try:
            with open(self.filepath, "r") as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"Corrupt store file {self.filepath}: {e}")
            raise
        self._agents = state.get("agents", {})
        self._triggers = state.get("triggers", {})
        self._users = state.get("users", {})
        self.logger.info(f"Loaded {len(self._agents)} agents from {self.filepath}")

    def _changed(self):
        state = {"agents": self._agents, "triggers": self._triggers, "users": self._users}
        tmp_path = f"{self.filepath}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(state, f, indent=2)
        os.replace(tmp_path, self.filepath)
