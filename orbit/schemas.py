"""
Input validation for management and delegation requests.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ScheduleParams(BaseModel):
    enabled: bool = False
    interval_minutes: Optional[int] = Field(default=None, ge=1, le=10080, alias="intervalMinutes")
    cron: Optional[str] = None

    model_config = {"populate_by_name": True}


class CreateAgentParams(BaseModel):
    """Payload for creating an agent."""
    name: str = Field(min_length=1, max_length=100)
    system_prompt: Optional[str] = Field(default="", max_length=5000, alias="systemPrompt")
    description: Optional[str] = Field(default="", max_length=1000)
    tools: List[str] = Field(default_factory=list)
    integrations: List[str] = Field(default_factory=list)
    model: Optional[str] = None
    schedule: Optional[ScheduleParams] = None

    model_config = {"populate_by_name": True}


class DelegationRequest(BaseModel):
    """Fan-out request: one instruction, many agents."""
    user_id: str = Field(min_length=1, alias="userId")
    instruction: str = Field(min_length=1, max_length=10000)
    preferred_agents: List[str] = Field(default_factory=list, alias="preferredAgents")
    timeout: int = Field(default=30000, ge=1000, le=120000, description="Per-agent timeout in ms")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _dedupe_agents(self):
        self.preferred_agents = list(dict.fromkeys(self.preferred_agents))
        return self
