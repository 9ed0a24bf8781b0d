"""
Orbit exception hierarchy.
"""


class OrbitError(Exception):
    """Base class for all Orbit errors."""
    pass


class AgentNotFoundError(OrbitError):
    """Raised when an agent id does not resolve to a stored agent."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class FatalRunError(OrbitError):
    """An agent run failure that must never be retried (e.g. authorization)."""
    pass


class DecisionParseError(OrbitError):
    """No JSON object could be recovered from model output."""
    pass


class TriggerNotFoundError(OrbitError):
    pass


class DuplicateWebhookPathError(OrbitError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Webhook path already in use: {path}")
