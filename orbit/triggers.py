"""
Trigger Matching Engine.
Matches inbound events to agent triggers, evaluates trigger conditions and
fans matched agents out to the run supervisor.

Condition language:
    {"action": "opened",
     "issue.comments": {"$gte": 2},
     "$or": [{"label": "bug"}, {"title": {"$regex": "^crash"}}]}
"""

import asyncio
import hashlib
import hmac
import json
import logging
import re
import secrets
from typing import Any, Dict, List, Optional

from .exceptions import TriggerNotFoundError
from .models import Event, RunResult, Trigger, TriggerMatch, TriggerType, utcnow

logger = logging.getLogger("Triggers")


def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve a dot path ("channel.name", "commits.0.id"). Missing paths give None."""
    current = obj
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def _is_operator_map(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(str(k).startswith("$") for k in value)


def _apply_operator(op: str, value: Any, operand: Any) -> bool:
    if op == "$gt":
        return float(value) > float(operand)
    if op == "$gte":
        return float(value) >= float(operand)
    if op == "$lt":
        return float(value) < float(operand)
    if op == "$lte":
        return float(value) <= float(operand)
    if op == "$eq":
        return value == operand
    if op == "$ne":
        return value != operand
    if op == "$in":
        return isinstance(operand, list) and value in operand
    if op == "$nin":
        return isinstance(operand, list) and value not in operand
    if op == "$contains":
        if isinstance(value, str):
            return str(operand) in value
        if isinstance(value, list):
            return operand in value
        return False
    if op == "$regex":
        if value is None:
            return False
        try:
            return re.search(str(operand), str(value)) is not None
        except re.error:
            return False
    # Unknown operators do not block a match
    return True


def _evaluate(conditions: Dict, payload: Dict) -> bool:
    if not isinstance(conditions, dict):
        raise TypeError(f"Condition must be an object, got {type(conditions).__name__}")

    # Every branch is evaluated so an error anywhere surfaces
    results = []
    for key, expected in conditions.items():
        if key in ("$and", "$or"):
            if not isinstance(expected, list):
                raise TypeError(f"{key} requires a list")
            sub = [_evaluate(item, payload) for item in expected]
            results.append(all(sub) if key == "$and" else any(sub))
        elif key.startswith("$"):
            continue
        else:
            value = get_nested_value(payload, key)
            if _is_operator_map(expected):
                results.append(all([_apply_operator(op, value, operand) for op, operand in expected.items()]))
            else:
                results.append(value == expected)
    return all(results)


def evaluate_conditions(conditions: Optional[Dict], payload: Optional[Dict]) -> bool:
    """True when the payload satisfies the conditions. Errors evaluate to False."""
    if not conditions:
        return True
    try:
        return _evaluate(conditions, payload or {})
    except Exception as e:
        logger.warning(f"Condition evaluation failed, treating as no match: {e}")
        return False


def matches_pattern(pattern: Optional[str], event: Event) -> bool:
    """`*`, `source.*` or exact `source.event`."""
    if not pattern:
        return False
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return pattern[:-2] == event.source
    return pattern == event.key


def generate_webhook_path() -> str:
    return secrets.token_hex(16)


def verify_github_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Check an `X-Hub-Signature-256: sha256=<hex>` header in constant time."""
    if not signature or not signature.startswith("sha256="):
        return False
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={digest}", signature)


class TriggerEngine:
    """
    Selects the agents an event should run and runs them, isolating failures.

    Example:
        engine = orbit.triggers
        results = await engine.trigger_agents_for_event(
            Event(type="integration_event", source="github", event="issues.opened", payload={...})
        )
    """

    def __init__(self, store, runner, event_bus=None, webhook_secret: Optional[str] = None):
        self.store = store
        self.runner = runner
        self.event_bus = event_bus
        self.webhook_secret = webhook_secret
        self.logger = logger

    def _emit(self, name: str, data: Dict):
        if self.event_bus:
            self.event_bus.emit(name, data)

    async def match(self, event: Event) -> List[TriggerMatch]:
        if event.type == TriggerType.WEBHOOK.value:
            triggers = await self.store.list_triggers(
                type=TriggerType.WEBHOOK, owner_id=event.user_id, enabled_only=True
            )
            candidates = [
                t for t in triggers
                if (t.webhook_path == event.event if t.webhook_path else matches_pattern(t.pattern, event))
            ]
        elif event.type == TriggerType.INTEGRATION_EVENT.value:
            triggers = await self.store.list_triggers(
                type=TriggerType.INTEGRATION_EVENT, owner_id=event.user_id, enabled_only=True
            )
            candidates = [t for t in triggers if matches_pattern(t.pattern, event)]
        else:
            self.logger.debug(f"No matching rules for event type {event.type}")
            return []

        matches = []
        for trigger in candidates:
            if not trigger.enabled:
                continue
            if event.user_id and trigger.owner_id != event.user_id:
                continue
            if trigger.conditions and not evaluate_conditions(trigger.conditions, event.payload):
                continue
            matches.append(TriggerMatch(agent_id=trigger.agent_id, owner_id=trigger.owner_id, trigger=trigger))
        return matches

    async def _mark_triggered(self, trigger: Trigger):
        try:
            current = await self.store.get_trigger(trigger.id)
            if current is None:
                return
            current.last_triggered_at = utcnow()
            await self.store.save_trigger(current)
        except Exception as e:
            self.logger.error(f"Failed to update lastTriggeredAt for trigger {trigger.id}: {e}")

    async def trigger_agents_for_event(self, event: Event) -> List[Dict]:
        """Run every matched agent. One agent's failure never affects another."""
        matches = await self.match(event)
        if not matches:
            return []

        payload_text = json.dumps(event.payload, default=str)[:500]
        instruction = f"Event triggered: {event.type} from {event.source} - {event.event}. Payload: {payload_text}"
        self.logger.info(f"Event {event.key} matched {len(matches)} agent(s)")

        async def run_one(match: TriggerMatch) -> Dict:
            entry = {"agentId": match.agent_id}
            try:
                result = await self.runner.run(
                    match.agent_id, match.owner_id, input=instruction,
                    context={"triggerId": match.trigger.id, "event": event.key},
                )
                entry["success"] = result.success
                if not result.success:
                    entry["error"] = result.error
            except Exception as e:
                self.logger.error(f"Triggered run of agent {match.agent_id} failed: {e}")
                entry["success"] = False
                entry["error"] = str(e)
            await self._mark_triggered(match.trigger)
            self._emit("trigger:fired", {"triggerId": match.trigger.id, **entry})
            return entry

        return list(await asyncio.gather(*(run_one(m) for m in matches)))

    async def handle_webhook(self, path: str, payload: Dict, raw_body: Optional[bytes] = None,
                             signature: Optional[str] = None) -> List[Dict]:
        """Entry point for POST /webhooks/<path>."""
        trigger = await self.store.get_trigger_by_webhook_path(path)
        if trigger is None or not trigger.enabled or trigger.type != TriggerType.WEBHOOK:
            raise TriggerNotFoundError(f"No active webhook trigger for path: {path}")

        secret = trigger.config.get("secret") or self.webhook_secret
        if secret and not verify_github_signature(raw_body or b"", signature, secret):
            raise PermissionError("Invalid webhook signature")

        event = Event(type="webhook", source="webhook", event=path, payload=payload or {},
                      user_id=trigger.owner_id)
        return await self.trigger_agents_for_event(event)

    async def trigger_manual(self, trigger_id: str, user_id: str, input: Optional[str] = None) -> RunResult:
        trigger = await self.store.get_trigger(trigger_id)
        if trigger is None or trigger.owner_id != user_id:
            raise TriggerNotFoundError(f"Trigger not found: {trigger_id}")
        if not trigger.enabled:
            raise TriggerNotFoundError(f"Trigger is disabled: {trigger_id}")

        result = await self.runner.run(trigger.agent_id, user_id, input=input,
                                       context={"triggerId": trigger.id, "manual": True})
        await self._mark_triggered(trigger)
        return result
