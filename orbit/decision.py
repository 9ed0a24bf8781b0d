"""
Decision extraction.
Turns free-form model output into exactly one of ToolDecision, AgentDecision or NoDecision.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Union

from .exceptions import DecisionParseError


@dataclass(frozen=True)
class ToolDecision:
    """Call a registered capability by name."""
    target: str
    args: Dict[str, Any] = field(default_factory=dict)
    type: str = "tool"


@dataclass(frozen=True)
class AgentDecision:
    """Hand an instruction (args["input"]) to another agent."""
    target: str
    args: Dict[str, Any] = field(default_factory=dict)
    type: str = "agent"

    @property
    def input(self) -> str:
        return str(self.args.get("input") or "")


@dataclass(frozen=True)
class NoDecision:
    """The model answered in natural language (or produced nothing usable)."""
    text: str
    reason: str = "no_json"


Decision = Union[ToolDecision, AgentDecision, NoDecision]

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED = re.compile(r"'[^']*':|:\s*'[^']*'")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)")
_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE.sub("", text or "").strip()


def recover_json(text: str) -> Any:
    """
    Tolerant JSON recovery for LLM output.

    Strict parse first. Otherwise cut from the first '{' to the last '}',
    drop trailing commas, normalize quotes when the candidate looks
    single-quoted, quote bare keys, and parse again.

    Raises:
        DecisionParseError: nothing recoverable.
    """
    if text is None:
        raise DecisionParseError("Empty model output")
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise DecisionParseError("No JSON object found in model output")

    candidate = _TRAILING_COMMA.sub(r"\1", text[start:end + 1])
    if _SINGLE_QUOTED.search(candidate):
        candidate = candidate.replace("'", '"')

    try:
        return json.loads(candidate)
    except ValueError:
        pass

    candidate = _BARE_KEY.sub(r'\1"\2"\3', candidate)
    try:
        return json.loads(candidate)
    except ValueError as e:
        raise DecisionParseError(f"Failed to parse model JSON: {e}") from e


def parse_decision(text: str) -> Decision:
    """Extract the decision carried by one model turn. Never returns None."""
    cleaned = strip_code_fences(text)
    try:
        data = recover_json(cleaned)
    except DecisionParseError:
        return NoDecision(text=cleaned, reason="no_json")

    if not isinstance(data, dict) or not data.get("type"):
        return NoDecision(text=cleaned, reason="missing_type")

    target = data.get("target")
    args = data.get("args")
    if not isinstance(args, dict):
        args = {}
    if not target:
        return NoDecision(text=cleaned, reason="missing_target")

    if data["type"] == "tool":
        return ToolDecision(target=str(target), args=args)
    if data["type"] == "agent":
        return AgentDecision(target=str(target), args=args)
    return NoDecision(text=cleaned, reason=f"unknown_type:{data['type']}")


def decision_to_dict(decision: Decision) -> Dict:
    """Wire form: {"type", "target", "args"}."""
    if isinstance(decision, NoDecision):
        return {"type": None, "text": decision.text}
    return {"type": decision.type, "target": decision.target, "args": dict(decision.args)}
