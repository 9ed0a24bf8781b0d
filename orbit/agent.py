"""
Decision Loop.
Calls the reasoning model, extracts one decision per turn and drives tool dispatch.

Two modes:
- directed: short conversational loop that returns the decision to the caller
- unattended: scheduled/autonomous loop that executes tools itself and
  enforces the "finish with an email" policy
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .decision import AgentDecision, NoDecision, ToolDecision, parse_decision, strip_code_fences
from .models import Agent, RunResult, User

EMAIL_TOOLS = ("send_email", "send_gmail")

# Fields kept when a list result is summarized
SUMMARY_FIELDS = ("id", "name", "title", "subject", "status", "state", "url", "html_url")
ITEM_FIELDS = ("id", "name", "title", "full_name", "html_url", "state", "status")

DECISION_FORMAT = '{"type":"tool","target":"tool_name","args":{"param":"value"}}'

EXECUTE_NOW = (
    "Execute your task now. You MUST call the required tools to complete it. "
    "Return only the JSON tool call, no other text."
)
MUST_CALL_TOOL = (
    "You must call a tool to complete your task. Your response must be a JSON object "
    "with type 'tool', target (tool name), and args. Do not respond with text - only JSON."
)


def summarize_result(result: Any, max_length: int = 2000) -> str:
    """
    Size-bounded rendering of a tool result for the conversation.

    Lists keep their first 5 entries (key fields only), objects with an
    `items` list keep their first 10 items, anything else is cut at
    max_length.
    """
    text = result if isinstance(result, str) else json.dumps(result, default=str)
    if len(text) <= max_length:
        return text

    if isinstance(result, list):
        items = []
        for item in result[:5]:
            if isinstance(item, dict):
                picked = {k: item[k] for k in SUMMARY_FIELDS if k in item}
                if not picked:
                    picked = {k: item[k] for k in list(item)[:3]}
                items.append(picked)
            else:
                items.append(item)
        summary = {"type": "array", "count": len(result), "items": items}
        if len(result) > 5:
            summary["truncated"] = f"... and {len(result) - 5} more items"
        return json.dumps(summary, default=str)

    if isinstance(result, dict) and isinstance(result.get("items"), list):
        summary = dict(result)
        summary["items"] = [
            {k: item[k] for k in ITEM_FIELDS if k in item} if isinstance(item, dict) else item
            for item in result["items"][:10]
        ]
        if len(result["items"]) > 10:
            summary["_truncated"] = f"{len(result['items']) - 10} more items not shown"
        return json.dumps(summary, default=str)

    return text[:max_length] + "... (truncated)"


def build_orchestrator_prompt(tool_names: List[str]) -> str:
    """System prompt for directed (conversational) runs."""
    return (
        "You are Orbit, a helpful assistant. You may speak naturally. "
        f"You have access to the following tools: {', '.join(tool_names)}. "
        "If you want to call a tool, include a single JSON object somewhere in your reply "
        "matching one of these shapes:\n\n"
        'Tool call:\n{ "type": "tool", "target": "<tool_name>", "args": { ... } }\n\n'
        'Agent call:\n{ "type": "agent", "target": "<agent_id>", "args": { "input": "..." } }\n\n'
        "Otherwise, just reply in natural language. Do not include multiple JSON objects.\n"
    )


class DecisionLoop:
    """
    Bounded model -> decision -> dispatch loop.

    Example:
        loop = DecisionLoop(llm, dispatcher, config=orbit.config)
        result = await loop.run_directed(prompt, "List my repos", user_id="u1")
    """

    def __init__(self, llm, dispatcher, config: Optional[Dict] = None, event_bus=None):
        self.llm = llm
        self.dispatcher = dispatcher
        self.config = config or {}
        self.event_bus = event_bus
        self.logger = logging.getLogger("DecisionLoop")

        self.directed_max_loops = int(self.config.get("directed_max_loops", 3))
        self.unattended_max_loops = int(self.config.get("unattended_max_loops", 8))
        self.history_max_messages = int(self.config.get("history_max_messages", 10))
        self.result_max_chars = int(self.config.get("tool_result_max_chars", 2000))

    def _emit(self, name: str, data: Dict):
        if self.event_bus:
            self.event_bus.emit(name, data)

    async def _call_llm(self, messages: List[Dict], model: Optional[str] = None) -> str:
        """Centralized LLM call handles both Chat and Completion APIs."""
        kwargs = {"model": model} if model else {}
        if hasattr(self.llm, "chat_async"):
            response = await self.llm.chat_async(messages, **kwargs)
        elif hasattr(self.llm, "complete_async"):
            prompt = "\n".join(f"{m['role'].upper()}: {m['content']}" for m in messages) + "\nASSISTANT:"
            response = await self.llm.complete_async(prompt, **kwargs)
        else:
            response = await asyncio.to_thread(self.llm.chat, messages, **kwargs)

        if isinstance(response, dict):
            response = response.get("content") or ""
        if not isinstance(response, str):
            response = json.dumps(response, default=str)
        return response

    def _trim_history(self, messages: List[Dict]) -> List[Dict]:
        cap = self.history_max_messages
        if len(messages) <= cap:
            return messages
        return [messages[0]] + messages[-(cap - 1):]

    # ------------------------------------------------------------------
    # Directed mode
    # ------------------------------------------------------------------

    async def run_directed(self, system_prompt: str, user_input: str, user_id: Optional[str] = None,
                           max_loops: Optional[int] = None, model: Optional[str] = None) -> RunResult:
        """
        Conversational run. Returns the first decision for the caller to
        execute rather than executing it here.
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_input},
        ]
        last_reply = ""
        for step in range(max_loops or self.directed_max_loops):
            self._emit("agent:run:step", {"mode": "directed", "step": step + 1, "userId": user_id})
            try:
                text = await self._call_llm(messages, model=model)
            except Exception as e:
                self.logger.error(f"Model call failed: {e}")
                return RunResult(reply=f"Agent error: {e}", error=str(e))

            if not text.strip():
                # Empty completion, ask again within the budget
                continue
            last_reply = text
            decision = parse_decision(text)
            if isinstance(decision, NoDecision):
                return RunResult(reply=text)
            self.logger.info(f"Decision generated: {decision.type} -> {decision.target}")
            return RunResult(reply=text, decision=decision)

        return RunResult(reply=last_reply)

    # ------------------------------------------------------------------
    # Unattended mode
    # ------------------------------------------------------------------

    def _system_message(self, prompt: str, user_email: Optional[str], tools, requires_email: bool) -> str:
        parts = [prompt]
        if user_email:
            parts.append(f"User email: {user_email}")
        if requires_email:
            parts.append(
                "CRITICAL EMAIL REQUIREMENT: Your task requires sending an email. After collecting any "
                "data, you MUST call send_email or send_gmail tool as your FINAL action. "
                f"The user's email is: {user_email or 'check context'}. "
                "Do NOT complete your task without sending the email."
            )
        parts.append("CRITICAL: Execute actions using tools. Return ONLY JSON tool calls.")
        parts.append(f"Tools:\n{tools.catalog()}")
        parts.append(f"Format: {DECISION_FORMAT}")
        parts.append("Return only JSON, no text. Call tools one at a time.")
        return "\n\n".join(parts)

    def _collects_data(self, decision, tools) -> bool:
        """Whether a successful call gathers report data. Undeclared non-email tools do."""
        if isinstance(decision, AgentDecision):
            return True
        tool = tools.get(decision.target)
        declared = getattr(tool, "collects_data", None) if tool else None
        if declared is not None:
            return bool(declared)
        return decision.target not in EMAIL_TOOLS

    async def run_unattended(self, agent: Agent, prompt: str, user: Optional[User], tools,
                             delegation_chain: Optional[List[str]] = None) -> RunResult:
        """
        Autonomous run: the agent executes its own prompt as the task.

        Args:
            agent: Agent being run.
            prompt: Task text (usually the agent's system prompt).
            user: Owner, used for the recipient address and integrations.
            tools: ToolRegistry already restricted to the agent's allowed tools.
            delegation_chain: Agent ids already on the delegation path, this agent included.
        """
        user_id = user.id if user else agent.owner_id
        user_email = user.email if user else None
        allowed = tools.list()
        has_email_tool = any(name in EMAIL_TOOLS for name in allowed)
        requires_email = has_email_tool and "email" in (prompt or "").lower()

        messages = [
            {"role": "system", "content": self._system_message(prompt, user_email, tools, requires_email)},
            {"role": "user", "content": EXECUTE_NOW},
        ]
        max_loops = self.unattended_max_loops
        last_reply = ""
        email_sent = False
        data_collected = False
        # Data collected since the last successful email
        report_pending = False
        acted = False

        self.logger.info(f"Agent {agent.id} starting unattended run with {len(allowed)} tools")

        for i in range(max_loops):
            last_turn = i == max_loops - 1
            email_due = requires_email and (report_pending or not email_sent)
            self._emit("agent:run:step", {"agentId": agent.id, "mode": "unattended", "step": i + 1})
            try:
                text = strip_code_fences(await self._call_llm(messages, model=agent.model))
            except Exception as e:
                self.logger.error(f"Unattended run error for {agent.id}: {e}")
                return RunResult(error=str(e), email_sent=email_sent, data_collected=data_collected)

            last_reply = text
            decision = parse_decision(text)

            if isinstance(decision, NoDecision) and decision.reason == "no_json":
                self.logger.warning(f"Agent {agent.id} did not return a tool call: {text[:200]}")
                if last_turn:
                    if email_due and report_pending:
                        break
                    return RunResult(reply=text, error="Agent did not call any tools",
                                     email_sent=email_sent, data_collected=data_collected)
                messages.append({"role": "assistant", "content": text})
                messages.append({"role": "user", "content": MUST_CALL_TOOL})
                messages = self._trim_history(messages)
                continue

            if isinstance(decision, (ToolDecision, AgentDecision)):
                self.logger.info(f"Agent {agent.id} calling {decision.type}: {decision.target}")
                outcome = await self.dispatcher.execute_decision(
                    decision, user_id, allowed=allowed, delegated_from=agent.id,
                    delegation_chain=delegation_chain,
                )
                messages.append({"role": "assistant", "content": text})
                if not outcome.success:
                    messages.append({
                        "role": "user",
                        "content": f"Tool execution failed: {outcome.error}. Please try a different approach.",
                    })
                    messages = self._trim_history(messages)
                    continue

                acted = True
                if isinstance(decision, ToolDecision) and decision.target in EMAIL_TOOLS:
                    email_sent = True
                    report_pending = False
                elif self._collects_data(decision, tools):
                    data_collected = True
                    report_pending = True

                next_prompt = (
                    f"Tool executed successfully. Result: "
                    f"{summarize_result(outcome.result, self.result_max_chars)}. Continue with your task."
                )
                if requires_email and report_pending and not last_turn:
                    next_prompt = (
                        "Data collected successfully. Now you MUST send the email report using "
                        f"send_email or send_gmail tool. User email: {user_email or 'check context'}. "
                        "Compile a report from the collected data and send it. "
                        "Return only the JSON tool call for send_email or send_gmail."
                    )
                messages.append({"role": "user", "content": next_prompt})
                messages = self._trim_history(messages)
                continue

            # Natural-language answer: the agent considers itself done
            if email_due:
                if last_turn:
                    break
                self.logger.warning(f"Agent {agent.id} tried to finish without sending email")
                messages.append({"role": "assistant", "content": text})
                messages.append({
                    "role": "user",
                    "content": (
                        "Your task requires sending an email. You MUST call send_email or send_gmail "
                        f"tool with the user's email address ({user_email or 'from context'}) "
                        "before completing. Return only the JSON tool call."
                    ),
                })
                messages = self._trim_history(messages)
                continue
            return RunResult(reply=text, email_sent=email_sent, data_collected=data_collected)

        if requires_email and report_pending:
            forced = await self.force_email(agent, user, tools)
            if forced is not None:
                return forced

        result = RunResult(reply=last_reply, email_sent=email_sent, data_collected=data_collected,
                           raw={"exhausted": True})
        if not acted:
            result.error = "Agent did not act"
        elif requires_email and (report_pending or not email_sent):
            result.error = "Email report was not sent"
        return result

    async def force_email(self, agent: Agent, user: Optional[User], tools) -> Optional[RunResult]:
        """
        One best-effort email send after the loop budget ran out.
        Returns None when no send was possible or it failed.
        """
        self.logger.warning(f"Agent {agent.id} finished without sending email, forcing send")
        names = tools.list()
        preferred = "send_gmail" if user and user.has_integration("google") else "send_email"
        tool_name = preferred if preferred in names else next((n for n in names if n in EMAIL_TOOLS), None)

        if not tool_name or not user or not user.email:
            self.logger.error("Cannot auto-send: email tool not found or user email missing")
            return None

        now = datetime.now()
        decision = ToolDecision(
            target=tool_name,
            args={
                "to": user.email,
                "subject": f"{agent.name} Report - {now.date().isoformat()}",
                "body": (
                    f"This is an automated report from your agent '{agent.name}'.\n\n"
                    "Data has been collected successfully. Please check the agent logs for "
                    f"detailed information.\n\nGenerated at: {now.isoformat()}"
                ),
            },
        )
        outcome = await self.dispatcher.execute_tool(decision, user.id, allowed=names)
        if outcome.success:
            self.logger.info(f"Auto-sent email to {user.email} using {tool_name}")
            return RunResult(reply="Email sent automatically", email_sent=True, data_collected=True)
        self.logger.error(f"Failed to auto-send email: {outcome.error}")
        return None
