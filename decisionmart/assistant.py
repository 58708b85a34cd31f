"""Portfolio assistant: a chat loop where the model may call Decision Mart tools.

The protocol is plain JSON so it works with every ``LLMClient`` provider. Each
turn the model answers either ``{"tool": "<name>", "args": {...}}`` or
``{"reply": "<text>"}``. Tool results are appended to the transcript and the
model is asked again, up to ``MAX_TOOL_ROUNDS`` times.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.orm import Session

from decisionmart import services
from decisionmart.funding import ValidationError
from decisionmart.scorer import LLMClient

log = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 3
FALLBACK_REPLY = "I couldn't process that request."

TOOLS: dict[str, dict[str, Any]] = {
    "fetch_portfolio_initiative_data": {
        "description": "Retrieve initiative-level portfolio data from the Decision Mart "
                       "for evaluation by the funding algorithm.",
        "parameters": {},
    },
    "persist_board_decision": {
        "description": "Persist a Board-level funding decision into the Portfolio Decision Ledger.",
        "parameters": {
            "decision_id": "string", "initiative_id": "string",
            "composite_score": "number", "decision_outcome": "string",
            "board_rationale": "string",
        },
    },
    "fetch_board_decisions": {
        "description": "Retrieve all previously recorded Board-level funding decisions from the ledger.",
        "parameters": {},
    },
}

SYSTEM_PROMPT = f"""\
You are a TMO Portfolio Assistant. You have access to the portfolio database and a \
decision ledger. Use tools to fetch data or persist decisions as requested.

Available tools (name -> description and arguments):
{json.dumps(TOOLS, indent=2)}

Decision outcomes follow the funding thresholds: >= 4.0 Approve, 3.2 to <4.0 \
Approve with conditions, 2.5 to <3.2 Defer, < 2.5 Reject.

Respond with ONLY valid JSON, one of:
{{"tool": "<tool name>", "args": {{...}}}}
{{"reply": "<your answer to the user>"}}
"""


@dataclass
class ChatResult:
    reply: str
    tool_calls: list[str] = field(default_factory=list)


def _run_tool(session: Session, name: str, args: dict[str, Any]) -> Any:
    handlers: dict[str, Callable[[], Any]] = {
        "fetch_portfolio_initiative_data": lambda: services.query_portfolio(session),
        "persist_board_decision": lambda: {
            "status": "saved",
            "decision_id": services.record_board_decision(session, args).decision_id,
        },
        "fetch_board_decisions": lambda: services.list_board_decisions(session),
    }
    handler = handlers.get(name)
    if handler is None:
        return {"error": f"Unknown tool: {name}"}
    try:
        return handler()
    except (ValidationError, services.DuplicateDecisionError) as exc:
        log.warning("Assistant tool %s rejected: %s", name, exc)
        return {"error": str(exc)}


def _render_transcript(history: list[dict[str, str]], message: str, steps: list[str]) -> str:
    lines = [f"{m['role'].upper()}: {m['content']}" for m in history]
    lines.append(f"USER: {message}")
    lines.extend(steps)
    return "\n".join(lines)


async def chat(
    session: Session,
    message: str,
    history: list[dict[str, str]] | None = None,
    client: LLMClient | None = None,
) -> ChatResult:
    """Answer one user message, calling tools as the model requests."""
    if client is None:
        client = LLMClient()
    history = history or []
    steps: list[str] = []
    tool_calls: list[str] = []

    for _ in range(MAX_TOOL_ROUNDS + 1):
        raw = await client.call(SYSTEM_PROMPT, _render_transcript(history, message, steps))
        tool = raw.get("tool")
        if not tool or len(tool_calls) >= MAX_TOOL_ROUNDS:
            reply = str(raw.get("reply") or "").strip()
            return ChatResult(reply=reply or FALLBACK_REPLY, tool_calls=tool_calls)

        args = raw.get("args") if isinstance(raw.get("args"), dict) else {}
        tool_calls.append(str(tool))
        data = _run_tool(session, str(tool), args)
        steps.append(f"TOOL CALL: {json.dumps({'tool': tool, 'args': args})}")
        steps.append(f"TOOL RESULT ({tool}): {json.dumps({'data': data}, default=str)}")

    return ChatResult(reply=FALLBACK_REPLY, tool_calls=tool_calls)
