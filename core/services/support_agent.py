"""
Support agent: a bounded tool-calling loop over the chat completions API.

The agent persists the visitor prompt, lets the model call the search,
escalate and resolve tools, and saves the final reply on the thread.
"""

from __future__ import annotations

import json
from typing import Callable, Optional

from core.audit import log_event
from core.audit_constants import EVENT_CONVERSATION_ESCALATED, EVENT_CONVERSATION_RESOLVED
from core.db import DB
from core.errors import AgentError, ModelProviderError, NotFound, ValidationIssue
from core.models import ConversationStatus, MessageRole
from core.services import llm, threads
from core.services.conversations import get_by_thread_id, transition_status
from core.services.search_tool import search_knowledge
from core.services.shared import agent_tool, logger
import core.config as config

HISTORY_LIMIT = 20

ESCALATED_REPLY = "Conversation escalated to a human operator."
ALREADY_ESCALATED_REPLY = "Conversation is already with a human operator."
RESOLVED_REPLY = "Conversation resolved."
ALREADY_RESOLVED_REPLY = "Conversation is already resolved."

SUPPORT_AGENT_PROMPT = """You are the customer support assistant for this company's website chat.

Tools:
- search: look up the company knowledge base. Use it for any question about the
  product, pricing, policies, accounts or how-to steps. Never answer those from memory.
- escalateConversation: hand the conversation to a human operator. Use it when the
  visitor asks for a human, is frustrated, or when search could not answer twice.
- resolveConversation: close the conversation. Use it only when the visitor confirms
  their issue is solved or says goodbye.

Guidelines:
- The search tool already replies to the visitor. After a search, do not repeat its
  answer; add a reply only if something is missing.
- Be brief and friendly. Ask one clarifying question when the request is ambiguous.
- Do not promise refunds, discounts or actions you cannot take.
- If you cannot help, offer to connect the visitor with a human operator."""

TOOL_SCHEMAS = [
    {
        "type": "function",
        "function": {
            "name": "search",
            "description": "Search the knowledge base for relevant information to help answer user questions",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query to find the relevant information",
                    }
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "escalateConversation",
            "description": "Escalate the conversation to a human operator",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "resolveConversation",
            "description": "Mark the conversation as resolved",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]


def _change_status(
    thread_id: str,
    from_statuses: list,
    to_status: ConversationStatus,
    event_type: str,
    applied_reply: str,
    skipped_reply: str,
) -> str:
    db = DB.SessionLocal()
    try:
        conversation = get_by_thread_id(db, thread_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if not transition_status(db, conversation.id, from_statuses, to_status):
            logger.info(
                "agent_transition_skipped",
                extra={"conversation_id": conversation.id, "to_status": to_status.value},
            )
            return skipped_reply
        log_event(
            db,
            event_type=event_type,
            actor_type="agent",
            org_id=conversation.organization_id,
            target_type="conversation",
            target_ids=[conversation.id],
            metadata={"to_status": to_status.value},
        )
        db.commit()
        threads.save_message(db, thread_id, MessageRole.assistant, applied_reply)
        return applied_reply
    finally:
        db.close()


@agent_tool
def escalate_conversation(thread_id: str) -> str:
    return _change_status(
        thread_id,
        [ConversationStatus.unresolved],
        ConversationStatus.escalated,
        EVENT_CONVERSATION_ESCALATED,
        ESCALATED_REPLY,
        ALREADY_ESCALATED_REPLY,
    )


@agent_tool
def resolve_conversation(thread_id: str) -> str:
    return _change_status(
        thread_id,
        [ConversationStatus.unresolved, ConversationStatus.escalated],
        ConversationStatus.resolved,
        EVENT_CONVERSATION_RESOLVED,
        RESOLVED_REPLY,
        ALREADY_RESOLVED_REPLY,
    )


@agent_tool
def search_tool(thread_id: str, query: str) -> str:
    return search_knowledge(query, thread_id)


TOOLS: dict[str, Callable[..., str]] = {
    "search": search_tool,
    "escalateConversation": escalate_conversation,
    "resolveConversation": resolve_conversation,
}


def _history(thread_id: str) -> list[dict]:
    db = DB.SessionLocal()
    try:
        rows = threads.recent_messages(db, thread_id, limit=HISTORY_LIMIT)
    finally:
        db.close()
    return [
        {"role": row.role, "content": row.content}
        for row in rows
        if row.role in (MessageRole.user.value, MessageRole.assistant.value)
    ]


def _call_tool(thread_id: str, name: str, raw_arguments: Optional[str]) -> str:
    tool = TOOLS.get(name)
    if tool is None:
        return f"Unknown tool: {name}"
    try:
        arguments = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError:
        return "Invalid tool arguments"
    if not isinstance(arguments, dict):
        return "Invalid tool arguments"
    if name == "search":
        query = arguments.get("query")
        if not isinstance(query, str):
            return "Invalid query: query is required"
        return tool(thread_id, query)
    return tool(thread_id)


def _save_message(thread_id: str, role: MessageRole, content: str) -> None:
    db = DB.SessionLocal()
    try:
        threads.save_message(db, thread_id, role, content)
    finally:
        db.close()


def run_agent(thread_id: str, prompt: str) -> dict:
    """
    Run one agent turn for `prompt` on `thread_id`.

    Returns {"reply": str | None, "tool_calls": [names]}. Model failures and
    malformed model output raise AgentError.
    """
    _save_message(thread_id, MessageRole.user, prompt)

    messages: list[dict] = [{"role": "system", "content": SUPPORT_AGENT_PROMPT}]
    messages.extend(_history(thread_id))

    tool_outputs: list[str] = []
    called: list[str] = []
    reply: Optional[str] = None
    try:
        for _ in range(config.AGENT_MAX_STEPS):
            message = llm.chat_completion(messages, model=config.AGENT_MODEL, tools=TOOL_SCHEMAS)
            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                reply = (message.get("content") or "").strip()
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": message.get("content"),
                    "tool_calls": tool_calls,
                }
            )
            for call in tool_calls:
                function = call["function"]
                output = _call_tool(thread_id, function["name"], function.get("arguments"))
                called.append(function["name"])
                tool_outputs.append(output.strip())
                messages.append({"role": "tool", "tool_call_id": call["id"], "content": output})
        else:
            logger.warning("agent_max_steps_reached", extra={"thread_id": thread_id, "tools": called})
    except ModelProviderError as exc:
        logger.warning("agent_model_failed", extra={"thread_id": thread_id, "detail": str(exc)})
        raise AgentError("Agent is temporarily unavailable") from exc
    except (KeyError, TypeError, AttributeError) as exc:
        logger.warning("agent_bad_model_output", extra={"thread_id": thread_id, "detail": str(exc)})
        raise AgentError("Agent returned an invalid response") from exc

    if reply and reply not in tool_outputs:
        try:
            _save_message(thread_id, MessageRole.assistant, reply)
        except ValidationIssue as exc:
            raise AgentError("Agent reply could not be saved") from exc
    elif not reply:
        reply = None

    logger.info("agent_turn_completed", extra={"thread_id": thread_id, "tools": called})
    return {"reply": reply, "tool_calls": called}
