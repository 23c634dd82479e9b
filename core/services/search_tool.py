"""
Knowledge-base search tool used by the support agent.

Searches the conversation's organization namespace, then asks the model to
answer the visitor from the retrieved text only.
"""

from __future__ import annotations

from core.db import DB
from core.errors import ModelProviderError
from core.models import MessageRole
from core.services import knowledge_store, llm, threads
from core.services.conversations import get_by_thread_id
from core.services.shared import logger, SEARCH_RESULT_LIMIT
import core.config as config

SEARCH_TOOL_NAME = "search"

MISSING_THREAD = "Missing thread ID"
CONVERSATION_NOT_FOUND = "Conversation not found"
SEARCH_UNAVAILABLE = "Search is temporarily unavailable"

SEARCH_INTERPRETER_PROMPT = """You are a customer support assistant answering from a company's knowledge base.

You receive the visitor's question and the search results retrieved for it.

Rules:
- Answer only from the search results. Do not invent facts, prices, policies or links.
- If the results answer the question, reply with a short, direct answer in plain language.
- If the results are partly relevant, share what they do say and note what is missing.
- If nothing relevant was found, say you could not find that information and offer to
  connect the visitor with a human agent.
- Do not mention search results, documents or file names; speak as the support team.
- Keep the answer to a few sentences unless the question needs steps."""


def build_search_context(result: dict) -> str:
    titles = [entry["title"] for entry in result.get("entries", []) if entry.get("title")]
    text_value = result.get("text", "")
    if titles:
        return f"Found results in {', '.join(titles)}. Here is the context:\n\n{text_value}"
    return f"Here is the context:\n\n{text_value}"


def search_knowledge(query: str, thread_id: str) -> str:
    """Answer `query` from the knowledge base and save the answer on the thread."""
    if not thread_id:
        return MISSING_THREAD

    db = DB.SessionLocal()
    try:
        conversation = get_by_thread_id(db, thread_id)
        if conversation is None:
            return CONVERSATION_NOT_FOUND

        result = knowledge_store.search(
            db,
            namespace=conversation.organization_id,
            query=query,
            limit=SEARCH_RESULT_LIMIT,
        )
        context_text = build_search_context(result)

        try:
            answer = llm.generate_text(
                SEARCH_INTERPRETER_PROMPT,
                f'User asked: "{query}"\n\nSearch results: {context_text}',
                model=config.SEARCH_MODEL,
            )
        except ModelProviderError as exc:
            logger.warning(
                "search_model_failed",
                extra={"thread_id": thread_id, "detail": str(exc)},
            )
            return SEARCH_UNAVAILABLE

        threads.save_message(db, thread_id, MessageRole.assistant, answer, tool_name=SEARCH_TOOL_NAME)
        logger.info(
            "search_answered",
            extra={"thread_id": thread_id, "hits": len(result.get("entries", []))},
        )
        return answer
    finally:
        db.close()
