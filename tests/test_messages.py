import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import json

import pytest

import core.config as config
from core.audit_constants import EVENT_CONVERSATION_ESCALATED
from core.errors import AgentError, BadRequest, NotFound, Unauthorized, ValidationIssue
from core.models import AuditEvent
from core.services import contact_sessions, conversations, messages, subscriptions, support_agent


def tool_call(call_id, name, arguments="{}"):
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def _open_conversation(organization_id="org_1"):
    session_id = contact_sessions.create_contact_session(
        "Visitor", "visitor@example.com", organization_id
    )["contact_session_id"]
    created = conversations.create_conversation(session_id, organization_id)
    return session_id, created


def _contents(thread_id, session_id):
    page = messages.list_messages(thread_id, session_id)["page"]
    return [(item["role"], item["content"]) for item in page]


@pytest.mark.parametrize(
    "conversation_status, subscription_status, expected",
    [
        ("unresolved", "active", True),
        ("unresolved", "canceled", False),
        ("unresolved", None, False),
        ("escalated", "active", False),
        ("escalated", None, False),
        ("resolved", "active", False),
        ("resolved", "canceled", False),
        ("resolved", None, False),
    ],
)
def test_should_trigger_agent(conversation_status, subscription_status, expected):
    assert messages.should_trigger_agent(conversation_status, subscription_status) is expected


def test_active_subscriber_gets_agent_reply(server_db, clock, fake_model):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    fake_model.chat_replies = [{"role": "assistant", "content": "Happy to help!"}]

    result = messages.post_message("Hi there", created["thread_id"], session_id)

    assert result == {"status": "answered", "agent_triggered": True, "reply": "Happy to help!"}
    assert _contents(created["thread_id"], session_id) == [
        ("assistant", config.DEFAULT_GREETING),
        ("user", "Hi there"),
        ("assistant", "Happy to help!"),
    ]
    sent = fake_model.chat_calls[0]["messages"]
    assert sent[0]["role"] == "system"
    assert sent[-1] == {"role": "user", "content": "Hi there"}


@pytest.mark.parametrize("subscription_status", [None, "canceled"])
def test_without_active_subscription_message_is_stored(server_db, clock, fake_model, subscription_status):
    if subscription_status:
        subscriptions.upsert_subscription("org_1", subscription_status)
    session_id, created = _open_conversation()

    result = messages.post_message("Anyone there?", created["thread_id"], session_id)

    assert result == {"status": "stored", "agent_triggered": False}
    assert fake_model.chat_calls == []
    assert _contents(created["thread_id"], session_id)[-1] == ("user", "Anyone there?")


def test_escalated_conversation_keeps_agent_silent(server_db, clock, fake_model, db_session):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    thread_id = created["thread_id"]
    fake_model.chat_replies = [
        {"role": "assistant", "content": None, "tool_calls": [tool_call("call_1", "escalateConversation")]},
        {"role": "assistant", "content": ""},
    ]

    first = messages.post_message("I want a human", thread_id, session_id)
    assert first["agent_triggered"] is True
    assert first["reply"] is None
    assert conversations.get_conversation(created["conversation_id"], session_id)["status"] == "escalated"

    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_CONVERSATION_ESCALATED).one()
    assert event.actor_type == "agent"

    calls_before = len(fake_model.chat_calls)
    second = messages.post_message("Hello?", thread_id, session_id)
    assert second == {"status": "stored", "agent_triggered": False}
    assert len(fake_model.chat_calls) == calls_before

    assert _contents(thread_id, session_id) == [
        ("assistant", config.DEFAULT_GREETING),
        ("user", "I want a human"),
        ("assistant", support_agent.ESCALATED_REPLY),
        ("user", "Hello?"),
    ]


def test_resolved_conversation_rejects_messages(server_db, clock, fake_model):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    fake_model.chat_replies = [
        {"role": "assistant", "content": None, "tool_calls": [tool_call("call_1", "resolveConversation")]},
        {"role": "assistant", "content": "Glad I could help. Bye!"},
    ]
    messages.post_message("Thanks, that fixed it", created["thread_id"], session_id)
    assert conversations.get_conversation(created["conversation_id"], session_id)["status"] == "resolved"

    with pytest.raises(BadRequest, match="Conversation is resolved"):
        messages.post_message("One more thing", created["thread_id"], session_id)


@pytest.mark.parametrize("subscription_status", ["canceled", "past_due"])
def test_resolved_conversation_stays_closed_after_subscription_lapses(
    server_db, clock, fake_model, subscription_status
):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    fake_model.chat_replies = [
        {"role": "assistant", "content": None, "tool_calls": [tool_call("call_1", "resolveConversation")]},
        {"role": "assistant", "content": "All sorted."},
    ]
    messages.post_message("That worked", created["thread_id"], session_id)
    subscriptions.upsert_subscription("org_1", subscription_status)

    with pytest.raises(BadRequest, match="Conversation is resolved"):
        messages.post_message("Reopen please", created["thread_id"], session_id)
    assert _contents(created["thread_id"], session_id)[-1] == ("assistant", "All sorted.")


def test_expired_session_is_rejected_before_prompt_validation(server_db, clock):
    session_id, created = _open_conversation()
    clock.advance(config.SESSION_DURATION_MS + 1)

    with pytest.raises(Unauthorized, match="Invalid session"):
        messages.post_message("", created["thread_id"], session_id)


def test_empty_prompt_from_valid_session_is_rejected(server_db, clock):
    session_id, created = _open_conversation()

    with pytest.raises(ValidationIssue):
        messages.post_message("", created["thread_id"], session_id)


def test_search_answer_is_not_repeated(server_db, clock, fake_model, org_context):
    from core.services import files

    files.add_file("returns.txt", b"Returns are accepted within 30 days.", context=org_context)
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    fake_model.text_reply = "You can return items within 30 days."
    fake_model.chat_replies = [
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [tool_call("call_1", "search", json.dumps({"query": "return policy"}))],
        },
        {"role": "assistant", "content": "You can return items within 30 days."},
    ]

    result = messages.post_message("What is your return policy?", created["thread_id"], session_id)

    assert result["reply"] == "You can return items within 30 days."
    page = messages.list_messages(created["thread_id"], session_id)["page"]
    assert [(item["role"], item["tool_name"]) for item in page] == [
        ("assistant", None),
        ("user", None),
        ("assistant", "search"),
    ]
    tool_message = fake_model.chat_calls[1]["messages"][-1]
    assert tool_message == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": "You can return items within 30 days.",
    }
    assert "Returns are accepted within 30 days." in fake_model.text_calls[0]["user"]


def test_model_outage_raises_agent_error_after_storing_prompt(server_db, clock, fake_model):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    fake_model.fail = True

    with pytest.raises(AgentError):
        messages.post_message("Hello", created["thread_id"], session_id)
    assert _contents(created["thread_id"], session_id)[-1] == ("user", "Hello")


def test_unknown_tool_is_reported_to_the_model(server_db, clock, fake_model):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()
    fake_model.chat_replies = [
        {"role": "assistant", "content": None, "tool_calls": [tool_call("call_9", "deleteAccount")]},
        {"role": "assistant", "content": "Sorry, I cannot do that."},
    ]

    result = messages.post_message("Delete my account", created["thread_id"], session_id)
    assert result["reply"] == "Sorry, I cannot do that."
    assert fake_model.chat_calls[1]["messages"][-1]["content"] == "Unknown tool: deleteAccount"


def test_post_message_authorization(server_db, clock, fake_model):
    session_id, created = _open_conversation()
    stranger, _ = _open_conversation()

    with pytest.raises(Unauthorized, match="Invalid session"):
        messages.post_message("hi", created["thread_id"], "missing")
    with pytest.raises(NotFound):
        messages.post_message("hi", "missing-thread", session_id)
    with pytest.raises(Unauthorized, match="Incorrect session"):
        messages.post_message("hi", created["thread_id"], stranger)


def test_post_message_refreshes_session_near_expiry(server_db, db_session, clock, fake_model):
    session_id, created = _open_conversation()
    clock.advance(config.SESSION_DURATION_MS - 1000)

    messages.post_message("Still here", created["thread_id"], session_id)

    record = contact_sessions.get_contact_session(db_session, session_id)
    assert record.expires_at == clock.value + config.SESSION_DURATION_MS


def test_list_messages_paginates_by_seq(server_db, clock, fake_model):
    session_id, created = _open_conversation()
    for index in range(4):
        messages.post_message(f"message {index}", created["thread_id"], session_id)

    first = messages.list_messages(created["thread_id"], session_id, page_size=3)
    assert [item["seq"] for item in first["page"]] == [1, 2, 3]
    assert first["continue_cursor"] == "3"

    second = messages.list_messages(
        created["thread_id"], session_id, cursor=first["continue_cursor"], page_size=3
    )
    assert [item["seq"] for item in second["page"]] == [4, 5]
    assert second["is_done"] is True


def test_operator_reply_takes_over_from_agent(server_db, db_session, clock, fake_model, org_context):
    subscriptions.upsert_subscription("org_1", "active")
    session_id, created = _open_conversation()

    result = messages.post_operator_message(
        created["conversation_id"], "Hi, this is Sam from support.", context=org_context
    )
    assert result["status"] == "stored"
    assert result["message"]["role"] == "assistant"
    assert conversations.get_conversation(created["conversation_id"], session_id)["status"] == "escalated"

    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_CONVERSATION_ESCALATED).one()
    assert event.actor_type == "user"
    assert event.actor_id == "user_1"

    visitor = messages.post_message("Thanks Sam", created["thread_id"], session_id)
    assert visitor["agent_triggered"] is False
    assert fake_model.chat_calls == []

    listed = messages.list_operator_messages(created["conversation_id"], context=org_context)
    assert [item["content"] for item in listed["page"]][-2:] == [
        "Hi, this is Sam from support.",
        "Thanks Sam",
    ]


def test_operator_cannot_reply_to_resolved_or_foreign_conversation(
    server_db, clock, org_context, other_org_context
):
    session_id, created = _open_conversation()
    conversations.update_conversation_status(created["conversation_id"], "resolved", context=org_context)

    with pytest.raises(BadRequest):
        messages.post_operator_message(created["conversation_id"], "hello", context=org_context)
    with pytest.raises(NotFound):
        messages.post_operator_message(created["conversation_id"], "hello", context=other_org_context)
