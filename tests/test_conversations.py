import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

import core.config as config
from core.audit_constants import EVENT_CONVERSATION_STATUS_CHANGED
from core.errors import NotFound, Unauthorized, ValidationIssue
from core.models import AuditEvent, Message
from core.services import contact_sessions, conversations, widget_settings


def _session(organization_id="org_1", email="visitor@example.com"):
    return contact_sessions.create_contact_session("Visitor", email, organization_id)["contact_session_id"]


def test_new_conversation_starts_unresolved_with_default_greeting(server_db, db_session, clock):
    session_id = _session()
    created = conversations.create_conversation(session_id, "org_1")

    assert created["status"] == "created"
    fetched = conversations.get_conversation(created["conversation_id"], session_id)
    assert fetched == {
        "id": created["conversation_id"],
        "status": "unresolved",
        "thread_id": created["thread_id"],
    }
    greeting = db_session.query(Message).filter(Message.thread_id == created["thread_id"]).one()
    assert greeting.role == "assistant"
    assert greeting.content == config.DEFAULT_GREETING


def test_greeting_comes_from_widget_settings(server_db, db_session, clock, org_context):
    widget_settings.upsert_widget_settings("Welcome to Acme!", context=org_context)
    created = conversations.create_conversation(_session(), "org_1")

    greeting = db_session.query(Message).filter(Message.thread_id == created["thread_id"]).one()
    assert greeting.content == "Welcome to Acme!"


def test_create_requires_live_session_of_same_org(server_db, clock):
    session_id = _session()
    with pytest.raises(Unauthorized, match="Invalid session"):
        conversations.create_conversation(session_id, "org_2")
    with pytest.raises(Unauthorized, match="Invalid session"):
        conversations.create_conversation("missing", "org_1")

    clock.advance(config.SESSION_DURATION_MS)
    with pytest.raises(Unauthorized, match="Invalid session"):
        conversations.create_conversation(session_id, "org_1")


def test_get_conversation_checks_ownership(server_db, clock):
    owner = _session()
    stranger = _session(email="other@example.com")
    created = conversations.create_conversation(owner, "org_1")

    with pytest.raises(Unauthorized, match="Incorrect session"):
        conversations.get_conversation(created["conversation_id"], stranger)
    with pytest.raises(NotFound):
        conversations.get_conversation("missing", owner)
    with pytest.raises(Unauthorized, match="Invalid session"):
        conversations.get_conversation(created["conversation_id"], "missing")


def test_operator_list_filters_by_status_and_org(server_db, clock, org_context, other_org_context):
    first = conversations.create_conversation(_session(), "org_1")
    second = conversations.create_conversation(_session(), "org_1")
    conversations.create_conversation(_session("org_2"), "org_2")
    conversations.update_conversation_status(second["conversation_id"], "escalated", context=org_context)

    everything = conversations.list_conversations(context=org_context)
    assert {item["id"] for item in everything["page"]} == {
        first["conversation_id"],
        second["conversation_id"],
    }

    escalated = conversations.list_conversations(status="escalated", context=org_context)
    assert [item["id"] for item in escalated["page"]] == [second["conversation_id"]]

    assert len(conversations.list_conversations(context=other_org_context)["page"]) == 1

    with pytest.raises(ValidationIssue):
        conversations.list_conversations(status="archived", context=org_context)


def test_operator_list_paginates(server_db, clock, org_context):
    created = {conversations.create_conversation(_session(), "org_1")["conversation_id"] for _ in range(3)}

    first = conversations.list_conversations(page_size=2, context=org_context)
    assert first["is_done"] is False
    second = conversations.list_conversations(
        cursor=first["continue_cursor"], page_size=2, context=org_context
    )
    assert second["is_done"] is True
    seen = {item["id"] for item in first["page"] + second["page"]}
    assert seen == created


def test_operator_can_reopen_resolved_conversation(server_db, db_session, clock, org_context):
    created = conversations.create_conversation(_session(), "org_1")
    conversation_id = created["conversation_id"]

    resolved = conversations.update_conversation_status(conversation_id, "resolved", context=org_context)
    assert resolved["status"] == "updated"
    assert resolved["conversation"]["status"] == "resolved"
    assert resolved["conversation"]["version"] == 2

    reopened = conversations.update_conversation_status(conversation_id, "unresolved", context=org_context)
    assert reopened["conversation"]["status"] == "unresolved"
    assert reopened["conversation"]["version"] == 3

    unchanged = conversations.update_conversation_status(conversation_id, "unresolved", context=org_context)
    assert unchanged["status"] == "unchanged"

    events = (
        db_session.query(AuditEvent)
        .filter(AuditEvent.event_type == EVENT_CONVERSATION_STATUS_CHANGED)
        .all()
    )
    assert len(events) == 2
    assert all(event.actor_id == "user_1" for event in events)


def test_operator_cannot_touch_other_org_conversation(server_db, clock, other_org_context):
    created = conversations.create_conversation(_session(), "org_1")
    with pytest.raises(NotFound):
        conversations.update_conversation_status(
            created["conversation_id"], "resolved", context=other_org_context
        )
    with pytest.raises(NotFound):
        conversations.get_conversation_for_operator(created["conversation_id"], context=other_org_context)


def test_transition_status_is_compare_and_set(server_db, db_session, clock):
    from core.models import ConversationStatus

    created = conversations.create_conversation(_session(), "org_1")
    conversation_id = created["conversation_id"]

    assert conversations.transition_status(
        db_session, conversation_id, [ConversationStatus.unresolved], ConversationStatus.escalated
    )
    assert not conversations.transition_status(
        db_session, conversation_id, [ConversationStatus.unresolved], ConversationStatus.resolved
    )
    db_session.expire_all()
    assert conversations.get_by_id(db_session, conversation_id).status == "escalated"
