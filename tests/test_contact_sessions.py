import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

import core.config as config
from core.errors import ValidationIssue
from core.services import contact_sessions

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000


def _create(**overrides):
    values = {"name": "Ada", "email": "ada@example.com", "organization_id": "org_1"}
    values.update(overrides)
    return contact_sessions.create_contact_session(**values)


def test_session_lives_for_one_day(server_db, clock):
    created = _create()
    assert created["expires_at"] == clock.value + DAY_MS

    clock.advance(DAY_MS - 1)
    assert contact_sessions.validate_contact_session(created["contact_session_id"])["valid"] is True

    clock.advance(1)
    result = contact_sessions.validate_contact_session(created["contact_session_id"])
    assert result == {"valid": False, "reason": contact_sessions.REASON_EXPIRED}


def test_unknown_session_is_invalid(server_db, clock):
    result = contact_sessions.validate_contact_session("missing")
    assert result == {"valid": False, "reason": contact_sessions.REASON_NOT_FOUND}


def test_validate_does_not_extend_session(server_db, db_session, clock):
    created = _create()
    clock.advance(DAY_MS - HOUR_MS)
    contact_sessions.validate_contact_session(created["contact_session_id"])

    record = contact_sessions.get_contact_session(db_session, created["contact_session_id"])
    assert record.expires_at == created["expires_at"]


def test_refresh_only_inside_threshold(server_db, db_session, clock):
    created = _create()
    session_id = created["contact_session_id"]

    clock.advance(DAY_MS - config.AUTO_REFRESH_THRESHOLD_MS)
    assert contact_sessions.refresh_contact_session(db_session, session_id) is False

    clock.advance(1)
    assert contact_sessions.refresh_contact_session(db_session, session_id) is True
    record = contact_sessions.get_contact_session(db_session, session_id)
    assert record.expires_at == clock.value + DAY_MS


def test_expired_session_is_not_refreshed(server_db, db_session, clock):
    created = _create()
    clock.advance(DAY_MS)
    assert contact_sessions.refresh_contact_session(db_session, created["contact_session_id"]) is False


def test_metadata_is_kept_and_unknown_keys_rejected(server_db, clock):
    created = _create(metadata={"language": "en-GB", "cookie_enabled": True, "timezone_offset": -60})
    result = contact_sessions.validate_contact_session(created["contact_session_id"])
    assert result["contact_session"]["metadata"]["language"] == "en-GB"

    with pytest.raises(ValidationIssue):
        _create(metadata={"password": "hunter2"})


@pytest.mark.parametrize("email", ["", "not-an-email", "a@b"])
def test_invalid_email_rejected(server_db, clock, email):
    with pytest.raises(ValidationIssue):
        _create(email=email)


def test_operator_sees_contact_behind_conversation(server_db, clock, org_context, other_org_context):
    from core.errors import NotFound
    from core.services import conversations

    created = _create()
    conversation = conversations.create_conversation(created["contact_session_id"], "org_1")

    contact = contact_sessions.get_contact_session_by_conversation(
        conversation["conversation_id"], context=org_context
    )
    assert contact["email"] == "ada@example.com"

    with pytest.raises(NotFound):
        contact_sessions.get_contact_session_by_conversation(
            conversation["conversation_id"], context=other_org_context
        )
