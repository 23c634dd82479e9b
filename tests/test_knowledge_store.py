import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import hashlib

import pytest

from core.errors import ValidationIssue
from core.models import BackgroundTask, KnowledgeChunk, KnowledgeEntry
from core.services import knowledge_store, tasks


def _add(db, namespace, text, key="doc.txt"):
    return knowledge_store.add(
        db,
        namespace=namespace,
        key=key,
        title=key,
        text_value=text,
        content_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
        metadata=knowledge_store.EntryMetadata(
            storage_id=None,
            uploaded_by=namespace,
            filename=key,
        ),
    )


def test_add_deduplicates_by_content_hash(db_session):
    first = _add(db_session, "org_1", "Shipping takes three days.")
    second = _add(db_session, "org_1", "Shipping takes three days.", key="other-name.txt")

    assert first["created"] is True
    assert first["status"] == "ready"
    assert second["created"] is False
    assert second["entry_id"] == first["entry_id"]
    assert db_session.query(KnowledgeEntry).count() == 1


def test_same_content_in_two_namespaces_is_two_entries(db_session):
    first = _add(db_session, "org_1", "Shared text")
    second = _add(db_session, "org_2", "Shared text")
    assert first["created"] and second["created"]
    assert first["entry_id"] != second["entry_id"]


def test_list_and_search_never_cross_namespaces(db_session):
    _add(db_session, "org_1", "Our refund window is thirty days.", key="refunds.txt")
    _add(db_session, "org_2", "Refund requests go to billing.", key="billing.txt")

    listed = knowledge_store.list_entries(db_session, namespace="org_1")
    assert [entry["key"] for entry in listed["page"]] == ["refunds.txt"]

    result = knowledge_store.search(db_session, namespace="org_1", query="refund", limit=5)
    assert [entry["key"] for entry in result["entries"]] == ["refunds.txt"]
    assert "thirty days" in result["text"]
    assert "billing" not in result["text"]


def test_search_unknown_namespace_is_empty(db_session):
    result = knowledge_store.search(db_session, namespace="nobody", query="anything", limit=5)
    assert result == {"entries": [], "text": ""}


def test_search_ranks_by_term_frequency(db_session):
    _add(db_session, "org_1", "Password reset is on the login page.", key="login.txt")
    _add(
        db_session,
        "org_1",
        "To reset a password, open settings. Password rules: reset every year.",
        key="password.txt",
    )
    result = knowledge_store.search(db_session, namespace="org_1", query="password reset", limit=5)
    assert [entry["key"] for entry in result["entries"]] == ["password.txt", "login.txt"]


def test_list_entries_paginates(db_session):
    for index in range(5):
        _add(db_session, "org_1", f"Document number {index}", key=f"doc-{index}.txt")

    first = knowledge_store.list_entries(db_session, namespace="org_1", page_size=2)
    assert len(first["page"]) == 2
    assert first["is_done"] is False

    keys = [entry["key"] for entry in first["page"]]
    cursor = first["continue_cursor"]
    while True:
        page = knowledge_store.list_entries(db_session, namespace="org_1", cursor=cursor, page_size=2)
        keys.extend(entry["key"] for entry in page["page"])
        cursor = page["continue_cursor"]
        if page["is_done"]:
            break
    assert keys == [f"doc-{index}.txt" for index in range(5)]


def test_list_entries_rejects_bad_cursor(db_session):
    _add(db_session, "org_1", "text")
    with pytest.raises(ValidationIssue):
        knowledge_store.list_entries(db_session, namespace="org_1", cursor="abc")


def test_delete_tombstones_then_purge_task_removes_rows(server_db, db_session):
    added = _add(db_session, "org_1", "Paragraph one.\n\nParagraph two.")
    entry_id = added["entry_id"]

    assert knowledge_store.delete_entry(db_session, entry_id) is True
    assert knowledge_store.get_entry(db_session, entry_id) is None
    assert knowledge_store.list_entries(db_session, namespace="org_1")["page"] == []
    assert knowledge_store.search(db_session, namespace="org_1", query="paragraph", limit=5)["entries"] == []

    result = tasks.run_pending_tasks()
    assert result["completed"] == 1

    db_session.expire_all()
    assert db_session.query(KnowledgeEntry).filter(KnowledgeEntry.id == entry_id).count() == 0
    assert db_session.query(KnowledgeChunk).filter(KnowledgeChunk.entry_id == entry_id).count() == 0
    task = db_session.query(BackgroundTask).one()
    assert task.status == "completed"


def test_readding_deleted_content_creates_fresh_entry(db_session):
    first = _add(db_session, "org_1", "Reusable text")
    knowledge_store.delete_entry(db_session, first["entry_id"])

    second = _add(db_session, "org_1", "Reusable text")
    assert second["created"] is True


def test_chunk_text_respects_limit():
    chunks = knowledge_store.chunk_text("a" * 25 + "\n\n" + "b" * 5, max_chars=10)
    assert all(len(chunk) <= 10 for chunk in chunks)
    assert "".join(chunks).replace("\n", "") == "a" * 25 + "b" * 5
