import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.context import RequestContext
from core.models import KnowledgeEntry
from core.services import files

FAQ_BYTES = b"Refunds are processed within five business days."


def _upload(filename: str) -> dict:
    context = RequestContext.for_organization("org_concurrency", user_id="user_1")
    return files.add_file(filename, FAQ_BYTES, mime_type="text/plain", context=context)


def test_same_bytes_uploaded_concurrently_create_one_entry(server_db, db_session, tmp_path):
    with ThreadPoolExecutor(max_workers=2) as executor:
        results = list(executor.map(_upload, ["faq.txt", "faq-copy.txt"]))

    assert sorted(result["created"] for result in results) == [False, True]
    assert len({result["entry_id"] for result in results}) == 1
    assert db_session.query(KnowledgeEntry).count() == 1

    blobs = [path for path in (tmp_path / "blobs").iterdir() if not path.name.endswith(".meta.json")]
    assert len(blobs) == 1


def test_concurrent_messages_get_distinct_seq(server_db, db_session):
    from core.db import DB
    from core.models import MessageRole
    from core.services import threads

    thread = threads.create_thread(db_session, "org_concurrency")
    db_session.commit()
    thread_id = thread.id

    def _append(text: str) -> int:
        db = DB.SessionLocal()
        try:
            return threads.save_message(db, thread_id, MessageRole.user, text).seq
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=2) as executor:
        seqs = list(executor.map(_append, [f"message {index}" for index in range(4)]))

    assert sorted(seqs) == list(range(1, 5))
