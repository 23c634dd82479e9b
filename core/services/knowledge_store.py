"""
Namespaced, content-addressed knowledge store.

Each organization owns one namespace. Entries are deduplicated per namespace
by the hash of the uploaded bytes, chunked for retrieval, and optionally
embedded when the pgvector backend is enabled.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, text
from sqlalchemy.exc import IntegrityError

import core.config as config
from core.db import DB
from core.errors import ModelProviderError, ValidationIssue
from core.models import (
    EntryStatus,
    KnowledgeChunk,
    KnowledgeEntry,
    KnowledgeNamespace,
)
from core.services import llm
from core.services.shared import (
    _validate_limit,
    _validate_optional_text,
    _validate_required_text,
    _vector_search_enabled,
    logger,
    MAX_FILENAME_LENGTH,
    MAX_QUERY_LENGTH,
    MAX_RESULT_LIMIT,
    MAX_SHORT_TEXT_LENGTH,
)
from core.services.tasks import register_task, schedule_task

PURGE_TASK_TYPE = "knowledge.purge_entry"
MAX_SEARCH_TERMS = 12
KEYWORD_CANDIDATE_LIMIT = 200


@dataclass(frozen=True)
class EntryMetadata:
    storage_id: Optional[str]
    uploaded_by: str
    filename: Optional[str]
    category: Optional[str] = None

    def validate(self) -> None:
        _validate_required_text(self.uploaded_by, "uploaded_by", MAX_SHORT_TEXT_LENGTH)
        _validate_optional_text(self.storage_id, "storage_id", MAX_SHORT_TEXT_LENGTH)
        _validate_optional_text(self.filename, "filename", MAX_FILENAME_LENGTH)
        _validate_optional_text(self.category, "category", 100)

    def as_dict(self) -> dict:
        return {
            "storage_id": self.storage_id,
            "uploaded_by": self.uploaded_by,
            "filename": self.filename,
            "category": self.category,
        }


def serialize_entry(entry: KnowledgeEntry) -> dict:
    return {
        "entry_id": entry.id,
        "key": entry.key,
        "title": entry.title,
        "status": entry.status,
        "content_hash": entry.content_hash,
        "metadata": {
            "storage_id": entry.storage_id,
            "uploaded_by": entry.uploaded_by,
            "filename": entry.filename,
            "category": entry.category,
        },
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


# =============================================================================
# Namespaces
# =============================================================================

def get_namespace(db, namespace: str) -> Optional[KnowledgeNamespace]:
    """A namespace exists only once something has been added to it."""
    if not namespace:
        return None
    return (
        db.query(KnowledgeNamespace)
        .filter(KnowledgeNamespace.namespace == namespace)
        .first()
    )


def _get_or_create_namespace(db, namespace: str) -> KnowledgeNamespace:
    existing = get_namespace(db, namespace)
    if existing:
        return existing
    record = KnowledgeNamespace(namespace=namespace)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_namespace(db, namespace)
        if existing:
            return existing
        raise
    return record


# =============================================================================
# Chunking and embeddings
# =============================================================================

def chunk_text(value: str, max_chars: Optional[int] = None) -> List[str]:
    """Pack paragraphs into chunks of at most max_chars, splitting long ones."""
    limit = max_chars or config.CHUNK_MAX_CHARS
    paragraphs = [part.strip() for part in re.split(r"\n\s*\n", value or "") if part.strip()]
    chunks: List[str] = []
    current = ""
    for paragraph in paragraphs:
        while len(paragraph) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(paragraph[:limit])
            paragraph = paragraph[limit:]
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > limit:
            chunks.append(current)
            current = paragraph
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def _embed_chunks(chunks: List[str]) -> List[Optional[List[float]]]:
    if not _vector_search_enabled():
        return [None] * len(chunks)
    vectors: List[Optional[List[float]]] = []
    for chunk in chunks:
        try:
            vectors.append(llm.embed_text_sync(chunk[: config.MAX_EMBEDDING_TEXT_LENGTH]))
        except ModelProviderError:
            logger.warning("Embedding unavailable; chunk left for backfill")
            vectors.append(None)
    return vectors


# =============================================================================
# Entries
# =============================================================================

def _find_by_hash(db, namespace_id: int, content_hash: str) -> Optional[KnowledgeEntry]:
    return (
        db.query(KnowledgeEntry)
        .filter(
            KnowledgeEntry.namespace_id == namespace_id,
            KnowledgeEntry.content_hash == content_hash,
        )
        .first()
    )


def _purge_entry_row(db, entry: KnowledgeEntry) -> None:
    db.query(KnowledgeChunk).filter(KnowledgeChunk.entry_id == entry.id).delete(
        synchronize_session=False
    )
    db.delete(entry)


def add(
    db,
    *,
    namespace: str,
    key: Optional[str],
    title: Optional[str],
    text_value: str,
    content_hash: str,
    metadata: EntryMetadata,
) -> dict:
    """
    Add an entry unless the namespace already holds the same content hash.

    Returns {"entry_id", "created", "status"}; created=False means nothing
    was written and the existing entry's id is returned.
    """
    _validate_required_text(namespace, "namespace", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(content_hash, "content_hash", 64)
    _validate_optional_text(key, "key", MAX_FILENAME_LENGTH)
    _validate_optional_text(title, "title", MAX_FILENAME_LENGTH)
    if not isinstance(text_value, str):
        raise ValidationIssue("text must be a string", field="text", error_type="invalid_type")
    metadata.validate()

    ns = _get_or_create_namespace(db, namespace)
    existing = _find_by_hash(db, ns.id, content_hash)
    if existing is not None:
        if existing.deleted_at is None:
            return {"entry_id": existing.id, "created": False, "status": existing.status}
        # a tombstoned twin is still waiting for its purge task
        _purge_entry_row(db, existing)
        db.commit()

    chunks = chunk_text(text_value)
    vectors = _embed_chunks(chunks)
    fully_embedded = all(vector is not None for vector in vectors)
    status = EntryStatus.ready
    if _vector_search_enabled() and not fully_embedded:
        status = EntryStatus.pending

    entry = KnowledgeEntry(
        namespace_id=ns.id,
        key=key,
        title=title,
        text=text_value,
        content_hash=content_hash,
        status=status.value,
        storage_id=metadata.storage_id,
        uploaded_by=metadata.uploaded_by,
        filename=metadata.filename,
        category=metadata.category,
    )
    for position, (chunk, vector) in enumerate(zip(chunks, vectors)):
        entry.chunks.append(
            KnowledgeChunk(
                namespace_id=ns.id,
                position=position,
                text=chunk,
                embedding=vector,
                model_version=config.EMBEDDING_MODEL if vector is not None else None,
            )
        )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = _find_by_hash(db, ns.id, content_hash)
        if winner is None:
            raise
        return {"entry_id": winner.id, "created": False, "status": winner.status}

    logger.info(
        "knowledge_entry_added",
        extra={"namespace_id": ns.id, "entry_id": entry.id, "chunks": len(chunks)},
    )
    return {"entry_id": entry.id, "created": True, "status": entry.status}


def get_entry(db, entry_id: int) -> Optional[KnowledgeEntry]:
    return (
        db.query(KnowledgeEntry)
        .filter(KnowledgeEntry.id == entry_id, KnowledgeEntry.deleted_at.is_(None))
        .first()
    )


def delete_entry(db, entry_id: int) -> bool:
    """
    Tombstone the entry now and leave the physical purge to the worker.

    The tombstone is committed before returning, so get/list/search stop
    returning the entry immediately.
    """
    entry = get_entry(db, entry_id)
    if entry is None:
        return False
    entry.deleted_at = datetime.utcnow()
    schedule_task(
        db,
        PURGE_TASK_TYPE,
        {"entry_id": entry.id},
        idempotency_key=f"{PURGE_TASK_TYPE}:{entry.id}",
    )
    db.commit()
    return True


@register_task(PURGE_TASK_TYPE)
def purge_entry_task(payload: dict) -> None:
    db = DB.SessionLocal()
    try:
        entry = db.query(KnowledgeEntry).filter(KnowledgeEntry.id == payload["entry_id"]).first()
        if entry is None or entry.deleted_at is None:
            return
        _purge_entry_row(db, entry)
        db.commit()
    finally:
        db.close()


def _parse_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        value = int(cursor)
    except (TypeError, ValueError) as exc:
        raise ValidationIssue("cursor is invalid", field="cursor", error_type="invalid_cursor") from exc
    if value < 0:
        raise ValidationIssue("cursor is invalid", field="cursor", error_type="invalid_cursor")
    return value


def list_entries(
    db,
    *,
    namespace: str,
    cursor: Optional[str] = None,
    page_size: int = 20,
) -> dict:
    """Page through live entries in insertion order (the cursor is the last id seen)."""
    _validate_limit(page_size, "page_size", MAX_RESULT_LIMIT)
    after_id = _parse_cursor(cursor)
    ns = get_namespace(db, namespace)
    if ns is None:
        return {"page": [], "is_done": True, "continue_cursor": ""}

    rows = (
        db.query(KnowledgeEntry)
        .filter(
            KnowledgeEntry.namespace_id == ns.id,
            KnowledgeEntry.deleted_at.is_(None),
            KnowledgeEntry.id > after_id,
        )
        .order_by(KnowledgeEntry.id.asc())
        .limit(page_size + 1)
        .all()
    )
    is_done = len(rows) <= page_size
    page = rows[:page_size]
    continue_cursor = str(page[-1].id) if page else (cursor or "")
    return {
        "page": [serialize_entry(row) for row in page],
        "is_done": is_done,
        "continue_cursor": continue_cursor,
    }


# =============================================================================
# Search
# =============================================================================

def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _query_terms(query: str) -> List[str]:
    terms: List[str] = []
    for word in re.findall(r"\w+", query.lower()):
        if len(word) < 2 or word in terms:
            continue
        terms.append(word)
        if len(terms) >= MAX_SEARCH_TERMS:
            break
    return terms


def keyword_chunk_hits(db, *, namespace_id: int, query: str, limit: int) -> List[tuple]:
    """Score chunks by query-term occurrences; ties go to older entries."""
    terms = _query_terms(query)
    if not terms:
        return []
    conditions = [
        KnowledgeChunk.text.ilike(f"%{_escape_like(term)}%", escape="\\")
        for term in terms
    ]
    rows = (
        db.query(KnowledgeChunk, KnowledgeEntry)
        .join(KnowledgeEntry, KnowledgeEntry.id == KnowledgeChunk.entry_id)
        .filter(
            and_(
                KnowledgeChunk.namespace_id == namespace_id,
                KnowledgeEntry.namespace_id == namespace_id,
                KnowledgeEntry.deleted_at.is_(None),
            ),
            or_(*conditions),
        )
        .order_by(KnowledgeChunk.id.asc())
        .limit(KEYWORD_CANDIDATE_LIMIT)
        .all()
    )
    scored = []
    for chunk, entry in rows:
        lowered = chunk.text.lower()
        score = sum(lowered.count(term) for term in terms)
        if score:
            scored.append((chunk, entry, float(score)))
    scored.sort(key=lambda item: (-item[2], item[1].id, item[0].position))
    return scored[:limit]


def vector_chunk_hits(db, *, namespace_id: int, query: str, limit: int) -> List[tuple]:
    query_embedding = llm.embed_text_sync(query)
    sql = text(
        """
        SELECT c.id AS chunk_id,
               1 - (c.embedding <=> cast(:embedding as vector)) AS similarity
        FROM knowledge_chunks c
        JOIN knowledge_entries e ON e.id = c.entry_id
        WHERE c.namespace_id = :namespace_id
          AND e.namespace_id = :namespace_id
          AND e.deleted_at IS NULL
          AND c.embedding IS NOT NULL
        ORDER BY c.embedding <=> cast(:embedding as vector)
        LIMIT :limit
        """
    )
    rows = db.execute(
        sql,
        {"embedding": str(query_embedding), "namespace_id": namespace_id, "limit": limit},
    ).fetchall()
    if not rows:
        return []
    similarity = {row.chunk_id: float(row.similarity) for row in rows}
    pairs = (
        db.query(KnowledgeChunk, KnowledgeEntry)
        .join(KnowledgeEntry, KnowledgeEntry.id == KnowledgeChunk.entry_id)
        .filter(KnowledgeChunk.id.in_(list(similarity)))
        .all()
    )
    hits = [(chunk, entry, similarity[chunk.id]) for chunk, entry in pairs]
    hits.sort(key=lambda item: -item[2])
    return hits


def search(db, *, namespace: str, query: str, limit: int = 5) -> dict:
    """
    Relevance-ranked search inside one namespace.

    Returns {"entries": [...], "text": str}; entries carry their matched
    chunk text, and text concatenates it in rank order.
    """
    _validate_required_text(query, "query", MAX_QUERY_LENGTH)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    ns = get_namespace(db, namespace)
    if ns is None:
        return {"entries": [], "text": ""}

    candidate_limit = limit * 4
    hits: List[tuple] = []
    if _vector_search_enabled():
        try:
            hits = vector_chunk_hits(db, namespace_id=ns.id, query=query, limit=candidate_limit)
        except ModelProviderError:
            logger.warning("Embedding unavailable; falling back to keyword search")
            hits = keyword_chunk_hits(db, namespace_id=ns.id, query=query, limit=candidate_limit)
    else:
        hits = keyword_chunk_hits(db, namespace_id=ns.id, query=query, limit=candidate_limit)

    grouped: dict[int, dict] = {}
    for chunk, entry, score in hits:
        if entry.namespace_id != ns.id:
            continue
        bucket = grouped.get(entry.id)
        if bucket is None:
            if len(grouped) >= limit:
                continue
            bucket = {
                "entry_id": entry.id,
                "key": entry.key,
                "title": entry.title,
                "score": score,
                "metadata": {"uploaded_by": entry.uploaded_by, "category": entry.category},
                "chunks": [],
            }
            grouped[entry.id] = bucket
        bucket["chunks"].append(chunk.text)

    entries = []
    for bucket in grouped.values():
        bucket["text"] = "\n\n".join(bucket.pop("chunks"))
        entries.append(bucket)
    return {
        "entries": entries,
        "text": "\n\n".join(entry["text"] for entry in entries),
    }


# =============================================================================
# Embedding backfill
# =============================================================================

def run_embedding_backfill() -> dict:
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    if not _vector_search_enabled():
        return {"status": "skipped", "reason": "vector_disabled"}
    if llm.model_circuit_breaker.is_open():
        return {"status": "skipped", "reason": "circuit_open"}
    if config.EMBEDDING_BACKFILL_BATCH_LIMIT <= 0:
        return {"status": "skipped", "reason": "batch_limit_disabled"}

    db = DB.SessionLocal()
    backfilled = 0
    try:
        missing = (
            db.query(KnowledgeChunk)
            .join(KnowledgeEntry, KnowledgeEntry.id == KnowledgeChunk.entry_id)
            .filter(
                KnowledgeChunk.embedding.is_(None),
                KnowledgeEntry.deleted_at.is_(None),
            )
            .order_by(KnowledgeChunk.id.asc())
            .limit(config.EMBEDDING_BACKFILL_BATCH_LIMIT)
            .all()
        )
        touched_entries = set()
        for chunk in missing:
            try:
                chunk.embedding = llm.embed_text_sync(chunk.text[: config.MAX_EMBEDDING_TEXT_LENGTH])
            except ModelProviderError:
                break
            chunk.model_version = config.EMBEDDING_MODEL
            touched_entries.add(chunk.entry_id)
            backfilled += 1
        db.commit()

        for entry_id in touched_entries:
            remaining = (
                db.query(KnowledgeChunk)
                .filter(KnowledgeChunk.entry_id == entry_id, KnowledgeChunk.embedding.is_(None))
                .count()
            )
            if remaining == 0:
                db.query(KnowledgeEntry).filter(
                    KnowledgeEntry.id == entry_id,
                    KnowledgeEntry.status == EntryStatus.pending.value,
                ).update({KnowledgeEntry.status: EntryStatus.ready.value}, synchronize_session=False)
        db.commit()
    finally:
        db.close()
    return {"status": "ok", "backfilled": backfilled}


async def embedding_backfill_loop() -> None:
    if config.EMBEDDING_BACKFILL_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.EMBEDDING_BACKFILL_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(run_embedding_backfill)
        except Exception as exc:
            config.logger.warning(f"Embedding backfill error: {exc}")
