"""
File catalog: uploads into the knowledge base and the dashboard's file list.
"""

from __future__ import annotations

import hashlib
import mimetypes
import os
from typing import Optional

import magic

from core.audit import log_event
from core.audit_constants import EVENT_FILE_ADDED, EVENT_FILE_DELETED
from core.context import RequestContext, check_identity_and_get_org_id
from core.db import DB
from core.errors import NotFound, Unauthorized, ValidationIssue
from core.models import EntryStatus
from core.services import blob_storage, knowledge_store
from core.services.content_extraction import extract_text_content
from core.services.shared import (
    _validate_limit,
    _validate_optional_text,
    _validate_required_text,
    logger,
    MAX_FILENAME_LENGTH,
    MAX_RESULT_LIMIT,
)
import core.config as config

DEFAULT_MIME_TYPE = "application/octet-stream"

_EXTRA_EXTENSIONS = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".webp": "image/webp",
}

# libmagic answers for "no idea" and for zero-length input
_UNKNOWN_SNIFF_RESULTS = {DEFAULT_MIME_TYPE, "application/x-empty", "inode/x-empty"}
SNIFF_BYTES = 2048


def _sniff_mime_type(data: bytes) -> Optional[str]:
    if not data:
        return None
    detected = magic.from_buffer(data[:SNIFF_BYTES], mime=True)
    if not detected or detected in _UNKNOWN_SNIFF_RESULTS:
        return None
    return detected


def guess_mime_type(filename: str, data: bytes) -> str:
    """Extension first, then content sniffing, then a generic binary type."""
    extension = os.path.splitext(filename)[1].lower()
    if extension in _EXTRA_EXTENSIONS:
        return _EXTRA_EXTENSIONS[extension]
    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    return _sniff_mime_type(data) or DEFAULT_MIME_TYPE


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    index = 0
    while index < len(units) - 1 and size_bytes >= 1024 ** (index + 1):
        index += 1
    value = size_bytes / (1024 ** index)
    return f"{round(value, 1):g} {units[index]}"


def _display_type(name: Optional[str]) -> str:
    if name and "." in name:
        extension = name.rsplit(".", 1)[-1].lower()
        if extension:
            return extension
    return "txt"


def _display_status(status: Optional[str]) -> str:
    if status == EntryStatus.ready.value:
        return "ready"
    if status == EntryStatus.pending.value:
        return "processing"
    return "error"


def _public_file(entry: dict) -> dict:
    metadata = entry.get("metadata") or {}
    storage_id = metadata.get("storage_id")
    size = "unknown"
    url = None
    if storage_id:
        try:
            blob_meta = blob_storage.get_metadata(storage_id)
            if blob_meta is not None:
                size = format_file_size(int(blob_meta.get("size") or 0))
                url = blob_storage.get_url(storage_id)
        except Exception as exc:
            logger.warning(
                "file_metadata_unavailable",
                extra={"entry_id": entry.get("entry_id"), "detail": str(exc)},
            )
    name = entry.get("key") or "Unknown"
    return {
        "id": str(entry["entry_id"]),
        "name": name,
        "type": _display_type(name),
        "size": size,
        "status": _display_status(entry.get("status")),
        "url": url,
        "category": metadata.get("category"),
    }


def add_file(
    filename: str,
    data: bytes,
    mime_type: Optional[str] = None,
    category: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Store an upload, extract its text and add it to the org's knowledge base.

    Duplicate content (same bytes) is not an error: the existing entry id is
    returned with created=False and the new blob is released.
    """
    organization_id = check_identity_and_get_org_id(context)
    _validate_required_text(filename, "filename", MAX_FILENAME_LENGTH)
    _validate_optional_text(category, "category", 100)
    if not isinstance(data, (bytes, bytearray)):
        raise ValidationIssue("file must be bytes", field="file", error_type="invalid_type")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationIssue(
            f"file exceeds max size {config.MAX_UPLOAD_BYTES} bytes",
            field="file",
            error_type="max_bytes",
        )

    content_type = mime_type or guess_mime_type(filename, data)
    storage_id = blob_storage.store(bytes(data), content_type)
    keep_blob = False
    try:
        text_value = extract_text_content(storage_id, filename, content_type, bytes(data))
        content_hash = hashlib.sha256(data).hexdigest()

        db = DB.SessionLocal()
        try:
            result = knowledge_store.add(
                db,
                namespace=organization_id,
                key=filename,
                title=filename,
                text_value=text_value,
                content_hash=content_hash,
                metadata=knowledge_store.EntryMetadata(
                    storage_id=storage_id,
                    uploaded_by=organization_id,
                    filename=filename,
                    category=category,
                ),
            )
            if result["created"]:
                log_event(
                    db,
                    event_type=EVENT_FILE_ADDED,
                    context=context,
                    org_id=organization_id,
                    target_type="file",
                    target_ids=[result["entry_id"]],
                    metadata={"mime_type": content_type, "size": len(data), "category": category},
                )
                db.commit()
        finally:
            db.close()
        keep_blob = result["created"]
    finally:
        if not keep_blob:
            blob_storage.delete(storage_id)

    return {
        "status": "stored" if result["created"] else "duplicate",
        "entry_id": str(result["entry_id"]),
        "created": result["created"],
        "url": blob_storage.get_url(storage_id) if keep_blob else None,
    }


def list_files(
    category: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = 20,
    context: Optional[RequestContext] = None,
) -> dict:
    organization_id = check_identity_and_get_org_id(context)
    _validate_limit(page_size, "page_size", MAX_RESULT_LIMIT)
    _validate_optional_text(category, "category", 100)

    db = DB.SessionLocal()
    try:
        result = knowledge_store.list_entries(
            db,
            namespace=organization_id,
            cursor=cursor,
            page_size=page_size,
        )
    finally:
        db.close()

    files = [_public_file(entry) for entry in result["page"]]
    if category:
        files = [item for item in files if item["category"] == category]
    return {
        "page": files,
        "is_done": result["is_done"],
        "continue_cursor": result["continue_cursor"],
    }


def _parse_entry_id(entry_id) -> int:
    try:
        return int(entry_id)
    except (TypeError, ValueError) as exc:
        raise NotFound("Entry not found") from exc


def delete_file(entry_id, context: Optional[RequestContext] = None) -> dict:
    """Release the raw blob, then delete the entry (the entry is authoritative)."""
    organization_id = check_identity_and_get_org_id(context)

    db = DB.SessionLocal()
    try:
        namespace = knowledge_store.get_namespace(db, organization_id)
        if namespace is None:
            raise Unauthorized("Invalid namespace")

        entry = knowledge_store.get_entry(db, _parse_entry_id(entry_id))
        if entry is None:
            raise NotFound("Entry not found")
        if entry.uploaded_by != organization_id or entry.namespace_id != namespace.id:
            raise Unauthorized("Unauthorized to delete this entry")

        if entry.storage_id:
            try:
                blob_storage.delete(entry.storage_id)
            except Exception as exc:
                logger.warning(
                    "file_blob_delete_failed",
                    extra={"entry_id": entry.id, "storage_id": entry.storage_id, "detail": str(exc)},
                )

        log_event(
            db,
            event_type=EVENT_FILE_DELETED,
            context=context,
            org_id=organization_id,
            target_type="file",
            target_ids=[entry.id],
        )
        knowledge_store.delete_entry(db, entry.id)
        return {"status": "deleted", "entry_id": str(entry.id)}
    finally:
        db.close()
