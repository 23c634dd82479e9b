"""
Turn uploaded file bytes into plain or markdown text for the knowledge store.
"""

from __future__ import annotations

import base64
from typing import Optional

import core.config as config
from core.errors import ExtractionFailed, ModelProviderError, UnsupportedType
from core.services import blob_storage, llm
from core.services.shared import logger

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
SUPPORTED_TEXT_TYPES = ("text/plain", "text/html", "text/markdown")
SUPPORTED_TYPES = SUPPORTED_IMAGE_TYPES + ("application/pdf",) + SUPPORTED_TEXT_TYPES

IMAGE_SYSTEM_PROMPT = (
    "You turn images into text. If it is a photo of a document, transcribe it. "
    "If it is not a document, describe it."
)
PDF_SYSTEM_PROMPT = "You transform PDF files into text."
PDF_USER_PROMPT = "Extract the text from PDF and print it without explaining you'll do so."
HTML_SYSTEM_PROMPT = "You transform content into markdown."
HTML_USER_PROMPT = "Extract the text and print it in a markdown format without explaining that you'll do so."


def is_supported_type(mime_type: Optional[str]) -> bool:
    lowered = (mime_type or "").lower()
    return any(lowered.startswith(supported) for supported in SUPPORTED_TYPES)


def _data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _model_reference(url: str, mime_type: str, storage_id: str, data: Optional[bytes]) -> str:
    """Providers need something fetchable; local blob URLs are inlined as data URLs."""
    if url.startswith("http://") or url.startswith("https://"):
        return url
    payload = data if data is not None else blob_storage.read(storage_id)
    if payload is None:
        raise ExtractionFailed("Failed to get storage URL")
    return _data_url(mime_type, payload)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _extract_image(reference: str) -> str:
    return llm.generate_text(
        IMAGE_SYSTEM_PROMPT,
        [{"type": "image_url", "image_url": {"url": reference}}],
        model=config.EXTRACTION_MODEL,
    )


def _extract_pdf(reference: str, filename: str) -> str:
    if reference.startswith("data:"):
        file_part = {"type": "file", "file": {"filename": filename, "file_data": reference}}
    else:
        file_part = {"type": "file", "file": {"filename": filename, "file_url": reference}}
    return llm.generate_text(
        PDF_SYSTEM_PROMPT,
        [file_part, {"type": "text", "text": PDF_USER_PROMPT}],
        model=config.EXTRACTION_MODEL,
    )


def _extract_markup(data: bytes) -> str:
    return llm.generate_text(
        HTML_SYSTEM_PROMPT,
        [
            {"type": "text", "text": _decode(data)},
            {"type": "text", "text": HTML_USER_PROMPT},
        ],
        model=config.EXTRACTION_MODEL,
    )


def extract_text_content(
    storage_id: str,
    filename: str,
    mime_type: str,
    data: Optional[bytes] = None,
) -> str:
    """
    Extract text from a stored blob, dispatching on MIME type.

    text/plain is decoded directly; images, PDFs and other markup go
    through the extraction model.
    """
    lowered = (mime_type or "").lower()
    if not is_supported_type(lowered):
        raise UnsupportedType(f"Unsupported MIME type: {mime_type}")

    url = blob_storage.get_url(storage_id)
    if not url:
        raise ExtractionFailed("Failed to get storage URL")

    try:
        if lowered.startswith("image/"):
            return _extract_image(_model_reference(url, lowered, storage_id, data))

        if lowered.startswith("application/pdf"):
            return _extract_pdf(_model_reference(url, "application/pdf", storage_id, data), filename)

        payload = data if data is not None else blob_storage.read(storage_id)
        if payload is None:
            raise ExtractionFailed("Failed to read stored file")
        if lowered.startswith("text/plain"):
            return _decode(payload)
        return _extract_markup(payload)
    except ModelProviderError as exc:
        logger.warning(
            "content_extraction_failed",
            extra={"storage_id": storage_id, "mime_type": lowered, "detail": str(exc)},
        )
        raise ExtractionFailed(f"Failed to extract text from {filename}") from exc
