"""
Raw blob storage for uploaded files (local filesystem or S3).
"""

from __future__ import annotations

import json
import os
import uuid
from typing import Optional

import boto3
from botocore.exceptions import ClientError

import core.config as config

logger = config.logger


# =============================================================================
# Storage Backend
# =============================================================================

def _get_s3_client():
    return boto3.client(
        "s3",
        region_name=config.AWS_REGION,
        endpoint_url=config.S3_ENDPOINT_URL,
    )


def _get_storage_backend() -> str:
    return config.STORAGE_BACKEND


def _get_local_storage_path() -> str:
    path = config.LOCAL_STORAGE_PATH
    os.makedirs(path, exist_ok=True)
    return path


def _local_blob_path(storage_id: str) -> str:
    # storage ids are generated here; refuse anything that could escape the root
    if not storage_id or os.path.basename(storage_id) != storage_id or storage_id.startswith("."):
        raise ValueError("invalid storage id")
    return os.path.join(_get_local_storage_path(), storage_id)


def _local_meta_path(storage_id: str) -> str:
    return _local_blob_path(storage_id) + ".meta.json"


def _is_missing_object(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code", "")
    return code in {"404", "NoSuchKey", "NotFound"}


# =============================================================================
# Blob Operations
# =============================================================================

def store(data: bytes, content_type: str) -> str:
    """Persist raw bytes and return the new storage id."""
    storage_id = uuid.uuid4().hex
    if _get_storage_backend() == "s3":
        _get_s3_client().put_object(
            Bucket=config.S3_BUCKET,
            Key=storage_id,
            Body=data,
            ContentType=content_type,
        )
    else:
        with open(_local_blob_path(storage_id), "wb") as handle:
            handle.write(data)
        with open(_local_meta_path(storage_id), "w", encoding="utf-8") as handle:
            json.dump({"content_type": content_type}, handle)
    logger.info("blob_stored", extra={"storage_id": storage_id, "size": len(data)})
    return storage_id


def get_metadata(storage_id: str) -> Optional[dict]:
    """Return {"size", "content_type"} or None when the blob is gone."""
    if _get_storage_backend() == "s3":
        try:
            head = _get_s3_client().head_object(Bucket=config.S3_BUCKET, Key=storage_id)
        except ClientError as exc:
            if _is_missing_object(exc):
                return None
            raise
        return {"size": head.get("ContentLength", 0), "content_type": head.get("ContentType")}

    path = _local_blob_path(storage_id)
    if not os.path.exists(path):
        return None
    content_type = None
    if os.path.exists(_local_meta_path(storage_id)):
        with open(_local_meta_path(storage_id), encoding="utf-8") as handle:
            content_type = json.load(handle).get("content_type")
    return {"size": os.path.getsize(path), "content_type": content_type}


def get_url(storage_id: str) -> Optional[str]:
    """Return a retrievable URL, or None when the blob no longer exists."""
    if get_metadata(storage_id) is None:
        return None
    if _get_storage_backend() == "s3":
        return _get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": config.S3_BUCKET, "Key": storage_id},
            ExpiresIn=config.SIGNED_URL_EXPIRY_SECONDS,
        )
    return f"{config.LOCAL_STORAGE_URL_PREFIX}/{storage_id}"


def read(storage_id: str) -> Optional[bytes]:
    if _get_storage_backend() == "s3":
        try:
            response = _get_s3_client().get_object(Bucket=config.S3_BUCKET, Key=storage_id)
        except ClientError as exc:
            if _is_missing_object(exc):
                return None
            raise
        return response["Body"].read()

    path = _local_blob_path(storage_id)
    if not os.path.exists(path):
        return None
    with open(path, "rb") as handle:
        return handle.read()


def delete(storage_id: str) -> None:
    if _get_storage_backend() == "s3":
        _get_s3_client().delete_object(Bucket=config.S3_BUCKET, Key=storage_id)
    else:
        for path in (_local_blob_path(storage_id), _local_meta_path(storage_id)):
            if os.path.exists(path):
                os.remove(path)
    logger.info("blob_deleted", extra={"storage_id": storage_id})
