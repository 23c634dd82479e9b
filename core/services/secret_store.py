"""
Per-tenant integration credentials in AWS Secrets Manager.

A secret holds one JSON object (for example a public and a private API key)
so a single name covers everything one integration needs.
"""

from __future__ import annotations

import json
from typing import Optional

import boto3
from botocore.exceptions import ClientError

import core.config as config
from core.errors import ConfigurationError

logger = config.logger


def _get_client():
    return boto3.client("secretsmanager", region_name=config.AWS_REGION)


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def secret_name_for(organization_id: str, service: str) -> str:
    return f"{config.SECRETS_PREFIX}/{organization_id}/{service}"


def get_secret_value(secret_name: str) -> Optional[dict]:
    """Raw get_secret_value response, or None when the secret does not exist."""
    client = _get_client()
    try:
        return client.get_secret_value(SecretId=secret_name)
    except ClientError as exc:
        if _error_code(exc) == "ResourceNotFoundException":
            return None
        raise


def upsert_secret(secret_name: str, value: dict) -> None:
    """Create the secret, or add a new version when it already exists."""
    client = _get_client()
    secret_string = json.dumps(value)
    try:
        client.create_secret(Name=secret_name, SecretString=secret_string)
        logger.info("secret_created", extra={"secret_name": secret_name})
        return
    except ClientError as exc:
        code = _error_code(exc)
        if code == "ValidationException":
            raise ConfigurationError(f"Invalid secret name or value: {exc}") from exc
        if code != "ResourceExistsException":
            raise

    try:
        client.put_secret_value(SecretId=secret_name, SecretString=secret_string)
    except ClientError as exc:
        code = _error_code(exc)
        if code == "ResourceNotFoundException":
            raise ConfigurationError(f"Secret not found during update: {secret_name}") from exc
        if code == "ValidationException":
            raise ConfigurationError(f"Invalid secret name or value: {exc}") from exc
        raise
    logger.info("secret_updated", extra={"secret_name": secret_name})


def parse_secret_string(secret: Optional[dict]) -> Optional[dict]:
    """Decode SecretString as a JSON object; None when absent or malformed."""
    if not secret or not secret.get("SecretString"):
        return None
    try:
        parsed = json.loads(secret["SecretString"])
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None
