"""
Model provider client (chat completions and embeddings over the OpenAI REST API).
"""

from __future__ import annotations

import random
import threading
import time
from typing import List, Optional

import httpx

import core.config as config
from core.errors import ModelProviderError
from core.validators import validate_embedding_text as _validate_embedding_text

logger = config.logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

http_client = None  # Reusable HTTP client for the model provider


def init_http_client():
    """Initialize HTTP client for model provider calls."""
    global http_client
    headers = {"Content-Type": "application/json"}
    if config.OPENAI_API_KEY:
        headers["Authorization"] = f"Bearer {config.OPENAI_API_KEY}"
    http_client = httpx.Client(
        base_url=config.OPENAI_BASE_URL,
        timeout=httpx.Timeout(config.MODEL_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        headers=headers,
    )
    logger.info("HTTP client initialized")


def cleanup_http_client():
    """Clean up HTTP client on shutdown."""
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("HTTP client closed")


class ModelCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def reset(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_error = None

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


model_circuit_breaker = ModelCircuitBreaker(
    failure_threshold=config.MODEL_FAILURE_THRESHOLD,
    cooldown_seconds=config.MODEL_COOLDOWN_SECONDS,
)


def _raise_model_unavailable(detail: str) -> None:
    logger.warning("model_provider_unavailable", extra={"detail": detail})
    raise ModelProviderError(f"model provider unavailable: {detail}")


def _sleep_backoff(attempt: int) -> None:
    base = config.MODEL_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.MODEL_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


def _post_json(path: str, payload: dict) -> dict:
    """POST to the provider with retry, backoff and the shared circuit breaker."""
    if config.MODEL_PROVIDER == "none":
        _raise_model_unavailable("model provider disabled")
    if model_circuit_breaker.is_open():
        _raise_model_unavailable("circuit breaker open")
    if http_client is None:
        init_http_client()

    for attempt in range(config.MODEL_RETRY_MAX + 1):
        try:
            response = http_client.post(path, json=payload)
        except httpx.RequestError as exc:
            if attempt >= config.MODEL_RETRY_MAX:
                model_circuit_breaker.record_failure("request error")
                _raise_model_unavailable(type(exc).__name__)
            _sleep_backoff(attempt)
            continue

        if response.status_code in RETRYABLE_STATUS_CODES:
            if attempt >= config.MODEL_RETRY_MAX:
                model_circuit_breaker.record_failure(f"status {response.status_code}")
                _raise_model_unavailable(f"status {response.status_code}")
            _sleep_backoff(attempt)
            continue
        if response.status_code >= 400:
            model_circuit_breaker.record_failure(f"status {response.status_code}")
            _raise_model_unavailable(f"status {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            model_circuit_breaker.record_failure("invalid json")
            _raise_model_unavailable("invalid json")
        model_circuit_breaker.record_success()
        return data
    _raise_model_unavailable("retries exhausted")


def chat_completion(
    messages: List[dict],
    *,
    model: str,
    tools: Optional[List[dict]] = None,
) -> dict:
    """Run one chat completion and return the assistant message object."""
    payload: dict = {"model": model, "messages": messages}
    if tools:
        payload["tools"] = tools
        payload["tool_choice"] = "auto"
    data = _post_json("/chat/completions", payload)
    try:
        return data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ModelProviderError("model provider returned an unexpected payload") from exc


def generate_text(system_prompt: str, user_content, *, model: str) -> str:
    """Single-turn completion: fixed system instruction plus one user payload."""
    message = chat_completion(
        [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ],
        model=model,
    )
    return (message.get("content") or "").strip()


def embed_text_sync(text: str) -> List[float]:
    """Generate an embedding using the pooled HTTP client."""
    _validate_embedding_text(text)
    data = _post_json(
        "/embeddings",
        {"model": config.EMBEDDING_MODEL, "input": text},
    )
    try:
        return data["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ModelProviderError("model provider returned an unexpected payload") from exc
