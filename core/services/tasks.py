"""
Database-backed background task queue and worker.

Mutations enqueue a task row inside their own transaction; the worker loop
claims due rows, runs the registered handler, and records the outcome with
bounded retries.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

import core.config as config
from core.db import DB
from core.models import BackgroundTask, TaskStatus
from core.services.shared import logger

TaskHandler = Callable[[dict], Optional[dict]]

TASK_HANDLERS: dict[str, TaskHandler] = {}

# Payload keys that must not outlive the task row's active life.
SENSITIVE_PAYLOAD_KEYS = {"value"}

# A claimed task moves off its idempotency key so newer work can queue behind it.
RUNNING_KEY_MARKER = "#running-"


def register_task(task_type: str) -> Callable[[TaskHandler], TaskHandler]:
    def decorator(fn: TaskHandler) -> TaskHandler:
        TASK_HANDLERS[task_type] = fn
        return fn
    return decorator


def _load_handlers() -> None:
    # handler modules register themselves on import
    import core.services.knowledge_store  # noqa: F401
    import core.services.plugins  # noqa: F401


def _running_key(idempotency_key: str, task_id: int) -> str:
    return f"{idempotency_key}{RUNNING_KEY_MARKER}{task_id}"


def _base_key(idempotency_key: Optional[str]) -> Optional[str]:
    if not idempotency_key:
        return None
    return idempotency_key.split(RUNNING_KEY_MARKER, 1)[0]


def schedule_task(
    db,
    task_type: str,
    payload: dict,
    *,
    organization_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    run_at: Optional[datetime] = None,
) -> BackgroundTask:
    """
    Add a pending task to the caller's transaction (caller commits).

    A still-pending task with the same idempotency key takes the new payload
    instead. A task that is already running keeps the payload it started with
    and the new payload gets a task of its own.
    """
    if idempotency_key:
        existing = (
            db.query(BackgroundTask)
            .filter(
                BackgroundTask.idempotency_key == idempotency_key,
                BackgroundTask.status == TaskStatus.pending.value,
            )
            .first()
        )
        if existing is not None:
            # only applies while the row is still pending
            updated = (
                db.query(BackgroundTask)
                .filter(
                    BackgroundTask.id == existing.id,
                    BackgroundTask.status == TaskStatus.pending.value,
                    BackgroundTask.idempotency_key == idempotency_key,
                )
                .update({BackgroundTask.payload: payload}, synchronize_session=False)
            )
            if updated:
                db.refresh(existing)
                return existing
    task = BackgroundTask(
        organization_id=organization_id,
        task_type=task_type,
        payload=payload,
        status=TaskStatus.pending.value,
        attempts=0,
        max_attempts=config.TASK_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
        run_at=run_at or datetime.utcnow(),
    )
    db.add(task)
    db.flush()
    return task


def get_pending_tasks(db, limit: int = 10) -> list[BackgroundTask]:
    now = datetime.utcnow()
    return (
        db.query(BackgroundTask)
        .filter(
            BackgroundTask.status == TaskStatus.pending.value,
            BackgroundTask.run_at <= now,
        )
        .order_by(BackgroundTask.run_at, BackgroundTask.id)
        .limit(limit)
        .all()
    )


def _claim_task(db, task: BackgroundTask) -> bool:
    """Compare-and-set pending -> running so two workers never run one task."""
    values = {
        BackgroundTask.status: TaskStatus.running.value,
        BackgroundTask.attempts: BackgroundTask.attempts + 1,
    }
    if task.idempotency_key:
        values[BackgroundTask.idempotency_key] = _running_key(task.idempotency_key, task.id)
    claimed = (
        db.query(BackgroundTask)
        .filter(
            BackgroundTask.id == task.id,
            BackgroundTask.status == TaskStatus.pending.value,
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    if claimed:
        db.refresh(task)
    return bool(claimed)


def _scrub_payload(payload: Optional[dict]) -> dict:
    return {key: value for key, value in (payload or {}).items() if key not in SENSITIVE_PAYLOAD_KEYS}


def mark_task_completed(db, task: BackgroundTask) -> BackgroundTask:
    task.status = TaskStatus.completed.value
    task.completed_at = datetime.utcnow()
    task.last_error = None
    task.idempotency_key = None
    task.payload = _scrub_payload(task.payload)
    db.commit()
    return task


def mark_task_failed(db, task: BackgroundTask, error: str) -> BackgroundTask:
    """
    Return the task to pending while attempts remain; otherwise fail it.

    A retry that finds newer work already queued under its idempotency key
    is dropped in favour of that work.
    """
    task.last_error = error[:2000]
    base_key = _base_key(task.idempotency_key)
    superseded = False
    if base_key:
        superseded = (
            db.query(BackgroundTask.id)
            .filter(
                BackgroundTask.idempotency_key == base_key,
                BackgroundTask.id != task.id,
            )
            .first()
            is not None
        )
    if task.attempts < task.max_attempts and not superseded:
        task.status = TaskStatus.pending.value
        task.idempotency_key = base_key
    else:
        task.status = TaskStatus.failed.value
        task.completed_at = datetime.utcnow()
        task.idempotency_key = None
        task.payload = _scrub_payload(task.payload)
        if superseded:
            task.last_error = f"superseded by a newer task: {task.last_error}"[:2000]
    db.commit()
    return task


def run_pending_tasks(limit: Optional[int] = None) -> dict:
    """Run one batch of due tasks. Safe to call from tests or a worker thread."""
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    _load_handlers()
    batch_limit = limit if limit is not None else config.TASK_WORKER_BATCH_LIMIT

    db = DB.SessionLocal()
    completed = 0
    failed = 0
    try:
        for task in get_pending_tasks(db, limit=batch_limit):
            if not _claim_task(db, task):
                continue
            handler = TASK_HANDLERS.get(task.task_type)
            if handler is None:
                mark_task_failed(db, task, f"no handler registered for {task.task_type}")
                failed += 1
                continue
            try:
                handler(dict(task.payload or {}))
            except Exception as exc:
                logger.warning(
                    "background_task_failed",
                    extra={
                        "task_id": task.id,
                        "task_type": task.task_type,
                        "attempts": task.attempts,
                        "detail": str(exc),
                    },
                )
                db.rollback()
                mark_task_failed(db, task, str(exc))
                failed += 1
                continue
            mark_task_completed(db, task)
            completed += 1
    finally:
        db.close()
    return {"status": "ok", "completed": completed, "failed": failed}


async def task_worker_loop() -> None:
    if config.TASK_WORKER_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.TASK_WORKER_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(run_pending_tasks)
        except Exception as exc:
            config.logger.warning(f"Task worker error: {exc}")
