"""
Fire-and-forget dispatcher for webhook side effects.

Admin emails, welcome emails, analytics and CRM rows must never delay or fail
a webhook response, so they run as asyncio tasks on the request's event loop.
Failures are logged and counted, never raised to the caller.

Usage::

    from services.task_queue import dispatcher

    dispatcher.dispatch("welcome-email", send_welcome(...))
    dispatcher.stats()
    # {"running": 1, "completed": 12, "failed": 0, "dropped": 0}
"""

import asyncio
import itertools
import logging
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 500


# ── Internal record stored per task ──────────────────────────────────────────


class _TaskRecord:
    __slots__ = (
        "task_id",
        "name",
        "status",
        "error",
        "created_at",
        "completed_at",
    )

    def __init__(self, task_id: str, name: str) -> None:
        self.task_id: str = task_id
        self.name: str = name
        self.status: str = "running"  # running | completed | failed
        self.error: str | None = None
        self.created_at: datetime = datetime.now(UTC)
        self.completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "name": self.name,
            "status": self.status,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# ── BackgroundDispatcher class ────────────────────────────────────────────────


class BackgroundDispatcher:
    """Bounded in-memory set of fire-and-forget asyncio tasks."""

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.max_pending = max_pending
        self._records: dict[str, _TaskRecord] = {}
        self._running: set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._dropped = 0

    # ── Public API ────────────────────────────────────────────────────────────

    def dispatch(self, name: str, coro: Coroutine) -> str | None:
        """
        Schedule *coro* and return immediately.

        Returns the task id, or None if the dispatcher is saturated (the
        coroutine is closed and the drop is counted).
        """
        if len(self._running) >= self.max_pending:
            self._dropped += 1
            coro.close()  # clean up the coroutine to avoid RuntimeWarning
            logger.warning("dispatcher: %s dropped, %d tasks already running", name, len(self._running))
            return None

        task_id = f"{name}-{next(self._ids)}"
        record = _TaskRecord(task_id, name)
        self._records[task_id] = record

        task = asyncio.create_task(self._run(record, coro), name=f"bg-{task_id}")
        self._running.add(task)
        task.add_done_callback(self._running.discard)

        logger.debug("dispatcher: scheduled %s", task_id)
        return task_id

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every running task (shutdown and tests)."""
        if not self._running:
            return
        await asyncio.wait(set(self._running), timeout=timeout)

    def get_status(self, task_id: str) -> dict[str, Any] | None:
        record = self._records.get(task_id)
        if record is None:
            return None
        return record.to_dict()

    def cleanup_old(self, max_age_seconds: int = 3600) -> int:
        """
        Forget finished tasks older than *max_age_seconds*.

        Returns the number of records removed.
        """
        now = datetime.now(UTC)
        to_delete = [
            tid
            for tid, rec in self._records.items()
            if rec.status in ("completed", "failed")
            and rec.completed_at is not None
            and (now - rec.completed_at).total_seconds() > max_age_seconds
        ]
        for tid in to_delete:
            del self._records[tid]
        if to_delete:
            logger.debug("dispatcher: cleaned up %d old records", len(to_delete))
        return len(to_delete)

    def stats(self) -> dict[str, int]:
        """Counts by status (health endpoint)."""
        counts: dict[str, int] = {"running": 0, "completed": 0, "failed": 0}
        for rec in self._records.values():
            counts[rec.status] = counts.get(rec.status, 0) + 1
        counts["dropped"] = self._dropped
        return counts

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _run(self, record: _TaskRecord, coro: Coroutine) -> None:
        try:
            await coro
            record.status = "completed"
        except Exception as exc:
            record.error = str(exc)
            record.status = "failed"
            logger.error("dispatcher: %s failed: %s", record.task_id, exc, exc_info=True)
        finally:
            record.completed_at = datetime.now(UTC)


# ── Module-level singleton ────────────────────────────────────────────────────

dispatcher = BackgroundDispatcher()
