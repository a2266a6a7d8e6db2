"""
Structured audit logging: appends one JSON object per line (JSON Lines) for
every sync run and every channel sync.

Each record carries a timestamp, service name, action, details dict and
success flag, so a run's history (including failed channels and their
errors) can be reviewed without opening the mirror database.

Writes happen on a background task so the sync loop never blocks on file
I/O; :meth:`AuditLogger.close` flushes everything still queued.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("mirror_common.audit")

_DEFAULT_LOG_PATH = Path("/var/log/guild-mirror/audit.log")


@dataclass(slots=True)
class _AuditRecord:
    json_line: str
    action: str


class AuditLogger:
    """Buffered JSON Lines audit logger.

    Args:
        log_path: Path to the audit log file.
        queue_size: Max queued events before producers backpressure.
        flush_batch_size: Number of queued events to write per batch.
    """

    def __init__(
        self,
        log_path: Path = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._log_path = Path(log_path)
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(),
                name="guild-mirror-audit-writer",
            )

    def _write_batch(self, batch: list[_AuditRecord]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(item.json_line for item in batch))
        except OSError:
            logger.exception(
                "Failed to write %d audit records (first action=%s)",
                len(batch),
                batch[0].action,
            )

    async def _worker(self) -> None:
        """Drain queue and flush records in small batches."""
        stop = False
        while not stop:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                break

            batch = [record]
            while len(batch) < self._flush_batch_size:
                try:
                    maybe_next = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if maybe_next is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(maybe_next)

            self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            service: Originating service (``"mirror"``).
            action: Action identifier (e.g. ``"sync_pass"``,
                    ``"sync_channel"``).
            details: Arbitrary JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug(
                "Dropping audit event after logger close: service=%s action=%s",
                service,
                action,
            )
            return
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": service,
            "action": action,
            "details": details or {},
            "success": success,
        }
        self._ensure_worker()
        await self._queue.put(
            _AuditRecord(json_line=json.dumps(event) + "\n", action=action)
        )

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        worker = self._worker_task
        if worker is not None:
            await self._queue.put(None)
            await worker
