"""Append-only activity recorder with multiple outputs: file and store.

Provides the ``ActivityRecorder`` class that appends ``ActivityEvent``
entries to a local JSON-lines file (via ``aiofiles``) and, when a store is
attached, to the ``project_activities`` table.  A bounded in-memory ring
buffer allows fast ``get_recent()`` queries without hitting the database.

Global helpers:
    - ``init_recorder()``  -- create and register a singleton recorder
    - ``get_recorder()``   -- retrieve the singleton (raises if not initialised)
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import aiofiles

from content_pipeline.activity.models import ActivityEvent
from content_pipeline.models import DomainEvent
from content_pipeline.utils import utc_now

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Audit sink used by the workflow, engine, dispatcher and scheduler.

    Parameters:
        path: JSON-lines file to append to (parent directory is created).
            ``None`` disables the file output.
        store: Optional ``PipelineStore``; entries are written to it as
            tracked background tasks.
        buffer_size: Number of entries kept for ``get_recent()``.
        clock: Source of timestamps (injectable for tests).
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        store: Any = None,
        buffer_size: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.store = store
        self._clock = clock

        self._recent: Deque[ActivityEvent] = deque(maxlen=buffer_size)
        self._file_lock = asyncio.Lock()

        # Track pending store writes to prevent garbage collection
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(
        self,
        entity_id: str,
        activity_type: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
    ) -> ActivityEvent:
        """Append an activity entry.

        The file write is awaited; the store write is fire-and-forget but
        tracked, and its failures are logged rather than raised.
        """
        entry = ActivityEvent(
            timestamp=self._clock(),
            entity_id=entity_id,
            activity_type=activity_type,
            description=description,
            project_id=project_id,
            metadata=dict(metadata or {}),
        )
        self._recent.append(entry)

        if self.path is not None:
            await self._write_to_file(entry)

        if self.store is not None:
            task = asyncio.create_task(self._write_to_store(entry))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

        return entry

    async def record_event(
        self,
        event: DomainEvent,
        description: str,
        project_id: Optional[str] = None,
    ) -> ActivityEvent:
        """Record a guard ``DomainEvent`` under its own name."""
        return await self.record(
            event.entity_id,
            event.name,
            description,
            metadata=event.data,
            project_id=project_id,
        )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_recent(
        self,
        limit: int = 20,
        entity_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[ActivityEvent]:
        """Return recent entries from the ring buffer, oldest first."""
        entries = list(self._recent)

        if entity_id is not None:
            entries = [e for e in entries if e.entity_id == entity_id]
        if activity_type is not None:
            entries = [e for e in entries if e.activity_type == activity_type]
        if project_id is not None:
            entries = [e for e in entries if e.project_id == project_id]

        return entries[-limit:]

    # ------------------------------------------------------------------
    # Flush (call before shutdown)
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Wait for all pending store writes."""
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
            self._pending_tasks.clear()

    # ------------------------------------------------------------------
    # Private output methods
    # ------------------------------------------------------------------

    async def _write_to_file(self, entry: ActivityEvent) -> None:
        json_line = entry.to_json() + "\n"
        async with self._file_lock:
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(json_line)

    async def _write_to_store(self, entry: ActivityEvent) -> None:
        try:
            await self.store.save_activity(entry.to_dict())
        except Exception as exc:
            logger.warning(
                "[ACTIVITY] Failed to write %s for %s to store: %s",
                entry.activity_type,
                entry.entity_id,
                exc,
            )


# ======================================================================
# GLOBAL RECORDER SINGLETON
# ======================================================================

_recorder: Optional[ActivityRecorder] = None


def init_recorder(
    path: Optional[Path] = None,
    store: Any = None,
    buffer_size: int = 500,
) -> ActivityRecorder:
    """Initialise and register the global ``ActivityRecorder``."""
    global _recorder
    _recorder = ActivityRecorder(path=path, store=store, buffer_size=buffer_size)
    return _recorder


def get_recorder() -> ActivityRecorder:
    """Retrieve the global ``ActivityRecorder``.

    Raises:
        RuntimeError: If ``init_recorder()`` has not been called yet.
    """
    if _recorder is None:
        raise RuntimeError("Activity recorder not initialized. Call init_recorder() first.")
    return _recorder


__all__ = ["ActivityRecorder", "init_recorder", "get_recorder"]
