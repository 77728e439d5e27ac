"""Activity data models: ActivityEvent and the ActivitySink interface."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from content_pipeline.models import DomainEvent


@dataclass(frozen=True)
class ActivityEvent:
    """One append-only audit entry.

    ``activity_type`` is the domain event name (``"post_approved"``,
    ``"scheduled_post_failed"``, ...) or a job/system activity name.
    """

    # Required fields
    timestamp: datetime
    entity_id: str
    activity_type: str
    description: str

    # Context
    project_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for Supabase insertion."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "entity_id": self.entity_id,
            "project_id": self.project_id,
            "activity_type": self.activity_type,
            "description": self.description,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        """Serialize to a JSON line for file logging."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        time_str = self.timestamp.strftime("%H:%M:%S")
        return f"[{time_str}] [{self.activity_type}] {self.entity_id}: {self.description}"


@runtime_checkable
class ActivitySink(Protocol):
    """Anything activity can be recorded to."""

    async def record(
        self,
        entity_id: str,
        activity_type: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
    ) -> ActivityEvent: ...

    async def record_event(
        self,
        event: DomainEvent,
        description: str,
        project_id: Optional[str] = None,
    ) -> ActivityEvent: ...


__all__ = ["ActivityEvent", "ActivitySink"]
