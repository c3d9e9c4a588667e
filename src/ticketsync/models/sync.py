"""Sync session model and its in-memory progress snapshot."""
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC copy of `value`. Naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class SyncErrorEntry:
    """One entry in a session's error log."""
    entity: Optional[str]
    message: str
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())


@dataclass
class Progress:
    """Live counters for one sync session."""
    total_entities: int = 0
    processed_entities: int = 0
    skipped_entities: int = 0
    total_items: int = 0
    processed_items: int = 0
    current_entity: Optional[str] = None
    errors: List[SyncErrorEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Progress":
        data = dict(data or {})
        errors = [SyncErrorEntry(**e) for e in data.pop("errors", []) or []]
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(errors=errors, **known)


class SyncSession(SQLModel, table=True):
    """Persisted record of one sync run (full or incremental)."""

    id: str = Field(primary_key=True)  # "full_<ms>_<hex>" / "incr_<ms>_<hex>"
    kind: str = Field(index=True)  # "full", "incremental"
    status: str = Field(default="running", index=True)  # "running", "completed", "failed", "cancelled"
    options: Optional[str] = None  # JSON
    target_entities: Optional[str] = None  # JSON list of project keys
    progress: Optional[str] = None  # JSON Progress
    error_log: Optional[str] = None  # JSON list of SyncErrorEntry
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_status(self) -> Dict[str, Any]:
        """Status dict in the same shape as a live session snapshot."""
        progress = json.loads(self.progress) if self.progress else Progress().to_dict()
        started = as_utc(self.started_at)
        end = as_utc(self.completed_at or self.updated_at)
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "outcome": outcome_for(self.status, progress.get("errors")),
            "progress": progress,
            "target_entities": json.loads(self.target_entities) if self.target_entities else [],
            "error": self.error,
            "started_at": started,
            "completed_at": as_utc(self.completed_at),
            "duration_ms": int((end - started).total_seconds() * 1000),
            "active": False,
        }


def outcome_for(status: str, errors: Optional[List[Any]]) -> str:
    """Collapse status + error log into the user-facing outcome."""
    if status == "completed" and errors:
        return "completed_with_errors"
    return status
