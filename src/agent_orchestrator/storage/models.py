"""Data models for archived sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class ArchiveEvent:
    """Represents a stored event in the archive."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


@dataclass(slots=True)
class SessionArchiveRecord:
    session_id: str
    project_id: str
    status: str
    archived_at: datetime
    history: list[str] = field(default_factory=list)
    verdict: str | None = None
    reason: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)


__all__ = ["ArchiveEvent", "SessionArchiveRecord"]
