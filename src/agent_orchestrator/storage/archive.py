"""Chroma-backed archive for terminal sessions and their events."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol, Sequence

from ..models import Session, utcnow
from .models import ArchiveEvent, SessionArchiveRecord

if TYPE_CHECKING:
    from ..events import OrchestratorEvent
    from ..lifecycle.cycle_detector import Judgment

SESSION_ARCHIVED = "session.archived"


class ArchiveUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the archive."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


class ArchiveSink(Protocol):
    """What the reconciliation loop needs from an archive."""

    def record_orchestrator_event(self, event: "OrchestratorEvent") -> Any:
        ...

    def archive_session(
        self,
        session: Session,
        history: Sequence[str],
        judgment: "Judgment | None" = None,
    ) -> Any:
        ...


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    if len(filters) == 1:
        return dict(filters)
    return {"$and": [{key: value} for key, value in filters.items()]}


def _clean_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be scalars.
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = json.dumps(value, default=str)
    return cleaned


class ArchiveStore:
    """Persist orchestrator events and archived sessions via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "orchestrator_sessions",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or utcnow
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ArchiveUnavailableError("chromadb package is not installed") from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ArchiveEvent]:
        events: list[ArchiveEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ArchiveEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ArchiveEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(_clean_metadata(metadata))

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ArchiveEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def record_orchestrator_event(self, event: "OrchestratorEvent") -> ArchiveEvent:
        return self.record_event(
            session_id=event.session_id,
            event_type=event.type,
            body=event.to_dict(),
            metadata={
                "project_id": event.project_id,
                "priority": event.priority,
                **{key: value for key, value in event.data.items() if key not in {"session_id", "event_type"}},
            },
        )

    def archive_session(
        self,
        session: Session,
        history: Sequence[str],
        judgment: "Judgment | None" = None,
    ) -> SessionArchiveRecord:
        payload = {
            "summary": session.summary(),
            "history": list(history),
            "verdict": judgment.verdict if judgment else None,
            "reason": judgment.reason if judgment else None,
        }
        event = self.record_event(
            session_id=session.id,
            event_type=SESSION_ARCHIVED,
            body=payload,
            metadata={
                "project_id": session.project_id,
                "status": session.status.value,
                "verdict": payload["verdict"],
            },
        )
        return SessionArchiveRecord(
            session_id=session.id,
            project_id=session.project_id,
            status=session.status.value,
            archived_at=event.timestamp,
            history=list(history),
            verdict=payload["verdict"],
            reason=payload["reason"],
            summary=payload["summary"],
        )

    def list_archived(self, project_id: str | None = None) -> list[SessionArchiveRecord]:
        filters: dict[str, Any] = {"event_type": SESSION_ARCHIVED}
        if project_id:
            filters["project_id"] = project_id
        records: list[SessionArchiveRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            summary = doc.get("summary", {})
            records.append(
                SessionArchiveRecord(
                    session_id=event.session_id,
                    project_id=summary.get("project_id", event.metadata.get("project_id", "")),
                    status=summary.get("status", event.metadata.get("status", "unknown")),
                    archived_at=event.timestamp,
                    history=list(doc.get("history", [])),
                    verdict=doc.get("verdict"),
                    reason=doc.get("reason"),
                    summary=summary,
                )
            )
        return records

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ArchiveEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_result(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ArchiveEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_where(filters), limit=None if query else limit)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = [
    "ArchiveSink",
    "ArchiveStore",
    "ArchiveUnavailableError",
    "SESSION_ARCHIVED",
]
