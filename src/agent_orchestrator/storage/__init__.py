"""Archive storage for terminal sessions."""

from .archive import SESSION_ARCHIVED, ArchiveSink, ArchiveStore, ArchiveUnavailableError
from .models import ArchiveEvent, SessionArchiveRecord

__all__ = [
    "ArchiveEvent",
    "ArchiveSink",
    "ArchiveStore",
    "ArchiveUnavailableError",
    "SESSION_ARCHIVED",
    "SessionArchiveRecord",
]
