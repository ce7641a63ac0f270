"""Event log persistence and offline reporting."""

from retrieval_recorder.storage.database import RecorderDB, StorageError
from retrieval_recorder.storage.repository import EventRepository
from retrieval_recorder.storage.summary import EventSummary, summarize_events

__all__ = [
    "EventRepository",
    "EventSummary",
    "RecorderDB",
    "StorageError",
    "summarize_events",
]
