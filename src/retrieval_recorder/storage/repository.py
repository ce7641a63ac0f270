"""Event log reads and writes.

Each insert method writes a whole batch in one transaction: either every
row of the batch is stored or none is.
"""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from retrieval_recorder.contracts import AggregateRecord, EventCode, LifecycleEvent, Phase
from retrieval_recorder.storage.database import RecorderDB, StorageError
from retrieval_recorder.storage.schema import (
    aggregate_retrieval_events_table,
    retrieval_attempts_table,
    retrieval_events_table,
)

logger = structlog.get_logger(__name__)


def _to_utc(value: datetime) -> datetime:
    # SQLite drops offsets on write; store everything as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _as_millis(value: timedelta) -> int:
    return value // timedelta(milliseconds=1)


def _event_values(event: LifecycleEvent) -> dict[str, Any]:
    return {
        "retrieval_id": event.retrieval_id,
        "instance_id": event.instance_id,
        "cid": event.cid,
        "storage_provider_id": event.storage_provider_id,
        "phase": event.phase.value,
        "phase_start_time": _to_utc(event.phase_start_time),
        "event_name": event.event_code.value,
        "event_time": _to_utc(event.event_time),
        "event_details": event.raw_details,
    }


def _aggregate_values(record: AggregateRecord) -> dict[str, Any]:
    return {
        "retrieval_id": record.retrieval_id,
        "instance_id": record.instance_id,
        "storage_provider_id": record.storage_provider_id,
        "time_to_first_byte_ms": _as_millis(record.time_to_first_byte),
        "bandwidth_bytes_sec": record.bandwidth,
        "bytes_transferred": record.bytes_transferred,
        "success": record.success,
        "start_time": _to_utc(record.start_time),
        "end_time": _to_utc(record.end_time),
        "time_to_first_indexer_result_ms": _as_millis(record.time_to_first_indexer_result),
        "indexer_candidates_received": record.indexer_candidates_received,
        "indexer_candidates_filtered": record.indexer_candidates_filtered,
        "protocol_succeeded": record.protocol_succeeded,
    }


class EventRepository:
    """Persists lifecycle events and aggregate records.

    Example:
        db = RecorderDB.in_memory()
        repository = EventRepository(db)
        repository.insert_events(events)
    """

    def __init__(self, db: RecorderDB) -> None:
        self._db = db

    def insert_events(self, events: Sequence[LifecycleEvent]) -> int:
        """Store a batch of lifecycle events.

        Returns:
            Number of rows written.

        Raises:
            StorageError: If the batch could not be written.
        """
        if not events:
            return 0
        try:
            with self._db.connection() as conn:
                conn.execute(insert(retrieval_events_table), [_event_values(e) for e in events])
        except SQLAlchemyError as e:
            raise StorageError("insert_events", str(e)) from e
        logger.debug("events_stored", count=len(events))
        return len(events)

    def insert_aggregate_events(self, records: Sequence[AggregateRecord]) -> int:
        """Store a batch of aggregate records with their attempts.

        Returns:
            Number of aggregate rows written.

        Raises:
            StorageError: If the batch could not be written.
        """
        if not records:
            return 0
        try:
            with self._db.connection() as conn:
                for record in records:
                    result = conn.execute(insert(aggregate_retrieval_events_table).values(**_aggregate_values(record)))
                    (aggregate_id,) = result.inserted_primary_key
                    attempts = [
                        {
                            "aggregate_id": aggregate_id,
                            "storage_provider_id": provider_id,
                            "protocol": attempt.protocol,
                            "error": attempt.error,
                            "time_to_first_byte_ms": _as_millis(attempt.time_to_first_byte),
                        }
                        for provider_id, attempt in record.attempts.items()
                    ]
                    if attempts:
                        conn.execute(insert(retrieval_attempts_table), attempts)
        except SQLAlchemyError as e:
            raise StorageError("insert_aggregate_events", str(e)) from e
        logger.debug("aggregate_events_stored", count=len(records))
        return len(records)

    def fetch_events(self) -> list[LifecycleEvent]:
        """Read back the full lifecycle event log, in insertion order.

        Raises:
            StorageError: If the log could not be read.
        """
        query = select(retrieval_events_table).order_by(retrieval_events_table.c.event_id)
        try:
            with self._db.connection() as conn:
                rows = conn.execute(query).fetchall()
        except SQLAlchemyError as e:
            raise StorageError("fetch_events", str(e)) from e
        return [
            LifecycleEvent.create(
                retrieval_id=row.retrieval_id,
                instance_id=row.instance_id,
                cid=row.cid,
                storage_provider_id=row.storage_provider_id or "",
                phase=Phase(row.phase),
                phase_start_time=_to_utc(row.phase_start_time),
                event_code=EventCode(row.event_name),
                event_time=_to_utc(row.event_time),
                raw_details=row.event_details,
            )
            for row in rows
        ]

    def count_aggregate_events(self) -> int:
        """Number of stored aggregate records."""
        try:
            with self._db.connection() as conn:
                return conn.execute(select(func.count()).select_from(aggregate_retrieval_events_table)).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError("count_aggregate_events", str(e)) from e

    def fetch_attempt_provider_ids(self) -> list[str]:
        """Provider ids of every stored attempt, in insertion order."""
        query = select(retrieval_attempts_table.c.storage_provider_id).order_by(retrieval_attempts_table.c.attempt_id)
        try:
            with self._db.connection() as conn:
                return [row.storage_provider_id for row in conn.execute(query)]
        except SQLAlchemyError as e:
            raise StorageError("fetch_attempt_provider_ids", str(e)) from e

    def wipe_events(self) -> int:
        """Delete every row from the lifecycle event log.

        Aggregate records are kept.

        Returns:
            Number of rows deleted.

        Raises:
            StorageError: If the delete failed.
        """
        try:
            with self._db.connection() as conn:
                deleted = conn.execute(delete(retrieval_events_table)).rowcount
        except SQLAlchemyError as e:
            raise StorageError("wipe_events", str(e)) from e
        logger.info("event_log_wiped", deleted=deleted)
        return deleted
