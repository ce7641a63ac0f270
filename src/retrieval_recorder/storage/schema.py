"""SQLAlchemy table definitions for the retrieval event log.

Uses SQLAlchemy Core (not ORM). The same tables serve SQLite for local runs
and tests, and PostgreSQL in production.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
)

metadata = MetaData()

# === Lifecycle events (v1 ingestion) ===

retrieval_events_table = Table(
    "retrieval_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("retrieval_id", Uuid, nullable=False),
    Column("instance_id", String(64), nullable=False),
    Column("cid", String(256), nullable=False),
    Column("storage_provider_id", String(256)),
    Column("phase", String(15), nullable=False),
    Column("phase_start_time", DateTime(timezone=True), nullable=False),
    Column("event_name", String(32), nullable=False),
    Column("event_time", DateTime(timezone=True), nullable=False),
    # Raw payload as received; SQL NULL when the event carried no details
    Column("event_details", JSON(none_as_null=True)),
)

Index("ix_retrieval_events_retrieval_id", retrieval_events_table.c.retrieval_id)

# === Aggregate records (v2 ingestion) ===

aggregate_retrieval_events_table = Table(
    "aggregate_retrieval_events",
    metadata,
    Column("aggregate_id", Integer, primary_key=True, autoincrement=True),
    Column("retrieval_id", Uuid, nullable=False),
    Column("instance_id", String(64), nullable=False),
    Column("storage_provider_id", String(256)),
    Column("time_to_first_byte_ms", Integer),
    Column("bandwidth_bytes_sec", BigInteger),
    Column("bytes_transferred", BigInteger),
    Column("success", Boolean, nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=False),
    Column("time_to_first_indexer_result_ms", Integer),
    Column("indexer_candidates_received", Integer),
    Column("indexer_candidates_filtered", Integer),
    Column("protocol_succeeded", String(64)),
)

Index("ix_aggregate_retrieval_events_retrieval_id", aggregate_retrieval_events_table.c.retrieval_id)

retrieval_attempts_table = Table(
    "retrieval_attempts",
    metadata,
    Column("attempt_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "aggregate_id",
        Integer,
        ForeignKey("aggregate_retrieval_events.aggregate_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("storage_provider_id", String(256), nullable=False),
    Column("protocol", String(64)),
    Column("error", Text),
    Column("time_to_first_byte_ms", Integer),
)
