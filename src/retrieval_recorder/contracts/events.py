"""Typed retrieval telemetry records.

Two ingestion shapes exist:

- LifecycleEvent: one discrete step of one retrieval (v1 batches). Many
  events share a retrieval_id and are correlated in memory.
- AggregateRecord: a whole retrieval already correlated by the client
  (v2 batches), including a per-provider breakdown of attempts.

Event details arrive as a free-form JSON object whose shape depends on the
event code. parse_event_details() narrows it to one of the detail variants
below; anything that does not fit the expected shape yields None and the
derived metric for that event is skipped.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Self
from uuid import UUID

from retrieval_recorder.contracts.enums import EventCode, Phase

# =============================================================================
# Event detail variants
# =============================================================================


@dataclass(frozen=True, slots=True)
class CandidatesDetail:
    """Details of candidates-found and candidates-filtered events."""

    candidate_count: int


@dataclass(frozen=True, slots=True)
class ReceivedDetail:
    """Details of a success event."""

    received_size: int


@dataclass(frozen=True, slots=True)
class ErrorDetail:
    """Details of a failure event."""

    error: str


EventDetail = CandidatesDetail | ReceivedDetail | ErrorDetail


def _as_count(value: Any) -> int | None:
    # JSON numbers decode to int or float; bool is an int subclass and is not a count
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def parse_event_details(code: EventCode, raw: Any) -> EventDetail | None:
    """Narrow a raw details payload to the variant carried by ``code``.

    Args:
        code: Event code the payload belongs to.
        raw: Decoded JSON value of ``eventDetails`` (may be None or any type).

    Returns:
        The matching detail variant, or None when the event code carries no
        details or the payload does not have the expected shape.
    """
    if not isinstance(raw, Mapping):
        return None

    match code:
        case EventCode.CANDIDATES_FOUND | EventCode.CANDIDATES_FILTERED:
            count = _as_count(raw.get("candidateCount"))
            return None if count is None else CandidatesDetail(candidate_count=count)
        case EventCode.SUCCESS:
            size = _as_count(raw.get("receivedSize"))
            return None if size is None else ReceivedDetail(received_size=size)
        case EventCode.FAILED:
            message = raw.get("error")
            return ErrorDetail(error=message) if isinstance(message, str) else None
        case _:
            return None


# =============================================================================
# Lifecycle events
# =============================================================================


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """One step of one retrieval, as reported by a retrieval client.

    ``storage_provider_id`` is empty or the protocol-agnostic id for events
    not addressed to a specific provider. ``raw_details`` keeps the payload
    exactly as received so it can be persisted verbatim.
    """

    retrieval_id: UUID
    instance_id: str
    cid: str
    storage_provider_id: str
    phase: Phase
    phase_start_time: datetime
    event_code: EventCode
    event_time: datetime
    raw_details: Any = None
    details: EventDetail | None = field(default=None, compare=False)

    @classmethod
    def create(
        cls,
        *,
        retrieval_id: UUID,
        instance_id: str,
        cid: str,
        storage_provider_id: str,
        phase: Phase,
        phase_start_time: datetime,
        event_code: EventCode,
        event_time: datetime,
        raw_details: Any = None,
    ) -> Self:
        """Build an event, deriving the typed details from the raw payload."""
        return cls(
            retrieval_id=retrieval_id,
            instance_id=instance_id,
            cid=cid,
            storage_provider_id=storage_provider_id,
            phase=phase,
            phase_start_time=phase_start_time,
            event_code=event_code,
            event_time=event_time,
            raw_details=raw_details,
            details=parse_event_details(event_code, raw_details),
        )


# =============================================================================
# Aggregate records
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetrievalAttempt:
    """Outcome of one provider attempt within an aggregate record.

    ``protocol`` is the multicodec transport name. An empty ``error`` means
    the attempt did not fail.
    """

    error: str = ""
    protocol: str = ""
    time_to_first_byte: timedelta = timedelta(0)


@dataclass(frozen=True, slots=True)
class AggregateRecord:
    """A complete retrieval, correlated by the reporting client."""

    instance_id: str
    retrieval_id: UUID
    start_time: datetime
    end_time: datetime
    success: bool
    storage_provider_id: str = ""
    time_to_first_byte: timedelta = timedelta(0)
    bandwidth: int = 0
    bytes_transferred: int = 0
    time_to_first_indexer_result: timedelta = timedelta(0)
    indexer_candidates_received: int = 0
    indexer_candidates_filtered: int = 0
    protocol_succeeded: str = ""
    attempts: Mapping[str, RetrievalAttempt] = field(default_factory=dict)

    @property
    def duration(self) -> timedelta:
        """Wall time between start and end of the retrieval."""
        return self.end_time - self.start_time
