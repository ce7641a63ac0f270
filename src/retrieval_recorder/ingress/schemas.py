"""Wire models for inbound event batches.

Retrieval clients post camelCase JSON. These models validate a batch and
convert it to the typed records in retrieval_recorder.contracts.
"""

import math
import re
from datetime import timedelta
from typing import Any
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

from retrieval_recorder.contracts import AggregateRecord, EventCode, LifecycleEvent, Phase, RetrievalAttempt

# Go's time.Duration text form, e.g. "40ms", "1.5s", "1h2m3.5s", "-250us"
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS_NS: dict[str, float] = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}


def parse_go_duration(value: str) -> timedelta:
    """Parse a Go duration string into a timedelta.

    Raises:
        ValueError: If ``value`` is not a valid duration.
    """
    text = value.strip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {value!r}")

    nanoseconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        nanoseconds += float(match.group(1)) * _DURATION_UNITS_NS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    try:
        return timedelta(microseconds=sign * nanoseconds / 1_000)
    except OverflowError:
        raise ValueError(f"duration out of range: {value!r}") from None


def _nanoseconds(value: int | float) -> timedelta:
    try:
        return timedelta(microseconds=value / 1_000)
    except OverflowError:
        raise ValueError(f"duration out of range: {value}") from None


def _coerce_duration(value: Any) -> Any:
    # Numbers are integer nanoseconds, strings are Go duration text
    if isinstance(value, bool):
        raise ValueError("duration must be a string or integer nanoseconds")
    if isinstance(value, int):
        return _nanoseconds(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValueError(f"duration must be integer nanoseconds, got {value}")
        return _nanoseconds(value)
    if isinstance(value, str):
        return parse_go_duration(value)
    return value


# =============================================================================
# v1: lifecycle events
# =============================================================================


class EventPayload(BaseModel):
    """One lifecycle event as posted by a retrieval client."""

    model_config = {"frozen": True, "extra": "ignore"}

    retrieval_id: UUID = Field(alias="retrievalId")
    instance_id: str = Field(alias="instanceId")
    cid: str = Field(alias="cid")
    storage_provider_id: str = Field(alias="storageProviderId")
    phase: Phase = Field(alias="phase")
    phase_start_time: AwareDatetime = Field(alias="phaseStartTime")
    event_name: EventCode = Field(alias="eventName")
    event_time: AwareDatetime = Field(alias="eventTime")
    event_details: dict[str, Any] | None = Field(default=None, alias="eventDetails")

    def to_event(self) -> LifecycleEvent:
        return LifecycleEvent.create(
            retrieval_id=self.retrieval_id,
            instance_id=self.instance_id,
            cid=self.cid,
            storage_provider_id=self.storage_provider_id,
            phase=self.phase,
            phase_start_time=self.phase_start_time,
            event_code=self.event_name,
            event_time=self.event_time,
            raw_details=self.event_details,
        )


class EventBatch(BaseModel):
    """Body of POST /v1/retrieval-events."""

    model_config = {"frozen": True, "extra": "ignore"}

    events: list[EventPayload]

    def to_events(self) -> list[LifecycleEvent]:
        return [payload.to_event() for payload in self.events]


# =============================================================================
# v2: aggregate records
# =============================================================================


class AttemptPayload(BaseModel):
    """One provider attempt inside an aggregate record."""

    model_config = {"frozen": True, "extra": "ignore"}

    error: str = ""
    protocol: str = ""
    time_to_first_byte: timedelta = Field(default=timedelta(0), alias="timeToFirstByte")

    @field_validator("time_to_first_byte", mode="before")
    @classmethod
    def parse_duration(cls, v: Any) -> Any:
        return _coerce_duration(v)

    def to_attempt(self) -> RetrievalAttempt:
        return RetrievalAttempt(
            error=self.error,
            protocol=self.protocol,
            time_to_first_byte=self.time_to_first_byte,
        )


class AggregateEventPayload(BaseModel):
    """One whole retrieval as posted by a retrieval client."""

    model_config = {"frozen": True, "extra": "ignore"}

    instance_id: str = Field(alias="instanceId")
    retrieval_id: UUID = Field(alias="retrievalId")
    storage_provider_id: str = Field(default="", alias="storageProviderId")
    time_to_first_byte: timedelta = Field(default=timedelta(0), alias="timeToFirstByte")
    bandwidth: int = Field(default=0, ge=0, alias="bandwidth")
    bytes_transferred: int = Field(default=0, ge=0, alias="bytesTransferred")
    success: bool = Field(alias="success")
    start_time: AwareDatetime = Field(alias="startTime")
    end_time: AwareDatetime = Field(alias="endTime")
    time_to_first_indexer_result: timedelta = Field(default=timedelta(0), alias="timeToFirstIndexerResult")
    indexer_candidates_received: int = Field(default=0, ge=0, alias="indexerCandidatesReceived")
    indexer_candidates_filtered: int = Field(default=0, ge=0, alias="indexerCandidatesFiltered")
    protocol_succeeded: str = Field(default="", alias="protocolSucceeded")
    retrieval_attempts: dict[str, AttemptPayload] = Field(default_factory=dict, alias="retrievalAttempts")

    @field_validator("time_to_first_byte", "time_to_first_indexer_result", mode="before")
    @classmethod
    def parse_duration(cls, v: Any) -> Any:
        return _coerce_duration(v)

    @model_validator(mode="after")
    def validate_success_provider(self) -> "AggregateEventPayload":
        """A successful retrieval must name the provider it succeeded from."""
        if self.success and not self.storage_provider_id:
            raise ValueError("property storageProviderId is required when success is true")
        return self

    def to_record(self) -> AggregateRecord:
        return AggregateRecord(
            instance_id=self.instance_id,
            retrieval_id=self.retrieval_id,
            start_time=self.start_time,
            end_time=self.end_time,
            success=self.success,
            storage_provider_id=self.storage_provider_id,
            time_to_first_byte=self.time_to_first_byte,
            bandwidth=self.bandwidth,
            bytes_transferred=self.bytes_transferred,
            time_to_first_indexer_result=self.time_to_first_indexer_result,
            indexer_candidates_received=self.indexer_candidates_received,
            indexer_candidates_filtered=self.indexer_candidates_filtered,
            protocol_succeeded=self.protocol_succeeded,
            attempts={peer_id: attempt.to_attempt() for peer_id, attempt in self.retrieval_attempts.items()},
        )


class AggregateEventBatch(BaseModel):
    """Body of POST /v2/retrieval-events."""

    model_config = {"frozen": True, "extra": "ignore"}

    events: list[AggregateEventPayload]

    def to_records(self) -> list[AggregateRecord]:
        return [payload.to_record() for payload in self.events]
