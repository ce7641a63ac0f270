"""Shared types crossing subsystem boundaries (ingress, aggregation, storage)."""

from retrieval_recorder.contracts.enums import (
    BITSWAP_PROVIDER_ID,
    ErrorCategory,
    EventCode,
    Phase,
    ProtocolFamily,
    is_protocol_agnostic,
    protocol_from_multicodec,
    protocol_from_provider_id,
)
from retrieval_recorder.contracts.events import (
    AggregateRecord,
    CandidatesDetail,
    ErrorDetail,
    EventDetail,
    LifecycleEvent,
    ReceivedDetail,
    RetrievalAttempt,
    parse_event_details,
)

__all__ = [
    "BITSWAP_PROVIDER_ID",
    "AggregateRecord",
    "CandidatesDetail",
    "ErrorDetail",
    "ErrorCategory",
    "EventCode",
    "EventDetail",
    "LifecycleEvent",
    "Phase",
    "ProtocolFamily",
    "ReceivedDetail",
    "RetrievalAttempt",
    "is_protocol_agnostic",
    "parse_event_details",
    "protocol_from_multicodec",
    "protocol_from_provider_id",
]
