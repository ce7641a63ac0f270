"""Offline summary of the lifecycle event log.

summarize_events() folds the raw event log into per-retrieval facts and
reports how many retrievals tried each protocol, how many succeeded, and
the spread of time to first byte and download size.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from retrieval_recorder.contracts import (
    EventCode,
    LifecycleEvent,
    Phase,
    ReceivedDetail,
    is_protocol_agnostic,
)

PERCENTILES: tuple[float, ...] = (0.5, 0.9, 0.95)


@dataclass(frozen=True, slots=True)
class EventSummary:
    """Retrieval totals derived from the event log.

    ``avg_bandwidth`` is None when no successful retrieval has a matching
    first byte event. Percentile tuples are empty when there is no data.
    """

    total_attempts: int = 0
    attempted_bitswap: int = 0
    attempted_graphsync: int = 0
    attempted_both: int = 0
    attempted_either: int = 0
    bitswap_successes: int = 0
    graphsync_successes: int = 0
    avg_bandwidth: float | None = None
    first_byte: tuple[float, ...] = ()
    download_size: tuple[float, ...] = ()
    graphsync_attempts_past_query: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalAttempts": self.total_attempts,
            "attemptedBitswap": self.attempted_bitswap,
            "attemptedGraphSync": self.attempted_graphsync,
            "attemptedBoth": self.attempted_both,
            "attemptedEither": self.attempted_either,
            "bitswapSuccesses": self.bitswap_successes,
            "graphSyncSuccesses": self.graphsync_successes,
            "avgBandwidth": self.avg_bandwidth,
            "firstByte": list(self.first_byte),
            "downloadSize": list(self.download_size),
            "graphsyncAttemptsPastQuery": self.graphsync_attempts_past_query,
        }


@dataclass(slots=True)
class _RetrievalFacts:
    first_event_time: datetime
    bitswap: bool = False
    graphsync: bool = False
    graphsync_retrieval_phase: bool = False
    success: LifecycleEvent | None = None
    first_bytes: list[LifecycleEvent] = field(default_factory=list)


def percentile_cont(values: Sequence[float], fractions: Sequence[float] = PERCENTILES) -> tuple[float, ...]:
    """Continuous percentiles with linear interpolation between closest ranks.

    Returns an empty tuple for empty input.
    """
    if not values:
        return ()
    ordered = sorted(values)
    last = len(ordered) - 1
    result = []
    for fraction in fractions:
        position = fraction * last
        lower = int(position)
        upper = min(lower + 1, last)
        weight = position - lower
        result.append(ordered[lower] + (ordered[upper] - ordered[lower]) * weight)
    return tuple(result)


def _collect(events: Iterable[LifecycleEvent]) -> dict[UUID, _RetrievalFacts]:
    facts: dict[UUID, _RetrievalFacts] = {}
    for event in events:
        entry = facts.get(event.retrieval_id)
        if entry is None:
            entry = facts[event.retrieval_id] = _RetrievalFacts(first_event_time=event.event_time)
        elif event.event_time < entry.first_event_time:
            entry.first_event_time = event.event_time

        # Indexer events name candidate providers, not attempts
        if event.phase != Phase.INDEXER:
            if is_protocol_agnostic(event.storage_provider_id):
                entry.bitswap = True
            else:
                entry.graphsync = True
                entry.graphsync_retrieval_phase |= event.phase == Phase.RETRIEVAL

        if event.event_code == EventCode.SUCCESS:
            if entry.success is None or event.event_time < entry.success.event_time:
                entry.success = event
        elif event.event_code == EventCode.FIRST_BYTE:
            entry.first_bytes.append(event)
    return facts


def summarize_events(events: Iterable[LifecycleEvent]) -> EventSummary:
    """Summarize a lifecycle event log.

    A retrieval's success is its earliest success event. Its first byte is
    the earliest first-byte event from the same provider as that success.
    Outside the indexer phase, events with an empty or protocol-agnostic
    provider id count as bitswap, for attempts and successes alike.

    Args:
        events: Lifecycle events in any order.

    Returns:
        Totals across every retrieval present in ``events``.
    """
    facts = _collect(events)

    bitswap_successes = 0
    graphsync_successes = 0
    total_bytes = 0
    total_transfer_seconds = 0.0
    transfers = 0
    first_byte_seconds: list[float] = []
    download_sizes: list[float] = []

    for entry in facts.values():
        success = entry.success
        if success is None:
            continue
        if is_protocol_agnostic(success.storage_provider_id):
            bitswap_successes += 1
        else:
            graphsync_successes += 1

        received = success.details.received_size if isinstance(success.details, ReceivedDetail) else None
        if received is not None:
            download_sizes.append(float(received))

        matching = [fb for fb in entry.first_bytes if fb.storage_provider_id == success.storage_provider_id]
        if not matching:
            continue
        first_byte = min(matching, key=lambda fb: fb.event_time)
        first_byte_seconds.append((first_byte.event_time - entry.first_event_time).total_seconds())
        if received is not None:
            transfers += 1
            total_bytes += received
            total_transfer_seconds += (success.event_time - first_byte.event_time).total_seconds()

    avg_bandwidth: float | None = None
    if transfers:
        avg_bandwidth = 0.0 if total_transfer_seconds == 0 else total_bytes / total_transfer_seconds

    return EventSummary(
        total_attempts=len(facts),
        attempted_bitswap=sum(1 for f in facts.values() if f.bitswap),
        attempted_graphsync=sum(1 for f in facts.values() if f.graphsync),
        attempted_both=sum(1 for f in facts.values() if f.bitswap and f.graphsync),
        attempted_either=sum(1 for f in facts.values() if f.bitswap or f.graphsync),
        bitswap_successes=bitswap_successes,
        graphsync_successes=graphsync_successes,
        avg_bandwidth=avg_bandwidth,
        first_byte=percentile_cont(first_byte_seconds),
        download_size=percentile_cont(download_sizes),
        graphsync_attempts_past_query=sum(1 for f in facts.values() if f.graphsync_retrieval_phase),
    )
