"""Per-retrieval mutable aggregation state and its immutable summary.

RetrievalState is owned by RetrievalStateTable while the retrieval is live.
Callers never hold a RetrievalState directly: the table hands out a
StateHandle bound to the state's current epoch. Finalizing bumps the epoch,
so a handle obtained before finalize can no longer write, even after the
state object has been recycled for a different retrieval.

Field rules:
- start_time, first byte time, first indexer result time and the attempt
  flags are first-write-wins; the ``record_*`` call returns True only for
  the write that won.
- candidate counts and failure count accumulate every contribution,
  duplicates included. At-least-once redelivery of these events therefore
  inflates the totals.

Every read and write takes the record's lock, so a summary is a consistent
snapshot of the updates that completed before it. An update racing with
finalize may or may not be reflected.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class RetrievalSummary:
    """Immutable snapshot of a retrieval's state at finalize time."""

    start_time: datetime | None = None
    indexer_candidates: int = 0
    indexer_first_result_time: datetime | None = None
    indexer_filtered: int = 0
    bitswap_attempted: bool = False
    graphsync_attempted: bool = False
    first_byte_time: datetime | None = None
    failed_count: int = 0

    @property
    def time_to_first_indexer_result(self) -> timedelta | None:
        if self.start_time is None or self.indexer_first_result_time is None:
            return None
        return self.indexer_first_result_time - self.start_time

    @property
    def time_to_first_byte(self) -> timedelta | None:
        if self.start_time is None or self.first_byte_time is None:
            return None
        return self.first_byte_time - self.start_time


class RetrievalState:
    """Mutable aggregation counters for one in-flight retrieval.

    All ``record_*`` methods take the epoch the caller's handle was issued
    for. A stale epoch turns the call into a no-op that reports "not first".
    """

    __slots__ = (
        "_bitswap_attempted",
        "_epoch",
        "_failed_count",
        "_first_byte_time",
        "_graphsync_attempted",
        "_indexer_candidates",
        "_indexer_filtered",
        "_indexer_first_result_time",
        "_lock",
        "_start_time",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._epoch = 0
        self._clear()

    def _clear(self) -> None:
        self._start_time: datetime | None = None
        self._indexer_candidates = 0
        self._indexer_first_result_time: datetime | None = None
        self._indexer_filtered = 0
        self._bitswap_attempted = False
        self._graphsync_attempted = False
        self._first_byte_time: datetime | None = None
        self._failed_count = 0

    def _snapshot(self) -> RetrievalSummary:
        return RetrievalSummary(
            start_time=self._start_time,
            indexer_candidates=self._indexer_candidates,
            indexer_first_result_time=self._indexer_first_result_time,
            indexer_filtered=self._indexer_filtered,
            bitswap_attempted=self._bitswap_attempted,
            graphsync_attempted=self._graphsync_attempted,
            first_byte_time=self._first_byte_time,
            failed_count=self._failed_count,
        )

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    def start_time(self, epoch: int) -> datetime | None:
        with self._lock:
            if epoch != self._epoch:
                return None
            return self._start_time

    def record_start_time(self, epoch: int, start_time: datetime) -> bool:
        with self._lock:
            if epoch != self._epoch or self._start_time is not None:
                return False
            self._start_time = start_time
            return True

    def record_indexer_candidates(self, epoch: int, event_time: datetime, count: int) -> bool:
        """Accumulate found candidates.

        Returns:
            True for the first contribution, in which case ``event_time`` is
            kept as the time of the first indexer result.
        """
        with self._lock:
            if epoch != self._epoch:
                return False
            first = self._indexer_candidates == 0
            self._indexer_candidates += count
            if first:
                self._indexer_first_result_time = event_time
            return first

    def record_indexer_filtered(self, epoch: int, count: int) -> bool:
        with self._lock:
            if epoch != self._epoch:
                return False
            first = self._indexer_filtered == 0
            self._indexer_filtered += count
            return first

    def record_bitswap_attempt(self, epoch: int) -> bool:
        with self._lock:
            if epoch != self._epoch or self._bitswap_attempted:
                return False
            self._bitswap_attempted = True
            return True

    def record_graphsync_attempt(self, epoch: int) -> bool:
        with self._lock:
            if epoch != self._epoch or self._graphsync_attempted:
                return False
            self._graphsync_attempted = True
            return True

    def record_first_byte(self, epoch: int, event_time: datetime) -> bool:
        with self._lock:
            if epoch != self._epoch or self._first_byte_time is not None:
                return False
            self._first_byte_time = event_time
            return True

    def record_failure(self, epoch: int) -> int:
        """Count one failure. Returns the updated total (0 if stale)."""
        with self._lock:
            if epoch != self._epoch:
                return 0
            self._failed_count += 1
            return self._failed_count

    def snapshot(self) -> RetrievalSummary:
        with self._lock:
            return self._snapshot()

    def finalize(self) -> RetrievalSummary:
        """Snapshot, zero and retire the current epoch in one critical section."""
        with self._lock:
            summary = self._snapshot()
            self._clear()
            self._epoch += 1
            return summary

    def reset(self) -> None:
        """Zero every field and invalidate outstanding handles."""
        with self._lock:
            self._clear()
            self._epoch += 1


@dataclass(frozen=True, slots=True)
class StateHandle:
    """Write access to one retrieval's state, valid until it is finalized."""

    state: RetrievalState
    epoch: int

    @property
    def start_time(self) -> datetime | None:
        return self.state.start_time(self.epoch)

    def record_start_time(self, start_time: datetime) -> bool:
        return self.state.record_start_time(self.epoch, start_time)

    def record_indexer_candidates(self, event_time: datetime, count: int) -> bool:
        return self.state.record_indexer_candidates(self.epoch, event_time, count)

    def record_indexer_filtered(self, count: int) -> bool:
        return self.state.record_indexer_filtered(self.epoch, count)

    def record_bitswap_attempt(self) -> bool:
        return self.state.record_bitswap_attempt(self.epoch)

    def record_graphsync_attempt(self) -> bool:
        return self.state.record_graphsync_attempt(self.epoch)

    def record_first_byte(self, event_time: datetime) -> bool:
        return self.state.record_first_byte(self.epoch, event_time)

    def record_failure(self) -> int:
        return self.state.record_failure(self.epoch)


class StatePool:
    """Bounded free-list of recycled RetrievalState objects.

    acquire() hands out a zero-valued state; release() resets it and keeps it
    for reuse unless the pool is already full.
    """

    def __init__(self, max_size: int = 1024) -> None:
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        self._max_size = max_size
        self._free: list[RetrievalState] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._free)

    def acquire(self) -> RetrievalState:
        with self._lock:
            if self._free:
                return self._free.pop()
        return RetrievalState()

    def release(self, state: RetrievalState) -> None:
        state.reset()
        with self._lock:
            if len(self._free) < self._max_size:
                self._free.append(state)
