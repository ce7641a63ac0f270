"""Concurrent, self-expiring table of in-flight retrieval states.

Each retrieval id maps to exactly one RetrievalState. Entries are created
lazily by get_or_create() and removed exactly once, either by an explicit
finalize() (terminal event) or by expiry after a fixed lifetime measured
from creation. Later updates do not extend the lifetime.

Thread Safety:
    The table lock guards only the id -> entry map and the deadline heap.
    Field updates take the per-record lock inside RetrievalState, so
    unrelated retrievals never contend beyond a dict insert/pop.

    Removal from the map is the single linearization point: whichever of
    finalize() or the reaper pops the entry owns it, snapshots it and
    returns it to the pool. The other path finds nothing.

Expiry:
    A single background reaper thread sleeps until the earliest deadline.
    finalize() cancels an entry's expiry lazily: the heap record is left in
    place and discarded when it surfaces because its sequence number no
    longer matches a live entry.
"""

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

import structlog

from retrieval_recorder.aggregation.state import RetrievalState, RetrievalSummary, StateHandle, StatePool

logger = structlog.get_logger(__name__)

DEFAULT_RETRIEVAL_TIMEOUT_SEC = 60.0

ExpireCallback = Callable[[UUID, RetrievalSummary], None]


@dataclass(slots=True)
class _Entry:
    state: RetrievalState
    epoch: int
    sequence: int


class RetrievalStateTable:
    """Map of retrieval id to live aggregation state with fixed-lifetime expiry.

    Example:
        >>> table = RetrievalStateTable(timeout=60.0, on_expire=handle_expired)
        >>> table.start()
        >>> table.get_or_create(retrieval_id).record_start_time(now)
        >>> summary = table.finalize(retrieval_id)
        >>> table.stop()
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_RETRIEVAL_TIMEOUT_SEC,
        on_expire: ExpireCallback | None = None,
        pool: StatePool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the table.

        Args:
            timeout: Lifetime of an entry in seconds, from creation.
            on_expire: Called from the reaper thread with the summary of every
                entry removed by expiry. Exceptions are logged and ignored.
            pool: Free-list for recycled states. A private pool is created
                when omitted.
            clock: Monotonic time source in seconds (injectable for tests).
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self._timeout = timeout
        self._on_expire = on_expire
        self._pool = pool if pool is not None else StatePool()
        self._clock = clock

        self._entries: dict[UUID, _Entry] = {}
        self._deadlines: list[tuple[float, int, UUID]] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)

        self._stopping = False
        self._reaper: threading.Thread | None = None
        self._expired_total = 0

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def expired_total(self) -> int:
        """Number of entries removed by expiry since creation."""
        with self._lock:
            return self._expired_total

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, retrieval_id: object) -> bool:
        with self._lock:
            return retrieval_id in self._entries

    # -------------------------------------------------------------------------
    # Entry lifecycle
    # -------------------------------------------------------------------------

    def get_or_create(self, retrieval_id: UUID) -> StateHandle:
        """Return a handle to the live state for ``retrieval_id``, creating it if absent.

        Concurrent callers for the same id receive handles to the same state.
        Only the call that inserts schedules the expiry.
        """
        with self._lock:
            entry = self._entries.get(retrieval_id)
            if entry is None:
                state = self._pool.acquire()
                sequence = next(self._sequence)
                entry = _Entry(state=state, epoch=state.epoch, sequence=sequence)
                self._entries[retrieval_id] = entry
                deadline = self._clock() + self._timeout
                heapq.heappush(self._deadlines, (deadline, sequence, retrieval_id))
                if self._deadlines[0][1] == sequence:
                    self._wakeup.notify()
            return StateHandle(entry.state, entry.epoch)

    def finalize(self, retrieval_id: UUID) -> RetrievalSummary | None:
        """Remove the entry for ``retrieval_id`` and return its summary.

        Returns:
            The summary, or None if the id is not live (never seen, already
            finalized, or expired). None is not an error.
        """
        with self._lock:
            entry = self._entries.pop(retrieval_id, None)
        if entry is None:
            return None
        return self._retire(entry)

    def _retire(self, entry: _Entry) -> RetrievalSummary:
        summary = entry.state.finalize()
        self._pool.release(entry.state)
        return summary

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def _pop_due(self, now: float) -> list[tuple[UUID, _Entry]]:
        # Caller holds self._lock
        due: list[tuple[UUID, _Entry]] = []
        while self._deadlines and self._deadlines[0][0] <= now:
            _, sequence, retrieval_id = heapq.heappop(self._deadlines)
            entry = self._entries.get(retrieval_id)
            if entry is None or entry.sequence != sequence:
                continue  # finalized earlier, or the id was re-created since
            del self._entries[retrieval_id]
            due.append((retrieval_id, entry))
        self._expired_total += len(due)
        return due

    def _dispatch_expired(self, due: list[tuple[UUID, _Entry]]) -> None:
        for retrieval_id, entry in due:
            summary = self._retire(entry)
            logger.debug(
                "Retrieval state expired",
                retrieval_id=str(retrieval_id),
                failed_count=summary.failed_count,
            )
            if self._on_expire is None:
                continue
            try:
                self._on_expire(retrieval_id, summary)
            except Exception as e:
                logger.error(
                    "Expiry callback failed",
                    retrieval_id=str(retrieval_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def expire_due(self) -> int:
        """Expire every entry whose deadline has passed, on the calling thread.

        The reaper thread does this automatically; calling it directly is
        useful with an injected clock.

        Returns:
            Number of entries expired.
        """
        with self._lock:
            due = self._pop_due(self._clock())
        self._dispatch_expired(due)
        return len(due)

    def _reap_loop(self) -> None:
        while True:
            with self._wakeup:
                while True:
                    if self._stopping:
                        return
                    due = self._pop_due(self._clock())
                    if due:
                        break
                    wait_for = self._deadlines[0][0] - self._clock() if self._deadlines else None
                    self._wakeup.wait(timeout=wait_for)
            self._dispatch_expired(due)

    def start(self) -> None:
        """Start the background reaper. Calling start() twice is a no-op."""
        with self._lock:
            if self._reaper is not None:
                return
            self._stopping = False
            self._reaper = threading.Thread(
                target=self._reap_loop,
                name="retrieval-state-reaper",
                daemon=True,
            )
            self._reaper.start()
        logger.debug("Retrieval state reaper started", timeout=self._timeout)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background reaper. Live entries stay in the table.

        Idempotent: safe to call multiple times, or without start().
        """
        with self._wakeup:
            reaper = self._reaper
            self._reaper = None
            self._stopping = True
            self._wakeup.notify_all()
        if reaper is None:
            return
        reaper.join(timeout=timeout)
        if reaper.is_alive():
            logger.warning("Retrieval state reaper did not stop within timeout", timeout=timeout)
        else:
            logger.debug("Retrieval state reaper stopped", live_entries=len(self))
