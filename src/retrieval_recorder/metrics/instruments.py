"""Names, descriptions and bucket layouts of every recorder instrument.

Counter and histogram names are part of the scrape contract consumed by
dashboards; keep them stable.
"""

from dataclasses import dataclass
from enum import StrEnum

from retrieval_recorder.contracts.enums import ErrorCategory


class CounterName(StrEnum):
    """Monotonic counters."""

    # Funnel
    TOTAL_REQUESTS = "total_request_count"
    INDEXER_FAILURES = "requests_with_indexer_failures"
    INDEXER_CANDIDATES = "request_with_indexer_candidates_total"
    INDEXER_CANDIDATES_FILTERED = "request_with_indexer_candidates_filtered_total"
    BITSWAP_ATTEMPTS = "request_with_bitswap_attempts"
    GRAPHSYNC_ATTEMPTS = "request_with_graphsync_attempts"
    HTTP_ATTEMPTS = "request_with_http_attempts"
    FIRST_BYTE_RECEIVED = "request_with_first_byte_received"
    SUCCESS = "request_with_success"
    BITSWAP_SUCCESS = "request_with_bitswap_success"
    GRAPHSYNC_SUCCESS = "request_with_graphsync_success"
    HTTP_SUCCESS = "request_with_http_success"
    EXPIRED = "request_expired_total"

    # Per-provider failures
    GRAPHSYNC_RETRIEVAL_FAILURES = "graphsync_retrieval_failure_total"
    HTTP_RETRIEVAL_FAILURES = "http_retrieval_failure_total"

    # Query phase pass-through
    QUERY_ASKED = "query_asked_total"
    QUERY_ASKED_FILTERED = "query_asked_filtered_total"
    QUERY_FAILURES = "query_failure_total"

    # Error categories
    ERROR_REJECTED = "retrieval_error_rejected_total"
    ERROR_TOO_MANY = "retrieval_error_toomany_total"
    ERROR_ACL = "retrieval_error_acl_total"
    ERROR_MAINTENANCE = "retrieval_error_maintenance_total"
    ERROR_NO_ONLINE = "retrieval_error_noonline_total"
    ERROR_UNCONFIRMED = "retrieval_error_unconfirmed_total"
    ERROR_TIMEOUT = "retrieval_error_timeout_total"
    ERROR_NO_UNSEALED = "retrieval_error_nounsealed_total"
    ERROR_DAGSTORE = "retrieval_error_dagstore_total"
    ERROR_GRAPHSYNC = "retrieval_error_graphsync_total"
    ERROR_FAILED_TO_DIAL = "retrieval_error_failedtodial_total"
    ERROR_OTHER = "retrieval_error_other_total"


class HistogramName(StrEnum):
    """Explicit-bucket histograms."""

    TIME_TO_FIRST_INDEXER_RESULT = "time_to_first_indexer_result"
    TIME_TO_FIRST_BYTE = "time_to_first_byte"
    DEAL_DURATION = "retrieval_deal_duration_seconds"
    DEAL_SIZE = "retrieval_deal_size_bytes"
    BANDWIDTH = "bandwidth_bytes_per_second"
    CANDIDATES_PER_REQUEST = "indexer_candidates_per_request_total"
    FILTERED_CANDIDATES_PER_REQUEST = "indexer_candidates_filtered_per_request_total"
    FAILURES_PER_REQUEST = "failed_retrievals_per_request_total"


@dataclass(frozen=True, slots=True)
class HistogramSpec:
    description: str
    unit: str
    boundaries: tuple[float, ...]


_PER_REQUEST_COUNT_BUCKETS = (0, 1, 2, 3, 4, 5, 10, 20, 40)

HISTOGRAMS: dict[HistogramName, HistogramSpec] = {
    HistogramName.TIME_TO_FIRST_INDEXER_RESULT: HistogramSpec(
        description="The time to first indexer result in seconds",
        unit="s",
        boundaries=(0, 0.01, 0.05, 0.25, 0.5, 1, 5, 25),
    ),
    HistogramName.TIME_TO_FIRST_BYTE: HistogramSpec(
        description="The time to first byte in seconds",
        unit="s",
        boundaries=(0, 0.01, 0.05, 0.25, 0.5, 1, 5, 25, 75),
    ),
    HistogramName.DEAL_DURATION: HistogramSpec(
        description="The duration in seconds of a retrieval deal with a storage provider",
        unit="s",
        boundaries=(0, 0.04, 0.2, 1, 5, 25, 125, 625),
    ),
    HistogramName.DEAL_SIZE: HistogramSpec(
        description="The size in bytes of a retrieval deal with a storage provider",
        unit="By",
        boundaries=(0, 1 << 18, 1 << 20, 1 << 22, 1 << 24, 1 << 28, 1 << 30, 1 << 35),
    ),
    HistogramName.BANDWIDTH: HistogramSpec(
        description="Average bytes transferred per second",
        unit="By/s",
        boundaries=(0, 1 << 14, 1 << 18, 1 << 20, 1 << 22, 1 << 24, 1 << 27),
    ),
    HistogramName.CANDIDATES_PER_REQUEST: HistogramSpec(
        description="The number of indexer candidates received per request",
        unit="1",
        boundaries=_PER_REQUEST_COUNT_BUCKETS,
    ),
    HistogramName.FILTERED_CANDIDATES_PER_REQUEST: HistogramSpec(
        description="The number of filtered indexer candidates received per request",
        unit="1",
        boundaries=_PER_REQUEST_COUNT_BUCKETS,
    ),
    HistogramName.FAILURES_PER_REQUEST: HistogramSpec(
        description="The number of failed retrieval attempts per request",
        unit="1",
        boundaries=_PER_REQUEST_COUNT_BUCKETS,
    ),
}

COUNTER_DESCRIPTIONS: dict[CounterName, str] = {
    CounterName.TOTAL_REQUESTS: "Distinct retrievals reported to the recorder",
    CounterName.INDEXER_FAILURES: "Retrievals that failed at the indexer phase",
    CounterName.INDEXER_CANDIDATES: "Retrievals that received non-zero candidates from the indexer",
    CounterName.INDEXER_CANDIDATES_FILTERED: "Retrievals with non-zero indexer candidates after filtering",
    CounterName.BITSWAP_ATTEMPTS: "Retrievals where a bitswap retrieval was attempted",
    CounterName.GRAPHSYNC_ATTEMPTS: "Retrievals where a graphsync retrieval was attempted",
    CounterName.HTTP_ATTEMPTS: "Retrievals where an HTTP retrieval was attempted",
    CounterName.FIRST_BYTE_RECEIVED: "Retrievals where a non-zero number of bytes were received",
    CounterName.SUCCESS: "Successful retrievals (all bytes received)",
    CounterName.BITSWAP_SUCCESS: "Successful retrievals over bitswap",
    CounterName.GRAPHSYNC_SUCCESS: "Successful retrievals over graphsync",
    CounterName.HTTP_SUCCESS: "Successful retrievals over HTTP",
    CounterName.EXPIRED: "Retrievals finalized by expiry without a terminal event",
    CounterName.GRAPHSYNC_RETRIEVAL_FAILURES: "Failed graphsync retrieval attempts per storage provider",
    CounterName.HTTP_RETRIEVAL_FAILURES: "Failed HTTP retrieval attempts per storage provider",
    CounterName.QUERY_ASKED: "Query asks answered by storage providers",
    CounterName.QUERY_ASKED_FILTERED: "Query asks answered but filtered out",
    CounterName.QUERY_FAILURES: "Query asks that failed",
    CounterName.ERROR_REJECTED: "Retrieval errors for 'response rejected'",
    CounterName.ERROR_TOO_MANY: "Retrieval errors for 'Too many retrieval deals received'",
    CounterName.ERROR_ACL: "Retrieval errors for 'Access Control'",
    CounterName.ERROR_MAINTENANCE: "Retrieval errors for 'Under maintenance, retry later'",
    CounterName.ERROR_NO_ONLINE: "Retrieval errors for 'miner is not accepting online retrieval deals'",
    CounterName.ERROR_UNCONFIRMED: "Retrieval errors for 'unconfirmed block transfer'",
    CounterName.ERROR_TIMEOUT: "Retrieval errors for 'timeout after X'",
    CounterName.ERROR_NO_UNSEALED: "Retrieval errors for 'there is no unsealed piece containing payload cid'",
    CounterName.ERROR_DAGSTORE: "Retrieval errors for 'getting pieces for cid'",
    CounterName.ERROR_GRAPHSYNC: "Retrieval errors for graphsync requests failing for an unknown reason",
    CounterName.ERROR_FAILED_TO_DIAL: "Retrieval errors for 'failed to dial'",
    CounterName.ERROR_OTHER: "Retrieval errors with uncategorized causes",
}


def error_counter(category: ErrorCategory) -> CounterName:
    """Counter incremented for failures of the given category."""
    return CounterName(f"retrieval_error_{category.value}_total")
