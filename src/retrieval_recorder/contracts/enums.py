"""Phases, event codes and protocol families shared across the recorder.

Wire values match what retrieval clients send in the ``phase`` and
``eventName`` fields, and what the metrics pipeline uses as attribute values.
"""

from enum import StrEnum

# Storage provider id reported for attempts over the protocol-agnostic
# content-exchange path (not addressed to a specific provider).
BITSWAP_PROVIDER_ID = "Bitswap"


class Phase(StrEnum):
    """Coarse stage of a retrieval."""

    INDEXER = "indexer"
    QUERY = "query"
    RETRIEVAL = "retrieval"


class EventCode(StrEnum):
    """Fixed vocabulary of lifecycle event kinds.

    Stored in the database (retrieval_events.event_name).
    """

    ACCEPTED = "accepted"
    CANDIDATES_FILTERED = "candidates-filtered"
    CANDIDATES_FOUND = "candidates-found"
    CONNECTED = "connected"
    FAILED = "failure"
    FIRST_BYTE = "first-byte-received"
    PROPOSED = "proposed"
    QUERY_ASKED = "query-asked"
    QUERY_ASKED_FILTERED = "query-asked-filtered"
    STARTED = "started"
    SUCCESS = "success"


class ProtocolFamily(StrEnum):
    """Transport family used for an attempt.

    Used as the ``protocol`` attribute on metrics.
    """

    BITSWAP = "bitswap"
    GRAPHSYNC = "graphsync"
    HTTP = "http"


# Multicodec transport names used by clients in aggregate records.
_MULTICODEC_FAMILIES: dict[str, ProtocolFamily] = {
    "transport-bitswap": ProtocolFamily.BITSWAP,
    "transport-graphsync-filecoinv1": ProtocolFamily.GRAPHSYNC,
    "transport-ipfs-gateway-http": ProtocolFamily.HTTP,
}


def is_protocol_agnostic(storage_provider_id: str) -> bool:
    """True for events not addressed to a specific storage provider."""
    return storage_provider_id in ("", BITSWAP_PROVIDER_ID)


def protocol_from_provider_id(storage_provider_id: str) -> ProtocolFamily:
    """Infer the transport family of a lifecycle event from its provider id.

    Lifecycle events only distinguish the protocol-agnostic path from
    provider-addressed attempts, which are always graphsync.
    """
    if is_protocol_agnostic(storage_provider_id):
        return ProtocolFamily.BITSWAP
    return ProtocolFamily.GRAPHSYNC


def protocol_from_multicodec(name: str) -> str:
    """Map a multicodec transport name to its protocol family.

    Unknown names are returned unchanged so they still surface as a
    distinct attribute value.
    """
    family = _MULTICODEC_FAMILIES.get(name)
    if family is None:
        return name
    return family


class ErrorCategory(StrEnum):
    """Category of a failed retrieval attempt.

    Values name the retrieval_error_<value>_total counters.
    """

    REJECTED = "rejected"
    TOO_MANY = "toomany"
    ACL = "acl"
    MAINTENANCE = "maintenance"
    NO_ONLINE = "noonline"
    UNCONFIRMED = "unconfirmed"
    TIMEOUT = "timeout"
    NO_UNSEALED = "nounsealed"
    DAGSTORE = "dagstore"
    GRAPHSYNC = "graphsync"
    FAILED_TO_DIAL = "failedtodial"
    OTHER = "other"
