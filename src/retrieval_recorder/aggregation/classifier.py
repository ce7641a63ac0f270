"""Failure message classification into error categories.

ERROR_PATTERNS is a priority list, not a lookup table: a message is tested
against each substring in order and the first containment match decides
its category. Messages matching nothing fall into ErrorCategory.OTHER.
"""

from retrieval_recorder.contracts.enums import ErrorCategory

ERROR_PATTERNS: tuple[tuple[str, ErrorCategory], ...] = (
    ("response rejected", ErrorCategory.REJECTED),
    ("Too many retrieval deals received", ErrorCategory.TOO_MANY),
    ("Access Control", ErrorCategory.ACL),
    ("Under maintenance, retry later", ErrorCategory.MAINTENANCE),
    ("miner is not accepting online retrieval deals", ErrorCategory.NO_ONLINE),
    ("unconfirmed block transfer", ErrorCategory.UNCONFIRMED),
    ("timeout after ", ErrorCategory.TIMEOUT),
    ("there is no unsealed piece containing payload cid", ErrorCategory.NO_UNSEALED),
    ("getting pieces for cid", ErrorCategory.DAGSTORE),
    ("graphsync request failed to complete: request failed - unknown reason", ErrorCategory.GRAPHSYNC),
    ("failed to dial", ErrorCategory.FAILED_TO_DIAL),
)


def classify_error(message: str) -> ErrorCategory:
    """Return the category of the first pattern contained in ``message``."""
    for pattern, category in ERROR_PATTERNS:
        if pattern in message:
            return category
    return ErrorCategory.OTHER
