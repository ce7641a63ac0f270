"""Tests for failure message classification."""

import pytest

from retrieval_recorder.aggregation.classifier import ERROR_PATTERNS, classify_error
from retrieval_recorder.contracts import ErrorCategory
from retrieval_recorder.metrics import CounterName, error_counter


class TestClassifyError:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("retrieval failed: response rejected", ErrorCategory.REJECTED),
            ("Too many retrieval deals received", ErrorCategory.TOO_MANY),
            ("denied by Access Control list", ErrorCategory.ACL),
            ("Under maintenance, retry later", ErrorCategory.MAINTENANCE),
            ("miner is not accepting online retrieval deals", ErrorCategory.NO_ONLINE),
            ("unconfirmed block transfer", ErrorCategory.UNCONFIRMED),
            ("timeout after 30s", ErrorCategory.TIMEOUT),
            ("there is no unsealed piece containing payload cid", ErrorCategory.NO_UNSEALED),
            ("getting pieces for cid bafy: not found", ErrorCategory.DAGSTORE),
            (
                "graphsync request failed to complete: request failed - unknown reason",
                ErrorCategory.GRAPHSYNC,
            ),
            ("failed to dial 12D3KooW", ErrorCategory.FAILED_TO_DIAL),
        ],
    )
    def test_known_patterns(self, message: str, expected: ErrorCategory) -> None:
        assert classify_error(message) == expected

    def test_unmatched_message_is_other(self) -> None:
        assert classify_error("something unexpected") == ErrorCategory.OTHER

    def test_empty_message_is_other(self) -> None:
        assert classify_error("") == ErrorCategory.OTHER

    def test_earlier_pattern_wins(self) -> None:
        """Both 'timeout after ' and 'failed to dial' match; timeout is listed first."""
        assert classify_error("timeout after 5s: failed to dial peer") == ErrorCategory.TIMEOUT

    def test_matching_is_case_sensitive(self) -> None:
        assert classify_error("RESPONSE REJECTED") == ErrorCategory.OTHER

    def test_every_category_has_a_counter(self) -> None:
        categories = [category for _, category in ERROR_PATTERNS] + [ErrorCategory.OTHER]
        assert error_counter(ErrorCategory.OTHER) == CounterName.ERROR_OTHER
        assert {error_counter(c) for c in categories} == {c for c in CounterName if c.name.startswith("ERROR_")}
