"""Tests for timestamp normalization."""
from src.utils.time_utils import normalize_timestamp, optional_timestamp


class TestNormalizeTimestamp:
    def test_milliseconds_become_seconds(self):
        assert normalize_timestamp(1700000000000) == 1700000000

    def test_seconds_are_unchanged(self):
        assert normalize_timestamp(1700000000) == 1700000000

    def test_normalizing_twice_is_a_no_op(self):
        assert normalize_timestamp(normalize_timestamp(1700000000123)) == 1700000000

    def test_string_inputs(self):
        assert normalize_timestamp("0x6553f100") == 1700000000
        assert normalize_timestamp("1700000000000") == 1700000000

    def test_missing_values(self):
        assert normalize_timestamp(None) == 0
        assert normalize_timestamp("") == 0
        assert optional_timestamp(0) is None
        assert optional_timestamp(1700000000000) == 1700000000
