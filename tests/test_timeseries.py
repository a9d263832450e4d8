"""
Tests for bucket arithmetic and gap-filling.
"""

from datetime import datetime, timezone

import pytest

from beacon.timeseries import Unit, count_buckets, format_bucket, gap_fill, iter_buckets, parse_bucket, truncate
from tests.conftest import utc


class TestTruncate:
    def test_hour(self):
        assert truncate(utc(2024, 3, 5, 14, 37, 12), Unit.HOUR) == utc(2024, 3, 5, 14)

    def test_day(self):
        assert truncate(utc(2024, 3, 5, 14, 37), "day") == utc(2024, 3, 5)

    def test_month(self):
        assert truncate(utc(2024, 3, 5, 14, 37), Unit.MONTH) == utc(2024, 3, 1)

    def test_naive_is_utc(self):
        assert truncate(datetime(2024, 3, 5, 1, 2), Unit.DAY).tzinfo == timezone.utc


class TestBuckets:
    def test_month_rollover(self):
        buckets = list(iter_buckets(utc(2023, 11, 15), utc(2024, 2, 1), Unit.MONTH))
        assert [b.month for b in buckets] == [11, 12, 1]

    def test_half_open_range(self):
        buckets = list(iter_buckets(utc(2024, 3, 1), utc(2024, 3, 8), Unit.DAY))
        assert len(buckets) == 7
        assert buckets[-1] == utc(2024, 3, 7)

    def test_count_is_upper_bound(self):
        assert count_buckets(utc(2024, 3, 1), utc(2024, 3, 8), Unit.DAY) >= 7

    @pytest.mark.parametrize("raw", ["2024-03-05 00:00:00", "2024-03-05T00:00:00Z", "2024-03-05"])
    def test_parse_sql_bucket_text(self, raw):
        assert parse_bucket(raw) == utc(2024, 3, 5)

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_bucket("yesterday")

    def test_format(self):
        assert format_bucket(utc(2024, 3, 5, 9)) == "2024-03-05T09:00:00Z"


class TestGapFill:
    def test_fills_missing_days(self):
        rows = [
            {"x": "2024-03-01 00:00:00", "y": 4},
            {"x": "2024-03-03 00:00:00", "y": 2},
        ]
        filled = gap_fill(rows, utc(2024, 3, 1), utc(2024, 3, 5), Unit.DAY)
        assert filled == [
            {"x": "2024-03-01T00:00:00Z", "y": 4},
            {"x": "2024-03-02T00:00:00Z", "y": 0},
            {"x": "2024-03-03T00:00:00Z", "y": 2},
            {"x": "2024-03-04T00:00:00Z", "y": 0},
        ]

    def test_drops_rows_outside_range(self):
        rows = [{"x": "2024-02-28 00:00:00", "y": 9}]
        filled = gap_fill(rows, utc(2024, 3, 1), utc(2024, 3, 2), Unit.DAY)
        assert filled == [{"x": "2024-03-01T00:00:00Z", "y": 0}]

    def test_multiple_fields(self):
        filled = gap_fill([], utc(2024, 3, 1, 10), utc(2024, 3, 1, 12), Unit.HOUR, fields=("pageviews", "visitors"))
        assert filled[1] == {"x": "2024-03-01T11:00:00Z", "pageviews": 0, "visitors": 0}
