"""Tests for shared utility functions."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from activity_ledger.utils import (
    dt_from_json,
    dt_to_json,
    get_event_range,
    normalize_duration,
    normalize_timestamp,
    parse_datetime,
)


class TestNormalize:
    def test_iso_string_with_z(self) -> None:
        assert normalize_timestamp("2025-01-01T09:00:00Z") == datetime(2025, 1, 1, 9, tzinfo=UTC)

    def test_naive_is_utc(self) -> None:
        assert normalize_timestamp(datetime(2025, 1, 1, 9)).tzinfo == UTC

    def test_aware_is_kept(self) -> None:
        cet = timezone(timedelta(hours=1))
        ts = datetime(2025, 1, 1, 10, tzinfo=cet)
        assert normalize_timestamp(ts) is ts

    def test_duration(self) -> None:
        assert normalize_duration(90) == timedelta(seconds=90)
        assert normalize_duration(timedelta(minutes=1)) == timedelta(minutes=1)

    def test_event_range(self) -> None:
        start, end = get_event_range({"timestamp": "2025-01-01T09:00:00+00:00", "duration": 60.0})
        assert end - start == timedelta(minutes=1)


class TestParseDatetime:
    def test_iso(self) -> None:
        assert parse_datetime("2025-01-01T09:00:00Z") == datetime(2025, 1, 1, 9, tzinfo=UTC)

    def test_result_is_aware(self) -> None:
        assert parse_datetime("2025-01-01 09:00").tzinfo is not None

    def test_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_datetime("xyzzy plugh")


class TestJsonHelpers:
    def test_json_helpers(self) -> None:
        ts = datetime(2025, 1, 1, 9, tzinfo=UTC)
        assert dt_from_json(dt_to_json(ts)) == ts
        assert dt_to_json(None) is None
        assert dt_from_json("") is None
