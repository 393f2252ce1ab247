"""Tests for timestamp helpers."""
import pytest
from datetime import date, datetime, timedelta, timezone

from herotrack.shared.utils.clock import (
    ensure_utc,
    format_timestamp,
    parse_timestamp,
    utc_date,
    utc_now,
)


class TestClock:

    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo is not None

    def test_ensure_utc_naive(self):
        assert ensure_utc(datetime(2024, 1, 1, 12)).tzinfo == timezone.utc

    def test_ensure_utc_converts(self):
        plus_two = timezone(timedelta(hours=2))
        value = ensure_utc(datetime(2024, 1, 1, 12, tzinfo=plus_two))

        assert value.hour == 10

    def test_parse_z_suffix(self):
        value = parse_timestamp("2024-03-14T10:30:00Z")

        assert value == datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["yesterday", "", 12345, None])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)

    def test_format_round_trip_uses_z(self):
        text = format_timestamp(datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc))

        assert text == "2024-03-14T10:30:00Z"
        assert format_timestamp(None) is None

    def test_utc_date_crosses_midnight(self):
        late = datetime(2024, 3, 14, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

        assert utc_date(late) == date(2024, 3, 15)
