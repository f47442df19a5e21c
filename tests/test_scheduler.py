"""Tests for scheduler.py — next-run computation and hour parsing."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from scheduler import next_run_after, parse_hours

HCM = ZoneInfo("Asia/Ho_Chi_Minh")


class TestParseHours:
    def test_default(self):
        assert parse_hours("0,12") == [0, 12]

    def test_sorted_and_deduplicated(self):
        assert parse_hours("12, 0, 12") == [0, 12]

    @pytest.mark.parametrize("value", ["", "24", "-1", "noon"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_hours(value)


class TestNextRunAfter:
    def test_morning_runs_at_noon(self):
        now = datetime(2025, 3, 10, 9, 30, tzinfo=HCM)
        assert next_run_after(now, [0, 12], HCM) == datetime(2025, 3, 10, 12, 0, tzinfo=HCM)

    def test_evening_runs_at_midnight(self):
        now = datetime(2025, 3, 10, 18, 0, tzinfo=HCM)
        assert next_run_after(now, [0, 12], HCM) == datetime(2025, 3, 11, 0, 0, tzinfo=HCM)

    def test_exactly_on_the_hour_moves_on(self):
        now = datetime(2025, 3, 10, 12, 0, tzinfo=HCM)
        assert next_run_after(now, [0, 12], HCM) == datetime(2025, 3, 11, 0, 0, tzinfo=HCM)

    def test_utc_input_converted(self):
        # 04:59 UTC is 11:59 in Ho Chi Minh City (UTC+7)
        now = datetime(2025, 3, 10, 4, 59, tzinfo=timezone.utc)
        run_at = next_run_after(now, [0, 12], HCM)
        assert run_at == datetime(2025, 3, 10, 12, 0, tzinfo=HCM)
        assert (run_at - now).total_seconds() == 60

    def test_month_rollover(self):
        now = datetime(2025, 1, 31, 23, 0, tzinfo=HCM)
        assert next_run_after(now, [0, 12], HCM) == datetime(2025, 2, 1, 0, 0, tzinfo=HCM)
