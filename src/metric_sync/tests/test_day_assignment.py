"""Tests for day assignment, record selection, and fetch windows."""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from src.metric_sync.base import RawProviderRecord
from src.metric_sync.day_assignment import (
    IntervalEndAssigner,
    ReportedDayAssigner,
    day_window,
    get_assigner,
    select_record,
)
from src.metric_sync.tests.conftest import UTC, activity_record, sleep_record

NEW_YORK = ZoneInfo("America/New_York")
TOKYO = ZoneInfo("Asia/Tokyo")


def _interval(end: datetime | None, offset: int | None = None, rid: str = "r") -> RawProviderRecord:
    return RawProviderRecord(start=None, end=end, timezone_offset_minutes=offset, record_id=rid)


class TestIntervalEndAssigner:
    def test_overnight_sleep_belongs_to_wake_day(self) -> None:
        # Day N 23:00 → Day N+1 07:00
        record = sleep_record(date(2024, 3, 5))
        assert IntervalEndAssigner().assign(record, UTC) == date(2024, 3, 5)

    def test_local_wake_time_uses_device_zone(self) -> None:
        # 06:30 in New York is 11:30 UTC
        record = _interval(datetime(2024, 3, 5, 11, 30, tzinfo=timezone.utc))
        assert IntervalEndAssigner().assign(record, NEW_YORK) == date(2024, 3, 5)

    def test_device_zone_can_move_the_day_back(self) -> None:
        # 03:00 UTC is still the previous evening in New York
        record = _interval(datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc))
        assert IntervalEndAssigner().assign(record, NEW_YORK) == date(2024, 3, 4)

    def test_record_offset_applied_before_device_zone(self) -> None:
        # 04:30Z with a -05:00 offset is 23:30Z on the 4th, 08:30 on the 5th in Tokyo
        record = _interval(datetime(2024, 3, 5, 4, 30, tzinfo=timezone.utc), offset=-300)
        assert IntervalEndAssigner().assign(record, TOKYO) == date(2024, 3, 5)

    def test_record_offset_in_utc_device_zone(self) -> None:
        record = _interval(datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc), offset=-300)
        assert IntervalEndAssigner().assign(record, UTC) == date(2024, 3, 4)

    def test_positive_offset_moves_day_forward(self) -> None:
        record = _interval(datetime(2024, 3, 4, 23, 30, tzinfo=timezone.utc), offset=60)
        assert IntervalEndAssigner().assign(record, UTC) == date(2024, 3, 5)

    def test_missing_end_is_unassigned(self) -> None:
        assert IntervalEndAssigner().assign(_interval(None), UTC) is None


class TestReportedDayAssigner:
    def test_identity_on_reported_day(self) -> None:
        record = activity_record(date(2024, 3, 9))
        assert ReportedDayAssigner().assign(record, NEW_YORK) == date(2024, 3, 9)

    def test_no_reported_day_is_unassigned(self) -> None:
        assert ReportedDayAssigner().assign(RawProviderRecord(), UTC) is None


class TestSelectRecord:
    def test_exact_match_preferred_over_later_record(self) -> None:
        exact = sleep_record(date(2024, 3, 5), record_id="exact")
        later = sleep_record(date(2024, 3, 6), record_id="later")
        chosen = select_record([later, exact], date(2024, 3, 5), IntervalEndAssigner(), UTC)
        assert chosen is exact

    def test_last_exact_match_in_response_order_wins(self) -> None:
        first = _interval(datetime(2024, 3, 5, 6, 0, tzinfo=timezone.utc), rid="first")
        second = _interval(datetime(2024, 3, 5, 5, 0, tzinfo=timezone.utc), rid="second")
        chosen = select_record([first, second], date(2024, 3, 5), IntervalEndAssigner(), UTC)
        assert chosen.record_id == "second"

    def test_falls_back_to_latest_end_without_exact_match(self) -> None:
        early = _interval(datetime(2024, 3, 4, 13, 0, tzinfo=timezone.utc), rid="early")
        late = _interval(datetime(2024, 3, 4, 20, 0, tzinfo=timezone.utc), rid="late")
        chosen = select_record([late, early], date(2024, 3, 5), IntervalEndAssigner(), UTC)
        assert chosen.record_id == "late"

    def test_fallback_compares_offset_shifted_ends(self) -> None:
        # Raw ends 20:00Z vs 18:00Z; the +180 offset makes the second end later
        plain = _interval(datetime(2024, 3, 4, 20, 0, tzinfo=timezone.utc), rid="plain")
        shifted = _interval(datetime(2024, 3, 4, 18, 0, tzinfo=timezone.utc), offset=180, rid="shifted")
        chosen = select_record([plain, shifted], date(2024, 3, 6), IntervalEndAssigner(), UTC)
        assert chosen.record_id == "shifted"

    def test_records_without_end_never_chosen(self) -> None:
        chosen = select_record([_interval(None)], date(2024, 3, 5), IntervalEndAssigner(), UTC)
        assert chosen is None

    def test_reported_day_does_not_fall_back(self) -> None:
        other_day = activity_record(date(2024, 3, 8))
        chosen = select_record([other_day], date(2024, 3, 9), ReportedDayAssigner(), UTC)
        assert chosen is None

    def test_empty_window(self) -> None:
        assert select_record([], date(2024, 3, 5), IntervalEndAssigner(), UTC) is None


class TestDayWindow:
    def test_interval_window_is_noon_to_noon(self) -> None:
        start, end = day_window(date(2024, 3, 5), UTC, IntervalEndAssigner())
        assert start == datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)

    def test_reported_window_is_the_local_day(self) -> None:
        start, end = day_window(date(2024, 3, 5), NEW_YORK, ReportedDayAssigner())
        # EST is UTC-5 on this date
        assert start == datetime(2024, 3, 5, 5, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 6, 5, 0, tzinfo=timezone.utc)

    def test_window_across_dst_change(self) -> None:
        # US clocks moved forward on 2024-03-10
        start, end = day_window(date(2024, 3, 10), NEW_YORK, ReportedDayAssigner())
        assert (end - start).total_seconds() == 23 * 3600


class TestGetAssigner:
    def test_known_names(self) -> None:
        assert isinstance(get_assigner("interval_end"), IntervalEndAssigner)
        assert isinstance(get_assigner("reported_day"), ReportedDayAssigner)

    def test_unknown_name_raises(self) -> None:
        with pytest.raises(KeyError):
            get_assigner("calendar_start")
