import re
from datetime import datetime, timedelta, timezone

import pytest

from servicebay.models.appointment import STATUS_MEMBERS, AppointmentStatus, DetailedStatus, coarse_status_for
from servicebay.models.slot import SlotStatus, slot_status_for
from servicebay.utils.ids import make_number, short_id
from servicebay.utils.time import ensure_aware, hours_until, parse_human_range


class TestIdentifiers:
    def test_number_format(self):
        number = make_number("APT", now=datetime(2026, 10, 17, tzinfo=timezone.utc))
        assert re.fullmatch(r"APT-261017-[0-9A-Z]{6}", number)

    def test_long_date_number(self):
        number = make_number("CF", long_date=True, now=datetime(2026, 10, 17, tzinfo=timezone.utc))
        assert number.startswith("CF-20261017-")

    def test_short_ids_are_distinct(self):
        assert len({short_id() for _ in range(200)}) == 200


class TestStatuses:
    def test_every_detailed_status_has_one_coarse_status(self):
        for detailed in DetailedStatus:
            owners = [coarse for coarse, members in STATUS_MEMBERS.items() if detailed in members]
            assert owners == [coarse_status_for(detailed)]

    @pytest.mark.parametrize(
        "detailed, coarse",
        [
            ("rescheduled", AppointmentStatus.SCHEDULED),
            ("reception_submitted", AppointmentStatus.CHECKED_IN),
            ("cancel_requested", AppointmentStatus.ON_HOLD),
            ("in_progress", AppointmentStatus.IN_SERVICE),
            ("cancel_approved", AppointmentStatus.CLOSED),
        ],
    )
    def test_coarse_mapping(self, detailed, coarse):
        assert coarse_status_for(detailed) == coarse

    @pytest.mark.parametrize(
        "booked, capacity, expected",
        [(0, 2, SlotStatus.AVAILABLE), (1, 2, SlotStatus.PARTIALLY_BOOKED), (2, 2, SlotStatus.FULL)],
    )
    def test_slot_status(self, booked, capacity, expected):
        assert slot_status_for(booked, capacity) == expected


class TestTime:
    def test_naive_datetimes_take_the_given_zone(self):
        value = ensure_aware(datetime(2026, 10, 17, 9, 0), "Asia/Ho_Chi_Minh")
        assert value == datetime(2026, 10, 17, 2, 0, tzinfo=timezone.utc)

    def test_hours_until(self):
        now = datetime(2026, 10, 17, tzinfo=timezone.utc)
        assert hours_until(now + timedelta(hours=30), now) == 30

    def test_whole_day_window(self):
        start, end = parse_human_range("tomorrow", "UTC")
        assert (start.hour, start.minute) == (0, 0)
        assert end - start == timedelta(days=1)

    def test_morning_window(self):
        start, end = parse_human_range("tomorrow morning", "UTC")
        assert (start.hour, end.hour) == (8, 12)

    def test_afternoon_window_keeps_the_day(self):
        start, end = parse_human_range("tomorrow afternoon", "UTC")
        tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).date()
        assert start.date() == tomorrow
        assert (start.hour, end.hour) == (12, 17)

    def test_bare_day_part_means_today(self):
        start, end = parse_human_range("this evening", "UTC")
        assert start.date() == datetime.now(timezone.utc).date()
        assert (start.hour, end.hour) == (17, 20)

    def test_next_week_window(self):
        start, end = parse_human_range("next week", "UTC")
        assert start.weekday() == 0
        assert start > datetime.now(timezone.utc)
        assert end - start == timedelta(days=7)

    def test_unparseable_window(self):
        assert parse_human_range("xyzzy", "UTC") == (None, None)

    def test_empty_window(self):
        assert parse_human_range("", "UTC") == (None, None)
