"""Tests for data models and configuration."""

import pytest
from datetime import datetime, timedelta

import pytz

from calsync_reconcile.config import SyncPolicy
from calsync_reconcile.models import (
    CalendarEvent, MatchSet, RecurrenceFrequency, RecurrenceRule, Reminder,
    Side, SyncDirection, SyncReport
)


class TestCalendarEvent:
    """Tests for CalendarEvent model."""

    def test_create_basic_event(self):
        """Test creating a basic calendar event."""
        start = datetime.now(pytz.UTC)
        end = start + timedelta(hours=1)

        event = CalendarEvent(
            id="test-123",
            source=Side.RIGHT,
            summary="Test Event",
            start=start,
            end=end
        )

        assert event.id == "test-123"
        assert event.source == Side.RIGHT
        assert event.start == start
        assert event.duration == timedelta(hours=1)
        assert not event.all_day
        assert event.has_core_fields()

    def test_timezone_validation(self):
        """Naive datetimes are taken as UTC."""
        event = CalendarEvent(
            id="test-123",
            source=Side.LEFT,
            start=datetime(2023, 12, 1, 10, 0, 0),
            end=datetime(2023, 12, 1, 11, 0, 0)
        )

        assert event.start.tzinfo == pytz.UTC
        assert event.end.tzinfo == pytz.UTC

    def test_end_before_start_rejected(self):
        start = datetime.now(pytz.UTC)
        with pytest.raises(ValueError, match="must not be before start time"):
            CalendarEvent(id="x", source=Side.LEFT, start=start, end=start - timedelta(hours=1))

    def test_missing_times_have_no_core_fields(self):
        event = CalendarEvent(id="x", source=Side.LEFT)
        assert not event.has_core_fields()
        assert event.duration is None
        assert "??" in event.summary_line()

    def test_popup_reminder_ignores_other_kinds(self):
        event = CalendarEvent(
            id="x",
            source=Side.RIGHT,
            reminders=[Reminder(method="email", minutes=60), Reminder(method="popup", minutes=10)]
        )
        assert event.popup_reminder().minutes == 10


class TestRecurrenceRule:
    """Tests for recurrence rules."""

    def test_rrule_string_round_trip(self):
        rule = RecurrenceRule.from_rrule_string("RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=FR,MO;COUNT=6")

        assert rule.frequency == RecurrenceFrequency.WEEKLY
        assert rule.interval == 2
        assert rule.by_day == {"MO", "FR"}
        assert rule.count == 6
        assert rule.to_rrule_string() == "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,FR;COUNT=6"

    def test_until_is_utc(self):
        rule = RecurrenceRule.from_rrule_string("FREQ=DAILY;UNTIL=20240310T090000Z")
        assert rule.until == datetime(2024, 3, 10, 9, 0, tzinfo=pytz.UTC)

    def test_count_and_until_are_exclusive(self):
        with pytest.raises(ValueError):
            RecurrenceRule(
                frequency=RecurrenceFrequency.DAILY,
                count=3,
                until=datetime(2024, 1, 1, tzinfo=pytz.UTC)
            )

    def test_unknown_day_code(self):
        with pytest.raises(ValueError):
            RecurrenceRule(frequency=RecurrenceFrequency.WEEKLY, by_day=["XX"])

    @pytest.mark.parametrize("by_day", [["1MO"], ["-1FR"], ["MO", "2TU"]])
    def test_ordinal_day_codes_are_refused(self, by_day):
        with pytest.raises(ValueError):
            RecurrenceRule(frequency=RecurrenceFrequency.MONTHLY, by_day=by_day)

    @pytest.mark.parametrize("value", [
        "RRULE:FREQ=MONTHLY;BYDAY=1MO;COUNT=3",
        "FREQ=MONTHLY;BYMONTHDAY=15",
        "FREQ=MONTHLY;BYDAY=MO;BYSETPOS=-1",
        "FREQ=YEARLY;BYMONTH=3",
        "FREQ=WEEKLY;BYDAY=MO,WE;WKST=SU",
    ])
    def test_unsupported_rrule_parts_are_refused(self, value):
        with pytest.raises(ValueError):
            RecurrenceRule.from_rrule_string(value)

    def test_default_week_start_is_accepted(self):
        rule = RecurrenceRule.from_rrule_string("FREQ=WEEKLY;BYDAY=MO;WKST=MO")
        assert rule.by_day == {"MO"}

    def test_occurrences(self):
        rule = RecurrenceRule(frequency=RecurrenceFrequency.WEEKLY, by_day=["MO"], count=3)
        start = datetime(2024, 3, 4, 9, 0, tzinfo=pytz.UTC)

        assert rule.occurrences(start) == [
            start,
            start + timedelta(days=7),
            start + timedelta(days=14),
        ]


class TestSyncDirection:
    """Tests for write directions."""

    def test_destination_and_source(self):
        assert SyncDirection.RIGHT_TO_LEFT.destination is Side.LEFT
        assert SyncDirection.RIGHT_TO_LEFT.source is Side.RIGHT
        assert SyncDirection.LEFT_TO_RIGHT.destination is Side.RIGHT

    def test_bidirectional_expands_to_both_passes(self):
        assert SyncDirection.BIDIRECTIONAL.write_directions() == [
            SyncDirection.LEFT_TO_RIGHT,
            SyncDirection.RIGHT_TO_LEFT,
        ]
        with pytest.raises(ValueError):
            SyncDirection.BIDIRECTIONAL.destination

    def test_match_set_buckets_follow_direction(self):
        match = MatchSet(left_only=["l"], right_only=["r"])

        assert match.delete_candidates(SyncDirection.RIGHT_TO_LEFT) == ["l"]
        assert match.create_candidates(SyncDirection.RIGHT_TO_LEFT) == ["r"]
        assert match.delete_candidates(SyncDirection.LEFT_TO_RIGHT) == ["r"]


class TestSyncPolicy:
    """Tests for policy validation."""

    def test_defaults(self):
        policy = SyncPolicy()
        assert policy.direction == SyncDirection.RIGHT_TO_LEFT
        assert not policy.is_bidirectional
        assert policy.max_attendees == 150
        assert policy.engine_write_grace_seconds == 5

    def test_enforcement_needs_single_direction(self):
        with pytest.raises(ValueError):
            SyncPolicy(privacy_direction=SyncDirection.BIDIRECTIONAL)


class TestSyncReport:
    """Tests for SyncReport model."""

    def test_total_operations(self):
        report = SyncReport(created=2, updated=3, deleted=1, skipped=5)
        assert report.total_operations == 6
        assert not report.cancelled


def test_settings_default_database_url(make_settings, tmp_path):
    settings = make_settings()
    assert settings.database_url == f'sqlite:///{tmp_path}/test.db'
    assert settings.sync_policy.direction == SyncDirection.RIGHT_TO_LEFT
