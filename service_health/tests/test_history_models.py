"""
Unit tests for history records, wire dates and history lookups.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_health.app.history.dates import (
    health_datetime_from_string, health_datetime_to_string, midnight_local
)
from service_health.app.history.models import (
    Event, EventBlob, HealthUser, HistoryBlob, HistoryEntry, HistoryType, StatusBlob,
    history_type_from_string, list_contains_event, most_recent, most_recent_contact_trace,
    most_recent_test, past_list, sort_newest_first, trace_in_list
)
from shared.test_helpers import TestDataFactory


class TestHealthDates:
    """Test cases for the wire date format."""

    def test_parse_millisecond_date(self):
        """Test parsing a full precision date."""
        value = health_datetime_from_string("2020-09-15T12:34:56.789Z")

        assert value == datetime(2020, 9, 15, 12, 34, 56, 789000, tzinfo=timezone.utc)

    def test_parse_short_fractions(self):
        """Test parsing dates with two and one fraction digits."""
        assert health_datetime_from_string("2020-09-15T12:34:56.78Z").microsecond == 780000
        assert health_datetime_from_string("2020-09-15T12:34:56.7Z").microsecond == 700000

    def test_parse_without_fraction(self):
        """Test parsing a date without fraction."""
        value = health_datetime_from_string("2020-09-15T12:34:56Z")

        assert value == datetime(2020, 9, 15, 12, 34, 56, tzinfo=timezone.utc)

    @pytest.mark.parametrize("raw", [None, "", "yesterday", "2020-09-15", "2020-13-15T12:34:56Z", 1600000000])
    def test_parse_invalid(self, raw):
        """Test unparsable dates give None."""
        assert health_datetime_from_string(raw) is None

    def test_format_and_round_trip(self):
        """Test formatting keeps millisecond precision."""
        value = datetime(2020, 9, 15, 12, 34, 56, 789123, tzinfo=timezone.utc)
        text = health_datetime_to_string(value)

        assert text == "2020-09-15T12:34:56.789Z"
        assert health_datetime_from_string(text) == value.replace(microsecond=789000)
        assert health_datetime_to_string(None) is None

    def test_format_converts_to_utc(self):
        """Test aware datetimes in other zones are written as UTC."""
        value = datetime(2020, 9, 15, 7, 0, 0, tzinfo=ZoneInfo("America/Chicago"))

        assert health_datetime_to_string(value) == "2020-09-15T12:00:00.000Z"

    def test_midnight_local(self):
        """Test local dates depend on the zone."""
        value = datetime(2020, 9, 15, 2, 0, 0, tzinfo=timezone.utc)

        assert midnight_local(value, timezone.utc) == date(2020, 9, 15)
        assert midnight_local(value, ZoneInfo("America/Chicago")) == date(2020, 9, 14)
        assert midnight_local(None, timezone.utc) is None


class TestHistoryModels:
    """Test cases for history entries and blobs."""

    @pytest.fixture
    def history_json(self):
        """Wire history record."""
        return {
            "id": "h-1",
            "user_id": "user-1",
            "date": "2020-10-15T12:00:00.000Z",
            "type": "verified_manual_test",
            "encrypted_key": "key",
            "encrypted_blob": "blob",
            "location_id": "loc-1",
            "county_id": "county-1",
            "encrypted_image_key": None,
            "encrypted_image_blob": None,
        }

    def test_history_from_json(self, history_json):
        """Test decoding a wire history record."""
        entry = HistoryEntry.from_json(history_json)

        assert entry.id == "h-1"
        assert entry.type == HistoryType.MANUAL_TEST_VERIFIED
        assert entry.date_utc == datetime(2020, 10, 15, 12, tzinfo=timezone.utc)
        assert entry.blob is None
        assert entry.to_json() == history_json

    def test_history_from_json_not_a_mapping(self):
        """Test non-mapping JSON gives no entry."""
        assert HistoryEntry.from_json(None) is None
        assert HistoryEntry.from_json(["h-1"]) is None

    @pytest.mark.parametrize("raw,expected", [
        ("received_test", HistoryType.TEST),
        ("verified_manual_test", HistoryType.MANUAL_TEST_VERIFIED),
        ("unverified_manual_test", HistoryType.MANUAL_TEST_NOT_VERIFIED),
        ("symptoms", HistoryType.SYMPTOMS),
        ("trace", HistoryType.CONTACT_TRACE),
        ("action", HistoryType.ACTION),
        ("vaccine", None),
        (None, None),
    ])
    def test_history_type_from_string(self, raw, expected):
        """Test history type wire names."""
        assert history_type_from_string(raw) == expected

    def test_test_predicates(self):
        """Test which test kinds are verified and can move the status."""
        received = TestDataFactory.create_test_entry(TestDataFactory.day(), type=HistoryType.TEST)
        verified = TestDataFactory.create_test_entry(TestDataFactory.day(), type=HistoryType.MANUAL_TEST_VERIFIED)
        unverified = TestDataFactory.create_test_entry(TestDataFactory.day(), type=HistoryType.MANUAL_TEST_NOT_VERIFIED)

        assert all(e.is_test for e in (received, verified, unverified))
        assert received.is_manual_test is False
        assert verified.is_manual_test is True
        assert received.can_test_update_status is True
        assert verified.can_test_update_status is True
        assert unverified.can_test_update_status is False
        assert unverified.is_test_verified is False

    def test_blob_from_json(self):
        """Test the payload wire keys."""
        blob = HistoryBlob.from_json({
            "provider": "McKinley",
            "test_type": "PCR",
            "result": "positive",
            "symptoms": [{"id": "s1", "name": "Fever"}, {"id": "s2", "name": "Cough"}, "junk"],
        })

        assert blob.test_result == "positive"
        assert blob.is_test is True
        assert blob.symptoms_ids == {"s1", "s2"}
        assert blob.symptoms_display_string == "Fever, Cough"
        assert HistoryBlob.from_json(blob.to_json()) == blob

    @pytest.mark.parametrize("ms,minutes,display", [
        (45000, 1, "45 seconds"),
        (1000, 0, "1 second"),
        (60000, 1, "1 minute"),
        (20 * 60000, 20, "20 minutes"),
        (90000, 2, "1 minute"),
        (150000, 3, "2 minutes"),
        (870000, 15, "14 minutes"),
        (3 * 3600000, 180, "3 hours"),
    ])
    def test_trace_duration(self, ms, minutes, display):
        """Test trace duration conversions."""
        blob = HistoryBlob(trace_duration=ms)

        assert blob.trace_duration_in_minutes == minutes
        assert blob.trace_duration_display_string == display

    def test_action_display_string(self):
        """Test action text falls back to the action type."""
        assert HistoryBlob(action_type="quarantine-on", action_text="Stay home").action_display_string == "Stay home"
        assert HistoryBlob(action_type="quarantine-on").action_display_string == "quarantine-on"


class TestHistoryLookups:
    """Test cases for history list helpers."""

    @pytest.fixture
    def now(self):
        return TestDataFactory.day(1)

    @pytest.fixture
    def history(self):
        """Newest-first history, including a future entry."""
        return [
            TestDataFactory.create_action_entry(TestDataFactory.day(5), "quarantine-on", entry_id="future"),
            TestDataFactory.create_symptoms_entry(TestDataFactory.day(0), ["s1"], entry_id="symptoms"),
            TestDataFactory.create_trace_entry(TestDataFactory.day(-1), 30, tek="tek-a", entry_id="trace-1"),
            TestDataFactory.create_test_entry(TestDataFactory.day(-2), type=HistoryType.MANUAL_TEST_NOT_VERIFIED,
                                              entry_id="unverified"),
            TestDataFactory.create_test_entry(TestDataFactory.day(-3), entry_id="verified"),
            TestDataFactory.create_trace_entry(TestDataFactory.day(-4), 10, tek="tek-b", entry_id="trace-2"),
        ]

    def test_sort_newest_first(self, history):
        """Test sorting puts undated entries last."""
        undated = TestDataFactory.create_action_entry(None, "x", entry_id="undated")
        shuffled = [history[3], undated, history[0], history[5], history[1], history[2], history[4]]

        ordered = sort_newest_first(shuffled)

        assert [e.id for e in ordered] == [e.id for e in history] + ["undated"]

    def test_most_recent(self, history, now):
        """Test most recent past entry skips the future."""
        assert most_recent(history, now).id == "symptoms"
        assert most_recent([], now) is None
        assert most_recent(None, now) is None

    def test_most_recent_test(self, history, now):
        """Test most recent test must be verified."""
        assert most_recent_test(history, now).id == "verified"

    def test_past_list(self, history, now):
        """Test past list drops future entries."""
        assert [e.id for e in past_list(history, now)] == ["symptoms", "trace-1", "unverified", "verified", "trace-2"]
        assert past_list(None, now) is None

    def test_lookups_include_entries_at_now(self, history):
        """Test an entry stamped exactly at now counts as past."""
        now = TestDataFactory.day(0)

        assert most_recent(history, now).id == "symptoms"
        assert [e.id for e in past_list(history, now)][0] == "symptoms"

    def test_most_recent_contact_trace_bounds_exclusive(self, history):
        """Test contact trace bounds exclude their endpoints."""
        assert most_recent_contact_trace(history).id == "trace-1"
        assert most_recent_contact_trace(history, max_date_utc=TestDataFactory.day(-1)).id == "trace-2"
        assert most_recent_contact_trace(history, min_date_utc=TestDataFactory.day(-1)) is None
        assert most_recent_contact_trace(
            history,
            min_date_utc=TestDataFactory.day(-5),
            max_date_utc=TestDataFactory.day(0)
        ).id == "trace-1"

    def test_trace_in_list(self, history):
        """Test finding a trace by its exposure key."""
        assert trace_in_list(history, "tek-b").id == "trace-2"
        assert trace_in_list(history, "tek-c") is None
        assert trace_in_list(history, None) is None

    def test_list_contains_event(self, history):
        """Test matching provider events against ingested entries."""
        test_event = Event(
            provider="McKinley",
            provider_id="1",
            blob=EventBlob(date_utc=TestDataFactory.day(-3), test_type="PCR", test_result="negative"),
        )
        other_event = Event(
            provider="McKinley",
            provider_id="1",
            blob=EventBlob(date_utc=TestDataFactory.day(-3), test_type="PCR", test_result="positive"),
        )
        action_event = Event(blob=EventBlob(date_utc=TestDataFactory.day(5), action_type="quarantine-on"))

        assert list_contains_event(history, test_event) is True
        assert list_contains_event(history, other_event) is False
        assert list_contains_event(history, action_event) is True
        assert list_contains_event(history, None) is False


class TestStatusAndUserRecords:
    """Test cases for status blobs, events and users."""

    def test_status_blob_wire_keys(self):
        """Test the status blob wire schema."""
        blob = StatusBlob.from_json({
            "health_status": "red",
            "priority": 10,
            "next_step": "Isolate",
            "next_step_date": "2020-10-25T12:00:00.000Z",
            "history_blob": {"test_type": "PCR", "result": "positive"},
        })

        assert blob.health_status == "red"
        assert blob.next_step_date_utc == datetime(2020, 10, 25, 12, tzinfo=timezone.utc)
        assert blob.history_blob.test_result == "positive"
        assert StatusBlob.from_json(blob.to_json()) == blob

    def test_next_step_date_macro(self):
        """Test the next step date macro expansion."""
        tz = timezone.utc
        today = datetime.now(tz)
        blob = StatusBlob(next_step="Test again {next_step_date}", next_step_date_utc=today)

        assert blob.display_next_step(tz=tz) == "Test again today"

        tomorrow = StatusBlob(next_step="Test {next_step_date}", next_step_date_utc=today + timedelta(days=1))
        assert tomorrow.display_next_step(tz=tz) == "Test tomorrow"

        later = StatusBlob(next_step="Test on {next_step_date}",
                           next_step_date_utc=datetime(2020, 10, 25, 12, tzinfo=tz))
        assert later.display_next_step(tz=tz) == "Test on Sunday, Oct 25"

    def test_next_step_date_macro_localized(self):
        """Test localized day names are lower-cased."""
        tz = timezone.utc
        blob = StatusBlob(reason="Until {next_step_date}", next_step_date_utc=datetime.now(tz))

        assert blob.display_reason(lambda key, default: "HOY", tz) == "Until hoy"

    def test_macro_left_alone_without_date(self):
        """Test templates stay verbatim when there is no date."""
        blob = StatusBlob(next_step="Test {next_step_date}")

        assert blob.display_next_step() == "Test {next_step_date}"
        assert blob.display_warning() is None

    def test_requires_test_and_localization_keys(self):
        """Test derived presentation fields."""
        blob = StatusBlob(health_status="Orange", next_step_html="<b>Get a TEST</b>")

        assert blob.requires_test is True
        assert blob.localization_keys()["long"] == "com.illinois.covid19.status.long.orange"
        assert StatusBlob(next_step="Stay home").requires_test is False

    def test_event_wire_keys(self):
        """Test event blob capitalized wire keys."""
        blob = EventBlob.from_json({"Date": "2020-10-15T12:00:00.000Z", "TestName": "PCR", "Result": "negative"})

        assert blob.test_type == "PCR"
        assert blob.is_test is True
        assert blob.to_json() == {"Date": "2020-10-15T12:00:00.000Z", "TestName": "PCR", "Result": "negative"}
        assert Event(blob=blob).is_test is False
        assert Event(provider_id="1", blob=blob).is_test is True

    def test_health_user_wire_keys(self):
        """Test the user repost wire key."""
        user = HealthUser.from_json({"uuid": "u-1", "public_key": "PEM", "consent": True, "re_post": False})

        assert user.repost is False
        assert user.to_json()["re_post"] is False
        assert user.to_json()["public_key"] == "PEM"
