"""Tests for due-date normalisation."""

from datetime import datetime, timezone

import pytest

from workflow.dates import fix_due_dates, next_weekday, normalize_due_date

# Wednesday
NOW = datetime(2025, 6, 11, 14, 30, tzinfo=timezone.utc)


@pytest.mark.unit
class TestNormalizeDueDate:

    def test_iso_timestamp_kept(self):
        assert normalize_due_date("2025-07-01T09:00:00.000Z", now=NOW) == "2025-07-01T09:00:00.000Z"

    def test_today_end_of_day(self):
        assert normalize_due_date("today", now=NOW) == "2025-06-11T23:59:59.999Z"

    def test_tomorrow_end_of_day(self):
        assert normalize_due_date("Tomorrow", now=NOW) == "2025-06-12T23:59:59.999Z"

    def test_weekday_is_next_occurrence(self):
        assert normalize_due_date("friday", now=NOW) == "2025-06-13T23:59:59.999Z"

    def test_same_weekday_means_next_week(self):
        assert normalize_due_date("wednesday", now=NOW) == "2025-06-18T23:59:59.999Z"

    def test_time_of_day_keeps_time(self):
        assert normalize_due_date("tomorrow 9am", now=NOW) == "2025-06-12T14:30:00.000Z"

    def test_plain_date(self):
        assert normalize_due_date("2025-12-24", now=NOW) == "2025-12-24T23:59:59.999Z"

    def test_date_with_time(self):
        assert normalize_due_date("2025-12-24 18:00", now=NOW) == "2025-12-24T18:00:00.000Z"

    def test_unparseable_is_end_of_today(self):
        assert normalize_due_date("whenever", now=NOW) == "2025-06-11T23:59:59.999Z"


@pytest.mark.unit
class TestHelpers:

    def test_next_weekday(self):
        assert next_weekday(NOW, 0).date().isoformat() == "2025-06-16"

    def test_fix_due_dates_copies(self):
        params = {"title": "Pay rent", "due": "today"}
        fixed = fix_due_dates(params, now=NOW)
        assert fixed["due"] == "2025-06-11T23:59:59.999Z"
        assert params["due"] == "today"

    def test_fix_due_dates_without_due(self):
        assert fix_due_dates({"title": "x"}) == {"title": "x"}
