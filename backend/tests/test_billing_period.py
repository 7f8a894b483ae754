"""Tests for billing period arithmetic.

Tests cover:
- Calendar-day expiration in the client's timezone
- Leap-year and DST boundaries
- Preview and defensive verification of server-returned periods
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import make_plan
from leiloom_billing.models import Period
from leiloom_billing.services import billing_period

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
NEW_YORK = ZoneInfo("America/New_York")


class TestComputeExpiration:
    """Tests for compute_expiration."""

    def test_leap_year_thirty_days(self):
        """2024-02-01 + 30 days lands on 2024-03-02 (29-day February)."""
        expires = billing_period.compute_expiration(date(2024, 2, 1), 30, SAO_PAULO)

        local = expires.astimezone(SAO_PAULO)
        assert local.date() == date(2024, 3, 2)
        assert local.hour == 0

    @pytest.mark.parametrize("days", [1, 30, 365])
    def test_calendar_round_trip_across_leap_year(self, days):
        """The local calendar distance always equals the requested duration."""
        start = date(2024, 2, 1)
        expires = billing_period.compute_expiration(start, days, SAO_PAULO)

        assert billing_period.calendar_days_between(start, expires, SAO_PAULO) == days

    def test_result_is_utc(self):
        """Expiration is normalized to UTC for storage comparisons."""
        expires = billing_period.compute_expiration(date(2024, 2, 1), 30, SAO_PAULO)

        assert expires.tzinfo == timezone.utc
        # Sao Paulo has been UTC-3 without DST since 2019
        assert expires == datetime(2024, 3, 2, 3, 0, tzinfo=timezone.utc)

    def test_spring_forward_keeps_wall_clock(self):
        """Crossing a DST change keeps the local time of day, not the elapsed hours."""
        start = datetime(2024, 3, 9, 9, 0, tzinfo=NEW_YORK)

        expires = billing_period.compute_expiration(start, 1, NEW_YORK)

        local = expires.astimezone(NEW_YORK)
        assert local.date() == date(2024, 3, 10)
        assert local.hour == 9
        # only 23 real hours elapsed
        assert (expires - start).total_seconds() == 23 * 3600

    def test_fall_back_keeps_wall_clock(self):
        start = datetime(2024, 11, 2, 9, 0, tzinfo=NEW_YORK)

        expires = billing_period.compute_expiration(start, 1, NEW_YORK)

        assert expires.astimezone(NEW_YORK).hour == 9
        assert (expires - start).total_seconds() == 25 * 3600

    def test_utc_input_is_interpreted_in_local_calendar(self):
        """A UTC instant late in the evening locally counts from the local date."""
        start = datetime(2024, 1, 31, 2, 30, tzinfo=timezone.utc)  # 2024-01-30 23:30 in Sao Paulo

        expires = billing_period.compute_expiration(start, 1, SAO_PAULO)

        assert expires.astimezone(SAO_PAULO) == datetime(2024, 1, 31, 23, 30, tzinfo=SAO_PAULO)

    def test_naive_datetime_is_local(self):
        naive = datetime(2024, 5, 1, 10, 0)

        expires = billing_period.compute_expiration(naive, 10, SAO_PAULO)

        assert expires == datetime(2024, 5, 11, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("days", [0, -1])
    def test_rejects_non_positive_duration(self, days):
        with pytest.raises(ValueError):
            billing_period.compute_expiration(date(2024, 1, 1), days, SAO_PAULO)


class TestPreviewAndVerify:
    """Tests for preview_period and verify_expiration."""

    def test_preview_returns_utc_window(self):
        plan = make_plan("monthly", duration_days=30)

        starts_at, expires_at = billing_period.preview_period(date(2024, 2, 1), plan, SAO_PAULO)

        assert starts_at == datetime(2024, 2, 1, 3, 0, tzinfo=timezone.utc)
        assert expires_at == datetime(2024, 3, 2, 3, 0, tzinfo=timezone.utc)

    def test_verify_accepts_matching_period(self):
        starts_at = datetime(2024, 2, 1, 3, 0, tzinfo=timezone.utc)
        period = Period(
            id="pp-1",
            enrollment_id="cp-1",
            starts_at=starts_at,
            expires_at=billing_period.compute_expiration(starts_at, 30, SAO_PAULO),
        )

        assert billing_period.verify_expiration(period, 30, SAO_PAULO) is True

    def test_verify_logs_mismatch_without_raising(self, caplog):
        period = Period(
            id="pp-1",
            enrollment_id="cp-1",
            starts_at=datetime(2024, 2, 1, 3, 0, tzinfo=timezone.utc),
            expires_at=datetime(2024, 3, 1, 3, 0, tzinfo=timezone.utc),
        )

        with caplog.at_level("WARNING"):
            assert billing_period.verify_expiration(period, 30, SAO_PAULO) is False

        assert "pp-1" in caplog.text
