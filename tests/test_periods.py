"""Tests for billing period arithmetic."""

from datetime import date, datetime, timedelta, timezone

import pytest

from metering.utils.periods import align_to_minute, billing_months, months_bounds, next_month

UTC = timezone.utc


class TestBillingMonths:
    """Tests for month-set computation."""

    def test_mid_month_period_spans_two_months(self) -> None:
        months = billing_months(
            datetime(2024, 1, 15, tzinfo=UTC), datetime(2024, 2, 15, tzinfo=UTC)
        )
        assert months == [date(2024, 1, 1), date(2024, 2, 1)]

    def test_calendar_month_period(self) -> None:
        """End bound is exclusive."""
        months = billing_months(datetime(2024, 3, 1, tzinfo=UTC), datetime(2024, 4, 1, tzinfo=UTC))
        assert months == [date(2024, 3, 1)]

    def test_year_boundary(self) -> None:
        months = billing_months(
            datetime(2023, 12, 20, tzinfo=UTC), datetime(2024, 1, 20, tzinfo=UTC)
        )
        assert months == [date(2023, 12, 1), date(2024, 1, 1)]

    def test_non_utc_input_normalised(self) -> None:
        tz = timezone(timedelta(hours=-5))
        # 31 Jan 20:00 at UTC-5 is 1 Feb 01:00 UTC
        months = billing_months(datetime(2024, 1, 31, 20, tzinfo=tz), datetime(2024, 2, 20, tzinfo=UTC))
        assert months == [date(2024, 2, 1)]

    def test_empty_period_rejected(self) -> None:
        moment = datetime(2024, 1, 1, tzinfo=UTC)
        with pytest.raises(ValueError):
            billing_months(moment, moment)


class TestBounds:
    """Tests for range helpers."""

    def test_months_bounds(self) -> None:
        start, end = months_bounds([date(2023, 12, 1), date(2024, 1, 1)])
        assert start == datetime(2023, 12, 1, tzinfo=UTC)
        assert end == datetime(2024, 2, 1, tzinfo=UTC)

    def test_months_bounds_empty(self) -> None:
        with pytest.raises(ValueError):
            months_bounds([])

    def test_next_month_december(self) -> None:
        assert next_month(date(2024, 12, 1)) == date(2025, 1, 1)

    def test_align_to_minute(self) -> None:
        start = datetime(2024, 3, 1, 10, 0, 30, tzinfo=UTC)
        end = datetime(2024, 3, 1, 11, 0, 1, tzinfo=UTC)

        start_ts, end_ts = align_to_minute(start, end)

        assert start_ts == int(datetime(2024, 3, 1, 10, 0, tzinfo=UTC).timestamp())
        assert end_ts == int(datetime(2024, 3, 1, 11, 1, tzinfo=UTC).timestamp())
