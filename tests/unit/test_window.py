"""Tests for the UTC month window."""

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from costboard.utils.window import MonthWindow, month_window, month_window_for, resolve_window


@pytest.mark.unit
class TestMonthWindow:
    def test_start_is_first_of_month_midnight_utc(self):
        window = month_window(datetime(2025, 3, 17, 15, 42, tzinfo=timezone.utc))

        assert window.start == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 4, 1, tzinfo=timezone.utc)
        assert window.start_date == "2025-03-01"
        assert window.end_date == "2025-04-01"

    def test_december_rolls_over_to_january(self):
        window = month_window(date(2024, 12, 31))

        assert window.start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert window.days == 31

    @pytest.mark.parametrize(
        "selector,days",
        [("2024-02", 29), ("2025-02", 28), ("2100-02", 28), ("2000-02", 29), ("2025-04", 30), ("2025-07", 31)],
    )
    def test_length_matches_days_in_month(self, selector, days):
        window = month_window_for(selector)

        assert window.end - window.start == timedelta(days=days)
        assert window.days == days

    def test_aware_reference_is_converted_to_utc(self):
        # 2025-04-01 01:00 at UTC+05:00 is still March in UTC
        reference = datetime(2025, 4, 1, 1, 0, tzinfo=timezone(timedelta(hours=5)))

        assert month_window(reference).month_slug == "2025-03"

    def test_naive_reference_is_treated_as_utc(self):
        assert month_window(datetime(2025, 3, 31, 23, 59)).month_slug == "2025-03"

    def test_contains_is_end_exclusive(self):
        window = month_window_for("2025-03")

        assert window.contains(date(2025, 3, 1))
        assert window.contains(date(2025, 3, 31))
        assert not window.contains(date(2025, 4, 1))
        assert not window.contains(date(2025, 2, 28))
        assert window.contains(datetime(2025, 3, 31, 23, 59, 59, tzinfo=timezone.utc))
        assert not window.contains(datetime(2025, 4, 1, tzinfo=timezone.utc))

    def test_to_dict_uses_z_suffix(self):
        assert month_window_for("2025-03").to_dict() == {
            "timezone": "UTC",
            "startUtc": "2025-03-01T00:00:00Z",
            "endExclusiveUtc": "2025-04-01T00:00:00Z",
        }

    @pytest.mark.parametrize("selector", ["2025-13", "2025-00", "25-03", "2025/03", "", "march"])
    def test_invalid_selector_raises(self, selector):
        with pytest.raises(ValueError):
            month_window_for(selector)

    def test_resolve_window_defaults_to_current_month(self):
        window = resolve_window()

        assert window.contains(datetime.now(timezone.utc))
        assert resolve_window("2024-02").month_slug == "2024-02"

    def test_boundaries_must_be_month_starts(self):
        with pytest.raises(ValidationError):
            MonthWindow(
                start=datetime(2025, 3, 2, tzinfo=timezone.utc),
                end=datetime(2025, 4, 1, tzinfo=timezone.utc),
            )

    def test_boundaries_must_be_aware(self):
        with pytest.raises(ValidationError):
            MonthWindow(start=datetime(2025, 3, 1), end=datetime(2025, 4, 1))

    def test_window_is_immutable(self):
        window = month_window_for("2025-03")

        with pytest.raises(ValidationError):
            window.start = datetime(2025, 1, 1, tzinfo=timezone.utc)
