from datetime import datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from kidledger.core.config import LedgerSettings
from kidledger.core.errors import PolicyViolationError
from kidledger.modules.ledger.services.policy_service import (
    CapContribution,
    ChoreRewardAmount,
    SpendingWindowStart,
)
from kidledger.modules.ledger.utils.money import FormatAmount, ToAmount

UTC = ZoneInfo("UTC")


def test_weekly_window_starts_on_previous_sunday():
    now = datetime(2024, 3, 13, 15, 30)  # Wednesday
    assert SpendingWindowStart("Weekly", now, UTC) == datetime(2024, 3, 10, 0, 0)


def test_weekly_window_on_sunday_starts_same_day():
    now = datetime(2024, 3, 10, 9, 0)
    assert SpendingWindowStart("Weekly", now, UTC) == datetime(2024, 3, 10, 0, 0)


def test_monthly_window_starts_on_first_of_month():
    now = datetime(2024, 2, 29, 23, 59)
    assert SpendingWindowStart("Monthly", now, UTC) == datetime(2024, 2, 1, 0, 0)


def test_window_uses_local_midnight():
    # 03:00 UTC Sunday is still Saturday evening in New York.
    now = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)
    start = SpendingWindowStart("Weekly", now, ZoneInfo("America/New_York"))
    assert start == datetime(2024, 3, 3, 5, 0)


def test_window_across_daylight_saving_change():
    now = datetime(2024, 3, 12, 12, 0)
    start = SpendingWindowStart("Weekly", now, ZoneInfo("America/New_York"))
    assert start == datetime(2024, 3, 10, 5, 0)


def test_window_without_frequency_is_none():
    assert SpendingWindowStart(None, datetime(2024, 3, 13), UTC) is None


def test_chore_reward_converts_points():
    assert ChoreRewardAmount(100, Decimal("0.01")) == Decimal("1.00")
    assert ChoreRewardAmount(5, Decimal("0.01")) == Decimal("0.05")
    assert ChoreRewardAmount(0, Decimal("0.01")) == Decimal("0.00")


def test_cap_contribution_limits_to_remaining():
    assert CapContribution(Decimal("15.00"), Decimal("20.00"), Decimal("10.00")) == Decimal("5.00")


def test_cap_contribution_passes_small_amounts_through():
    assert CapContribution(Decimal("0.00"), Decimal("20.00"), Decimal("4.25")) == Decimal("4.25")


def test_cap_contribution_rejects_met_goal():
    with pytest.raises(PolicyViolationError) as exc_info:
        CapContribution(Decimal("20.00"), Decimal("20.00"), Decimal("1.00"))
    assert exc_info.value.Message == "This savings goal has already been met."


def test_to_amount_rounds_half_up():
    assert ToAmount("1.005") == Decimal("1.01")
    assert ToAmount(None) == Decimal("0.00")
    assert FormatAmount(Decimal("3")) == "3.00"


def test_to_amount_rejects_float():
    with pytest.raises(TypeError):
        ToAmount(0.1)


def test_to_amount_rejects_garbage():
    with pytest.raises(ValueError):
        ToAmount("ten")


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("POINTS_TO_CURRENCY_RATE", "0.05")
    monkeypatch.setenv("LEDGER_TIMEZONE", "Europe/London")
    monkeypatch.setenv("LEDGER_TRANSACTIONS_PAGE_LIMIT", "25")
    settings = LedgerSettings()
    assert settings.PointsToCurrencyRate == Decimal("0.05")
    assert settings.TimeZone == ZoneInfo("Europe/London")
    assert settings.TransactionsPageLimit == 25


def test_settings_reject_bad_rate(monkeypatch):
    monkeypatch.setenv("POINTS_TO_CURRENCY_RATE", "lots")
    with pytest.raises(RuntimeError):
        LedgerSettings()
