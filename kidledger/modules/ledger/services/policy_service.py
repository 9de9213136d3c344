from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from kidledger.core.errors import PolicyViolationError
from kidledger.modules.ledger.models import FREQUENCY_MONTHLY, FREQUENCY_WEEKLY, ChildAccount
from kidledger.modules.ledger.store import LedgerStore
from kidledger.modules.ledger.utils.dates import ToNaiveUtc
from kidledger.modules.ledger.utils.money import ZERO, FormatAmount, ToAmount


def SpendingWindowStart(frequency: str | None, now: datetime, tz: ZoneInfo) -> datetime | None:
    """Start of the current spending window, as naive UTC.

    Weekly windows open on the most recent Sunday 00:00 local time, monthly
    windows on the first of the month 00:00 local time.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    if frequency == FREQUENCY_WEEKLY:
        # weekday(): Monday=0 .. Sunday=6
        days_since_sunday = (local_now.weekday() + 1) % 7
        start = midnight - timedelta(days=days_since_sunday)
    elif frequency == FREQUENCY_MONTHLY:
        start = midnight.replace(day=1)
    else:
        return None
    # Re-anchor to the zone so DST shifts between start and now are honoured.
    start = start.replace(tzinfo=None).replace(tzinfo=tz)
    return ToNaiveUtc(start)


def HasSpendingLimit(child: ChildAccount) -> bool:
    return child.SpendingLimit is not None and child.SpendingLimitFrequency in {
        FREQUENCY_WEEKLY,
        FREQUENCY_MONTHLY,
    }


def CheckSpendingLimit(
    store: LedgerStore,
    child: ChildAccount,
    amount: Decimal,
    now: datetime,
    tz: ZoneInfo,
) -> None:
    if not HasSpendingLimit(child):
        return
    window_start = SpendingWindowStart(child.SpendingLimitFrequency, now, tz)
    if window_start is None:
        return
    limit = ToAmount(child.SpendingLimit)
    spent = store.SumSpendingSince(child.Id, window_start)
    if spent + ToAmount(amount) > limit:
        remaining = max(limit - spent, ZERO)
        period = "week" if child.SpendingLimitFrequency == FREQUENCY_WEEKLY else "month"
        raise PolicyViolationError(
            f"Spending limit exceeded. You can spend {FormatAmount(remaining)} more this {period}.",
            {
                "limit": FormatAmount(limit),
                "spent": FormatAmount(spent),
                "remaining": FormatAmount(remaining),
            },
        )


def ChoreRewardAmount(points: int, rate: Decimal) -> Decimal:
    return ToAmount(Decimal(points) * rate)


def CapContribution(current: Decimal, target: Decimal, requested: Decimal) -> Decimal:
    current_value = ToAmount(current)
    target_value = ToAmount(target)
    if current_value >= target_value:
        raise PolicyViolationError("This savings goal has already been met.")
    return min(ToAmount(requested), target_value - current_value)
