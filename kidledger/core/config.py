import os
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo


def GetEnv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _read_decimal_env(name: str, default: str) -> Decimal:
    raw = GetEnv(name, default)
    try:
        value = Decimal(raw)
    except (InvalidOperation, TypeError) as exc:
        raise RuntimeError(f"{name} must be a decimal number") from exc
    if value < 0:
        raise RuntimeError(f"{name} must not be negative")
    return value


def _read_int_env(name: str, default: int) -> int:
    raw = GetEnv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


class LedgerSettings:
    """Policy parameters for the ledger, read from the environment at construction."""

    def __init__(
        self,
        PointsToCurrencyRate: Decimal | None = None,
        TimeZoneName: str | None = None,
        TransactionsPageLimit: int | None = None,
    ) -> None:
        self.PointsToCurrencyRate = (
            PointsToCurrencyRate
            if PointsToCurrencyRate is not None
            else _read_decimal_env("POINTS_TO_CURRENCY_RATE", "0.01")
        )
        self.TimeZoneName = TimeZoneName or GetEnv("LEDGER_TIMEZONE", "UTC")
        self.TransactionsPageLimit = (
            TransactionsPageLimit
            if TransactionsPageLimit is not None
            else _read_int_env("LEDGER_TRANSACTIONS_PAGE_LIMIT", 50)
        )
        self.MaxTransactionsPageLimit = 200

    @property
    def TimeZone(self) -> ZoneInfo:
        return ZoneInfo(self.TimeZoneName)


def GetLedgerSettings() -> LedgerSettings:
    return LedgerSettings()
