from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from kidledger.core.config import LedgerSettings
from kidledger.core.errors import ConflictError, NotFoundError, ValidationError
from kidledger.modules.ledger.models import (
    CHORE_STATUS_APPROVED,
    FREQUENCY_MONTHLY,
    FREQUENCY_WEEKLY,
    TRANSACTION_ALLOWANCE,
    TRANSACTION_GOAL_REFUND,
    TRANSACTION_INITIAL_BALANCE,
    TRANSACTION_MANUAL_ADJUSTMENT,
    TRANSACTION_SPENDING,
    TRANSACTION_TYPES,
    ChildAccount,
    Chore,
    SavingsGoal,
    Transaction,
)
from kidledger.modules.ledger.services.mutation_service import (
    ApplyMutation,
    BuildMutationResult,
    MutationResult,
    MutationService,
)
from kidledger.modules.ledger.services.policy_service import CheckSpendingLimit
from kidledger.modules.ledger.store import LedgerStore
from kidledger.modules.ledger.utils.dates import UtcNow
from kidledger.modules.ledger.utils.money import ZERO, FormatAmount, ToAmount

logger = logging.getLogger("ledger.accounts")

_FREQUENCIES = {FREQUENCY_WEEKLY, FREQUENCY_MONTHLY}
_SETTINGS_FIELDS = {
    "Name",
    "SpendingLimit",
    "SpendingLimitFrequency",
    "AllowanceEnabled",
    "AllowanceAmount",
    "AllowanceFrequency",
}


@dataclass(frozen=True)
class ReconciliationReport:
    ChildId: int
    Balance: Decimal
    LedgerTotal: Decimal

    @property
    def IsBalanced(self) -> bool:
        return self.Balance == self.LedgerTotal


@dataclass(frozen=True)
class TransactionLabels:
    ChildName: str | None = None
    RelatedChoreTitle: str | None = None
    RelatedGoalName: str | None = None


@dataclass(frozen=True)
class DashboardSummary:
    Balance: Decimal
    PendingChoresCount: int
    ActiveGoalsCount: int


def _RequirePositive(amount: Decimal, label: str) -> Decimal:
    value = ToAmount(amount)
    if value <= ZERO:
        raise ValidationError(f"{label} must be a positive amount.")
    return value


def _RequireText(value: str | None, message: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(message)
    return cleaned


def _ValidateFrequency(value: str | None) -> None:
    if value is not None and value not in _FREQUENCIES:
        raise ValidationError("Frequency must be Weekly or Monthly.")


def _EnsureNameAvailable(db: Session, parent_user_id: int, name: str, exclude_child_id: int | None = None) -> None:
    query = db.query(ChildAccount.Id).filter(
        ChildAccount.ParentUserId == parent_user_id,
        ChildAccount.Name == name,
    )
    if exclude_child_id is not None:
        query = query.filter(ChildAccount.Id != exclude_child_id)
    if query.first():
        raise ConflictError(f'A child with the name "{name}" already exists.')


def GetChild(db: Session, child_id: int, parent_user_id: int | None = None) -> ChildAccount:
    query = db.query(ChildAccount).filter(ChildAccount.Id == child_id)
    if parent_user_id is not None:
        query = query.filter(ChildAccount.ParentUserId == parent_user_id)
    child = query.first()
    if not child:
        raise NotFoundError("Child not found or does not belong to this parent.")
    return child


def ListChildren(db: Session, parent_user_id: int) -> list[ChildAccount]:
    return (
        db.query(ChildAccount)
        .filter(ChildAccount.ParentUserId == parent_user_id)
        .order_by(ChildAccount.Name.asc())
        .all()
    )


def CreateChild(
    db: Session,
    parent_user_id: int,
    name: str,
    initial_balance: Decimal | None = None,
    now: datetime | None = None,
) -> ChildAccount:
    child_name = _RequireText(name, "Child name is required.")
    grant = ToAmount(initial_balance) if initial_balance is not None else ZERO
    if grant < ZERO:
        raise ValidationError("Initial balance must not be negative.")
    _EnsureNameAvailable(db, parent_user_id, child_name)

    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        child = ChildAccount(
            ParentUserId=parent_user_id,
            Name=child_name,
            Balance=ZERO,
            AllowanceEnabled=False,
            CreatedAt=timestamp,
            UpdatedAt=timestamp,
        )
        db.add(child)
        db.flush()
        if grant > ZERO:
            ApplyMutation(
                store,
                child,
                grant,
                TRANSACTION_INITIAL_BALANCE,
                "Starting balance",
                actor_user_id=parent_user_id,
                now=timestamp,
            )
    logger.info("child created parent=%s child=%s balance=%s", parent_user_id, child.Id, FormatAmount(child.Balance))
    return child


def UpdateChildSettings(
    db: Session,
    parent_user_id: int,
    child_id: int,
    changes: dict,
    now: datetime | None = None,
) -> ChildAccount:
    unknown = set(changes) - _SETTINGS_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("No update data provided.")
    if "AllowanceEnabled" in changes and not isinstance(changes["AllowanceEnabled"], bool):
        raise ValidationError("AllowanceEnabled must be true or false.")
    if "SpendingLimitFrequency" in changes:
        _ValidateFrequency(changes["SpendingLimitFrequency"])
    if "AllowanceFrequency" in changes:
        _ValidateFrequency(changes["AllowanceFrequency"])
    for field in ("SpendingLimit", "AllowanceAmount"):
        if changes.get(field) is not None:
            value = ToAmount(changes[field])
            if value < ZERO:
                raise ValidationError(f"{field} must not be negative.")
            changes[field] = value
    if "Name" in changes:
        changes["Name"] = _RequireText(changes["Name"], "Child name is required.")
        _EnsureNameAvailable(db, parent_user_id, changes["Name"], exclude_child_id=child_id)

    store = LedgerStore(db)
    with store.Transaction():
        child = store.LockChild(child_id, parent_user_id)
        for field, value in changes.items():
            setattr(child, field, value)
        child.UpdatedAt = now or UtcNow()
        db.add(child)
    return child


def RecordSpending(
    db: Session,
    child_id: int,
    amount: Decimal,
    description: str,
    idempotency_key: str | None = None,
    settings: LedgerSettings | None = None,
    now: datetime | None = None,
) -> MutationResult:
    value = _RequirePositive(amount, "Spending")
    text = _RequireText(description, "A description for the spending is required.")
    service = MutationService(db, settings)
    timestamp = now or UtcNow()

    def _CheckLimit(store: LedgerStore, child: ChildAccount, _amount: Decimal) -> None:
        CheckSpendingLimit(store, child, value, timestamp, service.Settings.TimeZone)

    return service.Apply(
        child_id,
        -value,
        TRANSACTION_SPENDING,
        text,
        idempotency_key=idempotency_key,
        pre_check=_CheckLimit,
        now=timestamp,
    )


def AdjustBalance(
    db: Session,
    parent_user_id: int,
    child_id: int,
    amount: Decimal,
    description: str,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> MutationResult:
    value = ToAmount(amount)
    if value == ZERO:
        raise ValidationError("Adjustment amount must not be zero.")
    text = _RequireText(description, "A description is required for the adjustment.")
    return MutationService(db).Apply(
        child_id,
        value,
        TRANSACTION_MANUAL_ADJUSTMENT,
        text,
        parent_user_id=parent_user_id,
        actor_user_id=parent_user_id,
        idempotency_key=idempotency_key,
        now=now,
    )


def GrantAllowance(
    db: Session,
    parent_user_id: int,
    child_id: int,
    amount: Decimal | None = None,
    description: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> MutationResult:
    """Credit a one-off allowance: ``amount`` or the child's configured allowance."""
    explicit = _RequirePositive(amount, "Allowance") if amount is not None else None
    store = LedgerStore(db)
    with store.Transaction():
        child = store.LockChild(child_id, parent_user_id)
        replay = store.FindByIdempotencyKey(child.Id, idempotency_key, TRANSACTION_ALLOWANCE)
        if replay is not None:
            return BuildMutationResult(child, replay, replayed=True)
        value = explicit
        if value is None:
            if child.AllowanceAmount is None or ToAmount(child.AllowanceAmount) <= ZERO:
                raise ValidationError("No allowance amount configured for this child.")
            value = ToAmount(child.AllowanceAmount)
        return ApplyMutation(
            store,
            child,
            value,
            TRANSACTION_ALLOWANCE,
            (description or "").strip() or "Allowance",
            actor_user_id=parent_user_id,
            idempotency_key=idempotency_key,
            now=now,
        )


def DeleteChild(db: Session, parent_user_id: int, child_id: int, now: datetime | None = None) -> Decimal:
    """Delete a child, flushing goal savings back into the balance first.

    Returns the final balance that was closed out with the account.
    """
    store = LedgerStore(db)
    timestamp = now or UtcNow()
    with store.Transaction():
        assigned_chores = store.LockChildChores(child_id)
        child = store.LockChild(child_id, parent_user_id)
        for goal in store.LockGoals(child.Id):
            saved = ToAmount(goal.CurrentAmount)
            if saved > ZERO:
                ApplyMutation(
                    store,
                    child,
                    saved,
                    TRANSACTION_GOAL_REFUND,
                    f"Refund from deleted goal: {goal.Name}",
                    related_goal_id=goal.Id,
                    actor_user_id=parent_user_id,
                    now=timestamp,
                )
            db.delete(goal)
        db.flush()
        final_balance = ToAmount(child.Balance)
        for chore in assigned_chores:
            chore.AssignedChildId = None
            chore.UpdatedAt = timestamp
            db.add(chore)
        db.flush()
        db.query(Transaction).filter(Transaction.ChildId == child.Id).delete(synchronize_session=False)
        db.delete(child)
    logger.info("child deleted parent=%s child=%s closing_balance=%s", parent_user_id, child_id, FormatAmount(final_balance))
    return final_balance


def ListTransactions(
    db: Session,
    child_ids: list[int],
    transaction_type: str | None = None,
    limit: int | None = None,
    offset: int = 0,
    settings: LedgerSettings | None = None,
) -> list[Transaction]:
    resolved = settings or LedgerSettings()
    if transaction_type is not None and transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {transaction_type}")
    page = limit if limit is not None else resolved.TransactionsPageLimit
    page = max(1, min(page, resolved.MaxTransactionsPageLimit))
    return LedgerStore(db).ListTransactions(child_ids, transaction_type, page, max(offset, 0))


def LabelTransactions(db: Session, records: list[Transaction]) -> dict[int, TransactionLabels]:
    rows = LedgerStore(db).TransactionLabels([record.Id for record in records])
    return {
        row.TransactionId: TransactionLabels(
            ChildName=row.ChildName,
            RelatedChoreTitle=row.RelatedChoreTitle,
            RelatedGoalName=row.RelatedGoalName,
        )
        for row in rows
    }


def Reconcile(db: Session, child_id: int) -> ReconciliationReport:
    child = GetChild(db, child_id)
    db.refresh(child)
    total = LedgerStore(db).SumTransactions(child.Id)
    report = ReconciliationReport(ChildId=child.Id, Balance=ToAmount(child.Balance), LedgerTotal=total)
    if not report.IsBalanced:
        logger.error(
            "ledger out of balance child=%s balance=%s ledger=%s",
            child.Id,
            FormatAmount(report.Balance),
            FormatAmount(report.LedgerTotal),
        )
    return report


def GetDashboard(db: Session, child_id: int) -> DashboardSummary:
    child = GetChild(db, child_id)
    pending_chores = (
        db.query(func.count(Chore.Id))
        .filter(Chore.AssignedChildId == child.Id, Chore.Status != CHORE_STATUS_APPROVED)
        .scalar()
    )
    active_goals = (
        db.query(func.count(SavingsGoal.Id))
        .filter(SavingsGoal.ChildId == child.Id, SavingsGoal.CurrentAmount < SavingsGoal.TargetAmount)
        .scalar()
    )
    return DashboardSummary(
        Balance=ToAmount(child.Balance),
        PendingChoresCount=int(pending_chores or 0),
        ActiveGoalsCount=int(active_goals or 0),
    )
