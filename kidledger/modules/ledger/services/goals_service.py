from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from kidledger.core.errors import ConflictError, NotFoundError, ValidationError
from kidledger.modules.ledger.models import (
    TRANSACTION_GOAL_CONTRIBUTION,
    TRANSACTION_GOAL_REFUND,
    TRANSACTION_PARENT_TRANSFER,
    ChildAccount,
    SavingsGoal,
    Transaction,
)
from kidledger.modules.ledger.services.mutation_service import ApplyMutation
from kidledger.modules.ledger.services.policy_service import CapContribution
from kidledger.modules.ledger.store import LedgerStore
from kidledger.modules.ledger.utils.dates import UtcNow
from kidledger.modules.ledger.utils.money import ZERO, FormatAmount, ToAmount

logger = logging.getLogger("ledger.goals")


@dataclass(frozen=True)
class GoalMutationResult:
    Goal: SavingsGoal
    NewBalance: Decimal
    TransactionId: int
    EffectiveAmount: Decimal
    Replayed: bool = False


@dataclass(frozen=True)
class GoalDeletionResult:
    GoalId: int
    RefundedAmount: Decimal
    NewBalance: Decimal
    TransactionId: int | None


def _ReplayedContribution(
    store: LedgerStore,
    child: ChildAccount,
    record: Transaction,
    goal_id: int,
) -> GoalMutationResult:
    if record.RelatedGoalId != goal_id:
        raise ConflictError(
            "Idempotency key was already used for a different savings goal.",
            {"key": record.IdempotencyKey, "original_goal_id": record.RelatedGoalId},
        )
    goal = store.Db.get(SavingsGoal, record.RelatedGoalId)
    if goal is None:
        raise NotFoundError("Savings goal not found or does not belong to you.")
    return GoalMutationResult(
        Goal=goal,
        NewBalance=ToAmount(child.Balance),
        TransactionId=record.Id,
        EffectiveAmount=ToAmount(-ToAmount(record.Amount)),
        Replayed=True,
    )


def _RequirePositive(amount: Decimal, label: str) -> Decimal:
    value = ToAmount(amount)
    if value <= ZERO:
        raise ValidationError(f"{label} must be a positive amount.")
    return value


def CreateGoal(
    db: Session,
    child_id: int,
    name: str,
    target_amount: Decimal,
    now: datetime | None = None,
) -> SavingsGoal:
    goal_name = (name or "").strip()
    if not goal_name:
        raise ValidationError("Goal name is required.")
    target = _RequirePositive(target_amount, "Target amount")
    if not db.query(ChildAccount.Id).filter(ChildAccount.Id == child_id).first():
        raise NotFoundError("Child not found.")

    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        goal = SavingsGoal(
            ChildId=child_id,
            Name=goal_name,
            TargetAmount=target,
            CurrentAmount=ZERO,
            CreatedAt=timestamp,
            UpdatedAt=timestamp,
        )
        db.add(goal)
    logger.info("goal created child=%s goal=%s target=%s", child_id, goal.Id, FormatAmount(target))
    return goal


def ListGoals(db: Session, child_id: int) -> list[SavingsGoal]:
    return (
        db.query(SavingsGoal)
        .filter(SavingsGoal.ChildId == child_id)
        .order_by(SavingsGoal.CreatedAt.desc(), SavingsGoal.Id.desc())
        .all()
    )


def ListGoalsForParent(db: Session, parent_user_id: int, child_id: int | None = None) -> list[SavingsGoal]:
    query = (
        db.query(SavingsGoal)
        .join(ChildAccount, ChildAccount.Id == SavingsGoal.ChildId)
        .filter(ChildAccount.ParentUserId == parent_user_id)
    )
    if child_id is not None:
        query = query.filter(SavingsGoal.ChildId == child_id)
    return query.order_by(ChildAccount.Name.asc(), SavingsGoal.CreatedAt.desc(), SavingsGoal.Id.desc()).all()


def ContributeToGoal(
    db: Session,
    child_id: int,
    goal_id: int,
    amount: Decimal,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> GoalMutationResult:
    """Move money from the child's balance into one of their goals.

    The amount is capped at what the goal still needs; only the capped amount
    has to be affordable.
    """
    requested = _RequirePositive(amount, "Contribution")
    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        child = store.LockChild(child_id)
        replay = store.FindByIdempotencyKey(child.Id, idempotency_key, TRANSACTION_GOAL_CONTRIBUTION)
        if replay is not None:
            return _ReplayedContribution(store, child, replay, goal_id)
        goal = store.LockGoal(goal_id, child.Id)
        effective = CapContribution(goal.CurrentAmount, goal.TargetAmount, requested)
        result = ApplyMutation(
            store,
            child,
            -effective,
            TRANSACTION_GOAL_CONTRIBUTION,
            f"Contribution to goal: {goal.Name}",
            related_goal_id=goal.Id,
            idempotency_key=idempotency_key,
            now=timestamp,
        )
        goal.CurrentAmount = ToAmount(goal.CurrentAmount) + effective
        goal.UpdatedAt = timestamp
        db.add(goal)
    logger.info(
        "goal contribution child=%s goal=%s requested=%s applied=%s",
        child_id,
        goal_id,
        FormatAmount(requested),
        FormatAmount(effective),
    )
    return GoalMutationResult(
        Goal=goal,
        NewBalance=result.NewBalance,
        TransactionId=result.TransactionId,
        EffectiveAmount=effective,
    )


def ParentContributeToGoal(
    db: Session,
    parent_user_id: int,
    goal_id: int,
    amount: Decimal,
    description: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> GoalMutationResult:
    """Top up a child's goal with parent money.

    Recorded as a ParentTransfer credit followed by a GoalContribution debit of
    the same capped amount, so the balance ends where it started and the
    ledger still sums to it.
    """
    requested = _RequirePositive(amount, "Contribution")
    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        child_id = store.FindGoalChildId(goal_id, parent_user_id)
        child = store.LockChild(child_id, parent_user_id)
        replay = store.FindByIdempotencyKey(child.Id, idempotency_key, TRANSACTION_GOAL_CONTRIBUTION)
        if replay is not None:
            return _ReplayedContribution(store, child, replay, goal_id)
        goal = store.LockGoal(goal_id, child.Id)
        effective = CapContribution(goal.CurrentAmount, goal.TargetAmount, requested)
        note = (description or "").strip() or f"Parent contribution to goal: {goal.Name}"
        ApplyMutation(
            store,
            child,
            effective,
            TRANSACTION_PARENT_TRANSFER,
            note,
            related_goal_id=goal.Id,
            actor_user_id=parent_user_id,
            now=timestamp,
        )
        result = ApplyMutation(
            store,
            child,
            -effective,
            TRANSACTION_GOAL_CONTRIBUTION,
            f"Contribution to goal: {goal.Name}",
            related_goal_id=goal.Id,
            actor_user_id=parent_user_id,
            idempotency_key=idempotency_key,
            now=timestamp,
        )
        goal.CurrentAmount = ToAmount(goal.CurrentAmount) + effective
        goal.UpdatedAt = timestamp
        db.add(goal)
    logger.info(
        "parent goal contribution parent=%s goal=%s applied=%s",
        parent_user_id,
        goal_id,
        FormatAmount(effective),
    )
    return GoalMutationResult(
        Goal=goal,
        NewBalance=result.NewBalance,
        TransactionId=result.TransactionId,
        EffectiveAmount=effective,
    )


def DeleteGoal(db: Session, child_id: int, goal_id: int, now: datetime | None = None) -> GoalDeletionResult:
    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        child = store.LockChild(child_id)
        goal = store.LockGoal(goal_id, child.Id)
        saved = ToAmount(goal.CurrentAmount)
        transaction_id = None
        if saved > ZERO:
            result = ApplyMutation(
                store,
                child,
                saved,
                TRANSACTION_GOAL_REFUND,
                f"Refund from deleted goal: {goal.Name}",
                related_goal_id=goal.Id,
                now=timestamp,
            )
            transaction_id = result.TransactionId
        db.delete(goal)
        new_balance = ToAmount(child.Balance)
    logger.info("goal deleted child=%s goal=%s refunded=%s", child_id, goal_id, FormatAmount(saved))
    return GoalDeletionResult(
        GoalId=goal_id,
        RefundedAmount=saved,
        NewBalance=new_balance,
        TransactionId=transaction_id,
    )
