from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from kidledger.core.config import LedgerSettings
from kidledger.core.errors import NotFoundError, PolicyViolationError, ValidationError
from kidledger.modules.ledger.models import (
    CHORE_STATUS_APPROVED,
    CHORE_STATUS_COMPLETED,
    CHORE_STATUS_PENDING,
    TRANSACTION_CHORE_REWARD,
    ChildAccount,
    Chore,
)
from kidledger.modules.ledger.services.mutation_service import ApplyMutation
from kidledger.modules.ledger.services.policy_service import ChoreRewardAmount
from kidledger.modules.ledger.store import LedgerStore
from kidledger.modules.ledger.utils.dates import UtcNow
from kidledger.modules.ledger.utils.money import ZERO, FormatAmount, ToAmount

logger = logging.getLogger("ledger.chores")

_EDITABLE_FIELDS = {"Title", "Description", "Points", "AssignedChildId"}


@dataclass(frozen=True)
class ChoreApprovalResult:
    Chore: Chore
    RewardAmount: Decimal
    NewBalance: Decimal
    TransactionId: int | None


def _RequireTitle(value: str | None) -> str:
    title = (value or "").strip()
    if not title:
        raise ValidationError("Chore title is required.")
    return title


def _RequirePoints(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Points must be a whole number.")
    if value < 0:
        raise ValidationError("Points must not be negative.")
    return value


def _EnsureChildOfParent(db: Session, parent_user_id: int, child_id: int) -> None:
    exists = (
        db.query(ChildAccount.Id)
        .filter(ChildAccount.Id == child_id, ChildAccount.ParentUserId == parent_user_id)
        .first()
    )
    if not exists:
        raise NotFoundError("Child not found or does not belong to this parent.")


def GetChore(db: Session, parent_user_id: int, chore_id: int) -> Chore:
    chore = (
        db.query(Chore)
        .filter(Chore.Id == chore_id, Chore.ParentUserId == parent_user_id)
        .first()
    )
    if not chore:
        raise NotFoundError("Chore not found or does not belong to this parent.")
    return chore


def ListChores(
    db: Session,
    parent_user_id: int,
    assigned_child_id: int | None = None,
    status: str | None = None,
) -> list[Chore]:
    query = db.query(Chore).filter(Chore.ParentUserId == parent_user_id)
    if assigned_child_id is not None:
        query = query.filter(Chore.AssignedChildId == assigned_child_id)
    if status:
        query = query.filter(Chore.Status == status)
    return query.order_by(Chore.CreatedAt.desc(), Chore.Id.desc()).all()


def ListChildChores(db: Session, child_id: int, status: str | None = None) -> list[Chore]:
    query = db.query(Chore).filter(Chore.AssignedChildId == child_id)
    if status:
        query = query.filter(Chore.Status == status)
    return query.order_by(Chore.CreatedAt.desc(), Chore.Id.desc()).all()


def CreateChore(
    db: Session,
    parent_user_id: int,
    title: str,
    points: int,
    description: str | None = None,
    assigned_child_id: int | None = None,
    now: datetime | None = None,
) -> Chore:
    chore_title = _RequireTitle(title)
    chore_points = _RequirePoints(points)
    if assigned_child_id is not None:
        _EnsureChildOfParent(db, parent_user_id, assigned_child_id)

    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        chore = Chore(
            ParentUserId=parent_user_id,
            Title=chore_title,
            Description=(description or "").strip() or None,
            Points=chore_points,
            AssignedChildId=assigned_child_id,
            Status=CHORE_STATUS_PENDING,
            CreatedAt=timestamp,
            UpdatedAt=timestamp,
        )
        db.add(chore)
    logger.info("chore created parent=%s chore=%s points=%s", parent_user_id, chore.Id, chore_points)
    return chore


def UpdateChore(
    db: Session,
    parent_user_id: int,
    chore_id: int,
    changes: dict,
    now: datetime | None = None,
) -> Chore:
    unknown = set(changes) - _EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("No update data provided.")
    if "Title" in changes:
        changes["Title"] = _RequireTitle(changes["Title"])
    if "Points" in changes:
        changes["Points"] = _RequirePoints(changes["Points"])
    if "Description" in changes:
        changes["Description"] = (changes["Description"] or "").strip() or None
    if changes.get("AssignedChildId") is not None:
        _EnsureChildOfParent(db, parent_user_id, changes["AssignedChildId"])

    store = LedgerStore(db)
    with store.Transaction():
        chore = store.LockChore(chore_id, parent_user_id=parent_user_id)
        if chore.Status == CHORE_STATUS_APPROVED:
            raise PolicyViolationError("Approved chores can no longer be edited.")
        if (
            "AssignedChildId" in changes
            and changes["AssignedChildId"] != chore.AssignedChildId
            and chore.Status != CHORE_STATUS_PENDING
        ):
            raise PolicyViolationError("Only pending chores can be reassigned.")
        for field, value in changes.items():
            setattr(chore, field, value)
        chore.UpdatedAt = now or UtcNow()
        db.add(chore)
    return chore


def MarkChoreComplete(db: Session, child_id: int, chore_id: int, now: datetime | None = None) -> Chore:
    store = LedgerStore(db)
    with store.Transaction():
        chore = store.LockChore(chore_id, assigned_child_id=child_id)
        if chore.Status != CHORE_STATUS_PENDING:
            raise PolicyViolationError(f"Chore is already {chore.Status}.")
        chore.Status = CHORE_STATUS_COMPLETED
        chore.UpdatedAt = now or UtcNow()
        db.add(chore)
    logger.info("chore completed child=%s chore=%s", child_id, chore_id)
    return chore


def ApproveChore(
    db: Session,
    parent_user_id: int,
    chore_id: int,
    settings: LedgerSettings | None = None,
    now: datetime | None = None,
) -> ChoreApprovalResult:
    """Approve a completed chore and pay its reward.

    The chore row is locked before the child row so that two concurrent
    approvals serialise on the chore and only one of them credits the child.
    """
    resolved = settings or LedgerSettings()
    timestamp = now or UtcNow()
    store = LedgerStore(db)
    with store.Transaction():
        chore = store.LockChore(chore_id, parent_user_id=parent_user_id)
        if chore.AssignedChildId is None:
            raise PolicyViolationError("Chore must be assigned to a child before approval.")
        if chore.Status != CHORE_STATUS_COMPLETED:
            raise PolicyViolationError("Chore must be marked as Completed by the child first.")
        child = store.LockChild(chore.AssignedChildId, parent_user_id)
        reward = ChoreRewardAmount(chore.Points, resolved.PointsToCurrencyRate)
        chore.Status = CHORE_STATUS_APPROVED
        chore.UpdatedAt = timestamp
        db.add(chore)
        transaction_id = None
        if reward > ZERO:
            result = ApplyMutation(
                store,
                child,
                reward,
                TRANSACTION_CHORE_REWARD,
                f"Reward for chore: {chore.Title}",
                related_chore_id=chore.Id,
                actor_user_id=parent_user_id,
                now=timestamp,
            )
            transaction_id = result.TransactionId
        new_balance = ToAmount(child.Balance)
    logger.info(
        "chore approved parent=%s chore=%s child=%s reward=%s",
        parent_user_id,
        chore_id,
        chore.AssignedChildId,
        FormatAmount(reward),
    )
    return ChoreApprovalResult(
        Chore=chore,
        RewardAmount=reward,
        NewBalance=new_balance,
        TransactionId=transaction_id,
    )


def DeleteChore(db: Session, parent_user_id: int, chore_id: int) -> None:
    store = LedgerStore(db)
    with store.Transaction():
        chore = store.LockChore(chore_id, parent_user_id=parent_user_id)
        db.delete(chore)
    logger.info("chore deleted parent=%s chore=%s", parent_user_id, chore_id)
