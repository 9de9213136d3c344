from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator

from sqlalchemy import Numeric, func
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from kidledger.core.errors import ConflictError, NotFoundError, TransientError
from kidledger.modules.ledger.models import (
    TRANSACTION_SPENDING,
    ChildAccount,
    Chore,
    SavingsGoal,
    Transaction,
)
from kidledger.modules.ledger.utils.dates import UtcNow
from kidledger.modules.ledger.utils.money import ToAmount

logger = logging.getLogger("ledger.store")

_MONEY = Numeric(12, 2)


def _ScalarAmount(value) -> Decimal:
    if value is None:
        return ToAmount(0)
    if isinstance(value, float):
        value = Decimal(str(value))
    return ToAmount(value)


class LedgerStore:
    """Row-locked reads and writes against the ledger tables.

    Every method runs inside the caller's session transaction; nothing here
    commits except ``Transaction``.
    """

    def __init__(self, db: Session) -> None:
        self.Db = db

    @contextmanager
    def Transaction(self) -> Iterator["LedgerStore"]:
        try:
            yield self
            self.Db.commit()
        except IntegrityError as exc:
            self.Db.rollback()
            logger.warning("ledger integrity error: %s", exc.orig)
            raise ConflictError("The change conflicts with existing data.") from exc
        except OperationalError as exc:
            self.Db.rollback()
            logger.exception("ledger transient database error")
            raise TransientError("The ledger is temporarily unavailable. Please retry.") from exc
        except DBAPIError as exc:
            self.Db.rollback()
            logger.exception("ledger database error")
            raise TransientError("The ledger is temporarily unavailable. Please retry.") from exc
        except BaseException:
            self.Db.rollback()
            raise

    def LockChild(self, child_id: int, parent_user_id: int | None = None) -> ChildAccount:
        query = self.Db.query(ChildAccount).filter(ChildAccount.Id == child_id)
        if parent_user_id is not None:
            query = query.filter(ChildAccount.ParentUserId == parent_user_id)
        child = query.with_for_update().populate_existing().first()
        if not child:
            raise NotFoundError("Child not found or does not belong to this parent.")
        return child

    def LockGoal(self, goal_id: int, child_id: int) -> SavingsGoal:
        goal = (
            self.Db.query(SavingsGoal)
            .filter(SavingsGoal.Id == goal_id, SavingsGoal.ChildId == child_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not goal:
            raise NotFoundError("Savings goal not found or does not belong to you.")
        return goal

    def LockGoals(self, child_id: int) -> list[SavingsGoal]:
        return (
            self.Db.query(SavingsGoal)
            .filter(SavingsGoal.ChildId == child_id)
            .order_by(SavingsGoal.Id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )

    def FindGoalChildId(self, goal_id: int, parent_user_id: int) -> int:
        row = (
            self.Db.query(SavingsGoal.ChildId)
            .join(ChildAccount, ChildAccount.Id == SavingsGoal.ChildId)
            .filter(SavingsGoal.Id == goal_id, ChildAccount.ParentUserId == parent_user_id)
            .first()
        )
        if not row:
            raise NotFoundError("Savings goal not found or does not belong to one of your children.")
        return row.ChildId

    def LockChore(
        self,
        chore_id: int,
        parent_user_id: int | None = None,
        assigned_child_id: int | None = None,
    ) -> Chore:
        query = self.Db.query(Chore).filter(Chore.Id == chore_id)
        if parent_user_id is not None:
            query = query.filter(Chore.ParentUserId == parent_user_id)
        if assigned_child_id is not None:
            query = query.filter(Chore.AssignedChildId == assigned_child_id)
        chore = query.with_for_update().populate_existing().first()
        if not chore:
            raise NotFoundError("Chore not found or not assigned to you.")
        return chore

    def LockChildChores(self, child_id: int) -> list[Chore]:
        # Chores lock before their child, matching ApproveChore.
        return (
            self.Db.query(Chore)
            .filter(Chore.AssignedChildId == child_id)
            .order_by(Chore.Id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )

    def WriteBalance(self, child: ChildAccount, new_balance: Decimal, now: datetime | None = None) -> None:
        child.Balance = ToAmount(new_balance)
        child.UpdatedAt = now or UtcNow()
        self.Db.add(child)

    def InsertTransaction(
        self,
        child_id: int,
        transaction_type: str,
        description: str | None,
        amount: Decimal,
        related_chore_id: int | None = None,
        related_goal_id: int | None = None,
        actor_user_id: int | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        record = Transaction(
            ChildId=child_id,
            Type=transaction_type,
            Description=description,
            Amount=ToAmount(amount),
            RelatedChoreId=related_chore_id,
            RelatedGoalId=related_goal_id,
            IdempotencyKey=idempotency_key,
            CreatedByUserId=actor_user_id,
            Date=now or UtcNow(),
        )
        self.Db.add(record)
        self.Db.flush()
        return record

    def FindByIdempotencyKey(
        self,
        child_id: int,
        idempotency_key: str | None,
        transaction_type: str | None = None,
    ) -> Transaction | None:
        """Earlier transaction written under ``idempotency_key``, if any.

        A key reused for a different kind of transaction is a conflict rather
        than a replay.
        """
        if not idempotency_key:
            return None
        record = (
            self.Db.query(Transaction)
            .filter(Transaction.ChildId == child_id, Transaction.IdempotencyKey == idempotency_key)
            .first()
        )
        if record is not None and transaction_type is not None and record.Type != transaction_type:
            raise ConflictError(
                "Idempotency key was already used for a different transaction.",
                {"key": idempotency_key, "original_type": record.Type},
            )
        return record

    def SumSpendingSince(self, child_id: int, since: datetime) -> Decimal:
        total = (
            self.Db.query(
                func.coalesce(func.sum(func.abs(Transaction.Amount, type_=_MONEY)), 0)
            )
            .filter(
                Transaction.ChildId == child_id,
                Transaction.Type == TRANSACTION_SPENDING,
                Transaction.Date >= since,
            )
            .scalar()
        )
        return _ScalarAmount(total)

    def SumTransactions(self, child_id: int) -> Decimal:
        total = (
            self.Db.query(func.coalesce(func.sum(Transaction.Amount), 0))
            .filter(Transaction.ChildId == child_id)
            .scalar()
        )
        return _ScalarAmount(total)

    def ListTransactions(
        self,
        child_ids: list[int],
        transaction_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        if not child_ids:
            return []
        query = self.Db.query(Transaction).filter(Transaction.ChildId.in_(child_ids))
        if transaction_type:
            query = query.filter(Transaction.Type == transaction_type)
        return (
            query.order_by(Transaction.Date.desc(), Transaction.Id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def TransactionLabels(self, transaction_ids: list[int]) -> list:
        """Child name plus related chore title and goal name per transaction.

        Chores and goals may have been deleted since, so both joins are outer.
        """
        if not transaction_ids:
            return []
        return (
            self.Db.query(
                Transaction.Id.label("TransactionId"),
                ChildAccount.Name.label("ChildName"),
                Chore.Title.label("RelatedChoreTitle"),
                SavingsGoal.Name.label("RelatedGoalName"),
            )
            .join(ChildAccount, ChildAccount.Id == Transaction.ChildId)
            .outerjoin(Chore, Chore.Id == Transaction.RelatedChoreId)
            .outerjoin(SavingsGoal, SavingsGoal.Id == Transaction.RelatedGoalId)
            .filter(Transaction.Id.in_(transaction_ids))
            .all()
        )
