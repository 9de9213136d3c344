"""Balance mutation engine.

Every change to a child's balance goes through ``ApplyMutation``: the caller
holds the child's row lock, the engine computes the new balance, refuses any
debit that would overdraw, writes the balance and appends exactly one
transaction row. Commit happens at the caller's ``LedgerStore.Transaction``
boundary so a second aggregate (goal, chore) can be written atomically with
the balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from kidledger.core.config import LedgerSettings
from kidledger.core.errors import InsufficientFundsError, ValidationError
from kidledger.modules.ledger.models import TRANSACTION_TYPES, ChildAccount, Transaction
from kidledger.modules.ledger.store import LedgerStore
from kidledger.modules.ledger.utils.dates import UtcNow
from kidledger.modules.ledger.utils.money import ZERO, FormatAmount, ToAmount

logger = logging.getLogger("ledger.mutations")


@dataclass(frozen=True)
class MutationResult:
    NewBalance: Decimal
    TransactionId: int
    TransactionDate: datetime
    Transaction: Transaction
    Replayed: bool = False


def BuildMutationResult(child: ChildAccount, record: Transaction, replayed: bool) -> MutationResult:
    return MutationResult(
        NewBalance=ToAmount(child.Balance),
        TransactionId=record.Id,
        TransactionDate=record.Date,
        Transaction=record,
        Replayed=replayed,
    )


def ApplyMutation(
    store: LedgerStore,
    child: ChildAccount,
    amount: Decimal,
    transaction_type: str,
    description: str | None,
    *,
    related_chore_id: int | None = None,
    related_goal_id: int | None = None,
    actor_user_id: int | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> MutationResult:
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {transaction_type}")
    value = ToAmount(amount)
    if value == ZERO:
        raise ValidationError("Amount must not be zero.")

    current = ToAmount(child.Balance)
    new_balance = current + value
    if value < ZERO and new_balance < ZERO:
        raise InsufficientFundsError(
            "Insufficient balance for this transaction.",
            {"balance": FormatAmount(current), "requested": FormatAmount(-value)},
        )

    timestamp = now or UtcNow()
    store.WriteBalance(child, new_balance, timestamp)
    record = store.InsertTransaction(
        child.Id,
        transaction_type,
        description,
        value,
        related_chore_id=related_chore_id,
        related_goal_id=related_goal_id,
        actor_user_id=actor_user_id,
        idempotency_key=idempotency_key,
        now=timestamp,
    )
    logger.info(
        "mutation child=%s type=%s amount=%s balance=%s transaction=%s",
        child.Id,
        transaction_type,
        FormatAmount(value),
        FormatAmount(new_balance),
        record.Id,
    )
    return BuildMutationResult(child, record, replayed=False)


PreCheck = Callable[[LedgerStore, ChildAccount, Decimal], None]


class MutationService:
    """Request-scoped entry point for single-entity balance mutations."""

    def __init__(self, db: Session, settings: LedgerSettings | None = None) -> None:
        self.Store = LedgerStore(db)
        self.Settings = settings or LedgerSettings()

    def Apply(
        self,
        child_id: int,
        amount: Decimal,
        transaction_type: str,
        description: str | None,
        *,
        parent_user_id: int | None = None,
        actor_user_id: int | None = None,
        idempotency_key: str | None = None,
        pre_check: PreCheck | None = None,
        now: datetime | None = None,
    ) -> MutationResult:
        value = ToAmount(amount)
        with self.Store.Transaction() as store:
            child = store.LockChild(child_id, parent_user_id)
            replay = store.FindByIdempotencyKey(child.Id, idempotency_key, transaction_type)
            if replay is not None:
                logger.info("mutation replay child=%s key=%s transaction=%s", child.Id, idempotency_key, replay.Id)
                return BuildMutationResult(child, replay, replayed=True)
            if pre_check is not None:
                pre_check(store, child, value)
            return ApplyMutation(
                store,
                child,
                value,
                transaction_type,
                description,
                actor_user_id=actor_user_id,
                idempotency_key=idempotency_key,
                now=now,
            )
