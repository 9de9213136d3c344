from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from kidledger.db import LEDGER_SCHEMA, Base
from kidledger.modules.ledger.utils.dates import UtcNow

TRANSACTION_SPENDING = "Spending"
TRANSACTION_CHORE_REWARD = "ChoreReward"
TRANSACTION_MANUAL_ADJUSTMENT = "ManualAdjustment"
TRANSACTION_GOAL_CONTRIBUTION = "GoalContribution"
TRANSACTION_GOAL_REFUND = "GoalRefund"
TRANSACTION_PARENT_TRANSFER = "ParentTransfer"
TRANSACTION_ALLOWANCE = "Allowance"
TRANSACTION_INITIAL_BALANCE = "InitialBalance"

TRANSACTION_TYPES = {
    TRANSACTION_SPENDING,
    TRANSACTION_CHORE_REWARD,
    TRANSACTION_MANUAL_ADJUSTMENT,
    TRANSACTION_GOAL_CONTRIBUTION,
    TRANSACTION_GOAL_REFUND,
    TRANSACTION_PARENT_TRANSFER,
    TRANSACTION_ALLOWANCE,
    TRANSACTION_INITIAL_BALANCE,
}

CHORE_STATUS_PENDING = "Pending"
CHORE_STATUS_COMPLETED = "Completed"
CHORE_STATUS_APPROVED = "Approved"

FREQUENCY_WEEKLY = "Weekly"
FREQUENCY_MONTHLY = "Monthly"


class ChildAccount(Base):
    __tablename__ = "children"
    __table_args__ = (
        UniqueConstraint("ParentUserId", "Name", name="uq_ledger_children_parent_name"),
        CheckConstraint("Balance >= 0", name="ck_ledger_children_balance_non_negative"),
        {"schema": LEDGER_SCHEMA},
    )

    Id = Column(Integer, primary_key=True, index=True)
    ParentUserId = Column(Integer, nullable=False, index=True)
    Name = Column(String(100), nullable=False)
    Balance = Column(Numeric(12, 2), nullable=False, default=0)
    SpendingLimit = Column(Numeric(12, 2))
    SpendingLimitFrequency = Column(String(20))
    AllowanceEnabled = Column(Boolean, nullable=False, default=False)
    AllowanceAmount = Column(Numeric(12, 2))
    AllowanceFrequency = Column(String(20))
    CreatedAt = Column(DateTime(timezone=True), default=UtcNow, nullable=False)
    UpdatedAt = Column(DateTime(timezone=True), default=UtcNow, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "ux_ledger_transactions_idempotency",
            "ChildId",
            "IdempotencyKey",
            unique=True,
            mssql_where=text("IdempotencyKey IS NOT NULL"),
        ),
        Index("ix_ledger_transactions_child_type_date", "ChildId", "Type", "Date"),
        {"schema": LEDGER_SCHEMA},
    )

    Id = Column(Integer, primary_key=True, index=True)
    ChildId = Column(Integer, ForeignKey(f"{LEDGER_SCHEMA}.children.Id"), nullable=False, index=True)
    Type = Column(String(40), nullable=False)
    Description = Column(String(300))
    Amount = Column(Numeric(12, 2), nullable=False)
    RelatedChoreId = Column(Integer)
    RelatedGoalId = Column(Integer)
    IdempotencyKey = Column(String(100))
    CreatedByUserId = Column(Integer)
    Date = Column(DateTime(timezone=True), default=UtcNow, nullable=False)


class SavingsGoal(Base):
    __tablename__ = "savings_goals"
    __table_args__ = (
        CheckConstraint("TargetAmount > 0", name="ck_ledger_goals_target_positive"),
        CheckConstraint(
            "CurrentAmount >= 0 AND CurrentAmount <= TargetAmount",
            name="ck_ledger_goals_current_in_range",
        ),
        {"schema": LEDGER_SCHEMA},
    )

    Id = Column(Integer, primary_key=True, index=True)
    ChildId = Column(Integer, ForeignKey(f"{LEDGER_SCHEMA}.children.Id"), nullable=False, index=True)
    Name = Column(String(200), nullable=False)
    TargetAmount = Column(Numeric(12, 2), nullable=False)
    CurrentAmount = Column(Numeric(12, 2), nullable=False, default=0)
    CreatedAt = Column(DateTime(timezone=True), default=UtcNow, nullable=False)
    UpdatedAt = Column(DateTime(timezone=True), default=UtcNow, nullable=False)


class Chore(Base):
    __tablename__ = "chores"
    __table_args__ = (
        CheckConstraint("Points >= 0", name="ck_ledger_chores_points_non_negative"),
        {"schema": LEDGER_SCHEMA},
    )

    Id = Column(Integer, primary_key=True, index=True)
    ParentUserId = Column(Integer, nullable=False, index=True)
    Title = Column(String(200), nullable=False)
    Description = Column(Text)
    Points = Column(Integer, nullable=False, default=0)
    AssignedChildId = Column(Integer, index=True)
    Status = Column(String(20), nullable=False, default=CHORE_STATUS_PENDING)
    CreatedAt = Column(DateTime(timezone=True), default=UtcNow, nullable=False)
    UpdatedAt = Column(DateTime(timezone=True), default=UtcNow, nullable=False)
