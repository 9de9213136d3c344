from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

# Money arrives as Decimal with at most two fractional digits and leaves as "12.34".


class ChildOut(BaseModel):
    Id: int
    ParentUserId: int
    Name: str
    Balance: str
    SpendingLimit: str | None = None
    SpendingLimitFrequency: str | None = None
    AllowanceEnabled: bool
    AllowanceAmount: str | None = None
    AllowanceFrequency: str | None = None
    CreatedAt: datetime
    UpdatedAt: datetime


class ChildCreate(BaseModel):
    Name: str = Field(min_length=1, max_length=100)
    InitialBalance: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class ChildSettingsUpdate(BaseModel):
    Name: str | None = Field(default=None, min_length=1, max_length=100)
    SpendingLimit: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    SpendingLimitFrequency: str | None = Field(default=None, max_length=20)
    AllowanceEnabled: bool | None = None
    AllowanceAmount: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    AllowanceFrequency: str | None = Field(default=None, max_length=20)


class ChildDeleteResponse(BaseModel):
    ChildId: int
    ClosingBalance: str


class DashboardOut(BaseModel):
    Balance: str
    PendingChoresCount: int
    ActiveGoalsCount: int


class TransactionOut(BaseModel):
    Id: int
    ChildId: int
    Type: str
    Description: str | None = None
    Amount: str
    RelatedChoreId: int | None = None
    RelatedGoalId: int | None = None
    CreatedByUserId: int | None = None
    Date: datetime
    ChildName: str | None = None
    RelatedChoreTitle: str | None = None
    RelatedGoalName: str | None = None


class TransactionListResponse(BaseModel):
    Transactions: list[TransactionOut]


class SpendingCreate(BaseModel):
    Amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    Description: str = Field(min_length=1, max_length=300)


class AdjustmentCreate(BaseModel):
    Amount: Decimal = Field(max_digits=12, decimal_places=2)
    Description: str = Field(min_length=1, max_length=300)


class AllowanceCreate(BaseModel):
    Amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    Description: str | None = Field(default=None, max_length=300)


class MutationResponse(BaseModel):
    NewBalance: str
    TransactionId: int
    TransactionDate: datetime
    Replayed: bool = False


class GoalOut(BaseModel):
    Id: int
    ChildId: int
    Name: str
    TargetAmount: str
    CurrentAmount: str
    IsComplete: bool
    CreatedAt: datetime
    UpdatedAt: datetime


class GoalCreate(BaseModel):
    Name: str = Field(min_length=1, max_length=200)
    TargetAmount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class GoalContributionCreate(BaseModel):
    Amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class ParentGoalContributionCreate(BaseModel):
    Amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    Description: str | None = Field(default=None, max_length=300)


class GoalContributionResponse(BaseModel):
    Goal: GoalOut
    NewBalance: str
    TransactionId: int
    EffectiveAmount: str
    Replayed: bool = False


class GoalDeleteResponse(BaseModel):
    GoalId: int
    RefundedAmount: str
    NewBalance: str
    TransactionId: int | None = None


class GoalListResponse(BaseModel):
    Goals: list[GoalOut]


class ChoreOut(BaseModel):
    Id: int
    ParentUserId: int
    Title: str
    Description: str | None = None
    Points: int
    AssignedChildId: int | None = None
    Status: str
    CreatedAt: datetime
    UpdatedAt: datetime


class ChoreCreate(BaseModel):
    Title: str = Field(min_length=1, max_length=200)
    Description: str | None = None
    Points: int = Field(ge=0)
    AssignedChildId: int | None = None


class ChoreUpdate(BaseModel):
    Title: str | None = Field(default=None, min_length=1, max_length=200)
    Description: str | None = None
    Points: int | None = Field(default=None, ge=0)
    AssignedChildId: int | None = None


class ChoreListResponse(BaseModel):
    Chores: list[ChoreOut]


class ChoreApprovalResponse(BaseModel):
    Chore: ChoreOut
    RewardAmount: str
    NewBalance: str
    TransactionId: int | None = None


class ReconciliationOut(BaseModel):
    ChildId: int
    Balance: str
    LedgerTotal: str
    IsBalanced: bool
