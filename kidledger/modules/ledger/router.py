import logging
from threading import Lock

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import inspect
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session

from kidledger.core.config import GetLedgerSettings, LedgerSettings
from kidledger.core.errors import (
    ConflictError,
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    PolicyViolationError,
    TransientError,
    ValidationError,
)
from kidledger.core.migrations import RunMigrations
from kidledger.db import LEDGER_SCHEMA, GetDb
from kidledger.modules.auth.deps import UserContext
from kidledger.modules.ledger.models import ChildAccount, Chore, SavingsGoal, Transaction
from kidledger.modules.ledger.schemas import (
    AdjustmentCreate,
    AllowanceCreate,
    ChildCreate,
    ChildDeleteResponse,
    ChildOut,
    ChildSettingsUpdate,
    ChoreApprovalResponse,
    ChoreCreate,
    ChoreListResponse,
    ChoreOut,
    ChoreUpdate,
    DashboardOut,
    GoalContributionCreate,
    GoalContributionResponse,
    GoalCreate,
    GoalDeleteResponse,
    GoalListResponse,
    GoalOut,
    MutationResponse,
    ParentGoalContributionCreate,
    ReconciliationOut,
    SpendingCreate,
    TransactionListResponse,
    TransactionOut,
)
from kidledger.modules.ledger.services.accounts_service import (
    AdjustBalance,
    CreateChild,
    DeleteChild,
    GetChild,
    GetDashboard,
    GrantAllowance,
    LabelTransactions,
    ListChildren,
    ListTransactions,
    Reconcile,
    RecordSpending,
    TransactionLabels,
    UpdateChildSettings,
)
from kidledger.modules.ledger.services.chores_service import (
    ApproveChore,
    CreateChore,
    DeleteChore,
    GetChore,
    ListChildChores,
    ListChores,
    MarkChoreComplete,
    UpdateChore,
)
from kidledger.modules.ledger.services.goals_service import (
    ContributeToGoal,
    CreateGoal,
    DeleteGoal,
    GoalMutationResult,
    ListGoals,
    ListGoalsForParent,
    ParentContributeToGoal,
)
from kidledger.modules.ledger.services.mutation_service import MutationResult
from kidledger.modules.ledger.utils.money import FormatAmount, ToAmount
from kidledger.modules.ledger.utils.rbac import RequireChild, RequireParent

_ledger_storage_lock = Lock()
_ledger_storage_ready = False
logger = logging.getLogger("ledger")

_LEDGER_TABLES = [ChildAccount, Transaction, SavingsGoal, Chore]

_ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientFundsError: status.HTTP_400_BAD_REQUEST,
    PolicyViolationError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
    TransientError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _handle_db_error(exc: Exception) -> None:
    logger.exception("ledger database error")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Ledger storage not initialized. Run alembic upgrade head.",
    ) from exc


def _handle_ledger_error(exc: Exception) -> None:
    if isinstance(exc, LedgerError):
        status_code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
        logger.info("ledger request rejected kind=%s message=%s", exc.Kind, exc.Message)
        raise HTTPException(status_code=status_code, detail=exc.ToPayload()) from exc
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"kind": ValidationError.Kind, "message": str(exc)},
    ) from exc


def _MissingLedgerTables(db: Session) -> list[str]:
    bind = db.get_bind()
    # SQLite has no schemas; tables are created unqualified there.
    schema = None if bind.dialect.name == "sqlite" else LEDGER_SCHEMA
    inspector = inspect(bind)
    return [
        table.__tablename__
        for table in _LEDGER_TABLES
        if not inspector.has_table(table.__tablename__, schema=schema)
    ]


def EnsureLedgerStorageReady(db: Session = Depends(GetDb)) -> None:
    global _ledger_storage_ready
    if _ledger_storage_ready:
        return

    with _ledger_storage_lock:
        if _ledger_storage_ready:
            return
        missing = _MissingLedgerTables(db)
        if missing:
            logger.info("ledger storage missing tables=%s", ",".join(missing))
            try:
                RunMigrations()
            except Exception as exc:
                logger.exception("ledger storage migration failed")
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Ledger storage migration failed. Check server logs.",
                ) from exc
            missing = _MissingLedgerTables(db)
        if missing:
            logger.error("ledger storage still missing tables=%s", ",".join(missing))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Ledger storage migration failed. Check server logs.",
            )
        _ledger_storage_ready = True


router = APIRouter(
    prefix="/api",
    tags=["ledger"],
    dependencies=[Depends(EnsureLedgerStorageReady)],
)


def _OptionalAmount(value) -> str | None:
    return FormatAmount(value) if value is not None else None


def _BuildChildOut(child: ChildAccount) -> ChildOut:
    return ChildOut(
        Id=child.Id,
        ParentUserId=child.ParentUserId,
        Name=child.Name,
        Balance=FormatAmount(child.Balance),
        SpendingLimit=_OptionalAmount(child.SpendingLimit),
        SpendingLimitFrequency=child.SpendingLimitFrequency,
        AllowanceEnabled=bool(child.AllowanceEnabled),
        AllowanceAmount=_OptionalAmount(child.AllowanceAmount),
        AllowanceFrequency=child.AllowanceFrequency,
        CreatedAt=child.CreatedAt,
        UpdatedAt=child.UpdatedAt,
    )


def _BuildTransactionOut(record: Transaction, labels: TransactionLabels | None = None) -> TransactionOut:
    labels = labels or TransactionLabels()
    return TransactionOut(
        Id=record.Id,
        ChildId=record.ChildId,
        Type=record.Type,
        Description=record.Description,
        Amount=FormatAmount(record.Amount),
        RelatedChoreId=record.RelatedChoreId,
        RelatedGoalId=record.RelatedGoalId,
        CreatedByUserId=record.CreatedByUserId,
        Date=record.Date,
        ChildName=labels.ChildName,
        RelatedChoreTitle=labels.RelatedChoreTitle,
        RelatedGoalName=labels.RelatedGoalName,
    )


def _BuildTransactionList(db: Session, records: list[Transaction]) -> TransactionListResponse:
    labels = LabelTransactions(db, records)
    return TransactionListResponse(
        Transactions=[_BuildTransactionOut(record, labels.get(record.Id)) for record in records]
    )


def _BuildMutationResponse(result: MutationResult) -> MutationResponse:
    return MutationResponse(
        NewBalance=FormatAmount(result.NewBalance),
        TransactionId=result.TransactionId,
        TransactionDate=result.TransactionDate,
        Replayed=result.Replayed,
    )


def _BuildGoalOut(goal: SavingsGoal) -> GoalOut:
    return GoalOut(
        Id=goal.Id,
        ChildId=goal.ChildId,
        Name=goal.Name,
        TargetAmount=FormatAmount(goal.TargetAmount),
        CurrentAmount=FormatAmount(goal.CurrentAmount),
        IsComplete=ToAmount(goal.CurrentAmount) >= ToAmount(goal.TargetAmount),
        CreatedAt=goal.CreatedAt,
        UpdatedAt=goal.UpdatedAt,
    )


def _BuildContributionResponse(result: GoalMutationResult) -> GoalContributionResponse:
    return GoalContributionResponse(
        Goal=_BuildGoalOut(result.Goal),
        NewBalance=FormatAmount(result.NewBalance),
        TransactionId=result.TransactionId,
        EffectiveAmount=FormatAmount(result.EffectiveAmount),
        Replayed=result.Replayed,
    )


def _BuildChoreOut(chore: Chore) -> ChoreOut:
    return ChoreOut(
        Id=chore.Id,
        ParentUserId=chore.ParentUserId,
        Title=chore.Title,
        Description=chore.Description,
        Points=chore.Points,
        AssignedChildId=chore.AssignedChildId,
        Status=chore.Status,
        CreatedAt=chore.CreatedAt,
        UpdatedAt=chore.UpdatedAt,
    )


# Child routes


@router.get("/child/dashboard", response_model=DashboardOut)
def GetChildDashboard(
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> DashboardOut:
    try:
        summary = GetDashboard(db, user.Id)
        return DashboardOut(
            Balance=FormatAmount(summary.Balance),
            PendingChoresCount=summary.PendingChoresCount,
            ActiveGoalsCount=summary.ActiveGoalsCount,
        )
    except LedgerError as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/child/chores", response_model=ChoreListResponse)
def ListMyChores(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> ChoreListResponse:
    try:
        chores = ListChildChores(db, user.Id, status_filter)
        return ChoreListResponse(Chores=[_BuildChoreOut(chore) for chore in chores])
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/child/chores/{chore_id}/complete", response_model=ChoreOut)
def CompleteMyChore(
    chore_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> ChoreOut:
    try:
        chore = MarkChoreComplete(db, user.Id, chore_id)
        return _BuildChoreOut(chore)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/child/savings-goals", response_model=GoalListResponse)
def ListMyGoals(
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> GoalListResponse:
    try:
        goals = ListGoals(db, user.Id)
        return GoalListResponse(Goals=[_BuildGoalOut(goal) for goal in goals])
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/child/savings-goals", response_model=GoalOut, status_code=status.HTTP_201_CREATED)
def CreateMyGoal(
    payload: GoalCreate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> GoalOut:
    try:
        goal = CreateGoal(db, user.Id, payload.Name, payload.TargetAmount)
        return _BuildGoalOut(goal)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/child/savings-goals/{goal_id}/contribute", response_model=GoalContributionResponse)
def ContributeToMyGoal(
    goal_id: int,
    payload: GoalContributionCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=100),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> GoalContributionResponse:
    try:
        result = ContributeToGoal(db, user.Id, goal_id, payload.Amount, idempotency_key=idempotency_key)
        return _BuildContributionResponse(result)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.delete("/child/savings-goals/{goal_id}", response_model=GoalDeleteResponse)
def DeleteMyGoal(
    goal_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
) -> GoalDeleteResponse:
    try:
        result = DeleteGoal(db, user.Id, goal_id)
        return GoalDeleteResponse(
            GoalId=result.GoalId,
            RefundedAmount=FormatAmount(result.RefundedAmount),
            NewBalance=FormatAmount(result.NewBalance),
            TransactionId=result.TransactionId,
        )
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/child/transactions", response_model=TransactionListResponse)
def ListMyTransactions(
    transaction_type: str | None = Query(default=None, alias="type"),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
    settings: LedgerSettings = Depends(GetLedgerSettings),
) -> TransactionListResponse:
    try:
        records = ListTransactions(db, [user.Id], transaction_type, limit, offset, settings)
        return _BuildTransactionList(db, records)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/child/transactions", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
def RecordMySpending(
    payload: SpendingCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=100),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireChild()),
    settings: LedgerSettings = Depends(GetLedgerSettings),
) -> MutationResponse:
    try:
        result = RecordSpending(
            db,
            user.Id,
            payload.Amount,
            payload.Description,
            idempotency_key=idempotency_key,
            settings=settings,
        )
        return _BuildMutationResponse(result)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


# Parent routes


@router.get("/parent/children", response_model=list[ChildOut])
def ListMyChildren(
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> list[ChildOut]:
    try:
        return [_BuildChildOut(child) for child in ListChildren(db, user.Id)]
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/parent/children", response_model=ChildOut, status_code=status.HTTP_201_CREATED)
def CreateChildAccount(
    payload: ChildCreate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildOut:
    try:
        child = CreateChild(db, user.Id, payload.Name, payload.InitialBalance)
        return _BuildChildOut(child)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/parent/children/{child_id}", response_model=ChildOut)
def GetChildAccount(
    child_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildOut:
    try:
        return _BuildChildOut(GetChild(db, child_id, user.Id))
    except LedgerError as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.put("/parent/children/{child_id}", response_model=ChildOut)
def UpdateChildAccount(
    child_id: int,
    payload: ChildSettingsUpdate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildOut:
    try:
        child = UpdateChildSettings(db, user.Id, child_id, payload.model_dump(exclude_unset=True))
        return _BuildChildOut(child)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.delete("/parent/children/{child_id}", response_model=ChildDeleteResponse)
def DeleteChildAccount(
    child_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildDeleteResponse:
    try:
        closing_balance = DeleteChild(db, user.Id, child_id)
        return ChildDeleteResponse(ChildId=child_id, ClosingBalance=FormatAmount(closing_balance))
    except LedgerError as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/parent/children/{child_id}/adjust", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
def AdjustChildBalance(
    child_id: int,
    payload: AdjustmentCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=100),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> MutationResponse:
    try:
        result = AdjustBalance(
            db,
            user.Id,
            child_id,
            payload.Amount,
            payload.Description,
            idempotency_key=idempotency_key,
        )
        return _BuildMutationResponse(result)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post(
    "/parent/children/{child_id}/allowance",
    response_model=MutationResponse,
    status_code=status.HTTP_201_CREATED,
)
def GrantChildAllowance(
    child_id: int,
    payload: AllowanceCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=100),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> MutationResponse:
    try:
        result = GrantAllowance(
            db,
            user.Id,
            child_id,
            payload.Amount,
            payload.Description,
            idempotency_key=idempotency_key,
        )
        return _BuildMutationResponse(result)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/parent/children/{child_id}/reconcile", response_model=ReconciliationOut)
def ReconcileChildLedger(
    child_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ReconciliationOut:
    try:
        GetChild(db, child_id, user.Id)
        report = Reconcile(db, child_id)
        return ReconciliationOut(
            ChildId=report.ChildId,
            Balance=FormatAmount(report.Balance),
            LedgerTotal=FormatAmount(report.LedgerTotal),
            IsBalanced=report.IsBalanced,
        )
    except LedgerError as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/parent/transactions", response_model=TransactionListResponse)
def ListFamilyTransactions(
    child_id: int | None = None,
    transaction_type: str | None = Query(default=None, alias="type"),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
    settings: LedgerSettings = Depends(GetLedgerSettings),
) -> TransactionListResponse:
    try:
        if child_id is not None:
            child_ids = [GetChild(db, child_id, user.Id).Id]
        else:
            child_ids = [child.Id for child in ListChildren(db, user.Id)]
        records = ListTransactions(db, child_ids, transaction_type, limit, offset, settings)
        return _BuildTransactionList(db, records)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/parent/chores", response_model=ChoreListResponse)
def ListFamilyChores(
    child_id: int | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChoreListResponse:
    try:
        chores = ListChores(db, user.Id, child_id, status_filter)
        return ChoreListResponse(Chores=[_BuildChoreOut(chore) for chore in chores])
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/parent/chores", response_model=ChoreOut, status_code=status.HTTP_201_CREATED)
def CreateFamilyChore(
    payload: ChoreCreate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChoreOut:
    try:
        chore = CreateChore(
            db,
            user.Id,
            payload.Title,
            payload.Points,
            description=payload.Description,
            assigned_child_id=payload.AssignedChildId,
        )
        return _BuildChoreOut(chore)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/parent/chores/{chore_id}", response_model=ChoreOut)
def GetFamilyChore(
    chore_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChoreOut:
    try:
        return _BuildChoreOut(GetChore(db, user.Id, chore_id))
    except LedgerError as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.put("/parent/chores/{chore_id}", response_model=ChoreOut)
def UpdateFamilyChore(
    chore_id: int,
    payload: ChoreUpdate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChoreOut:
    try:
        chore = UpdateChore(db, user.Id, chore_id, payload.model_dump(exclude_unset=True))
        return _BuildChoreOut(chore)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.delete("/parent/chores/{chore_id}", status_code=status.HTTP_204_NO_CONTENT)
def DeleteFamilyChore(
    chore_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> None:
    try:
        DeleteChore(db, user.Id, chore_id)
    except LedgerError as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/parent/chores/{chore_id}/approve", response_model=ChoreApprovalResponse)
def ApproveFamilyChore(
    chore_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
    settings: LedgerSettings = Depends(GetLedgerSettings),
) -> ChoreApprovalResponse:
    try:
        result = ApproveChore(db, user.Id, chore_id, settings=settings)
        return ChoreApprovalResponse(
            Chore=_BuildChoreOut(result.Chore),
            RewardAmount=FormatAmount(result.RewardAmount),
            NewBalance=FormatAmount(result.NewBalance),
            TransactionId=result.TransactionId,
        )
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/parent/savings-goals", response_model=GoalListResponse)
def ListFamilyGoals(
    child_id: int | None = None,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> GoalListResponse:
    try:
        goals = ListGoalsForParent(db, user.Id, child_id)
        return GoalListResponse(Goals=[_BuildGoalOut(goal) for goal in goals])
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/parent/savings-goals/{goal_id}/contribute", response_model=GoalContributionResponse)
def ContributeToChildGoal(
    goal_id: int,
    payload: ParentGoalContributionCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=100),
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> GoalContributionResponse:
    try:
        result = ParentContributeToGoal(
            db,
            user.Id,
            goal_id,
            payload.Amount,
            description=payload.Description,
            idempotency_key=idempotency_key,
        )
        return _BuildContributionResponse(result)
    except (LedgerError, ValueError) as exc:
        _handle_ledger_error(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)
