from decimal import Decimal

import pytest
from fastapi import HTTPException
from pydantic import ValidationError as PydanticValidationError

from kidledger.core.errors import TransientError
from kidledger.modules.auth.deps import UserContext
from kidledger.modules.ledger import router as ledger_router
from kidledger.modules.ledger.schemas import (
    AdjustmentCreate,
    ChildCreate,
    ChildSettingsUpdate,
    ChoreCreate,
    GoalContributionCreate,
    GoalCreate,
    SpendingCreate,
)

PARENT = UserContext(Id=1, Username="parent", Role="Parent")


def _Child(child_id: int) -> UserContext:
    return UserContext(Id=child_id, Username="kid", Role="Child")


def _CreateChild(db, name: str = "Ava", balance: str = "10.00"):
    return ledger_router.CreateChildAccount(
        ChildCreate(Name=name, InitialBalance=Decimal(balance)),
        db=db,
        user=PARENT,
    )


def _Spend(db, settings, child_id: int, amount: str, key: str | None = None):
    return ledger_router.RecordMySpending(
        SpendingCreate(Amount=Decimal(amount), Description="snack"),
        idempotency_key=key,
        db=db,
        user=_Child(child_id),
        settings=settings,
    )


def test_child_spend_returns_string_money(db, settings):
    child = _CreateChild(db)
    assert child.Balance == "10.00"

    response = _Spend(db, settings, child.Id, "4.00")

    assert response.NewBalance == "6.00"
    assert response.Replayed is False


def test_overspend_maps_to_bad_request_with_kind(db, settings):
    child = _CreateChild(db, balance="5.00")

    with pytest.raises(HTTPException) as exc_info:
        _Spend(db, settings, child.Id, "8.00")

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["kind"] == "InsufficientFundsError"
    assert exc_info.value.detail["balance"] == "5.00"


def test_spending_limit_detail_carries_remaining(db, settings):
    child = _CreateChild(db, balance="50.00")
    ledger_router.UpdateChildAccount(
        child.Id,
        ChildSettingsUpdate(SpendingLimit=Decimal("15.00"), SpendingLimitFrequency="Weekly"),
        db=db,
        user=PARENT,
    )
    _Spend(db, settings, child.Id, "12.00")

    with pytest.raises(HTTPException) as exc_info:
        _Spend(db, settings, child.Id, "5.00")

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["kind"] == "PolicyViolationError"
    assert exc_info.value.detail["remaining"] == "3.00"


def test_replayed_spend_is_flagged(db, settings):
    child = _CreateChild(db)
    first = _Spend(db, settings, child.Id, "1.00", key="abc")
    second = _Spend(db, settings, child.Id, "1.00", key="abc")
    assert second.Replayed is True
    assert second.TransactionId == first.TransactionId
    assert second.NewBalance == "9.00"


def test_duplicate_child_maps_to_conflict(db):
    _CreateChild(db, name="Ben")
    with pytest.raises(HTTPException) as exc_info:
        _CreateChild(db, name="Ben")
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["kind"] == "ConflictError"


def test_foreign_child_maps_to_not_found(db):
    child = _CreateChild(db)
    stranger = UserContext(Id=99, Username="other", Role="Parent")
    with pytest.raises(HTTPException) as exc_info:
        ledger_router.AdjustChildBalance(
            child.Id,
            AdjustmentCreate(Amount=Decimal("1.00"), Description="gift"),
            idempotency_key=None,
            db=db,
            user=stranger,
        )
    assert exc_info.value.status_code == 404


def test_goal_contribution_round_trip(db):
    child = _CreateChild(db, balance="30.00")
    goal = ledger_router.CreateMyGoal(
        GoalCreate(Name="Bike", TargetAmount=Decimal("20.00")),
        db=db,
        user=_Child(child.Id),
    )

    response = ledger_router.ContributeToMyGoal(
        goal.Id,
        GoalContributionCreate(Amount=Decimal("25.00")),
        idempotency_key=None,
        db=db,
        user=_Child(child.Id),
    )

    assert response.EffectiveAmount == "20.00"
    assert response.NewBalance == "10.00"
    assert response.Goal.IsComplete is True
    deleted = ledger_router.DeleteMyGoal(goal.Id, db=db, user=_Child(child.Id))
    assert deleted.RefundedAmount == "20.00"
    assert deleted.NewBalance == "30.00"


def test_chore_flow_through_routes(db, settings):
    child = _CreateChild(db, balance="0")
    chore = ledger_router.CreateFamilyChore(
        ChoreCreate(Title="Dishes", Points=100, AssignedChildId=child.Id),
        db=db,
        user=PARENT,
    )

    with pytest.raises(HTTPException) as exc_info:
        ledger_router.ApproveFamilyChore(chore.Id, db=db, user=PARENT, settings=settings)
    assert exc_info.value.detail["kind"] == "PolicyViolationError"

    completed = ledger_router.CompleteMyChore(chore.Id, db=db, user=_Child(child.Id))
    approved = ledger_router.ApproveFamilyChore(chore.Id, db=db, user=PARENT, settings=settings)
    dashboard = ledger_router.GetChildDashboard(db=db, user=_Child(child.Id))

    assert completed.Status == "Completed"
    assert approved.Chore.Status == "Approved"
    assert approved.RewardAmount == "1.00"
    assert dashboard.Balance == "1.00"
    assert dashboard.PendingChoresCount == 0


def test_transactions_listing_and_reconcile(db, settings):
    child = _CreateChild(db)
    _Spend(db, settings, child.Id, "2.00")

    mine = ledger_router.ListMyTransactions(
        transaction_type=None,
        limit=None,
        offset=0,
        db=db,
        user=_Child(child.Id),
        settings=settings,
    )
    family = ledger_router.ListFamilyTransactions(
        child_id=None,
        transaction_type="Spending",
        limit=None,
        offset=0,
        db=db,
        user=PARENT,
        settings=settings,
    )
    report = ledger_router.ReconcileChildLedger(child.Id, db=db, user=PARENT)

    assert [item.Amount for item in mine.Transactions] == ["-2.00", "10.00"]
    assert [item.Type for item in family.Transactions] == ["Spending"]
    assert report.IsBalanced is True
    assert report.LedgerTotal == "8.00"


def test_unknown_transaction_type_is_bad_request(db, settings):
    child = _CreateChild(db)
    with pytest.raises(HTTPException) as exc_info:
        ledger_router.ListMyTransactions(
            transaction_type="Bogus",
            limit=None,
            offset=0,
            db=db,
            user=_Child(child.Id),
            settings=settings,
        )
    assert exc_info.value.status_code == 400


def test_transient_errors_map_to_service_unavailable():
    with pytest.raises(HTTPException) as exc_info:
        ledger_router._handle_ledger_error(TransientError("The ledger is temporarily unavailable. Please retry."))
    assert exc_info.value.status_code == 503
    assert exc_info.value.detail["kind"] == "TransientError"


def test_request_models_reject_bad_money():
    with pytest.raises(PydanticValidationError):
        SpendingCreate(Amount=Decimal("1.234"), Description="snack")
    with pytest.raises(PydanticValidationError):
        SpendingCreate(Amount=Decimal("-1.00"), Description="snack")
    with pytest.raises(PydanticValidationError):
        ChoreCreate(Title="Dishes", Points=-5)


def test_parent_reads_single_chore(db):
    child = _CreateChild(db)
    chore = ledger_router.CreateFamilyChore(
        ChoreCreate(Title="Dishes", Points=10, AssignedChildId=child.Id),
        db=db,
        user=PARENT,
    )

    found = ledger_router.GetFamilyChore(chore.Id, db=db, user=PARENT)
    assert found.Title == "Dishes"
    assert found.AssignedChildId == child.Id

    stranger = UserContext(Id=99, Username="other", Role="Parent")
    with pytest.raises(HTTPException) as exc_info:
        ledger_router.GetFamilyChore(chore.Id, db=db, user=stranger)
    assert exc_info.value.status_code == 404


def test_null_allowance_flag_is_bad_request(db):
    child = _CreateChild(db)
    with pytest.raises(HTTPException) as exc_info:
        ledger_router.UpdateChildAccount(
            child.Id,
            ChildSettingsUpdate.model_validate({"AllowanceEnabled": None}),
            db=db,
            user=PARENT,
        )
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["kind"] == "ValidationError"


def test_family_transactions_carry_labels(db, settings):
    child = _CreateChild(db, name="Cal", balance="10.00")
    goal = ledger_router.CreateMyGoal(
        GoalCreate(Name="Bike", TargetAmount=Decimal("50.00")),
        db=db,
        user=_Child(child.Id),
    )
    ledger_router.ContributeToMyGoal(
        goal.Id,
        GoalContributionCreate(Amount=Decimal("2.00")),
        idempotency_key=None,
        db=db,
        user=_Child(child.Id),
    )

    family = ledger_router.ListFamilyTransactions(
        child_id=None,
        transaction_type=None,
        limit=None,
        offset=0,
        db=db,
        user=PARENT,
        settings=settings,
    )

    labels = {item.Type: item for item in family.Transactions}
    assert labels["GoalContribution"].ChildName == "Cal"
    assert labels["GoalContribution"].RelatedGoalName == "Bike"
    assert labels["InitialBalance"].RelatedGoalName is None
    assert labels["InitialBalance"].RelatedChoreTitle is None
