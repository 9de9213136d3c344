from decimal import Decimal

import pytest

from kidledger.core.errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from kidledger.modules.ledger.models import ChildAccount, SavingsGoal, Transaction
from kidledger.modules.ledger.services.accounts_service import CreateChild, Reconcile
from kidledger.modules.ledger.services.goals_service import (
    ContributeToGoal,
    CreateGoal,
    DeleteGoal,
    ListGoals,
    ListGoalsForParent,
    ParentContributeToGoal,
)

PARENT_ID = 1
OTHER_PARENT_ID = 2


def _Reload(db, model, record_id):
    record = db.get(model, record_id)
    if record is not None:
        db.refresh(record)
    return record


def _GoalWithSavings(db, balance: str, target: str, saved: str):
    child = CreateChild(db, PARENT_ID, "Ava", Decimal(balance))
    goal = CreateGoal(db, child.Id, "Bike", Decimal(target))
    if Decimal(saved) > 0:
        ContributeToGoal(db, child.Id, goal.Id, Decimal(saved))
    return child, goal


def test_contribution_is_capped_at_remaining_target(db):
    child, goal = _GoalWithSavings(db, "30.00", "20.00", "15.00")

    result = ContributeToGoal(db, child.Id, goal.Id, Decimal("10.00"))

    assert result.EffectiveAmount == Decimal("5.00")
    assert result.NewBalance == Decimal("10.00")
    assert _Reload(db, SavingsGoal, goal.Id).CurrentAmount == Decimal("20.00")
    record = db.get(Transaction, result.TransactionId)
    assert record.Type == "GoalContribution"
    assert record.Amount == Decimal("-5.00")
    assert record.RelatedGoalId == goal.Id
    assert record.Description == "Contribution to goal: Bike"
    assert Reconcile(db, child.Id).IsBalanced


def test_contribution_to_met_goal_is_rejected_without_effect(db):
    child, goal = _GoalWithSavings(db, "30.00", "20.00", "20.00")
    before = db.query(Transaction).filter(Transaction.ChildId == child.Id).count()

    with pytest.raises(PolicyViolationError) as exc_info:
        ContributeToGoal(db, child.Id, goal.Id, Decimal("1.00"))

    assert exc_info.value.Message == "This savings goal has already been met."
    assert _Reload(db, ChildAccount, child.Id).Balance == Decimal("10.00")
    assert _Reload(db, SavingsGoal, goal.Id).CurrentAmount == Decimal("20.00")
    assert db.query(Transaction).filter(Transaction.ChildId == child.Id).count() == before


def test_only_the_capped_amount_needs_to_be_affordable(db):
    child, goal = _GoalWithSavings(db, "21.00", "20.00", "18.00")

    result = ContributeToGoal(db, child.Id, goal.Id, Decimal("10.00"))

    assert result.EffectiveAmount == Decimal("2.00")
    assert result.NewBalance == Decimal("1.00")


def test_unaffordable_contribution_is_rejected(db):
    child, goal = _GoalWithSavings(db, "3.00", "20.00", "0")

    with pytest.raises(InsufficientFundsError):
        ContributeToGoal(db, child.Id, goal.Id, Decimal("10.00"))

    assert _Reload(db, ChildAccount, child.Id).Balance == Decimal("3.00")
    assert _Reload(db, SavingsGoal, goal.Id).CurrentAmount == Decimal("0.00")


def test_contribution_replay_returns_original(db):
    child, goal = _GoalWithSavings(db, "10.00", "20.00", "0")

    first = ContributeToGoal(db, child.Id, goal.Id, Decimal("4.00"), idempotency_key="tap-1")
    second = ContributeToGoal(db, child.Id, goal.Id, Decimal("4.00"), idempotency_key="tap-1")

    assert second.Replayed is True
    assert second.TransactionId == first.TransactionId
    assert second.EffectiveAmount == Decimal("4.00")
    assert _Reload(db, SavingsGoal, goal.Id).CurrentAmount == Decimal("4.00")
    assert _Reload(db, ChildAccount, child.Id).Balance == Decimal("6.00")


def test_contribution_to_another_childs_goal_is_not_found(db):
    child, goal = _GoalWithSavings(db, "10.00", "20.00", "0")
    sibling = CreateChild(db, PARENT_ID, "Ben", Decimal("10.00"))

    with pytest.raises(NotFoundError):
        ContributeToGoal(db, sibling.Id, goal.Id, Decimal("1.00"))


def test_delete_goal_refunds_savings(db):
    child, goal = _GoalWithSavings(db, "30.00", "20.00", "15.00")

    result = DeleteGoal(db, child.Id, goal.Id)

    assert result.RefundedAmount == Decimal("15.00")
    assert result.NewBalance == Decimal("30.00")
    assert db.get(SavingsGoal, goal.Id) is None
    refund = db.get(Transaction, result.TransactionId)
    assert refund.Type == "GoalRefund"
    assert refund.Amount == Decimal("15.00")
    assert refund.Description == "Refund from deleted goal: Bike"
    assert Reconcile(db, child.Id).IsBalanced


def test_delete_empty_goal_leaves_balance(db):
    child, goal = _GoalWithSavings(db, "30.00", "20.00", "0")

    result = DeleteGoal(db, child.Id, goal.Id)

    assert result.RefundedAmount == Decimal("0.00")
    assert result.TransactionId is None
    assert result.NewBalance == Decimal("30.00")
    assert ListGoals(db, child.Id) == []


def test_parent_contribution_keeps_balance_and_reconciles(db):
    child, goal = _GoalWithSavings(db, "5.00", "20.00", "0")

    result = ParentContributeToGoal(db, PARENT_ID, goal.Id, Decimal("25.00"))

    assert result.EffectiveAmount == Decimal("20.00")
    assert result.NewBalance == Decimal("5.00")
    assert _Reload(db, SavingsGoal, goal.Id).CurrentAmount == Decimal("20.00")
    types = [
        (record.Type, record.Amount)
        for record in db.query(Transaction)
        .filter(Transaction.ChildId == child.Id, Transaction.RelatedGoalId == goal.Id)
        .order_by(Transaction.Id.asc())
    ]
    assert types == [("ParentTransfer", Decimal("20.00")), ("GoalContribution", Decimal("-20.00"))]
    assert Reconcile(db, child.Id).IsBalanced


def test_parent_contribution_default_description(db):
    child, goal = _GoalWithSavings(db, "0", "20.00", "0")
    ParentContributeToGoal(db, PARENT_ID, goal.Id, Decimal("1.00"))
    transfer = (
        db.query(Transaction)
        .filter(Transaction.ChildId == child.Id, Transaction.Type == "ParentTransfer")
        .one()
    )
    assert transfer.Description == "Parent contribution to goal: Bike"
    assert transfer.CreatedByUserId == PARENT_ID


def test_parent_cannot_fund_other_familys_goal(db):
    child, goal = _GoalWithSavings(db, "5.00", "20.00", "0")
    with pytest.raises(NotFoundError):
        ParentContributeToGoal(db, OTHER_PARENT_ID, goal.Id, Decimal("1.00"))


def test_create_goal_validates_input(db):
    child = CreateChild(db, PARENT_ID, "Cal")
    with pytest.raises(ValidationError):
        CreateGoal(db, child.Id, "Lego", Decimal("0.00"))
    with pytest.raises(ValidationError):
        CreateGoal(db, child.Id, "  ", Decimal("5.00"))
    with pytest.raises(NotFoundError):
        CreateGoal(db, 999, "Lego", Decimal("5.00"))


def test_parent_goal_listing_is_scoped(db):
    child, goal = _GoalWithSavings(db, "5.00", "20.00", "0")
    stranger = CreateChild(db, OTHER_PARENT_ID, "Dee")
    CreateGoal(db, stranger.Id, "Drone", Decimal("50.00"))

    mine = ListGoalsForParent(db, PARENT_ID)
    filtered = ListGoalsForParent(db, PARENT_ID, child.Id)

    assert [item.Id for item in mine] == [goal.Id]
    assert [item.Id for item in filtered] == [goal.Id]


def test_contribution_key_reused_for_another_goal_conflicts(db):
    child, bike = _GoalWithSavings(db, "10.00", "20.00", "0")
    kite = CreateGoal(db, child.Id, "Kite", Decimal("5.00"))
    ContributeToGoal(db, child.Id, bike.Id, Decimal("2.00"), idempotency_key="save-1")

    with pytest.raises(ConflictError):
        ContributeToGoal(db, child.Id, kite.Id, Decimal("2.00"), idempotency_key="save-1")

    assert _Reload(db, SavingsGoal, kite.Id).CurrentAmount == Decimal("0.00")
    assert _Reload(db, ChildAccount, child.Id).Balance == Decimal("8.00")
