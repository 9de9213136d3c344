"""create ledger tables

Revision ID: 0001_ledger_core
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_ledger_core"
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = "ledger"


def _utc_now_default():
    if op.get_bind().dialect.name == "mssql":
        return sa.text("SYSUTCDATETIME()")
    return sa.text("CURRENT_TIMESTAMP")


def _timestamp_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_utc_now_default(),
    )


def upgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "mssql":
        op.execute(
            "IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = 'ledger') EXEC('CREATE SCHEMA ledger')"
        )
    elif dialect == "postgresql":
        op.execute("CREATE SCHEMA IF NOT EXISTS ledger")

    op.create_table(
        "children",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("ParentUserId", sa.Integer(), nullable=False),
        sa.Column("Name", sa.String(length=100), nullable=False),
        sa.Column("Balance", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("SpendingLimit", sa.Numeric(12, 2), nullable=True),
        sa.Column("SpendingLimitFrequency", sa.String(length=20), nullable=True),
        sa.Column("AllowanceEnabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("AllowanceAmount", sa.Numeric(12, 2), nullable=True),
        sa.Column("AllowanceFrequency", sa.String(length=20), nullable=True),
        _timestamp_column("CreatedAt"),
        _timestamp_column("UpdatedAt"),
        sa.UniqueConstraint("ParentUserId", "Name", name="uq_ledger_children_parent_name"),
        sa.CheckConstraint("Balance >= 0", name="ck_ledger_children_balance_non_negative"),
        schema=SCHEMA,
    )
    op.create_index("ix_ledger_children_Id", "children", ["Id"], schema=SCHEMA)
    op.create_index("ix_ledger_children_ParentUserId", "children", ["ParentUserId"], schema=SCHEMA)

    op.create_table(
        "transactions",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("ChildId", sa.Integer(), sa.ForeignKey(f"{SCHEMA}.children.Id"), nullable=False),
        sa.Column("Type", sa.String(length=40), nullable=False),
        sa.Column("Description", sa.String(length=300), nullable=True),
        sa.Column("Amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("RelatedChoreId", sa.Integer(), nullable=True),
        sa.Column("RelatedGoalId", sa.Integer(), nullable=True),
        sa.Column("IdempotencyKey", sa.String(length=100), nullable=True),
        sa.Column("CreatedByUserId", sa.Integer(), nullable=True),
        _timestamp_column("Date"),
        schema=SCHEMA,
    )
    op.create_index("ix_ledger_transactions_Id", "transactions", ["Id"], schema=SCHEMA)
    op.create_index("ix_ledger_transactions_ChildId", "transactions", ["ChildId"], schema=SCHEMA)
    op.create_index(
        "ix_ledger_transactions_child_type_date",
        "transactions",
        ["ChildId", "Type", "Date"],
        schema=SCHEMA,
    )
    op.create_index(
        "ux_ledger_transactions_idempotency",
        "transactions",
        ["ChildId", "IdempotencyKey"],
        unique=True,
        schema=SCHEMA,
        mssql_where=sa.text("IdempotencyKey IS NOT NULL"),
    )

    op.create_table(
        "savings_goals",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("ChildId", sa.Integer(), sa.ForeignKey(f"{SCHEMA}.children.Id"), nullable=False),
        sa.Column("Name", sa.String(length=200), nullable=False),
        sa.Column("TargetAmount", sa.Numeric(12, 2), nullable=False),
        sa.Column("CurrentAmount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        _timestamp_column("CreatedAt"),
        _timestamp_column("UpdatedAt"),
        sa.CheckConstraint("TargetAmount > 0", name="ck_ledger_goals_target_positive"),
        sa.CheckConstraint(
            "CurrentAmount >= 0 AND CurrentAmount <= TargetAmount",
            name="ck_ledger_goals_current_in_range",
        ),
        schema=SCHEMA,
    )
    op.create_index("ix_ledger_savings_goals_Id", "savings_goals", ["Id"], schema=SCHEMA)
    op.create_index("ix_ledger_savings_goals_ChildId", "savings_goals", ["ChildId"], schema=SCHEMA)

    op.create_table(
        "chores",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("ParentUserId", sa.Integer(), nullable=False),
        sa.Column("Title", sa.String(length=200), nullable=False),
        sa.Column("Description", sa.Text(), nullable=True),
        sa.Column("Points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("AssignedChildId", sa.Integer(), nullable=True),
        sa.Column("Status", sa.String(length=20), nullable=False, server_default=sa.text("'Pending'")),
        _timestamp_column("CreatedAt"),
        _timestamp_column("UpdatedAt"),
        sa.CheckConstraint("Points >= 0", name="ck_ledger_chores_points_non_negative"),
        schema=SCHEMA,
    )
    op.create_index("ix_ledger_chores_Id", "chores", ["Id"], schema=SCHEMA)
    op.create_index("ix_ledger_chores_ParentUserId", "chores", ["ParentUserId"], schema=SCHEMA)
    op.create_index("ix_ledger_chores_AssignedChildId", "chores", ["AssignedChildId"], schema=SCHEMA)


def downgrade() -> None:
    op.drop_table("chores", schema=SCHEMA)
    op.drop_table("savings_goals", schema=SCHEMA)
    op.drop_table("transactions", schema=SCHEMA)
    op.drop_table("children", schema=SCHEMA)
