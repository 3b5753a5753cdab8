"""create pipeline and credit ledger schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("shop_domain", sa.String(), nullable=True),
        sa.Column("subscription_tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(op.f("ix_users_shop_domain"), "users", ["shop_domain"], unique=False)

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("total_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("used_credits >= 0", name="ck_credit_accounts_used_non_negative"),
        sa.CheckConstraint("used_credits <= total_credits", name="ck_credit_accounts_used_within_total"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("feature_type", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_transactions_user_id"), "credit_transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_reference_id"), "credit_transactions", ["reference_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)

    op.create_table(
        "generation_projects",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("base_model_id", sa.String(), nullable=True),
        sa.Column("clothing_image_url", sa.String(), nullable=True),
        sa.Column("result_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generation_projects_user_id"), "generation_projects", ["user_id"], unique=False)

    op.create_table(
        "pipeline_executions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("subscription_tier", sa.String(), nullable=False),
        sa.Column("quality", sa.String(), nullable=False, server_default="standard"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("enabled_steps", sa.JSON(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_poses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_poses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_poses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_refunded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("clothing_image_url", sa.String(), nullable=False),
        sa.Column("gender", sa.String(), nullable=False, server_default="female"),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits_used <= credits_reserved", name="ck_pipeline_executions_used_within_reserved"),
        sa.ForeignKeyConstraint(["project_id"], ["generation_projects.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_pipeline_executions_user_id"), "pipeline_executions", ["user_id"], unique=False)
    op.create_index(op.f("ix_pipeline_executions_project_id"), "pipeline_executions", ["project_id"], unique=False)
    op.create_index(op.f("ix_pipeline_executions_status"), "pipeline_executions", ["status"], unique=False)
    op.create_index(op.f("ix_pipeline_executions_created_at"), "pipeline_executions", ["created_at"], unique=False)

    op.create_table(
        "generation_results",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pose_id", sa.String(), nullable=False),
        sa.Column("pose_name", sa.String(), nullable=True),
        sa.Column("model_image_url", sa.String(), nullable=False),
        sa.Column("clothing_image_url", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="processing"),
        sa.Column("final_image_url", sa.String(), nullable=True),
        sa.Column("step_results", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["execution_id"], ["pipeline_executions.id"]),
        sa.ForeignKeyConstraint(["project_id"], ["generation_projects.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generation_results_execution_id"), "generation_results", ["execution_id"], unique=False)
    op.create_index(op.f("ix_generation_results_project_id"), "generation_results", ["project_id"], unique=False)
    op.create_index(op.f("ix_generation_results_user_id"), "generation_results", ["user_id"], unique=False)
    op.create_index(op.f("ix_generation_results_status"), "generation_results", ["status"], unique=False)


def downgrade() -> None:
    op.drop_table("generation_results")
    op.drop_table("pipeline_executions")
    op.drop_table("generation_projects")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
    op.drop_table("users")
