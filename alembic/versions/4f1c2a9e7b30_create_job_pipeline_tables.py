"""create_job_pipeline_tables

Revision ID: 4f1c2a9e7b30
Revises:
Create Date: 2026-10-17 09:12:41.208311

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4f1c2a9e7b30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLModel persists enum member names
creation_status = postgresql.ENUM(
    "CREATING", "COMPLETED", "FAILED", name="creationstatus", create_type=False
)
provider_status = postgresql.ENUM(
    "ACTIVE", "INACTIVE", name="providerstatus", create_type=False
)


def upgrade() -> None:
    """Create providers, credits, creations and anonymous trial tables."""
    bind = op.get_bind()
    creation_status.create(bind, checkfirst=True)
    provider_status.create(bind, checkfirst=True)

    op.create_table(
        "providers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("base_url", sa.String(), nullable=False),
        sa.Column("auth_token", sa.String(), nullable=True),
        sa.Column("status", provider_status, nullable=False),
        sa.Column("owner_user_id", sa.Integer(), nullable=True),
        sa.Column("methods", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_providers_status", "providers", ["status"])
    op.create_index("ix_providers_owner_user_id", "providers", ["owner_user_id"])

    # Balance never goes below zero; enforced by conditional UPDATEs
    op.create_table(
        "user_credits",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Numeric(14, 4), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "creations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("status", creation_status, nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_creations_user_id", "creations", ["user_id"])
    op.create_index("ix_creations_status", "creations", ["status"])

    op.create_table(
        "trial_creations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("prompt", sa.String(), nullable=True),
        sa.Column("source_trial_id", sa.Integer(), nullable=True),
        sa.Column("status", creation_status, nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trial_creations_client_id", "trial_creations", ["client_id"])
    op.create_index("ix_trial_creations_prompt", "trial_creations", ["prompt"])
    op.create_index("ix_trial_creations_status", "trial_creations", ["status"])
    op.create_index("ix_trial_creations_filename", "trial_creations", ["filename"])
    op.create_index("ix_trial_creations_created_at", "trial_creations", ["created_at"])

    op.create_table(
        "trial_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("prompt", sa.String(), nullable=False),
        sa.Column("trial_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["trial_id"], ["trial_creations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trial_requests_client_id", "trial_requests", ["client_id"])


def downgrade() -> None:
    """Drop all job pipeline tables."""
    op.drop_index("ix_trial_requests_client_id", table_name="trial_requests")
    op.drop_table("trial_requests")

    for column in ("created_at", "filename", "status", "prompt", "client_id"):
        op.drop_index(f"ix_trial_creations_{column}", table_name="trial_creations")
    op.drop_table("trial_creations")

    op.drop_index("ix_creations_status", table_name="creations")
    op.drop_index("ix_creations_user_id", table_name="creations")
    op.drop_table("creations")

    op.drop_table("user_credits")

    op.drop_index("ix_providers_owner_user_id", table_name="providers")
    op.drop_index("ix_providers_status", table_name="providers")
    op.drop_table("providers")

    bind = op.get_bind()
    provider_status.drop(bind, checkfirst=True)
    creation_status.drop(bind, checkfirst=True)
