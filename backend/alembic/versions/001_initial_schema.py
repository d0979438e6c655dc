"""initial schema: users, projects, meta connections, published ads, usage

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255)),
        sa.Column("full_name", sa.String(255)),
        sa.Column("avatar_url", sa.Text),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("last_login_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "projects",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(30), server_default="PENDING"),
        sa.Column("url_analysis", JSONB),
        sa.Column("analysing_points", JSONB),
        sa.Column("ad_set_proposals", JSONB),
        sa.Column("campaign_proposal", JSONB),
        sa.Column("adset_thumbnail_image", JSONB),
        sa.Column("ai_images", JSONB),
        sa.Column("meta_campaign_id", sa.String(50)),
        sa.Column("meta_campaign_name", sa.String(500)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_projects_user_id", "projects", ["user_id"])
    op.create_index("ix_projects_status", "projects", ["status"])
    op.create_index("ix_projects_created_at", "projects", ["created_at"])

    op.create_table(
        "meta_connections",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("access_token_encrypted", sa.Text, nullable=False, server_default=""),
        sa.Column("token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("fb_user_id", sa.String(50)),
        sa.Column("fb_user_name", sa.String(200)),
        sa.Column("fb_user_email", sa.String(255)),
        sa.Column("ad_accounts", JSONB),
        sa.Column("account_currency", sa.String(10)),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("connected_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_meta_connections_user_id", "meta_connections", ["user_id"], unique=True)

    op.create_table(
        "published_ads",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", UUID(as_uuid=True), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("campaign_name", sa.String(500), nullable=False),
        sa.Column("ad_set_id", sa.String(50), nullable=False),
        sa.Column("ad_account_id", sa.String(50), nullable=False),
        sa.Column("daily_budget", sa.Numeric(14, 2), server_default="0"),
        sa.Column("status", sa.String(30), server_default="published"),
        sa.Column("metadata", JSONB),
        sa.Column("published_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_published_ads_user_id", "published_ads", ["user_id"])
    op.create_index("ix_published_ads_project_id", "published_ads", ["project_id"])

    op.create_table(
        "subscription_usage",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ads_published_count", sa.Integer, server_default="0"),
        sa.Column("campaigns_count", sa.Integer, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscription_usage_user_id", "subscription_usage", ["user_id"], unique=True)


def downgrade() -> None:
    op.drop_table("subscription_usage")
    op.drop_table("published_ads")
    op.drop_table("meta_connections")
    op.drop_table("projects")
    op.drop_table("users")
