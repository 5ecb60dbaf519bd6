"""create feed tables

Revision ID: 5b2e7c1d9a40
Revises:
Create Date: 2026-10-18 00:00:00.000001

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "5b2e7c1d9a40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("icon", sa.Text(), nullable=True),
        sa.Column("product_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_table(
        "advertisers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("awin_id", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("website_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("product_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_table(
        "products",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("awin_product_id", sa.Text(), nullable=False, unique=True),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("original_title", sa.Text(), nullable=False),
        sa.Column("seo_title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("seo_description", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("original_price", sa.Float(), nullable=True),
        sa.Column("sale_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("discount_percentage", sa.Integer(), nullable=True),
        sa.Column("currency", sa.Text(), nullable=False, server_default="EUR"),
        sa.Column("product_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("affiliate_link", sa.Text(), nullable=False, server_default=""),
        sa.Column("brand", sa.Text(), nullable=True),
        sa.Column("merchant_category", sa.Text(), nullable=True),
        sa.Column("availability", sa.Text(), nullable=False, server_default="in_stock"),
        sa.Column("category_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("advertiser_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("advertisers.id"), nullable=True),
        sa.Column("variant_value", sa.Text(), nullable=True),
        sa.Column("parent_product_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_products_category_id", "products", ["category_id"])
    op.create_index("ix_products_advertiser_id", "products", ["advertiser_id"])
    op.create_index("ix_products_is_active", "products", ["is_active"])
    op.create_index("ix_products_created_at", "products", ["created_at"])

    op.create_table(
        "sync_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.Text(), nullable=False, server_default="manual"),
        sa.Column("status", sa.Text(), nullable=False, server_default="started"),
        sa.Column("stage", sa.Text(), nullable=False, server_default="idle"),
        sa.Column("stage_message", sa.Text(), nullable=True),
        sa.Column("estimated_remaining", sa.Text(), nullable=True),
        sa.Column("selection_policy", sa.Text(), nullable=False, server_default="full_pass"),
        sa.Column("total_products", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_products", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_batch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_batches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_removed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_batches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("state", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])

    op.create_table(
        "feed_settings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("feed_url", sa.Text(), nullable=True),
        sa.Column("seo_title_template", sa.Text(), nullable=True),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sync_interval_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("feed_settings")
    op.drop_index("ix_sync_runs_status", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_products_created_at", table_name="products")
    op.drop_index("ix_products_is_active", table_name="products")
    op.drop_index("ix_products_advertiser_id", table_name="products")
    op.drop_index("ix_products_category_id", table_name="products")
    op.drop_table("products")
    op.drop_table("advertisers")
    op.drop_table("categories")
