"""order engine tables

Revision ID: 3b7c1d9e2a40
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3b7c1d9e2a40"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("price_per_unit", sa.Float(), nullable=False, server_default="0"),
            sa.Column("available_quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("listing_status", sa.String(length=16), nullable=False, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("available_quantity >= 0", name="ck_products_available_quantity_nonneg"),
        )
        op.create_index("ix_products_owner_id", "products", ["owner_id"], unique=False)
        op.create_index("ix_products_listing_status", "products", ["listing_status"], unique=False)

    if not _table_exists(bind, "transactions"):
        op.create_table(
            "transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_price", sa.Float(), nullable=False),
            sa.Column("total_amount", sa.Float(), nullable=False),
            sa.Column("shipping_cost", sa.Float(), nullable=False, server_default="0"),
            sa.Column("shipping_address", sa.String(length=500), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("tracking_reference", sa.String(length=100), nullable=True),
            sa.Column("payment_reference", sa.String(length=64), nullable=True),
            sa.Column("payment_state", sa.String(length=32), nullable=True),
            sa.Column("note", sa.String(length=500), nullable=True),
            sa.Column("confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("shipped_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("buyer_id <> seller_id", name="ck_transactions_no_self_dealing"),
            sa.CheckConstraint("quantity > 0", name="ck_transactions_quantity_positive"),
        )
        op.create_index("ix_transactions_buyer_id", "transactions", ["buyer_id"], unique=False)
        op.create_index("ix_transactions_seller_id", "transactions", ["seller_id"], unique=False)
        op.create_index("ix_transactions_product_id", "transactions", ["product_id"], unique=False)
        op.create_index("ix_transactions_status", "transactions", ["status"], unique=False)
        op.create_index("ix_transactions_payment_reference", "transactions", ["payment_reference"], unique=True)
        op.create_index("ix_transactions_created_at", "transactions", ["created_at"], unique=False)

    if not _table_exists(bind, "transaction_transitions"):
        op.create_table(
            "transaction_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("transaction_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("actor_type", sa.String(length=16), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_transaction_transitions_transaction_id", "transaction_transitions", ["transaction_id"], unique=False)

    if not _table_exists(bind, "cart_items"):
        op.create_table(
            "cart_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("buyer_id", "product_id", name="uq_cart_items_buyer_product"),
        )
        op.create_index("ix_cart_items_buyer_id", "cart_items", ["buyer_id"], unique=False)
        op.create_index("ix_cart_items_product_id", "cart_items", ["product_id"], unique=False)

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("message", sa.Text(), nullable=False, server_default=""),
            sa.Column("category", sa.String(length=32), nullable=False, server_default="order_update"),
            sa.Column("related_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)
        op.create_index("ix_notifications_related_id", "notifications", ["related_id"], unique=False)

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="midtrans"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("gateway_state", sa.String(length=32), nullable=True),
            sa.Column("fraud_state", sa.String(length=32), nullable=True),
            sa.Column("target_status", sa.String(length=16), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        )
        op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"], unique=False)

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"], unique=False)

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"], unique=False)
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"], unique=False)
        op.create_index("ix_job_runs_ok", "job_runs", ["ok"], unique=False)


def downgrade():
    for table in (
        "job_runs",
        "idempotency_keys",
        "webhook_events",
        "notifications",
        "cart_items",
        "transaction_transitions",
        "transactions",
        "products",
    ):
        bind = op.get_bind()
        if _table_exists(bind, table):
            op.drop_table(table)
