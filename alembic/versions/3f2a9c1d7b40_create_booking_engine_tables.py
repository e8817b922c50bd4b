"""Create booking engine tables

Revision ID: 3f2a9c1d7b40
Revises:
Create Date: 2025-08-04 10:12:31.204118

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op  # type: ignore[attr-defined]
from booking_engine.config import DB_SCHEMA

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7b40"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
Money = sa.Numeric(12, 2)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    schema = DB_SCHEMA

    op.create_table(
        "resources",
        sa.Column("kind", sa.String(16), primary_key=True),
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("host_id", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        schema=schema,
    )
    op.create_index("ix_resources_host_id", "resources", ["host_id"], schema=schema)

    op.create_table(
        "resource_locks",
        sa.Column("resource_kind", sa.String(16), primary_key=True),
        sa.Column("resource_id", sa.String(64), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False),
        schema=schema,
    )

    op.create_table(
        "availability_cells",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_kind", sa.String(16), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("resource_kind", "resource_id", "day", name="uq_availability_cell"),
        schema=schema,
    )
    op.create_index(
        "ix_availability_cells_booking_id", "availability_cells", ["booking_id"], schema=schema
    )
    op.create_index(
        "ix_availability_cells_status_updated",
        "availability_cells",
        ["status", "updated_at"],
        schema=schema,
    )

    op.create_table(
        "slot_holds",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_kind", sa.String(16), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        *_timestamps(),
        schema=schema,
    )
    op.create_index(
        "ix_slot_holds_resource_span",
        "slot_holds",
        ["resource_kind", "resource_id", "start_at", "end_at"],
        schema=schema,
    )
    op.create_index("ix_slot_holds_booking_id", "slot_holds", ["booking_id"], schema=schema)

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("guest_id", sa.String(64), nullable=False),
        sa.Column("host_id", sa.String(64), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=True),
        sa.Column("service_id", sa.String(64), nullable=True),
        sa.Column("booking_type", sa.String(16), nullable=False),
        sa.Column("booking_duration", sa.String(16), nullable=False),
        sa.Column("check_in", sa.Date(), nullable=True),
        sa.Column("check_out", sa.Date(), nullable=True),
        sa.Column("check_in_time", sa.String(5), nullable=True),
        sa.Column("check_out_time", sa.String(5), nullable=True),
        sa.Column("slot_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("slot_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("extension_hours", sa.Integer(), nullable=False),
        sa.Column("host_buffer_hours", sa.Integer(), nullable=False),
        sa.Column("adults", sa.Integer(), nullable=False),
        sa.Column("children", sa.Integer(), nullable=False),
        sa.Column("infants", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("base_amount", Money, nullable=False),
        sa.Column("extra_guest_cost", Money, nullable=False),
        sa.Column("cleaning_fee", Money, nullable=False),
        sa.Column("service_fee", Money, nullable=False),
        sa.Column("security_deposit", Money, nullable=False),
        sa.Column("hourly_extension_cost", Money, nullable=False),
        sa.Column("discount_amount", Money, nullable=False),
        sa.Column("subtotal", Money, nullable=False),
        sa.Column("platform_fee", Money, nullable=False),
        sa.Column("gst", Money, nullable=False),
        sa.Column("processing_fee", Money, nullable=False),
        sa.Column("total_amount", Money, nullable=False),
        sa.Column("host_earning", Money, nullable=False),
        sa.Column("pricing_breakdown", JSONType, nullable=False),
        sa.Column("coupon_code", sa.String(32), nullable=True),
        sa.Column("cancellation_policy", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payment_status", sa.String(24), nullable=False),
        sa.Column("transaction_id", sa.String(128), nullable=True),
        sa.Column("refund_amount", Money, nullable=False),
        sa.Column("refund_status", sa.String(24), nullable=False),
        sa.Column("host_message", sa.Text(), nullable=True),
        sa.Column("special_requests", sa.Text(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("checked_in", sa.Boolean(), nullable=False),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checked_in_by", sa.String(64), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("request_metadata", JSONType, nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "(listing_id IS NULL) <> (service_id IS NULL)", name="ck_bookings_one_resource"
        ),
        sa.CheckConstraint("adults >= 1", name="ck_bookings_adults"),
        schema=schema,
    )
    op.create_index("ix_bookings_guest_id", "bookings", ["guest_id"], schema=schema)
    op.create_index("ix_bookings_host_id", "bookings", ["host_id"], schema=schema)
    op.create_index(
        "ix_bookings_status_created", "bookings", ["status", "created_at"], schema=schema
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("requester_id", sa.String(64), primary_key=True),
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("booking_id", sa.String(36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        schema=schema,
    )

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(36),
            sa.ForeignKey(f"{schema}.bookings.id" if schema else "bookings.id"),
            nullable=False,
        ),
        sa.Column("guest_id", sa.String(64), nullable=False),
        sa.Column("host_id", sa.String(64), nullable=False),
        sa.Column("amount", Money, nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("refund_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("reference", sa.String(40), nullable=False, unique=True),
        sa.Column("breakdown", JSONType, nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.String(64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        schema=schema,
    )
    op.create_index("ix_refunds_booking_id", "refunds", ["booking_id"], schema=schema)
    op.create_index("ix_refunds_status", "refunds", ["status"], schema=schema)

    op.create_table(
        "pricing_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("platform_fee_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("change_reason", sa.String(500), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        schema=schema,
    )
    op.create_index(
        "ix_pricing_configs_active",
        "pricing_configs",
        ["is_active", "effective_from"],
        schema=schema,
    )

    op.create_table(
        "coupons",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("discount_type", sa.String(16), nullable=False),
        sa.Column("amount", Money, nullable=False),
        sa.Column("max_discount", Money, nullable=True),
        sa.Column("min_booking_amount", Money, nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("applicable_listings", JSONType, nullable=True),
        sa.Column("applicable_services", JSONType, nullable=True),
        schema=schema,
    )

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "coupon_id",
            sa.Integer(),
            sa.ForeignKey(f"{schema}.coupons.id" if schema else "coupons.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("coupon_id", "user_id", name="uq_coupon_redemption"),
        schema=schema,
    )


def downgrade() -> None:
    """Downgrade schema."""
    schema = DB_SCHEMA
    for table in (
        "coupon_redemptions",
        "coupons",
        "pricing_configs",
        "refunds",
        "idempotency_keys",
        "bookings",
        "slot_holds",
        "availability_cells",
        "resource_locks",
        "resources",
    ):
        op.drop_table(table, schema=schema)
