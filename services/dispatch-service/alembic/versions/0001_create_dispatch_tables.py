from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

ENGAGED = "status IN ('vendor_assigned', 'accepted', 'confirmed', 'on_route', 'arrived', 'in_progress')"


def upgrade():
    op.create_table(
        "vendors",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("block_reason", sa.String(), nullable=True),
        sa.Column("service_ids", sa.JSON(), nullable=False),
        sa.Column("service_radius_km", sa.Float(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("push_token", sa.String(), nullable=True),
        sa.Column("push_platform", sa.String(), nullable=True),
    )

    op.create_table(
        "services",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "add_ons",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("service_ids", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "coupons",
        sa.Column("code", sa.String(), primary_key=True),
        sa.Column("discount_type", sa.String(), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_purchase", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("usage_remaining", sa.Numeric(12, 2), nullable=False, server_default="0"),
    )
    op.create_index("ix_memberships_member_id", "memberships", ["member_id"], unique=True)

    op.create_table(
        "platform_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("commission_per_service_booking", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("commission_per_billing", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("service_tax_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("membership_discount_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("minimum_wallet_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("time_slot", sa.String(), nullable=False),
        sa.Column("address_id", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False, server_default="unpaid"),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pricing", sa.JSON(), nullable=False),
        sa.Column("add_ons", sa.JSON(), nullable=False),
        sa.Column("commission", sa.JSON(), nullable=False),
        sa.Column("search_radius_km", sa.Float(), nullable=True),
        sa.Column("search_attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("assigned_vendor_id", sa.String(), sa.ForeignKey("vendors.id"), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_distance_km", sa.Float(), nullable=True),
        sa.Column("request_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("vendor_response_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("search_timeout", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_bookings_requester_id", "bookings", ["requester_id"])
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payment_status", "bookings", ["payment_status"])
    op.create_index("ix_bookings_assigned_vendor_id", "bookings", ["assigned_vendor_id"])
    op.create_index("ix_bookings_search_timeout", "bookings", ["search_timeout"])
    op.create_index(
        "uq_bookings_vendor_slot_engaged",
        "bookings",
        ["assigned_vendor_id", "date", "time_slot"],
        unique=True,
        postgresql_where=sa.text(ENGAGED),
        sqlite_where=sa.text(ENGAGED),
    )

    op.create_table(
        "booking_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_kind", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_booking_status_history_booking_id", "booking_status_history", ["booking_id"])

    op.create_table(
        "booking_candidates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("vendor_id", sa.String(), sa.ForeignKey("vendors.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("distance_km", sa.Float(), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("response", sa.String(), nullable=False, server_default="pending"),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("booking_id", "vendor_id", name="uq_candidate_booking_vendor"),
    )
    op.create_index("ix_booking_candidates_booking_id", "booking_candidates", ["booking_id"])
    op.create_index("ix_booking_candidates_vendor_id", "booking_candidates", ["vendor_id"])

    op.create_table(
        "vendor_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("vendor_id", sa.String(), sa.ForeignKey("vendors.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_vendor_notifications_booking_id", "vendor_notifications", ["booking_id"])
    op.create_index("ix_vendor_notifications_vendor_id", "vendor_notifications", ["vendor_id"])

    op.create_table(
        "wallets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("party_id", sa.String(), nullable=False),
        sa.Column("party_kind", sa.String(), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("pending_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("pending_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("recent_transaction_ids", sa.JSON(), nullable=False),
        sa.UniqueConstraint("party_id", "party_kind", name="uq_wallet_party"),
    )
    op.create_index("ix_wallets_status", "wallets", ["status"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("reference_group", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=False, unique=True),
        sa.Column("parent_transaction_id", sa.String(), sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("party_id", sa.String(), nullable=False),
        sa.Column("party_kind", sa.String(), nullable=False),
        sa.Column("wallet_id", sa.String(), sa.ForeignKey("wallets.id"), nullable=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("direction", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("purpose", sa.String(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("gateway_order_ref", sa.String(), nullable=True),
        sa.Column("balance_before", sa.Numeric(12, 2), nullable=True),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("status_history", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_transactions_reference_group", "transactions", ["reference_group"])
    op.create_index("ix_transactions_party_id", "transactions", ["party_id"])
    op.create_index("ix_transactions_wallet_id", "transactions", ["wallet_id"])
    op.create_index("ix_transactions_booking_id", "transactions", ["booking_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_gateway_order_ref", "transactions", ["gateway_order_ref"])

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("processed_events")
    op.drop_table("transactions")
    op.drop_table("wallets")
    op.drop_table("vendor_notifications")
    op.drop_table("booking_candidates")
    op.drop_table("booking_status_history")
    op.drop_index("uq_bookings_vendor_slot_engaged", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("platform_settings")
    op.drop_table("memberships")
    op.drop_table("coupons")
    op.drop_table("add_ons")
    op.drop_table("services")
    op.drop_table("vendors")
