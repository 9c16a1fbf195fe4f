import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, DateTime, Index, Integer, MetaData, String, Table, Text,
)

metadata = MetaData()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


teams = Table(
    "teams",
    metadata,
    Column("id", String(64), primary_key=True, default=_uuid),
    Column("name", String(255), nullable=False, default=""),
    Column("credits", Integer, nullable=False, default=0),
    Column("influencer_limit", Integer, nullable=False, default=0),
    Column("image_limit", Integer, nullable=False, default=0),
    Column("video_limit", Integer, nullable=False, default=0),
    Column("images_used_this_month", Integer, nullable=False, default=0),
    Column("videos_used_this_month", Integer, nullable=False, default=0),
    Column("usage_period_start", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow),
)

credit_ledger = Table(
    "credit_ledger",
    metadata,
    Column("id", String(64), primary_key=True, default=_uuid),
    Column("team_id", String(64), nullable=False),
    Column("user_id", String(64), nullable=True),
    Column("credits", Integer, nullable=False),
    Column("amount_total", Integer, nullable=True),
    Column("type", String(32), nullable=False),
    Column("influencer_id", String(64), nullable=True),
    Column("post_id", String(64), nullable=True),
    Column("platform", String(32), nullable=True),
    Column("spending_type", String(64), nullable=True),
    # NULLs never collide, so keyless entries are unrestricted
    Column("idempotency_key", String(255), nullable=True, unique=True),
    Column("stripe_session_id", String(255), nullable=True),
    Column("stripe_invoice_id", String(255), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("ix_credit_ledger_team_created", "team_id", "created_at"),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", String(64), primary_key=True, default=_uuid),
    Column("user_id", String(64), nullable=True),
    Column("team_id", String(64), nullable=True),
    Column("type", String(32), nullable=False, default="subscription"),
    Column("version", Integer, nullable=False, default=1),
    Column("plan", String(64), nullable=True),
    Column("stripe_subscription", String(255), nullable=False, unique=True),
    Column("stripe_subscription_status", String(32), nullable=True),
    Column("stripe_price_id", String(255), nullable=True),
    Column("stripe_customer", String(255), nullable=True),
    Column("stripe_invoice", String(255), nullable=True),
    Column("stripe_hosted_invoice_url", Text, nullable=True),
    Column("amount_total", Integer, nullable=True),
    Column("currency", String(8), nullable=True),
    Column("payment_intent_id", String(255), nullable=True),
    Column("payment_status", String(32), nullable=True),
    Column("subscription_valid_until", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow),
    Index("ix_subscriptions_recurring", "stripe_subscription_status", "subscription_valid_until"),
    Index("ix_subscriptions_team", "team_id", "created_at"),
)

webhook_events = Table(
    "webhook_events",
    metadata,
    Column("id", String(64), primary_key=True, default=_uuid),
    Column("event_id", String(255), nullable=False, unique=True),
    Column("event_type", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("error_message", Text, nullable=True),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("processing_started_at", DateTime(timezone=True), nullable=True),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
)

wheel_spins = Table(
    "wheel_spins",
    metadata,
    Column("id", String(64), primary_key=True, default=_uuid),
    Column("user_id", String(64), nullable=False),
    Column("team_id", String(64), nullable=False),
    Column("credits_won", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("ix_wheel_spins_user_created", "user_id", "created_at"),
)
