from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from viraloop.services.db import row_to_dict
from .tables import subscriptions

SUBSCRIPTION_FIELDS = (
    "user_id", "team_id", "type", "version", "plan", "stripe_subscription",
    "stripe_subscription_status", "stripe_price_id", "stripe_customer",
    "stripe_invoice", "stripe_hosted_invoice_url", "amount_total", "currency",
    "payment_intent_id", "payment_status", "subscription_valid_until", "created_at",
)


async def get_latest_by_stripe_id(session: AsyncSession, stripe_subscription_id: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(subscriptions)
        .where(subscriptions.c.stripe_subscription == stripe_subscription_id)
        .order_by(subscriptions.c.created_at.desc())
        .limit(1)
    )
    return row_to_dict(result.first())


async def get_latest_for_team(session: AsyncSession, team_id: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(subscriptions)
        .where(subscriptions.c.team_id == team_id)
        .order_by(subscriptions.c.created_at.desc())
        .limit(1)
    )
    return row_to_dict(result.first())


async def get_trial_for_team(session: AsyncSession, team_id: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(subscriptions)
        .where(subscriptions.c.team_id == team_id, subscriptions.c.type == "trial")
        .limit(1)
    )
    return row_to_dict(result.first())


async def create_subscription(session: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    values = {k: data[k] for k in SUBSCRIPTION_FIELDS if data.get(k) is not None}
    result = await session.execute(insert(subscriptions).values(**values).returning(*subscriptions.c))
    return row_to_dict(result.first())


async def update_subscription(session: AsyncSession, subscription_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    values = {k: v for k, v in changes.items() if k in SUBSCRIPTION_FIELDS}
    if not values:
        return None
    result = await session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription_id)
        .values(**values)
        .returning(*subscriptions.c)
    )
    return row_to_dict(result.first())


async def find_eligible_for_recurring(session: AsyncSession, now: datetime, created_before: datetime) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(subscriptions)
        .where(
            subscriptions.c.subscription_valid_until > now,
            subscriptions.c.created_at < created_before,
            subscriptions.c.stripe_subscription_status == "active",
        )
        .order_by(subscriptions.c.created_at)
    )
    return [row_to_dict(row) for row in result.all()]
