from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from viraloop.services.db import row_to_dict
from viraloop.billing.shared.exceptions import DuplicateIdempotencyKeyError
from .tables import credit_ledger

LEDGER_FIELDS = (
    "team_id", "user_id", "credits", "amount_total", "type", "influencer_id",
    "post_id", "platform", "spending_type", "idempotency_key",
    "stripe_session_id", "stripe_invoice_id",
)


def _is_idempotency_conflict(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "idempotency_key" in message and ("unique" in message or "duplicate key" in message)


async def insert_entry(session: AsyncSession, entry: Dict[str, Any]) -> Dict[str, Any]:
    """Append one ledger row.

    A clash on ``idempotency_key`` raises DuplicateIdempotencyKeyError; every
    other integrity failure propagates untouched. Either way the enclosing
    transaction is no longer usable and must roll back.
    """
    values = {k: entry.get(k) for k in LEDGER_FIELDS if entry.get(k) is not None}
    try:
        result = await session.execute(
            insert(credit_ledger).values(**values).returning(*credit_ledger.c)
        )
        row = result.first()
    except IntegrityError as e:
        if entry.get("idempotency_key") and _is_idempotency_conflict(e):
            raise DuplicateIdempotencyKeyError(entry["idempotency_key"]) from e
        raise
    return row_to_dict(row)


async def get_by_idempotency_key(session: AsyncSession, idempotency_key: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(credit_ledger).where(credit_ledger.c.idempotency_key == idempotency_key)
    )
    return row_to_dict(result.first())


async def list_entries(session: AsyncSession, team_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(credit_ledger)
        .where(credit_ledger.c.team_id == team_id)
        .order_by(credit_ledger.c.created_at.desc())
        .limit(limit)
    )
    return [row_to_dict(row) for row in result.all()]


async def spending_by_type(session: AsyncSession, team_id: str) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(
            credit_ledger.c.spending_type,
            func.sum(-credit_ledger.c.credits).label("total_credits"),
            func.count().label("count"),
        )
        .where(credit_ledger.c.team_id == team_id, credit_ledger.c.credits < 0)
        .group_by(credit_ledger.c.spending_type)
        .order_by(func.sum(-credit_ledger.c.credits).desc())
    )
    return [
        {
            "spending_type": row.spending_type or "other",
            "total_credits": int(row.total_credits or 0),
            "count": row.count,
        }
        for row in result.all()
    ]


async def grants_by_type(session: AsyncSession, team_id: str) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(
            credit_ledger.c.type,
            func.sum(credit_ledger.c.credits).label("total_credits"),
            func.count().label("count"),
        )
        .where(credit_ledger.c.team_id == team_id, credit_ledger.c.credits > 0)
        .group_by(credit_ledger.c.type)
    )
    return [
        {"type": row.type, "total_credits": int(row.total_credits or 0), "count": row.count}
        for row in result.all()
    ]


async def spending_since(session: AsyncSession, team_id: str, since: datetime) -> List[Dict[str, Any]]:
    """Raw spend rows since ``since``; bucketing by day happens in Python so it works on any dialect."""
    result = await session.execute(
        select(credit_ledger.c.credits, credit_ledger.c.created_at)
        .where(
            credit_ledger.c.team_id == team_id,
            credit_ledger.c.credits < 0,
            credit_ledger.c.created_at >= since,
        )
        .order_by(credit_ledger.c.created_at)
    )
    return [row_to_dict(row) for row in result.all()]
