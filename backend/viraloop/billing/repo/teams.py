from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from viraloop.services.db import row_to_dict
from viraloop.billing.config import PlanLimits, NO_LIMITS
from .tables import teams, utcnow

USAGE_COLUMNS = {
    "image": (teams.c.images_used_this_month, teams.c.image_limit),
    "video": (teams.c.videos_used_this_month, teams.c.video_limit),
}


async def create_team(
    session: AsyncSession,
    name: str = "",
    credits: int = 0,
    team_id: Optional[str] = None,
) -> Dict[str, Any]:
    values = {"name": name, "credits": credits}
    if team_id:
        values["id"] = team_id
    result = await session.execute(insert(teams).values(**values).returning(*teams.c))
    return row_to_dict(result.first())


async def get_team(session: AsyncSession, team_id: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(select(teams).where(teams.c.id == team_id))
    return row_to_dict(result.first())


async def read_balance(session: AsyncSession, team_id: str) -> Optional[int]:
    result = await session.execute(select(teams.c.credits).where(teams.c.id == team_id))
    return result.scalar_one_or_none()


async def increment_balance(session: AsyncSession, team_id: str, delta: int) -> Optional[int]:
    """Atomically add ``delta`` and return the new balance, or None if the team is missing."""
    result = await session.execute(
        update(teams)
        .where(teams.c.id == team_id)
        .values(credits=teams.c.credits + delta)
        .returning(teams.c.credits)
    )
    return result.scalar_one_or_none()


async def decrement_if_sufficient(session: AsyncSession, team_id: str, amount: int) -> Optional[int]:
    """Atomically subtract ``amount`` only when the balance covers it.

    Returns the new balance, or None when no row matched (missing team or
    insufficient funds; the caller tells those apart).
    """
    result = await session.execute(
        update(teams)
        .where(teams.c.id == team_id, teams.c.credits >= amount)
        .values(credits=teams.c.credits - amount)
        .returning(teams.c.credits)
    )
    return result.scalar_one_or_none()


async def set_plan_limits(session: AsyncSession, team_id: str, limits: PlanLimits) -> bool:
    """Overwrite the team's caps and restart its usage period."""
    result = await session.execute(
        update(teams)
        .where(teams.c.id == team_id)
        .values(
            influencer_limit=limits.influencers,
            image_limit=limits.images,
            video_limit=limits.videos,
            images_used_this_month=0,
            videos_used_this_month=0,
            usage_period_start=utcnow(),
        )
        .returning(teams.c.id)
    )
    return result.scalar_one_or_none() is not None


async def zero_plan_limits(session: AsyncSession, team_id: str) -> bool:
    return await set_plan_limits(session, team_id, NO_LIMITS)


async def increment_usage(session: AsyncSession, team_id: str, kind: str) -> Optional[int]:
    """Bump the usage counter for ``kind`` if it is still under a non-zero limit.

    Returns the new count, or None when the cap refused the increment.
    """
    used_column, limit_column = USAGE_COLUMNS[kind]
    result = await session.execute(
        update(teams)
        .where(teams.c.id == team_id, limit_column > 0, used_column < limit_column)
        .values({used_column: used_column + 1})
        .returning(used_column)
    )
    return result.scalar_one_or_none()
