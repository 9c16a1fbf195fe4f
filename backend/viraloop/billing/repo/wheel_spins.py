from typing import Any, Dict, Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from viraloop.services.db import row_to_dict
from .tables import wheel_spins


async def get_last_spin(session: AsyncSession, user_id: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(wheel_spins)
        .where(wheel_spins.c.user_id == user_id)
        .order_by(wheel_spins.c.created_at.desc())
        .limit(1)
    )
    return row_to_dict(result.first())


async def record_spin(session: AsyncSession, user_id: str, team_id: str, credits_won: int) -> Dict[str, Any]:
    result = await session.execute(
        insert(wheel_spins)
        .values(user_id=user_id, team_id=team_id, credits_won=credits_won)
        .returning(*wheel_spins.c)
    )
    return row_to_dict(result.first())
