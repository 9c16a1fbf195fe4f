from typing import Dict, Optional

from viraloop.services.db import Database
from viraloop.utils.logger import logger
from viraloop.billing.shared.models import UsageCheck
from viraloop.billing.repo import teams

USAGE_KINDS = ("image", "video")


class UsageLimiter:
    """Per-team image and video caps derived from the active plan.

    Counters restart whenever the plan limits are recomputed, never on a
    calendar boundary.
    """

    def __init__(self, db: Database):
        self.db = db

    async def check_and_increment(self, team_id: str, kind: str) -> UsageCheck:
        if kind not in USAGE_KINDS:
            raise ValueError(f"Unknown usage kind: {kind}")

        async with self.db.transaction() as session:
            used = await teams.increment_usage(session, team_id, kind)
            team = await teams.get_team(session, team_id)

        if team is None:
            return UsageCheck(allowed=False, kind=kind, reason="team_not_found", message="Team not found")

        limit = team[f"{kind}_limit"]

        if used is not None:
            return UsageCheck(allowed=True, kind=kind, limit=limit, used=used, remaining=max(limit - used, 0))

        current = team[f"{kind}s_used_this_month"]
        if limit == 0:
            return UsageCheck(
                allowed=False,
                kind=kind,
                limit=0,
                used=current,
                reason="no_subscription",
                message=f"No active subscription. Please upgrade to generate {kind}s.",
            )

        logger.info(f"[USAGE] Team {team_id} reached its {kind} limit ({limit})")
        return UsageCheck(
            allowed=False,
            kind=kind,
            limit=limit,
            used=current,
            reason="limit_reached",
            message=f"Monthly {kind} limit reached ({limit} {kind}s). Please upgrade your plan for more.",
        )

    async def get_usage(self, team_id: str) -> Optional[Dict]:
        async with self.db.session() as session:
            team = await teams.get_team(session, team_id)
        if not team:
            return None

        usage = {}
        for kind in USAGE_KINDS:
            limit = team[f"{kind}_limit"]
            used = team[f"{kind}s_used_this_month"]
            usage[f"{kind}s"] = {'used': used, 'limit': limit, 'remaining': max(limit - used, 0)}

        usage['influencers'] = {'limit': team['influencer_limit']}
        usage['period_start'] = team['usage_period_start']
        return usage
