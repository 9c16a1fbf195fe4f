from collections import OrderedDict
from datetime import timedelta
from typing import Dict, Optional

from viraloop.services.db import Database
from viraloop.utils.cache import Cache
from viraloop.utils.logger import logger
from viraloop.billing.credits.manager import analytics_cache_key
from viraloop.billing.shared.exceptions import TeamNotFoundError
from viraloop.billing.repo import ledger, teams
from viraloop.billing.repo.tables import utcnow

HISTORY_LIMIT = 100
TREND_DAYS = 30
ANALYTICS_CACHE_TTL = 300


class CreditHistoryService:
    def __init__(self, db: Database, cache: Optional[Cache] = None):
        self.db = db
        self.cache = cache or Cache()

    async def list_history(self, team_id: str, limit: int = HISTORY_LIMIT) -> Dict:
        limit = max(1, min(limit, HISTORY_LIMIT))
        async with self.db.session() as session:
            balance = await teams.read_balance(session, team_id)
            if balance is None:
                raise TeamNotFoundError(team_id)
            entries = await ledger.list_entries(session, team_id, limit=limit)

        return {'team_id': team_id, 'credits': balance, 'entries': entries}

    async def analytics(self, team_id: str) -> Dict:
        cache_key = analytics_cache_key(team_id)
        cached = await self.cache.get(cache_key)
        if cached:
            logger.debug(f"[CREDITS] Analytics cache hit for team {team_id}")
            return cached

        since = utcnow() - timedelta(days=TREND_DAYS)
        async with self.db.session() as session:
            balance = await teams.read_balance(session, team_id)
            if balance is None:
                raise TeamNotFoundError(team_id)
            spending = await ledger.spending_by_type(session, team_id)
            added = await ledger.grants_by_type(session, team_id)
            recent = await ledger.spending_since(session, team_id, since)

        daily = OrderedDict()
        for row in recent:
            day = row['created_at'].strftime('%Y-%m-%d')
            daily[day] = daily.get(day, 0) + abs(row['credits'])

        result = {
            'team_id': team_id,
            'credits': balance,
            'total_spent': sum(item['total_credits'] for item in spending),
            'total_added': sum(item['total_credits'] for item in added),
            'spending_by_type': spending,
            'added_by_type': added,
            'daily_spending': [{'date': day, 'credits': credits} for day, credits in daily.items()],
        }

        await self.cache.set(cache_key, result, ttl=ANALYTICS_CACHE_TTL)
        return result
