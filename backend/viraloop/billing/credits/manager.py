from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from viraloop.services.db import Database
from viraloop.utils.cache import Cache
from viraloop.utils.logger import logger
from viraloop.billing.config import LedgerEntryType
from viraloop.billing.shared.exceptions import (
    DuplicateIdempotencyKeyError,
    InsufficientCreditsError,
    TeamNotFoundError,
)
from viraloop.billing.shared.models import BalanceCheck, CreditAttribution, GrantResult, SpendResult
from viraloop.billing.repo import ledger, teams

GRANT_TYPES = frozenset({
    LedgerEntryType.RECURRING,
    LedgerEntryType.TOPUP,
    LedgerEntryType.TRIAL,
    LedgerEntryType.SPIN,
})


def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Credit amount must be an integer, got {amount!r}")
    if amount < 0:
        raise ValueError(f"Credit amount must be non-negative, got {amount}")
    return amount


def analytics_cache_key(team_id: str) -> str:
    return f"credit_analytics:{team_id}"


class CreditManager:
    """Owns every mutation of a team's credit balance.

    Each public mutation runs in its own transaction spanning the balance
    change and the ledger row, so either both land or neither does.
    """

    def __init__(self, db: Database, cache: Optional[Cache] = None):
        self.db = db
        self.cache = cache or Cache()

    async def spend(
        self,
        team_id: str,
        amount: int,
        attribution: Optional[CreditAttribution] = None,
    ) -> SpendResult:
        amount = _validate_amount(amount)
        attribution = attribution or CreditAttribution()

        async with self.db.transaction() as session:
            if amount == 0:
                balance = await teams.read_balance(session, team_id)
                if balance is None:
                    raise TeamNotFoundError(team_id)
                return SpendResult(credits_used=0, new_balance=balance)

            new_balance = await teams.decrement_if_sufficient(session, team_id, amount)
            if new_balance is None:
                available = await teams.read_balance(session, team_id)
                if available is None:
                    raise TeamNotFoundError(team_id)
                logger.info(f"[CREDITS] Team {team_id} has {available} credits, needs {amount}")
                raise InsufficientCreditsError(required=amount, available=available)

            await ledger.insert_entry(session, {
                **attribution.model_dump(exclude_none=True),
                'team_id': team_id,
                'credits': -amount,
                'type': LedgerEntryType.SPENDING.value,
            })

        logger.info(f"[CREDITS] Deducted {amount} credits from team {team_id}, new balance {new_balance}")
        await self.invalidate(team_id)
        return SpendResult(credits_used=amount, new_balance=new_balance)

    async def grant_idempotent(
        self,
        team_id: str,
        amount: int,
        type: LedgerEntryType,
        idempotency_key: Optional[str] = None,
        attribution: Optional[CreditAttribution] = None,
    ) -> GrantResult:
        """Add credits at most once per ``idempotency_key``.

        The ledger insert happens first and gates the balance change: when
        another caller already wrote the key, this one sees the duplicate and
        returns ``applied=False`` without touching the balance.
        """
        try:
            async with self.db.transaction() as session:
                result = await self._insert_grant(session, team_id, amount, type, idempotency_key, attribution)
        except DuplicateIdempotencyKeyError:
            logger.info(f"[CREDITS] Grant {idempotency_key} already applied for team {team_id}, skipping")
            return GrantResult(applied=False, credits_added=0)

        logger.info(f"[CREDITS] Granted {amount} {LedgerEntryType(type).value} credits to team {team_id} (key={idempotency_key})")
        await self.invalidate(team_id)
        return result

    async def grant_in_session(
        self,
        session: AsyncSession,
        team_id: str,
        amount: int,
        type: LedgerEntryType,
        idempotency_key: Optional[str] = None,
        attribution: Optional[CreditAttribution] = None,
    ) -> GrantResult:
        """Grant inside a caller-owned transaction.

        A key that is already in the ledger short-circuits to ``applied=False``.
        A key written concurrently still surfaces as DuplicateIdempotencyKeyError
        and aborts the caller's transaction. The caller invalidates the cache
        after committing.
        """
        if idempotency_key and await ledger.get_by_idempotency_key(session, idempotency_key):
            logger.info(f"[CREDITS] Grant {idempotency_key} already applied for team {team_id}, skipping")
            return GrantResult(applied=False, credits_added=0)
        return await self._insert_grant(session, team_id, amount, type, idempotency_key, attribution)

    async def _insert_grant(
        self,
        session: AsyncSession,
        team_id: str,
        amount: int,
        type: LedgerEntryType,
        idempotency_key: Optional[str],
        attribution: Optional[CreditAttribution],
    ) -> GrantResult:
        amount = _validate_amount(amount)
        type = LedgerEntryType(type)
        if type not in GRANT_TYPES:
            raise ValueError(f"Ledger type {type.value} is not a grant")
        attribution = attribution or CreditAttribution()

        await ledger.insert_entry(session, {
            **attribution.model_dump(exclude_none=True),
            'team_id': team_id,
            'credits': amount,
            'type': type.value,
            'idempotency_key': idempotency_key,
        })

        new_balance = await teams.increment_balance(session, team_id, amount)
        if new_balance is None:
            raise TeamNotFoundError(team_id)

        return GrantResult(applied=True, credits_added=amount, new_balance=new_balance)

    async def check_balance(self, team_id: str, amount: int) -> BalanceCheck:
        amount = _validate_amount(amount)
        balance = await self.get_balance(team_id)
        if balance is None:
            return BalanceCheck(allowed=False, credits=0, required=amount)

        if balance < amount:
            return BalanceCheck(allowed=False, credits=balance, required=amount)

        return BalanceCheck(allowed=True, credits=balance, required=amount, remaining=balance - amount)

    async def get_balance(self, team_id: str) -> Optional[int]:
        async with self.db.session() as session:
            return await teams.read_balance(session, team_id)

    async def invalidate(self, team_id: str) -> None:
        await self.cache.invalidate(analytics_cache_key(team_id))

    async def get_team_summary(self, team_id: str) -> Optional[Dict]:
        async with self.db.session() as session:
            team = await teams.get_team(session, team_id)
        if not team:
            return None
        return {
            'team_id': team['id'],
            'credits': team['credits'],
            'limits': {
                'influencers': team['influencer_limit'],
                'images': team['image_limit'],
                'videos': team['video_limit'],
            },
        }
