import random
from datetime import timedelta
from typing import Dict, Optional, Tuple

from viraloop.services.db import Database
from viraloop.utils.logger import logger
from viraloop.billing.config import (
    LedgerEntryType,
    PAID_PLAN_KEYS,
    is_entitled,
    normalize_plan_name,
)
from viraloop.billing.shared.exceptions import (
    DuplicateIdempotencyKeyError,
    SpinNotAllowedError,
    TeamNotFoundError,
)
from viraloop.billing.shared.models import CreditAttribution
from viraloop.billing.repo import subscriptions, teams, wheel_spins
from viraloop.billing.repo.tables import utcnow
from .manager import CreditManager

SPIN_COOLDOWN = timedelta(hours=24)

# (credits, relative weight)
PRIZES: Tuple[Tuple[int, float], ...] = (
    (1, 30),
    (2, 25),
    (3, 22),
    (5, 20),
    (10, 1.2),
    (15, 0.9),
    (20, 0.5),
    (25, 0.25),
    (30, 0.1),
    (40, 0.025),
    (50, 0.02),
    (100, 0.005),
)

PRIZE_VALUES = [value for value, _ in PRIZES]


class WheelService:
    """Daily spin-to-win credit bonus for paid subscribers."""

    def __init__(self, db: Database, credit_manager: CreditManager, rng: Optional[random.Random] = None):
        self.db = db
        self.credit_manager = credit_manager
        self.rng = rng or random.Random()

    def select_prize(self) -> int:
        return self.rng.choices(PRIZE_VALUES, weights=[weight for _, weight in PRIZES], k=1)[0]

    async def _paid_tier(self, session, team_id: str) -> Tuple[bool, Optional[str]]:
        subscription = await subscriptions.get_latest_for_team(session, team_id)
        if not is_entitled(subscription, utcnow()):
            return False, None
        tier = normalize_plan_name(subscription.get('plan'))
        return tier in PAID_PLAN_KEYS, tier or None

    async def spin(self, team_id: str, user_id: str) -> Dict:
        now = utcnow()
        async with self.db.session() as session:
            allowed, _ = await self._paid_tier(session, team_id)
            last_spin = await wheel_spins.get_last_spin(session, user_id)

        if not allowed:
            raise SpinNotAllowedError(
                "subscription_required",
                "Spin & Win is only available for Growth, Pro, and Ultra subscribers. Please upgrade your plan.",
            )

        if last_spin and now - last_spin['created_at'] < SPIN_COOLDOWN:
            raise SpinNotAllowedError(
                "cooldown",
                "You can only spin the wheel once every 24 hours",
                next_spin_at=last_spin['created_at'] + SPIN_COOLDOWN,
            )

        prize = self.select_prize()
        # Chained on the previous spin so two concurrent spins share one key
        idempotency_key = f"spin_{user_id}_after_{last_spin['id'] if last_spin else 'none'}"

        try:
            async with self.db.transaction() as session:
                result = await self.credit_manager.grant_in_session(
                    session,
                    team_id,
                    prize,
                    LedgerEntryType.SPIN,
                    idempotency_key=idempotency_key,
                    attribution=CreditAttribution(user_id=user_id, amount_total=0),
                )
                if not result.applied:
                    raise DuplicateIdempotencyKeyError(idempotency_key)
                await wheel_spins.record_spin(session, user_id, team_id, prize)
        except DuplicateIdempotencyKeyError:
            raise SpinNotAllowedError(
                "cooldown",
                "You can only spin the wheel once every 24 hours",
                next_spin_at=now + SPIN_COOLDOWN,
            )

        await self.credit_manager.invalidate(team_id)
        logger.info(f"[WHEEL] User {user_id} won {prize} credits for team {team_id}")
        return {
            'prize': prize,
            'prize_index': PRIZE_VALUES.index(prize),
            'credits': result.new_balance,
        }

    async def status(self, team_id: str, user_id: str) -> Dict:
        async with self.db.session() as session:
            team = await teams.get_team(session, team_id)
            if not team:
                raise TeamNotFoundError(team_id)
            allowed, tier = await self._paid_tier(session, team_id)
            last_spin = await wheel_spins.get_last_spin(session, user_id)

        next_spin_at = last_spin['created_at'] + SPIN_COOLDOWN if last_spin else None
        return {
            'last_wheel_spin': last_spin['created_at'] if last_spin else None,
            'credits_won': last_spin['credits_won'] if last_spin else 0,
            'next_spin_at': next_spin_at,
            'credits': team['credits'],
            'has_valid_subscription': allowed,
            'tier': tier,
        }
