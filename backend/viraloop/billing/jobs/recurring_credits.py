"""
Monthly recurring credit grants.

Each run scans subscriptions that are active, still valid, and older than
one calendar month, and grants the plan's monthly credits at most once per
subscription per calendar month. The month is taken from the wall clock at
run time, so the key ``cron_recurring_{subscription_id}_{YYYY-MM}`` is the
exactly-once guard: re-running the job, or two instances racing, can only
ever produce one ledger row per subscription per month.

Every subscription is granted in its own transaction. A failure on one row
is counted and logged and the batch moves on.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta  # type: ignore

from viraloop.services.db import Database, is_transient
from viraloop.utils.logger import logger
from viraloop.billing.config import KnownPlan, LedgerEntryType, get_credits_for_plan
from viraloop.billing.credits.manager import CreditManager
from viraloop.billing.shared.exceptions import TeamNotFoundError
from viraloop.billing.shared.models import CreditAttribution
from viraloop.billing.repo import subscriptions
from viraloop.billing.repo.tables import utcnow


class SkipReason:
    UNKNOWN_PLAN = "unknown_plan"
    ZERO_CREDITS = "zero_credits"
    NO_TEAM = "no_team"
    TEAM_NOT_FOUND = "team_not_found"
    ALREADY_PROCESSED = "already_processed"


@dataclass
class RunSummary:
    started_at: datetime
    eligible: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    fatal: bool = False
    credits_granted: int = 0
    skip_reasons: Counter = field(default_factory=Counter)
    duration_seconds: float = 0.0

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] += 1

    def to_dict(self) -> Dict:
        return {
            'started_at': self.started_at.isoformat(),
            'eligible': self.eligible,
            'processed': self.processed,
            'skipped': self.skipped,
            'failed': self.failed,
            'fatal': self.fatal,
            'credits_granted': self.credits_granted,
            'skip_reasons': dict(self.skip_reasons),
            'duration_seconds': round(self.duration_seconds, 3),
        }


def recurring_idempotency_key(subscription_id: str, now: datetime) -> str:
    return f"cron_recurring_{subscription_id}_{now.strftime('%Y-%m')}"


class RecurringCreditsJob:
    name = "recurring_credits"

    def __init__(self, db: Database, credit_manager: CreditManager):
        self.db = db
        self.credit_manager = credit_manager

    async def run(self, now: Optional[datetime] = None) -> RunSummary:
        now = now or utcnow()
        summary = RunSummary(started_at=now)
        start = time.monotonic()
        logger.info(f"[RECURRING] Starting recurring credits run for {now.strftime('%Y-%m')}")

        try:
            async with self.db.session() as session:
                eligible = await subscriptions.find_eligible_for_recurring(
                    session, now=now, created_before=now - relativedelta(months=1)
                )
        except Exception as e:
            summary.fatal = True
            logger.error(f"[RECURRING] Could not load eligible subscriptions: {e}", exc_info=True)
            eligible = []

        summary.eligible = len(eligible)

        for subscription in eligible:
            await self._process_subscription(subscription, now, summary)

        summary.duration_seconds = time.monotonic() - start
        log = logger.error if summary.fatal else logger.info
        log(
            f"[RECURRING] Run finished: processed={summary.processed} skipped={summary.skipped} "
            f"failed={summary.failed} fatal={summary.fatal}",
            **summary.to_dict(),
        )
        return summary

    async def _process_subscription(self, subscription: Dict, now: datetime, summary: RunSummary) -> None:
        subscription_id = subscription['id']
        plan = get_credits_for_plan(subscription.get('plan'))

        if not isinstance(plan, KnownPlan):
            logger.warning(f"[RECURRING] Subscription {subscription_id} has unknown plan {subscription.get('plan')!r}")
            summary.skip(SkipReason.UNKNOWN_PLAN)
            return
        if plan.credits <= 0:
            summary.skip(SkipReason.ZERO_CREDITS)
            return

        team_id = subscription.get('team_id')
        if not team_id:
            logger.warning(f"[RECURRING] Subscription {subscription_id} has no team")
            summary.skip(SkipReason.NO_TEAM)
            return

        key = recurring_idempotency_key(subscription_id, now)
        try:
            result = await self.credit_manager.grant_idempotent(
                team_id,
                plan.credits,
                LedgerEntryType.RECURRING,
                idempotency_key=key,
                attribution=CreditAttribution(user_id=subscription.get('user_id'), amount_total=0),
            )
        except TeamNotFoundError:
            logger.warning(f"[RECURRING] Team {team_id} for subscription {subscription_id} no longer exists")
            summary.skip(SkipReason.TEAM_NOT_FOUND)
            return
        except Exception as e:
            summary.failed += 1
            kind = "transient" if is_transient(e) else "unexpected"
            logger.error(f"[RECURRING] Failed to grant credits for subscription {subscription_id} ({kind}): {e}", exc_info=True)
            return

        if not result.applied:
            summary.skip(SkipReason.ALREADY_PROCESSED)
            return

        summary.processed += 1
        summary.credits_granted += plan.credits
        logger.info(f"[RECURRING] Granted {plan.credits} credits to team {team_id} for subscription {subscription_id}")
