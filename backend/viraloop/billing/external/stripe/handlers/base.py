from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from dateutil.relativedelta import relativedelta  # type: ignore
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from viraloop.services.db import Database
from viraloop.utils.config import config
from viraloop.utils.logger import logger
from viraloop.billing.config import (
    CURRENT_SUBSCRIPTION_VERSION,
    ENTITLED_STATUSES,
    KnownPlan,
    LedgerEntryType,
    get_credits_for_plan,
    get_plan_from_price_id,
    get_plan_limits_from_price_id,
)
from viraloop.billing.credits.manager import CreditManager
from viraloop.billing.shared.exceptions import DuplicateIdempotencyKeyError
from viraloop.billing.shared.models import CreditAttribution
from viraloop.billing.repo import subscriptions, teams
from viraloop.billing.repo.tables import utcnow

TRIAL_VALIDITY = relativedelta(years=1)


def from_timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(stripe_subscription: Dict) -> Dict:
    items = (stripe_subscription.get('items') or {}).get('data') or []
    return items[0] if items else {}


def extract_price_id(stripe_subscription: Dict) -> Optional[str]:
    price = _first_item(stripe_subscription).get('price') or {}
    if price.get('id'):
        return price['id']
    return (stripe_subscription.get('plan') or {}).get('id')


def extract_period_end(stripe_subscription: Dict) -> Optional[datetime]:
    # Newer API versions moved current_period_end onto the subscription items
    period_end = stripe_subscription.get('current_period_end') or _first_item(stripe_subscription).get('current_period_end')
    return from_timestamp(period_end)


def invoice_subscription_id(invoice: Dict) -> Optional[str]:
    subscription = invoice.get('subscription')
    if isinstance(subscription, dict):
        return subscription.get('id')
    if subscription:
        return subscription
    details = ((invoice.get('parent') or {}).get('subscription_details') or {})
    return details.get('subscription')


def is_one_time(obj: Dict) -> bool:
    return str((obj.get('metadata') or {}).get('isOneTime', '')).lower() == 'true'


def month_key(now: datetime) -> str:
    return now.strftime('%Y-%m')


def is_subscription_conflict(error: IntegrityError) -> bool:
    return "stripe_subscription" in str(error.orig).lower()


class BaseHandler:
    def __init__(self, db: Database, credit_manager: CreditManager, stripe_api):
        self.db = db
        self.credit_manager = credit_manager
        self.stripe_api = stripe_api

    async def sync_team_limits(self, session: AsyncSession, team_id: Optional[str], status: Optional[str], price_id: Optional[str]) -> bool:
        """Overwrite a team's caps from the price id, or revoke them when not entitled.

        Returns False when there is no such team.
        """
        if not team_id:
            return False
        if status in ENTITLED_STATUSES:
            limits = get_plan_limits_from_price_id(price_id)
        else:
            limits = get_plan_limits_from_price_id(None)
        updated = await teams.set_plan_limits(session, team_id, limits)
        if not updated:
            logger.warning(f"[WEBHOOK] Team {team_id} not found while updating limits")
            return False
        logger.info(f"[WEBHOOK] Team {team_id} limits set to {limits.to_dict()} (status={status}, price={price_id})")
        return True

    async def apply_one_time_purchase(self, obj: Dict, amount_total: Optional[int], payment_intent_id: Optional[str]) -> Dict:
        """Apply a paid one-time (trial) purchase to its team.

        The checkout session and the payment intent for the same payment
        share ``trial_{payment_intent_id}``, used both as the ledger key and
        as the trial row's provider id, so either event alone or both
        together leave one trial row and at most one trial grant.
        """
        metadata = obj.get('metadata') or {}
        team_id = metadata.get('team')
        price_id = metadata.get('stripePriceId')

        if not team_id or not price_id:
            logger.warning(f"[WEBHOOK] One-time payment {obj.get('id')} is missing team or price id, limits not updated")
            return {'status': 'ignored', 'message': 'Missing team or price id'}

        payment_key = f"trial_{payment_intent_id or obj.get('id')}"
        try:
            granted, trial_created = await self._record_one_time_purchase(obj, team_id, price_id, amount_total, payment_intent_id, payment_key)
        except (DuplicateIdempotencyKeyError, IntegrityError) as e:
            if isinstance(e, IntegrityError) and not is_subscription_conflict(e):
                raise
            # Another delivery of this payment committed first
            logger.info(f"[WEBHOOK] One-time payment {payment_key} was recorded concurrently, re-applying")
            granted, trial_created = await self._record_one_time_purchase(obj, team_id, price_id, amount_total, payment_intent_id, payment_key)

        if granted:
            await self.credit_manager.invalidate(team_id)
        logger.info(
            f"[WEBHOOK] One-time payment processed for team {team_id} "
            f"(price={price_id}, credits={granted}, trial_created={trial_created})"
        )
        return {'status': 'success', 'message': 'One-time payment processed', 'credits_added': granted}

    async def _record_one_time_purchase(
        self,
        obj: Dict,
        team_id: str,
        price_id: str,
        amount_total: Optional[int],
        payment_intent_id: Optional[str],
        payment_key: str,
    ) -> Tuple[int, bool]:
        metadata = obj.get('metadata') or {}
        user_id = obj.get('client_reference_id') or metadata.get('client_reference_id')
        plan_name = get_plan_from_price_id(price_id)
        granted = 0
        trial_created = False

        async with self.db.transaction() as session:
            if not await self.sync_team_limits(session, team_id, 'active', price_id):
                return granted, trial_created

            # One trial row per team, valid for a year from the first purchase
            if not await subscriptions.get_trial_for_team(session, team_id):
                await subscriptions.create_subscription(session, {
                    'user_id': user_id,
                    'team_id': team_id,
                    'type': 'trial',
                    'version': CURRENT_SUBSCRIPTION_VERSION,
                    'plan': plan_name,
                    'stripe_subscription': payment_key,
                    'stripe_subscription_status': 'active',
                    'stripe_price_id': price_id,
                    'stripe_customer': obj.get('customer'),
                    'amount_total': amount_total,
                    'currency': obj.get('currency'),
                    'payment_intent_id': payment_intent_id,
                    'payment_status': obj.get('payment_status') or obj.get('status'),
                    'subscription_valid_until': utcnow() + TRIAL_VALIDITY,
                })
                trial_created = True

            if config.GRANT_TRIAL_CREDITS:
                plan = get_credits_for_plan(plan_name)
                if isinstance(plan, KnownPlan) and plan.credits > 0:
                    result = await self.credit_manager.grant_in_session(
                        session,
                        team_id,
                        plan.credits,
                        LedgerEntryType.TRIAL,
                        idempotency_key=payment_key,
                        attribution=CreditAttribution(
                            user_id=user_id,
                            amount_total=amount_total,
                            stripe_session_id=obj.get('id') if obj.get('object') == 'checkout.session' else None,
                        ),
                    )
                    granted = result.credits_added

        return granted, trial_created

    async def create_from_stripe(
        self,
        stripe_subscription: Dict,
        user_id: Optional[str],
        team_id: Optional[str],
        extra: Dict,
    ) -> Dict:
        """Insert the local row for a provider subscription seen for the first time.

        Limits are recomputed and the welcome grant applied only when the
        provider reports an entitled status. A concurrent insert for the same
        provider id is treated as already created.
        """
        stripe_subscription_id = stripe_subscription['id']
        price_id = extract_price_id(stripe_subscription)
        status = stripe_subscription.get('status')
        plan_name = get_plan_from_price_id(price_id)
        now = utcnow()

        row = {
            'user_id': user_id,
            'team_id': team_id,
            'type': 'subscription',
            'version': CURRENT_SUBSCRIPTION_VERSION,
            'plan': plan_name,
            'stripe_subscription': stripe_subscription_id,
            'stripe_subscription_status': status,
            'stripe_price_id': price_id,
            'stripe_customer': stripe_subscription.get('customer'),
            'subscription_valid_until': extract_period_end(stripe_subscription),
            **{k: v for k, v in extra.items() if v is not None},
        }

        granted = 0
        try:
            async with self.db.transaction() as session:
                created = await subscriptions.create_subscription(session, row)

                if status in ENTITLED_STATUSES:
                    await self.sync_team_limits(session, team_id, status, price_id)
                    granted = await self._grant_welcome_credits(session, created, plan_name, now)
        except IntegrityError as e:
            if not is_subscription_conflict(e):
                raise
            logger.info(f"[WEBHOOK] Subscription {stripe_subscription_id} was created concurrently, skipping")
            return {'status': 'success', 'message': 'Subscription already exists'}

        if granted and team_id:
            await self.credit_manager.invalidate(team_id)

        logger.info(
            f"[WEBHOOK] Created subscription {stripe_subscription_id} for team {team_id} "
            f"(plan={plan_name}, status={status}, welcome_credits={granted})"
        )
        return {'status': 'success', 'subscription_id': created['id'], 'credits_added': granted}

    async def _grant_welcome_credits(self, session: AsyncSession, subscription: Dict, plan_name: str, now: datetime) -> int:
        team_id = subscription.get('team_id')
        plan = get_credits_for_plan(plan_name)
        if not team_id or not isinstance(plan, KnownPlan) or not plan.recurring or plan.credits <= 0:
            return 0

        result = await self.credit_manager.grant_in_session(
            session,
            team_id,
            plan.credits,
            LedgerEntryType.RECURRING,
            idempotency_key=f"subscription_{subscription['stripe_subscription']}_{month_key(now)}",
            attribution=CreditAttribution(
                user_id=subscription.get('user_id'),
                amount_total=subscription.get('amount_total'),
                stripe_invoice_id=subscription.get('stripe_invoice'),
            ),
        )
        return result.credits_added

    async def apply_provider_state(
        self,
        existing: Dict,
        status: Optional[str],
        price_id: Optional[str],
        period_end: Optional[datetime],
        changes: Dict,
    ) -> Dict:
        """Write the latest provider state onto the local row and re-derive entitlement.

        Entitled statuses take the provider's period end and the price's
        limits. Anything else expires the row now and zeroes the team's caps.
        """
        update = {
            'stripe_subscription_status': status,
            **{k: v for k, v in changes.items() if v is not None},
        }
        if price_id:
            update['stripe_price_id'] = price_id
            update['plan'] = get_plan_from_price_id(price_id)

        if status in ENTITLED_STATUSES:
            if period_end:
                update['subscription_valid_until'] = period_end
        else:
            update['subscription_valid_until'] = utcnow()

        async with self.db.transaction() as session:
            updated = await subscriptions.update_subscription(session, existing['id'], update)
            await self.sync_team_limits(session, existing.get('team_id'), status, price_id or existing.get('stripe_price_id'))

        logger.info(
            f"[WEBHOOK] Subscription {existing['stripe_subscription']} now {status} "
            f"(valid_until={update.get('subscription_valid_until')})"
        )
        return {'status': 'success', 'subscription_id': updated['id'] if updated else existing['id']}

    async def find_existing(self, stripe_subscription_id: str) -> Optional[Dict]:
        async with self.db.session() as session:
            return await subscriptions.get_latest_by_stripe_id(session, stripe_subscription_id)
