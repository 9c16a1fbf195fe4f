from typing import Dict

from viraloop.utils.logger import logger
from viraloop.billing.config import LedgerEntryType, credits_for_purchase
from viraloop.billing.shared.models import CreditAttribution
from .base import BaseHandler, is_one_time


class CheckoutHandler(BaseHandler):
    async def handle_checkout_session_completed(self, event: Dict) -> Dict:
        session = event['data']['object']
        metadata = session.get('metadata') or {}
        logger.info(
            f"[WEBHOOK] Checkout session completed - ID: {session.get('id')}, "
            f"Has subscription: {bool(session.get('subscription'))}, Metadata: {metadata}"
        )

        if metadata.get('type') == 'credits':
            return await self._handle_credit_purchase(session)

        if is_one_time(session) or not session.get('subscription'):
            return await self.apply_one_time_purchase(
                session,
                amount_total=session.get('amount_total'),
                payment_intent_id=session.get('payment_intent'),
            )

        return await self._handle_subscription_checkout(session)

    async def _handle_credit_purchase(self, session: Dict) -> Dict:
        metadata = session.get('metadata') or {}
        team_id = metadata.get('team')
        try:
            amount_cents = int(metadata.get('amount'))
        except (TypeError, ValueError):
            logger.error(f"[WEBHOOK] Credit purchase {session.get('id')} has invalid amount {metadata.get('amount')!r}")
            return {'status': 'ignored', 'message': 'Invalid credit amount'}

        if not team_id:
            logger.error(f"[WEBHOOK] Credit purchase {session.get('id')} has no team")
            return {'status': 'ignored', 'message': 'Missing team'}

        credits = credits_for_purchase(amount_cents)
        logger.info(f"[WEBHOOK] Processing credit purchase: {amount_cents} cents = {credits} credits")

        result = await self.credit_manager.grant_idempotent(
            team_id,
            credits,
            LedgerEntryType.TOPUP,
            idempotency_key=f"checkout_credits_{session['id']}",
            attribution=CreditAttribution(
                user_id=session.get('client_reference_id'),
                amount_total=session.get('amount_total'),
                stripe_session_id=session['id'],
            ),
        )
        return {
            'status': 'success',
            'applied': result.applied,
            'credits_added': result.credits_added,
        }

    async def _handle_subscription_checkout(self, session: Dict) -> Dict:
        stripe_subscription_id = session['subscription']
        if isinstance(stripe_subscription_id, dict):
            stripe_subscription_id = stripe_subscription_id['id']

        existing = await self.find_existing(stripe_subscription_id)
        if existing:
            logger.info(f"[WEBHOOK] Subscription {stripe_subscription_id} already created for this session")
            return {'status': 'success', 'message': 'Subscription already created for this session'}

        stripe_subscription = await self.stripe_api.retrieve_subscription(stripe_subscription_id)

        hosted_invoice_url = None
        invoice_id = session.get('invoice')
        if invoice_id:
            invoice = await self.stripe_api.retrieve_invoice(invoice_id)
            hosted_invoice_url = invoice.get('hosted_invoice_url')

        metadata = session.get('metadata') or {}
        return await self.create_from_stripe(
            stripe_subscription,
            user_id=session.get('client_reference_id'),
            team_id=metadata.get('team'),
            extra={
                'stripe_customer': session.get('customer'),
                'stripe_invoice': invoice_id,
                'stripe_hosted_invoice_url': hosted_invoice_url,
                'amount_total': session.get('amount_total'),
                'currency': session.get('currency'),
                'payment_intent_id': session.get('payment_intent'),
                'payment_status': session.get('payment_status'),
            },
        )
