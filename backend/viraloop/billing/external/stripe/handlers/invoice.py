from typing import Dict

import stripe

from viraloop.utils.logger import logger
from viraloop.billing.config import ENTITLED_STATUSES
from .base import BaseHandler, extract_period_end, extract_price_id, invoice_subscription_id


def _invoice_changes(invoice: Dict) -> Dict:
    return {
        'stripe_invoice': invoice.get('id'),
        'stripe_hosted_invoice_url': invoice.get('hosted_invoice_url'),
        'amount_total': invoice.get('total'),
        'currency': invoice.get('currency'),
        'payment_intent_id': invoice.get('payment_intent'),
        'payment_status': invoice.get('status'),
    }


class InvoiceHandler(BaseHandler):
    async def handle_invoice_paid(self, event: Dict) -> Dict:
        invoice = event['data']['object']
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            logger.info(f"[WEBHOOK] Invoice {invoice.get('id')} has no subscription, skipping")
            return {'status': 'ignored', 'message': 'Invoice has no subscription'}

        existing = await self.find_existing(stripe_subscription_id)
        if not existing:
            logger.warning(f"[WEBHOOK] No matching subscription found for paid invoice {invoice.get('id')}")
            return {'status': 'success', 'message': 'No matching subscription found'}

        stripe_subscription = await self.stripe_api.retrieve_subscription(stripe_subscription_id)

        return await self.apply_provider_state(
            existing,
            status=stripe_subscription.get('status'),
            price_id=extract_price_id(stripe_subscription),
            period_end=extract_period_end(stripe_subscription),
            changes=_invoice_changes(invoice),
        )

    async def handle_invoice_payment_failed(self, event: Dict) -> Dict:
        invoice = event['data']['object']
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            logger.info(f"[WEBHOOK] Failed invoice {invoice.get('id')} has no subscription, skipping")
            return {'status': 'ignored', 'message': 'Invoice has no subscription'}

        existing = await self.find_existing(stripe_subscription_id)
        if not existing:
            logger.warning(f"[WEBHOOK] No matching subscription found for failed invoice {invoice.get('id')}")
            return {'status': 'success', 'message': 'No matching subscription found'}

        payment_intent_id = invoice.get('payment_intent')
        if payment_intent_id:
            payment_intent = await self.stripe_api.retrieve_payment_intent(payment_intent_id)
            if payment_intent.get('status') == 'requires_action':
                logger.info(f"[WEBHOOK] Invoice {invoice.get('id')} failed: payment requires action, leaving subscription untouched")
                return {'status': 'success', 'message': 'Payment requires action'}

        try:
            stripe_subscription = await self.stripe_api.cancel_subscription(stripe_subscription_id)
            logger.info(f"[WEBHOOK] Cancelled subscription {stripe_subscription_id} after failed payment")
        except stripe.InvalidRequestError as e:
            logger.warning(f"[WEBHOOK] Could not cancel {stripe_subscription_id} ({e}), reading current state instead")
            stripe_subscription = await self.stripe_api.retrieve_subscription(stripe_subscription_id)

        # A failed payment is terminal for entitlement whatever the provider reports
        status = stripe_subscription.get('status')
        if not status or status in ENTITLED_STATUSES:
            status = 'canceled'

        return await self.apply_provider_state(
            existing,
            status=status,
            price_id=extract_price_id(stripe_subscription),
            period_end=None,
            changes=_invoice_changes(invoice),
        )
