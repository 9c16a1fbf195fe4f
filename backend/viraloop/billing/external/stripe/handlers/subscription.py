from typing import Dict

from viraloop.utils.logger import logger
from .base import BaseHandler, extract_period_end, extract_price_id


class SubscriptionHandler(BaseHandler):
    async def handle_subscription_created(self, event: Dict) -> Dict:
        obj = event['data']['object']
        stripe_subscription_id = obj['id']
        metadata = obj.get('metadata') or {}

        user_id = metadata.get('client_reference_id') or obj.get('client_reference_id')
        if not user_id:
            logger.warning(f"[WEBHOOK] Subscription {stripe_subscription_id} has no client reference id, skipping")
            return {'status': 'ignored', 'message': 'No client reference id found'}

        existing = await self.find_existing(stripe_subscription_id)
        if existing:
            logger.info(f"[WEBHOOK] Subscription {stripe_subscription_id} already exists")
            return {'status': 'success', 'message': 'Subscription already exists'}

        stripe_subscription = await self.stripe_api.retrieve_subscription(stripe_subscription_id)
        plan = obj.get('plan') or {}

        return await self.create_from_stripe(
            stripe_subscription,
            user_id=user_id,
            team_id=metadata.get('team'),
            extra={
                'stripe_customer': obj.get('customer'),
                'stripe_invoice': obj.get('latest_invoice'),
                'amount_total': plan.get('amount'),
                'currency': plan.get('currency') or obj.get('currency'),
            },
        )

    async def handle_subscription_updated(self, event: Dict) -> Dict:
        """Also serves ``customer.subscription.deleted``, whose status is terminal."""
        obj = event['data']['object']
        stripe_subscription_id = obj['id']

        existing = await self.find_existing(stripe_subscription_id)
        if not existing:
            # The create event may not have arrived yet; the next event for
            # this subscription, or its checkout, will carry the state.
            logger.warning(f"[WEBHOOK] No matching subscription found for {stripe_subscription_id}, dropping update")
            return {'status': 'success', 'message': 'No matching subscription found'}

        latest_invoice = obj.get('latest_invoice')
        if isinstance(latest_invoice, dict):
            latest_invoice = latest_invoice.get('id')

        return await self.apply_provider_state(
            existing,
            status=obj.get('status'),
            price_id=extract_price_id(obj),
            period_end=extract_period_end(obj),
            changes={
                'stripe_invoice': latest_invoice,
                'currency': obj.get('currency'),
            },
        )
