from typing import Dict

from viraloop.utils.logger import logger
from .base import BaseHandler, is_one_time


class PaymentIntentHandler(BaseHandler):
    async def handle_payment_intent_succeeded(self, event: Dict) -> Dict:
        payment_intent = event['data']['object']

        if not is_one_time(payment_intent):
            logger.debug(f"[WEBHOOK] PaymentIntent {payment_intent.get('id')} is not a one-time payment, skipping")
            return {'status': 'ignored', 'message': 'Not a one-time payment'}

        return await self.apply_one_time_purchase(
            payment_intent,
            amount_total=payment_intent.get('amount'),
            payment_intent_id=payment_intent.get('id'),
        )
