import json
from typing import Awaitable, Callable, Dict, Optional

import stripe
from fastapi import HTTPException

from viraloop.services.db import Database
from viraloop.utils.logger import logger
from viraloop.billing.config import StripeEventType
from viraloop.billing.credits.manager import CreditManager
from viraloop.billing.shared.exceptions import ConfigurationError
from viraloop.billing.repo.webhook_events import WebhookLock
from .handlers.checkout import CheckoutHandler
from .handlers.invoice import InvoiceHandler
from .handlers.payment_intent import PaymentIntentHandler
from .handlers.subscription import SubscriptionHandler

Handler = Callable[[Dict], Awaitable[Dict]]


class WebhookService:
    """Verifies, dedupes and dispatches Stripe webhook events.

    Every handler is idempotent on its own (existence checks, idempotency
    keys, limits recomputed from the price id), so the event journal only
    saves work on redelivery. Handler failures are logged, journaled and
    acknowledged; Stripe is never asked to retry work that may have
    partially committed in an earlier scope.
    """

    def __init__(
        self,
        db: Database,
        credit_manager: CreditManager,
        stripe_api,
        webhook_secret: Optional[str] = None,
        domain: Optional[str] = "viraloop.io",
        allow_unsigned: bool = False,
        lock: Optional[WebhookLock] = None,
    ):
        self.stripe_api = stripe_api
        self.webhook_secret = webhook_secret
        self.domain = domain
        self.allow_unsigned = allow_unsigned
        self.lock = lock

        checkout = CheckoutHandler(db, credit_manager, stripe_api)
        subscription = SubscriptionHandler(db, credit_manager, stripe_api)
        invoice = InvoiceHandler(db, credit_manager, stripe_api)
        payment_intent = PaymentIntentHandler(db, credit_manager, stripe_api)

        self._routes: Dict[StripeEventType, Handler] = {
            StripeEventType.CHECKOUT_SESSION_COMPLETED: checkout.handle_checkout_session_completed,
            StripeEventType.SUBSCRIPTION_CREATED: subscription.handle_subscription_created,
            StripeEventType.SUBSCRIPTION_UPDATED: subscription.handle_subscription_updated,
            StripeEventType.SUBSCRIPTION_DELETED: subscription.handle_subscription_updated,
            StripeEventType.INVOICE_PAID: invoice.handle_invoice_paid,
            StripeEventType.INVOICE_PAYMENT_FAILED: invoice.handle_invoice_payment_failed,
            StripeEventType.PAYMENT_INTENT_SUCCEEDED: payment_intent.handle_payment_intent_succeeded,
        }
        missing = set(StripeEventType) - set(self._routes)
        if missing:
            raise ConfigurationError(f"No webhook handler for: {sorted(m.value for m in missing)}")

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Dict:
        if self.webhook_secret:
            try:
                return self.stripe_api.construct_event(payload, sig_header, self.webhook_secret)
            except stripe.SignatureVerificationError:
                raise HTTPException(status_code=400, detail="Invalid webhook signature")
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid payload")

        if not self.allow_unsigned:
            raise HTTPException(status_code=500, detail="Webhook secret not configured")

        logger.warning("[WEBHOOK] STRIPE_WEBHOOK_SECRET not set, accepting unsigned event")
        try:
            return json.loads(payload)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid payload")

    async def process_stripe_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict:
        event = self.construct_event(payload, sig_header)
        event_id = event.get('id')
        event_type = event.get('type', 'unknown')

        if self.lock and event_id:
            can_process, reason = await self.lock.check_and_mark_webhook_processing(event_id, event_type)
            if not can_process:
                logger.info(f"[WEBHOOK] Skipping event {event_id}: {reason}")
                return {'status': 'success', 'message': f'Event already processed or in progress: {reason}'}

        result = await self.dispatch(event)

        if self.lock and event_id:
            if result.get('error'):
                await self.lock.mark_webhook_failed(event_id, result.get('message', 'processing failed'))
            else:
                await self.lock.mark_webhook_completed(event_id)

        return result

    async def dispatch(self, event: Dict) -> Dict:
        event_type_raw = event.get('type')
        obj = (event.get('data') or {}).get('object') or {}
        metadata = obj.get('metadata') or {}

        event_domain = metadata.get('domain')
        if self.domain and event_domain and event_domain != self.domain:
            logger.info(f"[WEBHOOK] Event {event.get('id')} is for {event_domain}, ignoring")
            return {'status': 'ignored', 'message': f'Event not from {self.domain}'}

        event_type = StripeEventType.parse(event_type_raw)
        if event_type is None:
            logger.info(f"[WEBHOOK] Unhandled event type: {event_type_raw}")
            return {'status': 'ignored', 'message': f'Unhandled event type: {event_type_raw}'}

        if metadata.get('type') == 'credits' and event_type != StripeEventType.CHECKOUT_SESSION_COMPLETED:
            return {'status': 'ignored', 'message': 'Unhandled credits event'}

        logger.info(f"[WEBHOOK] Processing event type: {event_type.value} (ID: {event.get('id')})")
        try:
            return await self._routes[event_type](event)
        except Exception as e:
            logger.error(f"[WEBHOOK] Error processing {event_type.value} ({event.get('id')}): {e}", exc_info=True)
            return {
                'status': 'success',
                'error': 'processed_with_errors',
                'message': f"{type(e).__name__}: {str(e)[:1000]}",
            }
