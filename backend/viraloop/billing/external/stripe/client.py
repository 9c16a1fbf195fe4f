from typing import Any, Callable, Dict, Optional

import stripe

from viraloop.utils.logger import logger


def to_plain(obj: Any) -> Any:
    """Stripe objects to plain dicts; dicts pass through unchanged."""
    if obj is None:
        return None
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    return obj


class StripeAPIWrapper:
    """The Stripe calls the reconciler needs, bound to one API key.

    Everything returned is a plain ``dict`` so handlers never depend on
    StripeObject attribute access, and tests can substitute any object with
    the same coroutine methods.
    """

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    async def safe_stripe_call(self, func: Callable, *args, **kwargs) -> Dict:
        if not self.api_key:
            raise stripe.AuthenticationError("STRIPE_SECRET_KEY is not configured")
        try:
            result = await func(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] {func.__qualname__} failed: {e}")
            raise
        return to_plain(result)

    async def retrieve_subscription(self, subscription_id: str) -> Dict:
        return await self.safe_stripe_call(stripe.Subscription.retrieve_async, subscription_id)

    async def retrieve_invoice(self, invoice_id: str) -> Dict:
        return await self.safe_stripe_call(stripe.Invoice.retrieve_async, invoice_id)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict:
        return await self.safe_stripe_call(stripe.PaymentIntent.retrieve_async, payment_intent_id)

    async def cancel_subscription(self, subscription_id: str) -> Dict:
        return await self.safe_stripe_call(stripe.Subscription.cancel_async, subscription_id)

    def construct_event(self, payload: bytes, sig_header: str, secret: str) -> Dict:
        event = stripe.Webhook.construct_event(payload, sig_header, secret, tolerance=300)
        return to_plain(event)
