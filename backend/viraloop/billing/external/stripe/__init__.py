from .client import StripeAPIWrapper
from .webhooks import WebhookService

__all__ = ['StripeAPIWrapper', 'WebhookService']
