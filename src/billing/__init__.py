"""Payment provider webhooks and subscription sync."""
from .exceptions import BillingError, InvalidSignatureError
from .webhooks import LemonSqueezyProcessor, record_webhook, verify_signature

__all__ = [
    "BillingError",
    "InvalidSignatureError",
    "LemonSqueezyProcessor",
    "record_webhook",
    "verify_signature",
]
