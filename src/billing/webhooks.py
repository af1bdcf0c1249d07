"""Lemon Squeezy webhook verification, storage and processing."""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.persistence.models import (
    BillingCustomer,
    ProviderMapping,
    Subscription,
    User,
    WebhookEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

PROVIDER = "lemonsqueezy"

SIGNATURE_HEADERS = ("X-Signature", "X-LemonSqueezy-Signature")

STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "on_trial": "trialing",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "expired": "expired",
    "past_due": "past_due",
}


def verify_signature(secret: Optional[str], raw_body: bytes, signature: Optional[str]) -> bool:
    """
    Check an HMAC-SHA256 hex signature of the raw request body.

    Args:
        secret: Webhook signing secret
        raw_body: Request body exactly as received
        signature: Hex digest from the signature header

    Returns:
        False when the secret or signature is missing or doesn't match
    """
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def payload_digest(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def extract_event_type(payload: dict) -> Optional[str]:
    meta = payload.get("meta") or {}
    return (
        meta.get("event_name")
        or payload.get("event_name")
        or payload.get("type")
        or meta.get("event")
        or meta.get("name")
    )


def record_webhook(
    session: Session, payload: dict, event_id: Optional[str] = None
) -> tuple[WebhookEvent, bool]:
    """
    Store an inbound webhook once.

    The idempotency key is the provider's event id when given, otherwise a
    digest of the payload, so redelivered bodies map to the same row.

    Returns:
        Tuple of (webhook event, created)
    """
    key = event_id or payload_digest(payload)
    existing = session.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == PROVIDER, WebhookEvent.idempotency_key == key
        )
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("Duplicate %s webhook key=%s status=%s", PROVIDER, key, existing.status)
        return existing, False

    event = WebhookEvent(
        provider=PROVIDER,
        idempotency_key=key,
        event_type=extract_event_type(payload),
        payload=payload,
        status="pending",
        received_at=utcnow(),
    )
    session.add(event)
    session.flush()
    logger.info("%s webhook received event_type=%s key=%s", PROVIDER, event.event_type, key)
    return event, True


def normalize_status(raw: Any) -> str:
    return STATUS_MAP.get(str(raw or "").strip().lower(), "inactive")


def truthy(value: Any) -> bool:
    return value is True or str(value).lower() in ("true", "1")


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            logger.warning("Unparseable webhook timestamp: %s", value)
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class LemonSqueezyProcessor:
    """
    Sync subscription state from a stored Lemon Squeezy webhook.

    Payload shapes vary by event and API version, so every field is looked
    up through a list of fallbacks. Non-subscription events are ignored.

    Example:
        >>> LemonSqueezyProcessor(session, event).run()
        >>> event.status
        'processed'
    """

    def __init__(self, session: Session, webhook_event: WebhookEvent):
        self.session = session
        self.webhook_event = webhook_event
        self.payload = webhook_event.payload or {}

    def run(self) -> str:
        """
        Process the event and record the outcome on it.

        Errors are not raised: the session is rolled back and the event is
        marked failed with ``"<ExceptionClass>: <message>"``. Commit the
        event before calling this so the rollback can't discard it.

        Returns:
            Final event status (processed, ignored or failed)
        """
        event = self.webhook_event
        event_type = extract_event_type(self.payload)
        if not event.event_type and event_type:
            event.event_type = event_type

        started = time.monotonic()
        try:
            handled = self.handle_subscription_event(event_type)
        except Exception as e:
            logger.exception("%s webhook %s failed", PROVIDER, event.id)
            self.session.rollback()
            event.status = "failed"
            event.processed_at = utcnow()
            event.error_message = f"{type(e).__name__}: {e}"
            self.session.flush()
            return event.status

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "%s webhook processed event_type=%s handled=%s duration_ms=%d id=%s",
            PROVIDER,
            event_type,
            handled,
            duration_ms,
            event.id,
        )
        event.status = "processed" if handled else "ignored"
        event.processed_at = utcnow()
        self.session.flush()
        return event.status

    def handle_subscription_event(self, event_type: Optional[str]) -> bool:
        """Upsert the subscription; False when the event isn't applicable."""
        if not event_type or "subscription" not in event_type.lower():
            return False

        data = self.payload.get("data") or {}
        if "attributes" not in data and isinstance(data.get("data"), dict):
            data = data["data"]
        subscription_id = data.get("id")
        attributes = data.get("attributes") or {}

        user = self.resolve_user(attributes)
        if user is None:
            logger.warning("No user for %s subscription %s", PROVIDER, subscription_id)
            return False

        subscription = self.session.execute(
            select(Subscription).where(
                Subscription.provider == PROVIDER,
                Subscription.external_subscription_id == str(subscription_id),
                Subscription.user_id == user.id,
            )
        ).scalar_one_or_none()
        if subscription is None:
            subscription = Subscription(
                provider=PROVIDER,
                external_subscription_id=str(subscription_id),
                user_id=user.id,
            )
            self.session.add(subscription)

        plan_id = self.resolve_plan_id(attributes)
        if plan_id:
            subscription.plan_id = plan_id

        subscription.status = normalize_status(
            attributes.get("status") or attributes.get("state") or subscription.status
        )
        subscription.trial_ends_at = _parse_time(
            attributes.get("trial_ends_at") or attributes.get("trial_end_date") or attributes.get("trial_end")
        )
        subscription.current_period_starts_at = _parse_time(
            attributes.get("current_period_start")
            or attributes.get("current_period_starts_at")
            or attributes.get("renews_at")
        )
        subscription.current_period_ends_at = _parse_time(
            attributes.get("current_period_end")
            or attributes.get("current_period_ends_at")
            or attributes.get("ends_at")
            or attributes.get("renews_at")
        )
        subscription.cancel_at_period_end = truthy(
            attributes.get("cancel_at_period_end") or attributes.get("cancel_at_end") or False
        )
        subscription.cancelled_at = _parse_time(attributes.get("cancelled_at"))
        subscription.meta = {**(subscription.meta or {}), "raw": attributes}
        self.session.flush()

        customer_id = (
            attributes.get("customer_id")
            or attributes.get("customer")
            or _dig(self.payload, "meta", "customer_id")
        )
        if customer_id:
            self._ensure_customer(user, str(customer_id))
        return True

    def resolve_user(self, attributes: dict) -> Optional[User]:
        user_id = (
            _dig(attributes, "checkout_data", "custom", "user_id")
            or _dig(attributes, "checkout_data", "custom_data", "user_id")
            or _dig(attributes, "custom", "user_id")
            or _dig(attributes, "custom_data", "user_id")
            or _dig(self.payload, "meta", "custom_data", "user_id")
            or _dig(self.payload, "meta", "custom", "user_id")
        )
        if user_id:
            return self.session.get(User, str(user_id))

        email = attributes.get("user_email") or attributes.get("email") or _dig(attributes, "checkout_data", "email")
        if email:
            return self.session.execute(
                select(User).where(func.lower(User.email) == str(email).strip().lower())
            ).scalar_one_or_none()
        return None

    def resolve_plan_id(self, attributes: dict) -> Optional[str]:
        variant_id = (
            attributes.get("variant_id")
            or _dig(attributes, "variant", "id")
            or _dig(attributes, "variant", "data", "id")
            or _dig(self.payload, "data", "relationships", "variant", "data", "id")
        )
        if not variant_id:
            return None
        mapping = self.session.execute(
            select(ProviderMapping).where(
                ProviderMapping.provider == PROVIDER,
                ProviderMapping.external_variant_id == str(variant_id),
            )
        ).scalar_one_or_none()
        return mapping.plan_id if mapping else None

    def _ensure_customer(self, user: User, external_customer_id: str) -> None:
        existing = self.session.execute(
            select(BillingCustomer).where(
                BillingCustomer.user_id == user.id, BillingCustomer.provider == PROVIDER
            )
        ).scalar_one_or_none()
        if existing is None:
            self.session.add(
                BillingCustomer(user_id=user.id, provider=PROVIDER, external_customer_id=external_customer_id)
            )
            self.session.flush()
