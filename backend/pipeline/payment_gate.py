"""
Payment Gate
============
Stripe Checkout on one side, verified webhooks on the other.

- Session creation attaches the staging join key (JobMetadata) unchanged as
  Stripe session metadata, so no database is needed to find the job again.
- Webhooks are signature-checked before anything reads their payload.
- WebhookRouter dispatches verified events by type; unrouted types are
  acknowledged, not errors.

pip install stripe structlog
"""

import asyncio
import json
import math
from functools import partial
from typing import Any, Callable, Optional

import stripe
import structlog

from pipeline.errors import (
    ConfigurationError,
    InvalidSignature,
    UpstreamUnavailable,
    ValidationError,
)
from schemas.staging import CheckoutResult, CompletedPayment, JobMetadata

CHECKOUT_COMPLETED = "checkout.session.completed"

logger = structlog.get_logger().bind(component="payment_gate")


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict], Any]


class WebhookRouter:
    """
    Webhook routing by event type.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def route(self, event: dict) -> Optional[Any]:
        """Run the handler for ``event``; None when the type is not routed."""
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("event_ignored", event_type=event_type, stripe_event_id=event.get("id"))
            return None

        return await handler(event)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# PAYMENT GATE
# =============================================================================

def _coerce_amount(amount: Any) -> int:
    """Minor-unit amount as Stripe's integer ``unit_amount``."""
    # JSON numbers only; numeric strings such as "4900" are rejected
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Invalid amount")
    value = float(amount)
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Invalid amount")

    unit_amount = int(round(value))
    if unit_amount < 1:
        raise ValidationError("Invalid amount")
    return unit_amount


class PaymentGate:
    """
    Example:
        gate = PaymentGate(secret_key, webhook_secret, site_url)
        result = await gate.create_checkout(4900, "usd", outcome.metadata())
        # payer goes to result.checkout_url
        event = gate.verify_event(raw_body, request.headers["stripe-signature"])
    """

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        site_url: str = "",
        product_name: str = "Virtual Staging Image",
        stripe_client=stripe,
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._site_url = site_url.rstrip("/")
        self._product_name = product_name
        self._stripe = stripe_client

    # =========================================================================
    # CHECKOUT SESSION CREATION
    # =========================================================================

    async def create_checkout(
        self,
        amount: Any,
        currency: Any,
        metadata: JobMetadata,
        customer_email: Optional[str] = None,
    ) -> CheckoutResult:
        unit_amount = _coerce_amount(amount)
        if not isinstance(currency, str) or not currency.strip():
            raise ValidationError("Invalid currency")

        log = logger.bind(job_id=metadata.job_id)
        log.info("checkout_initiated", amount=unit_amount, currency=currency.lower())

        create = partial(
            self._stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": currency.strip().lower(),
                    "product_data": {"name": self._product_name},
                    "unit_amount": unit_amount,
                },
                "quantity": 1,
            }],
            success_url=f"{self._site_url}/thank-you",
            cancel_url=f"{self._site_url}/cancel",
            customer_email=customer_email or None,
            metadata=metadata.to_stripe_metadata(),
            api_key=self._secret_key,
        )

        try:
            session = await asyncio.get_event_loop().run_in_executor(None, create)
        except stripe.StripeError as e:
            log.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            raise UpstreamUnavailable("Stripe checkout failed", details={"error": str(e)}) from e

        log.info("checkout_created", stripe_session_id=session.id)
        return CheckoutResult(checkout_url=session.url, session_id=session.id)

    # =========================================================================
    # WEBHOOK VERIFICATION
    # =========================================================================

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify the Stripe-Signature header against the raw body, then parse it.

        Raises:
            InvalidSignature: missing/invalid signature or unparseable body.
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise InvalidSignature("Missing Stripe signature")
        if not self._webhook_secret:
            logger.error("webhook_secret_missing")
            raise ConfigurationError("Missing Stripe webhook secret", details="STRIPE_WEBHOOK_SECRET")

        try:
            body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
            self._stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature(details=str(e)) from e

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.warning("webhook_parse_error", error=str(e))
            raise InvalidSignature(details="Unparseable webhook body") from e

        if not isinstance(event, dict):
            raise InvalidSignature(details="Webhook body is not an object")

        logger.info("webhook_verified", event_type=event.get("type"), stripe_event_id=event.get("id"))
        return event

    @staticmethod
    def extract_completed_payment(event: dict) -> CompletedPayment:
        """Metadata and payer email from a checkout.session.completed event, verbatim."""
        session = (event.get("data") or {}).get("object") or {}
        metadata = session.get("metadata") or {}
        customer_details = session.get("customer_details") or {}

        customer_email = (
            customer_details.get("email")
            or session.get("customer_email")
            or metadata.get("customer_email")
            or None
        )

        return CompletedPayment(
            session_id=session.get("id"),
            metadata=dict(metadata),
            customer_email=customer_email,
        )
