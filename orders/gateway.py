"""
orders.gateway

Thin Stripe client for the order flow. Everything Stripe-shaped stops here:
callers get plain dicts / small dataclasses back and GatewayError on failure.

The client is built per instance (no global stripe.api_key) with a bounded
HTTP timeout and bounded network retries, so one slow Stripe call can never
hold a webhook or checkout request open indefinitely.

SETTINGS
- STRIPE_SECRET_KEY           (required)
- STRIPE_WEBHOOK_SECRET       (required for verify_event)
- STRIPE_TIMEOUT_SECONDS      (default 10)
- STRIPE_MAX_NETWORK_RETRIES  (default 2)

========= CHANGE LOG =========
2026-03-02 • ADD: checkout session create/retrieve + webhook verification.
2026-03-09 • ADD: payment intents, session lookup by intent, refunds.
2026-03-16 • FIX: classify connection/rate-limit/5xx errors as retryable.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from orders.exceptions import GatewayError, InvalidPayload, InvalidSignature

log = logging.getLogger(__name__)

# Stripe payment_status values that mean "money is in"
PAID_PAYMENT_STATUSES = ("paid", "no_payment_required")
SESSION_ID_PREFIX = "cs_"


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str = ""
    status: str = ""
    payment_status: str = ""
    payment_intent_id: str = ""
    amount_total: Optional[int] = None
    currency: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_PAYMENT_STATUSES

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"


@dataclass(frozen=True)
class PaymentIntentHandle:
    id: str
    client_secret: str = ""
    status: str = ""


def safe_str(val: Any) -> str:
    if val is None:
        return ""
    try:
        return str(val)
    except Exception:
        return ""


def _to_plain_dict(obj: Any) -> Dict[str, Any]:
    """
    Convert Stripe objects / mappings into a plain dict (best-effort).
    """
    for name in ("to_dict", "to_dict_recursive"):
        fn = getattr(obj, name, None)
        if callable(fn):
            try:
                return fn()
            except Exception:
                continue
    try:
        return dict(obj)
    except (TypeError, ValueError):
        return {}


def stripe_id(val: Any) -> str:
    """Stripe fields like `payment_intent` are either an id or an expanded object."""
    if isinstance(val, dict):
        return safe_str(val.get("id"))
    return safe_str(val)


def session_from_payload(obj: Any) -> CheckoutSession:
    """Build a CheckoutSession from an API object or a webhook `data.object`."""
    data = _to_plain_dict(obj)
    amount = data.get("amount_total")
    return CheckoutSession(
        id=safe_str(data.get("id")),
        url=safe_str(data.get("url")),
        status=safe_str(data.get("status")),
        payment_status=safe_str(data.get("payment_status")),
        payment_intent_id=stripe_id(data.get("payment_intent")),
        amount_total=amount if isinstance(amount, int) else None,
        currency=safe_str(data.get("currency")),
        metadata={k: safe_str(v) for k, v in (data.get("metadata") or {}).items()},
    )


def _gateway_error(action: str, e: Exception) -> GatewayError:
    """Map a stripe exception to GatewayError, flagging transient failures."""
    retryable = isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError))
    status = getattr(e, "http_status", None)
    if isinstance(status, int) and status >= 500:
        retryable = True
    detail = safe_str(getattr(e, "user_message", None)) or safe_str(e)
    return GatewayError(f"Stripe {action} failed: {detail[:300]}", retryable=retryable)


class StripeGateway:
    def __init__(
        self,
        secret_key: str,
        *,
        webhook_secret: str = "",
        timeout: int = 10,
        max_network_retries: int = 2,
        client: Optional[stripe.StripeClient] = None,
    ):
        if not secret_key:
            raise ValueError("secret_key is required")
        self.webhook_secret = webhook_secret
        self._secret_key = secret_key
        self._timeout = timeout
        self._max_network_retries = max_network_retries
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            self._client = stripe.StripeClient(
                self._secret_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
                max_network_retries=self._max_network_retries,
            )
        return self._client

    # ---- webhooks ----

    def verify_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header over the raw body and return the
        event as a plain dict. Nothing is parsed before the signature checks out.
        """
        if not self.webhook_secret:
            raise ValueError("webhook_secret is not configured")
        if not sig_header:
            raise InvalidSignature("Missing Stripe-Signature header.")

        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(safe_str(e)) from e
        except ValueError as e:
            raise InvalidPayload(safe_str(e)) from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidPayload(safe_str(e)) from e
        if not isinstance(event, dict) or not event.get("type"):
            raise InvalidPayload("Event payload is not an object with a type.")
        return event

    # ---- checkout sessions ----

    def create_checkout_session(
        self,
        *,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str = "",
        client_reference_id: str = "",
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
            "payment_intent_data": {"metadata": dict(metadata)},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id

        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        try:
            session = self.client.checkout.sessions.create(params=params, options=options)
        except stripe.StripeError as e:
            log.exception("Stripe checkout session create failed")
            raise _gateway_error("checkout session create", e) from e

        result = session_from_payload(session)
        if not result.id or not result.url:
            raise GatewayError("Stripe did not return a session id/url.")
        log.info("Stripe checkout session created id=%s amount=%s %s", result.id, amount, currency)
        return result

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            session = self.client.checkout.sessions.retrieve(session_id)
        except stripe.StripeError as e:
            log.warning("Stripe session retrieve failed id=%s: %s", session_id, safe_str(e))
            raise _gateway_error("checkout session retrieve", e) from e
        return session_from_payload(session)

    def find_session_for_payment_intent(self, payment_intent_id: str) -> Optional[str]:
        """Id of the checkout session that owns `payment_intent_id`, if any."""
        try:
            page = self.client.checkout.sessions.list(params={"payment_intent": payment_intent_id, "limit": 1})
        except stripe.StripeError as e:
            log.warning("Stripe session lookup by intent failed pi=%s: %s", payment_intent_id, safe_str(e))
            raise _gateway_error("checkout session lookup", e) from e
        for session in page.data:
            return safe_str(session.get("id")) or None
        return None

    # ---- payment intents ----

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        params = {
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
            "automatic_payment_methods": {"enabled": True},
        }
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        try:
            intent = self.client.payment_intents.create(params=params, options=options)
        except stripe.StripeError as e:
            log.exception("Stripe payment intent create failed")
            raise _gateway_error("payment intent create", e) from e

        data = _to_plain_dict(intent)
        handle = PaymentIntentHandle(
            id=safe_str(data.get("id")),
            client_secret=safe_str(data.get("client_secret")),
            status=safe_str(data.get("status")),
        )
        if not handle.id:
            raise GatewayError("Stripe did not return a payment intent id.")
        return handle

    # ---- refunds ----

    def refund(self, payment_intent_id: str, *, idempotency_key: Optional[str] = None) -> str:
        if not payment_intent_id:
            raise GatewayError("Order has no payment intent to refund.")
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        try:
            refund = self.client.refunds.create(params={"payment_intent": payment_intent_id}, options=options)
        except stripe.StripeError as e:
            log.exception("Stripe refund failed pi=%s", payment_intent_id)
            raise _gateway_error("refund", e) from e
        refund_id = safe_str(refund.get("id"))
        log.info("Stripe refund created id=%s pi=%s", refund_id, payment_intent_id)
        return refund_id
