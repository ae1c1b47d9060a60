"""
orders.checkout

Start a purchase: ask Stripe for a checkout session (or a bare payment intent)
and only then record the pending Order against the returned id. A failed
Stripe call therefore never leaves an order behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.utils.crypto import salted_hmac

from catalog.models import Template
from orders.exceptions import InvalidCheckout, OrderAlreadyExists, TemplateNotFound
from orders.models import Order
from orders.store import OrderStore

log = logging.getLogger(__name__)

FLOW_CHECKOUT = "checkout"
FLOW_INTENT = "intent"
FLOWS = (FLOW_CHECKOUT, FLOW_INTENT)


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    reference: str
    flow: str
    url: str = ""
    client_secret: str = ""
    created: bool = True

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "order_id": self.order.pk,
            "flow": self.flow,
            "amount": self.order.amount,
            "currency": self.order.currency,
            "status": self.order.status,
        }
        if self.flow == FLOW_INTENT:
            data["payment_intent_id"] = self.reference
            data["client_secret"] = self.client_secret
        else:
            data["session_id"] = self.reference
            data["url"] = self.url
        return data


def with_session_placeholder(url: str) -> str:
    """Append Stripe's {CHECKOUT_SESSION_ID} placeholder as `session_id`."""
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}session_id={{CHECKOUT_SESSION_ID}}"


class CheckoutInitiator:
    def __init__(
        self,
        gateway,
        store: OrderStore,
        *,
        success_url: str,
        cancel_url: str,
        currency: str = "usd",
    ):
        self.gateway = gateway
        self.store = store
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.currency = currency

    def _idempotency_key(self, client_key: str, user_id: int, template_id: int, amount: int, flow: str) -> str:
        """
        Stripe idempotency keys must only be replayed with identical parameters,
        so everything that shapes the request goes into the hash.
        """
        payload = "|".join(
            [client_key, str(user_id), str(template_id), str(amount), self.currency, flow, self.success_url, self.cancel_url]
        )
        digest = salted_hmac("orders.checkout", payload).hexdigest()
        return f"tpl_checkout_{digest[:40]}"

    def start(
        self,
        *,
        user,
        template_id: int,
        flow: str = FLOW_CHECKOUT,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        if flow not in FLOWS:
            raise InvalidCheckout(f"Unknown checkout flow {flow!r}.")

        template = Template.objects.filter(pk=template_id, is_active=True).first()
        if template is None:
            raise TemplateNotFound(f"Template {template_id} not found.")
        if template.price is None or template.price < 0:
            raise InvalidCheckout("Template price must be non-negative.")

        amount = template.price_in_minor_units()
        metadata = {"user_id": str(user.pk), "template_id": str(template.pk)}
        idem = (
            self._idempotency_key(idempotency_key, user.pk, template.pk, amount, flow)
            if idempotency_key
            else None
        )

        log.info("Checkout start user=%s template=%s amount=%s flow=%s", user.pk, template.pk, amount, flow)

        url = client_secret = ""
        if flow == FLOW_INTENT:
            intent = self.gateway.create_payment_intent(
                amount=amount,
                currency=self.currency,
                metadata=metadata,
                idempotency_key=idem,
            )
            reference, payment_intent_id, client_secret = intent.id, intent.id, intent.client_secret
        else:
            session = self.gateway.create_checkout_session(
                amount=amount,
                currency=self.currency,
                product_name=template.name,
                metadata=metadata,
                success_url=with_session_placeholder(self.success_url),
                cancel_url=self.cancel_url,
                customer_email=(getattr(user, "email", "") or "").strip(),
                client_reference_id=str(user.pk),
                idempotency_key=idem,
            )
            reference, payment_intent_id, url = session.id, session.payment_intent_id, session.url

        try:
            order = self.store.create(
                user_id=user.pk,
                template_id=template.pk,
                external_reference=reference,
                amount=amount,
                currency=self.currency,
                payment_intent_id=payment_intent_id,
            )
            created = True
        except OrderAlreadyExists:
            # Stripe replayed an idempotent request; hand back the same order.
            order = self.store.get_by_reference(reference)
            if order.user_id != user.pk or order.template_id != template.pk:
                raise
            created = False
            log.info("Checkout replay user=%s reference=%s order=%s", user.pk, reference, order.pk)

        return CheckoutResult(
            order=order,
            reference=reference,
            flow=flow,
            url=url,
            client_secret=client_secret,
            created=created,
        )
