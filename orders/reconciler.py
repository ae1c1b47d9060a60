"""
orders.reconciler

Webhook-driven order state machine.

Stripe delivers events at-least-once, in any order, and often several per
payment (checkout.session.completed + payment_intent.succeeded). The
reconciler turns each one into a success/failure "signal", finds the order it
belongs to and applies the matching conditional transition. Whichever caller's
UPDATE actually matched is the one that runs side effects (confirmation email);
everybody else gets a no-op that still reports success.

Lookup order for a signal:
1) external_reference == object id (cs_... / pi_...)
2) payment_intent_id == the signal's payment intent
3) payment_intent.* only: ask Stripe which checkout session owns the intent
4) nothing matched: a success with usable metadata (user_id + template_id)
   creates the order directly as paid; anything else is logged and acked.
   Failure signals never create orders. Neither does a success whose Stripe
   lookup in (3) errored, or a payment_intent success while the same user
   still has a pending hosted checkout for that template.

A declined card inside an open hosted checkout is not final: the buyer can
retry on the same session. payment_intent.payment_failed on a cs_... order
only records the decline; expiry / async failure of the session fail it.

========= CHANGE LOG =========
2026-03-02 • ADD: checkout.session.completed / expired handling.
2026-03-09 • ADD: async payment + payment_intent events, session lookup by intent.
2026-03-16 • ADD: create-as-paid fallback for orphan success events.
2026-03-23 • FIX: no fallback create after a failed session lookup or next to a pending checkout.
2026-03-23 • FIX: card declines keep hosted-checkout orders pending.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from django.contrib.auth import get_user_model

from catalog.models import Template
from orders.exceptions import GatewayError, OrderAlreadyExists, OrderNotFound
from orders.gateway import CheckoutSession, PAID_PAYMENT_STATUSES, SESSION_ID_PREFIX, stripe_id, safe_str
from orders.models import Order, OrderStatus
from orders.store import OrderStore

log = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"
AWAIT = "await"  # acknowledged, wait for a later event

SESSION_OBJECT = "checkout.session"
INTENT_OBJECT = "payment_intent"

# Outcome actions
TRANSITIONED = "transitioned"
CREATED = "created"
NOOP = "noop"
UNMATCHED = "unmatched"
IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentSignal:
    kind: str
    object_type: str
    reference: str
    event_type: str = ""
    payment_intent_id: str = ""
    detail: str = ""
    amount: Optional[int] = None
    currency: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ReconcileOutcome:
    action: str
    event_type: str = ""
    reference: str = ""
    order_id: Optional[int] = None
    status: str = ""

    @property
    def applied(self) -> bool:
        """True only for the call that changed (or created) the order."""
        return self.action in (TRANSITIONED, CREATED)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["applied"] = self.applied
        return data


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    obj = (event.get("data") or {}).get("object") or {}
    return obj if isinstance(obj, dict) else {}


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    raw = obj.get("metadata") or {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): safe_str(v) for k, v in raw.items()}


def _amount(obj: Dict[str, Any], key: str) -> Optional[int]:
    val = obj.get(key)
    return val if isinstance(val, int) and not isinstance(val, bool) else None


def signal_from_event(event: Dict[str, Any]) -> Optional[PaymentSignal]:
    """Map a verified Stripe event to a PaymentSignal, or None if we don't care."""
    event_type = safe_str(event.get("type"))
    obj = _event_object(event)
    obj_id = safe_str(obj.get("id"))
    if not obj_id:
        return None

    if event_type.startswith("checkout.session."):
        common = dict(
            object_type=SESSION_OBJECT,
            reference=obj_id,
            event_type=event_type,
            payment_intent_id=stripe_id(obj.get("payment_intent")),
            amount=_amount(obj, "amount_total"),
            currency=safe_str(obj.get("currency")),
            metadata=_metadata(obj),
        )
        if event_type == "checkout.session.completed":
            if safe_str(obj.get("payment_status")) in PAID_PAYMENT_STATUSES:
                return PaymentSignal(kind=SUCCESS, detail="checkout completed", **common)
            return PaymentSignal(kind=AWAIT, detail="awaiting async payment", **common)
        if event_type == "checkout.session.async_payment_succeeded":
            return PaymentSignal(kind=SUCCESS, detail="async payment succeeded", **common)
        if event_type == "checkout.session.async_payment_failed":
            return PaymentSignal(kind=FAILURE, detail="async payment failed", **common)
        if event_type == "checkout.session.expired":
            return PaymentSignal(kind=FAILURE, detail="checkout session expired", **common)
        return None

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        common = dict(
            object_type=INTENT_OBJECT,
            reference=obj_id,
            event_type=event_type,
            payment_intent_id=obj_id,
            amount=_amount(obj, "amount_received") or _amount(obj, "amount"),
            currency=safe_str(obj.get("currency")),
            metadata=_metadata(obj),
        )
        if event_type == "payment_intent.succeeded":
            return PaymentSignal(kind=SUCCESS, detail="payment succeeded", **common)
        last_error = obj.get("last_payment_error") or {}
        message = safe_str(last_error.get("message")) if isinstance(last_error, dict) else ""
        return PaymentSignal(kind=FAILURE, detail=message or "payment failed", **common)

    return None


def signal_from_session(session: CheckoutSession, *, source: str = "") -> PaymentSignal:
    """Signal for a checkout session fetched straight from Stripe."""
    if session.is_paid:
        kind, detail = SUCCESS, "checkout completed"
    elif session.is_expired:
        kind, detail = FAILURE, "checkout session expired"
    else:
        kind, detail = AWAIT, "awaiting payment"
    return PaymentSignal(
        kind=kind,
        object_type=SESSION_OBJECT,
        reference=session.id,
        event_type=source,
        payment_intent_id=session.payment_intent_id,
        detail=detail,
        amount=session.amount_total,
        currency=session.currency,
        metadata=dict(session.metadata),
    )


def _meta_int(metadata: Dict[str, str], *keys: str) -> Optional[int]:
    for key in keys:
        raw = (metadata.get(key) or "").strip()
        if raw.isdigit():
            return int(raw)
    return None


class OrderReconciler:
    def __init__(
        self,
        store: OrderStore,
        gateway=None,
        on_paid: Optional[Callable[[Order], Any]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.on_paid = on_paid

    # ---- entry points ----

    def handle_event(self, event: Dict[str, Any]) -> ReconcileOutcome:
        """Apply one verified webhook event (plain dict)."""
        signal = signal_from_event(event)
        if signal is None:
            event_type = safe_str(event.get("type"))
            log.info("Stripe event ignored type=%s id=%s", event_type, safe_str(event.get("id")))
            return ReconcileOutcome(action=IGNORED, event_type=event_type)
        return self.apply(signal)

    def confirm_checkout_session(self, session: CheckoutSession, *, source: str = "success_redirect") -> ReconcileOutcome:
        """Apply the state of a session re-fetched from Stripe (success page, replays)."""
        return self.apply(signal_from_session(session, source=source))

    def apply(self, signal: PaymentSignal) -> ReconcileOutcome:
        order, lookup_failed = self._locate(signal)

        if order is None:
            if signal.kind == SUCCESS and not lookup_failed:
                return self._create_paid_from_metadata(signal)
            log.warning(
                "Stripe %s (%s) matched no order ref=%s pi=%s; acknowledged",
                signal.event_type or signal.object_type, signal.kind, signal.reference, signal.payment_intent_id,
            )
            return ReconcileOutcome(action=UNMATCHED, event_type=signal.event_type, reference=signal.reference)

        if signal.payment_intent_id:
            self.store.attach_payment_intent(order.pk, signal.payment_intent_id)

        if signal.kind == SUCCESS:
            return self._apply_success(order, signal)
        if signal.kind == FAILURE:
            if signal.object_type == INTENT_OBJECT and order.external_reference.startswith(SESSION_ID_PREFIX):
                return self._note_decline(order, signal)
            return self._apply_failure(order, signal)
        return self._outcome(NOOP, signal, order.pk, order.status)

    # ---- lookup ----

    def _locate(self, signal: PaymentSignal) -> Tuple[Optional[Order], bool]:
        """(order or None, whether the Stripe session lookup errored)."""
        order = self.store.find_by_reference(signal.reference)
        if order is not None:
            return order, False

        if signal.payment_intent_id:
            order = self.store.find_by_payment_intent(signal.payment_intent_id)
            if order is not None:
                return order, False

        if signal.object_type == INTENT_OBJECT and self.gateway is not None:
            try:
                session_id = self.gateway.find_session_for_payment_intent(signal.payment_intent_id)
            except GatewayError as e:
                if e.retryable:
                    raise
                log.warning("Session lookup for pi=%s failed: %s", signal.payment_intent_id, e)
                return None, True
            if session_id:
                return self.store.find_by_reference(session_id), False

        return None, False

    # ---- transitions ----

    def _apply_success(self, order: Order, signal: PaymentSignal) -> ReconcileOutcome:
        if self.store.transition(order.pk, OrderStatus.PAID, signal.detail):
            self._notify_paid(order.pk)
            return self._outcome(TRANSITIONED, signal, order.pk, OrderStatus.PAID)

        current = self._current_status(order)
        if current == OrderStatus.FAILED:
            log.warning(
                "Order %s is failed but %s reports success (ref=%s pi=%s); needs manual review",
                order.pk, signal.event_type or signal.object_type, signal.reference, signal.payment_intent_id,
            )
        return self._outcome(NOOP, signal, order.pk, current)

    def _apply_failure(self, order: Order, signal: PaymentSignal) -> ReconcileOutcome:
        if self.store.transition(order.pk, OrderStatus.FAILED, signal.detail):
            return self._outcome(TRANSITIONED, signal, order.pk, OrderStatus.FAILED)

        current = self._current_status(order)
        if current != OrderStatus.FAILED:
            log.warning(
                "Stale failure for order %s ignored (status=%s, %s: %s)",
                order.pk, current, signal.event_type or signal.object_type, signal.detail,
            )
        return self._outcome(NOOP, signal, order.pk, current)

    def _note_decline(self, order: Order, signal: PaymentSignal) -> ReconcileOutcome:
        if self.store.note_pending(order.pk, signal.detail):
            log.info(
                "Order %s: attempt declined on open session %s (%s); stays pending",
                order.pk, order.external_reference, signal.detail,
            )
            return self._outcome(NOOP, signal, order.pk, OrderStatus.PENDING)

        current = self._current_status(order)
        if current != OrderStatus.FAILED:
            log.warning(
                "Stale failure for order %s ignored (status=%s, %s: %s)",
                order.pk, current, signal.event_type or signal.object_type, signal.detail,
            )
        return self._outcome(NOOP, signal, order.pk, current)

    def _create_paid_from_metadata(self, signal: PaymentSignal) -> ReconcileOutcome:
        user_id = _meta_int(signal.metadata, "user_id", "userId")
        template_id = _meta_int(signal.metadata, "template_id", "templateId")

        template = Template.objects.filter(pk=template_id).first() if template_id else None
        user_ok = bool(user_id) and get_user_model().objects.filter(pk=user_id).exists()
        if template is None or not user_ok:
            log.warning(
                "Stripe success for unknown ref=%s pi=%s without usable metadata %s; acknowledged",
                signal.reference, signal.payment_intent_id, signal.metadata,
            )
            return ReconcileOutcome(action=UNMATCHED, event_type=signal.event_type, reference=signal.reference)

        if signal.object_type == INTENT_OBJECT:
            pending = self.store.find_pending_session_order(user_id, template.pk)
            if pending is not None:
                # the session events settle this purchase
                log.warning(
                    "Stripe %s pi=%s not linked yet; order %s (%s) is pending for user=%s template=%s",
                    signal.event_type or signal.object_type, signal.payment_intent_id,
                    pending.pk, pending.external_reference, user_id, template.pk,
                )
                return ReconcileOutcome(action=UNMATCHED, event_type=signal.event_type, reference=signal.reference)

        amount = signal.amount if signal.amount is not None else template.price_in_minor_units()
        try:
            order = self.store.create(
                user_id=user_id,
                template_id=template.pk,
                external_reference=signal.reference,
                amount=amount,
                currency=signal.currency or "usd",
                status=OrderStatus.PAID,
                payment_intent_id=signal.payment_intent_id,
                status_detail=f"{signal.detail} (created from webhook)",
            )
        except OrderAlreadyExists:
            # a concurrent delivery created it first
            existing = self.store.find_by_reference(signal.reference)
            return self._outcome(NOOP, signal, getattr(existing, "pk", None), getattr(existing, "status", ""))

        log.warning(
            "Order %s created as paid from %s ref=%s user=%s template=%s",
            order.pk, signal.event_type or signal.object_type, signal.reference, user_id, template.pk,
        )
        self._notify_paid(order.pk)
        return self._outcome(CREATED, signal, order.pk, OrderStatus.PAID)

    # ---- helpers ----

    def _current_status(self, order: Order) -> str:
        try:
            return self.store.get(order.pk).status
        except OrderNotFound:
            return order.status

    def _notify_paid(self, order_id: int) -> None:
        if self.on_paid is None:
            return
        try:
            self.on_paid(self.store.get(order_id))
        except Exception:
            log.exception("on_paid side effect failed for order %s; order stays paid", order_id)

    @staticmethod
    def _outcome(action: str, signal: PaymentSignal, order_id: Optional[int], status: str) -> ReconcileOutcome:
        return ReconcileOutcome(
            action=action,
            event_type=signal.event_type,
            reference=signal.reference,
            order_id=order_id,
            status=str(status),
        )
