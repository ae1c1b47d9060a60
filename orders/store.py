"""
orders.store

Order persistence. Every status change goes through `transition`, a single
conditional UPDATE whose row count tells the caller whether *it* applied the
change. Nothing here reads a row and then writes it back.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone

from catalog.models import Template
from orders.exceptions import OrderAlreadyExists, OrderNotFound
from orders.gateway import SESSION_ID_PREFIX
from orders.models import ALLOWED_TRANSITIONS, PURCHASED_STATUSES, Order, OrderStatus

log = logging.getLogger(__name__)

USER_ORDER_LIMIT = 50


class OrderStore:
    def create(
        self,
        *,
        user_id: int,
        template_id: int,
        external_reference: str,
        amount: int,
        currency: str = "usd",
        status: str = OrderStatus.PENDING,
        payment_intent_id: str = "",
        status_detail: str = "",
    ) -> Order:
        """
        Insert a new order. A duplicate external_reference raises
        OrderAlreadyExists; the surrounding transaction stays usable.
        """
        if not external_reference:
            raise ValueError("external_reference is required")
        try:
            with transaction.atomic():
                return Order.objects.create(
                    user_id=user_id,
                    template_id=template_id,
                    external_reference=external_reference,
                    amount=amount,
                    currency=currency,
                    status=status,
                    payment_intent_id=payment_intent_id or "",
                    status_detail=status_detail,
                )
        except IntegrityError as e:
            if Order.all_objects.filter(external_reference=external_reference).exists():
                raise OrderAlreadyExists(
                    f"Order with reference {external_reference} already exists."
                ) from e
            raise

    def get(self, order_id: int) -> Order:
        try:
            return Order.objects.select_related("template", "user").get(pk=order_id)
        except Order.DoesNotExist:
            raise OrderNotFound(f"Order {order_id} not found.") from None

    def get_by_reference(self, reference: str) -> Order:
        order = self.find_by_reference(reference)
        if order is None:
            raise OrderNotFound(f"Order with reference {reference} not found.")
        return order

    def find_by_reference(self, reference: str) -> Optional[Order]:
        if not reference:
            return None
        return Order.objects.select_related("template", "user").filter(external_reference=reference).first()

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        if not payment_intent_id:
            return None
        return (
            Order.objects.select_related("template", "user")
            .filter(payment_intent_id=payment_intent_id)
            .order_by("-created_at", "-id")
            .first()
        )

    def find_pending_session_order(self, user_id: int, template_id: int) -> Optional[Order]:
        """Newest pending hosted-checkout order for this user + template."""
        return (
            Order.objects.filter(
                user_id=user_id,
                template_id=template_id,
                status=OrderStatus.PENDING,
                external_reference__startswith=SESSION_ID_PREFIX,
            )
            .order_by("-created_at", "-id")
            .first()
        )

    def list_for_user(self, user_id: int, limit: int = USER_ORDER_LIMIT) -> List[Order]:
        return list(
            Order.objects.select_related("template")
            .filter(user_id=user_id)
            .order_by("-created_at", "-id")[:limit]
        )

    def list_all(self, limit: int, offset: int = 0, status: Optional[str] = None) -> Tuple[List[Order], int]:
        qs = Order.objects.select_related("template", "user").order_by("-created_at", "-id")
        if status:
            qs = qs.filter(status=status)
        total = qs.count()
        return list(qs[offset:offset + limit]), total

    def list_stale_pending(self, older_than) -> List[Order]:
        """Pending orders created before `older_than` (a datetime)."""
        return list(
            Order.objects.filter(status=OrderStatus.PENDING, created_at__lt=older_than)
            .order_by("created_at", "id")
        )

    def transition(self, order_id: int, to_status: str, detail: str = "") -> bool:
        """
        Move order `order_id` to `to_status` iff its current status is an
        allowed source. Returns True only for the caller whose UPDATE matched.
        """
        sources = ALLOWED_TRANSITIONS.get(str(to_status))
        if not sources:
            raise ValueError(f"No transition leads to status {to_status!r}.")

        updated = Order.objects.filter(pk=order_id, status__in=sources).update(
            status=to_status,
            status_detail=detail or "",
            updated_at=timezone.now(),
        )
        if updated:
            log.info("Order %s -> %s (%s)", order_id, to_status, detail or "-")
        return bool(updated)

    def note_pending(self, order_id: int, detail: str) -> bool:
        """Overwrite status_detail of a still-pending order; status is untouched."""
        updated = Order.objects.filter(pk=order_id, status=OrderStatus.PENDING).update(
            status_detail=detail or "",
            updated_at=timezone.now(),
        )
        return bool(updated)

    def attach_payment_intent(self, order_id: int, payment_intent_id: str) -> bool:
        """Record the payment intent behind a checkout session, first writer wins."""
        if not payment_intent_id:
            return False
        updated = Order.objects.filter(pk=order_id, payment_intent_id="").update(
            payment_intent_id=payment_intent_id,
            updated_at=timezone.now(),
        )
        return bool(updated)

    def purchased_templates(self, user_id: int) -> List[Template]:
        return list(
            Template.objects.filter(
                orders__user_id=user_id,
                orders__status__in=PURCHASED_STATUSES,
                orders__deleted_at__isnull=True,
            )
            .select_related("category")
            .distinct()
            .order_by("name")
        )
