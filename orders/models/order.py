"""
orders.models.order

One purchase attempt of one template by one user.

`external_reference` (Stripe checkout session id `cs_...` or payment intent id
`pi_...`) is the only key webhooks are matched against. Status only ever moves
forward along ALLOWED_TRANSITIONS; see orders.store.OrderStore.transition.

========= CHANGE LOG =========
2026-03-02 • ADD: Order model with conditional status transitions.
2026-03-09 • ADD: payment_intent_id (secondary lookup + refunds), soft delete.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    DELIVERED = "delivered", "Delivered"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


# target status -> statuses it may be reached from
ALLOWED_TRANSITIONS = {
    OrderStatus.PAID.value: (OrderStatus.PENDING.value,),
    OrderStatus.FAILED.value: (OrderStatus.PENDING.value,),
    OrderStatus.DELIVERED.value: (OrderStatus.PAID.value,),
    OrderStatus.REFUNDED.value: (OrderStatus.PAID.value, OrderStatus.DELIVERED.value),
}

PURCHASED_STATUSES = (OrderStatus.PAID.value, OrderStatus.DELIVERED.value)


class ActiveOrderManager(models.Manager):
    """Hides soft-deleted rows."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class Order(models.Model):
    Status = OrderStatus

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="orders",
    )
    template = models.ForeignKey(
        "catalog.Template",
        on_delete=models.PROTECT,
        related_name="orders",
    )

    # ---- gateway identifiers ----
    external_reference = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Checkout Session id (cs_...) or PaymentIntent id (pi_...).",
    )
    payment_intent_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Stripe PaymentIntent id (pi_...) once known. Used for refunds.",
    )

    # ---- amounts ----
    amount = models.PositiveIntegerField(
        help_text="Total amount in the smallest currency unit (e.g., cents).",
    )
    currency = models.CharField(max_length=12, default="usd")

    # ---- status ----
    status = models.CharField(
        max_length=16,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
        db_index=True,
    )
    status_detail = models.TextField(
        blank=True,
        default="",
        help_text="Last payment message or failure reason.",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(blank=True, null=True)

    objects = ActiveOrderManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ("-created_at", "-id")
        base_manager_name = "all_objects"
        indexes = [
            models.Index(fields=["user", "-created_at"], name="orders_user_created_idx"),
            models.Index(fields=["status", "created_at"], name="orders_status_created_idx"),
        ]

    def __str__(self) -> str:
        return f"Order#{self.pk}({self.external_reference})<{self.status}>"

    @property
    def is_purchased(self) -> bool:
        return self.status in PURCHASED_STATUSES
