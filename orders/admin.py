import logging

from django.contrib import admin, messages
from django.core.exceptions import ImproperlyConfigured

from orders import services
from orders.exceptions import GatewayError
from orders.models import Order, OrderStatus

log = logging.getLogger(__name__)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "template", "status", "amount", "currency", "external_reference", "created_at")
    list_filter = ("status", "created_at")
    search_fields = ("external_reference", "payment_intent_id", "user__email", "user__username", "template__name")
    readonly_fields = (
        "user", "template", "external_reference", "payment_intent_id",
        "amount", "currency", "status", "status_detail", "created_at", "updated_at",
    )
    actions = ["mark_delivered", "refund"]

    def get_queryset(self, request):
        return Order.all_objects.select_related("user", "template")

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Mark selected paid orders as delivered")
    def mark_delivered(self, request, queryset):
        store = services.build_store()
        done = skipped = 0
        for order in queryset:
            if store.transition(order.pk, OrderStatus.DELIVERED, f"delivered by {request.user}"):
                done += 1
            else:
                skipped += 1
        self.message_user(request, f"{done} order(s) delivered, {skipped} skipped (not paid).", messages.SUCCESS)

    @admin.action(description="Refund selected orders through Stripe")
    def refund(self, request, queryset):
        try:
            gateway = services.build_gateway()
        except ImproperlyConfigured as e:
            self.message_user(request, f"Stripe is not configured: {e}", messages.ERROR)
            return

        store = services.build_store()
        for order in queryset:
            if order.status not in (OrderStatus.PAID, OrderStatus.DELIVERED):
                self.message_user(request, f"Order {order.pk} is {order.status}; only paid orders can be refunded.", messages.WARNING)
                continue
            try:
                refund_id = gateway.refund(order.payment_intent_id, idempotency_key=f"tpl_refund_{order.pk}")
            except GatewayError as e:
                log.warning("Refund for order %s failed: %s", order.pk, e)
                self.message_user(request, f"Order {order.pk}: refund failed ({e}).", messages.ERROR)
                continue

            if store.transition(order.pk, OrderStatus.REFUNDED, f"refund {refund_id}"):
                self.message_user(request, f"Order {order.pk} refunded ({refund_id}).", messages.SUCCESS)
            else:
                log.warning("Order %s refunded at Stripe (%s) but status changed concurrently", order.pk, refund_id)
                self.message_user(request, f"Order {order.pk}: refunded at Stripe but status changed meanwhile.", messages.WARNING)
