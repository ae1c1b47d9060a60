from django.urls import path, include
from rest_framework.routers import SimpleRouter

from orders.views.checkout_session import CheckoutSessionView
from orders.views.order_views import AdminOrderViewSet, OrderViewSet
from orders.views.payment_return import checkout_cancel, checkout_success
from orders.views.stripe_webhook import stripe_webhook

router = SimpleRouter()
router.register(r"api/orders", OrderViewSet, basename="order")
router.register(r"api/admin/orders", AdminOrderViewSet, basename="admin-order")

urlpatterns = [
    path("api/checkout/", CheckoutSessionView.as_view(), name="checkout"),
    path("payments/webhooks/stripe/", stripe_webhook, name="stripe-webhook"),
    path("payments/success/", checkout_success, name="checkout-success"),
    path("payments/cancel/", checkout_cancel, name="checkout-cancel"),
    path("", include(router.urls)),
]
