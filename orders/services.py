"""
orders.services

Builds the order-flow collaborators from Django settings. Views and commands
call these per request; nothing is cached at import time, so tests can swap
settings (override_settings) or patch build_gateway.
"""

from __future__ import annotations

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from orders.checkout import CheckoutInitiator
from orders.emailing import send_order_confirmation
from orders.gateway import StripeGateway
from orders.reconciler import OrderReconciler
from orders.store import OrderStore


def build_gateway() -> StripeGateway:
    secret_key = (getattr(settings, "STRIPE_SECRET_KEY", "") or "").strip()
    if not secret_key:
        raise ImproperlyConfigured("STRIPE_SECRET_KEY is not set.")
    return StripeGateway(
        secret_key,
        webhook_secret=(getattr(settings, "STRIPE_WEBHOOK_SECRET", "") or "").strip(),
        timeout=int(getattr(settings, "STRIPE_TIMEOUT_SECONDS", 10)),
        max_network_retries=int(getattr(settings, "STRIPE_MAX_NETWORK_RETRIES", 2)),
    )


def build_store() -> OrderStore:
    return OrderStore()


def build_reconciler(gateway=None) -> OrderReconciler:
    return OrderReconciler(
        store=build_store(),
        gateway=gateway,
        on_paid=send_order_confirmation,
    )


def build_checkout_initiator(gateway) -> CheckoutInitiator:
    return CheckoutInitiator(
        gateway,
        build_store(),
        success_url=settings.STRIPE_SUCCESS_URL,
        cancel_url=settings.STRIPE_CANCEL_URL,
        currency=getattr(settings, "STRIPE_CURRENCY", "usd"),
    )
