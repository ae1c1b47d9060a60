"""
orders.views.payment_return

Where Stripe Checkout sends the browser back to.

The success page never trusts the query string beyond the session id: it
re-fetches the session from Stripe, pushes a paid session through the same
reconciler path as the webhook, and reports what the database says.
"""

from __future__ import annotations

import logging

from django.core.exceptions import ImproperlyConfigured
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET

from orders import services
from orders.exceptions import GatewayError

log = logging.getLogger(__name__)


def _payload(session_id: str, order) -> dict:
    status = "paid" if order is not None and order.is_purchased else "processing"
    return {
        "status": status,
        "session_id": session_id,
        "order_id": getattr(order, "pk", None),
    }


@require_GET
def checkout_success(request: HttpRequest) -> JsonResponse:
    session_id = (request.GET.get("session_id") or "").strip()
    if not session_id:
        return JsonResponse({"ok": False, "error": {"code": "missing_session_id", "message": "session_id is required."}}, status=400)

    store = services.build_store()

    try:
        gateway = services.build_gateway()
        session = gateway.retrieve_checkout_session(session_id)
    except (ImproperlyConfigured, GatewayError) as e:
        order = store.find_by_reference(session_id)
        if order is None:
            log.info("Success redirect for unknown session %s: %s", session_id, e)
            return JsonResponse({"ok": False, "error": {"code": "not_found", "message": "Unknown checkout session."}}, status=404)
        log.warning("Success redirect: Stripe lookup failed for %s, using local order %s", session_id, order.pk)
        return JsonResponse({"ok": True, "data": _payload(session_id, order)})

    if session.is_paid:
        services.build_reconciler(gateway).confirm_checkout_session(session)

    order = store.find_by_reference(session_id)
    return JsonResponse({"ok": True, "data": _payload(session_id, order)})


@require_GET
def checkout_cancel(request: HttpRequest) -> JsonResponse:
    return JsonResponse({"ok": True, "data": {"status": "cancelled", "message": "Payment cancelled."}})
