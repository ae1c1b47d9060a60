"""
orders.views.stripe_webhook

Stripe webhook endpoint. Verifies the signature over the raw body, then hands
the event to OrderReconciler.

RESPONSES
- 200  understood (including no-ops, ignored and unmatched events)
- 400  missing/bad signature, invalid payload
- 500  misconfigured, unexpected handler error (Stripe retries)
- 503  transient Stripe or database failure (Stripe retries)

SETTINGS
- STRIPE_WEBHOOK_SECRET (required) : whsec_...
- STRIPE_SECRET_KEY     (required) : used for session-by-intent lookups

========= CHANGE LOG =========
2026-03-02 • ADD: webhook receiver with signature verification.
2026-03-09 • CHANGE: all event handling moved into orders.reconciler.
2026-03-16 • ADD: 503 on retryable gateway / DB errors.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from orders import services
from orders.exceptions import GatewayError, InvalidPayload, InvalidSignature
from orders.gateway import safe_str

log = logging.getLogger(__name__)

WEBHOOK_VER = "stripe-webhook.v2026-03-16.1"


def _json_response(
    ok: bool,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    status: int = 200,
) -> JsonResponse:
    return JsonResponse(
        {"ok": bool(ok), "ver": WEBHOOK_VER, "data": data or {}, "error": error or {}},
        status=status,
    )


@csrf_exempt
def stripe_webhook(request: HttpRequest) -> JsonResponse:
    """
    Stripe webhook receiver (POST only).
    """
    if request.method != "POST":
        return _json_response(False, error={"code": "method_not_allowed", "message": "POST required."}, status=405)

    try:
        gateway = services.build_gateway()
    except ImproperlyConfigured as e:
        log.error("Stripe webhook misconfigured: %s", safe_str(e))
        return _json_response(False, error={"code": "misconfigured", "message": "Webhook not configured."}, status=500)
    if not gateway.webhook_secret:
        log.error("Stripe webhook misconfigured: STRIPE_WEBHOOK_SECRET is not set.")
        return _json_response(False, error={"code": "misconfigured", "message": "Webhook not configured."}, status=500)

    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    if not sig_header:
        return _json_response(
            False,
            error={"code": "missing_signature", "message": "Missing Stripe-Signature header."},
            status=400,
        )

    try:
        event = gateway.verify_event(request.body, sig_header)
    except InvalidSignature:
        log.warning("Stripe webhook: signature verification failed")
        return _json_response(False, error={"code": "bad_signature", "message": "Signature verification failed."}, status=400)
    except InvalidPayload:
        return _json_response(False, error={"code": "invalid_payload", "message": "Invalid JSON payload."}, status=400)

    event_type = safe_str(event.get("type"))
    event_id = safe_str(event.get("id"))
    log.info("Stripe webhook received: type=%s id=%s", event_type, event_id)

    try:
        outcome = services.build_reconciler(gateway).handle_event(event)
    except GatewayError as e:
        log.exception("Stripe webhook: gateway error type=%s id=%s", event_type, event_id)
        return _json_response(
            False,
            error={"code": "gateway_error", "message": safe_str(e), "event": event_type},
            status=503 if e.retryable else 500,
        )
    except DatabaseError as e:
        log.exception("Stripe webhook: database error type=%s id=%s", event_type, event_id)
        return _json_response(
            False,
            error={"code": "db_unavailable", "message": safe_str(e), "event": event_type},
            status=503,
        )
    except Exception as e:
        log.exception("Stripe webhook: handler error type=%s id=%s", event_type, event_id)
        return _json_response(
            False,
            error={"code": "handler_error", "message": safe_str(e), "event": event_type},
            status=500,
        )

    data = outcome.as_dict()
    data["event_id"] = event_id
    return _json_response(True, data=data, status=200)
