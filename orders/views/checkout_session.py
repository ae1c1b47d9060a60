"""
orders.views.checkout_session

POST /api/checkout/  (authenticated)

Body:    {"template_id": 3, "flow": "checkout" | "intent"}
Header:  Idempotency-Key (optional) - replaying the same key returns the same
         Stripe session and the same order.

Returns the {ok, data, error, ver} envelope. data carries order_id plus either
{session_id, url} (checkout) or {payment_intent_id, client_secret} (intent).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from orders import services
from orders.exceptions import GatewayError, OrderError
from orders.serializers import CheckoutRequestSerializer

logger = logging.getLogger(__name__)

VER = "checkout.v2026-03-16.1"


def _json_ok(data: Dict[str, Any], status: int = 200) -> Response:
    return Response({"ok": True, "data": data, "error": None, "ver": VER}, status=status)


def _json_error(message: str, status: int, code: str = "error", detail: Optional[Any] = None) -> Response:
    err: Dict[str, Any] = {"message": message, "code": code}
    if detail:
        err["detail"] = detail if not isinstance(detail, str) else detail[:500]
    return Response({"ok": False, "data": None, "error": err, "ver": VER}, status=status)


def _get_ip(request) -> str:
    xff = request.META.get("HTTP_X_FORWARDED_FOR")
    if xff:
        return xff.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "unknown")


def _check_rate_limit(user_id: int, ip: str, limit_per_minute: int) -> Optional[Response]:
    key = f"tpl_checkout_rl:{user_id}:{ip}"
    count = cache.get(key, 0)
    try:
        count = int(count)
    except (TypeError, ValueError):
        count = 0

    count += 1
    cache.set(key, count, timeout=60)

    if count > limit_per_minute:
        return _json_error(
            "Too many checkout attempts. Please try again in a minute.",
            429,
            code="rate_limited",
        )
    return None


class CheckoutSessionView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        ser = CheckoutRequestSerializer(data=request.data)
        if not ser.is_valid():
            return _json_error("Invalid checkout request.", 400, code="invalid_request", detail=ser.errors)

        ip = _get_ip(request)
        rl = _check_rate_limit(request.user.pk, ip, int(getattr(settings, "CHECKOUT_RATE_LIMIT_PER_MIN", 20)))
        if rl:
            return rl

        try:
            gateway = services.build_gateway()
        except ImproperlyConfigured as e:
            logger.error("Checkout misconfigured: %s", e)
            return _json_error("Checkout is not configured.", 500, code="misconfigured")

        initiator = services.build_checkout_initiator(gateway)
        idem = (request.headers.get("Idempotency-Key") or "").strip() or None

        try:
            result = initiator.start(
                user=request.user,
                template_id=ser.validated_data["template_id"],
                flow=ser.validated_data["flow"],
                idempotency_key=idem,
            )
        except GatewayError as e:
            return _json_error("Unable to create checkout session.", 502, code=e.code, detail=str(e))
        except OrderError as e:
            return _json_error(str(e) or "Checkout failed.", e.http_status, code=e.code)

        return _json_ok(result.as_dict(), status=201 if result.created else 200)
