"""
orders.exceptions

Everything the order flow raises on purpose. Views map these to HTTP codes;
reconciliation anomalies are logged, not raised.
"""

from __future__ import annotations


class OrderError(Exception):
    """Base class for order/payment errors."""

    code = "order_error"
    http_status = 400


class OrderNotFound(OrderError):
    code = "order_not_found"
    http_status = 404


class OrderAlreadyExists(OrderError):
    code = "order_exists"
    http_status = 409


class TemplateNotFound(OrderError):
    code = "template_not_found"
    http_status = 404


class InvalidCheckout(OrderError):
    code = "invalid_checkout"
    http_status = 400


class GatewayError(OrderError):
    """
    Stripe call failed. `retryable` is True for network/rate-limit/5xx style
    failures where asking Stripe to redeliver (503) makes sense.
    """

    code = "gateway_error"
    http_status = 502

    def __init__(self, message: str = "", *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class InvalidSignature(OrderError):
    code = "bad_signature"
    http_status = 400


class InvalidPayload(OrderError):
    code = "invalid_payload"
    http_status = 400
