"""
orders.emailing

Transactional email for orders. Sent through Django's email backend
(Mailgun via django-anymail in production, locmem under tests).

SETTINGS
- DEFAULT_FROM_EMAIL
- STORE_NAME           (defaults to "Template Store")
- STORE_SUPPORT_EMAIL  (optional)
"""

from __future__ import annotations

import logging
from decimal import Decimal

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.utils.html import escape

log = logging.getLogger(__name__)


def _from_email() -> str:
    return (
        getattr(settings, "DEFAULT_FROM_EMAIL", "")
        or getattr(settings, "SERVER_EMAIL", "")
        or "no-reply@localhost"
    )


def _support_email() -> str:
    return (getattr(settings, "STORE_SUPPORT_EMAIL", "") or "").strip()


def _store_name() -> str:
    return (getattr(settings, "STORE_NAME", "") or "Template Store").strip()


def _format_amount(amount: int, currency: str) -> str:
    major = (Decimal(amount) / 100).quantize(Decimal("0.01"))
    return f"{major} {(currency or '').upper()}".strip()


def send_order_confirmation(order) -> bool:
    """
    Email the buyer that their order is paid.

    Returns False (and logs) when the user has no email address on file.
    Delivery errors propagate; the reconciler decides what to do with them.
    """
    to_email = (getattr(order.user, "email", "") or "").strip()
    if not to_email:
        log.warning("Order %s paid but user %s has no email; confirmation skipped", order.pk, order.user_id)
        return False

    store = _store_name()
    template_name = order.template.name
    amount = _format_amount(order.amount, order.currency)
    support = _support_email()

    subject = f"{store}: Order Confirmation #{order.pk}"

    text_lines = [
        "Thank you for your purchase!",
        "",
        f"Order ID: {order.pk}",
        f"Template: {template_name}",
        f"Amount: {amount}",
        "",
        "You can now download your template from your dashboard.",
    ]
    if support:
        text_lines += ["", f"Need help? Contact {support}"]
    text_lines += ["", f"- {store}"]
    text_body = "\n".join(text_lines)

    support_html = f"<p>Need help? Contact {escape(support)}</p>" if support else ""
    html_body = f"""
<!doctype html>
<html>
  <body style="font-family: Arial, sans-serif; line-height: 1.5;">
    <h2>Thank you for your purchase!</h2>
    <p>Order ID: <strong>{order.pk}</strong></p>
    <p>Template: <strong>{escape(template_name)}</strong></p>
    <p>Amount: {escape(amount)}</p>
    <p>You can now download your template from your dashboard.</p>
    {support_html}
    <p>- {escape(store)}</p>
  </body>
</html>
""".strip()

    msg = EmailMultiAlternatives(
        subject=subject,
        body=text_body,
        from_email=_from_email(),
        to=[to_email],
    )
    msg.attach_alternative(html_body, "text/html")
    msg.send(fail_silently=False)

    log.info("Order confirmation sent order=%s", order.pk)
    return True
