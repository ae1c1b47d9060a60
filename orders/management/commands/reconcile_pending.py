"""
Replay stuck pending orders against Stripe.

Webhooks get lost (endpoint down, secret rotated, ...). This re-fetches each
pending order's checkout session and pushes it through the reconciler, so a
paid session ends up paid and an expired one ends up failed.

    python manage.py reconcile_pending                 # pending > 30 min
    python manage.py reconcile_pending --older-than 5
    python manage.py reconcile_pending --session cs_test_123
"""

from __future__ import annotations

from datetime import timedelta

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError, CommandParser
from django.utils import timezone

from orders import services
from orders.exceptions import GatewayError, OrderNotFound


class Command(BaseCommand):
    help = "Re-check pending orders against Stripe and apply paid/expired outcomes."

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--older-than",
            type=int,
            default=30,
            help="Only orders pending for more than this many minutes (default: 30).",
        )
        parser.add_argument(
            "--session",
            default="",
            help="Reconcile a single checkout session id (cs_...) instead.",
        )

    def handle(self, *args, **opts) -> None:
        try:
            gateway = services.build_gateway()
        except ImproperlyConfigured as e:
            raise CommandError(str(e))

        store = services.build_store()
        reconciler = services.build_reconciler(gateway)

        session_id = (opts.get("session") or "").strip()
        if session_id:
            try:
                references = [store.get_by_reference(session_id).external_reference]
            except OrderNotFound:
                # still worth asking Stripe: a paid session creates its order
                references = [session_id]
        else:
            cutoff = timezone.now() - timedelta(minutes=int(opts["older_than"]))
            references = [o.external_reference for o in store.list_stale_pending(cutoff)]

        self.stdout.write(self.style.NOTICE(f"[reconcile] {len(references)} order(s) to check"))

        changed = errors = 0
        for ref in references:
            if not ref.startswith("cs_"):
                self.stdout.write(f"[skip] {ref}: not a checkout session")
                continue
            try:
                session = gateway.retrieve_checkout_session(ref)
            except GatewayError as e:
                errors += 1
                self.stdout.write(self.style.ERROR(f"[error] {ref}: {e}"))
                continue

            outcome = reconciler.confirm_checkout_session(session, source="reconcile_pending")
            if outcome.applied:
                changed += 1
            self.stdout.write(f"[{outcome.action}] {ref} -> {outcome.status or '-'}")

        style = self.style.SUCCESS if not errors else self.style.WARNING
        self.stdout.write(style(f"[reconcile] done: {changed} changed, {errors} error(s)"))
