import threading
from unittest import mock

from django.core import mail
from django.db import OperationalError, connection
from django.test import TestCase, TransactionTestCase

from orders import services
from orders.exceptions import GatewayError
from orders.gateway import CheckoutSession
from orders.models import Order, OrderStatus
from orders.reconciler import OrderReconciler, signal_from_event
from orders.store import OrderStore
from orders.tests.fakes import FakeGateway, intent_event, make_template, make_user, session_event


class SignalMappingTests(TestCase):
    def test_completed_paid_is_success(self):
        signal = signal_from_event(session_event("checkout.session.completed", "cs_1"))
        self.assertEqual(signal.kind, "success")
        self.assertEqual(signal.payment_intent_id, "pi_test_1")

    def test_completed_no_payment_required_is_success(self):
        signal = signal_from_event(
            session_event("checkout.session.completed", "cs_1", payment_status="no_payment_required")
        )
        self.assertEqual(signal.kind, "success")

    def test_completed_unpaid_waits(self):
        signal = signal_from_event(session_event("checkout.session.completed", "cs_1", payment_status="unpaid"))
        self.assertEqual(signal.kind, "await")

    def test_failure_events(self):
        expired = signal_from_event(session_event("checkout.session.expired", "cs_1", payment_intent=None))
        self.assertEqual((expired.kind, expired.detail), ("failure", "checkout session expired"))

        async_failed = signal_from_event(session_event("checkout.session.async_payment_failed", "cs_1"))
        self.assertEqual(async_failed.kind, "failure")

        declined = signal_from_event(
            intent_event("payment_intent.payment_failed", "pi_1", error_message="Your card was declined.")
        )
        self.assertEqual((declined.kind, declined.detail), ("failure", "Your card was declined."))

    def test_unrelated_events_are_ignored(self):
        self.assertIsNone(signal_from_event({"type": "customer.created", "data": {"object": {"id": "cus_1"}}}))
        self.assertIsNone(signal_from_event({"type": "checkout.session.completed", "data": {"object": {}}}))


class ReconcilerTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.tpl = make_template()
        self.store = OrderStore()
        self.gateway = FakeGateway()
        self.reconciler = services.build_reconciler(self.gateway)
        self.order = self.store.create(
            user_id=self.user.pk, template_id=self.tpl.pk, external_reference="cs_test_1", amount=4999
        )

    def _status(self, order=None):
        return Order.all_objects.get(pk=(order or self.order).pk).status

    def test_success_marks_paid_and_sends_one_email(self):
        outcome = self.reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))

        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.status, OrderStatus.PAID)
        self.assertEqual(self._status(), OrderStatus.PAID)
        self.assertEqual(Order.objects.get(pk=self.order.pk).payment_intent_id, "pi_test_1")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["buyer@example.com"])
        self.assertIn("Modern Resume", mail.outbox[0].body)

    def test_duplicate_delivery_is_idempotent(self):
        event = session_event("checkout.session.completed", "cs_test_1")
        outcomes = [self.reconciler.handle_event(event) for _ in range(5)]

        self.assertEqual(sum(o.applied for o in outcomes), 1)
        self.assertTrue(all(o.status == OrderStatus.PAID for o in outcomes))
        self.assertEqual(self._status(), OrderStatus.PAID)
        self.assertEqual(len(mail.outbox), 1)

    def test_payment_intent_success_after_session_success_is_noop(self):
        self.reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))
        outcome = self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_test_1"))

        self.assertEqual(outcome.action, "noop")
        self.assertEqual(outcome.order_id, self.order.pk)
        self.assertEqual(len(mail.outbox), 1)

    def test_stale_failure_is_ignored(self):
        self.store.transition(self.order.pk, OrderStatus.PAID)
        for event in (
            session_event("checkout.session.expired", "cs_test_1", payment_intent=None),
            session_event("checkout.session.async_payment_failed", "cs_test_1"),
        ):
            outcome = self.reconciler.handle_event(event)
            self.assertFalse(outcome.applied)
        self.assertEqual(self._status(), OrderStatus.PAID)

    def test_failure_marks_pending_order_failed(self):
        outcome = self.reconciler.handle_event(
            session_event("checkout.session.expired", "cs_test_1", payment_intent=None)
        )
        self.assertTrue(outcome.applied)
        order = Order.objects.get(pk=self.order.pk)
        self.assertEqual(order.status, OrderStatus.FAILED)
        self.assertEqual(order.status_detail, "checkout session expired")
        self.assertEqual(len(mail.outbox), 0)

    def test_success_after_failure_is_logged_not_applied(self):
        self.store.transition(self.order.pk, OrderStatus.FAILED, "expired")
        with self.assertLogs("orders.reconciler", level="WARNING") as logs:
            outcome = self.reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))

        self.assertEqual(outcome.action, "noop")
        self.assertEqual(self._status(), OrderStatus.FAILED)
        self.assertTrue(any("manual review" in line for line in logs.output))
        self.assertEqual(len(mail.outbox), 0)

    def test_unpaid_completion_leaves_order_pending(self):
        outcome = self.reconciler.handle_event(
            session_event("checkout.session.completed", "cs_test_1", payment_status="unpaid")
        )
        self.assertEqual(outcome.action, "noop")
        self.assertEqual(self._status(), OrderStatus.PENDING)

        self.reconciler.handle_event(session_event("checkout.session.async_payment_succeeded", "cs_test_1"))
        self.assertEqual(self._status(), OrderStatus.PAID)

    def test_race_between_two_stale_snapshots_applies_once(self):
        stale = self.store.get(self.order.pk)
        event = session_event("checkout.session.completed", "cs_test_1")

        with mock.patch.object(self.store, "find_by_reference", return_value=stale):
            first = OrderReconciler(self.store, self.gateway, on_paid=self.reconciler.on_paid).handle_event(event)
            second = OrderReconciler(self.store, self.gateway, on_paid=self.reconciler.on_paid).handle_event(event)

        self.assertEqual([first.applied, second.applied].count(True), 1)
        self.assertEqual(self._status(), OrderStatus.PAID)
        self.assertEqual(len(mail.outbox), 1)

    def test_decline_on_open_session_keeps_order_pending(self):
        self.store.attach_payment_intent(self.order.pk, "pi_known")
        outcome = self.reconciler.handle_event(
            intent_event("payment_intent.payment_failed", "pi_known", error_message="Insufficient funds.")
        )
        self.assertEqual((outcome.action, outcome.order_id), ("noop", self.order.pk))
        order = Order.objects.get(pk=self.order.pk)
        self.assertEqual((order.status, order.status_detail), (OrderStatus.PENDING, "Insufficient funds."))

    def test_decline_then_retry_on_same_session_ends_paid_once(self):
        self.store.attach_payment_intent(self.order.pk, "pi_test_1")
        declined = intent_event("payment_intent.payment_failed", "pi_test_1", error_message="Your card was declined.")

        self.reconciler.handle_event(declined)
        self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_test_1"))
        self.reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))
        self.reconciler.handle_event(declined)

        self.assertEqual(self._status(), OrderStatus.PAID)
        self.assertEqual(len(mail.outbox), 1)

    def test_intent_flow_order_fails_on_decline(self):
        intent_order = self.store.create(
            user_id=self.user.pk, template_id=self.tpl.pk, external_reference="pi_flow", amount=4999,
            payment_intent_id="pi_flow",
        )
        outcome = self.reconciler.handle_event(
            intent_event("payment_intent.payment_failed", "pi_flow", error_message="Insufficient funds.")
        )
        self.assertTrue(outcome.applied)
        order = Order.objects.get(pk=intent_order.pk)
        self.assertEqual((order.status, order.status_detail), (OrderStatus.FAILED, "Insufficient funds."))

    def test_failed_session_lookup_never_creates_second_order(self):
        metadata = {"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)}
        self.gateway.fail_with = GatewayError("No such payment_intent", retryable=False)

        outcome = self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_2", metadata=metadata))
        self.assertEqual(outcome.action, "unmatched")

        self.gateway.fail_with = None
        self.reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1", payment_intent="pi_2"))

        self.assertEqual(Order.all_objects.count(), 1)
        self.assertEqual(self._status(), OrderStatus.PAID)
        self.assertEqual(len(mail.outbox), 1)

    def test_intent_success_beside_pending_checkout_is_not_created(self):
        metadata = {"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)}
        outcome = self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_new", metadata=metadata))

        self.assertEqual(outcome.action, "unmatched")
        self.assertFalse(Order.all_objects.filter(external_reference="pi_new").exists())
        self.assertEqual(self._status(), OrderStatus.PENDING)
        self.assertEqual(len(mail.outbox), 0)

    def test_intent_success_with_metadata_creates_when_nothing_pending(self):
        self.store.transition(self.order.pk, OrderStatus.PAID)
        metadata = {"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)}
        outcome = self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_new", metadata=metadata))

        self.assertEqual(outcome.action, "created")
        self.assertEqual(Order.objects.get(external_reference="pi_new").status, OrderStatus.PAID)

    def test_payment_intent_matched_through_gateway_session_lookup(self):
        self.gateway.intent_sessions["pi_late"] = "cs_test_1"
        outcome = self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_late"))

        self.assertTrue(outcome.applied)
        order = Order.objects.get(pk=self.order.pk)
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.payment_intent_id, "pi_late")

    def test_retryable_gateway_error_during_lookup_propagates(self):
        self.gateway.fail_with = GatewayError("connection reset", retryable=True)
        with self.assertRaises(GatewayError):
            self.reconciler.handle_event(intent_event("payment_intent.succeeded", "pi_unknown"))

    def test_orphan_success_creates_paid_order_once(self):
        metadata = {"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)}
        event = session_event("checkout.session.completed", "cs_orphan", metadata=metadata, payment_intent="pi_o")

        first = self.reconciler.handle_event(event)
        second = self.reconciler.handle_event(event)

        self.assertEqual(first.action, "created")
        self.assertEqual(second.action, "noop")
        orphan = Order.objects.get(external_reference="cs_orphan")
        self.assertEqual(orphan.status, OrderStatus.PAID)
        self.assertEqual((orphan.amount, orphan.payment_intent_id), (4999, "pi_o"))
        self.assertEqual(Order.objects.filter(external_reference="cs_orphan").count(), 1)
        self.assertEqual(len(mail.outbox), 1)

    def test_orphan_success_with_bad_metadata_creates_nothing(self):
        for metadata in ({}, {"user_id": "999", "template_id": str(self.tpl.pk)}, {"user_id": "x", "template_id": "3"}):
            outcome = self.reconciler.handle_event(
                session_event("checkout.session.completed", "cs_orphan", metadata=metadata)
            )
            self.assertEqual(outcome.action, "unmatched")
        self.assertFalse(Order.all_objects.filter(external_reference="cs_orphan").exists())

    def test_orphan_failure_never_creates(self):
        metadata = {"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)}
        outcome = self.reconciler.handle_event(
            intent_event("payment_intent.payment_failed", "pi_orphan", metadata=metadata)
        )
        self.assertEqual(outcome.action, "unmatched")
        self.assertEqual(Order.all_objects.count(), 1)

    def test_on_paid_failure_does_not_undo_transition(self):
        boom = mock.Mock(side_effect=RuntimeError("smtp down"))
        reconciler = OrderReconciler(self.store, self.gateway, on_paid=boom)

        with self.assertLogs("orders.reconciler", level="ERROR"):
            outcome = reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))

        self.assertTrue(outcome.applied)
        boom.assert_called_once()
        self.assertEqual(self._status(), OrderStatus.PAID)

    def test_user_without_email_skips_confirmation(self):
        type(self.user).objects.filter(pk=self.user.pk).update(email="")
        outcome = self.reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))
        self.assertTrue(outcome.applied)
        self.assertEqual(len(mail.outbox), 0)

    def test_database_errors_propagate(self):
        with mock.patch.object(OrderStore, "transition", side_effect=OperationalError("database is locked")):
            reconciler = services.build_reconciler(self.gateway)
            with self.assertRaises(OperationalError):
                reconciler.handle_event(session_event("checkout.session.completed", "cs_test_1"))

    def test_confirm_checkout_session_uses_same_transition(self):
        session = CheckoutSession(
            id="cs_test_1", status="complete", payment_status="paid", payment_intent_id="pi_confirm"
        )
        outcome = self.reconciler.confirm_checkout_session(session)

        self.assertTrue(outcome.applied)
        self.assertEqual(self._status(), OrderStatus.PAID)
        self.assertEqual(self.store.get(self.order.pk).payment_intent_id, "pi_confirm")

    def test_confirm_expired_session_fails_order(self):
        session = CheckoutSession(id="cs_test_1", status="expired", payment_status="unpaid")
        outcome = self.reconciler.confirm_checkout_session(session, source="reconcile_pending")
        self.assertEqual((outcome.action, outcome.status), ("transitioned", "failed"))


class ConcurrentDeliveryTests(TransactionTestCase):
    """Two webhook deliveries for the same session racing on real threads."""

    def setUp(self):
        if connection.vendor == "sqlite" and connection.is_in_memory_db():
            self.skipTest("threads need a file-backed test database")
        self.user = make_user()
        self.tpl = make_template()
        self.order = OrderStore().create(
            user_id=self.user.pk, template_id=self.tpl.pk, external_reference="cs_test_1", amount=4999
        )

    def test_simultaneous_deliveries_apply_once(self):
        event = session_event("checkout.session.completed", "cs_test_1")
        barrier = threading.Barrier(2)
        outcomes, errors = [], []

        def deliver():
            try:
                reconciler = services.build_reconciler(FakeGateway())
                barrier.wait(timeout=10)
                outcomes.append(reconciler.handle_event(event))
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(o.action for o in outcomes), ["noop", "transitioned"])
        self.assertTrue(all(o.status == OrderStatus.PAID for o in outcomes))
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PAID)
        self.assertEqual(len(mail.outbox), 1)
