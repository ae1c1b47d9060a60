from unittest import mock

from django.core import mail
from django.core.exceptions import ImproperlyConfigured
from django.test import Client, TestCase

from orders import services
from orders.exceptions import GatewayError
from orders.models import Order, OrderStatus
from orders.store import OrderStore
from orders.tests.fakes import FakeGateway, make_template, make_user, session_event

URL = "/payments/success/"


class CheckoutSuccessViewTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.user = make_user()
        self.tpl = make_template()
        self.gateway = FakeGateway()
        self.session = self.gateway.create_checkout_session(
            amount=4999, currency="usd", product_name="Modern Resume",
            metadata={"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)},
            success_url="s", cancel_url="c",
        )
        self.order = OrderStore().create(
            user_id=self.user.pk, template_id=self.tpl.pk, external_reference=self.session.id, amount=4999
        )
        patcher = mock.patch("orders.services.build_gateway", return_value=self.gateway)
        self.build_gateway = patcher.start()
        self.addCleanup(patcher.stop)

    def _get(self, session_id):
        return self.client.get(URL, {"session_id": session_id})

    def test_missing_session_id_is_400(self):
        resp = self.client.get(URL)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "missing_session_id")

    def test_unpaid_session_reports_processing(self):
        resp = self._get(self.session.id)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["status"], "processing")
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING)

    def test_paid_session_is_reconciled_before_webhook(self):
        self.gateway.pay(self.session.id, "pi_return")
        resp = self._get(self.session.id)

        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual((data["status"], data["order_id"]), ("paid", self.order.pk))
        order = Order.objects.get(pk=self.order.pk)
        self.assertEqual((order.status, order.payment_intent_id), (OrderStatus.PAID, "pi_return"))
        self.assertEqual(len(mail.outbox), 1)

    def test_success_page_after_webhook_does_not_resend_email(self):
        self.gateway.pay(self.session.id, "pi_test_1")
        services.build_reconciler(self.gateway).handle_event(session_event("checkout.session.completed", self.session.id))

        resp = self._get(self.session.id)
        self.assertEqual(resp.json()["data"]["status"], "paid")
        self.assertEqual(len(mail.outbox), 1)

    def test_client_cannot_fake_paid(self):
        resp = self.client.get(URL, {"session_id": self.session.id, "payment_status": "paid", "status": "paid"})
        self.assertEqual(resp.json()["data"]["status"], "processing")

    def test_gateway_failure_with_local_order_reports_processing(self):
        self.gateway.fail_with = GatewayError("timeout", retryable=True)
        resp = self._get(self.session.id)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["status"], "processing")

    def test_gateway_failure_with_local_paid_order_reports_paid(self):
        OrderStore().transition(self.order.pk, OrderStatus.PAID)
        self.build_gateway.side_effect = ImproperlyConfigured("STRIPE_SECRET_KEY is not set.")
        resp = self._get(self.session.id)
        self.assertEqual(resp.json()["data"]["status"], "paid")

    def test_unknown_session_is_404(self):
        resp = self._get("cs_does_not_exist")
        self.assertEqual(resp.status_code, 404)

    def test_cancel_changes_nothing(self):
        resp = self.client.get("/payments/cancel/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["status"], "cancelled")
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING)
