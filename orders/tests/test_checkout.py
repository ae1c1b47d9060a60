from decimal import Decimal
from unittest import mock

from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from orders.checkout import CheckoutInitiator, with_session_placeholder
from orders.exceptions import GatewayError, InvalidCheckout, OrderAlreadyExists, TemplateNotFound
from orders.models import Order, OrderStatus
from orders.store import OrderStore
from orders.tests.fakes import FakeGateway, make_template, make_user


class CheckoutInitiatorTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.tpl = make_template()
        self.gateway = FakeGateway()
        self.initiator = CheckoutInitiator(
            self.gateway,
            OrderStore(),
            success_url="https://store.example.com/payments/success/",
            cancel_url="https://store.example.com/payments/cancel/",
        )

    def test_creates_session_then_pending_order(self):
        result = self.initiator.start(user=self.user, template_id=self.tpl.pk)

        self.assertTrue(result.created)
        self.assertEqual(result.order.status, OrderStatus.PENDING)
        self.assertEqual(result.order.amount, 4999)
        self.assertEqual(result.order.external_reference, result.reference)
        self.assertTrue(result.url.startswith("https://checkout.stripe.test/"))

        request = self.gateway.created[0]
        expected_meta = {"user_id": str(self.user.pk), "template_id": str(self.tpl.pk)}
        self.assertEqual(request["metadata"], expected_meta)
        self.assertEqual(request["amount"], 4999)
        self.assertEqual(request["product_name"], "Modern Resume")
        self.assertEqual(
            request["success_url"],
            "https://store.example.com/payments/success/?session_id={CHECKOUT_SESSION_ID}",
        )
        self.assertIsNone(request["idempotency_key"])

    def test_intent_flow_returns_client_secret(self):
        result = self.initiator.start(user=self.user, template_id=self.tpl.pk, flow="intent")

        self.assertTrue(result.reference.startswith("pi_"))
        self.assertEqual(result.order.payment_intent_id, result.reference)
        self.assertIn("client_secret", result.as_dict())

    def test_gateway_failure_creates_no_order(self):
        self.gateway.fail_with = GatewayError("Stripe is down", retryable=True)
        with self.assertRaises(GatewayError):
            self.initiator.start(user=self.user, template_id=self.tpl.pk)
        self.assertEqual(Order.all_objects.count(), 0)

    def test_unknown_or_inactive_template(self):
        with self.assertRaises(TemplateNotFound):
            self.initiator.start(user=self.user, template_id=999)
        hidden = make_template(name="Hidden", is_active=False)
        with self.assertRaises(TemplateNotFound):
            self.initiator.start(user=self.user, template_id=hidden.pk)
        self.assertEqual(self.gateway.created, [])

    def test_negative_price_is_rejected_before_gateway(self):
        bad = make_template(name="Broken")
        type(bad).objects.filter(pk=bad.pk).update(price=Decimal("-1.00"))
        with self.assertRaises(InvalidCheckout):
            self.initiator.start(user=self.user, template_id=bad.pk)
        self.assertEqual(self.gateway.created, [])

    def test_unknown_flow_is_rejected(self):
        with self.assertRaises(InvalidCheckout):
            self.initiator.start(user=self.user, template_id=self.tpl.pk, flow="subscription")

    def test_idempotent_replay_returns_existing_order(self):
        first = self.initiator.start(user=self.user, template_id=self.tpl.pk, idempotency_key="abc")
        second = self.initiator.start(user=self.user, template_id=self.tpl.pk, idempotency_key="abc")

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.order.pk, second.order.pk)
        self.assertEqual(Order.objects.count(), 1)
        self.assertTrue(self.gateway.created[0]["idempotency_key"].startswith("tpl_checkout_"))

    def test_reference_clash_with_other_user_is_conflict(self):
        other = make_user(username="other", email="other@example.com")
        OrderStore().create(user_id=other.pk, template_id=self.tpl.pk, external_reference="cs_clash", amount=1)
        self.gateway.next_session_id = "cs_clash"
        with self.assertRaises(OrderAlreadyExists):
            self.initiator.start(user=self.user, template_id=self.tpl.pk)

    def test_session_placeholder_respects_existing_query(self):
        self.assertEqual(
            with_session_placeholder("https://x.test/done?src=app"),
            "https://x.test/done?src=app&session_id={CHECKOUT_SESSION_ID}",
        )


@override_settings(STRIPE_SUCCESS_URL="https://store.example.com/payments/success/", CHECKOUT_RATE_LIMIT_PER_MIN=20)
class CheckoutViewTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user(pk=7)
        self.tpl = make_template(pk=3)
        self.gateway = FakeGateway()
        self.client = APIClient()
        self.client.force_authenticate(self.user)
        patcher = mock.patch("orders.services.build_gateway", return_value=self.gateway)
        self.build_gateway = patcher.start()
        self.addCleanup(patcher.stop)

    def test_checkout_returns_session_and_order(self):
        self.gateway.next_session_id = "cs_test_1"
        resp = self.client.post("/api/checkout/", {"template_id": 3}, format="json")

        self.assertEqual(resp.status_code, 201, resp.content)
        data = resp.json()["data"]
        self.assertEqual(data["session_id"], "cs_test_1")
        self.assertEqual(data["amount"], 4999)
        order = Order.objects.get(pk=data["order_id"])
        self.assertEqual((order.user_id, order.template_id, order.status), (7, 3, OrderStatus.PENDING))

    def test_requires_authentication(self):
        resp = APIClient().post("/api/checkout/", {"template_id": 3}, format="json")
        self.assertIn(resp.status_code, (401, 403))

    def test_unknown_template_is_404(self):
        resp = self.client.post("/api/checkout/", {"template_id": 999}, format="json")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["code"], "template_not_found")

    def test_invalid_body_is_400(self):
        resp = self.client.post("/api/checkout/", {"template_id": "abc"}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "invalid_request")

    def test_negative_price_is_400(self):
        type(self.tpl).objects.filter(pk=3).update(price=Decimal("-5.00"))
        resp = self.client.post("/api/checkout/", {"template_id": 3}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "invalid_checkout")

    def test_gateway_failure_is_502_without_order(self):
        self.gateway.fail_with = GatewayError("boom")
        resp = self.client.post("/api/checkout/", {"template_id": 3}, format="json")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(Order.all_objects.count(), 0)

    def test_idempotency_key_header_replays_same_order(self):
        first = self.client.post("/api/checkout/", {"template_id": 3}, format="json", HTTP_IDEMPOTENCY_KEY="k1")
        second = self.client.post("/api/checkout/", {"template_id": 3}, format="json", HTTP_IDEMPOTENCY_KEY="k1")

        self.assertEqual((first.status_code, second.status_code), (201, 200))
        self.assertEqual(first.json()["data"]["order_id"], second.json()["data"]["order_id"])

    @override_settings(CHECKOUT_RATE_LIMIT_PER_MIN=2)
    def test_rate_limited(self):
        codes = [self.client.post("/api/checkout/", {"template_id": 3}, format="json").status_code for _ in range(3)]
        self.assertEqual(codes, [201, 201, 429])

    def test_missing_stripe_key_is_misconfigured(self):
        self.build_gateway.side_effect = ImproperlyConfigured("STRIPE_SECRET_KEY is not set.")
        resp = self.client.post("/api/checkout/", {"template_id": 3}, format="json")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["error"]["code"], "misconfigured")
