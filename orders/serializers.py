from rest_framework import serializers

from catalog.models import Template
from catalog.serializers.template import TemplateSerializer
from orders.checkout import FLOWS, FLOW_CHECKOUT
from orders.models import Order


class OrderTemplateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Template
        fields = ("id", "name", "slug", "thumbnail_url")


class OrderSerializer(serializers.ModelSerializer):
    template = OrderTemplateSerializer(read_only=True)

    class Meta:
        model = Order
        fields = (
            "id", "template", "external_reference", "amount", "currency",
            "status", "status_detail", "created_at", "updated_at",
        )
        read_only_fields = fields


class AdminOrderSerializer(OrderSerializer):
    user_id = serializers.IntegerField(read_only=True)
    user_email = serializers.EmailField(source="user.email", read_only=True)

    class Meta(OrderSerializer.Meta):
        fields = OrderSerializer.Meta.fields + ("user_id", "user_email", "payment_intent_id")
        read_only_fields = fields


class PurchasedTemplateSerializer(TemplateSerializer):
    """Buyers get the download link."""

    class Meta(TemplateSerializer.Meta):
        fields = TemplateSerializer.Meta.fields + ("file_url",)


class CheckoutRequestSerializer(serializers.Serializer):
    template_id = serializers.IntegerField(min_value=1)
    flow = serializers.ChoiceField(choices=FLOWS, default=FLOW_CHECKOUT)
