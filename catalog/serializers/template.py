"""catalog.serializers.template"""

from rest_framework import serializers
from catalog.models import Category, Template


class CategoryMiniSerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ("id", "name", "slug")


class CategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ("id", "name", "slug", "description")


class TemplateSerializer(serializers.ModelSerializer):
    category = CategoryMiniSerializer(allow_null=True)
    price = serializers.DecimalField(max_digits=10, decimal_places=2, coerce_to_string=True)

    class Meta:
        model = Template
        fields = (
            "id", "name", "slug", "description", "category", "price",
            "preview_url", "thumbnail_url", "downloads",
            "created_at", "updated_at",
        )
