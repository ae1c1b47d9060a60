from rest_framework import viewsets, mixins
from catalog.models import Category, Template
from catalog.serializers.template import CategorySerializer, TemplateSerializer


class TemplateViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    /api/catalog/templates/            (list, ?category=<slug> to filter)
    /api/catalog/templates/{slug}/     (retrieve)

    Only active templates are visible. file_url is never exposed here; buyers
    get it through their purchased orders.
    """
    serializer_class = TemplateSerializer
    lookup_field = "slug"

    def get_queryset(self):
        qs = Template.objects.filter(is_active=True).select_related("category")
        category = (self.request.query_params.get("category") or "").strip()
        if category:
            qs = qs.filter(category__slug=category)
        return qs


class CategoryViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """/api/catalog/categories/"""
    serializer_class = CategorySerializer

    def get_queryset(self):
        return Category.objects.filter(is_active=True)
