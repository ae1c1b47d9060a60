from django.shortcuts import get_object_or_404
from rest_framework import mixins, viewsets
from rest_framework.decorators import action
from rest_framework.pagination import LimitOffsetPagination
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from orders import services
from orders.models import Order, OrderStatus
from orders.serializers import AdminOrderSerializer, OrderSerializer, PurchasedTemplateSerializer


class OrderViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    /api/orders/              the caller's orders, newest first (max 50)
    /api/orders/{id}/         one of the caller's orders
    /api/orders/purchased/    templates the caller has paid for
    """
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated]
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        return Order.objects.select_related("template").filter(user=self.request.user)

    def list(self, request, *args, **kwargs):
        orders = services.build_store().list_for_user(request.user.pk)
        return Response(self.get_serializer(orders, many=True).data)

    def retrieve(self, request, *args, **kwargs):
        order = get_object_or_404(self.get_queryset(), pk=kwargs.get(self.lookup_field))
        return Response(self.get_serializer(order).data)

    @action(detail=False, methods=["get"])
    def purchased(self, request):
        templates = services.build_store().purchased_templates(request.user.pk)
        ser = PurchasedTemplateSerializer(templates, many=True, context=self.get_serializer_context())
        return Response(ser.data)


class AdminOrderPagination(LimitOffsetPagination):
    default_limit = 50
    max_limit = 200


class AdminOrderViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """
    /api/admin/orders/?limit=&offset=&status=   all orders, with total count
    """
    serializer_class = AdminOrderSerializer
    permission_classes = [IsAdminUser]
    pagination_class = AdminOrderPagination

    def get_queryset(self):
        return Order.objects.none()

    def list(self, request, *args, **kwargs):
        paginator = self.pagination_class()
        limit = paginator.get_limit(request) or paginator.default_limit
        offset = paginator.get_offset(request)

        status = (request.query_params.get("status") or "").strip() or None
        if status and status not in OrderStatus.values:
            return Response({"detail": f"Unknown status {status!r}."}, status=400)

        orders, total = services.build_store().list_all(limit=limit, offset=offset, status=status)
        return Response({
            "count": total,
            "limit": limit,
            "offset": offset,
            "results": self.get_serializer(orders, many=True).data,
        })
