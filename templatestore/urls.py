# templatestore/urls.py
"""
Project routes.

- /payments/*    Stripe webhook + checkout return/cancel (plain Django views)
- /api/*         checkout, orders, admin orders (DRF)
- /api/catalog/* read-only template catalog (DRF)
"""

from django.contrib import admin
from django.http import JsonResponse
from django.urls import path, include


def health_view(request):
    """Liveness probe."""
    return JsonResponse({"ok": True})


urlpatterns = [
    path("health/", health_view, name="health"),

    # Admin
    path("admin/", admin.site.urls),

    # Catalog (read-only)
    path("api/catalog/", include("catalog.urls")),

    # Checkout, orders, Stripe webhook + return pages
    path("", include("orders.urls")),
]
