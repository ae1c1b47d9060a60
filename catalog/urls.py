from django.urls import path, include
from rest_framework.routers import SimpleRouter
from catalog.views.template_view import TemplateViewSet, CategoryViewSet

router = SimpleRouter()
router.register(r"templates", TemplateViewSet, basename="template")
router.register(r"categories", CategoryViewSet, basename="category")

urlpatterns = [
    path("", include(router.urls)),
]
