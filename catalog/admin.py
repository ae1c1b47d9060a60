from django.contrib import admin
from .models import Category, Template


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "is_active", "updated_at")
    search_fields = ("name", "slug")
    list_filter = ("is_active",)


@admin.register(Template)
class TemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "category", "price", "downloads", "is_active", "updated_at")
    list_filter = ("category", "is_active")
    search_fields = ("name", "slug", "description")
    readonly_fields = ("downloads", "created_at", "updated_at")
