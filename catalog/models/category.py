"""
catalog.models.category
Top-level grouping for templates (Resume, Invoice, Contract, ...).
"""
from django.db import models
from .base import SluggedModel


class Category(SluggedModel):
    name = models.CharField(max_length=200, unique=True)
    description = models.TextField(blank=True, default="")

    class Meta:
        ordering = ("name",)
        verbose_name_plural = "Categories"
