"""
catalog.models.template

A purchasable document template. Orders read name + price from here and never
write back; files live in object storage and are referenced by URL only.
"""
from decimal import Decimal, ROUND_HALF_UP

from django.core.validators import MinValueValidator
from django.db import models

from .base import SluggedModel


class Template(SluggedModel):
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    category = models.ForeignKey(
        "catalog.Category",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="templates",
    )
    # Flat per-template price in the store currency (major units).
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(Decimal("0.00"))],
    )

    file_url = models.URLField(max_length=500, blank=True, default="")
    preview_url = models.URLField(max_length=500, blank=True, default="")
    thumbnail_url = models.URLField(max_length=500, blank=True, default="")
    downloads = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("-created_at",)

    def price_in_minor_units(self) -> int:
        """Price as an integer in the smallest currency unit (49.99 -> 4999)."""
        return int((self.price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
