"""
catalog.models.base
Abstract base classes shared by catalog models.
"""
from django.db import models
from django.utils.text import slugify


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class ActivatableModel(models.Model):
    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        abstract = True


class SluggedModel(TimeStampedModel, ActivatableModel):
    """
    Named catalog entry with a slug derived from the name on first save.
    """
    slug = models.SlugField(max_length=220, unique=True, blank=True)

    class Meta:
        abstract = True

    def slug_source(self) -> str:
        return self.name

    def save(self, *args, **kwargs):
        if not self.slug:
            self.slug = self._unique_slug(slugify(self.slug_source())[:220] or "item")
        super().save(*args, **kwargs)

    def _unique_slug(self, base: str) -> str:
        """`base`, or `base-2`, `base-3`, ... if taken."""
        taken = type(self)._default_manager.exclude(pk=self.pk) if self.pk else type(self)._default_manager.all()
        slug, n = base, 2
        while taken.filter(slug=slug).exists():
            suffix = f"-{n}"
            slug = f"{base[:220 - len(suffix)]}{suffix}"
            n += 1
        return slug

    def __str__(self) -> str:
        return self.name
