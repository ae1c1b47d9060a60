"""
Django imports this package as `catalog.models`.
"""
from .base import TimeStampedModel, ActivatableModel, SluggedModel  # abstract
from .category import Category
from .template import Template

__all__ = [
    # Abstracts
    "TimeStampedModel",
    "ActivatableModel",
    "SluggedModel",
    # Concrete
    "Category",
    "Template",
]
