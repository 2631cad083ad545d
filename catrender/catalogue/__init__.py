"""Catalogue model: schema, field definitions, registry and field resolution."""

from .schema import Catalogue, Product, EffectiveFields
from .resolver import FieldResolver, resolve_fields
from .registry import CatalogueRegistry

__all__ = ['Catalogue', 'Product', 'EffectiveFields',
           'FieldResolver', 'resolve_fields', 'CatalogueRegistry']
