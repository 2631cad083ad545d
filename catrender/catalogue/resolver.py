"""
Field Resolution - computes the effective display fields of a product for one
catalogue by walking the fallback chain:

    1. product.catalogue_data[catalogue_id][key]   (explicit "" is honoured)
    2. top-level legacy value on the product        (legacy catalogues only)
    3. documented default constant

Pure: no I/O, no mutation, safe to call from any thread.
"""

from typing import Any, List, Optional, Sequence

from catrender.catalogue.fields import (
    DEFAULT_FIELD_UNIT,
    DEFAULT_PRICE_UNIT,
    DEFAULT_STOCK,
    DEFAULT_TEXT,
    DEFAULT_FIELDS,
    LEGACY_PRICE_ALIASES,
    FieldDefinition,
)
from catrender.catalogue.schema import Catalogue, EffectiveFields, Product
from catrender.errors import CatalogueNotFound

_FALSE_STRINGS = {"false", "0", "no", "off", "out of stock"}


def _present(value: Any) -> bool:
    return value is not None


def _as_text(value: Any) -> str:
    """Opaque display string; numbers are never parsed or formatted."""
    if value is None:
        return DEFAULT_TEXT
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def _first_legacy(product: Product, keys: Sequence[str]) -> Any:
    for key in keys:
        value = product.legacy_value(key)
        if _present(value):
            return value
    return None


def is_enabled(product: Product, catalogue: Catalogue) -> bool:
    """Whether the product participates in the catalogue."""
    if not product.catalogue_data:
        return catalogue.is_default or catalogue.id == "cat1"
    override = product.catalogue_data.get(catalogue.id)
    if not override or not _present(override.get("enabled")):
        return False
    return _as_bool(override["enabled"])


def resolve_fields(product: Product, catalogue: Catalogue,
                   fields: Optional[List[FieldDefinition]] = None) -> EffectiveFields:
    """Total resolution: every declared key gets a value, never None."""
    fields = fields if fields is not None else DEFAULT_FIELDS
    override = product.catalogue_data.get(catalogue.id) or {}
    legacy = catalogue.is_legacy

    def pick(key: str, legacy_keys: Sequence[str], default: Any) -> Any:
        value = override.get(key)
        if _present(value):
            return value
        if legacy:
            value = _first_legacy(product, legacy_keys)
            if _present(value):
                return value
        return default

    # Identity fields are catalogue-independent; the product value is the base
    # for every catalogue, not only legacy ones.
    name = override.get("name") if _present(override.get("name")) else product.name
    subtitle = override.get("subtitle") if _present(override.get("subtitle")) else product.subtitle

    values = {}
    units = {}
    for f in fields:
        values[f.key] = _as_text(pick(f.key, [f.key, *f.legacy_keys], DEFAULT_TEXT))
        units[f.key] = _as_text(pick(f.unit_key, [f.unit_key, *f.legacy_unit_keys], DEFAULT_FIELD_UNIT))

    alias_value, alias_unit = LEGACY_PRICE_ALIASES.get(catalogue.price_field, (None, None))
    price = pick(catalogue.price_field,
                 [k for k in (catalogue.price_field, alias_value) if k], DEFAULT_TEXT)
    price_unit = pick(catalogue.price_unit_field,
                      [k for k in (catalogue.price_unit_field, alias_unit) if k], DEFAULT_PRICE_UNIT)

    stock = override.get(catalogue.stock_field)
    if not _present(stock):
        stock = override.get("stock")
    if not _present(stock) and legacy:
        stock = product.legacy_value(catalogue.stock_field)
    if not _present(stock):
        stock = DEFAULT_STOCK

    return EffectiveFields(
        product_id=product.id,
        catalogue_id=catalogue.id,
        enabled=is_enabled(product, catalogue),
        name=_as_text(name),
        subtitle=_as_text(subtitle),
        badge=_as_text(pick("badge", ["badge"], DEFAULT_TEXT)),
        fields=values,
        field_units=units,
        price=_as_text(price),
        price_unit=_as_text(price_unit),
        stock=_as_bool(stock),
    )


class FieldResolver:
    """Resolves by catalogue id through the registry's slot indirection."""

    def __init__(self, registry, fields: Optional[List[FieldDefinition]] = None):
        self.registry = registry
        self.fields = fields

    def resolve(self, product: Product, catalogue_id: str) -> EffectiveFields:
        catalogue = self.registry.find(catalogue_id)
        if catalogue is None:
            raise CatalogueNotFound(catalogue_id)
        return resolve_fields(product, catalogue, self.fields)
