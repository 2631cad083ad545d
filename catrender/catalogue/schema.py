"""
Catalogue Schema - data model for products, catalogues and resolved fields.

Persisted records use the camelCase keys of the stored JSON (aliases);
Python code uses the snake_case attribute names.
"""

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Historical ids that predate per-catalogue overrides; their values may still
# live in top-level product fields.
LEGACY_CATALOGUE_IDS = ("cat1", "cat2")

# Sparse per-catalogue record: enabled, badge, field1..N(+Unit), and the
# catalogue's price / price-unit / stock slots under their physical names.
CatalogueOverride = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class Catalogue(BaseModel):
    """A named pricing/display channel with its own output folder."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    label: str
    price_field: str = Field(..., alias="priceField")
    price_unit_field: str = Field(..., alias="priceUnitField")
    stock_field: str = Field(..., alias="stockField")
    folder: str
    order: int = 0
    created_at: int = Field(default_factory=_now_ms, alias="createdAt")
    is_default: bool = Field(False, alias="isDefault")
    hero_image: str = Field("", alias="heroImage")
    description: str = ""

    @property
    def is_legacy(self) -> bool:
        """Legacy catalogues fall back to top-level product fields."""
        return self.is_default or self.id in LEGACY_CATALOGUE_IDS


class CataloguesDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = 1
    catalogues: List[Catalogue] = Field(default_factory=list)
    last_updated: int = Field(default_factory=_now_ms, alias="lastUpdated")


class Product(BaseModel):
    """
    A catalogue product.

    Identity fields (id, name) are catalogue-independent. Everything shown on a
    rendered card may be overridden per catalogue in catalogue_data. Unknown
    keys (legacy top-level price / stock / field values) are kept as extras.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str = ""
    subtitle: str = ""
    category: List[str] = Field(default_factory=list)
    badge: Optional[str] = None

    # === Image source: embedded base64 / data URL, or app-private path ===
    image: Optional[str] = None
    image_path: Optional[str] = Field(None, alias="imagePath")
    crop_aspect_ratio: float = Field(1.0, alias="cropAspectRatio")

    # === Card styling ===
    font_color: Optional[str] = Field(None, alias="fontColor")
    bg_color: Optional[str] = Field(None, alias="bgColor")
    image_bg_color: Optional[str] = Field(None, alias="imageBgColor")

    catalogue_data: Dict[str, CatalogueOverride] = Field(
        default_factory=dict, alias="catalogueData"
    )

    def legacy_value(self, key: str) -> Any:
        """Top-level value for key, including extras such as 'wholesale'."""
        if key in type(self).model_fields:
            return getattr(self, key)
        extras = self.model_extra or {}
        return extras.get(key)

    def has_image_source(self) -> bool:
        return bool(self.image) or bool(self.image_path)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EffectiveFields(BaseModel):
    """Fully-resolved display fields of one product for one catalogue."""

    product_id: str
    catalogue_id: str
    enabled: bool
    name: str
    subtitle: str
    badge: str
    fields: Dict[str, str]        # field1..fieldN -> value ("" if unset)
    field_units: Dict[str, str]   # field1..fieldN -> unit ("None" if unset)
    price: str
    price_unit: str
    stock: bool

    def to_flat(self) -> Dict[str, Any]:
        """Flatten to the record keys used by the stored product JSON."""
        flat: Dict[str, Any] = {
            "name": self.name,
            "subtitle": self.subtitle,
            "badge": self.badge,
            "price": self.price,
            "priceUnit": self.price_unit,
            "stock": self.stock,
        }
        for key, value in self.fields.items():
            flat[key] = value
            flat[f"{key}Unit"] = self.field_units[key]
        return flat
