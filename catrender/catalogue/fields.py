"""
Field definitions for the generic product field slots.

Internal keys are fixed (field1..fieldN); labels and enabled flags are
user-configurable and persisted under 'fieldsDefinition'. Legacy keys map
pre-migration top-level product values onto the slots.
"""

import json
import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from catrender.db.kv_interface import KeyValueStore

logger = logging.getLogger(__name__)

FIELDS_KEY = "fieldsDefinition"
MAX_FIELDS = 10

DEFAULT_TEXT = ""
DEFAULT_FIELD_UNIT = "None"
DEFAULT_PRICE_UNIT = "/ piece"
DEFAULT_STOCK = True

# price slot -> (legacy value key, legacy unit key)
LEGACY_PRICE_ALIASES: Dict[str, Tuple[str, str]] = {
    "price1": ("wholesale", "wholesaleUnit"),
    "price2": ("resell", "resellUnit"),
}


class FieldDefinition(BaseModel):
    key: str
    label: str
    enabled: bool = False
    visible: bool = True
    legacy_keys: List[str] = Field(default_factory=list)
    legacy_unit_keys: List[str] = Field(default_factory=list)
    unit_options: List[str] = Field(default_factory=list)

    @property
    def unit_key(self) -> str:
        return f"{self.key}Unit"


def _default_fields() -> List[FieldDefinition]:
    fields = [
        FieldDefinition(key="field1", label="Colour", enabled=True,
                        legacy_keys=["color", "colour", "Colour"]),
        FieldDefinition(key="field2", label="Package", enabled=True,
                        legacy_keys=["package", "Package"],
                        legacy_unit_keys=["packageUnit"],
                        unit_options=["pcs / set", "pcs / dozen", "pcs / pack"]),
        FieldDefinition(key="field3", label="Age Group", enabled=True,
                        legacy_keys=["age", "Age", "Age group"],
                        legacy_unit_keys=["ageUnit"],
                        unit_options=["months", "years"]),
    ]
    for i in range(4, MAX_FIELDS + 1):
        fields.append(FieldDefinition(key=f"field{i}", label=f"Field {i}"))
    return fields


DEFAULT_FIELDS: List[FieldDefinition] = _default_fields()


def field_keys(count: Optional[int] = None) -> List[str]:
    """The fixed slot keys field1..fieldN."""
    n = MAX_FIELDS if count is None else max(0, min(int(count), MAX_FIELDS))
    return [f"field{i}" for i in range(1, n + 1)]


def load_fields(store: Optional[KeyValueStore]) -> List[FieldDefinition]:
    """Stored field definitions, or the defaults when absent or unreadable."""
    if store is None:
        return [f.model_copy() for f in DEFAULT_FIELDS]
    raw = store.get(FIELDS_KEY)
    if raw is None:
        return [f.model_copy() for f in DEFAULT_FIELDS]
    try:
        data = json.loads(raw.decode("utf-8"))
        stored = {f["key"]: FieldDefinition(**f) for f in data.get("fields", [])}
    except (ValueError, KeyError, TypeError, ValidationError) as e:
        logger.warning(f"Failed to parse {FIELDS_KEY}, using defaults: {e}")
        return [f.model_copy() for f in DEFAULT_FIELDS]
    # Keep every slot present even if the stored list is partial
    return [stored.get(f.key, f.model_copy()) for f in DEFAULT_FIELDS]


def save_fields(store: KeyValueStore, fields: List[FieldDefinition]) -> None:
    payload = {"version": 1, "fields": [f.model_dump() for f in fields]}
    store.set(FIELDS_KEY, json.dumps(payload).encode("utf-8"))
