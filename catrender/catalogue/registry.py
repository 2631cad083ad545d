"""
Catalogue Registry - the set of catalogues products are rendered for.

Stored as one 'cataloguesDefinition' record. Default catalogues are seeded on
first use and cannot be deleted. Adding a catalogue backfills every product
with neutral values for the new price/stock slots; if that backfill cannot be
written the catalogue addition is rolled back.
"""

import json
import logging
import threading
import time
from typing import Dict, List, Optional

from pydantic import ValidationError

from catrender.catalogue.resolver import is_enabled
from catrender.catalogue.schema import Catalogue, CataloguesDefinition, Product
from catrender.catalogue.fields import DEFAULT_PRICE_UNIT, DEFAULT_STOCK
from catrender.db.kv_interface import KeyValueStore
from catrender.errors import (
    CatalogueNotFound,
    DefaultCatalogueProtected,
    StorageError,
)

logger = logging.getLogger(__name__)

CATALOGUES_KEY = "cataloguesDefinition"


def default_catalogues() -> List[Catalogue]:
    return [
        Catalogue(
            id="cat1",
            label="Master",
            price_field="price1",
            price_unit_field="price1Unit",
            stock_field="wholesaleStock",
            folder="Master",
            order=1,
            is_default=True,
        ),
    ]


def legacy_resell_catalogue() -> Catalogue:
    return Catalogue(
        id="cat2",
        label="Resell",
        price_field="price2",
        price_unit_field="price2Unit",
        stock_field="resellStock",
        folder="Resell",
        order=2,
        is_default=False,
    )


def has_legacy_resell_data(products: List[Product]) -> bool:
    for p in products:
        if p.legacy_value("resellStock") is not None or p.legacy_value("price2") is not None:
            return True
        if p.legacy_value("resell") is not None:
            return True
        if p.catalogue_data.get("cat2") is not None:
            return True
    return False


class CatalogueRegistry:
    """CRUD over the catalogue definition record."""

    def __init__(self, store: KeyValueStore, products=None, artifacts=None):
        self.store = store
        self.products = products
        self.artifacts = artifacts
        self.last_rename: Optional[threading.Thread] = None

    # ── persistence ─────────────────────────────────────

    def _load(self) -> CataloguesDefinition:
        raw = self.store.get(CATALOGUES_KEY)
        if raw is None:
            definition = CataloguesDefinition(catalogues=default_catalogues())
            self._save(definition)
            logger.info("[CATALOGUE] seeded default catalogues")
            return definition
        try:
            return CataloguesDefinition.model_validate(json.loads(raw.decode("utf-8")))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Failed to parse {CATALOGUES_KEY}, using defaults: {e}")
            return CataloguesDefinition(catalogues=default_catalogues())

    def _save(self, definition: CataloguesDefinition) -> None:
        definition.last_updated = int(time.time() * 1000)
        self.store.set(CATALOGUES_KEY, definition.model_dump_json(by_alias=True).encode("utf-8"))

    # ── queries ─────────────────────────────────────────

    def list_active(self) -> List[Catalogue]:
        return sorted(self._load().catalogues, key=lambda c: c.order)

    def ids(self) -> List[str]:
        return [c.id for c in self.list_active()]

    def find(self, catalogue_id: str) -> Optional[Catalogue]:
        for c in self._load().catalogues:
            if c.id == catalogue_id:
                return c
        return None

    def get(self, catalogue_id: str) -> Catalogue:
        catalogue = self.find(catalogue_id)
        if catalogue is None:
            raise CatalogueNotFound(catalogue_id)
        return catalogue

    def find_by_folder(self, folder: str) -> Optional[Catalogue]:
        for c in self._load().catalogues:
            if c.folder == folder:
                return c
        return None

    # ── mutations ───────────────────────────────────────

    def add(self, label: str, **options) -> Catalogue:
        """Create a catalogue and backfill products; all or nothing."""
        definition = self._load()
        previous = definition.model_copy(deep=True)
        existing = definition.catalogues

        used_ids = {c.id for c in existing}
        catalogue_id = options.pop("id", None) or f"cat{int(time.time() * 1000)}"
        while catalogue_id in used_ids:
            catalogue_id = f"cat{int(time.time() * 1000) + 1}"
            time.sleep(0.001)

        used_prices = {c.price_field for c in existing}
        n = len(existing) + 1
        while f"price{n}" in used_prices:
            n += 1
        price_field = options.pop("price_field", None) or f"price{n}"

        used_folders = {c.folder for c in existing}
        folder_n = n
        while f"Catalogue{folder_n}" in used_folders:
            folder_n += 1

        catalogue = Catalogue(
            id=catalogue_id,
            label=label,
            price_field=price_field,
            price_unit_field=options.pop("price_unit_field", None) or f"{price_field}Unit",
            stock_field=options.pop("stock_field", None) or f"{price_field}Stock",
            folder=options.pop("folder", None) or f"Catalogue{folder_n}",
            order=max((c.order for c in existing), default=0) + 1,
            **options,
        )

        definition.catalogues.append(catalogue)
        self._save(definition)
        try:
            self._backfill(catalogue, existing)
        except StorageError as e:
            logger.error(f"[CATALOGUE] backfill for '{label}' failed, rolling back: {e}")
            self._save(previous)
            raise
        logger.info(f"[CATALOGUE] added {catalogue.id} '{label}' (folder={catalogue.folder})")
        return catalogue

    def _backfill(self, catalogue: Catalogue, existing: List[Catalogue]) -> None:
        if self.products is None:
            return
        products = self.products.list_products()
        for product in products:
            if not product.catalogue_data:
                # Pin current enablement before the map stops being empty
                product.catalogue_data = {
                    c.id: {"enabled": is_enabled(product, c)} for c in existing
                }
            product.catalogue_data.setdefault(catalogue.id, {
                "enabled": False,
                catalogue.price_field: "",
                catalogue.price_unit_field: DEFAULT_PRICE_UNIT,
                catalogue.stock_field: DEFAULT_STOCK,
            })
        self.products.save_all(products)

    def update(self, catalogue_id: str, **changes) -> Catalogue:
        """Update label/folder/etc. id and created_at are immutable.

        A folder change schedules a background rename of rendered cards.
        """
        definition = self._load()
        for i, c in enumerate(definition.catalogues):
            if c.id == catalogue_id:
                break
        else:
            raise CatalogueNotFound(catalogue_id)

        changes.pop("id", None)
        changes.pop("created_at", None)
        old = definition.catalogues[i]
        updated = old.model_copy(update=changes)
        definition.catalogues[i] = updated
        self._save(definition)

        if updated.folder != old.folder and self.artifacts is not None:
            self.last_rename = self.artifacts.rename_folder_async(old.folder, updated.folder)
        return updated

    def delete(self, catalogue_id: str) -> None:
        definition = self._load()
        catalogue = next((c for c in definition.catalogues if c.id == catalogue_id), None)
        if catalogue is None:
            raise CatalogueNotFound(catalogue_id)
        if catalogue.is_default:
            raise DefaultCatalogueProtected(f"Cannot delete default catalogue: {catalogue_id}")
        definition.catalogues = [c for c in definition.catalogues if c.id != catalogue_id]
        self._save(definition)
        logger.info(f"[CATALOGUE] deleted {catalogue_id}")

    def reorder(self, ids: List[str]) -> None:
        definition = self._load()
        known: Dict[str, Catalogue] = {c.id: c for c in definition.catalogues}
        missing = [i for i in ids if i not in known]
        if missing:
            raise CatalogueNotFound(missing[0])
        for c in definition.catalogues:
            c.order = ids.index(c.id) if c.id in ids else len(ids) + c.order
        self._save(definition)

    def ensure_legacy_resell(self, products: List[Product]) -> bool:
        """Re-create the historical Resell catalogue for restored legacy data."""
        if self.find("cat2") is not None or not has_legacy_resell_data(products):
            return False
        definition = self._load()
        definition.catalogues.append(legacy_resell_catalogue())
        self._save(definition)
        logger.info("[CATALOGUE] created legacy Resell catalogue for restored data")
        return True

    def reset_to_defaults(self) -> None:
        self._save(CataloguesDefinition(catalogues=default_catalogues()))
