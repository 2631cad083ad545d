"""
Repositories over the key-value store.

The batch controller, resume supervisor and registry only ever touch stored
records through these classes. Each record (product list, shelf, checkpoint)
is read and written whole.
"""

import json
import logging
from typing import Any, List, Optional

from pydantic import ValidationError

from catrender.catalogue.schema import Product
from catrender.db.kv_interface import KeyValueStore
from catrender.pipeline.job import RenderJob
from catrender.errors import (
    CheckpointPersistFailure,
    QuotaExceeded,
    StorageError,
    StorageQuotaExceeded,
)

logger = logging.getLogger(__name__)

PRODUCTS_KEY = "products"
SHELF_KEY = "deletedProducts"
CHECKPOINT_KEY = "renderCheckpoint"


def read_json(store: KeyValueStore, key: str, fallback: Any) -> Any:
    """Parse a JSON record, returning fallback when missing or corrupt."""
    raw = store.get(key)
    if raw is None:
        return fallback
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Failed to parse JSON under '{key}': {e}")
        return fallback


def write_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))


class ProductRepository:
    """Product list + shelf (soft-deleted products)."""

    def __init__(self, store: KeyValueStore, artifacts=None, registry=None):
        self.store = store
        self.artifacts = artifacts
        self.registry = registry

    # ── Products ────────────────────────────────────────

    def _load(self, key: str) -> List[Product]:
        products = []
        for record in read_json(self.store, key, []):
            try:
                products.append(Product.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Dropping unreadable product record under '{key}': {e}")
        return products

    def _store(self, key: str, products: List[Product]) -> None:
        write_json(self.store, key, [p.to_record() for p in products])

    def list_products(self) -> List[Product]:
        return self._load(PRODUCTS_KEY)

    def ids(self) -> List[str]:
        return [p.id for p in self.list_products()]

    def get(self, product_id: str) -> Optional[Product]:
        for p in self.list_products():
            if p.id == product_id:
                return p
        return None

    def save_all(self, products: List[Product]) -> None:
        self._store(PRODUCTS_KEY, products)

    def save(self, product: Product) -> None:
        """Insert or replace one product, keeping list order."""
        products = self.list_products()
        for i, p in enumerate(products):
            if p.id == product.id:
                products[i] = product
                break
        else:
            products.append(product)
        self.save_all(products)

    # ── Shelf ───────────────────────────────────────────

    def list_shelf(self) -> List[Product]:
        return self._load(SHELF_KEY)

    def move_to_shelf(self, product_id: str) -> bool:
        products = self.list_products()
        keep = [p for p in products if p.id != product_id]
        if len(keep) == len(products):
            return False
        moved = [p for p in products if p.id == product_id]
        shelf = self.list_shelf() + moved
        # Shelf first: a failed second write leaves a duplicate, never a loss
        self._store(SHELF_KEY, shelf)
        self.save_all(keep)
        logger.info(f"[SHELF] moved {product_id} to shelf")
        return True

    def restore_from_shelf(self, product_id: str) -> bool:
        shelf = self.list_shelf()
        restored = [p for p in shelf if p.id == product_id]
        if not restored:
            return False
        self.save_all(self.list_products() + restored)
        self._store(SHELF_KEY, [p for p in shelf if p.id != product_id])
        logger.info(f"[SHELF] restored {product_id}")
        return True

    def hard_delete(self, product_id: str) -> int:
        """Delete a shelved product for good and remove its rendered artifacts.

        Returns the number of artifacts deleted.
        """
        shelf = self.list_shelf()
        self._store(SHELF_KEY, [p for p in shelf if p.id != product_id])
        removed = 0
        if self.artifacts is not None and self.registry is not None:
            removed = self.artifacts.delete_for_product(product_id, self.registry.list_active())
        logger.info(f"[SHELF] hard-deleted {product_id} ({removed} artifacts removed)")
        return removed


class CheckpointStore:
    """Durable render checkpoint. Write failures are batch-fatal."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load_raw(self) -> Optional[dict]:
        """Stored checkpoint dict, None if absent. Raises ValueError if corrupt."""
        try:
            raw = self.store.get(CHECKPOINT_KEY)
        except StorageError as e:
            raise CheckpointPersistFailure(f"Cannot read render checkpoint: {e}", cause=e) from e
        if raw is None:
            return None
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("render checkpoint is not an object")
        return data

    def load(self) -> Optional[RenderJob]:
        data = self.load_raw()
        if data is None:
            return None
        return RenderJob.model_validate(data)

    def save(self, job: RenderJob) -> None:
        payload = job.model_dump_json(by_alias=True).encode("utf-8")
        try:
            self.store.set(CHECKPOINT_KEY, payload)
        except StorageQuotaExceeded as e:
            raise QuotaExceeded(f"Out of space saving render checkpoint: {e}", cause=e) from e
        except StorageError as e:
            raise CheckpointPersistFailure(f"Cannot save render checkpoint: {e}", cause=e) from e

    def clear(self) -> None:
        try:
            self.store.delete(CHECKPOINT_KEY)
        except StorageError as e:
            raise CheckpointPersistFailure(f"Cannot clear render checkpoint: {e}", cause=e) from e
