"""
RenderJob - the resumable unit list of a batch render.

Units are the cartesian product productIds x catalogueIds, catalogue loop
nested inside the product loop, addressed by one flat index:

    unit index = product_index * len(catalogue_ids) + catalogue_index

`cursor` is the index of the next unit to process; units [0, cursor) are done.
The persisted form of a RenderJob is the render checkpoint.
"""

import time
from dataclasses import dataclass
from typing import Iterator, List, Sequence, Set

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class Unit:
    index: int
    product_index: int
    catalogue_index: int
    product_id: str
    catalogue_id: str
    last_for_product: bool = False


class RenderJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_ids: List[str] = Field(..., alias="productIds")
    catalogue_ids: List[str] = Field(..., alias="catalogueIds")
    cursor: int = 0
    started_at: float = Field(default_factory=time.time, alias="startedAt")
    # cumulative across resumes
    rendered: int = 0
    skipped: int = 0

    @property
    def total_units(self) -> int:
        return len(self.product_ids) * len(self.catalogue_ids)

    @property
    def remaining_units(self) -> int:
        return max(0, self.total_units - self.cursor)

    @property
    def is_finished(self) -> bool:
        return self.cursor >= self.total_units

    def unit_at(self, index: int) -> Unit:
        n_cat = len(self.catalogue_ids)
        if n_cat == 0 or not 0 <= index < self.total_units:
            raise IndexError(f"unit index {index} out of range (total {self.total_units})")
        pi, ci = divmod(index, n_cat)
        return Unit(
            index=index,
            product_index=pi,
            catalogue_index=ci,
            product_id=self.product_ids[pi],
            catalogue_id=self.catalogue_ids[ci],
            last_for_product=(ci == n_cat - 1),
        )

    def pending_units(self) -> Iterator[Unit]:
        for index in range(self.cursor, self.total_units):
            yield self.unit_at(index)

    def products_done(self) -> int:
        """Products whose every catalogue unit lies before the cursor."""
        n_cat = len(self.catalogue_ids)
        return self.cursor // n_cat if n_cat else 0

    def percentage(self) -> int:
        total = self.total_units
        if total == 0:
            return 100
        return int(self.cursor * 100 // total)

    def restrict_to(self, valid_products: Set[str], valid_catalogues: Set[str]) -> "RenderJob":
        """Drop ids that no longer exist, keeping the cursor on the first
        incomplete unit: the new cursor counts the surviving units that
        preceded the old one."""
        kept_products = [p for p in self.product_ids if p in valid_products]
        kept_catalogues = [c for c in self.catalogue_ids if c in valid_catalogues]
        new_cursor = _surviving_before(
            self.product_ids, self.catalogue_ids, self.cursor,
            valid_products, valid_catalogues,
        )
        return self.model_copy(update={
            "product_ids": kept_products,
            "catalogue_ids": kept_catalogues,
            "cursor": new_cursor,
        })


def _surviving_before(product_ids: Sequence[str], catalogue_ids: Sequence[str], cursor: int,
                      valid_products: Set[str], valid_catalogues: Set[str]) -> int:
    n_cat = len(catalogue_ids)
    if n_cat == 0 or cursor <= 0:
        return 0
    cursor = min(cursor, len(product_ids) * n_cat)
    full_products, partial = divmod(cursor, n_cat)

    kept_cat_flags = [c in valid_catalogues for c in catalogue_ids]
    kept_per_product = sum(kept_cat_flags)

    count = sum(kept_per_product for p in product_ids[:full_products] if p in valid_products)
    if partial and full_products < len(product_ids) and product_ids[full_products] in valid_products:
        count += sum(kept_cat_flags[:partial])
    return count
