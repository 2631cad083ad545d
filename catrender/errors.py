"""
Exception hierarchy for CatRender.

Unit-level failures (RenderError) are caught by the batch controller and turned
into skips. Batch-level failures (BatchError subclasses) abort the run and are
surfaced to subscribers as a terminal error event.
"""

import enum
from typing import Optional


class CatRenderError(Exception):
    """Base class for all CatRender errors."""


# ── Storage ─────────────────────────────────────────────

class StorageError(CatRenderError):
    """A durable write or read failed for a reason other than 'not found'."""


class StorageQuotaExceeded(StorageError):
    """The backing store is out of space or over quota."""


# ── Rendering (unit-level) ──────────────────────────────

class RenderErrorReason(enum.Enum):
    NO_IMAGE_SOURCE = "no_image_source"
    ENCODE_FAILURE = "encode_failure"
    STORAGE_WRITE_FAILURE = "storage_write_failure"


class RenderError(CatRenderError):
    """Rendering one (product, catalogue) unit failed."""

    def __init__(self, reason: RenderErrorReason, message: str = "",
                 product_id: Optional[str] = None, catalogue_id: Optional[str] = None):
        self.reason = reason
        self.product_id = product_id
        self.catalogue_id = catalogue_id
        super().__init__(message or reason.value)


# ── Batch (fatal) ───────────────────────────────────────

class BatchError(CatRenderError):
    """Fatal batch failure; the run is aborted and the last checkpoint kept."""

    reason = "batch_failure"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class CheckpointPersistFailure(BatchError):
    reason = "checkpoint_persist_failure"


class QuotaExceeded(BatchError):
    reason = "quota_exceeded"
    guidance = "Storage is full. Free up space on the device, then resume rendering."


class BatchAlreadyRunning(CatRenderError):
    """start() was called while a batch is Running."""


# ── Catalogues ──────────────────────────────────────────

class CatalogueError(CatRenderError):
    pass


class CatalogueNotFound(CatalogueError, KeyError):
    def __str__(self):
        return f"Catalogue not found: {self.args[0] if self.args else ''}"


class DefaultCatalogueProtected(CatalogueError):
    """Default catalogues cannot be deleted."""
