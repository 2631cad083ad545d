"""
Service wiring - builds the store, repositories, compositor, controller and
supervisor over one data directory.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from catrender.catalogue.fields import load_fields
from catrender.catalogue.registry import CatalogueRegistry
from catrender.catalogue.resolver import FieldResolver
from catrender.db.repository import CheckpointStore, ProductRepository
from catrender.db.sqlite_store import SQLiteKeyValueStore
from catrender.pipeline.batch_controller import BatchRenderController
from catrender.pipeline.events import ProgressChannel
from catrender.pipeline.resume import ResumeSupervisor
from catrender.pipeline.share import SharePackager
from catrender.render.compositor import ImageCompositor, LayoutOptions
from catrender.storage.artifacts import ArtifactStore
from catrender.storage.filesystem import FileSystemBridge

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: SQLiteKeyValueStore
    fs: FileSystemBridge
    artifacts: ArtifactStore
    products: ProductRepository
    registry: CatalogueRegistry
    resolver: FieldResolver
    checkpoints: CheckpointStore
    channel: ProgressChannel
    compositor: ImageCompositor
    controller: BatchRenderController
    supervisor: ResumeSupervisor
    share: SharePackager

    def close(self):
        self.artifacts.wait_for_renames(timeout=5)
        self.store.close()


def build_services(config=None, data_dir: Optional[Path] = None,
                   delay_ms: Optional[float] = None) -> Services:
    if config is None:
        from catrender.utils.config import get_config
        config = get_config()
    data_dir = Path(data_dir) if data_dir is not None else config.data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    store = SQLiteKeyValueStore(data_dir / config.get("storage.db_file", "catrender.db"))
    fs = FileSystemBridge(data_dir / "files")
    artifacts = ArtifactStore(fs)
    products = ProductRepository(store, artifacts=artifacts)
    registry = CatalogueRegistry(store, products=products, artifacts=artifacts)
    products.registry = registry
    fields = load_fields(store)

    checkpoints = CheckpointStore(store)
    channel = ProgressChannel()
    compositor = ImageCompositor(fs, artifacts, LayoutOptions.from_config(config, fields))
    controller = BatchRenderController(products, registry, compositor, checkpoints,
                                       channel=channel, config=config, fields=fields,
                                       delay_ms=delay_ms)
    supervisor = ResumeSupervisor(checkpoints, products, registry, controller, config=config)
    share = SharePackager(controller, registry, artifacts, fs, channel)
    logger.info(f"Services ready (data_dir={data_dir})")
    return Services(store, fs, artifacts, products, registry, FieldResolver(registry, fields),
                    checkpoints, channel, compositor, controller, supervisor, share)
