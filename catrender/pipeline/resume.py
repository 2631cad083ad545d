"""
Resume Supervisor - continues an interrupted batch render on start-up.

check_resumable() is idempotent and safe on every cold start:

    no checkpoint              -> None
    unreadable checkpoint      -> cleared, None
    older than max_age_hours   -> cleared, None
    every product or catalogue gone, or nothing left to do -> cleared, None
    otherwise                  -> job restricted to surviving ids, cursor remapped
"""

import logging
import time
from typing import Optional

from pydantic import ValidationError

from catrender.db.repository import CheckpointStore, ProductRepository
from catrender.errors import BatchError
from catrender.pipeline.job import RenderJob
from catrender.pipeline.state import BatchState

logger = logging.getLogger(__name__)


class ResumeSupervisor:
    def __init__(self, checkpoints: CheckpointStore, products: ProductRepository,
                 registry, controller, config=None, max_age_hours: Optional[float] = None):
        if max_age_hours is None:
            if config is None:
                from catrender.utils.config import get_config
                config = get_config()
            max_age_hours = float(config.get("resume.max_age_hours", 24))
        self.checkpoints = checkpoints
        self.products = products
        self.registry = registry
        self.controller = controller
        self.max_age_seconds = max_age_hours * 3600

    def check_resumable(self) -> Optional[RenderJob]:
        try:
            job = self.checkpoints.load()
        except BatchError as e:
            logger.error(f"[RESUME] cannot read checkpoint: {e}")
            return None
        except (ValueError, ValidationError) as e:
            logger.warning(f"[RESUME] discarding unreadable checkpoint: {e}")
            self.checkpoints.clear()
            return None

        if job is None:
            return None

        age = time.time() - job.started_at
        if age > self.max_age_seconds:
            logger.info(f"[RESUME] checkpoint is {age / 3600:.1f}h old; discarding")
            self.checkpoints.clear()
            return None

        restricted = job.restrict_to(set(self.products.ids()), set(self.registry.ids()))
        dropped_p = len(job.product_ids) - len(restricted.product_ids)
        dropped_c = len(job.catalogue_ids) - len(restricted.catalogue_ids)
        if dropped_p or dropped_c:
            logger.info(f"[RESUME] dropped {dropped_p} deleted products, "
                        f"{dropped_c} deleted catalogues; cursor {job.cursor} -> {restricted.cursor}")

        if restricted.total_units == 0 or restricted.is_finished:
            logger.info("[RESUME] nothing left to render; clearing checkpoint")
            self.checkpoints.clear()
            return None

        if restricted != job:
            self.checkpoints.save(restricted)
        logger.info(f"[RESUME] resumable job at {restricted.cursor}/{restricted.total_units}")
        return restricted

    def resume(self, on_progress=None, on_complete=None, on_error=None) -> Optional[RenderJob]:
        """Hand a resumable job to the controller at its cursor.

        Returns the job, or None when there is nothing to resume.
        """
        if self.controller.state == BatchState.RUNNING:
            logger.info("[RESUME] a batch is already running; not resuming")
            return None
        job = self.check_resumable()
        if job is None:
            return None
        return self.controller.run_job(job, on_progress, on_complete, on_error)
