"""
Batch Render Controller - renders every (product, catalogue) unit of a job,
sequentially, on one background worker thread.

Per unit:
    resolve effective fields -> disabled? pass over
                             -> render card (any unit failure = skip, never abort)
    advance cursor -> persist checkpoint -> progress (after a product's last unit)

The checkpoint is written after the unit's artifact, so a crash re-renders at
most one unit; re-rendering overwrites the same path with the same bytes.

Only batch-level errors abort a run: the checkpoint cannot be persisted, or
storage is out of space. The last good checkpoint is kept for resume.
Cancellation is observed between units and also keeps the checkpoint.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from catrender.catalogue.fields import FieldDefinition
from catrender.catalogue.resolver import resolve_fields
from catrender.catalogue.schema import Catalogue, Product
from catrender.db.repository import CheckpointStore, ProductRepository
from catrender.errors import (
    BatchError,
    QuotaExceeded,
    RenderError,
    StorageQuotaExceeded,
)
from catrender.pipeline.events import (
    CancelledEvent,
    CompleteEvent,
    ErrorEvent,
    Phase,
    PhaseChangeEvent,
    ProgressChannel,
    ProgressEvent,
)
from catrender.pipeline.job import RenderJob, Unit
from catrender.pipeline.state import BatchState, BatchStateMachine
from catrender.render.compositor import ImageCompositor, LayoutOptions

logger = logging.getLogger(__name__)

Callback = Optional[Callable]


@dataclass
class BatchResult:
    state: BatchState
    rendered: int = 0
    skipped: int = 0
    disabled: int = 0
    units_done: int = 0
    total_units: int = 0
    skipped_units: List[str] = field(default_factory=list)
    error: Optional[BatchError] = None


def _notify(callback, event):
    """Call a start() callback if provided; its failures never reach the run."""
    if callback:
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"[BATCH] callback failed on {event.type.value}: {e}")


class BatchRenderController:
    """Sole renderer invoker and sole checkpoint writer.

    Args:
        products: product repository (read once per run).
        registry: catalogue registry (read once per run).
        compositor: card renderer.
        checkpoints: durable checkpoint record.
        channel: progress/event channel; a private one is created if omitted.
        config: AppConfig, defaults to get_config().
        fields: field definitions used for resolution and layout.
        delay_ms: pause between units; defaults to render.inter_unit_delay_ms.
    """

    def __init__(self, products: ProductRepository, registry,
                 compositor: ImageCompositor, checkpoints: CheckpointStore,
                 channel: Optional[ProgressChannel] = None, config=None,
                 fields: Optional[List[FieldDefinition]] = None,
                 delay_ms: Optional[float] = None):
        if config is None:
            from catrender.utils.config import get_config
            config = get_config()
        self.products = products
        self.registry = registry
        self.compositor = compositor
        self.checkpoints = checkpoints
        self.channel = channel or ProgressChannel()
        self.fields = fields
        self.layout = LayoutOptions.from_config(config, fields)
        if delay_ms is None:
            delay_ms = config.get("render.inter_unit_delay_ms", 30)
        self.delay = float(delay_ms) / 1000.0

        self._machine = BatchStateMachine()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[BatchResult] = None

    @property
    def state(self) -> BatchState:
        return self._machine.state

    # ── entry points ────────────────────────────────────

    def start(self, product_ids: Sequence[str], catalogue_ids: Sequence[str],
              on_progress: Callback = None, on_complete: Callback = None,
              on_error: Callback = None) -> RenderJob:
        """Begin a new job over product_ids x catalogue_ids.

        Ids unknown at start are dropped. Raises BatchAlreadyRunning if a run
        is in progress.
        """
        job = RenderJob(product_ids=list(product_ids), catalogue_ids=list(catalogue_ids))
        return self.run_job(job, on_progress, on_complete, on_error, drop_unknown=True)

    def render_all(self, **callbacks) -> RenderJob:
        return self.start(self.products.ids(), self.registry.ids(), **callbacks)

    def render_selected(self, product_ids: Sequence[str], **callbacks) -> RenderJob:
        return self.start(product_ids, self.registry.ids(), **callbacks)

    def run_job(self, job: RenderJob, on_progress: Callback = None,
                on_complete: Callback = None, on_error: Callback = None,
                drop_unknown: bool = False) -> RenderJob:
        """Run (or continue) job from its cursor on the worker thread."""
        self._machine.begin()
        try:
            # Snapshot inputs; edits made while rendering apply to the next run
            products = {p.id: p for p in self.products.list_products()}
            catalogues = {c.id: c for c in self.registry.list_active()}
            if drop_unknown:
                job = job.restrict_to(set(products), set(catalogues))
        except Exception:
            self._machine.finish(BatchState.FAILED)
            raise

        self._cancel.clear()
        self.channel.reset()
        self.last_result = None
        callbacks = (on_progress, on_complete, on_error)
        self._thread = threading.Thread(
            target=self._run, args=(job, products, catalogues, callbacks),
            name="BatchRender", daemon=True,
        )
        self._thread.start()
        return job

    def cancel(self) -> None:
        """Stop after the current unit; the checkpoint is kept for resume."""
        if self._machine.state == BatchState.RUNNING:
            logger.info("[BATCH] cancel requested")
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[BatchResult]:
        """Join the worker thread. Returns the result, or None on timeout."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return None
        return self.last_result

    # ── worker ──────────────────────────────────────────

    def _run(self, job: RenderJob, products: Dict[str, Product],
             catalogues: Dict[str, Catalogue], callbacks) -> None:
        on_progress, on_complete, on_error = callbacks
        result = BatchResult(state=BatchState.RUNNING, rendered=job.rendered,
                             skipped=job.skipped, total_units=job.total_units)
        logger.info(f"[BATCH] start: {len(job.product_ids)} products x "
                    f"{len(job.catalogue_ids)} catalogues, cursor {job.cursor}/{job.total_units}")
        self.channel.publish(PhaseChangeEvent(Phase.RENDERING))

        try:
            self.checkpoints.save(job)
            for unit in job.pending_units():
                if self._cancel.is_set():
                    self._finish_cancelled(job, result)
                    return

                outcome = self._process_unit(unit, products, catalogues, result)
                if outcome == "rendered":
                    job.rendered += 1
                elif outcome == "skipped":
                    job.skipped += 1
                job.cursor = unit.index + 1
                self.checkpoints.save(job)

                if unit.last_for_product:
                    progress = ProgressEvent(
                        current_product_index=unit.product_index + 1,
                        total_products=len(job.product_ids),
                        percentage=job.percentage(),
                        units_done=job.cursor,
                        total_units=job.total_units,
                        product_id=unit.product_id,
                    )
                    self.channel.publish(progress)
                    _notify(on_progress, progress)

                if self.delay > 0 and not job.is_finished:
                    self._cancel.wait(self.delay)

            self.checkpoints.clear()
        except BatchError as e:
            self._finish_failed(job, result, e, on_error)
            return
        except Exception as e:
            logger.exception("[BATCH] unexpected failure")
            self._finish_failed(job, result, BatchError(f"Rendering failed: {e}", cause=e), on_error)
            return

        result.rendered, result.skipped = job.rendered, job.skipped
        result.units_done = job.cursor
        result.state = BatchState.COMPLETED
        self.last_result = result
        self._machine.finish(BatchState.COMPLETED)

        if job.skipped:
            status = "completed_with_skips"
            message = f"Rendered {job.rendered} cards, {job.skipped} skipped"
        else:
            status = "success"
            message = f"Rendered {job.rendered} cards"
        done = CompleteEvent(status=status, rendered=job.rendered, skipped=job.skipped,
                             disabled=result.disabled, message=message,
                             skipped_units=list(result.skipped_units))
        logger.info(f"[DONE] {message} ({result.disabled} disabled)")
        self.channel.publish(done)
        self.channel.publish(PhaseChangeEvent(Phase.IDLE))
        _notify(on_complete, done)

    def _process_unit(self, unit: Unit, products: Dict[str, Product],
                      catalogues: Dict[str, Catalogue], result: BatchResult) -> str:
        product = products.get(unit.product_id)
        catalogue = catalogues.get(unit.catalogue_id)
        if product is None or catalogue is None:
            return self._skip(unit, "no longer exists", result)

        effective = resolve_fields(product, catalogue, self.fields)
        if not effective.enabled:
            result.disabled += 1
            return "disabled"

        try:
            self.compositor.render(product, catalogue, effective, self.layout)
        except RenderError as e:
            return self._skip(unit, f"{e.reason.value}: {e}", result)
        except StorageQuotaExceeded as e:
            raise QuotaExceeded(f"Out of space writing {unit.product_id}/{unit.catalogue_id}: {e}",
                                cause=e) from e
        except BatchError:
            raise
        except Exception as e:
            logger.exception(f"[RENDER] unexpected failure on {unit.product_id}/{unit.catalogue_id}")
            return self._skip(unit, f"{type(e).__name__}: {e}", result)
        return "rendered"

    @staticmethod
    def _skip(unit: Unit, reason: str, result: BatchResult) -> str:
        logger.warning(f"[SKIP] product={unit.product_id} catalogue={unit.catalogue_id}: {reason}")
        result.skipped_units.append(f"{unit.product_id}/{unit.catalogue_id}")
        return "skipped"

    # ── terminal states ─────────────────────────────────

    def _finish_cancelled(self, job: RenderJob, result: BatchResult) -> None:
        result.state = BatchState.CANCELLED
        result.rendered, result.skipped = job.rendered, job.skipped
        result.units_done = job.cursor
        self.last_result = result
        self._machine.finish(BatchState.CANCELLED)
        logger.info(f"[CKPT] cancelled at {job.cursor}/{job.total_units}; checkpoint kept")
        self.channel.publish(CancelledEvent(units_done=job.cursor, total_units=job.total_units))
        self.channel.publish(PhaseChangeEvent(Phase.IDLE))

    def _finish_failed(self, job: RenderJob, result: BatchResult,
                       error: BatchError, on_error: Callback) -> None:
        result.state = BatchState.FAILED
        result.rendered, result.skipped = job.rendered, job.skipped
        result.units_done = job.cursor
        result.error = error
        self.last_result = result
        self._machine.finish(BatchState.FAILED)
        logger.error(f"[BATCH] aborted at {job.cursor}/{job.total_units}: {error}")
        event = ErrorEvent(reason=error.reason, message=str(error),
                           guidance=getattr(error, "guidance", ""))
        self.channel.publish(event)
        self.channel.publish(PhaseChangeEvent(Phase.IDLE))
        _notify(on_error, event)
