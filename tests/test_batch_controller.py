"""
Batch render controller: skip-don't-abort, progress ordering, cancellation,
fatal checkpoint/quota failures.
"""

import threading
from unittest.mock import MagicMock

import pytest
from PIL import Image

from catrender.errors import BatchAlreadyRunning, CheckpointPersistFailure, StorageQuotaExceeded
from catrender.pipeline.batch_controller import BatchRenderController
from catrender.pipeline.events import EventType, Phase
from catrender.pipeline.state import BatchState
from catrender.render.compositor import ArtifactRef

from conftest import make_product, png_data_url


def _collect(channel):
    events = []
    channel.subscribe(events.append)
    return events


def _of(events, event_type):
    return [e for e in events if e.type == event_type]


def _controller(services, config, compositor):
    return BatchRenderController(services.products, services.registry, compositor,
                                 services.checkpoints, channel=services.channel,
                                 config=config, delay_ms=0)


def test_one_missing_image_is_skipped(services):
    services.products.save_all([make_product("a"), make_product("b", image=False)])
    events = _collect(services.channel)
    on_progress, on_complete, on_error = MagicMock(), MagicMock(), MagicMock()

    services.controller.start(["a", "b"], ["cat1"], on_progress, on_complete, on_error)
    result = services.controller.wait(10)

    assert result.state == BatchState.COMPLETED
    assert (result.rendered, result.skipped) == (1, 1)
    assert result.skipped_units == ["b/cat1"]
    master = services.registry.get("cat1")
    assert services.artifacts.exists(master, "a")
    assert not services.artifacts.exists(master, "b")

    progress = _of(events, EventType.PROGRESS)
    assert [(e.current_product_index, e.total_products) for e in progress] == [(1, 2), (2, 2)]
    assert progress[-1].percentage == 100
    complete = _of(events, EventType.COMPLETE)
    assert len(complete) == 1
    assert complete[0].skipped == 1
    assert complete[0].status == "completed_with_skips"
    assert not complete[0].fully_successful
    assert _of(events, EventType.ERROR) == []

    assert on_progress.call_count == 2
    on_complete.assert_called_once()
    on_error.assert_not_called()
    assert services.checkpoints.load() is None


def test_skip_does_not_abort_five_products(services):
    products = [make_product(f"p{i}", image=(i != 3)) for i in range(1, 6)]
    services.products.save_all(products)
    events = _collect(services.channel)

    services.controller.render_all()
    result = services.controller.wait(10)

    assert (result.rendered, result.skipped) == (4, 1)
    assert len(_of(events, EventType.COMPLETE)) == 1
    assert _of(events, EventType.ERROR) == []
    assert len(services.artifacts.list_folder("Master")) == 4


def test_progress_is_strictly_increasing_over_catalogues(services):
    services.products.save_all([make_product("a"), make_product("b")])
    retail = services.registry.add("Retail")
    products = services.products.list_products()
    for p in products:
        p.catalogue_data[retail.id]["enabled"] = True
    services.products.save_all(products)
    events = _collect(services.channel)

    services.controller.render_all()
    result = services.controller.wait(10)

    assert result.rendered == 4
    indices = [e.current_product_index for e in _of(events, EventType.PROGRESS)]
    assert indices == [1, 2]
    phases = [e.phase for e in _of(events, EventType.PHASE_CHANGE)]
    assert phases == [Phase.RENDERING, Phase.IDLE]


def test_disabled_units_are_not_skips(services):
    services.products.save_all([make_product("a")])
    services.registry.add("Retail")  # backfilled as disabled

    services.controller.render_all()
    result = services.controller.wait(10)

    assert (result.rendered, result.skipped, result.disabled) == (1, 0, 1)
    assert services.channel.latest(EventType.COMPLETE).status == "success"


def test_unknown_ids_are_dropped_at_start(services):
    services.products.save_all([make_product("a")])
    job = services.controller.start(["a", "ghost"], ["cat1", "nope"])
    services.controller.wait(10)
    assert job.product_ids == ["a"]
    assert job.catalogue_ids == ["cat1"]


def test_start_while_running_is_caller_error(services, config):
    services.products.save_all([make_product("a"), make_product("b")])
    gate = threading.Event()
    entered = threading.Event()

    def slow_render(product, catalogue, effective, layout=None):
        entered.set()
        gate.wait(5)
        return ArtifactRef(product.id, catalogue.id, "x", 1)

    compositor = MagicMock()
    compositor.render.side_effect = slow_render
    controller = _controller(services, config, compositor)
    controller.start(["a", "b"], ["cat1"])
    assert entered.wait(5)
    assert controller.state == BatchState.RUNNING
    with pytest.raises(BatchAlreadyRunning):
        controller.start(["a"], ["cat1"])

    gate.set()
    assert controller.wait(10).state == BatchState.COMPLETED


def test_cancel_keeps_checkpoint(services, config):
    services.products.save_all([make_product(f"p{i}") for i in range(5)])
    compositor = MagicMock()
    controller = _controller(services, config, compositor)

    def render(product, catalogue, effective, layout=None):
        if compositor.render.call_count == 2:
            controller.cancel()
        return ArtifactRef(product.id, catalogue.id, "x", 1)

    compositor.render.side_effect = render
    events = _collect(services.channel)
    controller.render_all()
    result = controller.wait(10)

    assert result.state == BatchState.CANCELLED
    assert compositor.render.call_count == 2
    checkpoint = services.checkpoints.load()
    assert checkpoint is not None
    assert checkpoint.cursor == 2
    assert checkpoint.rendered == 2
    assert len(_of(events, EventType.CANCELLED)) == 1
    assert _of(events, EventType.COMPLETE) == []


def test_checkpoint_failure_aborts_with_error_event(services, config):
    services.products.save_all([make_product("a"), make_product("b")])
    compositor = MagicMock()
    compositor.render.side_effect = lambda p, c, e, l=None: ArtifactRef(p.id, c.id, "x", 1)
    real_save = services.checkpoints.save
    calls = []

    def flaky_save(job):
        calls.append(job.cursor)
        if len(calls) == 3:
            raise CheckpointPersistFailure("disk I/O error")
        real_save(job)

    services.checkpoints.save = flaky_save
    on_complete, on_error = MagicMock(), MagicMock()
    events = _collect(services.channel)

    controller = _controller(services, config, compositor)
    controller.start(["a", "b"], ["cat1"], on_complete=on_complete, on_error=on_error)
    result = controller.wait(10)

    assert result.state == BatchState.FAILED
    assert isinstance(result.error, CheckpointPersistFailure)
    errors = _of(events, EventType.ERROR)
    assert len(errors) == 1
    assert errors[0].reason == "checkpoint_persist_failure"
    on_error.assert_called_once()
    on_complete.assert_not_called()
    # last good checkpoint survives
    services.checkpoints.save = real_save
    assert services.checkpoints.load().cursor == 1


def test_quota_exceeded_is_fatal_with_guidance(services, config):
    services.products.save_all([make_product("a"), make_product("b")])
    compositor = MagicMock()
    compositor.render.side_effect = StorageQuotaExceeded("No space left on device")
    events = _collect(services.channel)

    controller = _controller(services, config, compositor)
    controller.start(["a", "b"], ["cat1"])
    result = controller.wait(10)

    assert result.state == BatchState.FAILED
    assert compositor.render.call_count == 1
    error = _of(events, EventType.ERROR)[0]
    assert error.reason == "quota_exceeded"
    assert "Free up space" in error.guidance
    assert services.checkpoints.load().cursor == 0


def test_callback_failure_does_not_affect_run(services):
    services.products.save_all([make_product("a")])
    services.controller.start(["a"], ["cat1"],
                              on_progress=MagicMock(side_effect=RuntimeError("ui")))
    result = services.controller.wait(10)
    assert result.state == BatchState.COMPLETED
    assert result.rendered == 1


def test_empty_job_completes(services):
    services.controller.start([], ["cat1"])
    result = services.controller.wait(10)
    assert result.state == BatchState.COMPLETED
    assert result.rendered == 0


def test_line_breaks_in_text_still_render(services):
    services.products.save_all([
        make_product("a", name="Kids Frock\nSummer", subtitle="Soft\r\nCotton",
                     badge="new\narrival"),
        make_product("b", field1="Red\nBlue", wholesale="250\n"),
    ])
    services.controller.start(["a", "b"], ["cat1"])
    result = services.controller.wait(10)

    assert result.state == BatchState.COMPLETED
    assert (result.rendered, result.skipped) == (2, 0)


def test_oversized_image_is_skipped_not_fatal(services, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    services.products.save_all([
        make_product("big", image=png_data_url(size=(20, 20))),
        make_product("ok"),
    ])
    services.controller.start(["big", "ok"], ["cat1"])
    result = services.controller.wait(10)

    assert result.state == BatchState.COMPLETED
    assert (result.rendered, result.skipped) == (1, 1)
    assert result.skipped_units == ["big/cat1"]
    assert services.artifacts.exists(services.registry.get("cat1"), "ok")


def test_unexpected_render_exception_is_a_skip(services, config):
    services.products.save_all([make_product("a"), make_product("b")])

    def render(product, catalogue, effective, layout=None):
        if product.id == "a":
            raise RuntimeError("font engine crashed")
        return ArtifactRef(product.id, catalogue.id, "x", 1)

    compositor = MagicMock()
    compositor.render.side_effect = render
    events = _collect(services.channel)
    controller = _controller(services, config, compositor)
    controller.start(["a", "b"], ["cat1"])
    result = controller.wait(10)

    assert result.state == BatchState.COMPLETED
    assert (result.rendered, result.skipped) == (1, 1)
    assert result.skipped_units == ["a/cat1"]
    assert _of(events, EventType.ERROR) == []
    assert services.channel.latest(EventType.COMPLETE).status == "completed_with_skips"
    assert services.checkpoints.load() is None
