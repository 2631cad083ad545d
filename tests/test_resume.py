"""Resume supervisor: continue at the cursor, drop deleted ids, discard stale state."""

import time
from unittest.mock import MagicMock

from catrender.db.repository import CHECKPOINT_KEY
from catrender.pipeline.batch_controller import BatchRenderController
from catrender.pipeline.job import RenderJob
from catrender.pipeline.resume import ResumeSupervisor
from catrender.pipeline.state import BatchState
from catrender.render.compositor import ArtifactRef

from conftest import make_product


def _mock_compositor():
    compositor = MagicMock()
    compositor.render.side_effect = lambda p, c, e, l=None: ArtifactRef(p.id, c.id, "x", 1)
    return compositor


def _setup(services, config, n_products=3):
    retail = services.registry.add("Retail")
    services.products.save_all([
        make_product(f"p{i}", catalogueData={"cat1": {"enabled": True},
                                             retail.id: {"enabled": True}})
        for i in range(n_products)
    ])
    compositor = _mock_compositor()
    controller = BatchRenderController(services.products, services.registry, compositor,
                                       services.checkpoints, channel=services.channel,
                                       config=config, delay_ms=0)
    supervisor = ResumeSupervisor(services.checkpoints, services.products, services.registry,
                                  controller, config=config)
    return retail, compositor, controller, supervisor


def test_nothing_to_resume_is_idempotent(services):
    assert services.supervisor.check_resumable() is None
    assert services.supervisor.check_resumable() is None
    assert services.supervisor.resume() is None


def test_resume_performs_exactly_remaining_renders(services, config):
    retail, compositor, controller, supervisor = _setup(services, config)
    job = RenderJob(product_ids=["p0", "p1", "p2"], catalogue_ids=["cat1", retail.id],
                    cursor=2, rendered=2)
    services.checkpoints.save(job)

    resumed = supervisor.resume()
    result = controller.wait(10)

    assert resumed.cursor == 2
    assert compositor.render.call_count == job.total_units - 2
    first = compositor.render.call_args_list[0].args
    assert (first[0].id, first[1].id) == ("p1", "cat1")
    assert result.state == BatchState.COMPLETED
    assert result.rendered == 6
    assert services.checkpoints.load() is None


def test_deleted_catalogue_is_dropped(services, config):
    retail, compositor, controller, supervisor = _setup(services, config)
    services.checkpoints.save(RenderJob(product_ids=["p0", "p1", "p2"],
                                        catalogue_ids=["cat1", retail.id], cursor=3))
    services.registry.delete(retail.id)

    job = supervisor.check_resumable()
    assert job.catalogue_ids == ["cat1"]
    # p0/cat1 p0/retail p1/cat1 were done; continue at p2/cat1
    assert job.cursor == 2
    assert services.checkpoints.load().catalogue_ids == ["cat1"]

    supervisor.resume()
    result = controller.wait(10)
    assert result.state == BatchState.COMPLETED
    assert compositor.render.call_count == 1


def test_deleted_product_is_dropped(services, config):
    retail, compositor, controller, supervisor = _setup(services, config)
    services.checkpoints.save(RenderJob(product_ids=["p0", "p1", "p2"],
                                        catalogue_ids=["cat1", retail.id], cursor=2))
    services.products.move_to_shelf("p0")

    job = supervisor.check_resumable()
    assert job.product_ids == ["p1", "p2"]
    assert job.cursor == 0


def test_everything_deleted_clears_checkpoint(services, config):
    _, compositor, controller, supervisor = _setup(services, config)
    services.checkpoints.save(RenderJob(product_ids=["gone"], catalogue_ids=["cat1"]))

    assert supervisor.resume() is None
    assert services.checkpoints.load() is None
    compositor.render.assert_not_called()


def test_stale_checkpoint_is_discarded(services, config):
    _, _, _, supervisor = _setup(services, config)
    old = time.time() - 25 * 3600
    services.checkpoints.save(RenderJob(product_ids=["p0"], catalogue_ids=["cat1"],
                                        started_at=old))
    assert supervisor.check_resumable() is None
    assert services.checkpoints.load() is None


def test_corrupt_checkpoint_is_discarded(services):
    services.store.set(CHECKPOINT_KEY, b'{"productIds": 7')
    assert services.supervisor.check_resumable() is None
    assert services.store.get(CHECKPOINT_KEY) is None

    services.store.set(CHECKPOINT_KEY, b'{"cursor": "many"}')
    assert services.supervisor.check_resumable() is None


def test_cancelled_run_resumes_where_it_stopped(services, config):
    retail, compositor, controller, supervisor = _setup(services, config)

    def render(p, c, e, l=None):
        if compositor.render.call_count == 3:
            controller.cancel()
        return ArtifactRef(p.id, c.id, "x", 1)

    compositor.render.side_effect = render
    controller.render_all()
    assert controller.wait(10).state == BatchState.CANCELLED

    compositor.render.side_effect = lambda p, c, e, l=None: ArtifactRef(p.id, c.id, "x", 1)
    supervisor.resume()
    result = controller.wait(10)
    assert result.state == BatchState.COMPLETED
    assert compositor.render.call_count == 6
    assert result.rendered == 6
