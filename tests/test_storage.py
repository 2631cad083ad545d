"""Key-value store, repositories, filesystem bridge and artifact store."""

import errno
import json
import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from catrender.db.repository import (
    CHECKPOINT_KEY,
    CheckpointStore,
    ProductRepository,
)
from catrender.db.sqlite_store import SQLiteKeyValueStore
from catrender.errors import (
    CheckpointPersistFailure,
    QuotaExceeded,
    StorageError,
    StorageQuotaExceeded,
)
from catrender.pipeline.job import RenderJob
from catrender.storage.artifacts import ArtifactStore, artifact_path
from catrender.storage.filesystem import FileSystemBridge, Namespace

from conftest import make_product, master


# ── SQLite key-value store ──────────────────────────────

def test_kv_roundtrip(tmp_path):
    store = SQLiteKeyValueStore(tmp_path / "kv.db")
    assert store.get("missing") is None
    store.set("a:1", b"one")
    store.set("a:2", b"two")
    store.set("b:1", b"x")
    store.set("a:1", b"uno")
    assert store.get("a:1") == b"uno"
    assert store.keys("a:") == ["a:1", "a:2"]
    store.delete("a:1")
    assert store.get("a:1") is None
    store.close()

    reopened = SQLiteKeyValueStore(tmp_path / "kv.db")
    assert reopened.get("a:2") == b"two"
    reopened.close()


def test_kv_memory_store():
    store = SQLiteKeyValueStore(":memory:")
    store.set("k", b"v")
    assert store.get("k") == b"v"


def test_kv_quota_is_distinct_from_other_failures():
    store = SQLiteKeyValueStore(":memory:")
    real = store.conn
    store.conn = MagicMock()
    store.conn.execute.side_effect = sqlite3.OperationalError("database or disk is full")
    with pytest.raises(StorageQuotaExceeded):
        store.set("k", b"v")

    store.conn.execute.side_effect = sqlite3.OperationalError("attempt to write a readonly database")
    with pytest.raises(StorageError) as exc:
        store.set("k", b"v")
    assert not isinstance(exc.value, StorageQuotaExceeded)
    store.conn = real


# ── Products and shelf ──────────────────────────────────

def test_product_upsert_keeps_order():
    repo = ProductRepository(SQLiteKeyValueStore(":memory:"))
    repo.save_all([make_product("a"), make_product("b")])
    repo.save(make_product("a", name="Renamed"))
    repo.save(make_product("c"))
    assert repo.ids() == ["a", "b", "c"]
    assert repo.get("a").name == "Renamed"
    assert repo.get("zzz") is None


def test_product_extras_survive_storage():
    repo = ProductRepository(SQLiteKeyValueStore(":memory:"))
    repo.save(make_product("a", wholesale="120", catalogueData={"cat1": {"enabled": True}}))
    p = repo.get("a")
    assert p.legacy_value("wholesale") == "120"
    assert p.catalogue_data == {"cat1": {"enabled": True}}


def test_shelf_move_and_restore():
    repo = ProductRepository(SQLiteKeyValueStore(":memory:"))
    repo.save_all([make_product("a"), make_product("b")])
    assert repo.move_to_shelf("a") is True
    assert repo.move_to_shelf("a") is False
    assert repo.ids() == ["b"]
    assert [p.id for p in repo.list_shelf()] == ["a"]
    assert repo.restore_from_shelf("a") is True
    assert sorted(repo.ids()) == ["a", "b"]
    assert repo.list_shelf() == []


def test_hard_delete_removes_artifacts(services):
    services.products.save_all([make_product("a")])
    services.controller.render_all()
    services.controller.wait(10)
    catalogue = services.registry.get("cat1")
    assert services.artifacts.exists(catalogue, "a")

    services.products.move_to_shelf("a")
    assert services.products.hard_delete("a") == 1
    assert not services.artifacts.exists(catalogue, "a")
    assert services.products.list_shelf() == []


# ── Checkpoint record ───────────────────────────────────

def test_checkpoint_roundtrip_uses_stored_shape():
    store = SQLiteKeyValueStore(":memory:")
    checkpoints = CheckpointStore(store)
    assert checkpoints.load() is None
    checkpoints.save(RenderJob(product_ids=["a", "b"], catalogue_ids=["cat1"], cursor=1))
    raw = json.loads(store.get(CHECKPOINT_KEY))
    assert raw["productIds"] == ["a", "b"]
    assert raw["catalogueIds"] == ["cat1"]
    assert raw["cursor"] == 1
    assert "startedAt" in raw
    assert checkpoints.load().cursor == 1
    checkpoints.clear()
    assert checkpoints.load() is None


def test_checkpoint_write_failures_are_batch_errors():
    store = MagicMock()
    checkpoints = CheckpointStore(store)
    job = RenderJob(product_ids=["a"], catalogue_ids=["cat1"])

    store.set.side_effect = StorageQuotaExceeded("full")
    with pytest.raises(QuotaExceeded) as exc:
        checkpoints.save(job)
    assert exc.value.guidance

    store.set.side_effect = StorageError("io")
    with pytest.raises(CheckpointPersistFailure):
        checkpoints.save(job)


def test_corrupt_checkpoint_raises_value_error():
    store = SQLiteKeyValueStore(":memory:")
    store.set(CHECKPOINT_KEY, b"{not json")
    with pytest.raises(ValueError):
        CheckpointStore(store).load()


# ── Filesystem bridge ───────────────────────────────────

def test_write_replaces_whole_file(tmp_path):
    fs = FileSystemBridge(tmp_path)
    fs.write_file("Master/x.png", b"first", Namespace.EXTERNAL)
    fs.write_file("Master/x.png", b"second", Namespace.EXTERNAL)
    assert fs.read_file("Master/x.png", Namespace.EXTERNAL) == b"second"
    assert fs.list_dir("Master", Namespace.EXTERNAL) == ["x.png"]
    assert fs.read_file("Master/x.png", Namespace.DATA) is None
    assert list((tmp_path / "external" / "Master").iterdir()) == [tmp_path / "external" / "Master" / "x.png"]


def test_path_escape_rejected(tmp_path):
    fs = FileSystemBridge(tmp_path)
    with pytest.raises(StorageError):
        fs.write_file("../outside.bin", b"x")


def test_out_of_space_maps_to_quota(tmp_path):
    fs = FileSystemBridge(tmp_path)
    with patch("catrender.storage.filesystem.os.replace",
               side_effect=OSError(errno.ENOSPC, "No space left on device")):
        with pytest.raises(StorageQuotaExceeded):
            fs.write_file("a.bin", b"x")
    assert fs.list_dir("") == []

    with patch("catrender.storage.filesystem.os.replace",
               side_effect=OSError(errno.EACCES, "Permission denied")):
        with pytest.raises(StorageError) as exc:
            fs.write_file("a.bin", b"x")
    assert not isinstance(exc.value, StorageQuotaExceeded)


# ── Artifacts ───────────────────────────────────────────

def test_artifact_paths_are_deterministic():
    assert artifact_path("Master", "p1") == "Master/product_p1_Master.png"


def test_rename_folder_moves_and_renames_cards(tmp_path):
    store = ArtifactStore(FileSystemBridge(tmp_path))
    cat = master()
    store.save(cat, "p1", b"png-1")
    store.save(cat, "p2", b"png-2")
    assert store.rename_folder("Master", "Wholesale") == 2
    assert store.list_folder("Master") == []
    assert store.list_folder("Wholesale") == [
        "product_p1_Wholesale.png", "product_p2_Wholesale.png",
    ]
    renamed = cat.model_copy(update={"folder": "Wholesale"})
    assert store.read(renamed, "p1") == b"png-1"


def test_rename_folder_async_returns_joinable_thread(tmp_path):
    store = ArtifactStore(FileSystemBridge(tmp_path))
    store.save(master(), "p1", b"png")
    thread = store.rename_folder_async("Master", "Other")
    thread.join(5)
    assert store.list_folder("Other") == ["product_p1_Other.png"]
