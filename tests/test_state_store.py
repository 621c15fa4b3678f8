"""Tests for the state store."""

import json
import threading
from pathlib import Path

import pytest

from provisioner.config import MAX_STATE_RECORD_SIZE_BYTES
from provisioner.state_store import (
    FileStateStore,
    MemoryStateStore,
    ObservedState,
    StateStore,
    StateStoreError,
    open_store,
)


@pytest.fixture(params=["memory", "file"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> StateStore:
    """Each store implementation."""
    if request.param == "memory":
        return MemoryStateStore()
    return FileStateStore(tmp_path / "state")


class TestStateStore:
    """Behavior shared by every store."""

    def test_get_missing(self, any_store: StateStore) -> None:
        """Absent records read as None."""
        assert any_store.get("cluster") is None

    def test_put_and_get(self, any_store: StateStore) -> None:
        """A recorded node reads back with identity, outputs and dependencies."""
        any_store.put(
            "node-pool:default",
            {"name": "default", "max_count": 3},
            kind="node-pool",
            identity="arn:aws:eks:us-east-1:1:nodegroup/dev/default",
            outputs={"status": "ACTIVE"},
            depends_on=["cluster"],
        )

        state = any_store.get("node-pool:default")

        assert state is not None
        assert state.kind == "node-pool"
        assert state.attributes == {"name": "default", "max_count": 3}
        assert state.outputs == {"status": "ACTIVE"}
        assert state.depends_on == ("cluster",)
        assert state.updated_at

    def test_put_overwrites(self, any_store: StateStore) -> None:
        """A second put replaces the record."""
        any_store.put("cluster", {"kubernetes_version": "1.28"}, kind="cluster")
        any_store.put("cluster", {"kubernetes_version": "1.29"}, kind="cluster")

        state = any_store.get("cluster")

        assert state is not None
        assert state.attributes["kubernetes_version"] == "1.29"

    def test_delete(self, any_store: StateStore) -> None:
        """Deleted records disappear; deleting twice is harmless."""
        any_store.put("storage:logs", {"name": "logs"}, kind="storage")

        any_store.delete("storage:logs")
        any_store.delete("storage:logs")

        assert any_store.get("storage:logs") is None

    def test_snapshot(self, any_store: StateStore) -> None:
        """Snapshot returns every record keyed by node id."""
        any_store.put("cluster", {"name": "dev"}, kind="cluster")
        any_store.put("node-pool:gpu", {"name": "gpu"}, kind="node-pool")

        snapshot = any_store.snapshot()

        assert sorted(snapshot) == ["cluster", "node-pool:gpu"]
        assert any_store.list_ids() == ["cluster", "node-pool:gpu"]

    def test_concurrent_puts(self, any_store: StateStore) -> None:
        """Parallel writers to different nodes all land."""
        def write(i: int) -> None:
            any_store.put(f"storage:bucket-{i}", {"name": f"bucket-{i}"}, kind="storage")

        threads = [threading.Thread(target=write, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(any_store.snapshot()) == 16


class TestFileStateStore:
    """File-backed persistence."""

    def test_survives_reopen(self, tmp_path: Path) -> None:
        """Records are durable across store instances."""
        FileStateStore(tmp_path).put("cluster", {"name": "dev"}, kind="cluster", identity="id-1")

        state = FileStateStore(tmp_path).get("cluster")

        assert state is not None
        assert state.identity == "id-1"

    def test_node_ids_are_escaped(self, tmp_path: Path) -> None:
        """Ids containing ':' map to safe file names and back."""
        store = FileStateStore(tmp_path)
        store.put("node-pool:default", {"name": "default"}, kind="node-pool")

        assert (tmp_path / "node-pool%3Adefault.json").is_file()
        assert store.list_ids() == ["node-pool:default"]

    def test_ignores_temp_files(self, tmp_path: Path) -> None:
        """Leftovers of interrupted writes are not records."""
        store = FileStateStore(tmp_path)
        (tmp_path / ".tmp-abc.json").write_text("{}")

        assert store.list_ids() == []

    def test_corrupt_record(self, tmp_path: Path) -> None:
        """Unreadable JSON raises StateStoreError."""
        store = FileStateStore(tmp_path)
        (tmp_path / "cluster.json").write_text("{not json")

        with pytest.raises(StateStoreError, match="Cannot read"):
            store.get("cluster")

    def test_malformed_record(self, tmp_path: Path) -> None:
        """JSON without required keys raises StateStoreError."""
        store = FileStateStore(tmp_path)
        (tmp_path / "cluster.json").write_text(json.dumps({"attributes": {}}))

        with pytest.raises(StateStoreError, match="Malformed"):
            store.get("cluster")

    def test_oversized_record(self, tmp_path: Path) -> None:
        """Records above the size limit are rejected on write."""
        store = FileStateStore(tmp_path)

        with pytest.raises(StateStoreError, match="exceeds"):
            store.put(
                "storage:big",
                {"blob": "x" * (MAX_STATE_RECORD_SIZE_BYTES + 1)},
                kind="storage",
            )

        assert store.get("storage:big") is None

    def test_record_format(self, tmp_path: Path) -> None:
        """On-disk records carry a format version and camelCase keys."""
        store = FileStateStore(tmp_path)
        store.put("cluster", {"name": "dev"}, kind="cluster", depends_on=["network"])

        data = json.loads((tmp_path / "cluster.json").read_text())

        assert data["version"] == 1
        assert data["nodeId"] == "cluster"
        assert data["dependsOn"] == ["network"]


class TestObservedState:
    """Tests for record serialization."""

    def test_round_trip(self) -> None:
        """to_dict and from_dict are inverse."""
        state = ObservedState(
            node_id="addon:dns",
            kind="addon",
            identity="arn:addon",
            attributes={"name": "dns"},
            outputs={"status": "ACTIVE"},
            depends_on=("cluster",),
            updated_at="2026-01-01T00:00:00+00:00",
        )

        assert ObservedState.from_dict(state.to_dict()) == state


class TestOpenStore:
    """Tests for open_store."""

    def test_memory_when_no_directory(self) -> None:
        assert isinstance(open_store(None), MemoryStateStore)

    def test_file_store_for_directory(self, tmp_path: Path) -> None:
        store = open_store(tmp_path / "state")

        assert isinstance(store, FileStateStore)
        assert store.state_dir.is_dir()
