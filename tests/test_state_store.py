"""Tests for the state store."""

import json

import pytest

from terrapin.declarations.ref import ResourceRef
from terrapin.state.manager import StateStore
from terrapin.state.models import ResourceState, ResourceStatus
from terrapin.utils.errors import LockConflict, StateError


def make_state(kind="network", name="main", resource_id="net-1", **kwargs):
    return ResourceState(kind=kind, name=name, id=resource_id, **kwargs)


class TestReadWrite:
    """Tests for get, put, delete and list."""

    def test_empty_store(self, store):
        """Test that a store without a file reads as empty."""
        assert store.get("network", "main") is None
        assert store.list() == []
        assert store.serial == 0
        assert not store.exists()

    def test_put_and_get(self, store):
        """Test that put persists a resource and bumps the serial."""
        store.put(make_state(outputs={"id": "net-1", "cidr": "10.0.0.0/16"}))

        recorded = store.get("network", "main")
        assert recorded.id == "net-1"
        assert recorded.outputs["cidr"] == "10.0.0.0/16"
        assert store.serial == 1

        data = json.loads(store.state_path.read_text())
        assert data["serial"] == 1
        assert data["project"] == "test"
        assert "network.main" in data["resources"]

    def test_get_returns_copy(self, store):
        """Test that mutating a returned state does not change the store."""
        store.put(make_state())

        store.get("network", "main").id = "changed"

        assert store.get("network", "main").id == "net-1"

    def test_list_sorted_by_key(self, store):
        """Test that list returns resources ordered by key."""
        store.put(make_state("vm", "b", "vm-1"))
        store.put(make_state("network", "a", "net-1"))

        assert [state.key for state in store.list()] == ["network.a", "vm.b"]

    def test_delete(self, store):
        """Test that delete removes the resource."""
        store.put(make_state())
        store.delete("network", "main")

        assert store.get("network", "main") is None
        assert store.serial == 2

    def test_reload_from_disk(self, store):
        """Test that a second store sees committed state."""
        store.put(make_state())

        other = StateStore(str(store.state_path))
        assert other.get("network", "main").id == "net-1"
        assert other.lineage == store.lineage

    def test_backup_keeps_previous_document(self, store):
        """Test that each commit keeps the previous document as a backup."""
        store.put(make_state(resource_id="net-1"))
        store.put(make_state(resource_id="net-2"))

        backup = json.loads(store.backup_path.read_text())
        assert backup["serial"] == 1
        assert backup["resources"]["network.main"]["id"] == "net-1"

    def test_corrupt_file(self, store):
        """Test that an unparseable state file is a StateError."""
        store.state_path.parent.mkdir(parents=True, exist_ok=True)
        store.state_path.write_text("{not json")

        with pytest.raises(StateError, match="Failed to parse state file"):
            store.load()


class TestTransactions:
    """Tests for batched commits."""

    def test_transaction_commits_once(self, store):
        """Test that staged writes land in a single commit."""
        store.put(make_state("network", "old", "net-0"))

        with store.transaction() as txn:
            txn.put(make_state("network", "a", "net-1"))
            txn.put(make_state("subnet", "b", "subnet-1"))
            txn.delete("network", "old")

        assert store.serial == 2
        assert [state.key for state in store.list()] == ["network.a", "subnet.b"]

    def test_failed_transaction_writes_nothing(self, store):
        """Test that an exception inside the block discards staged writes."""
        with pytest.raises(RuntimeError):
            with store.transaction() as txn:
                txn.put(make_state())
                raise RuntimeError("boom")

        assert store.get("network", "main") is None
        assert not store.exists()

    def test_initialize_pins_lineage(self, store):
        """Test that initialize writes an empty document exactly once."""
        document = store.initialize()
        lineage = document.lineage

        assert store.exists()
        assert store.serial == 1

        store.initialize()
        assert store.serial == 1
        assert StateStore(str(store.state_path)).lineage == lineage

    def test_no_temp_files_left(self, store):
        """Test that atomic writes leave only the state and backup files."""
        store.put(make_state(resource_id="net-1"))
        store.put(make_state(resource_id="net-2"))

        names = sorted(path.name for path in store.state_path.parent.iterdir())
        assert names == ["state.json", "state.json.backup"]


class TestConflicts:
    """Tests for the optimistic serial check and the process lock."""

    def test_serial_conflict(self, store):
        """Test that a commit fails when another writer got there first."""
        store.load()
        other = StateStore(str(store.state_path))
        other.put(make_state("network", "theirs", "net-9"))

        with pytest.raises(LockConflict) as exc_info:
            store.put(make_state())

        assert exc_info.value.exit_code == 6
        assert store.get("network", "main") is None

    def test_process_lock_conflict(self, store):
        """Test that a second lock holder fails immediately."""
        other = StateStore(str(store.state_path))
        store.lock()
        try:
            with pytest.raises(LockConflict, match="locked by another process"):
                other.lock()
        finally:
            store.unlock()

        other.lock()
        assert other.is_locked()
        other.unlock()

    def test_context_manager_releases_lock(self, store):
        """Test that leaving the with block releases the lock."""
        with store:
            assert store.is_locked()

        assert not store.is_locked()
        other = StateStore(str(store.state_path))
        with other:
            assert other.is_locked()


class TestManualReconciliation:
    """Tests for unknown status, resolve and forget."""

    def test_mark_unknown_keeps_previous_id(self, store):
        """Test that marking unknown keeps the recorded id and notes the reason."""
        store.put(make_state())

        store.mark_unknown(ResourceRef("network", "main"), "update", "timed out", base=store.get("network", "main"))

        recorded = store.get("network", "main")
        assert recorded.status == ResourceStatus.UNKNOWN
        assert recorded.id == "net-1"
        assert recorded.metadata["interrupted_operation"] == "update"
        assert recorded.metadata["reason"] == "timed out"

    def test_resolve(self, store):
        """Test that resolve records the operator-supplied id as applied."""
        ref = ResourceRef("vm", "app")
        store.mark_unknown(ref, "create", "lost response", token="tok-1")

        resolved = store.resolve(ref, "vm-42")

        assert resolved.status == ResourceStatus.APPLIED
        assert store.get("vm", "app").id == "vm-42"
        assert "reason" not in store.get("vm", "app").metadata

    def test_forget(self, store):
        """Test that forget drops the resource from state."""
        ref = ResourceRef("vm", "app")
        store.mark_unknown(ref, "create", "lost response")

        store.forget(ref)

        assert store.get("vm", "app") is None

    def test_resolve_missing_resource(self, store):
        """Test that resolving an unrecorded resource is a StateError."""
        with pytest.raises(StateError, match="not found in state"):
            store.resolve(ResourceRef("vm", "ghost"), "vm-1")
