"""Tests for plan execution.

The in-memory provider's fault injection and delays drive the failure,
retry and cancellation paths.
"""

import threading
import time

import pytest

from conftest import NS_DECLARATIONS, NSV_DECLARATIONS, keys
from terrapin.declarations.ref import ResourceRef
from terrapin.orchestrator.executor import ExecutionStatus, Executor
from terrapin.orchestrator.planner import Planner
from terrapin.providers.memory import InMemoryProvider
from terrapin.state.manager import StateStore
from terrapin.state.models import ResourceState, ResourceStatus
from terrapin.utils.errors import (
    FatalProviderError,
    IndeterminateProviderError,
    LockConflict,
    TransientProviderError,
)

NETWORK = ResourceRef("network", "main")
SUBNET = ResourceRef("subnet", "web")
VM = ResourceRef("vm", "app")


def statuses(result):
    return {str(r.target): r.status for r in result.operations}


@pytest.fixture
def make_plan(loader, store):
    """Factory planning declarations text against the store."""
    def plan(text=NSV_DECLARATIONS):
        return Planner().create_plan(loader.loads(text), store)
    return plan


@pytest.fixture
def executor(provider, store, fast_retry):
    """Executor over the in-memory provider."""
    return Executor(provider, store, max_workers=4, retry_policy=fast_retry, cancel_grace=1.0)


class LostResponseProvider(InMemoryProvider):
    """Creates the resource, then fails the first create as if the response was lost."""

    def __init__(self):
        super().__init__()
        self.lost = 0

    def create(self, kind, name, attributes, token):
        resource = super().create(kind, name, attributes, token)
        if self.lost == 0:
            self.lost += 1
            raise TransientProviderError("connection reset after the request was sent")
        return resource


class TrackingProvider(InMemoryProvider):
    """Records how many creates run at once."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0
        self.guard = threading.Lock()

    def create(self, kind, name, attributes, token):
        with self.guard:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.05)
            return super().create(kind, name, attributes, token)
        finally:
            with self.guard:
                self.active -= 1


class TestSuccessfulExecution:
    """Tests for plans that apply cleanly."""

    def test_applies_in_order_and_records_state(self, executor, make_plan, provider, store):
        """Test that the N/S/V plan creates all resources with references resolved."""
        result = executor.execute(make_plan())

        assert result.status == ExecutionStatus.SUCCESS
        assert keys(result.changed()) == ["network.main", "subnet.web", "vm.app"]
        assert [call for call in provider.calls] == [
            ("create", "network.main"),
            ("create", "subnet.web"),
            ("create", "vm.app"),
        ]

        network = store.get("network", "main")
        subnet = store.get("subnet", "web")
        vm = store.get("vm", "app")
        assert provider.resources[subnet.id]["attributes"]["network_id"] == network.id
        assert subnet.attributes["network_id"] == "${network.main.id}"
        assert subnet.dependencies == ["network.main"]
        assert vm.outputs["private_ip"] == "10.0.1.4"
        assert vm.metadata["token"] == executor.token_for(VM)

    def test_dependent_sees_committed_state(self, loader, store, fast_retry):
        """Test that a dependent is dispatched only after its dependency is recorded."""
        seen = {}

        class CheckingProvider(InMemoryProvider):
            def create(self, kind, name, attributes, token):
                if kind == "subnet":
                    seen["network"] = store.get("network", "main")
                return super().create(kind, name, attributes, token)

        provider = CheckingProvider()
        plan = Planner().create_plan(loader.loads(NS_DECLARATIONS), store)

        Executor(provider, store, retry_policy=fast_retry).execute(plan)

        assert seen["network"] is not None
        assert seen["network"].id == provider.find("network", "main")[0]["outputs"]["id"]

    def test_progress_callback(self, executor, make_plan):
        """Test that every operation reports start and completion."""
        events = []

        executor.execute(make_plan(NS_DECLARATIONS), lambda op, status, detail: events.append((str(op), status)))

        assert events == [
            ("create network.main", ExecutionStatus.IN_PROGRESS),
            ("create network.main", ExecutionStatus.SUCCESS),
            ("create subnet.web", ExecutionStatus.IN_PROGRESS),
            ("create subnet.web", ExecutionStatus.SUCCESS),
        ]

    def test_parallelism_bounded_by_max_workers(self, loader, store, fast_retry):
        """Test that independent operations run concurrently up to max_workers."""
        provider = TrackingProvider()
        declarations = loader.loads("""
resources:
  - {kind: network, name: a, attributes: {cidr: 10.0.0.0/16}}
  - {kind: network, name: b, attributes: {cidr: 10.1.0.0/16}}
  - {kind: network, name: c, attributes: {cidr: 10.2.0.0/16}}
  - {kind: network, name: d, attributes: {cidr: 10.3.0.0/16}}
""")
        plan = Planner().create_plan(declarations, store)

        result = Executor(provider, store, max_workers=2, retry_policy=fast_retry).execute(plan)

        assert result.is_success()
        assert provider.peak == 2
        assert len(store.list()) == 4

    def test_delete_removes_resource_and_state(self, executor, make_plan, provider, store, fast_retry):
        """Test that removing the vm declaration deletes it at the provider and in state."""
        executor.execute(make_plan())
        vm_id = store.get("vm", "app").id

        result = Executor(provider, store, retry_policy=fast_retry).execute(make_plan(NS_DECLARATIONS))

        assert statuses(result) == {"vm.app": ExecutionStatus.SUCCESS}
        assert vm_id not in provider.resources
        assert store.get("vm", "app") is None

    def test_update_in_place(self, executor, make_plan, provider, store, fast_retry):
        """Test that a changed attribute updates the resource and keeps its id."""
        executor.execute(make_plan())
        vm_id = store.get("vm", "app").id

        result = Executor(provider, store, retry_policy=fast_retry).execute(
            make_plan(NSV_DECLARATIONS.replace("size: small", "size: large"))
        )

        assert statuses(result) == {"vm.app": ExecutionStatus.SUCCESS}
        assert store.get("vm", "app").id == vm_id
        assert store.get("vm", "app").attributes["size"] == "large"
        assert provider.resources[vm_id]["attributes"]["size"] == "large"
        assert "updated_at" in store.get("vm", "app").metadata


class TestFailures:
    """Tests for fatal, transient and indeterminate provider errors."""

    def test_fatal_error_leaves_applied_siblings(self, executor, make_plan, provider, store):
        """Test that a fatal error on the vm keeps the network and subnet."""
        provider.inject_fault(FatalProviderError("instance quota exceeded"), verb="create", kind="vm")

        result = executor.execute(make_plan())

        assert result.status == ExecutionStatus.FAILED
        assert statuses(result) == {
            "network.main": ExecutionStatus.SUCCESS,
            "subnet.web": ExecutionStatus.SUCCESS,
            "vm.app": ExecutionStatus.FAILED,
        }
        assert isinstance(result.error, FatalProviderError)
        assert store.get("network", "main") is not None
        assert store.get("subnet", "web") is not None
        assert store.get("vm", "app") is None
        assert provider.count("create", "vm") == 1

    def test_fatal_error_skips_successors(self, executor, make_plan, provider, store):
        """Test that everything waiting on a failed operation is skipped."""
        provider.inject_fault(FatalProviderError("invalid cidr"), verb="create", kind="subnet")

        result = executor.execute(make_plan())

        assert statuses(result)["vm.app"] == ExecutionStatus.SKIPPED
        assert keys(result.changed()) == ["network.main"]
        assert provider.count("create", "vm") == 0

    def test_transient_error_retried(self, executor, make_plan, provider, store):
        """Test that transient errors are retried until the call succeeds."""
        provider.inject_fault(TransientProviderError("throttled"), verb="create", kind="network", times=2)

        result = executor.execute(make_plan(NS_DECLARATIONS))

        assert result.is_success()
        assert provider.count("create", "network") == 3
        assert len(provider.find("network", "main")) == 1

    def test_transient_error_exhausted(self, executor, make_plan, provider):
        """Test that a persistent transient error fails after max_attempts."""
        provider.inject_fault(TransientProviderError("throttled"), verb="create", kind="network", times=None)

        result = executor.execute(make_plan(NS_DECLARATIONS))

        assert statuses(result) == {
            "network.main": ExecutionStatus.FAILED,
            "subnet.web": ExecutionStatus.SKIPPED,
        }
        assert provider.count("create", "network") == 3

    def test_retried_create_is_at_most_once(self, loader, store, fast_retry):
        """Test that a create retried after a lost response yields one resource."""
        provider = LostResponseProvider()
        plan = Planner().create_plan(loader.loads(NS_DECLARATIONS), store)

        result = Executor(provider, store, retry_policy=fast_retry).execute(plan)

        assert result.is_success()
        created = provider.find("network", "main")
        assert len(created) == 1
        assert store.get("network", "main").id == created[0]["outputs"]["id"]

    def test_tokens_stable_per_lineage(self, provider, store, tmp_path):
        """Test that tokens depend on lineage, kind and name only."""
        store.initialize()
        first = Executor(provider, store).token_for(VM)
        second = Executor(provider, StateStore(str(store.state_path))).token_for(VM)
        other = Executor(provider, StateStore(str(tmp_path / "other.json"))).token_for(VM)

        assert first == second
        assert first != other
        assert first != Executor(provider, store).token_for(SUBNET)

    def test_indeterminate_error_records_unknown(self, executor, make_plan, provider, store):
        """Test that an indeterminate outcome is recorded unknown and not retried."""
        provider.inject_fault(IndeterminateProviderError("read timed out"), verb="create", kind="subnet")

        result = executor.execute(make_plan())

        assert result.status == ExecutionStatus.UNKNOWN
        assert statuses(result)["subnet.web"] == ExecutionStatus.UNKNOWN
        assert statuses(result)["vm.app"] == ExecutionStatus.SKIPPED
        assert provider.count("create", "subnet") == 1

        recorded = store.get("subnet", "web")
        assert recorded.status == ResourceStatus.UNKNOWN
        assert recorded.metadata["token"] == executor.token_for(SUBNET)

    def test_stale_plan_rejected(self, executor, make_plan, store):
        """Test that a plan computed against an older serial is refused."""
        plan = make_plan()
        store.put(ResourceState(kind="network", name="other", id="net-9"))

        with pytest.raises(LockConflict):
            executor.execute(plan)


class TestCancellation:
    """Tests for cancel() and timeouts."""

    def test_cancel_before_start(self, executor, make_plan, provider):
        """Test that a cancelled executor dispatches nothing."""
        executor.cancel()

        result = executor.execute(make_plan())

        assert result.status == ExecutionStatus.CANCELLED
        assert set(statuses(result).values()) == {ExecutionStatus.CANCELLED}
        assert provider.calls == []

    def test_timeout_cancels_create_at_provider(self, make_plan, provider, store, fast_retry):
        """Test that a create outliving the grace period is cancelled through its token."""
        provider.set_delay(5.0, verb="create")
        executor = Executor(provider, store, retry_policy=fast_retry, timeout=0.2, cancel_grace=0.1)

        started = time.monotonic()
        result = executor.execute(make_plan())

        assert time.monotonic() - started < 3.0
        assert result.status == ExecutionStatus.CANCELLED
        assert statuses(result) == {
            "network.main": ExecutionStatus.CANCELLED,
            "subnet.web": ExecutionStatus.CANCELLED,
            "vm.app": ExecutionStatus.CANCELLED,
        }
        assert store.get("network", "main") is None
        assert provider.find("network", "main") == []

    def test_timeout_without_provider_cancel_records_unknown(self, executor, make_plan, provider, store, fast_retry):
        """Test that an update outliving the grace period is recorded unknown."""
        executor.execute(make_plan(NS_DECLARATIONS))
        network_id = store.get("network", "main").id

        provider.set_delay(1.0, verb="update")
        tagged = NS_DECLARATIONS.replace(
            "      cidr: 10.0.0.0/16\n",
            "      cidr: 10.0.0.0/16\n      tags: {env: prod}\n"
        )
        slow = Executor(provider, store, retry_policy=fast_retry, timeout=0.1, cancel_grace=0.1)

        result = slow.execute(make_plan(tagged))

        assert result.status == ExecutionStatus.UNKNOWN
        assert statuses(result)["network.main"] == ExecutionStatus.UNKNOWN
        recorded = store.get("network", "main")
        assert recorded.status == ResourceStatus.UNKNOWN
        assert recorded.id == network_id
        assert recorded.metadata["interrupted_operation"] == "update"


class LateCommitStore(StateStore):
    """Signals once a commit that needs the process lock has been attempted."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.late_commit = threading.Event()

    def commit(self, puts, deletes, require_lock=False):
        try:
            return super().commit(puts, deletes, require_lock=require_lock)
        finally:
            if require_lock:
                self.late_commit.set()


class TestLateCompletion:
    """Tests for abandoned operations that finish after the run ended."""

    TAGGED = NS_DECLARATIONS.replace(
        "      cidr: 10.0.0.0/16\n",
        "      cidr: 10.0.0.0/16\n      tags: {env: prod}\n"
    )

    @pytest.fixture
    def late_store(self, tmp_path):
        """State store reporting late commits."""
        return LateCommitStore(str(tmp_path / "late" / "state.json"))

    def abandon_update(self, provider, store, loader, fast_retry):
        """Apply network and subnet, then time out a slow tag update on the network."""
        Executor(provider, store, retry_policy=fast_retry).execute(
            Planner().create_plan(loader.loads(NS_DECLARATIONS), store)
        )
        provider.set_delay(0.5, verb="update")
        slow = Executor(provider, store, retry_policy=fast_retry, timeout=0.1, cancel_grace=0.1)

        result = slow.execute(Planner().create_plan(loader.loads(self.TAGGED), store))

        assert statuses(result)["network.main"] == ExecutionStatus.UNKNOWN
        assert store.late_commit.wait(5.0)

    def test_late_result_not_recorded_after_lock_released(self, late_store, provider, loader, fast_retry):
        """Test that a late completion leaves the unknown record alone without the lock."""
        self.abandon_update(provider, late_store, loader, fast_retry)

        assert provider.find("network", "main")[0]["attributes"]["tags"] == {"env": "prod"}
        on_disk = StateStore(str(late_store.state_path)).get("network", "main")
        assert on_disk.status == ResourceStatus.UNKNOWN
        assert on_disk.metadata["interrupted_operation"] == "update"

    def test_late_result_recorded_while_lock_held(self, late_store, provider, loader, fast_retry):
        """Test that a late completion clears unknown while this process still holds the lock."""
        with late_store:
            self.abandon_update(provider, late_store, loader, fast_retry)

        recorded = StateStore(str(late_store.state_path)).get("network", "main")
        assert recorded.status == ResourceStatus.APPLIED
        assert recorded.attributes["tags"] == {"env": "prod"}
