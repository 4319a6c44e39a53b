"""End-to-end tests for the engine facade."""

import pytest

from conftest import NS_DECLARATIONS, NSV_DECLARATIONS
from terrapin.config.models import TerrapinConfig
from terrapin.orchestrator.engine import Engine
from terrapin.orchestrator.executor import ExecutionStatus
from terrapin.orchestrator.planner import OperationVerb
from terrapin.providers.memory import InMemoryProvider
from terrapin.state.manager import StateStore
from terrapin.utils.errors import CycleError, FatalProviderError, LockConflict, ParseError

CYCLE_DECLARATIONS = """
resources:
  - {kind: network, name: a, depends_on: [network.b], attributes: {cidr: 10.0.0.0/16}}
  - {kind: network, name: b, depends_on: [network.a], attributes: {cidr: 10.1.0.0/16}}
"""


class TestApply:
    """Tests for Engine.apply."""

    def test_apply_then_plan_is_empty(self, engine, write_declarations, provider):
        """Test that a second apply of unchanged declarations does nothing."""
        path = write_declarations(NSV_DECLARATIONS)

        plan, result = engine.apply([path])
        assert plan.summary()["create"] == 3
        assert result.status == ExecutionStatus.SUCCESS

        second_plan, second_result = engine.apply([path])
        assert second_plan.is_empty()
        assert second_result.is_success()
        assert second_result.operations == []
        assert provider.count("create") == 3
        assert engine.plan([path]).is_empty()

    def test_apply_after_removing_vm_deletes_only_vm(self, engine, write_declarations, provider):
        """Test that dropping one declaration plans exactly one delete."""
        engine.apply([write_declarations(NSV_DECLARATIONS)])

        plan, result = engine.apply([write_declarations(NS_DECLARATIONS)])

        assert [(op.verb, str(op.target)) for op in plan.operations] == [(OperationVerb.DELETE, "vm.app")]
        assert result.is_success()
        assert provider.find("vm", "app") == []
        assert len(provider.find("subnet", "web")) == 1

    def test_cycle_makes_no_provider_calls(self, engine, write_declarations, provider, store):
        """Test that a cycle aborts before anything is created."""
        with pytest.raises(CycleError):
            engine.apply([write_declarations(CYCLE_DECLARATIONS)])

        assert provider.calls == []
        assert store.list() == []

    def test_parse_error_writes_no_state(self, engine, write_declarations, store):
        """Test that invalid declarations abort before the state file is created."""
        with pytest.raises(ParseError):
            engine.apply([write_declarations("resources: [oops")])

        assert not store.exists()

    def test_declined_confirmation(self, engine, write_declarations, provider):
        """Test that declining the plan leaves everything untouched."""
        plan, result = engine.apply([write_declarations(NSV_DECLARATIONS)], confirm=lambda plan: False)

        assert len(plan.operations) == 3
        assert result is None
        assert provider.calls == []

    def test_lock_held_elsewhere(self, engine, write_declarations, store, provider):
        """Test that apply fails fast when another process holds the lock."""
        other = StateStore(str(store.state_path))
        other.lock()
        try:
            with pytest.raises(LockConflict):
                engine.apply([write_declarations(NSV_DECLARATIONS)])
        finally:
            other.unlock()

        assert provider.calls == []

    def test_failed_apply_reports_changes(self, engine, write_declarations, provider):
        """Test that a failed apply lists the resources changed before the failure."""
        provider.inject_fault(FatalProviderError("quota"), verb="create", kind="vm")

        _, result = engine.apply([write_declarations(NSV_DECLARATIONS)])

        assert result.status == ExecutionStatus.FAILED
        assert [str(ref) for ref in result.changed()] == ["network.main", "subnet.web"]

        # The retry picks up where the failed run stopped
        plan, retry = engine.apply([write_declarations(NSV_DECLARATIONS)])
        assert [str(op.target) for op in plan.operations] == ["vm.app"]
        assert retry.is_success()


class TestDestroy:
    """Tests for Engine.destroy."""

    def test_destroy_deletes_dependents_first(self, engine, write_declarations, provider, store):
        """Test that destroy removes everything in reverse dependency order."""
        engine.apply([write_declarations(NSV_DECLARATIONS)])

        plan, result = engine.destroy()

        assert result.is_success()
        deletes = [key for verb, key in provider.calls if verb == "delete"]
        assert deletes == ["vm.app", "subnet.web", "network.main"]
        assert provider.resources == {}
        assert store.list() == []

    def test_destroy_empty_state(self, engine):
        """Test that destroying nothing succeeds with an empty plan."""
        plan, result = engine.destroy()

        assert plan.is_empty()
        assert result.is_success()


class TestFromConfig:
    """Tests for building an engine from configuration."""

    def test_memory_provider_persists_between_engines(self, tmp_path, write_declarations):
        """Test that two engines over the same files share provider and state."""
        config = TerrapinConfig.model_validate({
            "project": "demo",
            "state": {"path": str(tmp_path / "state.json")},
            "provider": {"name": "memory", "path": str(tmp_path / "cloud.json")},
            "retry": {"max_attempts": 2, "base_delay": 0.0},
        })
        path = write_declarations(NS_DECLARATIONS)

        first = Engine.from_config(config)
        assert isinstance(first.provider, InMemoryProvider)
        first.apply([path])

        second = Engine.from_config(config)
        assert second.plan([path]).is_empty()
        assert len(second.provider.find("network", "main")) == 1
        assert second.store.document.project == "demo"


class TestDrift:
    """Tests for Engine.drift."""

    def test_drift_after_out_of_band_change(self, engine, write_declarations, provider, store):
        """Test that drift reports a resource changed behind the engine's back."""
        engine.apply([write_declarations(NSV_DECLARATIONS)])
        provider.modify(store.get("vm", "app").id, state="stopped")

        report = engine.drift()

        assert report.drift_count == 1
        assert report.drift_items[0].resource == "vm.app"

    def test_drift_checked_before_planning(self, engine, write_declarations, provider, store):
        """Test that plan reports drift first and still plans from recorded state."""
        path = write_declarations(NSV_DECLARATIONS)
        engine.apply([path])
        provider.remove(store.get("vm", "app").id)
        reports = []

        plan = engine.plan([path], on_drift=reports.append)

        assert [item.resource for item in reports[0].drift_items] == ["vm.app"]
        assert plan.is_empty()

    def test_apply_continues_after_drift_warning(self, engine, write_declarations, provider, store):
        """Test that apply detects drift under the lock, then applies the plan."""
        engine.apply([write_declarations(NS_DECLARATIONS)])
        provider.modify_attributes(store.get("network", "main").id, dns_support=False)
        reports = []

        plan, result = engine.apply([write_declarations(NSV_DECLARATIONS)], on_drift=reports.append)

        assert reports[0].get("network.main")[0].differences == [
            "attribute dns_support: applied True, found False"
        ]
        assert [str(op.target) for op in plan.operations] == ["vm.app"]
        assert result.is_success()

    def test_drift_not_checked_by_default(self, engine, write_declarations, provider):
        """Test that planning reads nothing from the provider unless asked to."""
        path = write_declarations(NSV_DECLARATIONS)
        engine.apply([path])
        provider.calls.clear()

        engine.plan([path])

        assert provider.count("read") == 0
