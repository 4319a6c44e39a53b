"""Planner for creating apply and destroy plans."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from terrapin.declarations.models import DeclarationSet, ResourceDeclaration
from terrapin.declarations.ref import ResourceRef
from terrapin.orchestrator.dependency_graph import DependencyGraph
from terrapin.state.manager import StateStore
from terrapin.state.models import ResourceState
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)


class OperationVerb(str, Enum):
    """What an operation does to its target."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """One provider operation in a plan."""

    verb: OperationVerb
    target: ResourceRef
    dependency_rank: int = 0
    predecessors: Tuple[ResourceRef, ...] = ()
    declaration: Optional[ResourceDeclaration] = None  # desired state for create/update
    prior: Optional[ResourceState] = None  # recorded state for update/delete
    changes: Tuple[Tuple[str, Any, Any], ...] = ()  # (attribute, old, new)

    @property
    def key(self) -> str:
        return self.target.key

    def __str__(self) -> str:
        return f"{self.verb.value} {self.target}"


@dataclass
class BlockedResource:
    """A resource left out of the plan."""

    target: ResourceRef
    reason: str


@dataclass
class Plan:
    """Ordered operations computed against one state serial."""

    operations: List[Operation] = field(default_factory=list)
    blocked: List[BlockedResource] = field(default_factory=list)
    state_serial: int = 0
    lineage: Optional[str] = None
    destroy: bool = False

    def get(self, ref: ResourceRef) -> Optional[Operation]:
        for operation in self.operations:
            if operation.target == ref:
                return operation
        return None

    def is_empty(self) -> bool:
        return not self.operations

    def summary(self) -> Dict[str, int]:
        """Operation counts per verb, plus blocked resources."""
        summary = {verb.value: 0 for verb in OperationVerb}
        for operation in self.operations:
            summary[operation.verb.value] += 1
        summary['blocked'] = len(self.blocked)
        return summary


class Planner:
    """Diffs declarations against recorded state."""

    def __init__(self):
        """Initialize planner."""
        self.logger = get_logger(__name__)

    def create_plan(self, declarations: DeclarationSet, store: StateStore) -> Plan:
        """Create a plan that brings recorded state in line with declarations.

        Resources whose last operation was interrupted are left out, as is
        every operation that would have to wait on one of them.

        Args:
            declarations: Validated declarations
            store: State store to diff against

        Returns:
            Plan with deletes first, then creates and updates

        Raises:
            CycleError: If the declarations contain a dependency cycle
        """
        self.logger.info("Creating plan...")

        declared_graph = DependencyGraph.from_declarations(declarations)
        order = declared_graph.topological_sort()
        ranks = declared_graph.ranks()

        document = store.document
        stored = {state.ref: state for state in document.all_resources()}
        blocked = self._unknown(stored)

        # Creates and updates in forward dependency order
        forward: Dict[ResourceRef, Tuple[OperationVerb, Optional[ResourceState], tuple]] = {}
        for ref in order:
            if ref in blocked:
                continue
            declaration = declarations.get(ref)
            current = stored.get(ref)
            if current is None:
                verb, changes = OperationVerb.CREATE, ()
            else:
                verb, changes = OperationVerb.UPDATE, self._diff(current, declaration)
                if not changes:
                    continue
            waiting = sorted(dep for dep in declared_graph.get_dependencies(ref) if dep in blocked)
            if waiting:
                blocked[ref] = BlockedResource(ref, f"depends on blocked {waiting[0]}")
                continue
            forward[ref] = (verb, current, changes)

        # Deletes of resources no longer declared, dependents first
        stored_graph = DependencyGraph.from_state(stored.values())
        reverse_ranks = stored_graph.reverse_ranks()
        removed = {ref for ref in stored if ref not in declarations and ref not in blocked}

        deletes: List[Operation] = []
        for ref in stored_graph.get_destruction_order():
            if ref not in removed:
                continue
            dependents = stored_graph.get_dependents(ref)
            waiting = sorted(d for d in dependents if d in blocked)
            if waiting:
                blocked[ref] = BlockedResource(ref, f"still used by blocked {waiting[0]}")
                removed.discard(ref)
                continue
            # Wait for every planned operation on a stored dependent
            predecessors = [d for d in dependents if d in removed or d in forward]
            deletes.append(Operation(
                verb=OperationVerb.DELETE,
                target=ref,
                dependency_rank=reverse_ranks[ref],
                predecessors=tuple(sorted(predecessors)),
                prior=stored[ref],
            ))

        operations = list(deletes)
        for ref, (verb, current, changes) in forward.items():
            predecessors = [dep for dep in declared_graph.get_dependencies(ref) if dep in forward]
            operations.append(Operation(
                verb=verb,
                target=ref,
                dependency_rank=ranks[ref],
                predecessors=tuple(sorted(predecessors)),
                declaration=declarations.get(ref),
                prior=current,
                changes=changes,
            ))

        plan = Plan(
            operations=operations,
            blocked=list(blocked.values()),
            state_serial=document.serial,
            lineage=document.lineage,
        )
        self._log_summary(plan)
        return plan

    def create_destroy_plan(self, store: StateStore) -> Plan:
        """Create a plan deleting every recorded resource.

        Args:
            store: State store

        Returns:
            Plan of deletes in reverse dependency order
        """
        self.logger.info("Creating destroy plan...")

        document = store.document
        stored = {state.ref: state for state in document.all_resources()}
        graph = DependencyGraph.from_state(stored.values())
        reverse_ranks = graph.reverse_ranks()
        blocked = self._unknown(stored)

        operations = []
        for ref in graph.get_destruction_order():
            if ref in blocked:
                continue
            dependents = graph.get_dependents(ref)
            waiting = sorted(d for d in dependents if d in blocked)
            if waiting:
                blocked[ref] = BlockedResource(ref, f"still used by blocked {waiting[0]}")
                continue
            operations.append(Operation(
                verb=OperationVerb.DELETE,
                target=ref,
                dependency_rank=reverse_ranks[ref],
                predecessors=tuple(sorted(dependents)),
                prior=stored[ref],
            ))

        plan = Plan(
            operations=operations,
            blocked=list(blocked.values()),
            state_serial=document.serial,
            lineage=document.lineage,
            destroy=True,
        )
        self._log_summary(plan)
        return plan

    def _unknown(self, stored: Dict[ResourceRef, ResourceState]) -> Dict[ResourceRef, BlockedResource]:
        blocked = {}
        for ref in sorted(stored):
            if stored[ref].is_unknown():
                self.logger.warning(
                    f"Not planning {ref}: outcome of an interrupted operation is unknown. "
                    f"Run 'terrapin state resolve' or 'terrapin state forget'"
                )
                blocked[ref] = BlockedResource(ref, "outcome of an interrupted operation is unknown")
        return blocked

    @staticmethod
    def _diff(current: ResourceState, declaration: ResourceDeclaration) -> Tuple[Tuple[str, Any, Any], ...]:
        """Attribute and dependency differences between state and declaration."""
        desired = declaration.canonical_attributes()
        changes = []
        for name in sorted(set(desired) | set(current.attributes)):
            old = current.attributes.get(name)
            new = desired.get(name)
            if old != new:
                changes.append((name, old, new))

        desired_deps = sorted(ref.key for ref in declaration.dependencies)
        if sorted(current.dependencies) != desired_deps:
            changes.append(('depends_on', sorted(current.dependencies), desired_deps))
        return tuple(changes)

    def _log_summary(self, plan: Plan) -> None:
        summary = plan.summary()
        self.logger.info(
            f"Plan created: {summary['create']} create, {summary['update']} update, "
            f"{summary['delete']} delete, {summary['blocked']} blocked"
        )
