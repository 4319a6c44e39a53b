"""Orchestration: dependency graph, planning, execution."""

from .dependency_graph import DependencyGraph
from .planner import BlockedResource, Operation, OperationVerb, Plan, Planner
from .executor import ApplyResult, ExecutionStatus, Executor, OperationResult
from .engine import Engine

__all__ = [
    "DependencyGraph",
    "Operation",
    "OperationVerb",
    "BlockedResource",
    "Plan",
    "Planner",
    "ApplyResult",
    "ExecutionStatus",
    "Executor",
    "OperationResult",
    "Engine",
]
