"""Plan executor with parallel execution and progress tracking."""

import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from terrapin.declarations.ref import ResourceRef
from terrapin.declarations.values import from_plain
from terrapin.orchestrator.planner import Operation, OperationVerb, Plan
from terrapin.providers.base import Provider
from terrapin.state.manager import StateStore
from terrapin.state.models import ResourceState, utcnow
from terrapin.utils.errors import (
    EngineError,
    ErrorContext,
    IndeterminateProviderError,
    LockConflict,
    StateError,
    TransientProviderError,
)
from terrapin.utils.logging import LogContext, get_logger
from terrapin.utils.retry import RetryPolicy

logger = get_logger(__name__)

# Namespace for idempotency tokens
TOKEN_NAMESPACE = uuid.UUID('5d0c6a52-8f4e-4b8a-9a43-0b6f3c1e7d21')


class ExecutionStatus(Enum):
    """Status of execution."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class OperationResult:
    """Result of executing a single operation."""

    operation: Operation
    status: ExecutionStatus
    physical_id: Optional[str] = None
    error: Optional[EngineError] = None
    reason: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    @property
    def target(self) -> ResourceRef:
        return self.operation.target

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


@dataclass
class ApplyResult:
    """Complete execution result."""

    status: ExecutionStatus
    operations: List[OperationResult] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    error: Optional[EngineError] = None  # first fatal error

    def _with_status(self, status: ExecutionStatus) -> List[OperationResult]:
        return [result for result in self.operations if result.status == status]

    @property
    def applied(self) -> List[OperationResult]:
        """Operations whose changes reached the provider and the state file."""
        return self._with_status(ExecutionStatus.SUCCESS)

    @property
    def failed(self) -> List[OperationResult]:
        return self._with_status(ExecutionStatus.FAILED)

    @property
    def skipped(self) -> List[OperationResult]:
        return self._with_status(ExecutionStatus.SKIPPED)

    @property
    def cancelled(self) -> List[OperationResult]:
        return self._with_status(ExecutionStatus.CANCELLED)

    @property
    def unknown(self) -> List[OperationResult]:
        return self._with_status(ExecutionStatus.UNKNOWN)

    def changed(self) -> List[ResourceRef]:
        """Resources changed by this run."""
        return [result.target for result in self.applied]

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


# Type alias for progress callback
ProgressCallback = Callable[[Operation, ExecutionStatus, Optional[str]], None]


class _Flight:
    """Bookkeeping for one operation running on a worker thread."""

    def __init__(self, operation: Operation, token: Optional[str]):
        self.operation = operation
        self.token = token
        self.mutex = threading.Lock()
        self.abandoned = False


class Executor:
    """Executes plans against a provider with bounded parallelism.

    An operation is dispatched once every predecessor has succeeded and its
    state has been committed. A failed operation skips everything that
    transitively waits on it; operations that already succeeded stay
    applied.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        max_workers: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        cancel_grace: float = 30.0
    ):
        """Initialize executor.

        Args:
            provider: Provider to call
            store: State store to record results in
            max_workers: Maximum number of operations running at once
            retry_policy: Retry policy for provider calls
            timeout: Seconds after which the run is cancelled
            cancel_grace: Seconds in-flight calls may run after cancellation
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.provider = provider
        self.store = store
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.cancel_grace = cancel_grace
        self.logger = get_logger(__name__)
        self._cancel_event = threading.Event()
        self._wakeup: Future = Future()

    # Cancellation

    def cancel(self) -> None:
        """Stop dispatching operations. Safe to call from any thread."""
        if not self._cancel_event.is_set():
            self.logger.warning("Cancellation requested, no further operations will start")
        self._cancel_event.set()
        if not self._wakeup.done():
            self._wakeup.set_result(None)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def token_for(self, ref: ResourceRef) -> str:
        """Idempotency token for creating ``ref`` in this state lineage."""
        return str(uuid.uuid5(TOKEN_NAMESPACE, f"{self.store.lineage}/{ref.kind}/{ref.name}"))

    # Execution

    def execute(self, plan: Plan, progress_callback: Optional[ProgressCallback] = None) -> ApplyResult:
        """Execute a plan.

        Args:
            plan: Plan to execute
            progress_callback: Optional callback for progress updates

        Returns:
            ApplyResult listing the outcome of every operation

        Raises:
            LockConflict: If the state changed since the plan was computed
        """
        if plan.state_serial != self.store.serial or (plan.lineage and plan.lineage != self.store.lineage):
            raise LockConflict(
                f"Plan was computed against state serial {plan.state_serial}, "
                f"state is now at serial {self.store.serial}",
                suggestions=["Re-run plan against the current state"]
            )

        self.logger.info(f"Executing {len(plan.operations)} operations (max_workers={self.max_workers})...")

        start_time = utcnow()
        deadline = time.monotonic() + self.timeout if self.timeout else None
        planned = {operation.target for operation in plan.operations}
        results: Dict[ResourceRef, OperationResult] = {}
        pending: List[Operation] = list(plan.operations)
        running: Dict[Future, _Flight] = {}

        def record(result: OperationResult) -> None:
            results[result.target] = result
            if progress_callback:
                progress_callback(
                    result.operation,
                    result.status,
                    str(result.error) if result.error else result.reason
                )

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='terrapin')
        try:
            while pending or running:
                if self.cancelled:
                    for operation in pending:
                        record(OperationResult(
                            operation=operation,
                            status=ExecutionStatus.CANCELLED,
                            reason="run cancelled before dispatch"
                        ))
                    pending = []
                    self._drain(running, record)
                    break

                before = len(pending)
                pending = self._dispatch(pool, pending, planned, results, running, record, progress_callback)
                if not running:
                    if pending and len(pending) == before:
                        # Nothing can make progress
                        for operation in pending:
                            record(OperationResult(
                                operation=operation,
                                status=ExecutionStatus.SKIPPED,
                                reason="predecessors never completed"
                            ))
                        pending = []
                    continue

                remaining = None
                if deadline is not None:
                    remaining = max(0.0, deadline - time.monotonic())

                done, _ = wait(
                    list(running) + [self._wakeup],
                    timeout=remaining,
                    return_when=FIRST_COMPLETED
                )
                for future in done:
                    if future is self._wakeup:
                        continue
                    flight = running.pop(future)
                    record(self._collect(future, flight))

                if deadline is not None and time.monotonic() >= deadline and not self.cancelled:
                    self.logger.error(f"Apply timed out after {self.timeout}s")
                    self.cancel()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        end_time = utcnow()
        ordered = [results[operation.target] for operation in plan.operations if operation.target in results]
        result = ApplyResult(
            status=self._overall_status(ordered),
            operations=ordered,
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
            error=next((r.error for r in ordered if r.is_failed() and r.error), None)
        )

        self.logger.info(
            f"Execution finished with status {result.status.value}: "
            f"{len(result.applied)} applied, {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped, {len(result.cancelled)} cancelled, "
            f"{len(result.unknown)} unknown in {result.duration:.1f}s"
        )
        return result

    def _dispatch(
        self,
        pool: ThreadPoolExecutor,
        pending: List[Operation],
        planned: Set[ResourceRef],
        results: Dict[ResourceRef, OperationResult],
        running: Dict[Future, _Flight],
        record: Callable[[OperationResult], None],
        progress_callback: Optional[ProgressCallback]
    ) -> List[Operation]:
        """Submit ready operations, skip doomed ones, return the rest."""
        waiting = []
        for operation in pending:
            predecessors = [ref for ref in operation.predecessors if ref in planned]
            failed = [ref for ref in predecessors if ref in results and not results[ref].is_success()]
            if failed:
                record(OperationResult(
                    operation=operation,
                    status=ExecutionStatus.SKIPPED,
                    reason=f"{failed[0]} did not succeed"
                ))
                continue

            ready = all(ref in results for ref in predecessors)
            if ready and len(running) < self.max_workers:
                token = self.token_for(operation.target) if operation.verb == OperationVerb.CREATE else None
                flight = _Flight(operation, token)
                if progress_callback:
                    progress_callback(operation, ExecutionStatus.IN_PROGRESS, None)
                running[pool.submit(self._run, flight)] = flight
            else:
                waiting.append(operation)
        return waiting

    def _drain(self, running: Dict[Future, _Flight], record: Callable[[OperationResult], None]) -> None:
        """Give in-flight operations the grace period, then abandon them."""
        if not running:
            return

        self.logger.warning(
            f"Waiting up to {self.cancel_grace}s for {len(running)} in-flight operations"
        )
        done, not_done = wait(list(running), timeout=self.cancel_grace)
        for future in done:
            flight = running.pop(future)
            record(self._collect(future, flight))

        for future in not_done:
            flight = running.pop(future)
            record(self._abandon(flight, future))

    def _abandon(self, flight: _Flight, future: Future) -> OperationResult:
        """Cancel an operation that outlived the grace period."""
        operation = flight.operation
        with flight.mutex:
            if future.done():
                return self._collect(future, flight)

            flight.abandoned = True
            cancelled = False
            if flight.token:
                try:
                    cancelled = self.provider.cancel(flight.token)
                except Exception as e:
                    self.logger.error(f"Provider could not cancel {operation}: {e}")

            if cancelled:
                self.logger.warning(f"Cancelled in-flight {operation}")
                return OperationResult(
                    operation=operation,
                    status=ExecutionStatus.CANCELLED,
                    reason="cancelled at the provider after the grace period"
                )

            reason = f"{operation.verb.value} still running after {self.cancel_grace}s grace period"
            self.store.mark_unknown(operation.target, operation.verb.value, reason, base=operation.prior, token=flight.token)
            return OperationResult(
                operation=operation,
                status=ExecutionStatus.UNKNOWN,
                reason=reason
            )

    def _collect(self, future: Future, flight: _Flight) -> OperationResult:
        try:
            return future.result()
        except Exception as e:
            error = e if isinstance(e, EngineError) else EngineError(f"{flight.operation} failed: {e}", cause=e)
            self.logger.error(f"Unexpected failure in {flight.operation}: {e}")
            return OperationResult(operation=flight.operation, status=ExecutionStatus.FAILED, error=error)

    @staticmethod
    def _overall_status(results: List[OperationResult]) -> ExecutionStatus:
        statuses = {result.status for result in results}
        if ExecutionStatus.UNKNOWN in statuses:
            return ExecutionStatus.UNKNOWN
        if ExecutionStatus.FAILED in statuses:
            return ExecutionStatus.FAILED
        if ExecutionStatus.CANCELLED in statuses:
            return ExecutionStatus.CANCELLED
        return ExecutionStatus.SUCCESS

    # Worker side

    def _lookup(self, target: ResourceRef, attribute: str) -> Any:
        state = self.store.get_ref(target)
        if state is None or attribute not in state.outputs:
            raise StateError(
                f"Output '{attribute}' of {target} is not recorded",
                context=ErrorContext(resource_id=str(target))
            )
        return state.outputs[attribute]

    def _resolved_prior(self, prior: ResourceState) -> ResourceState:
        """Prior state with references in its attributes resolved."""
        attributes = {name: from_plain(value).resolve(self._lookup) for name, value in prior.attributes.items()}
        return prior.model_copy(update={'attributes': attributes})

    def _run(self, flight: _Flight) -> OperationResult:
        """Run one operation: provider call plus state commit."""
        operation = flight.operation
        ref = operation.target
        log = LogContext(self.logger, resource_id=ref.key, kind=ref.kind, operation=operation.verb.value)
        context = ErrorContext(resource_id=ref.key, kind=ref.kind, operation=operation.verb.value)
        start_time = utcnow()
        started = time.monotonic()

        def finish(status: ExecutionStatus, **kwargs) -> OperationResult:
            return OperationResult(
                operation=operation,
                status=status,
                start_time=start_time,
                end_time=utcnow(),
                duration=time.monotonic() - started,
                **kwargs
            )

        with self.store.resource_lock(ref):
            log.info(f"Starting {operation}")
            try:
                new_state = self._call_provider(flight, context)
            except IndeterminateProviderError as e:
                with flight.mutex:
                    if not flight.abandoned:
                        self.store.mark_unknown(ref, operation.verb.value, e.message, base=operation.prior, token=flight.token)
                log.error(f"Outcome of {operation} is unknown: {e.message}")
                return finish(ExecutionStatus.UNKNOWN, error=e, reason=e.message)
            except TransientProviderError as e:
                status = ExecutionStatus.CANCELLED if self.cancelled else ExecutionStatus.FAILED
                log.error(f"{operation} failed: {e.message}")
                return finish(status, error=e)
            except EngineError as e:
                log.error(f"{operation} failed: {e.message}")
                return finish(ExecutionStatus.FAILED, error=e)

            physical_id = new_state.id if new_state else operation.prior.id
            with flight.mutex:
                late = flight.abandoned
                if late:
                    log.warning(f"{operation} completed after being abandoned (id {physical_id})")
                try:
                    if new_state is None:
                        self.store.commit([], [ref], require_lock=late)
                    else:
                        self.store.commit([new_state], [], require_lock=late)
                except EngineError as e:
                    if late and isinstance(e, LockConflict):
                        log.warning(
                            f"Not recording the late result of {operation}: {e.message}. "
                            f"{ref} stays unknown until resolved"
                        )
                    else:
                        log.critical(
                            f"{operation} succeeded at the provider (id {physical_id}) "
                            f"but state could not be written: {e.message}"
                        )
                    return finish(ExecutionStatus.UNKNOWN, physical_id=physical_id, error=e, reason=e.message)

            log.info(f"Finished {operation} ({physical_id})", extra={'duration': time.monotonic() - started})
            return finish(ExecutionStatus.SUCCESS, physical_id=physical_id)

    def _call_provider(self, flight: _Flight, context: ErrorContext) -> Optional[ResourceState]:
        """Make the provider call for an operation.

        Returns:
            The state to record, or None when the resource was deleted
        """
        operation = flight.operation
        ref = operation.target
        call = self.retry_policy.call

        if operation.verb == OperationVerb.DELETE:
            call(self.provider.delete, operation.prior, context=context, cancel_event=self._cancel_event)
            return None

        declaration = operation.declaration
        attributes = declaration.resolve(self._lookup)
        now = utcnow().isoformat()

        if operation.verb == OperationVerb.CREATE:
            resource = call(
                self.provider.create, ref.kind, ref.name, attributes, flight.token,
                context=context, cancel_event=self._cancel_event
            )
            metadata = {'created_at': now, 'token': flight.token}
        else:
            prior = self._resolved_prior(operation.prior)
            resource = call(
                self.provider.update, prior, attributes,
                context=context, cancel_event=self._cancel_event
            )
            metadata = dict(operation.prior.metadata)
            metadata['updated_at'] = now

        return ResourceState(
            kind=ref.kind,
            name=ref.name,
            id=resource.id,
            attributes=declaration.canonical_attributes(),
            outputs=resource.outputs,
            dependencies=sorted(dep.key for dep in declaration.dependencies),
            metadata=metadata,
        )
