"""Engine that coordinates loading, planning, execution and drift detection."""

from typing import Callable, Dict, List, Optional, Sequence, Tuple

from terrapin.config.models import TerrapinConfig
from terrapin.declarations.loader import DeclarationLoader
from terrapin.declarations.models import DeclarationSet
from terrapin.declarations.schema import KindSchema
from terrapin.drift.models import DriftReport
from terrapin.drift.reconciler import DriftReconciler
from terrapin.orchestrator.executor import ApplyResult, ExecutionStatus, Executor, ProgressCallback
from terrapin.orchestrator.planner import Plan, Planner
from terrapin.providers import Provider, create_provider
from terrapin.state.manager import StateStore
from terrapin.utils.logging import get_logger
from terrapin.utils.retry import RetryPolicy

logger = get_logger(__name__)

ConfirmCallback = Callable[[Plan], bool]
DriftCallback = Callable[[DriftReport], None]


class Engine:
    """Coordinates the declaration loader, planner, executor and drift reconciler.

    apply and destroy hold the state file's process lock from planning until
    the last state write.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        max_workers: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        cancel_grace: float = 30.0,
        schemas: Optional[Dict[str, KindSchema]] = None
    ):
        """Initialize engine.

        Args:
            provider: Provider to create resources in
            store: State store
            max_workers: Maximum parallel operations
            retry_policy: Retry policy for provider calls
            timeout: Seconds after which an apply is cancelled
            cancel_grace: Seconds in-flight calls get after cancellation
            schemas: Kind schemas, defaulting to the provider's
        """
        self.provider = provider
        self.store = store
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.cancel_grace = cancel_grace
        self.loader = DeclarationLoader(schemas or provider.schemas())
        self.planner = Planner()
        self._executor: Optional[Executor] = None
        self._cancel_requested = False
        self.logger = get_logger(__name__)

    @classmethod
    def from_config(cls, config: TerrapinConfig) -> "Engine":
        """Build an engine from validated configuration."""
        provider = create_provider(
            config.provider.name,
            region=config.provider.region,
            profile=config.provider.profile,
            path=config.provider.path
        )
        store = StateStore(config.state.path, backup=config.state.backup, project=config.project)
        return cls(
            provider=provider,
            store=store,
            max_workers=config.executor.max_workers,
            retry_policy=config.retry.to_policy(),
            timeout=config.executor.timeout,
            cancel_grace=config.executor.cancel_grace
        )

    def load(self, paths: Sequence[str]) -> DeclarationSet:
        """Load and validate declarations."""
        return self.loader.load(paths)

    def plan(self, paths: Sequence[str], on_drift: Optional[DriftCallback] = None) -> Plan:
        """Compute a plan without changing anything.

        Args:
            paths: Declaration files or directories
            on_drift: When given, drift is detected before planning and the
                report passed to it

        Raises:
            ParseError, DeclarationReferenceError, DeclarationTypeError: Invalid declarations
            CycleError: If declarations contain a dependency cycle
        """
        declarations = self.load(paths)
        self.store.load()
        self._check_drift(on_drift)
        return self.planner.create_plan(declarations, self.store)

    def plan_destroy(self) -> Plan:
        """Compute a plan deleting every recorded resource."""
        self.store.load()
        return self.planner.create_destroy_plan(self.store)

    def apply(
        self,
        paths: Sequence[str],
        confirm: Optional[ConfirmCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
        on_drift: Optional[DriftCallback] = None
    ) -> Tuple[Plan, Optional[ApplyResult]]:
        """Plan and execute under the state lock.

        Args:
            paths: Declaration files or directories
            confirm: Called with the plan before anything changes; returning
                False aborts without executing
            progress_callback: Optional callback for progress updates
            on_drift: When given, drift is detected before planning and the
                report passed to it; the apply continues either way

        Returns:
            Tuple of (plan, result). The result is None when confirmation was declined.

        Raises:
            LockConflict: If another process holds the state lock
        """
        declarations = self.load(paths)

        with self.store:
            self.store.initialize()
            self._check_drift(on_drift)
            plan = self.planner.create_plan(declarations, self.store)
            return plan, self._execute(plan, confirm, progress_callback)

    def destroy(
        self,
        confirm: Optional[ConfirmCallback] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[Plan, Optional[ApplyResult]]:
        """Delete every recorded resource under the state lock.

        Returns:
            Tuple of (plan, result). The result is None when confirmation was declined.
        """
        with self.store:
            plan = self.planner.create_destroy_plan(self.store)
            return plan, self._execute(plan, confirm, progress_callback)

    def drift(self) -> DriftReport:
        """Compare recorded state with the provider. Read-only."""
        self.store.load()
        return self._reconciler().detect_drift()

    def _reconciler(self) -> DriftReconciler:
        return DriftReconciler(
            provider=self.provider,
            store=self.store,
            retry_policy=self.retry_policy,
            max_workers=self.max_workers
        )

    def _check_drift(self, on_drift: Optional[DriftCallback]) -> None:
        if on_drift is None:
            return
        report = self._reconciler().detect_drift()
        if report.has_drift():
            self.logger.warning(f"{report.drift_count} drift items found before planning")
        on_drift(report)

    def cancel(self) -> None:
        """Cancel the running apply or destroy. Safe to call from a signal handler."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    def _execute(
        self,
        plan: Plan,
        confirm: Optional[ConfirmCallback],
        progress_callback: Optional[ProgressCallback]
    ) -> Optional[ApplyResult]:
        if plan.is_empty():
            self.logger.info("Nothing to do")
            return ApplyResult(status=ExecutionStatus.SUCCESS)

        if confirm is not None and not confirm(plan):
            self.logger.info("Plan not confirmed, nothing changed")
            return None

        self._executor = Executor(
            provider=self.provider,
            store=self.store,
            max_workers=self.max_workers,
            retry_policy=self.retry_policy,
            timeout=self.timeout,
            cancel_grace=self.cancel_grace
        )
        if self._cancel_requested:
            self._executor.cancel()
        try:
            result = self._executor.execute(plan, progress_callback)
        finally:
            self._executor = None

        self._log_changes(result)
        return result

    def _log_changes(self, result: ApplyResult) -> None:
        changed: List[str] = [str(ref) for ref in result.changed()]
        if result.is_success():
            self.logger.info(f"Applied {len(changed)} changes")
        else:
            self.logger.error(
                f"Run ended with status {result.status.value}; "
                f"resources changed before it stopped: {', '.join(changed) or 'none'}"
            )
