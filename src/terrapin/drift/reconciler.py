"""Drift detection: compare recorded state with what the provider reports."""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from terrapin.declarations.ref import ResourceRef
from terrapin.declarations.values import from_plain
from terrapin.drift.models import DriftItem, DriftReport, DriftSeverity, DriftType
from terrapin.providers.base import Provider, ProviderResource
from terrapin.state.manager import StateStore
from terrapin.state.models import ResourceState
from terrapin.utils.errors import EngineError, ErrorContext, StateError
from terrapin.utils.logging import get_logger
from terrapin.utils.retry import RetryPolicy

logger = get_logger(__name__)

# Kinds whose disappearance takes everything built on them down
FOUNDATION_KINDS = {'network', 'subnet'}


class DriftReconciler:
    """Reads every recorded resource back from the provider.

    Detection never writes to the state file or the provider.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = 4
    ):
        """Initialize drift reconciler.

        Args:
            provider: Provider to read from
            store: State store with recorded resources
            retry_policy: Retry policy for provider reads
            max_workers: Maximum number of concurrent reads
        """
        self.provider = provider
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers
        self.logger = get_logger(__name__)

    def detect_drift(self) -> DriftReport:
        """Detect drift for every recorded resource.

        Returns:
            DriftReport with missing, modified, orphaned and error items
        """
        self.logger.info("Starting drift detection...")

        resources = self.store.list()
        checked = [state for state in resources if not state.is_unknown()]
        skipped = [state.key for state in resources if state.is_unknown()]
        for key in skipped:
            self.logger.warning(f"Skipping {key}: status is unknown")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='terrapin-drift') as pool:
            observations = list(pool.map(self._read, checked))

        drift_items: List[DriftItem] = []
        missing = set()
        for state, (actual, error) in zip(checked, observations):
            if error is not None:
                drift_items.append(DriftItem(
                    resource=state.key,
                    kind=state.kind,
                    drift_type=DriftType.ERROR,
                    severity=DriftSeverity.MEDIUM,
                    expected=state.outputs,
                    differences=[f"Read failed: {error.message}"],
                    physical_id=state.id
                ))
            elif actual is None:
                missing.add(state.key)
                drift_items.append(DriftItem(
                    resource=state.key,
                    kind=state.kind,
                    drift_type=DriftType.MISSING,
                    severity=self._assess_severity(state, DriftType.MISSING),
                    expected=state.outputs,
                    differences=["Resource no longer exists at the provider"],
                    physical_id=state.id
                ))
            else:
                differences = self._find_differences(state.outputs, actual.outputs)
                differences.extend(self._attribute_differences(state, actual))
                if differences:
                    drift_items.append(DriftItem(
                        resource=state.key,
                        kind=state.kind,
                        drift_type=DriftType.MODIFIED,
                        severity=self._assess_severity(state, DriftType.MODIFIED),
                        expected=state.outputs,
                        actual=actual.outputs,
                        differences=differences,
                        physical_id=state.id
                    ))

        # Resources still present whose dependencies are gone
        for state in checked:
            if state.key in missing:
                continue
            gone = [dep for dep in state.dependencies if dep in missing]
            if gone:
                drift_items.append(DriftItem(
                    resource=state.key,
                    kind=state.kind,
                    drift_type=DriftType.ORPHANED,
                    severity=DriftSeverity.HIGH,
                    expected=state.outputs,
                    differences=[f"Dependency {dep} is missing" for dep in gone],
                    physical_id=state.id
                ))

        report = DriftReport(
            drift_items=drift_items,
            total_resources_checked=len(checked),
            skipped=skipped
        )
        if report.has_drift():
            self.logger.info(f"Detected {report.drift_count} drift items in {len(checked)} resources")
        else:
            self.logger.info("No drift detected")
        return report

    def _read(self, state: ResourceState) -> Tuple[Optional[ProviderResource], Optional[EngineError]]:
        context = ErrorContext(resource_id=state.key, kind=state.kind, operation='read')
        try:
            return self.retry_policy.call(self.provider.read, state, context=context), None
        except EngineError as e:
            self.logger.error(f"Could not read {state.key}: {e.message}")
            return None, e

    def _lookup(self, target: ResourceRef, attribute: str) -> Any:
        recorded = self.store.get_ref(target)
        if recorded is None or attribute not in recorded.outputs:
            raise StateError(f"Output '{attribute}' of {target} is not recorded")
        return recorded.outputs[attribute]

    def _applied_attributes(self, state: ResourceState) -> Dict[str, Any]:
        """Recorded attributes with references resolved, in the provider's form."""
        resolved = {}
        for name, value in state.attributes.items():
            try:
                resolved[name] = from_plain(value).resolve(self._lookup)
            except StateError as e:
                self.logger.debug(f"Not comparing {state.key} {name}: {e.message}")
        return self.provider.normalize_attributes(state.kind, resolved)

    def _attribute_differences(self, state: ResourceState, actual: ProviderResource) -> List[str]:
        """Describe declared attributes whose live value differs from the applied one.

        Only attributes both recorded and reported by the provider are compared.
        """
        applied = self._applied_attributes(state)
        differences = []
        for key in sorted(set(applied) & set(actual.attributes)):
            if applied[key] != actual.attributes[key]:
                differences.append(
                    f"attribute {key}: applied {applied[key]!r}, found {actual.attributes[key]!r}"
                )
        return differences

    @staticmethod
    def _find_differences(expected: Dict[str, Any], actual: Dict[str, Any]) -> List[str]:
        """Describe output values that differ."""
        differences = []
        for key in sorted(set(expected) | set(actual)):
            if key not in actual:
                differences.append(f"{key}: recorded {expected[key]!r}, not reported")
            elif key not in expected:
                differences.append(f"{key}: not recorded, found {actual[key]!r}")
            elif expected[key] != actual[key]:
                differences.append(f"{key}: recorded {expected[key]!r}, found {actual[key]!r}")
        return differences

    @staticmethod
    def _assess_severity(state: ResourceState, drift_type: DriftType) -> DriftSeverity:
        if drift_type == DriftType.MISSING:
            return DriftSeverity.HIGH if state.kind in FOUNDATION_KINDS else DriftSeverity.MEDIUM
        return DriftSeverity.MEDIUM
