"""In-memory provider for local runs and tests.

Resources live in a dictionary, optionally persisted to a JSON file so that
consecutive CLI runs see the same "cloud". Faults and latency can be injected
per kind, name and verb.
"""

import ipaddress
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from terrapin.providers.base import Provider, ProviderResource
from terrapin.state.models import ResourceState
from terrapin.utils.errors import ErrorContext, FatalProviderError, ProviderError
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)

ID_PREFIXES = {
    'network': 'net',
    'subnet': 'subnet',
    'firewall': 'fw',
    'vm': 'vm',
}


class CallCancelled(ProviderError):
    """Raised inside a call that was cancelled through cancel()."""

    kind = "Cancelled"


@dataclass
class Fault:
    """An error to raise for matching calls."""
    error: Exception
    verb: Optional[str] = None
    kind: Optional[str] = None
    name: Optional[str] = None
    times: Optional[int] = 1  # None means every matching call

    def matches(self, verb: str, kind: str, name: str) -> bool:
        return (
            (self.verb is None or self.verb == verb)
            and (self.kind is None or self.kind == kind)
            and (self.name is None or self.name == name)
        )


class InMemoryProvider(Provider):
    """Deterministic provider backed by a dictionary."""

    name = "memory"

    def __init__(self, path: Optional[str] = None, check_references: bool = True):
        """Initialize in-memory provider.

        Args:
            path: Optional JSON file the resources are persisted to
            check_references: Reject *_id attributes that name unknown resources
        """
        self.path = Path(path) if path else None
        self.check_references = check_references
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self._faults: List[Fault] = []
        self._delays: Dict[Optional[str], float] = {}
        self._inflight: Dict[str, threading.Event] = {}
        self._last_id = 0
        self._lock = threading.RLock()

        if self.path and self.path.exists():
            self._load()

    # Test hooks

    def inject_fault(
        self,
        error: Exception,
        verb: Optional[str] = None,
        kind: Optional[str] = None,
        name: Optional[str] = None,
        times: Optional[int] = 1
    ) -> None:
        """Raise ``error`` for the next ``times`` matching calls."""
        with self._lock:
            self._faults.append(Fault(error=error, verb=verb, kind=kind, name=name, times=times))

    def set_delay(self, seconds: float, verb: Optional[str] = None) -> None:
        """Make calls (of one verb, or all) take ``seconds`` before acting."""
        self._delays[verb] = seconds

    def count(self, verb: Optional[str] = None, kind: Optional[str] = None) -> int:
        """Number of recorded calls, optionally filtered."""
        with self._lock:
            return sum(
                1 for call_verb, key in self.calls
                if (verb is None or call_verb == verb)
                and (kind is None or key.split('.', 1)[0] == kind)
            )

    def find(self, kind: str, name: str) -> List[Dict[str, Any]]:
        """All live resources created for ``kind.name``."""
        with self._lock:
            return [r for r in self.resources.values() if r['kind'] == kind and r['name'] == name]

    def modify(self, physical_id: str, **outputs: Any) -> None:
        """Change live outputs behind the engine's back (simulates drift)."""
        with self._lock:
            self.resources[physical_id]['outputs'].update(outputs)
            self._save()

    def modify_attributes(self, physical_id: str, **attributes: Any) -> None:
        """Change live attribute values behind the engine's back (simulates drift)."""
        with self._lock:
            self.resources[physical_id]['attributes'].update(attributes)
            self._save()

    def remove(self, physical_id: str) -> None:
        """Delete a live resource behind the engine's back."""
        with self._lock:
            self.resources.pop(physical_id, None)
            self._save()

    # Provider API

    def create(self, kind: str, name: str, attributes: Dict[str, Any], token: str) -> ProviderResource:
        self._before_call('create', kind, name, token)
        with self._lock:
            existing_id = self.tokens.get(token)
            if existing_id and existing_id in self.resources:
                logger.debug(f"Create for {kind}.{name} replayed with token {token}")
                return self._to_resource(existing_id)

            self._check_references(kind, name, attributes)
            self._last_id += 1
            physical_id = f"{ID_PREFIXES.get(kind, kind)}-{self._last_id:08x}"
            self.resources[physical_id] = {
                'kind': kind,
                'name': name,
                'attributes': dict(attributes),
                'outputs': self._outputs(kind, physical_id, attributes),
            }
            self.tokens[token] = physical_id
            self._save()
            return self._to_resource(physical_id)

    def update(self, state: ResourceState, attributes: Dict[str, Any]) -> ProviderResource:
        self._before_call('update', state.kind, state.name)
        with self._lock:
            record = self.resources.get(state.id or '')
            if record is None:
                raise FatalProviderError(
                    f"Resource {state.id} does not exist",
                    context=ErrorContext(resource_id=state.key, operation='update')
                )
            self._check_references(state.kind, state.name, attributes)
            record['attributes'] = dict(attributes)
            record['outputs'] = self._outputs(state.kind, state.id, attributes, previous=record['outputs'])
            self._save()
            return self._to_resource(state.id)

    def delete(self, state: ResourceState) -> None:
        self._before_call('delete', state.kind, state.name)
        with self._lock:
            dependents = [
                other_id for other_id, record in self.resources.items()
                if state.id and state.id in self._referenced_ids(record['attributes'])
            ]
            if dependents:
                raise FatalProviderError(
                    f"Resource {state.id} is still in use by {', '.join(sorted(dependents))}",
                    context=ErrorContext(resource_id=state.key, operation='delete')
                )
            self.resources.pop(state.id or '', None)
            self._save()

    def read(self, state: ResourceState) -> Optional[ProviderResource]:
        self._before_call('read', state.kind, state.name)
        with self._lock:
            if state.id not in self.resources:
                return None
            return self._to_resource(state.id)

    def cancel(self, token: str) -> bool:
        with self._lock:
            event = self._inflight.get(token)
            if event is None:
                return False
            event.set()
            return True

    # Internals

    def _before_call(self, verb: str, kind: str, name: str, token: Optional[str] = None) -> None:
        with self._lock:
            self.calls.append((verb, f"{kind}.{name}"))
            for fault in self._faults:
                if fault.matches(verb, kind, name) and fault.times != 0:
                    if fault.times is not None:
                        fault.times -= 1
                    raise fault.error

        delay = self._delays.get(verb, self._delays.get(None, 0.0))
        if delay <= 0:
            return

        cancelled = threading.Event()
        if token:
            with self._lock:
                self._inflight[token] = cancelled
        try:
            if cancelled.wait(delay):
                raise CallCancelled(f"{verb} of {kind}.{name} cancelled")
        finally:
            if token:
                with self._lock:
                    self._inflight.pop(token, None)

    def _check_references(self, kind: str, name: str, attributes: Dict[str, Any]) -> None:
        if not self.check_references:
            return
        for referenced in self._referenced_ids(attributes):
            if referenced not in self.resources:
                raise FatalProviderError(
                    f"Invalid attribute: {referenced} does not exist",
                    context=ErrorContext(resource_id=f"{kind}.{name}", operation='create')
                )

    @staticmethod
    def _referenced_ids(attributes: Dict[str, Any]) -> List[str]:
        referenced = []
        for attr_name, value in attributes.items():
            if attr_name.endswith('_id') and isinstance(value, str):
                referenced.append(value)
            elif attr_name.endswith('_ids') and isinstance(value, list):
                referenced.extend(v for v in value if isinstance(v, str))
        return referenced

    def _outputs(
        self,
        kind: str,
        physical_id: str,
        attributes: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {'id': physical_id}
        if kind in ('network', 'subnet'):
            outputs['cidr'] = attributes.get('cidr')
        if kind == 'subnet':
            outputs['zone'] = attributes.get('zone') or 'zone-a'
        if kind == 'vm':
            if previous and previous.get('private_ip'):
                outputs['private_ip'] = previous['private_ip']
            else:
                outputs['private_ip'] = self._allocate_ip(attributes.get('subnet_id'))
            outputs['public_ip'] = None
            outputs['state'] = 'running'
        return outputs

    def _allocate_ip(self, subnet_id: Optional[str]) -> Optional[str]:
        subnet = self.resources.get(subnet_id or '')
        cidr = subnet['outputs'].get('cidr') if subnet else None
        if not cidr:
            return None
        network = ipaddress.ip_network(cidr, strict=False)
        taken = {
            record['outputs'].get('private_ip') for record in self.resources.values()
            if record['kind'] == 'vm'
        }
        # Skip the first four addresses, as cloud providers reserve them
        for offset, address in enumerate(network.hosts()):
            if offset >= 3 and str(address) not in taken:
                return str(address)
        raise FatalProviderError(f"No free addresses left in {cidr}")

    def _to_resource(self, physical_id: str) -> ProviderResource:
        record = self.resources[physical_id]
        return ProviderResource(
            id=physical_id,
            outputs=dict(record['outputs']),
            attributes=dict(record['attributes'])
        )

    def _load(self) -> None:
        with open(self.path, 'r') as f:
            data = json.load(f)
        self.resources = data.get('resources', {})
        self.tokens = data.get('tokens', {})
        self._last_id = data.get('counter', 0)

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix('.tmp')
        with open(temp_path, 'w') as f:
            json.dump(
                {'resources': self.resources, 'tokens': self.tokens, 'counter': self._last_id},
                f,
                indent=2,
                sort_keys=True
            )
        temp_path.replace(self.path)
