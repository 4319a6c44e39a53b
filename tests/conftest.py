"""Shared fixtures for terrapin tests."""

import logging
import textwrap

import pytest

from terrapin.declarations.loader import DeclarationLoader
from terrapin.orchestrator.engine import Engine
from terrapin.providers.memory import InMemoryProvider
from terrapin.state.manager import StateStore
from terrapin.state.models import ResourceState
from terrapin.utils.retry import RetryPolicy

# network -> subnet -> vm, linked through output references
NSV_DECLARATIONS = """
resources:
  - kind: network
    name: main
    attributes:
      cidr: 10.0.0.0/16
  - kind: subnet
    name: web
    attributes:
      network_id: ${network.main.id}
      cidr: 10.0.1.0/24
  - kind: vm
    name: app
    attributes:
      subnet_id: ${subnet.web.id}
      image: img-base
      size: small
"""

NS_DECLARATIONS = """
resources:
  - kind: network
    name: main
    attributes:
      cidr: 10.0.0.0/16
  - kind: subnet
    name: web
    attributes:
      network_id: ${network.main.id}
      cidr: 10.0.1.0/24
"""


def pytest_configure(config):
    """Keep engine logging quiet unless a test captures it."""
    logging.basicConfig(level=logging.WARNING, force=True)


@pytest.fixture
def store(tmp_path):
    """State store backed by a file in a temporary directory."""
    return StateStore(str(tmp_path / "state" / "state.json"), project="test")


@pytest.fixture
def provider():
    """Fresh in-memory provider without persistence."""
    return InMemoryProvider()


@pytest.fixture
def fast_retry():
    """Retry policy that retries immediately."""
    return RetryPolicy(max_attempts=3, backoff=lambda attempt: 0.0)


@pytest.fixture
def loader():
    """Declaration loader with the built-in kinds."""
    return DeclarationLoader()


@pytest.fixture
def write_declarations(tmp_path):
    """Factory writing a declaration file and returning its path."""
    def write(content: str, name: str = "main.yaml") -> str:
        path = tmp_path / "infra" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content))
        return str(path)
    return write


@pytest.fixture
def engine(provider, store, fast_retry):
    """Engine over the in-memory provider with short cancellation grace."""
    return Engine(
        provider=provider,
        store=store,
        max_workers=4,
        retry_policy=fast_retry,
        cancel_grace=1.0
    )


def record_declarations(store: StateStore, declarations) -> None:
    """Record every declaration as applied, with made-up ids."""
    with store.transaction() as txn:
        for declaration in declarations:
            txn.put(ResourceState(
                kind=declaration.kind,
                name=declaration.name,
                id=f"{declaration.kind}-{declaration.name}",
                attributes=declaration.canonical_attributes(),
                outputs={'id': f"{declaration.kind}-{declaration.name}"},
                dependencies=sorted(ref.key for ref in declaration.dependencies),
            ))


def keys(refs) -> list:
    return [str(ref) for ref in refs]
