"""Base provider interface and abstract classes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from terrapin.declarations.schema import BUILTIN_SCHEMAS, KindSchema
from terrapin.state.models import ResourceState


@dataclass
class ProviderResource:
    """A resource as the provider reports it.

    ``attributes`` holds the live values of declared attributes the provider
    can observe, under their declared names. Attributes it cannot read back
    are left out.
    """
    id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Base class for provider APIs the executor drives.

    Implementations raise TransientProviderError, FatalProviderError or
    IndeterminateProviderError, or let their client library's exceptions
    propagate for the retry policy to classify.
    """

    name = "base"

    def schemas(self) -> Dict[str, KindSchema]:
        """Kinds this provider manages."""
        return dict(BUILTIN_SCHEMAS)

    @abstractmethod
    def create(
        self,
        kind: str,
        name: str,
        attributes: Dict[str, Any],
        token: str
    ) -> ProviderResource:
        """Create a resource.

        Args:
            kind: Resource kind
            name: Resource name
            attributes: Attributes with references resolved
            token: Idempotency token; repeating a create with the same token
                must not produce a second resource

        Returns:
            ProviderResource with the provider-assigned id and observed outputs
        """

    @abstractmethod
    def update(self, state: ResourceState, attributes: Dict[str, Any]) -> ProviderResource:
        """Update a resource in place.

        Args:
            state: Recorded state of the resource
            attributes: New attributes with references resolved

        Returns:
            ProviderResource with observed outputs
        """

    @abstractmethod
    def delete(self, state: ResourceState) -> None:
        """Delete a resource. Deleting a resource that is already gone succeeds."""

    @abstractmethod
    def read(self, state: ResourceState) -> Optional[ProviderResource]:
        """Read the live resource, or None if it no longer exists."""

    def normalize_attributes(self, kind: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Put resolved declared attributes in the form read() reports them in."""
        return attributes

    def cancel(self, token: str) -> bool:
        """Cancel an in-flight call identified by its token.

        Returns:
            True if the provider guarantees the call had no lasting effect
        """
        return False

    def close(self) -> None:
        """Release client resources."""
