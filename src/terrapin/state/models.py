"""State file data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from terrapin.declarations.ref import ResourceRef

STATE_FORMAT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceStatus(str, Enum):
    """Lifecycle status of a recorded resource."""

    APPLIED = "applied"
    UNKNOWN = "unknown"  # interrupted mid-call, needs manual reconciliation


class ResourceState(BaseModel):
    """Last-known-applied state of one resource."""

    kind: str = Field(..., description="Resource kind")
    name: str = Field(..., description="Resource name")
    id: Optional[str] = Field(None, description="Provider-assigned identifier")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Declared attributes as last applied (canonical form)"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Attributes observed from the provider"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Keys of resources this resource depends on"
    )
    status: ResourceStatus = Field(ResourceStatus.APPLIED, description="Lifecycle status")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Provider metadata (timestamps, tokens, failure reason)"
    )

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.name)

    @property
    def key(self) -> str:
        return self.ref.key

    def dependency_refs(self) -> List[ResourceRef]:
        return [ResourceRef.parse(key) for key in self.dependencies]

    def is_unknown(self) -> bool:
        return self.status == ResourceStatus.UNKNOWN


class StateDocument(BaseModel):
    """The complete persisted state."""

    version: int = Field(STATE_FORMAT_VERSION, description="State file format version")
    serial: int = Field(0, description="Incremented on every commit")
    lineage: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Identity of this state across commits"
    )
    project: Optional[str] = Field(None, description="Project name")
    updated_at: datetime = Field(default_factory=utcnow, description="Last commit timestamp")
    resources: Dict[str, ResourceState] = Field(
        default_factory=dict, description="Resources keyed by kind.name"
    )

    def get(self, ref: ResourceRef) -> Optional[ResourceState]:
        return self.resources.get(ref.key)

    def put(self, state: ResourceState) -> None:
        self.resources[state.key] = state

    def remove(self, ref: ResourceRef) -> Optional[ResourceState]:
        return self.resources.pop(ref.key, None)

    def all_resources(self) -> List[ResourceState]:
        """Resources sorted by key."""
        return [self.resources[key] for key in sorted(self.resources)]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateDocument":
        """Create StateDocument from dictionary."""
        return cls.model_validate(data)
