"""Data models for drift detection."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from terrapin.state.models import utcnow


class DriftType(Enum):
    """Types of infrastructure drift."""
    MISSING = "missing"  # Resource in state but gone at the provider
    MODIFIED = "modified"  # Live attributes or outputs differ from recorded state
    ORPHANED = "orphaned"  # Resource exists but a dependency is missing
    ERROR = "error"  # Provider read failed


class DriftSeverity(Enum):
    """Severity levels for drift."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DriftItem(BaseModel):
    """Represents a single drift detection."""

    resource: str = Field(..., description="Resource key (kind.name)")
    kind: str = Field(..., description="Resource kind")
    drift_type: DriftType = Field(..., description="Type of drift detected")
    severity: DriftSeverity = Field(..., description="Severity of the drift")
    expected: Optional[Dict[str, Any]] = Field(None, description="Recorded outputs")
    actual: Optional[Dict[str, Any]] = Field(None, description="Observed outputs")
    differences: List[str] = Field(default_factory=list, description="List of specific differences")
    physical_id: Optional[str] = Field(None, description="Provider-assigned identifier")
    detected_at: datetime = Field(default_factory=utcnow, description="When drift was detected")


class DriftReport(BaseModel):
    """Complete drift detection report."""

    drift_items: List[DriftItem] = Field(default_factory=list, description="List of detected drift")
    total_resources_checked: int = Field(..., description="Total resources checked")
    skipped: List[str] = Field(default_factory=list, description="Resources not checked (unknown status)")
    generated_at: datetime = Field(default_factory=utcnow, description="Report generation time")

    @property
    def drift_count(self) -> int:
        return len(self.drift_items)

    def has_drift(self) -> bool:
        """Check if any drift was detected."""
        return len(self.drift_items) > 0

    def get_by_type(self, drift_type: DriftType) -> List[DriftItem]:
        """Get drift items by type."""
        return [d for d in self.drift_items if d.drift_type == drift_type]

    def get(self, resource: str) -> List[DriftItem]:
        """Drift items for one resource key."""
        return [d for d in self.drift_items if d.resource == resource]
