"""State management module for tracking applied resources."""

from .manager import StateStore, Transaction
from .models import ResourceState, ResourceStatus, StateDocument

__all__ = [
    "ResourceState",
    "ResourceStatus",
    "StateDocument",
    "StateStore",
    "Transaction",
]
