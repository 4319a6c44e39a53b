"""Drift detection between recorded state and the provider."""

from .models import DriftItem, DriftReport, DriftSeverity, DriftType
from .reconciler import DriftReconciler

__all__ = [
    "DriftItem",
    "DriftReport",
    "DriftSeverity",
    "DriftType",
    "DriftReconciler",
]
