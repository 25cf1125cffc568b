"""Degraded-mode scratch store, fallback repositories and merge."""

from .fallback import (
    DegradedMode,
    FallbackAttemptRepository,
    FallbackCatalogRepository,
    FallbackEntitlementRepository,
)
from .local import LocalScratchStore
from .postgres import PostgresAttemptRepository, PostgresCatalogRepository, PostgresEntitlementRepository
from .reconcile import DegradedStoreReconciler, MergeReport

__all__ = [
    "DegradedMode",
    "DegradedStoreReconciler",
    "FallbackAttemptRepository",
    "FallbackCatalogRepository",
    "FallbackEntitlementRepository",
    "LocalScratchStore",
    "MergeReport",
    "PostgresAttemptRepository",
    "PostgresCatalogRepository",
    "PostgresEntitlementRepository",
]
