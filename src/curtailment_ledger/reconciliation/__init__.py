"""Drift detection and repair across records, yields and aggregates."""

from curtailment_ledger.reconciliation.auditor import (
    DriftFinding,
    DriftKind,
    ReconciliationAuditor,
    ReconciliationState,
    ScopeCounts,
    ScopeReport,
)

__all__ = [
    "ReconciliationAuditor",
    "ReconciliationState",
    "DriftKind",
    "DriftFinding",
    "ScopeCounts",
    "ScopeReport",
]
