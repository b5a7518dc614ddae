"""Curtailment ledger: ingestion and reconciliation of wind curtailment records."""

__version__ = "0.1.0"
