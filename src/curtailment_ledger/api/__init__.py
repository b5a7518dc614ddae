"""Read-only HTTP status surface for the curtailment ledger."""

from curtailment_ledger.api.main import create_app, serve

__all__ = ["create_app", "serve"]
