"""Fetch, filter and persist upstream settlement stack data."""

from curtailment_ledger.ingestion.fetcher import (
    BatchFetchResult,
    PeriodFetch,
    SettlementStackFetcher,
)
from curtailment_ledger.ingestion.filter import (
    FilterResult,
    RecordFilter,
    RejectReason,
    derive_payment,
    filter_rows,
)
from curtailment_ledger.ingestion.rate_limit import (
    CancellationToken,
    RetryPolicy,
    SlidingWindowRateLimiter,
)
from curtailment_ledger.ingestion.registry import UnitRegistry, load_registry
from curtailment_ledger.ingestion.writer import IngestionWriter, consolidate

__all__ = [
    # Registry
    "UnitRegistry",
    "load_registry",
    # Fetching
    "CancellationToken",
    "RetryPolicy",
    "SlidingWindowRateLimiter",
    "SettlementStackFetcher",
    "PeriodFetch",
    "BatchFetchResult",
    # Filtering
    "RecordFilter",
    "FilterResult",
    "RejectReason",
    "derive_payment",
    "filter_rows",
    # Writing
    "IngestionWriter",
    "consolidate",
]
