"""Domain models for the curtailment ledger."""

from curtailment_ledger.domain.models import (
    ALL_PERIODS,
    PERIODS_PER_DAY,
    Feed,
    IngestionStatus,
    MinerProfile,
    RawRow,
    Scope,
    ScopeAggregate,
    ScopeKind,
    SettlementRecord,
    UnitRegistryEntry,
    WriteResult,
    YieldRecord,
    month_key,
    period_end,
    utc_now,
    year_key,
)

__all__ = [
    "ALL_PERIODS",
    "PERIODS_PER_DAY",
    "Feed",
    "IngestionStatus",
    "ScopeKind",
    "Scope",
    "UnitRegistryEntry",
    "RawRow",
    "SettlementRecord",
    "WriteResult",
    "ScopeAggregate",
    "MinerProfile",
    "YieldRecord",
    "month_key",
    "year_key",
    "period_end",
    "utc_now",
]
