"""Persistence layer: SQLAlchemy schema and session handling."""

from curtailment_ledger.storage.database import (
    Base,
    CurtailmentRecordModel,
    DailyAggregateModel,
    Database,
    MonthlyAggregateModel,
    NetworkDifficultyModel,
    PeriodIngestionModel,
    YearlyAggregateModel,
    YieldDailySummaryModel,
    YieldMonthlySummaryModel,
    YieldRecordModel,
    YieldYearlySummaryModel,
    create_db_engine,
)

__all__ = [
    "Base",
    "Database",
    "create_db_engine",
    "CurtailmentRecordModel",
    "PeriodIngestionModel",
    "DailyAggregateModel",
    "MonthlyAggregateModel",
    "YearlyAggregateModel",
    "YieldRecordModel",
    "YieldDailySummaryModel",
    "YieldMonthlySummaryModel",
    "YieldYearlySummaryModel",
    "NetworkDifficultyModel",
]
