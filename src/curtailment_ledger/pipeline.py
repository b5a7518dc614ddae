"""The parameterized ingestion pipeline and its dependency context.

Every component is built once by ``build_context`` and passed around
explicitly; nothing is cached at module level.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from loguru import logger

from curtailment_ledger.aggregation import AggregationEngine
from curtailment_ledger.config import PipelineSettings
from curtailment_ledger.domain import ALL_PERIODS, WriteResult, period_end, utc_now
from curtailment_ledger.errors import FetchCancelled, MissingParameterError, PersistenceError
from curtailment_ledger.ingestion import (
    CancellationToken,
    IngestionWriter,
    RecordFilter,
    RetryPolicy,
    SettlementStackFetcher,
    SlidingWindowRateLimiter,
    UnitRegistry,
    load_registry,
)
from curtailment_ledger.ingestion.fetcher import period_label
from curtailment_ledger.storage import Database
from curtailment_ledger.yields import (
    DifficultyStore,
    SqlDifficultyStore,
    YieldCalculator,
    YieldRunResult,
    resolve_profiles,
)

# =============================================================================
# Context
# =============================================================================


@dataclass
class PipelineContext:
    """Everything one pipeline run needs, constructed up front."""

    settings: PipelineSettings
    database: Database
    registry: UnitRegistry
    rate_limiter: SlidingWindowRateLimiter
    fetcher: SettlementStackFetcher
    record_filter: RecordFilter
    writer: IngestionWriter
    aggregation: AggregationEngine
    difficulty_store: DifficultyStore
    yields: YieldCalculator

    def close(self) -> None:
        self.fetcher.close()
        self.database.dispose()


def build_context(
    settings: PipelineSettings,
    session: Any | None = None,
    difficulty_store: DifficultyStore | None = None,
    registry: UnitRegistry | None = None,
    database: Database | None = None,
) -> PipelineContext:
    """Wire up all components from ``settings``.

    Args:
        settings: Validated configuration.
        session: Optional HTTP session handed to the fetcher.
        difficulty_store: Defaults to the SQL-backed store.
        registry: Defaults to loading ``settings.registry_path``.
        database: Defaults to a new ``Database`` for ``settings.database_url``.

    Returns:
        A ready-to-use ``PipelineContext``. The schema is created if missing.
    """
    database = database or Database(settings.database_url)
    database.init_schema()
    registry = registry if registry is not None else load_registry(settings.registry_path)

    limiter = SlidingWindowRateLimiter(
        max_requests=settings.requests_per_window,
        window_seconds=settings.rate_window_seconds,
        check_interval=settings.rate_check_interval_seconds,
    )
    fetcher = SettlementStackFetcher(
        base_url=settings.api_base_url,
        rate_limiter=limiter,
        retry_policy=RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
        ),
        max_concurrent_requests=settings.max_concurrent_requests,
        timeout=settings.request_timeout_seconds,
        session=session,
    )
    store = difficulty_store if difficulty_store is not None else SqlDifficultyStore(database)
    return PipelineContext(
        settings=settings,
        database=database,
        registry=registry,
        rate_limiter=limiter,
        fetcher=fetcher,
        record_filter=RecordFilter(registry),
        writer=IngestionWriter(database),
        aggregation=AggregationEngine(database),
        difficulty_store=store,
        yields=YieldCalculator(
            database,
            store,
            resolve_profiles(settings.miner_models),
            allow_fallback=settings.allow_difficulty_fallback,
        ),
    )


# =============================================================================
# Reports
# =============================================================================


@dataclass
class DateIngestionReport:
    """Outcome of ingesting one settlement date.

    Attributes:
        settlement_date: Date ingested.
        periods: Periods requested that had closed and were fetched.
        pending: Requested periods skipped because they had not yet closed.
        provisional: Written periods still inside the settlement lag.
        written: Write result per successfully replaced period.
        failed: Error message per period that could not be ingested.
        rejected: Rejected raw rows by reason.
        yields: Yield run for the written periods, if it ran.
        yield_error: Why yields were not calculated, if they were not.
        cancelled: Whether the run was cut short by cancellation.
    """

    settlement_date: date
    periods: list[int]
    pending: list[int] = field(default_factory=list)
    provisional: list[int] = field(default_factory=list)
    written: dict[int, WriteResult] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)
    rejected: Counter = field(default_factory=Counter)
    yields: YieldRunResult | None = None
    yield_error: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def record_count(self) -> int:
        return sum(w.record_count for w in self.written.values())

    @property
    def total_volume_mwh(self) -> float:
        return sum(w.total_volume_mwh for w in self.written.values())

    @property
    def total_payment(self) -> float:
        return sum(w.total_payment for w in self.written.values())


# =============================================================================
# Pipeline
# =============================================================================


def parse_period_range(text: str) -> list[int]:
    """Parse ``"18"`` or ``"1-48"`` into a list of settlement periods."""
    start, _, end = text.partition("-")
    try:
        first = int(start)
        last = int(end) if end else first
    except ValueError:
        raise ValueError(f"Invalid period range {text!r}; use N or A-B") from None
    if not (1 <= first <= last <= len(ALL_PERIODS)):
        raise ValueError(f"Period range {text!r} must lie within 1-48")
    return list(range(first, last + 1))


class IngestionPipeline:
    """Fetch, filter, write, then derive yields and aggregates for a date.

    ``now`` returns naive UTC time. Periods that have not closed are never
    fetched, and periods fetched within ``settlement_lag_hours`` of closing
    are written as provisional so reconciliation fetches them again later.
    """

    def __init__(self, context: PipelineContext, now: Callable[[], datetime] = utc_now) -> None:
        self.context = context
        self.now = now

    def ingest_date(
        self,
        settlement_date: date,
        periods: Iterable[int] | None = None,
        cancel: CancellationToken | None = None,
    ) -> DateIngestionReport:
        """Ingest ``periods`` (default all 48) of one date.

        Writes are applied as each period's fetch completes. Yields and the
        day/month/year cascade are recomputed once, after every write.
        Per-period failures are recorded in the report; a missing
        difficulty leaves yields absent and is recorded, not raised.

        Raises:
            FetchCancelled: After recomputing for the periods already written.
        """
        ctx = self.context
        requested = sorted(set(periods)) if periods is not None else list(ALL_PERIODS)
        now = self.now()
        lag = timedelta(hours=ctx.settings.settlement_lag_hours)
        period_list = [p for p in requested if period_end(settlement_date, p) <= now]
        report = DateIngestionReport(
            settlement_date=settlement_date,
            periods=period_list,
            pending=[p for p in requested if p not in period_list],
        )
        day = settlement_date.isoformat()
        if report.pending:
            logger.info("[{}] {} period(s) not yet closed, skipped", day, len(report.pending))
        if not period_list:
            return report
        logger.info("[{}] Ingesting {} period(s)", day, len(period_list))

        try:
            for outcome in ctx.fetcher.iter_periods(settlement_date, period_list, cancel):
                period = outcome.settlement_period
                label = period_label(settlement_date, period)
                if not outcome.ok:
                    report.failed[period] = str(outcome.error)
                    self._mark_failed(settlement_date, period, outcome.error)
                    continue
                filtered = ctx.record_filter.filter(outcome.rows)
                report.rejected.update(filtered.rejected)
                provisional = now < period_end(settlement_date, period) + lag
                try:
                    report.written[period] = ctx.writer.write(
                        settlement_date, period, filtered.accepted, provisional=provisional
                    )
                except PersistenceError as exc:
                    logger.error("{} Write failed: {}", label, exc)
                    report.failed[period] = str(exc)
                    self._mark_failed(settlement_date, period, exc)
                    continue
                if provisional:
                    report.provisional.append(period)
        except FetchCancelled:
            report.cancelled = True
            self._derive(report)
            raise

        report.provisional.sort()
        self._derive(report)
        logger.info(
            "[{}] Done: {} records ({:.2f} MWh, £{:.2f}), {} period(s) failed, {} provisional",
            day,
            report.record_count,
            report.total_volume_mwh,
            report.total_payment,
            len(report.failed),
            len(report.provisional),
        )
        return report

    def _mark_failed(self, settlement_date: date, period: int, error: Exception) -> None:
        # the failure is already in the report
        try:
            self.context.writer.mark_failed(settlement_date, period, error)
        except PersistenceError as exc:
            logger.error(
                "{} Could not record failure: {}", period_label(settlement_date, period), exc
            )

    def _derive(self, report: DateIngestionReport) -> None:
        if not report.written:
            return
        try:
            report.yields = self.context.yields.recalculate(
                report.settlement_date, periods=sorted(report.written)
            )
        except MissingParameterError as exc:
            report.yield_error = str(exc)
            logger.warning("[{}] Yields skipped: {}", report.settlement_date.isoformat(), exc)
        self.context.aggregation.recompute_cascade([report.settlement_date])

    def ingest_range(
        self,
        start: date,
        end: date,
        periods: Iterable[int] | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[DateIngestionReport]:
        """Ingest every date from ``start`` to ``end`` inclusive."""
        if end < start:
            raise ValueError(f"End date {end} precedes start date {start}")
        period_list = list(periods) if periods is not None else None
        reports: list[DateIngestionReport] = []
        current = start
        while current <= end:
            reports.append(self.ingest_date(current, period_list, cancel))
            current += timedelta(days=1)
        return reports

    def process_yields(self, settlement_date: date) -> YieldRunResult:
        """Recalculate every yield of a date and refresh summaries.

        Raises:
            MissingParameterError: If no difficulty is available for the date.
        """
        result = self.context.yields.recalculate(settlement_date)
        self.context.aggregation.recompute_cascade([settlement_date])
        return result
