"""Scope-level drift detection and repair.

A scope (day, month or year) is consistent when:

- every closed settlement period of every date has a successful ingestion
  whose stored record count still matches the records on disk, and which
  is not a provisional fetch older than the settlement lag,
- every record has exactly one yield per configured miner model, all
  computed with the difficulty currently in force for the date,
- no yield exists without a record or for an unconfigured model,
- stored daily, monthly and yearly aggregates and yield summaries equal
  the sums of the layer beneath them.

``reconcile`` scans, repairs what the findings point at, and scans again,
up to a bounded number of cycles.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from curtailment_ledger.aggregation import ordered_sum
from curtailment_ledger.domain import (
    ALL_PERIODS,
    IngestionStatus,
    Scope,
    ScopeKind,
    period_end,
    utc_now,
)
from curtailment_ledger.errors import (
    FetchCancelled,
    MissingParameterError,
    PipelineError,
    ReconciliationExhausted,
)
from curtailment_ledger.ingestion import consolidate
from curtailment_ledger.pipeline import IngestionPipeline, PipelineContext
from curtailment_ledger.storage import (
    CurtailmentRecordModel,
    DailyAggregateModel,
    MonthlyAggregateModel,
    PeriodIngestionModel,
    YearlyAggregateModel,
    YieldDailySummaryModel,
    YieldMonthlySummaryModel,
    YieldRecordModel,
    YieldYearlySummaryModel,
)

AGGREGATE_TOLERANCE = 1e-6

# =============================================================================
# Report Types
# =============================================================================


class ReconciliationState(str, Enum):
    SCANNED = "scanned"
    CONSISTENT = "consistent"
    DRIFTED = "drifted"
    REPAIRING = "repairing"
    FAILED = "failed"


class DriftKind(str, Enum):
    """What kind of disagreement a finding describes."""

    INGESTION_GAP = "ingestion_gap"
    UPSTREAM_MISMATCH = "upstream_mismatch"
    MISSING_PARAMETER = "missing_parameter"
    YIELD_GAP = "yield_gap"
    STALE_YIELDS = "stale_yields"
    ORPHAN_YIELDS = "orphan_yields"
    AGGREGATE_MISMATCH = "aggregate_mismatch"


@dataclass(frozen=True)
class DriftFinding:
    """One detected disagreement.

    Attributes:
        kind: Category of drift.
        settlement_date: Date to repair; the first day of the month or year
            for month- and year-level aggregate findings.
        periods: Affected settlement periods, where meaningful.
        detail: Human-readable explanation.
    """

    kind: DriftKind
    settlement_date: date
    periods: tuple[int, ...] = ()
    detail: str = ""

    def __str__(self) -> str:
        where = self.settlement_date.isoformat()
        if self.periods:
            where += f" P{_compress(self.periods)}"
        return f"{self.kind.value} [{where}] {self.detail}".rstrip()


@dataclass
class ScopeCounts:
    """Row counts observed for a scope.

    Attributes:
        dates: Calendar days examined (future days excluded).
        records: Curtailment records.
        ingested_periods: Periods with a successful ingestion.
        expected_periods: Closed periods that should have been ingested.
        provisional_periods: Ingested periods still inside the settlement lag.
        yields: Stored yield records.
        expected_yields: Records multiplied by configured miner models.
    """

    dates: int = 0
    records: int = 0
    ingested_periods: int = 0
    expected_periods: int = 0
    provisional_periods: int = 0
    yields: int = 0
    expected_yields: int = 0


@dataclass
class ScopeReport:
    """Result of a scan or a reconciliation of one scope."""

    scope: Scope
    state: ReconciliationState = ReconciliationState.SCANNED
    cycles: int = 0
    before: ScopeCounts = field(default_factory=ScopeCounts)
    after: ScopeCounts = field(default_factory=ScopeCounts)
    findings: list[DriftFinding] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    error: PipelineError | None = None

    @property
    def consistent(self) -> bool:
        return self.state == ReconciliationState.CONSISTENT

    def findings_of(self, kind: DriftKind) -> list[DriftFinding]:
        return [f for f in self.findings if f.kind == kind]

    def summary(self) -> str:
        counts = self.after
        return (
            f"{self.scope.key}: {self.state.value} after {self.cycles} cycle(s); "
            f"{counts.records} records, {counts.ingested_periods}/{counts.expected_periods} "
            f"periods, {counts.yields}/{counts.expected_yields} yields, "
            f"{len(self.findings)} finding(s)"
        )


def _compress(periods: Iterable[int]) -> str:
    """Render ``[1, 2, 3, 7]`` as ``1-3,7``."""
    ordered = sorted(periods)
    if not ordered:
        return ""
    parts: list[str] = []
    start = prev = ordered[0]
    for p in ordered[1:]:
        if p == prev + 1:
            prev = p
            continue
        parts.append(f"{start}-{prev}" if start != prev else str(start))
        start = prev = p
    parts.append(f"{start}-{prev}" if start != prev else str(start))
    return ",".join(parts)


def _close(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=AGGREGATE_TOLERANCE)


# =============================================================================
# Auditor
# =============================================================================


class ReconciliationAuditor:
    """Detects and repairs drift between records, yields and aggregates."""

    def __init__(
        self,
        context: PipelineContext,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.context = context
        self.pipeline = IngestionPipeline(context, now=now)
        self._now = now

    @property
    def _model_names(self) -> list[str]:
        return [p.name for p in self.context.yields.profiles]

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def scan(self, scope: Scope, verify_upstream: bool = False) -> ScopeReport:
        """Count and compare everything stored for ``scope``; no writes."""
        report = ScopeReport(scope=scope)
        now = self._now()
        days = scope.dates(until=now.date())
        if len(days) < len(scope.dates()):
            report.notes.append(f"Skipped {len(scope.dates()) - len(days)} future date(s)")

        counts = ScopeCounts(dates=len(days))
        with self.context.database.session() as session:
            for day in days:
                self._scan_date(session, day, now, counts, report)
            self._scan_rollups(session, days, report)
        if counts.provisional_periods:
            report.notes.append(
                f"{counts.provisional_periods} period(s) provisional until the settlement lag passes"
            )
        if verify_upstream:
            for day in days:
                self._verify_upstream(day, report)

        report.before = counts
        report.after = counts
        report.state = ReconciliationState.DRIFTED if report.findings else ReconciliationState.CONSISTENT
        logger.info(
            "[{}] Scan: {} records, {}/{} periods ingested, {}/{} yields, {} finding(s)",
            scope.key,
            counts.records,
            counts.ingested_periods,
            counts.expected_periods,
            counts.yields,
            counts.expected_yields,
            len(report.findings),
        )
        return report

    def _scan_date(
        self,
        session: Session,
        day: date,
        now: datetime,
        counts: ScopeCounts,
        report: ScopeReport,
    ) -> None:
        findings = report.findings
        records = session.execute(
            select(
                CurtailmentRecordModel.settlement_period,
                CurtailmentRecordModel.farm_id,
                CurtailmentRecordModel.volume,
                CurtailmentRecordModel.payment,
            )
            .where(CurtailmentRecordModel.settlement_date == day)
            .order_by(CurtailmentRecordModel.settlement_period, CurtailmentRecordModel.farm_id)
        ).all()
        counts.records += len(records)

        # Ingestion coverage
        per_period: dict[int, int] = defaultdict(int)
        for r in records:
            per_period[r.settlement_period] += 1
        ingested = {
            row.settlement_period: row
            for row in session.scalars(
                select(PeriodIngestionModel).where(PeriodIngestionModel.settlement_date == day)
            )
        }
        succeeded = {
            p
            for p, row in ingested.items()
            if row.status == IngestionStatus.SUCCEEDED.value
        }
        closed = [p for p in ALL_PERIODS if period_end(day, p) <= now]
        counts.expected_periods += len(closed)
        counts.ingested_periods += len(succeeded & set(closed))
        gaps = [p for p in closed if p not in succeeded]
        if gaps:
            failed = [p for p in gaps if p in ingested]
            detail = f"{len(gaps)} period(s) not successfully ingested"
            if failed:
                detail += f" ({len(failed)} failed)"
            findings.append(DriftFinding(DriftKind.INGESTION_GAP, day, tuple(gaps), detail))
        lag = timedelta(hours=self.context.settings.settlement_lag_hours)
        provisional = [p for p in sorted(succeeded) if ingested[p].provisional]
        settled = [p for p in provisional if period_end(day, p) + lag <= now]
        counts.provisional_periods += len(provisional) - len(settled)
        if settled:
            findings.append(
                DriftFinding(
                    DriftKind.INGESTION_GAP,
                    day,
                    tuple(settled),
                    f"{len(settled)} provisional period(s) past the settlement lag",
                )
            )
        altered = [
            p for p in sorted(succeeded) if ingested[p].record_count != per_period.get(p, 0)
        ]
        if altered:
            findings.append(
                DriftFinding(
                    DriftKind.INGESTION_GAP,
                    day,
                    tuple(altered),
                    "stored records differ from the last successful ingestion",
                )
            )

        # Yields
        models = self._model_names
        expected_keys = {(r.settlement_period, r.farm_id, m) for r in records for m in models}
        counts.expected_yields += len(expected_keys)
        yields = session.execute(
            select(
                YieldRecordModel.settlement_period,
                YieldRecordModel.farm_id,
                YieldRecordModel.miner_model,
                YieldRecordModel.yield_amount,
                YieldRecordModel.difficulty,
            ).where(YieldRecordModel.settlement_date == day)
        ).all()
        counts.yields += len(yields)
        stored_keys = {(y.settlement_period, y.farm_id, y.miner_model) for y in yields}

        missing = expected_keys - stored_keys
        orphans = stored_keys - expected_keys
        difficulty: float | None
        try:
            difficulty = self.context.yields.difficulty_for(day)
        except MissingParameterError:
            difficulty = None

        if missing:
            periods = tuple(sorted({k[0] for k in missing}))
            if difficulty is None:
                findings.append(
                    DriftFinding(
                        DriftKind.MISSING_PARAMETER,
                        day,
                        periods,
                        f"{len(missing)} yield(s) missing and no difficulty is available",
                    )
                )
            else:
                findings.append(
                    DriftFinding(DriftKind.YIELD_GAP, day, periods, f"{len(missing)} yield(s) missing")
                )
        if orphans:
            findings.append(
                DriftFinding(
                    DriftKind.ORPHAN_YIELDS,
                    day,
                    tuple(sorted({k[0] for k in orphans})),
                    f"{len(orphans)} yield(s) without a matching record or model",
                )
            )
        if difficulty is not None:
            stale = [y for y in yields if y.difficulty != difficulty]
            if stale:
                findings.append(
                    DriftFinding(
                        DriftKind.STALE_YIELDS,
                        day,
                        tuple(sorted({y.settlement_period for y in stale})),
                        f"{len(stale)} yield(s) computed with a different difficulty",
                    )
                )

        # Daily aggregate and yield summary
        energy = ordered_sum((r.volume for r in records), absolute=True)
        payment = ordered_sum(r.payment for r in records)
        stored = session.get(DailyAggregateModel, day)
        if stored is None:
            if records:
                findings.append(
                    DriftFinding(DriftKind.AGGREGATE_MISMATCH, day, detail="daily aggregate missing")
                )
        elif not (_close(stored.total_curtailed_energy, energy) and _close(stored.total_payment, payment)):
            findings.append(
                DriftFinding(
                    DriftKind.AGGREGATE_MISMATCH,
                    day,
                    detail=(
                        f"daily aggregate {stored.total_curtailed_energy:.4f} MWh / "
                        f"£{stored.total_payment:.2f}, records sum to {energy:.4f} MWh / £{payment:.2f}"
                    ),
                )
            )

        by_model: dict[str, list[float]] = defaultdict(list)
        for y in sorted(yields, key=lambda y: (y.miner_model, y.settlement_period, y.farm_id)):
            by_model[y.miner_model].append(y.yield_amount)
        summaries = {
            row.miner_model: row.total_yield
            for row in session.scalars(
                select(YieldDailySummaryModel).where(YieldDailySummaryModel.summary_date == day)
            )
        }
        if not self._totals_match(summaries, {m: ordered_sum(v) for m, v in by_model.items()}):
            findings.append(
                DriftFinding(DriftKind.AGGREGATE_MISMATCH, day, detail="daily yield summary differs")
            )

    @staticmethod
    def _totals_match(stored: dict[str, float], computed: dict[str, float]) -> bool:
        if set(stored) != set(computed):
            return False
        return all(_close(stored[m], computed[m]) for m in computed)

    def _scan_rollups(self, session: Session, days: list[date], report: ScopeReport) -> None:
        if report.scope.kind == ScopeKind.DAY or not days:
            return
        months = sorted({(d.year, d.month) for d in days})
        for year, month in months:
            scope = Scope.for_month(year, month)
            daily = session.scalars(
                select(DailyAggregateModel)
                .where(
                    DailyAggregateModel.summary_date >= scope.start,
                    DailyAggregateModel.summary_date <= scope.end,
                )
                .order_by(DailyAggregateModel.summary_date)
            ).all()
            stored = session.get(MonthlyAggregateModel, scope.key)
            self._check_rollup(
                report,
                scope,
                stored,
                ordered_sum(r.total_curtailed_energy for r in daily),
                ordered_sum(r.total_payment for r in daily),
                has_children=bool(daily),
            )
            daily_yields = session.scalars(
                select(YieldDailySummaryModel)
                .where(
                    YieldDailySummaryModel.summary_date >= scope.start,
                    YieldDailySummaryModel.summary_date <= scope.end,
                )
                .order_by(YieldDailySummaryModel.miner_model, YieldDailySummaryModel.summary_date)
            ).all()
            monthly_yields = {
                r.miner_model: r.total_yield
                for r in session.scalars(
                    select(YieldMonthlySummaryModel).where(
                        YieldMonthlySummaryModel.year_month == scope.key
                    )
                )
            }
            if not self._totals_match(monthly_yields, _sum_by_model(daily_yields)):
                report.findings.append(
                    DriftFinding(
                        DriftKind.AGGREGATE_MISMATCH,
                        scope.start,
                        detail=f"monthly yield summary {scope.key} differs",
                    )
                )

        if report.scope.kind != ScopeKind.YEAR:
            return
        scope = report.scope
        monthly = session.scalars(
            select(MonthlyAggregateModel)
            .where(MonthlyAggregateModel.year_month.like(f"{scope.key}-%"))
            .order_by(MonthlyAggregateModel.year_month)
        ).all()
        self._check_rollup(
            report,
            scope,
            session.get(YearlyAggregateModel, scope.key),
            ordered_sum(r.total_curtailed_energy for r in monthly),
            ordered_sum(r.total_payment for r in monthly),
            has_children=bool(monthly),
        )
        monthly_yields = session.scalars(
            select(YieldMonthlySummaryModel)
            .where(YieldMonthlySummaryModel.year_month.like(f"{scope.key}-%"))
            .order_by(YieldMonthlySummaryModel.miner_model, YieldMonthlySummaryModel.year_month)
        ).all()
        yearly_yields = {
            r.miner_model: r.total_yield
            for r in session.scalars(
                select(YieldYearlySummaryModel).where(YieldYearlySummaryModel.year == scope.key)
            )
        }
        if not self._totals_match(yearly_yields, _sum_by_model(monthly_yields)):
            report.findings.append(
                DriftFinding(
                    DriftKind.AGGREGATE_MISMATCH,
                    scope.start,
                    detail=f"yearly yield summary {scope.key} differs",
                )
            )

    @staticmethod
    def _check_rollup(
        report: ScopeReport,
        scope: Scope,
        stored,
        energy: float,
        payment: float,
        has_children: bool,
    ) -> None:
        if stored is None:
            if has_children:
                report.findings.append(
                    DriftFinding(
                        DriftKind.AGGREGATE_MISMATCH,
                        scope.start,
                        detail=f"{scope.kind.value} aggregate {scope.key} missing",
                    )
                )
            return
        if not (_close(stored.total_curtailed_energy, energy) and _close(stored.total_payment, payment)):
            report.findings.append(
                DriftFinding(
                    DriftKind.AGGREGATE_MISMATCH,
                    scope.start,
                    detail=(
                        f"{scope.kind.value} aggregate {scope.key} is "
                        f"{stored.total_curtailed_energy:.4f} MWh, children sum to {energy:.4f} MWh"
                    ),
                )
            )

    def _verify_upstream(self, day: date, report: ScopeReport) -> None:
        """Compare sampled periods against a fresh upstream fetch."""
        ctx = self.context
        sample = [p for p in ctx.settings.sample_periods if p in ALL_PERIODS]
        try:
            batch = ctx.fetcher.fetch_periods(day, sample)
        except FetchCancelled as exc:
            report.notes.append(f"{day.isoformat()}: upstream verification cancelled: {exc}")
            return
        for period, error in sorted(batch.errors.items()):
            report.notes.append(f"{day.isoformat()} P{period}: upstream unavailable: {error}")

        with ctx.database.session() as session:
            stored = {
                row.settlement_period: row
                for row in session.scalars(
                    select(PeriodIngestionModel).where(PeriodIngestionModel.settlement_date == day)
                )
            }
        mismatched: list[int] = []
        for period, rows in sorted(batch.rows_by_period.items()):
            records = consolidate(ctx.record_filter.filter(rows).accepted)
            volume = sum(r.curtailed_mwh for r in records)
            payment = sum(r.payment for r in records)
            row = stored.get(period)
            if row is None:
                continue
            if (
                row.record_count != len(records)
                or abs(row.total_volume - volume) > ctx.settings.volume_tolerance_mwh
                or abs(row.total_payment - payment) > ctx.settings.payment_tolerance
            ):
                mismatched.append(period)
        if mismatched:
            report.findings.append(
                DriftFinding(
                    DriftKind.UPSTREAM_MISMATCH,
                    day,
                    tuple(mismatched),
                    "stored totals differ from upstream",
                )
            )

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def _repair(self, report: ScopeReport) -> None:
        reingest: dict[date, set[int]] = defaultdict(set)
        recalc: set[date] = set()
        fill: set[date] = set()
        affected: set[date] = set()

        for finding in report.findings:
            day = finding.settlement_date
            affected.add(day)
            if finding.kind in (DriftKind.INGESTION_GAP, DriftKind.UPSTREAM_MISMATCH):
                reingest[day].update(finding.periods)
            elif finding.kind in (
                DriftKind.STALE_YIELDS,
                DriftKind.ORPHAN_YIELDS,
                DriftKind.MISSING_PARAMETER,
            ):
                recalc.add(day)
            elif finding.kind == DriftKind.YIELD_GAP:
                fill.add(day)

        for day in sorted(reingest):
            ingest = self.pipeline.ingest_date(day, sorted(reingest[day]))
            for period, message in sorted(ingest.failed.items()):
                report.notes.append(f"{day.isoformat()} P{period}: re-ingest failed: {message}")

        for day in sorted(recalc):
            try:
                self.context.yields.recalculate(day)
            except MissingParameterError as exc:
                report.notes.append(str(exc))
        for day in sorted(fill - recalc):
            try:
                self.context.yields.fill_missing(day)
            except MissingParameterError as exc:
                report.notes.append(str(exc))

        self.context.aggregation.recompute_cascade(affected)

    def reconcile(
        self,
        scope: Scope,
        max_cycles: int | None = None,
        verify_upstream: bool = False,
    ) -> ScopeReport:
        """Scan, repair and re-scan until consistent or out of cycles.

        The returned report carries the counts before the first repair and
        after the last scan. A scope still drifted after ``max_cycles``
        repairs, or one whose findings stop changing, ends ``FAILED`` with a
        ``ReconciliationExhausted`` error.
        """
        limit = max_cycles if max_cycles is not None else self.context.settings.max_repair_cycles
        if limit < 1:
            raise ValueError(f"max_cycles must be at least 1, got {limit}")

        first = self.scan(scope, verify_upstream=verify_upstream)
        before = first.before
        current = first
        notes = list(first.notes)
        cycles = 0
        while current.findings and cycles < limit:
            cycles += 1
            current.state = ReconciliationState.REPAIRING
            logger.info(
                "[{}] Repair cycle {}/{}: {}",
                scope.key,
                cycles,
                limit,
                "; ".join(str(f) for f in current.findings[:5]),
            )
            self._repair(current)
            notes.extend(n for n in current.notes if n not in notes)
            previous = current.findings
            current = self.scan(scope, verify_upstream=verify_upstream)
            if current.findings and current.findings == previous:
                logger.warning("[{}] Repair made no progress", scope.key)
                break

        current.before = before
        current.cycles = cycles
        current.notes = notes + [n for n in current.notes if n not in notes]
        if current.findings:
            current.state = ReconciliationState.FAILED
            current.error = ReconciliationExhausted(scope.key, cycles)
            logger.error("[{}] {}", scope.key, current.error)
            for finding in current.findings:
                logger.error("[{}]   {}", scope.key, finding)
        else:
            current.state = ReconciliationState.CONSISTENT
            logger.info("[{}] {}", scope.key, current.summary())
        return current


def _sum_by_model(rows) -> dict[str, float]:
    by_model: dict[str, list[float]] = defaultdict(list)
    for r in rows:
        by_model[r.miner_model].append(r.total_yield)
    return {m: ordered_sum(v) for m, v in by_model.items()}
