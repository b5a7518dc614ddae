"""Day, month and year aggregates derived from canonical records.

Daily aggregates are summed directly from curtailment records; monthly
aggregates from stored daily aggregates; yearly aggregates from stored
monthly aggregates. The per-scope ``recompute_*`` methods never cascade, so
callers must run daily before monthly before yearly. ``recompute_cascade``
does that ordering explicitly for a set of changed dates.

Every recompute is a full replace. A stored row's ``last_updated`` only
moves when its totals change, so recomputing unchanged data is a no-op.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any

import numpy as np
from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from curtailment_ledger.domain.models import (
    Scope,
    ScopeAggregate,
    ScopeKind,
    month_key,
    utc_now,
)
from curtailment_ledger.storage.database import (
    CurtailmentRecordModel,
    DailyAggregateModel,
    Database,
    MonthlyAggregateModel,
    YearlyAggregateModel,
    YieldDailySummaryModel,
    YieldMonthlySummaryModel,
    YieldRecordModel,
    YieldYearlySummaryModel,
)

_AGGREGATE_MODELS = {
    ScopeKind.DAY: DailyAggregateModel,
    ScopeKind.MONTH: MonthlyAggregateModel,
    ScopeKind.YEAR: YearlyAggregateModel,
}
_YIELD_MODELS = {
    ScopeKind.DAY: YieldDailySummaryModel,
    ScopeKind.MONTH: YieldMonthlySummaryModel,
    ScopeKind.YEAR: YieldYearlySummaryModel,
}


def ordered_sum(values: Iterable[float], absolute: bool = False) -> float:
    """Sum in the given order so repeated runs give identical floats."""
    arr = np.fromiter(values, dtype=np.float64)
    if absolute:
        arr = np.abs(arr)
    return float(arr.sum()) if arr.size else 0.0


def _scope_key_column(kind: ScopeKind) -> str:
    return {ScopeKind.DAY: "summary_date", ScopeKind.MONTH: "year_month", ScopeKind.YEAR: "year"}[kind]


def _scope_key_value(scope: Scope) -> Any:
    return scope.start if scope.kind == ScopeKind.DAY else scope.key


class AggregationEngine:
    """Recomputes curtailment aggregates and yield summaries."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = database
        self._clock = clock

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _store_aggregate(
        self, session: Session, kind: ScopeKind, key: Any, energy: float, payment: float
    ) -> ScopeAggregate:
        model = _AGGREGATE_MODELS[kind]
        row = session.get(model, key)
        if row is None:
            row = model(
                total_curtailed_energy=energy,
                total_payment=payment,
                last_updated=self._clock(),
            )
            setattr(row, _scope_key_column(kind), key)
            session.add(row)
        elif row.total_curtailed_energy != energy or row.total_payment != payment:
            row.total_curtailed_energy = energy
            row.total_payment = payment
            row.last_updated = self._clock()
        return ScopeAggregate(
            kind=kind,
            key=key.isoformat() if isinstance(key, date) else key,
            total_energy_mwh=energy,
            total_payment=payment,
            last_updated=row.last_updated,
        )

    def _store_yield_totals(
        self, session: Session, kind: ScopeKind, key: Any, totals: dict[str, float]
    ) -> dict[str, float]:
        model = _YIELD_MODELS[kind]
        key_column = getattr(model, _scope_key_column(kind))
        existing = {
            row.miner_model: row
            for row in session.scalars(select(model).where(key_column == key))
        }
        for miner_model, row in existing.items():
            if miner_model not in totals:
                session.delete(row)
        for miner_model, total in totals.items():
            row = existing.get(miner_model)
            if row is None:
                row = model(miner_model=miner_model, total_yield=total, last_updated=self._clock())
                setattr(row, _scope_key_column(kind), key)
                session.add(row)
            elif row.total_yield != total:
                row.total_yield = total
                row.last_updated = self._clock()
        return dict(sorted(totals.items()))

    # ------------------------------------------------------------------
    # Curtailment aggregates
    # ------------------------------------------------------------------

    def recompute_daily(self, day: date) -> ScopeAggregate:
        """Sum |volume| and payment over every record on ``day``."""
        with self._db.session_scope() as session:
            rows = session.execute(
                select(CurtailmentRecordModel.volume, CurtailmentRecordModel.payment)
                .where(CurtailmentRecordModel.settlement_date == day)
                .order_by(
                    CurtailmentRecordModel.settlement_period,
                    CurtailmentRecordModel.farm_id,
                )
            ).all()
            energy = ordered_sum((r.volume for r in rows), absolute=True)
            payment = ordered_sum(r.payment for r in rows)
            aggregate = self._store_aggregate(session, ScopeKind.DAY, day, energy, payment)
        logger.debug(
            "[{}] Daily aggregate: {:.2f} MWh, £{:.2f} from {} records",
            day.isoformat(),
            energy,
            payment,
            len(rows),
        )
        return aggregate

    def recompute_monthly(self, year: int, month: int) -> ScopeAggregate:
        """Sum the stored daily aggregates of the month."""
        scope = Scope.for_month(year, month)
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(DailyAggregateModel)
                .where(
                    DailyAggregateModel.summary_date >= scope.start,
                    DailyAggregateModel.summary_date <= scope.end,
                )
                .order_by(DailyAggregateModel.summary_date)
            ).all()
            energy = ordered_sum(r.total_curtailed_energy for r in rows)
            payment = ordered_sum(r.total_payment for r in rows)
            aggregate = self._store_aggregate(session, ScopeKind.MONTH, scope.key, energy, payment)
        logger.debug("[{}] Monthly aggregate: {:.2f} MWh, £{:.2f}", scope.key, energy, payment)
        return aggregate

    def recompute_yearly(self, year: int) -> ScopeAggregate:
        """Sum the stored monthly aggregates of the year."""
        scope = Scope.for_year(year)
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(MonthlyAggregateModel)
                .where(MonthlyAggregateModel.year_month.like(f"{scope.key}-%"))
                .order_by(MonthlyAggregateModel.year_month)
            ).all()
            energy = ordered_sum(r.total_curtailed_energy for r in rows)
            payment = ordered_sum(r.total_payment for r in rows)
            aggregate = self._store_aggregate(session, ScopeKind.YEAR, scope.key, energy, payment)
        logger.debug("[{}] Yearly aggregate: {:.2f} MWh, £{:.2f}", scope.key, energy, payment)
        return aggregate

    # ------------------------------------------------------------------
    # Yield summaries
    # ------------------------------------------------------------------

    def recompute_daily_yields(self, day: date) -> dict[str, float]:
        """Total yield per miner model over every yield record on ``day``."""
        with self._db.session_scope() as session:
            rows = session.execute(
                select(YieldRecordModel.miner_model, YieldRecordModel.yield_amount)
                .where(YieldRecordModel.settlement_date == day)
                .order_by(
                    YieldRecordModel.miner_model,
                    YieldRecordModel.settlement_period,
                    YieldRecordModel.farm_id,
                )
            ).all()
            by_model: dict[str, list[float]] = defaultdict(list)
            for r in rows:
                by_model[r.miner_model].append(r.yield_amount)
            totals = {m: ordered_sum(v) for m, v in by_model.items()}
            return self._store_yield_totals(session, ScopeKind.DAY, day, totals)

    def recompute_monthly_yields(self, year: int, month: int) -> dict[str, float]:
        scope = Scope.for_month(year, month)
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(YieldDailySummaryModel)
                .where(
                    YieldDailySummaryModel.summary_date >= scope.start,
                    YieldDailySummaryModel.summary_date <= scope.end,
                )
                .order_by(YieldDailySummaryModel.miner_model, YieldDailySummaryModel.summary_date)
            ).all()
            by_model: dict[str, list[float]] = defaultdict(list)
            for r in rows:
                by_model[r.miner_model].append(r.total_yield)
            totals = {m: ordered_sum(v) for m, v in by_model.items()}
            return self._store_yield_totals(session, ScopeKind.MONTH, scope.key, totals)

    def recompute_yearly_yields(self, year: int) -> dict[str, float]:
        scope = Scope.for_year(year)
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(YieldMonthlySummaryModel)
                .where(YieldMonthlySummaryModel.year_month.like(f"{scope.key}-%"))
                .order_by(YieldMonthlySummaryModel.miner_model, YieldMonthlySummaryModel.year_month)
            ).all()
            by_model: dict[str, list[float]] = defaultdict(list)
            for r in rows:
                by_model[r.miner_model].append(r.total_yield)
            totals = {m: ordered_sum(v) for m, v in by_model.items()}
            return self._store_yield_totals(session, ScopeKind.YEAR, scope.key, totals)

    # ------------------------------------------------------------------
    # Ordering helper and reads
    # ------------------------------------------------------------------

    def recompute_cascade(self, days: Iterable[date], include_yields: bool = True) -> None:
        """Recompute days, then their months, then their years, in that order."""
        days = sorted(set(days))
        if not days:
            return
        for day in days:
            self.recompute_daily(day)
            if include_yields:
                self.recompute_daily_yields(day)
        months = sorted({(d.year, d.month) for d in days})
        for year, month in months:
            self.recompute_monthly(year, month)
            if include_yields:
                self.recompute_monthly_yields(year, month)
        for year in sorted({d.year for d in days}):
            self.recompute_yearly(year)
            if include_yields:
                self.recompute_yearly_yields(year)
        logger.info(
            "Recomputed aggregates for {} day(s), {} month(s): {}",
            len(days),
            len(months),
            ", ".join(sorted({month_key(d) for d in days})),
        )

    def get_aggregate(self, scope: Scope) -> ScopeAggregate | None:
        """Stored aggregate for ``scope``, or None if never computed."""
        model = _AGGREGATE_MODELS[scope.kind]
        with self._db.session() as session:
            row = session.get(model, _scope_key_value(scope))
            if row is None:
                return None
            return ScopeAggregate(
                kind=scope.kind,
                key=scope.key,
                total_energy_mwh=row.total_curtailed_energy,
                total_payment=row.total_payment,
                last_updated=row.last_updated,
            )

    def get_yield_summaries(self, scope: Scope) -> dict[str, float]:
        model = _YIELD_MODELS[scope.kind]
        key_column = getattr(model, _scope_key_column(scope.kind))
        with self._db.session() as session:
            rows = session.scalars(
                select(model).where(key_column == _scope_key_value(scope))
            ).all()
            return {r.miner_model: r.total_yield for r in sorted(rows, key=lambda r: r.miner_model)}
