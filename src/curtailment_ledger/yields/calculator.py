"""Per-record yield under each miner profile.

For a curtailed volume V (MWh) on a day with network difficulty D:

    miners        = V * 1000 / (power_kW * 0.5)
    network_TH/s  = D * 2**32 / 600 / 1e12
    yield (BTC)   = miners * hashrate_TH / network_TH * block_reward * 3

Yields are rounded to 8 decimal places (one satoshi).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date

import numpy as np
from loguru import logger
from sqlalchemy import delete, select

from curtailment_ledger.domain.models import MinerProfile, SettlementRecord, YieldRecord
from curtailment_ledger.storage.database import (
    CurtailmentRecordModel,
    Database,
    YieldRecordModel,
)
from curtailment_ledger.yields.difficulty import DifficultyStore, resolve_difficulty
from curtailment_ledger.yields.profiles import (
    BLOCK_INTERVAL_SECONDS,
    BLOCKS_PER_SETTLEMENT_PERIOD,
    SETTLEMENT_PERIOD_HOURS,
    block_reward_for,
)

SATOSHI_DECIMALS = 8


def network_hashrate_th(difficulty: float) -> float:
    """Implied network hashrate in TH/s."""
    return difficulty * 2**32 / BLOCK_INTERVAL_SECONDS / 1e12


def yields_for_volumes(
    volumes_mwh: np.ndarray | Sequence[float],
    profile: MinerProfile,
    difficulty: float,
    block_reward: float,
) -> np.ndarray:
    """Vectorised yield for a batch of curtailed volumes.

    Args:
        volumes_mwh: Curtailed volumes; the sign is ignored.
        profile: Miner profile supplying hashrate and power draw.
        difficulty: Network difficulty in force for the batch.
        block_reward: Block subsidy in BTC.

    Returns:
        Array of yields in BTC, rounded to 8 decimals.
    """
    if difficulty <= 0:
        raise ValueError(f"Difficulty must be positive, got {difficulty}")
    energy_kwh = np.abs(np.asarray(volumes_mwh, dtype=np.float64)) * 1000
    miners = energy_kwh / (profile.power_kw * SETTLEMENT_PERIOD_HOURS)
    share = miners * profile.hashrate_th / network_hashrate_th(difficulty)
    return np.round(share * block_reward * BLOCKS_PER_SETTLEMENT_PERIOD, SATOSHI_DECIMALS)


@dataclass
class YieldRunResult:
    """Outcome of one yield (re)calculation for a date.

    Attributes:
        settlement_date: Date processed.
        difficulty: Difficulty the yields were computed with.
        record_count: Curtailment records considered.
        yield_count: Yield records written.
        totals: Yield written per miner model.
    """

    settlement_date: date
    difficulty: float
    record_count: int = 0
    yield_count: int = 0
    totals: dict[str, float] = field(default_factory=dict)


class YieldCalculator:
    """Derives yield records from stored curtailment records."""

    def __init__(
        self,
        database: Database,
        difficulty_store: DifficultyStore,
        profiles: Sequence[MinerProfile],
        allow_fallback: bool = False,
    ) -> None:
        if not profiles:
            raise ValueError("At least one miner profile is required")
        self._db = database
        self._difficulty = difficulty_store
        self._profiles = tuple(profiles)
        self._allow_fallback = allow_fallback

    @property
    def profiles(self) -> tuple[MinerProfile, ...]:
        return self._profiles

    @staticmethod
    def compute_for_record(
        record: SettlementRecord, profile: MinerProfile, difficulty: float
    ) -> YieldRecord:
        """Yield of one record under one profile. Performs no I/O."""
        amount = yields_for_volumes(
            [record.volume], profile, difficulty, block_reward_for(record.settlement_date)
        )[0]
        return YieldRecord(
            settlement_date=record.settlement_date,
            settlement_period=record.settlement_period,
            unit_id=record.unit_id,
            miner_model=profile.name,
            yield_amount=float(amount),
            difficulty=difficulty,
        )

    def difficulty_for(self, day: date) -> float:
        """Difficulty for ``day``; raises ``MissingParameterError`` if absent."""
        return resolve_difficulty(self._difficulty, day, allow_fallback=self._allow_fallback)

    def _build(
        self,
        records: Sequence[SettlementRecord],
        profiles: Iterable[MinerProfile],
        difficulty: float,
        day: date,
    ) -> list[YieldRecord]:
        reward = block_reward_for(day)
        volumes = np.array([r.volume for r in records], dtype=np.float64)
        out: list[YieldRecord] = []
        for profile in profiles:
            amounts = yields_for_volumes(volumes, profile, difficulty, reward)
            out.extend(
                YieldRecord(
                    settlement_date=r.settlement_date,
                    settlement_period=r.settlement_period,
                    unit_id=r.unit_id,
                    miner_model=profile.name,
                    yield_amount=float(amount),
                    difficulty=difficulty,
                )
                for r, amount in zip(records, amounts)
            )
        return out

    @staticmethod
    def _to_row(y: YieldRecord) -> YieldRecordModel:
        return YieldRecordModel(
            settlement_date=y.settlement_date,
            settlement_period=y.settlement_period,
            farm_id=y.unit_id,
            miner_model=y.miner_model,
            yield_amount=y.yield_amount,
            difficulty=y.difficulty,
        )

    def recalculate(
        self,
        day: date,
        periods: Iterable[int] | None = None,
        profiles: Sequence[MinerProfile] | None = None,
    ) -> YieldRunResult:
        """Replace the yields of ``day`` with a fresh calculation.

        Without ``profiles`` every stored yield of the date (or of the given
        periods) is dropped, including those of models no longer configured.
        With ``profiles`` only those models are replaced.

        Raises:
            MissingParameterError: If no difficulty is available; nothing is
                deleted in that case.
        """
        difficulty = self.difficulty_for(day)
        chosen = tuple(profiles) if profiles is not None else self._profiles
        period_list = sorted(set(periods)) if periods is not None else None

        with self._db.session_scope() as session:
            query = select(CurtailmentRecordModel).where(
                CurtailmentRecordModel.settlement_date == day
            )
            cleanup = delete(YieldRecordModel).where(YieldRecordModel.settlement_date == day)
            if period_list is not None:
                query = query.where(CurtailmentRecordModel.settlement_period.in_(period_list))
                cleanup = cleanup.where(YieldRecordModel.settlement_period.in_(period_list))
            if profiles is not None:
                cleanup = cleanup.where(
                    YieldRecordModel.miner_model.in_([p.name for p in chosen])
                )
            records = [
                row.to_domain()
                for row in session.scalars(
                    query.order_by(
                        CurtailmentRecordModel.settlement_period,
                        CurtailmentRecordModel.farm_id,
                    )
                )
            ]
            removed = session.execute(cleanup).rowcount
            yields = self._build(records, chosen, difficulty, day)
            session.add_all(self._to_row(y) for y in yields)

        result = YieldRunResult(
            settlement_date=day,
            difficulty=difficulty,
            record_count=len(records),
            yield_count=len(yields),
            totals=_totals(yields),
        )
        logger.info(
            "[{}] Yields: {} records x {} models = {} rows (replaced {}, difficulty {:.4g})",
            day.isoformat(),
            len(records),
            len(chosen),
            len(yields),
            removed,
            difficulty,
        )
        return result

    def fill_missing(self, day: date) -> YieldRunResult:
        """Insert yields only for (record, model) pairs that have none."""
        difficulty = self.difficulty_for(day)
        with self._db.session_scope() as session:
            records = [
                row.to_domain()
                for row in session.scalars(
                    select(CurtailmentRecordModel)
                    .where(CurtailmentRecordModel.settlement_date == day)
                    .order_by(
                        CurtailmentRecordModel.settlement_period,
                        CurtailmentRecordModel.farm_id,
                    )
                )
            ]
            existing = set(
                session.execute(
                    select(
                        YieldRecordModel.settlement_period,
                        YieldRecordModel.farm_id,
                        YieldRecordModel.miner_model,
                    ).where(YieldRecordModel.settlement_date == day)
                ).tuples()
            )
            missing = [
                y
                for y in self._build(records, self._profiles, difficulty, day)
                if (y.settlement_period, y.unit_id, y.miner_model) not in existing
            ]
            session.add_all(self._to_row(y) for y in missing)

        if missing:
            logger.info("[{}] Filled {} missing yield rows", day.isoformat(), len(missing))
        return YieldRunResult(
            settlement_date=day,
            difficulty=difficulty,
            record_count=len(records),
            yield_count=len(missing),
            totals=_totals(missing),
        )


def _totals(yields: Iterable[YieldRecord]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for y in yields:
        totals[y.miner_model] = totals.get(y.miner_model, 0.0) + y.yield_amount
    return dict(sorted(totals.items()))
