"""Idempotent persistence of curtailment records.

The only mutation of canonical records is a full replace of one
(date, period): delete whatever is stored for it and insert the new set,
in a single transaction. Upstream data for a period can shrink as well as
grow, so row-by-row merging would leave stale units behind.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import date

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.orm import Session

from curtailment_ledger.domain.models import (
    IngestionStatus,
    SettlementRecord,
    WriteResult,
    utc_now,
)
from curtailment_ledger.ingestion.fetcher import period_label
from curtailment_ledger.storage.database import (
    CurtailmentRecordModel,
    Database,
    PeriodIngestionModel,
)


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[object, threading.Lock] = {}

    def get(self, key: object) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


def consolidate(records: Iterable[SettlementRecord]) -> list[SettlementRecord]:
    """Merge records that share a unit within the same period.

    A unit can appear in both the bid and the offer stack. Volumes and
    payments are summed; prices come from the first occurrence; flags are
    OR-ed.
    """
    merged: dict[tuple[date, int, str], SettlementRecord] = {}
    for record in records:
        existing = merged.get(record.key)
        if existing is None:
            merged[record.key] = record
            continue
        merged[record.key] = existing.model_copy(
            update={
                "volume": existing.volume + record.volume,
                "payment": existing.payment + record.payment,
                "so_flag": existing.so_flag or record.so_flag,
                "cadl_flag": existing.cadl_flag or record.cadl_flag,
                "lead_party_name": existing.lead_party_name or record.lead_party_name,
            }
        )
    return sorted(merged.values(), key=lambda r: r.unit_id)


class IngestionWriter:
    """Sole writer of curtailment records."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._locks = KeyedLocks()

    @staticmethod
    def _upsert_ingestion(
        session: Session,
        settlement_date: date,
        period: int,
        status: IngestionStatus,
        record_count: int = 0,
        total_volume: float = 0.0,
        total_payment: float = 0.0,
        error_message: str | None = None,
        provisional: bool = False,
    ) -> None:
        session.merge(
            PeriodIngestionModel(
                settlement_date=settlement_date,
                settlement_period=period,
                status=status.value,
                record_count=record_count,
                total_volume=total_volume,
                total_payment=total_payment,
                error_message=error_message,
                provisional=provisional,
                updated_at=utc_now(),
            )
        )

    def write(
        self,
        settlement_date: date,
        period: int,
        records: Iterable[SettlementRecord],
        provisional: bool = False,
    ) -> WriteResult:
        """Replace every record for (date, period) with ``records``.

        ``provisional`` marks a fetch made before upstream data for the
        period can be considered final.

        Raises:
            ValueError: If a record belongs to a different (date, period).
            PersistenceError: If the transaction fails; nothing is changed.
        """
        records = consolidate(records)
        for record in records:
            if (record.settlement_date, record.settlement_period) != (settlement_date, period):
                raise ValueError(
                    f"Record {record.key} does not belong to "
                    f"{settlement_date.isoformat()} P{period}"
                )

        total_volume = sum(r.curtailed_mwh for r in records)
        total_payment = sum(r.payment for r in records)

        with self._locks.get((settlement_date, period)):
            with self._db.session_scope() as session:
                deleted = session.execute(
                    delete(CurtailmentRecordModel).where(
                        CurtailmentRecordModel.settlement_date == settlement_date,
                        CurtailmentRecordModel.settlement_period == period,
                    )
                ).rowcount
                session.add_all(
                    CurtailmentRecordModel(
                        settlement_date=r.settlement_date,
                        settlement_period=r.settlement_period,
                        farm_id=r.unit_id,
                        lead_party_name=r.lead_party_name,
                        volume=r.volume,
                        payment=r.payment,
                        original_price=r.original_price,
                        final_price=r.final_price,
                        so_flag=r.so_flag,
                        cadl_flag=r.cadl_flag,
                    )
                    for r in records
                )
                self._upsert_ingestion(
                    session,
                    settlement_date,
                    period,
                    IngestionStatus.SUCCEEDED,
                    record_count=len(records),
                    total_volume=total_volume,
                    total_payment=total_payment,
                    provisional=provisional,
                )

        if records or deleted:
            logger.info(
                "{} Records: {} ({:.2f} MWh, £{:.2f}); replaced {}",
                period_label(settlement_date, period),
                len(records),
                total_volume,
                total_payment,
                deleted,
            )
        return WriteResult(
            settlement_date=settlement_date,
            settlement_period=period,
            record_count=len(records),
            total_volume_mwh=total_volume,
            total_payment=total_payment,
        )

    def mark_failed(self, settlement_date: date, period: int, error: Exception | str) -> None:
        """Record a failed attempt; existing records for the period are kept."""
        with self._locks.get((settlement_date, period)):
            with self._db.session_scope() as session:
                existing = session.get(PeriodIngestionModel, (settlement_date, period))
                self._upsert_ingestion(
                    session,
                    settlement_date,
                    period,
                    IngestionStatus.FAILED,
                    record_count=existing.record_count if existing else 0,
                    total_volume=existing.total_volume if existing else 0.0,
                    total_payment=existing.total_payment if existing else 0.0,
                    error_message=str(error)[:2000],
                )
