"""Classification of raw stack rows into curtailment records.

A row is a wind curtailment iff its delivered volume is negative, the system
operator or CADL flag is set, and the unit is a registered wind unit.
Everything else is dropped here and only counted.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from curtailment_ledger.domain.models import RawRow, SettlementRecord
from curtailment_ledger.ingestion.registry import UnitRegistry


class RejectReason(str, Enum):
    NON_NEGATIVE_VOLUME = "non_negative_volume"
    UNFLAGGED = "unflagged"
    UNKNOWN_UNIT = "unknown_unit"


@dataclass
class FilterResult:
    """Accepted records plus a count of rejected rows per reason."""

    accepted: list[SettlementRecord] = field(default_factory=list)
    rejected: Counter[RejectReason] = field(default_factory=Counter)

    @property
    def rejected_count(self) -> int:
        return sum(self.rejected.values())


def derive_payment(volume: float, original_price: float) -> float:
    """Payment as a positive magnitude of curtailed volume times price."""
    return abs(volume) * abs(original_price)


class RecordFilter:
    """Turns raw bid/offer rows into curtailment records."""

    def __init__(self, registry: UnitRegistry) -> None:
        self._registry = registry

    def classify(self, row: RawRow) -> RejectReason | None:
        """Return why a row is rejected, or None if it is a curtailment."""
        if row.volume >= 0:
            return RejectReason.NON_NEGATIVE_VOLUME
        if not (row.so_flag or row.cadl_flag):
            return RejectReason.UNFLAGGED
        if not self._registry.is_wind(row.unit_id):
            return RejectReason.UNKNOWN_UNIT
        return None

    def to_record(self, row: RawRow) -> SettlementRecord:
        return SettlementRecord(
            settlement_date=row.settlement_date,
            settlement_period=row.settlement_period,
            unit_id=row.unit_id,
            lead_party_name=row.lead_party_name or self._registry.lead_party(row.unit_id),
            volume=row.volume,
            payment=derive_payment(row.volume, row.original_price),
            original_price=row.original_price,
            final_price=row.final_price,
            so_flag=row.so_flag,
            cadl_flag=row.cadl_flag,
        )

    def filter(self, rows: Iterable[RawRow]) -> FilterResult:
        result = FilterResult()
        for row in rows:
            reason = self.classify(row)
            if reason is None:
                result.accepted.append(self.to_record(row))
            else:
                result.rejected[reason] += 1
        if result.rejected:
            logger.debug(
                "Filtered {} rows: {} accepted, rejected {}",
                len(result.accepted) + result.rejected_count,
                len(result.accepted),
                {reason.value: n for reason, n in result.rejected.items()},
            )
        return result


def filter_rows(rows: Iterable[RawRow], registry: UnitRegistry) -> FilterResult:
    """Convenience wrapper: ``RecordFilter(registry).filter(rows)``."""
    return RecordFilter(registry).filter(rows)
