"""Tests for raw row classification."""

from datetime import date

import pytest

from curtailment_ledger.domain import Feed, RawRow
from curtailment_ledger.ingestion import RecordFilter, RejectReason, derive_payment, filter_rows


@pytest.fixture
def to_raw(settlement_date: date):
    """Turn API-shaped dicts into RawRows for period 18."""

    def _convert(*rows: dict, feed: Feed = Feed.BID) -> list[RawRow]:
        return [
            RawRow.model_validate(
                {**row, "settlement_date": settlement_date, "settlement_period": 18, "feed": feed}
            )
            for row in rows
        ]

    return _convert


class TestRecordFilter:
    """Tests for RecordFilter."""

    def test_accepts_flagged_wind_curtailment(self, registry, make_row, to_raw) -> None:
        """Test a negative, SO-flagged wind row becomes a record."""
        result = RecordFilter(registry).filter(to_raw(make_row("T_WIND-1", -12.5, price=-35.0)))

        assert len(result.accepted) == 1
        record = result.accepted[0]
        assert record.unit_id == "T_WIND-1"
        assert record.volume == -12.5
        assert record.payment == pytest.approx(437.5)
        assert record.so_flag and not record.cadl_flag
        assert result.rejected_count == 0

    def test_cadl_flag_alone_accepted(self, registry, make_row, to_raw) -> None:
        rows = to_raw(make_row("T_WIND-1", -1.0, so_flag=False, cadl_flag=True))

        assert len(filter_rows(rows, registry).accepted) == 1

    @pytest.mark.parametrize(
        ("row_kwargs", "reason"),
        [
            ({"unit_id": "T_WIND-1", "volume": 0.0}, RejectReason.NON_NEGATIVE_VOLUME),
            ({"unit_id": "T_WIND-1", "volume": 3.0}, RejectReason.NON_NEGATIVE_VOLUME),
            ({"unit_id": "T_WIND-1", "volume": -3.0, "so_flag": False}, RejectReason.UNFLAGGED),
            ({"unit_id": "T_CCGT-1", "volume": -3.0}, RejectReason.UNKNOWN_UNIT),
            ({"unit_id": "T_NOT_REGISTERED", "volume": -3.0}, RejectReason.UNKNOWN_UNIT),
        ],
    )
    def test_rejections_counted_by_reason(
        self, registry, make_row, to_raw, row_kwargs: dict, reason: RejectReason
    ) -> None:
        """Test each rejection rule in isolation."""
        result = RecordFilter(registry).filter(to_raw(make_row(**row_kwargs)))

        assert result.accepted == []
        assert result.rejected == {reason: 1}

    def test_mixed_batch(self, registry, period_18_rows, to_raw) -> None:
        """Test the standard period-18 stack keeps exactly the five wind curtailments."""
        result = RecordFilter(registry).filter(to_raw(*period_18_rows))

        assert sorted(r.unit_id for r in result.accepted) == [f"T_WIND-{i}" for i in range(1, 6)]
        assert result.rejected[RejectReason.NON_NEGATIVE_VOLUME] == 1
        assert result.rejected[RejectReason.UNFLAGGED] == 1
        assert result.rejected[RejectReason.UNKNOWN_UNIT] == 2
        assert sum(r.payment for r in result.accepted) == pytest.approx(1362.5)

    def test_lead_party_falls_back_to_registry(self, registry, make_row, to_raw) -> None:
        """Test the registry supplies the owner when the row has none."""
        rows = to_raw(
            make_row("T_WIND-2", -1.0),
            make_row("T_WIND-3", -1.0, lead_party="Upstream Name Ltd"),
        )

        accepted = RecordFilter(registry).filter(rows).accepted

        assert [r.lead_party_name for r in accepted] == ["Wind Co 2", "Upstream Name Ltd"]


class TestDerivePayment:
    @pytest.mark.parametrize(
        ("volume", "price", "expected"),
        [(-10.0, -40.0, 400.0), (-10.0, 40.0, 400.0), (-2.5, 0.0, 0.0)],
    )
    def test_positive_magnitude(self, volume: float, price: float, expected: float) -> None:
        """Test payment is positive whatever the price sign."""
        assert derive_payment(volume, price) == pytest.approx(expected)
