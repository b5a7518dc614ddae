"""Tests for domain models."""

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from curtailment_ledger.domain import (
    Feed,
    MinerProfile,
    RawRow,
    Scope,
    ScopeKind,
    SettlementRecord,
    UnitRegistryEntry,
    period_end,
    utc_now,
)


class TestScope:
    """Tests for Scope parsing and date ranges."""

    def test_parse_day(self) -> None:
        """Test a full ISO date parses to a day scope."""
        scope = Scope.parse("2024-03-15")

        assert scope.kind == ScopeKind.DAY
        assert scope.key == "2024-03-15"
        assert scope.start == scope.end == date(2024, 3, 15)

    def test_parse_month(self) -> None:
        """Test a month scope covers every day of a leap February."""
        scope = Scope.parse("2024-02")

        assert scope.kind == ScopeKind.MONTH
        assert scope.end == date(2024, 2, 29)
        assert len(scope.dates()) == 29

    def test_parse_year(self) -> None:
        """Test a year scope spans January 1 to December 31."""
        scope = Scope.parse("2023")

        assert scope.kind == ScopeKind.YEAR
        assert scope.start == date(2023, 1, 1)
        assert scope.end == date(2023, 12, 31)

    @pytest.mark.parametrize("text", ["", "24-03", "2024/03/01", "2024-13", "2024-02-30"])
    def test_parse_rejects_invalid(self, text: str) -> None:
        """Test malformed or impossible scopes are rejected."""
        with pytest.raises(ValueError):
            Scope.parse(text)

    def test_dates_capped(self) -> None:
        """Test dates() stops at the cap."""
        scope = Scope.for_month(2024, 3)

        days = scope.dates(until=date(2024, 3, 10))

        assert days[0] == date(2024, 3, 1)
        assert days[-1] == date(2024, 3, 10)
        assert len(days) == 10

    def test_dates_fully_in_future(self) -> None:
        """Test a cap before the scope start yields no dates."""
        assert Scope.for_year(2099).dates(until=date(2024, 1, 1)) == []

    def test_month_scope_rejects_day(self) -> None:
        """Test that parts must match the scope kind."""
        with pytest.raises(ValidationError):
            Scope(kind=ScopeKind.MONTH, year=2024, month=3, day=1)

    def test_contains(self) -> None:
        scope = Scope.for_month(2024, 3)

        assert scope.contains(date(2024, 3, 31))
        assert not scope.contains(date(2024, 4, 1))


class TestRawRow:
    """Tests for RawRow parsing from upstream JSON."""

    def test_parses_api_aliases(self) -> None:
        """Test camelCase upstream keys map onto model fields."""
        row = RawRow.model_validate(
            {
                "id": "T_WIND-1",
                "volume": -12.5,
                "originalPrice": -35.0,
                "finalPrice": -30.0,
                "soFlag": True,
                "cadlFlag": False,
                "settlement_date": date(2024, 3, 15),
                "settlement_period": 18,
                "feed": "bid",
            }
        )

        assert row.unit_id == "T_WIND-1"
        assert row.original_price == -35.0
        assert row.final_price == -30.0
        assert row.so_flag is True
        assert row.feed == Feed.BID
        assert row.lead_party_name is None

    @pytest.mark.parametrize("flag", ["soFlag", "cadlFlag"])
    def test_null_flag_is_false(self, flag: str) -> None:
        data = {
            "id": "T_WIND-1",
            "volume": -1.0,
            "originalPrice": -35.0,
            "finalPrice": -35.0,
            "soFlag": True,
            "cadlFlag": True,
            "settlement_date": date(2024, 3, 15),
            "settlement_period": 18,
            "feed": "bid",
        }
        data[flag] = None

        row = RawRow.model_validate(data)

        assert row.so_flag is (flag != "soFlag")
        assert row.cadl_flag is (flag != "cadlFlag")

    def test_period_bounds(self) -> None:
        """Test settlement periods outside 1-48 are rejected."""
        with pytest.raises(ValidationError):
            RawRow(
                settlement_date=date(2024, 3, 15),
                settlement_period=49,
                feed=Feed.OFFER,
                unit_id="T_WIND-1",
                volume=-1.0,
                original_price=0.0,
                final_price=0.0,
            )


class TestSettlementRecord:
    """Tests for SettlementRecord."""

    def test_curtailed_volume_is_magnitude(self, make_record) -> None:
        """Test curtailed energy is the magnitude of the signed volume."""
        record = make_record("T_WIND-1", volume=-7.25)

        assert record.curtailed_mwh == 7.25
        assert record.key == (date(2024, 3, 15), 18, "T_WIND-1")

    def test_positive_volume_rejected(self) -> None:
        """Test only curtailed (negative) volumes form records."""
        with pytest.raises(ValidationError):
            SettlementRecord(
                settlement_date=date(2024, 3, 15),
                settlement_period=1,
                unit_id="T_WIND-1",
                volume=5.0,
                payment=10.0,
                original_price=2.0,
                final_price=2.0,
            )

    def test_negative_payment_rejected(self) -> None:
        """Test payment must be stored as a positive magnitude."""
        with pytest.raises(ValidationError):
            SettlementRecord(
                settlement_date=date(2024, 3, 15),
                settlement_period=1,
                unit_id="T_WIND-1",
                volume=-5.0,
                payment=-10.0,
                original_price=-2.0,
                final_price=-2.0,
            )

    def test_immutability(self, make_record) -> None:
        """Test that SettlementRecord is immutable."""
        record = make_record("T_WIND-1")

        with pytest.raises(ValidationError):
            record.volume = -1.0  # type: ignore[misc]


class TestMinerProfile:
    def test_efficiency(self) -> None:
        """Test throughput per kW of power draw."""
        profile = MinerProfile(name="S19J_PRO", hashrate_th=100.0, power_watts=3050.0)

        assert profile.power_kw == pytest.approx(3.05)
        assert profile.efficiency_th_per_kw == pytest.approx(100.0 / 3.05)

    def test_power_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            MinerProfile(name="broken", hashrate_th=10.0, power_watts=0.0)


class TestUnitRegistryEntry:
    def test_parses_mapping_keys(self) -> None:
        """Test registry JSON keys map onto model fields."""
        entry = UnitRegistryEntry.model_validate(
            {"elexonBmUnit": "T_SGRWO-1", "fuelType": "wind", "leadPartyName": "Seagreen"}
        )

        assert entry.unit_id == "T_SGRWO-1"
        assert entry.lead_party_name == "Seagreen"
        assert entry.is_wind

    def test_non_wind(self) -> None:
        entry = UnitRegistryEntry(unit_id="T_DRAXX-1", category="BIOMASS")

        assert not entry.is_wind


class TestClock:
    def test_utc_now_is_naive(self) -> None:
        now = utc_now()

        assert now.tzinfo is None
        assert abs(datetime.now(timezone.utc).replace(tzinfo=None) - now) < timedelta(minutes=1)

    @pytest.mark.parametrize(
        ("period", "expected"),
        [
            (1, datetime(2024, 3, 15, 0, 30)),
            (18, datetime(2024, 3, 15, 9, 0)),
            (48, datetime(2024, 3, 16, 0, 0)),
        ],
    )
    def test_period_end(self, period: int, expected: datetime) -> None:
        assert period_end(date(2024, 3, 15), period) == expected
