"""Core domain models for the curtailment ledger.

All models use Pydantic with strict validation. Units follow Elexon BMRS
conventions:
- Energy: MWh (negative volume denotes curtailed output)
- Prices: £/MWh (can be negative)
- Time: 48 half-hourly settlement periods per calendar day
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# =============================================================================
# Type Aliases with Validation
# =============================================================================

SettlementPeriod = Annotated[
    int, Field(ge=1, le=48, description="Half-hourly settlement period (1-48)")
]
SignedVolumeMWh = Annotated[
    float, Field(description="Signed energy volume in MWh (negative = curtailed)")
]
EnergyMWh = Annotated[float, Field(ge=0, description="Energy magnitude in MWh")]
PriceGBPPerMWh = Annotated[float, Field(description="Price in £/MWh (can be negative)")]
Money = Annotated[float, Field(ge=0, description="Monetary magnitude in £")]

PERIODS_PER_DAY = 48
ALL_PERIODS: tuple[int, ...] = tuple(range(1, PERIODS_PER_DAY + 1))
PERIOD_LENGTH = timedelta(minutes=30)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def period_end(settlement_date: date, period: int) -> datetime:
    """Naive UTC instant at which a settlement period closes.

    Periods are counted from midnight UTC; clock changes are not modelled.
    """
    return datetime.combine(settlement_date, time()) + PERIOD_LENGTH * period


# =============================================================================
# Enums
# =============================================================================


class Feed(str, Enum):
    """Upstream settlement stack feeds."""

    BID = "bid"
    OFFER = "offer"


class ScopeKind(str, Enum):
    """Granularity of aggregation and reconciliation."""

    DAY = "day"
    MONTH = "month"
    YEAR = "year"


class IngestionStatus(str, Enum):
    """Outcome of the most recent ingestion attempt for a period."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# Reference Data
# =============================================================================


class UnitRegistryEntry(BaseModel):
    """A balancing mechanism unit from the static registry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    unit_id: str = Field(alias="elexonBmUnit", min_length=1)
    category: str = Field(alias="fuelType")
    lead_party_name: str = Field(default="", alias="leadPartyName")

    @property
    def is_wind(self) -> bool:
        return self.category.upper() == "WIND"


# =============================================================================
# Ingested Facts
# =============================================================================


class RawRow(BaseModel):
    """One row of the upstream bid or offer stack for a settlement period."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    settlement_date: date
    settlement_period: SettlementPeriod
    feed: Feed
    unit_id: str = Field(alias="id", min_length=1)
    volume: SignedVolumeMWh
    original_price: PriceGBPPerMWh = Field(alias="originalPrice")
    final_price: PriceGBPPerMWh = Field(alias="finalPrice")
    so_flag: bool = Field(default=False, alias="soFlag")
    cadl_flag: bool = Field(default=False, alias="cadlFlag")
    lead_party_name: str | None = Field(default=None, alias="leadPartyName")

    @field_validator("so_flag", "cadl_flag", mode="before")
    @classmethod
    def _null_flag_is_false(cls, value: object) -> object:
        return False if value is None else value


class SettlementRecord(BaseModel):
    """Canonical curtailment fact, unique by (date, period, unit).

    Volume is stored signed-negative; payment is the positive magnitude
    ``|volume| * |original_price|`` derived once by the record filter.
    """

    model_config = ConfigDict(frozen=True)

    settlement_date: date
    settlement_period: SettlementPeriod
    unit_id: str = Field(min_length=1)
    lead_party_name: str = ""
    volume: Annotated[float, Field(lt=0, description="Curtailed volume (MWh)")]
    payment: Money
    original_price: PriceGBPPerMWh
    final_price: PriceGBPPerMWh
    so_flag: bool = False
    cadl_flag: bool = False

    @property
    def key(self) -> tuple[date, int, str]:
        return (self.settlement_date, self.settlement_period, self.unit_id)

    @property
    def curtailed_mwh(self) -> float:
        return abs(self.volume)


class WriteResult(BaseModel):
    """What the writer actually persisted for one (date, period)."""

    model_config = ConfigDict(frozen=True)

    settlement_date: date
    settlement_period: SettlementPeriod
    record_count: Annotated[int, Field(ge=0)]
    total_volume_mwh: EnergyMWh = 0.0
    total_payment: Money = 0.0


# =============================================================================
# Derived Artifacts
# =============================================================================


class ScopeAggregate(BaseModel):
    """Curtailed energy and payment totals for a day, month or year."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    key: str
    total_energy_mwh: EnergyMWh
    total_payment: Money
    last_updated: datetime


class MinerProfile(BaseModel):
    """Fixed parameter set used to turn curtailed energy into yield.

    Throughput per unit of energy is ``hashrate_th / power_kw``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    hashrate_th: Annotated[float, Field(gt=0, description="Hashrate in TH/s")]
    power_watts: Annotated[float, Field(gt=0, description="Power draw in W")]

    @property
    def power_kw(self) -> float:
        return self.power_watts / 1000

    @property
    def efficiency_th_per_kw(self) -> float:
        """Throughput per kW of power draw."""
        return self.hashrate_th / self.power_kw


class YieldRecord(BaseModel):
    """Derived yield for one settlement record under one miner profile."""

    model_config = ConfigDict(frozen=True)

    settlement_date: date
    settlement_period: SettlementPeriod
    unit_id: str
    miner_model: str
    yield_amount: Annotated[float, Field(ge=0, description="Bitcoin mined")]
    difficulty: Annotated[float, Field(gt=0)]

    @property
    def key(self) -> tuple[date, int, str, str]:
        return (
            self.settlement_date,
            self.settlement_period,
            self.unit_id,
            self.miner_model,
        )


# =============================================================================
# Scopes
# =============================================================================

_SCOPE_PATTERN = re.compile(r"^(\d{4})(?:-(\d{2}))?(?:-(\d{2}))?$")


class Scope(BaseModel):
    """A day, month or year used for aggregation and reconciliation."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    year: Annotated[int, Field(ge=2000, le=2100)]
    month: Annotated[int, Field(ge=1, le=12)] | None = None
    day: Annotated[int, Field(ge=1, le=31)] | None = None

    @model_validator(mode="after")
    def _check_parts(self) -> Scope:
        if self.kind == ScopeKind.YEAR and (self.month or self.day):
            raise ValueError("Year scope takes no month or day")
        if self.kind == ScopeKind.MONTH and (self.month is None or self.day):
            raise ValueError("Month scope needs a month and no day")
        if self.kind == ScopeKind.DAY:
            if self.month is None or self.day is None:
                raise ValueError("Day scope needs a month and a day")
            date(self.year, self.month, self.day)
        return self

    @classmethod
    def for_day(cls, day: date) -> Scope:
        return cls(kind=ScopeKind.DAY, year=day.year, month=day.month, day=day.day)

    @classmethod
    def for_month(cls, year: int, month: int) -> Scope:
        return cls(kind=ScopeKind.MONTH, year=year, month=month)

    @classmethod
    def for_year(cls, year: int) -> Scope:
        return cls(kind=ScopeKind.YEAR, year=year)

    @classmethod
    def parse(cls, text: str) -> Scope:
        """Parse ``YYYY``, ``YYYY-MM`` or ``YYYY-MM-DD``."""
        match = _SCOPE_PATTERN.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid scope {text!r}; use YYYY, YYYY-MM or YYYY-MM-DD")
        year, month, day = match.groups()
        if day is not None:
            return cls.for_day(date(int(year), int(month), int(day)))
        if month is not None:
            return cls.for_month(int(year), int(month))
        return cls.for_year(int(year))

    @property
    def key(self) -> str:
        if self.kind == ScopeKind.DAY:
            return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"
        if self.kind == ScopeKind.MONTH:
            return f"{self.year:04d}-{self.month:02d}"
        return f"{self.year:04d}"

    @property
    def start(self) -> date:
        return date(self.year, self.month or 1, self.day or 1)

    @property
    def end(self) -> date:
        """Last calendar day in the scope (inclusive)."""
        if self.kind == ScopeKind.DAY:
            return self.start
        if self.kind == ScopeKind.MONTH:
            last = calendar.monthrange(self.year, self.month or 1)[1]
            return date(self.year, self.month or 1, last)
        return date(self.year, 12, 31)

    def dates(self, until: date | None = None) -> list[date]:
        """All calendar days in the scope, optionally capped at ``until``."""
        last = self.end if until is None else min(self.end, until)
        days: list[date] = []
        current = self.start
        while current <= last:
            days.append(current)
            current = date.fromordinal(current.toordinal() + 1)
        return days

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def year_key(day: date) -> str:
    return f"{day.year:04d}"
