"""Pydantic response schemas for the status API."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from curtailment_ledger.domain import ScopeKind
from curtailment_ledger.reconciliation import DriftKind, ReconciliationState, ScopeReport


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    timestamp: datetime
    database: str


class ScopeCountsResponse(BaseModel):
    """Row counts observed for a scope."""

    model_config = ConfigDict(from_attributes=True)

    dates: int = Field(ge=0)
    records: int = Field(ge=0)
    ingested_periods: int = Field(ge=0)
    expected_periods: int = Field(ge=0)
    provisional_periods: int = Field(default=0, ge=0)
    yields: int = Field(ge=0)
    expected_yields: int = Field(ge=0)


class FindingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: DriftKind
    settlement_date: date
    periods: list[int] = Field(default_factory=list)
    detail: str = ""


class ScopeStatusResponse(BaseModel):
    """Scan result for a day, month or year."""

    scope: str
    kind: ScopeKind
    state: ReconciliationState
    consistent: bool
    counts: ScopeCountsResponse
    findings: list[FindingResponse] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: ScopeReport) -> ScopeStatusResponse:
        return cls(
            scope=report.scope.key,
            kind=report.scope.kind,
            state=report.state,
            consistent=report.consistent,
            counts=ScopeCountsResponse.model_validate(report.after),
            findings=[
                FindingResponse(
                    kind=f.kind,
                    settlement_date=f.settlement_date,
                    periods=list(f.periods),
                    detail=f.detail,
                )
                for f in report.findings
            ],
            notes=report.notes,
        )


class AggregateResponse(BaseModel):
    """Stored curtailment totals and yield summaries for a scope."""

    scope: str
    kind: ScopeKind
    total_energy_mwh: float = Field(ge=0, description="Curtailed energy (MWh)")
    total_payment: float = Field(ge=0, description="Curtailment payments (£)")
    last_updated: datetime | None = None
    yields: dict[str, float] = Field(default_factory=dict, description="BTC per miner model")
