"""FastAPI routers for scope status and stored aggregates."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from curtailment_ledger.api.schemas import AggregateResponse, ScopeStatusResponse
from curtailment_ledger.domain import Scope
from curtailment_ledger.pipeline import PipelineContext
from curtailment_ledger.reconciliation import ReconciliationAuditor

router = APIRouter(prefix="/api/v1", tags=["scopes"])


def get_context(request: Request) -> PipelineContext:
    return request.app.state.context


def parse_scope(scope: str) -> Scope:
    try:
        return Scope.parse(scope)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.get("/scopes/{scope}", response_model=ScopeStatusResponse)
def get_scope_status(
    scope: str,
    verify_upstream: bool = Query(default=False, description="Compare sample periods upstream"),
    context: PipelineContext = Depends(get_context),
) -> ScopeStatusResponse:
    """Scan a day, month or year. Nothing is repaired."""
    report = ReconciliationAuditor(context).scan(parse_scope(scope), verify_upstream=verify_upstream)
    return ScopeStatusResponse.from_report(report)


@router.get("/aggregates/{scope}", response_model=AggregateResponse)
def get_aggregates(
    scope: str,
    context: PipelineContext = Depends(get_context),
) -> AggregateResponse:
    """Stored totals for a scope; 404 if never computed."""
    parsed = parse_scope(scope)
    aggregate = context.aggregation.get_aggregate(parsed)
    if aggregate is None:
        raise HTTPException(status_code=404, detail=f"No aggregate stored for {parsed.key}")
    return AggregateResponse(
        scope=parsed.key,
        kind=parsed.kind,
        total_energy_mwh=aggregate.total_energy_mwh,
        total_payment=aggregate.total_payment,
        last_updated=aggregate.last_updated,
        yields=context.aggregation.get_yield_summaries(parsed),
    )
