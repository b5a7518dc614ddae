"""Tests for the read-only status API."""

import pytest
from fastapi.testclient import TestClient

from curtailment_ledger.api import create_app
from curtailment_ledger.pipeline import IngestionPipeline


@pytest.fixture
def client(context) -> TestClient:
    return TestClient(create_app(context))


class TestHealth:
    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "sqlite"

    def test_root(self, client) -> None:
        assert client.get("/").json()["docs"] == "/docs"


class TestScopeStatus:
    """Tests for GET /api/v1/scopes/{scope}."""

    def test_drifted_before_ingest(self, client) -> None:
        response = client.get("/api/v1/scopes/2024-03-15")

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "drifted"
        assert body["consistent"] is False
        assert body["findings"][0]["kind"] == "ingestion_gap"
        assert len(body["findings"][0]["periods"]) == 48

    def test_consistent_after_ingest(self, client, context, period_18_scenario, settlement_date) -> None:
        IngestionPipeline(context).ingest_date(settlement_date)

        body = client.get("/api/v1/scopes/2024-03-15").json()

        assert body["consistent"] is True
        assert body["kind"] == "day"
        assert body["counts"]["records"] == 5
        assert body["counts"]["yields"] == 15

    @pytest.mark.parametrize("scope", ["2024-13", "2024-02-30", "last-week"])
    def test_invalid_scope(self, client, scope: str) -> None:
        assert client.get(f"/api/v1/scopes/{scope}").status_code == 422


class TestAggregates:
    """Tests for GET /api/v1/aggregates/{scope}."""

    def test_not_found(self, client) -> None:
        assert client.get("/api/v1/aggregates/2024-03").status_code == 404

    def test_month(self, client, context, period_18_scenario, settlement_date) -> None:
        IngestionPipeline(context).ingest_date(settlement_date)

        response = client.get("/api/v1/aggregates/2024-03")

        assert response.status_code == 200
        body = response.json()
        assert body["scope"] == "2024-03"
        assert body["total_energy_mwh"] == pytest.approx(50.25)
        assert body["total_payment"] == pytest.approx(1362.5)
        assert set(body["yields"]) == {"S19J_PRO", "S9", "M20S"}
