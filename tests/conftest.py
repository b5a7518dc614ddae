"""Test fixtures for reproducible pipeline runs.

Provides:
- An in-memory database with the full schema
- A small unit registry (six wind units, one gas unit)
- A fake HTTP session serving bid/offer stacks from memory
- The standard scenario: five curtailed wind units in period 18
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from datetime import date
from typing import Any

import pytest

from curtailment_ledger.config import PipelineSettings
from curtailment_ledger.domain import SettlementRecord, UnitRegistryEntry
from curtailment_ledger.ingestion import UnitRegistry
from curtailment_ledger.pipeline import PipelineContext, build_context
from curtailment_ledger.storage import Database
from curtailment_ledger.yields import InMemoryDifficultyStore

DIFFICULTY = 83_148_355_189_239.0
BASE_URL = "https://bmrs.example.test/api/v1"
NOT_JSON = "not-json"

# =============================================================================
# Fake Upstream
# =============================================================================


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if isinstance(self._payload, str) and self._payload == NOT_JSON:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeStackSession:
    """Serves settlement stacks keyed by (feed, ISO date, period).

    Scripted outcomes queued with ``fail`` are consumed before the stored
    stack is served: an int is an HTTP status, an exception is raised, a
    dict is returned as the JSON body, ``NOT_JSON`` is an unparsable body.
    """

    def __init__(self) -> None:
        self.stacks: dict[tuple[str, str, int], list[dict]] = {}
        self.outcomes: dict[tuple[str, str, int], list[Any]] = {}
        self.calls: list[tuple[str, str, int]] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()

    def set_stack(self, feed: str, day: date, period: int, rows: list[dict]) -> None:
        self.stacks[(feed, day.isoformat(), period)] = rows

    def fail(self, feed: str, day: date, period: int, *outcomes: Any) -> None:
        self.outcomes.setdefault((feed, day.isoformat(), period), []).extend(outcomes)

    def calls_for(self, feed: str, day: date, period: int) -> int:
        return self.calls.count((feed, day.isoformat(), period))

    def get(self, url: str, headers: dict | None = None, timeout: float | None = None) -> FakeResponse:
        _, feed, day, period = url.rsplit("/", 3)
        key = (feed, day, int(period))
        with self._lock:
            self.calls.append(key)
            queue = self.outcomes.get(key)
            outcome = queue.pop(0) if queue else None
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, int):
                return FakeResponse(outcome, {"error": f"status {outcome}"})
            if outcome == NOT_JSON:
                return FakeResponse(200, NOT_JSON)
            if outcome is not None:
                return FakeResponse(200, outcome)
            return FakeResponse(200, {"data": list(self.stacks.get(key, []))})
        finally:
            with self._lock:
                self.active -= 1

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Basic Fixtures
# =============================================================================


@pytest.fixture
def settlement_date() -> date:
    """A mid-March day before the 2024 halving."""
    return date(2024, 3, 15)


@pytest.fixture
def difficulty() -> float:
    return DIFFICULTY


@pytest.fixture
def registry() -> UnitRegistry:
    """Six wind units and one gas unit."""
    entries = [
        UnitRegistryEntry(unit_id=f"T_WIND-{i}", category="WIND", lead_party_name=f"Wind Co {i}")
        for i in range(1, 7)
    ]
    entries.append(UnitRegistryEntry(unit_id="T_CCGT-1", category="CCGT", lead_party_name="Gas Co"))
    return UnitRegistry(entries)


@pytest.fixture
def database() -> Iterator[Database]:
    db = Database("sqlite://")
    db.init_schema()
    yield db
    db.dispose()


@pytest.fixture
def difficulty_store(settlement_date: date, difficulty: float) -> InMemoryDifficultyStore:
    return InMemoryDifficultyStore({settlement_date: difficulty})


@pytest.fixture
def settings() -> PipelineSettings:
    """Fast retries and a generous budget so tests never wait on the limiter."""
    return PipelineSettings(
        database_url="sqlite://",
        api_base_url=BASE_URL,
        requests_per_window=10_000,
        rate_window_seconds=60.0,
        rate_check_interval_seconds=0.01,
        max_concurrent_requests=4,
        max_attempts=3,
        base_delay_seconds=0.001,
        max_delay_seconds=0.005,
        request_timeout_seconds=5.0,
    )


@pytest.fixture
def stack_session() -> FakeStackSession:
    return FakeStackSession()


@pytest.fixture
def context(
    settings: PipelineSettings,
    stack_session: FakeStackSession,
    difficulty_store: InMemoryDifficultyStore,
    registry: UnitRegistry,
    database: Database,
) -> PipelineContext:
    return build_context(
        settings,
        session=stack_session,
        difficulty_store=difficulty_store,
        registry=registry,
        database=database,
    )


# =============================================================================
# Row and Record Factories
# =============================================================================


@pytest.fixture
def make_row() -> Callable[..., dict]:
    """Build one upstream stack row in the API's JSON shape."""

    def _make(
        unit_id: str,
        volume: float,
        price: float = -40.0,
        final_price: float | None = None,
        so_flag: bool = True,
        cadl_flag: bool = False,
        lead_party: str | None = None,
    ) -> dict:
        row = {
            "id": unit_id,
            "volume": volume,
            "originalPrice": price,
            "finalPrice": price if final_price is None else final_price,
            "soFlag": so_flag,
            "cadlFlag": cadl_flag,
        }
        if lead_party is not None:
            row["leadPartyName"] = lead_party
        return row

    return _make


@pytest.fixture
def make_record(settlement_date: date) -> Callable[..., SettlementRecord]:
    """Build a canonical record with payment derived from volume and price."""

    def _make(
        unit_id: str,
        period: int = 18,
        volume: float = -10.0,
        price: float = -40.0,
        day: date | None = None,
    ) -> SettlementRecord:
        return SettlementRecord(
            settlement_date=day or settlement_date,
            settlement_period=period,
            unit_id=unit_id,
            lead_party_name="Wind Co",
            volume=volume,
            payment=abs(volume) * abs(price),
            original_price=price,
            final_price=price,
            so_flag=True,
        )

    return _make


# =============================================================================
# Scenario Fixtures
# =============================================================================


@pytest.fixture
def period_18_rows(make_row: Callable[..., dict]) -> list[dict]:
    """Five curtailed wind units plus rows the filter must drop."""
    return [
        make_row("T_WIND-1", -12.5, price=-35.0),
        make_row("T_WIND-2", -8.0, price=-42.5),
        make_row("T_WIND-3", -20.25, price=-10.0, cadl_flag=True, so_flag=False),
        make_row("T_WIND-4", -3.5, price=15.0),
        make_row("T_WIND-5", -6.0, price=-55.0),
        make_row("T_WIND-6", 4.0),
        make_row("T_WIND-6", -2.0, so_flag=False),
        make_row("T_CCGT-1", -30.0),
        make_row("T_UNKNOWN-1", -5.0),
    ]


@pytest.fixture
def period_18_scenario(
    stack_session: FakeStackSession,
    settlement_date: date,
    period_18_rows: list[dict],
) -> FakeStackSession:
    """Upstream where only period 18 carries data, all in the bid stack."""
    stack_session.set_stack("bid", settlement_date, 18, period_18_rows)
    return stack_session
