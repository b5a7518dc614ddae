"""Date-scoped network difficulty lookup.

A missing value is never replaced silently: ``get`` raises
``MissingParameterError`` and only ``resolve(..., allow_fallback=True)``
substitutes the most recent earlier value, with a warning.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from typing import Protocol

from loguru import logger
from sqlalchemy import select

from curtailment_ledger.errors import MissingParameterError
from curtailment_ledger.storage.database import Database, NetworkDifficultyModel


class DifficultyStore(Protocol):
    def get(self, day: date) -> float: ...

    def latest_before(self, day: date) -> tuple[date, float] | None: ...

    def has(self, day: date) -> bool: ...


class InMemoryDifficultyStore:
    """Difficulty values held in a dict; used for static runs and tests."""

    def __init__(self, values: Mapping[date, float] | None = None) -> None:
        self._values: dict[date, float] = {}
        for day, value in (values or {}).items():
            self.set(day, value)

    def set(self, day: date, difficulty: float) -> None:
        if difficulty <= 0:
            raise ValueError(f"Difficulty must be positive, got {difficulty}")
        self._values[day] = float(difficulty)

    def has(self, day: date) -> bool:
        return day in self._values

    def get(self, day: date) -> float:
        try:
            return self._values[day]
        except KeyError:
            raise MissingParameterError(day) from None

    def latest_before(self, day: date) -> tuple[date, float] | None:
        earlier = [d for d in self._values if d < day]
        if not earlier:
            return None
        last = max(earlier)
        return last, self._values[last]


class SqlDifficultyStore:
    """Difficulty values persisted in the ``network_difficulty`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def set(self, day: date, difficulty: float) -> None:
        if difficulty <= 0:
            raise ValueError(f"Difficulty must be positive, got {difficulty}")
        with self._db.session_scope() as session:
            session.merge(NetworkDifficultyModel(difficulty_date=day, difficulty=float(difficulty)))

    def has(self, day: date) -> bool:
        with self._db.session() as session:
            return session.get(NetworkDifficultyModel, day) is not None

    def get(self, day: date) -> float:
        with self._db.session() as session:
            row = session.get(NetworkDifficultyModel, day)
            if row is None:
                raise MissingParameterError(day)
            return row.difficulty

    def latest_before(self, day: date) -> tuple[date, float] | None:
        with self._db.session() as session:
            row = session.scalars(
                select(NetworkDifficultyModel)
                .where(NetworkDifficultyModel.difficulty_date < day)
                .order_by(NetworkDifficultyModel.difficulty_date.desc())
                .limit(1)
            ).first()
            return (row.difficulty_date, row.difficulty) if row is not None else None


def resolve_difficulty(store: DifficultyStore, day: date, allow_fallback: bool = False) -> float:
    """Difficulty for ``day``, optionally falling back to the last known value.

    Raises:
        MissingParameterError: If nothing is stored for ``day`` and either
            fallback is disabled or no earlier value exists.
    """
    try:
        return store.get(day)
    except MissingParameterError:
        if not allow_fallback:
            raise
        previous = store.latest_before(day)
        if previous is None:
            raise
        logger.warning(
            "[{}] No difficulty stored; using last known value {} from {}",
            day.isoformat(),
            previous[1],
            previous[0].isoformat(),
        )
        return previous[1]
