"""Database schema and connection handling.

This module provides the SQLAlchemy models for canonical settlement records
and every artifact derived from them, plus a small ``Database`` wrapper that
owns the engine and hands out transactional sessions.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from curtailment_ledger.domain.models import SettlementRecord, utc_now
from curtailment_ledger.errors import PersistenceError

Base = declarative_base()


# =============================================================================
# Canonical Records
# =============================================================================


class CurtailmentRecordModel(Base):
    """One curtailed unit in one settlement period."""

    __tablename__ = "curtailment_records"
    __table_args__ = (
        UniqueConstraint(
            "settlement_date",
            "settlement_period",
            "farm_id",
            name="uq_curtailment_date_period_farm",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    settlement_date = Column(Date, nullable=False, index=True)
    settlement_period = Column(Integer, nullable=False)
    farm_id = Column(String(64), nullable=False)
    lead_party_name = Column(String(200), nullable=False, default="")
    volume = Column(Float, nullable=False)
    payment = Column(Float, nullable=False)
    original_price = Column(Float, nullable=False)
    final_price = Column(Float, nullable=False)
    so_flag = Column(Boolean, nullable=False, default=False)
    cadl_flag = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)

    def to_domain(self) -> SettlementRecord:
        return SettlementRecord(
            settlement_date=self.settlement_date,
            settlement_period=self.settlement_period,
            unit_id=self.farm_id,
            lead_party_name=self.lead_party_name or "",
            volume=self.volume,
            payment=self.payment,
            original_price=self.original_price,
            final_price=self.final_price,
            so_flag=bool(self.so_flag),
            cadl_flag=bool(self.cadl_flag),
        )


class PeriodIngestionModel(Base):
    """Outcome of the latest ingestion attempt for a (date, period)."""

    __tablename__ = "period_ingestions"

    settlement_date = Column(Date, primary_key=True)
    settlement_period = Column(Integer, primary_key=True)
    status = Column(String(20), nullable=False)
    record_count = Column(Integer, nullable=False, default=0)
    total_volume = Column(Float, nullable=False, default=0.0)
    total_payment = Column(Float, nullable=False, default=0.0)
    error_message = Column(Text, nullable=True)
    # fetched before the settlement lag had passed; re-fetched once final
    provisional = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=utc_now, nullable=False)


# =============================================================================
# Aggregates
# =============================================================================


class DailyAggregateModel(Base):
    __tablename__ = "daily_aggregates"

    summary_date = Column(Date, primary_key=True)
    total_curtailed_energy = Column(Float, nullable=False, default=0.0)
    total_payment = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False)


class MonthlyAggregateModel(Base):
    __tablename__ = "monthly_aggregates"

    year_month = Column(String(7), primary_key=True)
    total_curtailed_energy = Column(Float, nullable=False, default=0.0)
    total_payment = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False)


class YearlyAggregateModel(Base):
    __tablename__ = "yearly_aggregates"

    year = Column(String(4), primary_key=True)
    total_curtailed_energy = Column(Float, nullable=False, default=0.0)
    total_payment = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False)


# =============================================================================
# Yields
# =============================================================================


class YieldRecordModel(Base):
    """Yield for one curtailment record under one miner model."""

    __tablename__ = "yield_records"
    __table_args__ = (
        UniqueConstraint(
            "settlement_date",
            "settlement_period",
            "farm_id",
            "miner_model",
            name="uq_yield_date_period_farm_model",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    settlement_date = Column(Date, nullable=False, index=True)
    settlement_period = Column(Integer, nullable=False)
    farm_id = Column(String(64), nullable=False)
    miner_model = Column(String(32), nullable=False)
    yield_amount = Column(Float, nullable=False)
    difficulty = Column(Float, nullable=False)
    calculated_at = Column(DateTime, default=utc_now)


class YieldDailySummaryModel(Base):
    __tablename__ = "yield_daily_summaries"

    summary_date = Column(Date, primary_key=True)
    miner_model = Column(String(32), primary_key=True)
    total_yield = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False)


class YieldMonthlySummaryModel(Base):
    __tablename__ = "yield_monthly_summaries"

    year_month = Column(String(7), primary_key=True)
    miner_model = Column(String(32), primary_key=True)
    total_yield = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False)


class YieldYearlySummaryModel(Base):
    __tablename__ = "yield_yearly_summaries"

    year = Column(String(4), primary_key=True)
    miner_model = Column(String(32), primary_key=True)
    total_yield = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False)


class NetworkDifficultyModel(Base):
    """Network difficulty in force on a calendar day."""

    __tablename__ = "network_difficulty"

    difficulty_date = Column(Date, primary_key=True)
    difficulty = Column(Float, nullable=False)


# =============================================================================
# Connection Handling
# =============================================================================


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class Database:
    """Owns the engine and session factory for one pipeline run."""

    def __init__(self, database_url: str) -> None:
        self.url = database_url
        self.engine = create_db_engine(database_url)
        self._session_factory = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def init_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(bind=self.engine)

    def drop_schema(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def session(self) -> Session:
        """Open a session for read-only use; the caller closes it."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """One unit of work: commit on success, roll back on any failure.

        Storage errors surface as ``PersistenceError``.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(str(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
