"""Runtime configuration for the curtailment ledger.

Settings are read from the environment (optionally via a ``.env`` file) and
validated once into an immutable model that is handed to every component.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_DATABASE_URL = "sqlite:///curtailment_ledger.db"
DEFAULT_API_BASE_URL = "https://data.elexon.co.uk/bmrs/api/v1"
DEFAULT_REGISTRY_PATH = "data/bmu_mapping.json"

PositiveSeconds = Annotated[float, Field(gt=0, description="Duration in seconds")]


class PipelineSettings(BaseModel):
    """Validated pipeline configuration.

    Defaults keep the request budget below the upstream limit of 5000
    requests per minute.
    """

    model_config = ConfigDict(frozen=True)

    database_url: str = DEFAULT_DATABASE_URL
    api_base_url: str = DEFAULT_API_BASE_URL
    registry_path: Path = Path(DEFAULT_REGISTRY_PATH)

    # Rate limiting
    requests_per_window: Annotated[int, Field(gt=0)] = 4500
    rate_window_seconds: PositiveSeconds = 60.0
    rate_check_interval_seconds: PositiveSeconds = 0.1
    max_concurrent_requests: Annotated[int, Field(gt=0, le=64)] = 10

    # Retry / backoff
    max_attempts: Annotated[int, Field(gt=0, le=20)] = 5
    base_delay_seconds: PositiveSeconds = 1.0
    max_delay_seconds: PositiveSeconds = 30.0
    request_timeout_seconds: PositiveSeconds = 30.0

    # Reconciliation
    max_repair_cycles: Annotated[int, Field(gt=0, le=10)] = 3
    sample_periods: tuple[int, ...] = (1, 12, 24, 36, 48)
    volume_tolerance_mwh: Annotated[float, Field(ge=0)] = 0.01
    payment_tolerance: Annotated[float, Field(ge=0)] = 0.01
    # Upstream data for a period is treated as final this long after it closes
    settlement_lag_hours: Annotated[float, Field(ge=0)] = 24.0

    # Yield calculation
    miner_models: tuple[str, ...] = ("S19J_PRO", "S9", "M20S")
    allow_difficulty_fallback: bool = False

    log_level: str = "INFO"
    log_file: Path | None = None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> PipelineSettings:
        """Build settings from ``CURTAILMENT_*`` environment variables."""
        load_dotenv(env_file)

        def _get(name: str) -> str | None:
            value = os.getenv(name)
            return value if value not in (None, "") else None

        values: dict[str, object] = {}
        mapping = {
            "database_url": "DATABASE_URL",
            "api_base_url": "CURTAILMENT_API_BASE_URL",
            "registry_path": "CURTAILMENT_REGISTRY_PATH",
            "requests_per_window": "CURTAILMENT_REQUESTS_PER_MINUTE",
            "max_concurrent_requests": "CURTAILMENT_MAX_CONCURRENT_REQUESTS",
            "max_attempts": "CURTAILMENT_MAX_ATTEMPTS",
            "base_delay_seconds": "CURTAILMENT_BASE_DELAY_SECONDS",
            "max_delay_seconds": "CURTAILMENT_MAX_DELAY_SECONDS",
            "request_timeout_seconds": "CURTAILMENT_REQUEST_TIMEOUT_SECONDS",
            "max_repair_cycles": "CURTAILMENT_MAX_REPAIR_CYCLES",
            "settlement_lag_hours": "CURTAILMENT_SETTLEMENT_LAG_HOURS",
            "allow_difficulty_fallback": "CURTAILMENT_ALLOW_DIFFICULTY_FALLBACK",
            "log_level": "CURTAILMENT_LOG_LEVEL",
            "log_file": "CURTAILMENT_LOG_FILE",
        }
        for field_name, env_name in mapping.items():
            raw = _get(env_name)
            if raw is not None:
                values[field_name] = raw

        models = _get("CURTAILMENT_MINER_MODELS")
        if models is not None:
            values["miner_models"] = tuple(
                m.strip() for m in models.split(",") if m.strip()
            )

        return cls.model_validate(values)
