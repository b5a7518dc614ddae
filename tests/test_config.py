"""Tests for settings and logging setup."""

from pathlib import Path

import pytest
from loguru import logger
from pydantic import ValidationError

from curtailment_ledger.config import PipelineSettings
from curtailment_ledger.logs import configure_logging

ENV_NAMES = [
    "DATABASE_URL",
    "CURTAILMENT_MAX_ATTEMPTS",
    "CURTAILMENT_MAX_REPAIR_CYCLES",
    "CURTAILMENT_MINER_MODELS",
    "CURTAILMENT_ALLOW_DIFFICULTY_FALLBACK",
    "CURTAILMENT_SETTLEMENT_LAG_HOURS",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Unset settings variables and restore them, including any a .env file sets."""
    for name in ENV_NAMES:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


class TestPipelineSettings:
    """Tests for PipelineSettings."""

    def test_defaults(self) -> None:
        """Test defaults stay under the upstream request budget."""
        settings = PipelineSettings()

        assert settings.requests_per_window == 4500
        assert settings.rate_window_seconds == 60.0
        assert settings.max_concurrent_requests == 10
        assert settings.max_attempts == 5
        assert settings.base_delay_seconds == 1.0
        assert settings.max_delay_seconds == 30.0
        assert settings.max_repair_cycles == 3
        assert settings.miner_models == ("S19J_PRO", "S9", "M20S")
        assert settings.allow_difficulty_fallback is False
        assert settings.settlement_lag_hours == 24.0

    def test_from_env(self, clean_env: pytest.MonkeyPatch) -> None:
        """Test environment variables override defaults."""
        clean_env.setenv("DATABASE_URL", "sqlite:///ledger-test.db")
        clean_env.setenv("CURTAILMENT_MAX_ATTEMPTS", "7")
        clean_env.setenv("CURTAILMENT_MINER_MODELS", "S9, M20S")
        clean_env.setenv("CURTAILMENT_ALLOW_DIFFICULTY_FALLBACK", "true")
        clean_env.setenv("CURTAILMENT_SETTLEMENT_LAG_HOURS", "6")

        settings = PipelineSettings.from_env()

        assert settings.database_url == "sqlite:///ledger-test.db"
        assert settings.max_attempts == 7
        assert settings.miner_models == ("S9", "M20S")
        assert settings.allow_difficulty_fallback is True
        assert settings.settlement_lag_hours == 6.0

    def test_from_env_file(self, clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test values are read from an explicit .env file."""
        env_file = tmp_path / ".env"
        env_file.write_text("CURTAILMENT_MAX_REPAIR_CYCLES=5\n")

        settings = PipelineSettings.from_env(env_file)

        assert settings.max_repair_cycles == 5

    def test_invalid_value_rejected(self, clean_env: pytest.MonkeyPatch) -> None:
        """Test out-of-range values fail validation."""
        clean_env.setenv("CURTAILMENT_MAX_ATTEMPTS", "0")

        with pytest.raises(ValidationError):
            PipelineSettings.from_env()

    def test_immutability(self) -> None:
        settings = PipelineSettings()

        with pytest.raises(ValidationError):
            settings.max_attempts = 2  # type: ignore[misc]


class TestConfigureLogging:
    def test_file_sink_receives_messages(self, tmp_path: Path) -> None:
        """Test the optional file sink captures log output."""
        log_file = tmp_path / "ledger.log"
        configure_logging("WARNING", log_file)

        logger.warning("[2024-03-15 P18] test message")
        logger.complete()
        configure_logging("INFO")

        assert "[2024-03-15 P18] test message" in log_file.read_text()
