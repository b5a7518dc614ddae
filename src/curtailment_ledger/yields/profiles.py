"""Miner profiles and network constants used by the yield calculation."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date

from curtailment_ledger.domain.models import MinerProfile

SETTLEMENT_PERIOD_HOURS = 0.5
BLOCK_INTERVAL_SECONDS = 600
BLOCKS_PER_SETTLEMENT_PERIOD = 3

# (first day in force, reward per block in BTC)
BLOCK_REWARD_SCHEDULE: tuple[tuple[date, float], ...] = (
    (date(2020, 5, 11), 6.25),
    (date(2024, 4, 20), 3.125),
)

MINER_PROFILES: dict[str, MinerProfile] = {
    "S19J_PRO": MinerProfile(name="S19J_PRO", hashrate_th=100.0, power_watts=3050.0),
    "S9": MinerProfile(name="S9", hashrate_th=14.0, power_watts=1350.0),
    "M20S": MinerProfile(name="M20S", hashrate_th=68.0, power_watts=3360.0),
}


def block_reward_for(day: date) -> float:
    """Block subsidy in force on ``day``."""
    reward = BLOCK_REWARD_SCHEDULE[0][1]
    for start, value in BLOCK_REWARD_SCHEDULE:
        if day >= start:
            reward = value
    return reward


def resolve_profiles(names: Iterable[str]) -> list[MinerProfile]:
    """Look up profiles by name, preserving order.

    Raises:
        ValueError: For an unknown miner model.
    """
    profiles: list[MinerProfile] = []
    for name in names:
        key = name.strip().upper()
        if key not in MINER_PROFILES:
            raise ValueError(
                f"Unknown miner model {name!r}; expected one of {sorted(MINER_PROFILES)}"
            )
        profiles.append(MINER_PROFILES[key])
    return profiles
