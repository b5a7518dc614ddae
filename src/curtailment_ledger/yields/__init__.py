"""Yield calculation under miner profiles."""

from curtailment_ledger.yields.calculator import (
    YieldCalculator,
    YieldRunResult,
    network_hashrate_th,
    yields_for_volumes,
)
from curtailment_ledger.yields.difficulty import (
    DifficultyStore,
    InMemoryDifficultyStore,
    SqlDifficultyStore,
    resolve_difficulty,
)
from curtailment_ledger.yields.profiles import (
    MINER_PROFILES,
    block_reward_for,
    resolve_profiles,
)

__all__ = [
    "YieldCalculator",
    "YieldRunResult",
    "network_hashrate_th",
    "yields_for_volumes",
    "DifficultyStore",
    "InMemoryDifficultyStore",
    "SqlDifficultyStore",
    "resolve_difficulty",
    "MINER_PROFILES",
    "block_reward_for",
    "resolve_profiles",
]
