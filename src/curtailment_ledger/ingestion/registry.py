"""Static unit registry.

Maps balancing mechanism unit identifiers to their fuel category and owning
lead party. Loaded once per run and shared by reference; never mutated.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from types import MappingProxyType

from loguru import logger
from pydantic import ValidationError

from curtailment_ledger.domain.models import UnitRegistryEntry
from curtailment_ledger.errors import RegistryError


class UnitRegistry:
    """Immutable lookup of registry entries by unit identifier."""

    __slots__ = ("_entries", "_wind_ids")

    def __init__(self, entries: Iterable[UnitRegistryEntry]) -> None:
        by_id: dict[str, UnitRegistryEntry] = {}
        for entry in entries:
            by_id.setdefault(entry.unit_id, entry)
        self._entries = MappingProxyType(by_id)
        self._wind_ids = frozenset(e.unit_id for e in by_id.values() if e.is_wind)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._entries

    @property
    def wind_unit_ids(self) -> frozenset[str]:
        return self._wind_ids

    def is_wind(self, unit_id: str) -> bool:
        return unit_id in self._wind_ids

    def get(self, unit_id: str) -> UnitRegistryEntry | None:
        return self._entries.get(unit_id)

    def lead_party(self, unit_id: str) -> str:
        entry = self._entries.get(unit_id)
        return entry.lead_party_name if entry is not None else ""


def load_registry(path: str | Path) -> UnitRegistry:
    """Load the registry from a JSON list of unit mappings.

    Args:
        path: File holding ``[{"elexonBmUnit", "fuelType", "leadPartyName"}, ...]``.

    Returns:
        The immutable registry.

    Raises:
        RegistryError: If the file is missing, not JSON, or holds invalid entries.
    """
    path = Path(path)
    logger.info("Loading unit registry from {}", path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RegistryError(f"Registry file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise RegistryError(f"Registry file is not valid JSON: {path}") from exc

    if not isinstance(payload, list):
        raise RegistryError(f"Registry must be a JSON list, got {type(payload).__name__}")

    try:
        entries = [UnitRegistryEntry.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise RegistryError(f"Invalid registry entry in {path}: {exc}") from exc

    registry = UnitRegistry(entries)
    logger.info(
        "Loaded {} registry units ({} wind)", len(registry), len(registry.wind_unit_ids)
    )
    return registry
