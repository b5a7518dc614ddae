"""Exception taxonomy for the ingestion and reconciliation pipeline.

Transient upstream failures are retried, permanent ones abort a single
period, and scope-level failures are reported rather than raised out of
the job.
"""

from __future__ import annotations

from datetime import date


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class RegistryError(PipelineError):
    """The unit registry file is missing or malformed."""


class UpstreamError(PipelineError):
    """Transient upstream failure (network, rate limit, 5xx). Retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamFatalError(PipelineError):
    """Permanent upstream failure, e.g. a response that violates the schema."""


class FetchCancelled(PipelineError):
    """The fetch was cancelled or its deadline passed."""


class MissingParameterError(PipelineError):
    """No difficulty value is available for a settlement date."""

    def __init__(self, settlement_date: date) -> None:
        super().__init__(f"No difficulty available for {settlement_date.isoformat()}")
        self.settlement_date = settlement_date


class PersistenceError(PipelineError):
    """A storage operation failed and was rolled back."""


class ReconciliationExhausted(PipelineError):
    """Repair cycles were used up without reaching a consistent scope."""

    def __init__(self, scope_key: str, cycles: int) -> None:
        super().__init__(
            f"Scope {scope_key} still drifted after {cycles} repair cycle(s)"
        )
        self.scope_key = scope_key
        self.cycles = cycles
