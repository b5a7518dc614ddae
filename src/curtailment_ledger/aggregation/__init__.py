"""Day, month and year aggregation of curtailment records and yields."""

from curtailment_ledger.aggregation.engine import AggregationEngine, ordered_sum

__all__ = ["AggregationEngine", "ordered_sum"]
