"""Foundational building blocks for the CLV estimation pipeline.

This package exposes the transaction event contract, the paginated log
source and the customer-by-sufficient-statistic (CBS) aggregation used by
both probabilistic models.
"""

from .cbs import (
    CalibrationSplit,
    CustomerSufficientStatistics,
    aggregate_transactions,
    cbs_to_frame,
    split_calibration,
)
from .sources import PaginatedTransactionSource
from .transactions import (
    CustomerTimeline,
    TimeUnit,
    TransactionEvent,
    collapse_transactions,
)

__all__ = [
    "CalibrationSplit",
    "CustomerSufficientStatistics",
    "CustomerTimeline",
    "PaginatedTransactionSource",
    "TimeUnit",
    "TransactionEvent",
    "aggregate_transactions",
    "cbs_to_frame",
    "collapse_transactions",
    "split_calibration",
]
