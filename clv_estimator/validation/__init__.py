"""Model validation tools.

This package provides utilities for validating CLV models, including:
- Prediction performance metrics (MAE, MAPE, RMSE, ARPE, R²)
- Holdout-window evaluation of the purchase-timing model
"""

from clv_estimator.validation.validation import (
    HoldoutEvaluation,
    ValidationMetrics,
    calculate_prediction_metrics,
    evaluate_holdout,
    holdout_by_frequency,
)

__all__ = [
    "HoldoutEvaluation",
    "ValidationMetrics",
    "calculate_prediction_metrics",
    "evaluate_holdout",
    "holdout_by_frequency",
]
