"""Holdout validation of the purchase-timing model.

This module provides tools for validating model performance on a holdout
window:
- Performance metrics calculation (MAE, MAPE, RMSE, ARPE, R²)
- Comparison of predicted and observed holdout transaction counts for a
  calibration/holdout split produced by
  :func:`clv_estimator.foundation.cbs.split_calibration`

Target Performance:
- ARPE < 10% (aggregate level)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

import numpy as np
import pandas as pd

from clv_estimator.errors import InvalidInputError
from clv_estimator.foundation.cbs import CalibrationSplit
from clv_estimator.models.bg_nbd import BGNBDModelWrapper
from clv_estimator.models.model_prep import prepare_bg_nbd_inputs

logger = logging.getLogger(__name__)

# Small epsilon for floating point comparisons to avoid division by zero
_EPSILON = 1e-10

# Calibration frequencies above this are pooled in holdout_by_frequency()
MAX_FREQUENCY_BUCKET = 7


@dataclass(frozen=True)
class ValidationMetrics:
    """Model validation performance metrics.

    Attributes
    ----------
    mae:
        Mean Absolute Error - average absolute difference between actual and predicted
    mape:
        Mean Absolute Percentage Error - average percentage error (%), over
        customers with non-zero actual values
    rmse:
        Root Mean Squared Error - square root of average squared errors
    arpe:
        Aggregate Percent Error - percentage error of the totals (%)
    r_squared:
        R² coefficient of determination. Can be negative when the model
        performs worse than predicting the mean.
    sample_size:
        Number of samples used in validation
    """

    mae: Decimal
    mape: Decimal
    rmse: Decimal
    arpe: Decimal
    r_squared: Decimal
    sample_size: int

    def __post_init__(self) -> None:
        """Validate metrics are in reasonable ranges (R² may be negative)."""
        if self.sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {self.sample_size}")
        if self.mae < 0:
            raise ValueError(f"mae must be non-negative, got {self.mae}")
        if self.mape < 0:
            raise ValueError(f"mape must be non-negative, got {self.mape}")
        if self.rmse < 0:
            raise ValueError(f"rmse must be non-negative, got {self.rmse}")
        if self.arpe < 0:
            raise ValueError(f"arpe must be non-negative, got {self.arpe}")


def calculate_prediction_metrics(
    actual: pd.Series, predicted: pd.Series
) -> ValidationMetrics:
    """Calculate validation metrics comparing actual vs predicted values.

    Parameters
    ----------
    actual:
        Series of observed values (ground truth)
    predicted:
        Series of predicted values, aligned by position with ``actual``

    Returns
    -------
    ValidationMetrics
        Metrics rounded to 2 decimals (R² to 3 decimals)

    Raises
    ------
    ValueError:
        If actual and predicted have different lengths, are empty or contain
        NaN/inf values

    Notes
    -----
    MAPE excludes customers with zero actual value; it is 0.0 when every
    actual value is zero. ARPE and R² fall back to 0.0 when undefined.

    Examples
    --------
    >>> import pandas as pd
    >>> actual = pd.Series([100.0, 150.0, 200.0, 50.0])
    >>> predicted = pd.Series([95.0, 160.0, 190.0, 55.0])
    >>> metrics = calculate_prediction_metrics(actual, predicted)
    >>> metrics.mae
    Decimal('7.50')
    >>> metrics.r_squared > Decimal('0.9')
    True
    """
    if len(actual) != len(predicted):
        raise ValueError(
            f"actual and predicted must have same length: "
            f"{len(actual)} != {len(predicted)}"
        )
    if len(actual) == 0:
        raise ValueError("actual and predicted cannot be empty")

    actual_values = np.asarray(actual, dtype=float)
    predicted_values = np.asarray(predicted, dtype=float)
    if not np.all(np.isfinite(actual_values)):
        raise ValueError("actual contains NaN or inf values")
    if not np.all(np.isfinite(predicted_values)):
        raise ValueError("predicted contains NaN or inf values")

    absolute_errors = np.abs(actual_values - predicted_values)
    mae = Decimal(str(np.mean(absolute_errors)))

    # Most holdout counts are zero; MAPE only covers customers who bought
    nonzero_mask = np.abs(actual_values) > _EPSILON
    if np.any(nonzero_mask):
        percentage_errors = (
            absolute_errors[nonzero_mask] / np.abs(actual_values[nonzero_mask])
        ) * 100
        mape = Decimal(str(np.mean(percentage_errors)))
    else:
        mape = Decimal("0.0")

    squared_errors = (actual_values - predicted_values) ** 2
    rmse = Decimal(str(np.sqrt(np.mean(squared_errors))))

    total_actual = np.sum(actual_values)
    total_predicted = np.sum(predicted_values)
    if abs(total_actual) > _EPSILON:
        arpe = Decimal(str(abs(total_actual - total_predicted) / abs(total_actual) * 100))
    else:
        arpe = Decimal("0.0")

    ss_res = np.sum(squared_errors)
    ss_tot = np.sum((actual_values - np.mean(actual_values)) ** 2)
    if ss_tot > _EPSILON:
        r_squared = Decimal(str(1 - (ss_res / ss_tot)))
    else:
        r_squared = Decimal("0.0")

    return ValidationMetrics(
        mae=mae.quantize(Decimal("0.01")),
        mape=mape.quantize(Decimal("0.01")),
        rmse=rmse.quantize(Decimal("0.01")),
        arpe=arpe.quantize(Decimal("0.01")),
        r_squared=r_squared.quantize(Decimal("0.001")),
        sample_size=len(actual_values),
    )


@dataclass(frozen=True)
class HoldoutEvaluation:
    """Predicted vs observed holdout transactions.

    Attributes
    ----------
    metrics:
        Per-customer prediction metrics of the holdout counts
    comparison:
        DataFrame with columns customer_id, actual_transactions and
        predicted_transactions
    holdout_length:
        Length of the holdout window (T_star) in the split's time unit
    total_actual:
        Observed holdout transactions over all calibration customers
    total_predicted:
        Expected holdout transactions over all calibration customers
    by_frequency:
        Mean actual and predicted holdout transactions per calibration
        frequency (see :func:`holdout_by_frequency`)
    """

    metrics: ValidationMetrics
    comparison: pd.DataFrame
    holdout_length: float
    total_actual: float
    total_predicted: float
    by_frequency: pd.DataFrame


def holdout_by_frequency(
    frequency: pd.Series,
    actual: pd.Series,
    predicted: pd.Series,
    max_frequency: int = MAX_FREQUENCY_BUCKET,
) -> pd.DataFrame:
    """Average holdout transactions grouped by calibration frequency.

    This is the conditional-expectation check of Fader, Hardie and Lee: for
    each number of calibration repeat purchases, the mean observed holdout
    count next to the mean predicted count. Frequencies above
    ``max_frequency`` are pooled into the last bucket.

    Returns
    -------
    pd.DataFrame
        Columns frequency, n_customers, actual_mean and predicted_mean, one
        row per observed bucket in ascending order.

    Examples
    --------
    >>> import pandas as pd
    >>> table = holdout_by_frequency(
    ...     pd.Series([0, 0, 1, 9]),
    ...     pd.Series([0.0, 1.0, 2.0, 4.0]),
    ...     pd.Series([0.2, 0.2, 1.5, 5.0]),
    ...     max_frequency=3,
    ... )
    >>> table["frequency"].tolist(), table["n_customers"].tolist()
    ([0, 1, 3], [2, 1, 1])
    """
    if max_frequency < 1:
        raise ValueError(f"max_frequency must be >= 1, got {max_frequency}")

    frame = pd.DataFrame(
        {
            "frequency": np.minimum(np.asarray(frequency, dtype=int), max_frequency),
            "actual": np.asarray(actual, dtype=float),
            "predicted": np.asarray(predicted, dtype=float),
        }
    )
    return (
        frame.groupby("frequency", sort=True)
        .agg(
            n_customers=("actual", "size"),
            actual_mean=("actual", "mean"),
            predicted_mean=("predicted", "mean"),
        )
        .reset_index()
    )


def evaluate_holdout(
    bg_nbd_model: BGNBDModelWrapper, split: CalibrationSplit
) -> HoldoutEvaluation:
    """Compare BG/NBD holdout predictions with the observed holdout counts.

    The model must have been fitted on the calibration statistics of
    ``split`` (see :func:`clv_estimator.models.model_prep.prepare_bg_nbd_inputs`).

    Raises
    ------
    InvalidInputError:
        If ``split`` carries no holdout window or no customers
    RuntimeError:
        If the model has not been fitted
    """
    if not split.has_holdout or not split.statistics:
        raise InvalidInputError(
            "Holdout evaluation requires a calibration split with a holdout "
            "window. Pass calibration_end earlier than the last transaction."
        )

    holdout_length = float(split.statistics[0].T_star)
    inputs = prepare_bg_nbd_inputs(split.statistics)
    predictions = bg_nbd_model.predict_purchases(inputs, time_periods=holdout_length)

    actual = pd.DataFrame(
        {
            "customer_id": [row.customer_id for row in split.statistics],
            "actual_transactions": [float(row.x_star) for row in split.statistics],
        }
    )
    comparison = actual.merge(predictions, on="customer_id", how="left").rename(
        columns={"predicted_purchases": "predicted_transactions"}
    )
    comparison["predicted_transactions"] = comparison["predicted_transactions"].astype(
        float
    )

    metrics = calculate_prediction_metrics(
        comparison["actual_transactions"], comparison["predicted_transactions"]
    )
    total_actual = float(comparison["actual_transactions"].sum())
    total_predicted = float(comparison["predicted_transactions"].sum())
    logger.info(
        f"Holdout ({holdout_length:.2f} {split.time_unit.value}s): "
        f"actual={total_actual:.0f}, predicted={total_predicted:.1f}, "
        f"ARPE={metrics.arpe}%"
    )
    return HoldoutEvaluation(
        metrics=metrics,
        comparison=comparison,
        holdout_length=holdout_length,
        total_actual=total_actual,
        total_predicted=total_predicted,
        by_frequency=holdout_by_frequency(
            inputs["frequency"],
            comparison["actual_transactions"],
            comparison["predicted_transactions"],
        ),
    )
