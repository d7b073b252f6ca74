"""Tests for holdout validation.

Tests validation metrics calculation and the holdout comparison of the
purchase-timing model.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pandas as pd
import pytest

from clv_estimator.errors import InvalidInputError
from clv_estimator.foundation.cbs import aggregate_transactions
from clv_estimator.models.bg_nbd import BGNBDModelWrapper, BGNBDParameters
from clv_estimator.validation.validation import (
    ValidationMetrics,
    calculate_prediction_metrics,
    evaluate_holdout,
    holdout_by_frequency,
)

T0 = datetime(2024, 1, 1)


@pytest.fixture
def transactions():
    """A repeat buyer, a one-time buyer and a customer acquired in the holdout."""
    return [
        {"customer_id": "A", "amount": 10.0, "timestamp": T0},
        {"customer_id": "A", "amount": 20.0, "timestamp": T0 + timedelta(weeks=2)},
        {"customer_id": "A", "amount": 30.0, "timestamp": T0 + timedelta(weeks=6)},
        {"customer_id": "B", "amount": 40.0, "timestamp": T0 + timedelta(weeks=1)},
        {"customer_id": "C", "amount": 8.0, "timestamp": T0 + timedelta(weeks=5)},
        {"customer_id": "C", "amount": 12.0, "timestamp": T0 + timedelta(weeks=8)},
    ]


@pytest.fixture
def fitted_model():
    """BG/NBD wrapper with known parameters."""
    model = BGNBDModelWrapper()
    model.params = BGNBDParameters(r=0.243, alpha=4.414, a=0.793, b=2.426)
    return model


class TestValidationMetrics:
    """Tests for ValidationMetrics dataclass."""

    def test_valid_metrics(self):
        """Test ValidationMetrics with valid values."""
        metrics = ValidationMetrics(
            mae=Decimal("10.50"),
            mape=Decimal("15.30"),
            rmse=Decimal("12.75"),
            arpe=Decimal("5.20"),
            r_squared=Decimal("0.850"),
            sample_size=100,
        )

        assert metrics.mae == Decimal("10.50")
        assert metrics.arpe == Decimal("5.20")
        assert metrics.sample_size == 100

    def test_negative_r_squared_allowed(self):
        """R² below zero means worse than the mean, not invalid."""
        metrics = ValidationMetrics(
            mae=Decimal("1.0"),
            mape=Decimal("1.0"),
            rmse=Decimal("1.0"),
            arpe=Decimal("1.0"),
            r_squared=Decimal("-0.5"),
            sample_size=3,
        )
        assert metrics.r_squared < 0

    def test_negative_mae_raises_error(self):
        """Test that negative MAE raises ValueError."""
        with pytest.raises(ValueError, match="mae must be non-negative"):
            ValidationMetrics(
                mae=Decimal("-10.0"),
                mape=Decimal("15.0"),
                rmse=Decimal("12.0"),
                arpe=Decimal("5.0"),
                r_squared=Decimal("0.8"),
                sample_size=100,
            )

    def test_zero_sample_size_raises_error(self):
        """Test that sample_size < 1 raises ValueError."""
        with pytest.raises(ValueError, match="sample_size must be >= 1"):
            ValidationMetrics(
                mae=Decimal("10.0"),
                mape=Decimal("15.0"),
                rmse=Decimal("12.0"),
                arpe=Decimal("5.0"),
                r_squared=Decimal("0.8"),
                sample_size=0,
            )


class TestCalculatePredictionMetrics:
    """Tests for calculate_prediction_metrics()."""

    def test_perfect_predictions(self):
        """Identical series give zero errors and R² of one."""
        actual = pd.Series([1.0, 2.0, 3.0])
        metrics = calculate_prediction_metrics(actual, actual.copy())

        assert metrics.mae == Decimal("0.00")
        assert metrics.rmse == Decimal("0.00")
        assert metrics.arpe == Decimal("0.00")
        assert metrics.r_squared == Decimal("1.000")
        assert metrics.sample_size == 3

    def test_known_values(self):
        """Hand-computed metrics for a small example."""
        actual = pd.Series([100.0, 150.0, 200.0, 50.0])
        predicted = pd.Series([95.0, 160.0, 190.0, 55.0])
        metrics = calculate_prediction_metrics(actual, predicted)

        assert metrics.mae == Decimal("7.50")
        assert metrics.rmse == Decimal("7.91")
        # totals are 500 vs 500
        assert metrics.arpe == Decimal("0.00")
        # mean of 5%, 6.67%, 5%, 10%
        assert metrics.mape == Decimal("6.67")

    def test_mape_skips_zero_actuals(self):
        """Customers with zero actual transactions do not enter MAPE."""
        actual = pd.Series([0.0, 4.0])
        predicted = pd.Series([1.0, 2.0])
        metrics = calculate_prediction_metrics(actual, predicted)
        assert metrics.mape == Decimal("50.00")

    def test_all_zero_actuals(self):
        """Undefined percentage metrics fall back to zero."""
        actual = pd.Series([0.0, 0.0])
        predicted = pd.Series([0.5, 0.5])
        metrics = calculate_prediction_metrics(actual, predicted)
        assert metrics.mape == Decimal("0.0")
        assert metrics.arpe == Decimal("0.0")
        assert metrics.r_squared == Decimal("0.0")

    def test_length_mismatch_raises_error(self):
        """Series must align."""
        with pytest.raises(ValueError, match="same length"):
            calculate_prediction_metrics(pd.Series([1.0]), pd.Series([1.0, 2.0]))

    def test_empty_series_raises_error(self):
        """At least one observation is required."""
        with pytest.raises(ValueError, match="cannot be empty"):
            calculate_prediction_metrics(pd.Series([], dtype=float), pd.Series([], dtype=float))

    def test_nan_predictions_raise_error(self):
        """Undefined predictions cannot be scored."""
        with pytest.raises(ValueError, match="predicted contains NaN"):
            calculate_prediction_metrics(pd.Series([1.0]), pd.Series([float("nan")]))


class TestHoldoutByFrequency:
    """Tests for holdout_by_frequency()."""

    def test_groups_and_pools_high_frequencies(self):
        """Frequencies above the cap share the last bucket."""
        table = holdout_by_frequency(
            pd.Series([0, 0, 1, 4, 9]),
            pd.Series([0.0, 2.0, 1.0, 3.0, 5.0]),
            pd.Series([0.5, 0.5, 1.5, 2.0, 6.0]),
            max_frequency=3,
        )

        assert list(table.columns) == [
            "frequency",
            "n_customers",
            "actual_mean",
            "predicted_mean",
        ]
        assert table["frequency"].tolist() == [0, 1, 3]
        assert table["n_customers"].tolist() == [2, 1, 2]
        assert table["actual_mean"].tolist() == pytest.approx([1.0, 1.0, 4.0])
        assert table["predicted_mean"].tolist() == pytest.approx([0.5, 1.5, 4.0])

    def test_invalid_cap_raises_error(self):
        """The pooling cap must be at least one."""
        with pytest.raises(ValueError, match="max_frequency must be >= 1"):
            holdout_by_frequency(
                pd.Series([0]), pd.Series([0.0]), pd.Series([0.0]), max_frequency=0
            )


class TestEvaluateHoldout:
    """Tests for evaluate_holdout()."""

    def test_by_frequency_table(self, transactions, fitted_model):
        """The evaluation carries per-frequency means of the comparison."""
        split = aggregate_transactions(
            transactions, calibration_end=T0 + timedelta(weeks=4)
        )
        evaluation = evaluate_holdout(fitted_model, split)
        table = evaluation.by_frequency

        # A has one calibration repeat purchase, B none
        assert table["frequency"].tolist() == [0, 1]
        assert table["n_customers"].tolist() == [1, 1]
        assert table["actual_mean"].tolist() == [0.0, 1.0]
        assert table["predicted_mean"].tolist() == pytest.approx(
            evaluation.comparison["predicted_transactions"].iloc[::-1].tolist()
        )

    def test_compares_calibration_customers(self, transactions, fitted_model):
        """Every calibration customer is compared over the holdout window."""
        split = aggregate_transactions(
            transactions, calibration_end=T0 + timedelta(weeks=4)
        )
        evaluation = evaluate_holdout(fitted_model, split)

        assert evaluation.holdout_length == pytest.approx(4.0)
        assert list(evaluation.comparison.columns) == [
            "customer_id",
            "actual_transactions",
            "predicted_transactions",
        ]
        # C is first seen after the cutoff
        assert evaluation.comparison["customer_id"].tolist() == ["A", "B"]
        assert evaluation.comparison["actual_transactions"].tolist() == [1.0, 0.0]
        assert evaluation.total_actual == 1.0
        assert evaluation.metrics.sample_size == 2

    def test_predictions_match_model(self, transactions, fitted_model):
        """Predicted counts come from the model over T_star."""
        split = aggregate_transactions(
            transactions, calibration_end=T0 + timedelta(weeks=4)
        )
        evaluation = evaluate_holdout(fitted_model, split)

        calibration = pd.DataFrame(
            {
                "customer_id": ["A", "B"],
                "frequency": [1, 0],
                "recency": [2.0, 0.0],
                "T": [4.0, 3.0],
            }
        )
        expected = fitted_model.predict_purchases(calibration, time_periods=4.0)
        assert evaluation.comparison["predicted_transactions"].tolist() == pytest.approx(
            expected["predicted_purchases"].tolist()
        )
        assert evaluation.total_predicted == pytest.approx(
            expected["predicted_purchases"].sum()
        )

    def test_split_without_holdout_raises_error(self, transactions, fitted_model):
        """A split without a holdout window cannot be evaluated."""
        split = aggregate_transactions(transactions)
        with pytest.raises(InvalidInputError, match="holdout window"):
            evaluate_holdout(fitted_model, split)

    def test_unfitted_model_raises_error(self, transactions):
        """Evaluation requires a fitted model."""
        split = aggregate_transactions(
            transactions, calibration_end=T0 + timedelta(weeks=4)
        )
        with pytest.raises(RuntimeError, match="Model has not been fitted"):
            evaluate_holdout(BGNBDModelWrapper(), split)
