"""Tests for model input preparation."""

from datetime import datetime, timedelta

import pytest

from clv_estimator.errors import InvalidInputError
from clv_estimator.foundation.cbs import aggregate_transactions
from clv_estimator.models.model_prep import (
    BGNBDInput,
    GammaGammaInput,
    prepare_bg_nbd_inputs,
    prepare_gamma_gamma_inputs,
)

T0 = datetime(2024, 1, 1)


@pytest.fixture
def statistics():
    """CBS rows for a repeat buyer, a one-time buyer and a two-time buyer."""
    events = [
        {"customer_id": "C2", "amount": 30.0, "timestamp": T0},
        {"customer_id": "C1", "amount": 10.0, "timestamp": T0},
        {"customer_id": "C1", "amount": 20.0, "timestamp": T0 + timedelta(weeks=2)},
        {"customer_id": "C1", "amount": 40.0, "timestamp": T0 + timedelta(weeks=5)},
        {"customer_id": "C3", "amount": 5.0, "timestamp": T0 + timedelta(weeks=1)},
        {"customer_id": "C3", "amount": 15.0, "timestamp": T0 + timedelta(weeks=10)},
    ]
    return aggregate_transactions(events).statistics


class TestBGNBDInput:
    """Tests for BGNBDInput validation."""

    def test_valid_input(self):
        """Valid inputs are accepted, including T = 0."""
        row = BGNBDInput(customer_id="C1", frequency=0, recency=0.0, T=0.0)
        assert row.T == 0.0

    def test_negative_frequency_raises(self):
        """Frequency cannot be negative."""
        with pytest.raises(InvalidInputError, match="Frequency cannot be negative"):
            BGNBDInput(customer_id="C1", frequency=-1, recency=0.0, T=5.0)

    def test_negative_T_raises(self):
        """T cannot be negative."""
        with pytest.raises(InvalidInputError, match="T cannot be negative"):
            BGNBDInput(customer_id="C1", frequency=0, recency=0.0, T=-1.0)

    def test_recency_exceeding_T_raises(self):
        """Transaction-level statistics never have recency > T."""
        with pytest.raises(InvalidInputError, match="exceeds T"):
            BGNBDInput(customer_id="C1", frequency=2, recency=6.0, T=5.0)


class TestGammaGammaInput:
    """Tests for GammaGammaInput validation."""

    def test_zero_frequency_raises(self):
        """At least one transaction is needed to average spend."""
        with pytest.raises(InvalidInputError, match="Frequency must be >= 1"):
            GammaGammaInput(customer_id="C1", frequency=0, monetary_value=10.0)

    def test_non_positive_monetary_value_raises(self):
        """Average spend must be positive."""
        with pytest.raises(InvalidInputError, match="Monetary value must be positive"):
            GammaGammaInput(customer_id="C1", frequency=2, monetary_value=0.0)


class TestPrepareBGNBDInputs:
    """Tests for prepare_bg_nbd_inputs()."""

    def test_columns_and_values(self, statistics):
        """Every customer is included with x, t_x and T_cal."""
        df = prepare_bg_nbd_inputs(statistics)

        assert list(df.columns) == ["customer_id", "frequency", "recency", "T"]
        assert df["customer_id"].tolist() == ["C1", "C2", "C3"]
        assert df["frequency"].tolist() == [2, 0, 1]
        assert df["recency"].tolist() == pytest.approx([5.0, 0.0, 9.0])
        assert df["T"].tolist() == pytest.approx([10.0, 10.0, 9.0])
        assert str(df["frequency"].dtype) == "int64"

    def test_empty_statistics(self):
        """No rows produce an empty typed frame."""
        df = prepare_bg_nbd_inputs([])
        assert df.empty
        assert list(df.columns) == ["customer_id", "frequency", "recency", "T"]


class TestPrepareGammaGammaInputs:
    """Tests for prepare_gamma_gamma_inputs()."""

    def test_repeat_spend_excludes_one_time_buyers(self, statistics):
        """Default basis averages repeat transactions only."""
        df = prepare_gamma_gamma_inputs(statistics)

        assert list(df.columns) == ["customer_id", "frequency", "monetary_value"]
        assert df["customer_id"].tolist() == ["C1", "C3"]
        assert df["frequency"].tolist() == [2, 1]
        assert df["monetary_value"].tolist() == pytest.approx([30.0, 15.0])

    def test_include_first_transaction(self, statistics):
        """All calibration transactions are averaged when requested."""
        df = prepare_gamma_gamma_inputs(statistics, include_first_transaction=True)

        assert df["customer_id"].tolist() == ["C1", "C2", "C3"]
        assert df["frequency"].tolist() == [3, 1, 2]
        assert df["monetary_value"].tolist() == pytest.approx([70.0 / 3, 30.0, 10.0])

    def test_min_frequency_filter(self, statistics):
        """Customers below min_frequency are excluded."""
        df = prepare_gamma_gamma_inputs(statistics, min_frequency=2)
        assert df["customer_id"].tolist() == ["C1"]

    def test_invalid_min_frequency_raises(self, statistics):
        """min_frequency must be at least one."""
        with pytest.raises(ValueError, match="min_frequency must be >= 1"):
            prepare_gamma_gamma_inputs(statistics, min_frequency=0)

    def test_no_eligible_customers(self, statistics):
        """An empty typed frame is returned when nobody qualifies."""
        df = prepare_gamma_gamma_inputs(statistics, min_frequency=10)
        assert df.empty
        assert list(df.columns) == ["customer_id", "frequency", "monetary_value"]
