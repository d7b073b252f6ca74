"""Tests for Gamma-Gamma model wrapper."""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from clv_estimator.errors import InsufficientDataError, InvalidInputError
from clv_estimator.models.estimation import (
    SUPPORTED_METHODS,
    OptimizationResult,
    OptimizerConfig,
)
from clv_estimator.models.gamma_gamma import (
    GammaGammaConfig,
    GammaGammaModelWrapper,
    GammaGammaParameters,
    conditional_expected_spend,
    gamma_gamma_log_likelihood,
)

# Published CDNOW estimates (Fader and Hardie 2013)
CDNOW_SPEND_PARAMS = GammaGammaParameters(p=6.25, q=3.74, gamma=15.44)


@pytest.fixture(scope="module")
def simulated_spend():
    """Average spend of 1500 customers drawn from known parameters."""
    rng = np.random.default_rng(11)
    true = CDNOW_SPEND_PARAMS
    frequency = rng.integers(1, 12, size=1500)
    nu = rng.gamma(true.q, 1.0 / true.gamma, size=1500)
    monetary = np.array(
        [rng.gamma(true.p, 1.0 / v, size=n).mean() for v, n in zip(nu, frequency)]
    )
    return pd.DataFrame(
        {
            "customer_id": [f"C{i}" for i in range(1500)],
            "frequency": frequency,
            "monetary_value": monetary,
        }
    )


class TestGammaGammaParameters:
    """Test GammaGammaParameters."""

    def test_population_mean_spend(self):
        """Population mean spend is p * gamma / (q - 1)."""
        params = GammaGammaParameters(p=6.0, q=4.0, gamma=15.0)
        assert params.population_mean_spend == pytest.approx(30.0)

    def test_population_mean_undefined_for_small_q(self):
        """The mean does not exist when q <= 1."""
        assert np.isnan(GammaGammaParameters(p=2.0, q=0.8, gamma=1.0).population_mean_spend)

    def test_invalid_parameter_raises(self):
        """Parameters must be positive."""
        with pytest.raises(InvalidInputError, match="must be finite and positive"):
            GammaGammaParameters(p=1.0, q=-1.0, gamma=1.0)


class TestGammaGammaConfig:
    """Test GammaGammaConfig dataclass."""

    def test_default_config(self):
        """Defaults fit customers with at least one transaction, two customers minimum."""
        config = GammaGammaConfig()
        assert config.initial_params == (1.0, 1.0, 1.0)
        assert config.min_frequency == 1
        assert config.min_customers == 2
        assert config.optimizer.method == "nelder-mead"

    def test_invalid_min_frequency_raises(self):
        """min_frequency below one would admit customers without spend."""
        with pytest.raises(ValueError, match="min_frequency must be >= 1"):
            GammaGammaConfig(min_frequency=0)


class TestClosedForms:
    """Test the closed-form likelihood and posterior mean."""

    def test_posterior_mean_is_weighted_average(self):
        """E[M|m,x] blends the population mean and the observed mean."""
        params = GammaGammaParameters(p=6.0, q=4.0, gamma=15.0)
        expected = conditional_expected_spend(params, np.array([4]), np.array([50.0]))
        weight = (params.q - 1) / (params.p * 4 + params.q - 1)
        blended = weight * params.population_mean_spend + (1 - weight) * 50.0
        assert expected[0] == pytest.approx(blended)

    def test_posterior_mean_undefined_when_denominator_not_positive(self):
        """p x + q <= 1 leaves the posterior mean undefined."""
        params = GammaGammaParameters(p=0.1, q=0.5, gamma=1.0)
        expected = conditional_expected_spend(params, np.array([1, 10]), np.array([5.0, 5.0]))
        assert np.isnan(expected[0])
        assert np.isfinite(expected[1])

    def test_more_transactions_shrink_less(self):
        """Customers with more transactions stay closer to their own mean."""
        params = CDNOW_SPEND_PARAMS
        few = conditional_expected_spend(params, np.array([1]), np.array([100.0]))[0]
        many = conditional_expected_spend(params, np.array([20]), np.array([100.0]))[0]
        assert abs(many - 100.0) < abs(few - 100.0)

    def test_log_likelihood_is_finite(self):
        """Log-likelihood is finite for valid inputs."""
        ll = gamma_gamma_log_likelihood(
            CDNOW_SPEND_PARAMS, np.array([1, 3, 10]), np.array([5.0, 40.0, 300.0])
        )
        assert np.all(np.isfinite(ll))


class TestGammaGammaModelWrapper:
    """Test GammaGammaModelWrapper class."""

    def test_initialization_with_default_config(self):
        """Wrapper should initialize with default config if none provided."""
        wrapper = GammaGammaModelWrapper()
        assert wrapper.config == GammaGammaConfig()
        assert wrapper.params is None

    def test_fit_missing_columns_raises_error(self):
        """fit() should raise InvalidInputError if required columns are missing."""
        wrapper = GammaGammaModelWrapper()
        data = pd.DataFrame({"customer_id": ["C1", "C2"]})

        with pytest.raises(InvalidInputError, match="missing required columns"):
            wrapper.fit(data)

    def test_fit_empty_data_raises_error(self):
        """fit() should reject an empty dataset."""
        wrapper = GammaGammaModelWrapper()
        data = pd.DataFrame(columns=["customer_id", "frequency", "monetary_value"])

        with pytest.raises(InsufficientDataError, match="at least 2 customers"):
            wrapper.fit(data)

    def test_fit_excludes_customers_without_spend(self):
        """Customers with frequency 0 are dropped before the minimum check."""
        wrapper = GammaGammaModelWrapper()
        data = pd.DataFrame(
            {
                "customer_id": ["C1", "C2", "C3"],
                "frequency": [0, 0, 3],
                "monetary_value": [0.0, 0.0, 40.0],
            }
        )
        with pytest.raises(InsufficientDataError, match="found 1"):
            wrapper.fit(data)

    def test_fit_non_positive_monetary_value_raises_error(self):
        """Included customers must have positive spend."""
        data = pd.DataFrame(
            {
                "customer_id": ["C1", "C2", "C3"],
                "frequency": [3, 5, 2],
                "monetary_value": [50.0, -5.0, 30.0],
            }
        )
        with pytest.raises(InvalidInputError, match=r"monetary_value must be positive.*C2"):
            GammaGammaModelWrapper().fit(data)

    def test_fit_duplicate_customers_raises_error(self):
        """Each customer must appear once."""
        data = pd.DataFrame(
            {
                "customer_id": ["C1", "C1", "C3"],
                "frequency": [3, 5, 2],
                "monetary_value": [50.0, 75.0, 30.0],
            }
        )
        with pytest.raises(InvalidInputError, match="Duplicate customer_ids"):
            GammaGammaModelWrapper().fit(data)

    @patch("clv_estimator.models.gamma_gamma.maximize_log_likelihood")
    def test_fit_maps_gamma_back_to_currency_units(self, mock_maximize):
        """gamma is fitted on spend divided by its mean and mapped back."""
        mock_maximize.return_value = OptimizationResult(
            params=np.array([5.0, 3.0, 2.0]),
            log_likelihood=-4.0,
            iterations=3,
            message="ok",
            trace=(-5.0, -4.0),
            elapsed_seconds=0.01,
        )
        data = pd.DataFrame(
            {
                "customer_id": ["C1", "C2", "C3"],
                "frequency": [3, 5, 2],
                "monetary_value": [20.0, 40.0, 60.0],
            }
        )
        wrapper = GammaGammaModelWrapper()

        params = wrapper.fit(data)

        assert params == GammaGammaParameters(p=5.0, q=3.0, gamma=80.0)
        assert mock_maximize.call_args.kwargs["model_name"] == "Gamma-Gamma"
        assert wrapper.diagnostics.n_customers == 3

    def test_predict_before_fit_raises_error(self):
        """predict_spend() requires a fitted model."""
        wrapper = GammaGammaModelWrapper()
        data = pd.DataFrame(
            {"customer_id": ["C1"], "frequency": [2], "monetary_value": [10.0]}
        )
        with pytest.raises(RuntimeError, match="Model has not been fitted"):
            wrapper.predict_spend(data)

    def test_predict_rejects_customers_without_spend(self):
        """Customers with frequency 0 cannot be predicted."""
        wrapper = GammaGammaModelWrapper()
        wrapper.params = CDNOW_SPEND_PARAMS
        data = pd.DataFrame(
            {"customer_id": ["C1", "C2"], "frequency": [2, 0], "monetary_value": [10.0, 0.0]}
        )
        with pytest.raises(InvalidInputError, match="require frequency >= 1"):
            wrapper.predict_spend(data)

    def test_predict_on_empty_data_returns_empty_frame(self):
        """Empty input yields an empty frame with the prediction schema."""
        wrapper = GammaGammaModelWrapper()
        wrapper.params = CDNOW_SPEND_PARAMS
        empty = pd.DataFrame(columns=["customer_id", "frequency", "monetary_value"])
        result = wrapper.predict_spend(empty)
        assert result.empty
        assert list(result.columns) == ["customer_id", "predicted_monetary_value"]


class TestShrinkage:
    """Two-customer scenario from the model's defining behavior."""

    def test_sparse_customer_shrinks_more(self):
        """(avg=$100, n=1) and (avg=$50, n=10): the n=10 customer stays closer."""
        data = pd.DataFrame(
            {
                "customer_id": ["sparse", "frequent"],
                "frequency": [1, 10],
                "monetary_value": [100.0, 50.0],
            }
        )
        wrapper = GammaGammaModelWrapper()
        wrapper.fit(data)

        predictions = wrapper.predict_spend(data).set_index("customer_id")[
            "predicted_monetary_value"
        ]
        assert wrapper.diagnostics.converged
        assert np.isfinite(predictions).all()
        assert abs(predictions["frequent"] - 50.0) < abs(predictions["sparse"] - 100.0)

    @pytest.mark.parametrize("method", SUPPORTED_METHODS)
    def test_every_optimizer_converges(self, method):
        """The two-customer fit converges with a non-decreasing trace for every method."""
        data = pd.DataFrame(
            {
                "customer_id": ["sparse", "frequent"],
                "frequency": [1, 10],
                "monetary_value": [100.0, 50.0],
            }
        )
        config = GammaGammaConfig(optimizer=OptimizerConfig(method=method))
        wrapper = GammaGammaModelWrapper(config)
        wrapper.fit(data)

        trace = np.array(wrapper.diagnostics.log_likelihood_trace)
        assert np.all(np.diff(trace) >= -1e-9 * np.maximum(1.0, np.abs(trace[:-1])))
        predictions = wrapper.predict_spend(data).set_index("customer_id")[
            "predicted_monetary_value"
        ]
        assert abs(predictions["frequent"] - 50.0) < abs(predictions["sparse"] - 100.0)


class TestGammaGammaFitOnSimulatedData:
    """Fit the model on spend simulated from known parameters."""

    def test_fit_recovers_population_mean(self, simulated_spend):
        """The fitted population mean spend is close to the true one."""
        wrapper = GammaGammaModelWrapper()
        params = wrapper.fit(simulated_spend)
        assert params.population_mean_spend == pytest.approx(
            CDNOW_SPEND_PARAMS.population_mean_spend, rel=0.15
        )

    def test_fit_at_least_as_likely_as_true_parameters(self, simulated_spend):
        """The estimate is at least as likely as the generating parameters."""
        wrapper = GammaGammaModelWrapper()
        wrapper.fit(simulated_spend)
        true_ll = float(
            np.sum(
                gamma_gamma_log_likelihood(
                    CDNOW_SPEND_PARAMS,
                    simulated_spend["frequency"].to_numpy(),
                    simulated_spend["monetary_value"].to_numpy(),
                )
            )
        )
        assert wrapper.diagnostics.log_likelihood >= true_ll - 0.05

    def test_predictions_positive(self, simulated_spend):
        """Every simulated customer gets a positive spend prediction."""
        wrapper = GammaGammaModelWrapper()
        wrapper.fit(simulated_spend)
        predictions = wrapper.predict_spend(simulated_spend)
        assert (predictions["predicted_monetary_value"] > 0).all()
        assert predictions["customer_id"].tolist() == simulated_spend["customer_id"].tolist()
