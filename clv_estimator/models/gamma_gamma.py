"""Gamma-Gamma model for monetary value prediction.

This module fits the Gamma-Gamma spend model by maximum likelihood and
predicts customer-level average transaction values. The Gamma-Gamma model
assumes each customer has a latent mean transaction value, with individual
transactions varying randomly around that mean.

Key assumptions:
- Transaction values are independent of purchase frequency
- Individual transaction values follow Gamma(p, ν) for a customer-specific ν
- The scale parameter ν is itself Gamma(q, γ) distributed across customers

Sparse customers are pulled toward the population mean spend: the fewer
transactions a customer has, the stronger the shrinkage of the prediction.

References
----------
- Fader, Peter S., and Bruce G. S. Hardie. "The Gamma-Gamma model of monetary
  value." (2013).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd
from scipy import special

from clv_estimator.errors import (
    InsufficientDataError,
    InvalidInputError,
    preview_ids,
)
from clv_estimator.models.estimation import (
    FitDiagnostics,
    OptimizerConfig,
    maximize_log_likelihood,
)

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("customer_id", "frequency", "monetary_value")


@dataclass(frozen=True)
class GammaGammaParameters:
    """Fitted Gamma-Gamma parameters ``p``, ``q`` and ``gamma`` (all > 0).

    ``gamma`` is expressed in the currency units of the fitting data.
    """

    p: float
    q: float
    gamma: float

    def __post_init__(self) -> None:
        for name, value in self.as_dict().items():
            if not math.isfinite(value) or value <= 0:
                raise InvalidInputError(
                    f"Gamma-Gamma parameter {name} must be finite and positive, "
                    f"got {value}"
                )

    def as_dict(self) -> dict[str, float]:
        return {"p": self.p, "q": self.q, "gamma": self.gamma}

    @property
    def population_mean_spend(self) -> float:
        """Mean spend across the customer base, ``p γ / (q - 1)``; NaN if q <= 1."""
        if self.q <= 1:
            return float("nan")
        return self.p * self.gamma / (self.q - 1)


@dataclass(frozen=True)
class GammaGammaConfig:
    """Configuration for Gamma-Gamma model training.

    Attributes
    ----------
    initial_params:
        Starting point (p, q, gamma). ``gamma`` is in mean-spend units when
        ``rescale_spend`` is set.
    optimizer:
        Optimizer method, tolerance and iteration/time budget.
    min_frequency:
        Customers averaging over fewer transactions are excluded before
        fitting. Must be >= 1.
    min_customers:
        Minimum number of customers left after exclusion.
    rescale_spend:
        Divide spend by its mean before fitting for numerical stability.
    """

    initial_params: tuple[float, float, float] = (1.0, 1.0, 1.0)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    min_frequency: int = 1
    min_customers: int = 2
    rescale_spend: bool = True

    def __post_init__(self) -> None:
        if self.min_frequency < 1:
            raise ValueError(f"min_frequency must be >= 1, got {self.min_frequency}")
        if self.min_customers < 1:
            raise ValueError(f"min_customers must be >= 1, got {self.min_customers}")


def gamma_gamma_log_likelihood(
    params: GammaGammaParameters,
    frequency: np.ndarray,
    monetary_value: np.ndarray,
) -> np.ndarray:
    """Per-customer Gamma-Gamma log-likelihood of the observed average spend.

    Terms that do not depend on the parameters are dropped.
    """
    p, q, gamma = params.p, params.q, params.gamma
    x = np.asarray(frequency, dtype=float)
    m = np.asarray(monetary_value, dtype=float)
    return (
        special.gammaln(p * x + q)
        - special.gammaln(p * x)
        - special.gammaln(q)
        + q * np.log(gamma)
        + (p * x - 1) * np.log(m)
        + p * x * np.log(x)
        - (p * x + q) * np.log(x * m + gamma)
    )


def conditional_expected_spend(
    params: GammaGammaParameters,
    frequency: np.ndarray,
    monetary_value: np.ndarray,
) -> np.ndarray:
    """Posterior mean spend ``p (γ + x m) / (p x + q - 1)``.

    Undefined (NaN) where ``p x + q <= 1``.
    """
    p, q, gamma = params.p, params.q, params.gamma
    x = np.asarray(frequency, dtype=float)
    m = np.asarray(monetary_value, dtype=float)
    denominator = p * x + q - 1
    safe = np.where(denominator > 0, denominator, 1.0)
    return np.where(denominator > 0, p * (gamma + x * m) / safe, np.nan)


class GammaGammaModelWrapper:
    """Maximum-likelihood Gamma-Gamma monetary value model.

    The Gamma-Gamma model predicts expected average transaction value for each
    customer based on their historical spending patterns.

    Examples
    --------
    >>> import pandas as pd
    >>> from clv_estimator.models.gamma_gamma import GammaGammaModelWrapper, GammaGammaConfig
    >>> data = pd.DataFrame({
    ...     'customer_id': ['C1', 'C2', 'C3'],
    ...     'frequency': [3, 5, 2],
    ...     'monetary_value': [50.0, 75.0, 30.0]
    ... })
    >>> wrapper = GammaGammaModelWrapper(GammaGammaConfig())
    >>> params = wrapper.fit(data)
    >>> predictions = wrapper.predict_spend(data)
    >>> list(predictions.columns)
    ['customer_id', 'predicted_monetary_value']
    """

    def __init__(self, config: GammaGammaConfig = GammaGammaConfig()) -> None:
        self.config = config
        self.params: Optional[GammaGammaParameters] = None
        self.diagnostics: Optional[FitDiagnostics] = None

    def _validate_spend_data(self, data: pd.DataFrame, operation: str) -> None:
        if not set(REQUIRED_COLUMNS).issubset(data.columns):
            missing = set(REQUIRED_COLUMNS) - set(data.columns)
            raise InvalidInputError(
                f"Input data missing required columns: {missing}. "
                f"Expected columns: {set(REQUIRED_COLUMNS)}"
            )
        if data.empty:
            return

        if data["customer_id"].duplicated().any():
            duplicates = data[data["customer_id"].duplicated()]["customer_id"].tolist()
            raise InvalidInputError(
                f"Duplicate customer_ids found in {operation} data: "
                f"{preview_ids(duplicates)}. Each customer should appear only once."
            )

        for col in ("frequency", "monetary_value"):
            if not pd.api.types.is_numeric_dtype(data[col]):
                raise InvalidInputError(
                    f"{col} column must be numeric type, got {data[col].dtype}"
                )

        invalid_freq = data[(data["frequency"] < 0) | (data["frequency"] % 1 != 0)]
        if not invalid_freq.empty:
            invalid_ids = invalid_freq["customer_id"].tolist()
            raise InvalidInputError(
                f"frequency must be a non-negative integer. Found "
                f"{len(invalid_ids)} customers: {preview_ids(invalid_ids)}."
            )

    def _check_monetary_value(self, data: pd.DataFrame) -> None:
        values = data["monetary_value"].astype(float)
        invalid = data[~(np.isfinite(values) & (values > 0))]
        if not invalid.empty:
            invalid_ids = invalid["customer_id"].tolist()
            raise InvalidInputError(
                f"monetary_value must be positive (>0) for all customers. "
                f"Found {len(invalid_ids)} customers with monetary_value <= 0 "
                f"or NaN: {preview_ids(invalid_ids)}."
            )

    def fit(self, data: pd.DataFrame) -> GammaGammaParameters:
        """Fit Gamma-Gamma model to customer spending data.

        Customers with fewer than ``config.min_frequency`` transactions are
        excluded before fitting; they carry no spend information.

        Parameters
        ----------
        data:
            DataFrame with columns:
            - customer_id: Unique customer identifier
            - frequency: Number of transactions the average is taken over
            - monetary_value: Average transaction value

        Returns
        -------
        GammaGammaParameters
            Fitted parameters in the currency units of ``data``.

        Raises
        ------
        InvalidInputError:
            If required columns are missing or values are malformed
        InsufficientDataError:
            If fewer than ``config.min_customers`` customers remain
        ConvergenceError:
            If the optimizer fails to converge within its budget
        """
        self._validate_spend_data(data, operation="fit")

        eligible = data[data["frequency"] >= self.config.min_frequency]
        excluded = len(data) - len(eligible)
        if excluded:
            logger.info(
                f"Excluded {excluded} customers with frequency < "
                f"{self.config.min_frequency} from Gamma-Gamma fit"
            )
        if len(eligible) < self.config.min_customers:
            raise InsufficientDataError(
                f"Gamma-Gamma fit requires at least {self.config.min_customers} "
                f"customers with frequency >= {self.config.min_frequency}, "
                f"found {len(eligible)}."
            )
        self._check_monetary_value(eligible)

        x = eligible["frequency"].to_numpy(dtype=float)
        m = eligible["monetary_value"].to_numpy(dtype=float)
        scale = float(m.mean()) if self.config.rescale_spend else 1.0
        m_scaled = m / scale

        def log_likelihood(theta: np.ndarray) -> float:
            params = GammaGammaParameters(*theta)
            return float(np.sum(gamma_gamma_log_likelihood(params, x, m_scaled)))

        logger.info(f"Fitting Gamma-Gamma model on {len(eligible)} customers")
        result = maximize_log_likelihood(
            log_likelihood,
            self.config.initial_params,
            self.config.optimizer,
            model_name="Gamma-Gamma",
        )
        p, q, gamma = result.params
        self.params = GammaGammaParameters(p=p, q=q, gamma=gamma * scale)
        self.diagnostics = FitDiagnostics(
            log_likelihood=float(np.sum(gamma_gamma_log_likelihood(self.params, x, m))),
            iterations=result.iterations,
            converged=True,
            message=result.message,
            log_likelihood_trace=result.trace,
            elapsed_seconds=result.elapsed_seconds,
            n_customers=len(eligible),
        )
        if q <= 1:
            logger.warning(
                f"Gamma-Gamma q={q:.4f} <= 1: population mean spend is undefined"
            )
        logger.info(f"Gamma-Gamma parameters: {self.params.as_dict()}")
        return self.params

    def predict_spend(self, data: pd.DataFrame) -> pd.DataFrame:
        """Predict expected average transaction value per customer.

        Parameters
        ----------
        data:
            DataFrame with columns:
            - customer_id: Unique customer identifier
            - frequency: Number of transactions (must be >= 1)
            - monetary_value: Observed average transaction value (must be > 0)

        Returns
        -------
        pd.DataFrame:
            DataFrame with columns:
            - customer_id: Customer identifier (preserved from input)
            - predicted_monetary_value: Predicted average transaction value
              (NaN where the posterior mean is undefined)

        Raises
        ------
        RuntimeError:
            If model has not been fitted yet (call fit() first)
        InvalidInputError:
            If required columns are missing, frequency < 1, monetary_value <= 0,
            or duplicate customer IDs exist
        """
        if self.params is None:
            raise RuntimeError(
                "Model has not been fitted. Call fit() before predict_spend()."
            )
        self._validate_spend_data(data, operation="prediction")

        if data.empty:
            return pd.DataFrame(columns=["customer_id", "predicted_monetary_value"])

        invalid_freq = data[data["frequency"] < 1]
        if not invalid_freq.empty:
            invalid_ids = invalid_freq["customer_id"].tolist()
            raise InvalidInputError(
                f"Gamma-Gamma predictions require frequency >= 1. "
                f"Found {len(invalid_ids)} customers with frequency < 1: "
                f"{preview_ids(invalid_ids)}. "
                f"Customers without spend observations cannot be predicted."
            )
        self._check_monetary_value(data)

        predictions = conditional_expected_spend(
            self.params,
            data["frequency"].to_numpy(dtype=float),
            data["monetary_value"].to_numpy(dtype=float),
        )
        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "predicted_monetary_value": predictions,
            }
        )
