"""BG/NBD model for purchase frequency prediction.

This module fits the BG/NBD (Beta-Geometric/Negative Binomial Distribution)
purchase-timing model by maximum likelihood and uses it to predict customer
purchase frequency and probability of being alive. The model captures two
customer behaviors:

1. **While-alive transaction process**: Customers make purchases according to a
   Poisson process with rate λ (lambda)
2. **Customer dropout**: After each repeat transaction, customers become
   inactive with probability p, following a geometric distribution

Key assumptions:
- Heterogeneity in transaction rates across customers (Gamma(r, α) on λ)
- Heterogeneity in dropout probabilities across customers (Beta(a, b) on p)
- Transaction rate and dropout probability are independent
- Customers can't return after becoming inactive (no reactivation)

References
----------
- Fader, Peter S., Bruce G. S. Hardie, and Ka Lok Lee. "Counting your
  customers the easy way: An alternative to the Pareto/NBD model."
  Marketing Science 24.2 (2005): 275-284.
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

REQUIRED_COLUMNS = ("customer_id", "frequency", "recency", "T")

# Longest observation window after rescaling; keeps alpha near 1 while fitting
RESCALED_MAX_T = 10.0


@dataclass(frozen=True)
class BGNBDParameters:
    """Fitted BG/NBD parameters.

    Attributes
    ----------
    r, alpha:
        Shape and rate of the Gamma distribution of transaction rates.
        ``alpha`` is expressed in the time unit of the fitting data.
    a, b:
        Shape parameters of the Beta distribution of dropout probabilities.
    """

    r: float
    alpha: float
    a: float
    b: float

    def __post_init__(self) -> None:
        for name, value in self.as_dict().items():
            if not math.isfinite(value) or value <= 0:
                raise InvalidInputError(
                    f"BG/NBD parameter {name} must be finite and positive, got {value}"
                )

    def as_dict(self) -> dict[str, float]:
        return {"r": self.r, "alpha": self.alpha, "a": self.a, "b": self.b}


@dataclass(frozen=True)
class BGNBDConfig:
    """Configuration for BG/NBD model training.

    Attributes
    ----------
    initial_params:
        Starting point (r, alpha, a, b) of the optimizer. ``alpha`` is in the
        rescaled time units when ``rescale_time`` is set (longest T = 10).
    optimizer:
        Optimizer method, tolerance and iteration/time budget.
    rescale_time:
        Rescale recency and T before fitting for numerical stability.
    """

    initial_params: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    rescale_time: bool = True


def bg_nbd_log_likelihood(
    params: BGNBDParameters,
    frequency: np.ndarray,
    recency: np.ndarray,
    T: np.ndarray,
) -> np.ndarray:
    """Per-customer BG/NBD log-likelihood.

    ``LL = A1 + A2 + log(exp(A3) + [x > 0] exp(A4))`` with

    - ``A1 = lnΓ(r+x) - lnΓ(r) + r ln α``
    - ``A2 = lnΓ(a+b) + lnΓ(b+x) - lnΓ(b) - lnΓ(a+b+x)``
    - ``A3 = -(r+x) ln(α+T)``
    - ``A4 = ln a - ln(b+x-1) - (r+x) ln(α+t_x)``
    """
    r, alpha, a, b = params.r, params.alpha, params.a, params.b
    x = np.asarray(frequency, dtype=float)
    t_x = np.asarray(recency, dtype=float)
    T = np.asarray(T, dtype=float)

    a1 = special.gammaln(r + x) - special.gammaln(r) + r * np.log(alpha)
    a2 = (
        special.gammaln(a + b)
        + special.gammaln(b + x)
        - special.gammaln(b)
        - special.gammaln(a + b + x)
    )
    a3 = -(r + x) * np.log(alpha + T)
    repeat = x > 0
    a4 = np.where(
        repeat,
        np.log(a)
        - np.log(np.where(repeat, b + x - 1, 1.0))
        - (r + x) * np.log(alpha + t_x),
        -np.inf,
    )
    return a1 + a2 + np.logaddexp(a3, a4)


def _dropout_odds(
    params: BGNBDParameters, x: np.ndarray, t_x: np.ndarray, T: np.ndarray
) -> np.ndarray:
    """Odds of having dropped out after the last observed transaction."""
    r, alpha, a, b = params.r, params.alpha, params.a, params.b
    repeat = x > 0
    with np.errstate(over="ignore"):
        odds = (a / np.where(repeat, b + x - 1, 1.0)) * np.exp(
            (r + x) * (np.log(alpha + T) - np.log(alpha + t_x))
        )
    return np.where(repeat, odds, 0.0)


def conditional_expected_transactions(
    params: BGNBDParameters,
    t: float | np.ndarray,
    frequency: np.ndarray,
    recency: np.ndarray,
    T: np.ndarray,
) -> np.ndarray:
    """Expected transactions in ``(T, T + t]`` given a customer's history.

    ``E[Y(t)|x, t_x, T] = (a+b+x-1)/(a-1) · [1 - ((α+T)/(α+T+t))^(r+x) ·
    2F1(r+x, b+x; a+b+x-1; t/(α+T+t))] / (1 + [x > 0] a/(b+x-1) ·
    ((α+T)/(α+t_x))^(r+x))``
    """
    r, alpha, b = params.r, params.alpha, params.b
    # Removable singularity of the closed form at a = 1
    a = params.a if abs(params.a - 1.0) > 1e-8 else 1.0 + 1e-8
    x = np.asarray(frequency, dtype=float)
    t_x = np.asarray(recency, dtype=float)
    T = np.asarray(T, dtype=float)
    t = np.asarray(t, dtype=float)

    with np.errstate(over="ignore", invalid="ignore"):
        survival = np.exp((r + x) * (np.log(alpha + T) - np.log(alpha + T + t)))
        hyp = special.hyp2f1(r + x, b + x, a + b + x - 1, t / (alpha + T + t))
        numerator = (a + b + x - 1) / (a - 1) * (1 - survival * hyp)
    return numerator / (1 + _dropout_odds(params, x, t_x, T))


def probability_alive(
    params: BGNBDParameters,
    frequency: np.ndarray,
    recency: np.ndarray,
    T: np.ndarray,
) -> np.ndarray:
    """P(customer is still active | x, t_x, T); equals 1 when x = 0."""
    x = np.asarray(frequency, dtype=float)
    return 1.0 / (
        1.0
        + _dropout_odds(params, x, np.asarray(recency, float), np.asarray(T, float))
    )


class BGNBDModelWrapper:
    """Maximum-likelihood BG/NBD purchase frequency model.

    The BG/NBD model predicts:
    1. Expected number of future purchases in a given time period
    2. Probability that a customer is still active (not churned)

    These predictions are fundamental inputs to CLV calculation when combined
    with monetary value predictions from the Gamma-Gamma model.

    Examples
    --------
    >>> import pandas as pd
    >>> from clv_estimator.models.bg_nbd import BGNBDModelWrapper, BGNBDConfig
    >>> # Prepare input data (frequency, recency, T)
    >>> data = pd.DataFrame({
    ...     'customer_id': ['C1', 'C2', 'C3'],
    ...     'frequency': [2, 5, 0],
    ...     'recency': [4.0, 8.0, 0.0],
    ...     'T': [12.0, 12.0, 12.0]
    ... })
    >>> wrapper = BGNBDModelWrapper(BGNBDConfig())
    >>> params = wrapper.fit(data)
    >>> # Predict future purchases over the next 12 weeks
    >>> predictions = wrapper.predict_purchases(data, time_periods=12.0)
    >>> list(predictions.columns)
    ['customer_id', 'predicted_purchases']
    >>> prob_alive = wrapper.calculate_probability_alive(data)
    >>> list(prob_alive.columns)
    ['customer_id', 'prob_alive']
    """

    def __init__(self, config: BGNBDConfig = BGNBDConfig()) -> None:
        """Initialize BG/NBD model wrapper.

        Parameters
        ----------
        config:
            Model configuration (initial guess, optimizer settings)
        """
        self.config = config
        self.params: Optional[BGNBDParameters] = None
        self.diagnostics: Optional[FitDiagnostics] = None

    def _validate_bg_nbd_data(
        self, data: pd.DataFrame, operation: str, allow_empty: bool = False
    ) -> None:
        """Validate input data for BG/NBD operations.

        Parameters
        ----------
        data:
            DataFrame to validate
        operation:
            Operation name (for error messages): 'fit', 'predict', 'probability'
        allow_empty:
            If True, allow empty DataFrames (for prediction operations)

        Raises
        ------
        InvalidInputError:
            If data fails validation checks
        InsufficientDataError:
            If data is empty and ``allow_empty`` is False
        """
        if not set(REQUIRED_COLUMNS).issubset(data.columns):
            missing = set(REQUIRED_COLUMNS) - set(data.columns)
            raise InvalidInputError(
                f"Input data missing required columns: {missing}. "
                f"Expected columns: {set(REQUIRED_COLUMNS)}"
            )

        if data.empty:
            if not allow_empty:
                raise InsufficientDataError(
                    f"Cannot {operation} BG/NBD model on empty dataset. "
                    "Provide customer transaction histories."
                )
            return

        if data["customer_id"].duplicated().any():
            duplicates = data[data["customer_id"].duplicated()]["customer_id"].tolist()
            raise InvalidInputError(
                f"Duplicate customer_ids found in {operation} data: "
                f"{preview_ids(duplicates)}. Each customer should appear only once."
            )

        for col in ("frequency", "recency", "T"):
            if not pd.api.types.is_numeric_dtype(data[col]):
                raise InvalidInputError(
                    f"{col} column must be numeric type, got {data[col].dtype}"
                )
            values = data[col].astype(float)
            non_finite = data[~np.isfinite(values)]
            if not non_finite.empty:
                raise InvalidInputError(
                    f"{col} contains NaN or infinite values. Found "
                    f"{len(non_finite)} customers: "
                    f"{preview_ids(non_finite['customer_id'].tolist())}."
                )

        checks = [
            (data["frequency"] % 1 != 0, "frequency must be integer-valued (repeat purchase counts)"),
            (data["frequency"] < 0, "frequency must be non-negative"),
            (data["recency"] < 0, "recency must be non-negative"),
            (data["T"] < 0, "T must be non-negative"),
            (
                data["recency"] > data["T"],
                "recency must be <= T (last purchase can't occur after observation end)",
            ),
        ]
        for mask, message in checks:
            if mask.any():
                invalid_ids = data[mask]["customer_id"].tolist()
                raise InvalidInputError(
                    f"{message}. Found {len(invalid_ids)} customers: "
                    f"{preview_ids(invalid_ids)}."
                )

    def fit(self, data: pd.DataFrame) -> BGNBDParameters:
        """Fit BG/NBD model to customer transaction data.

        The input data should include all customers in the calibration
        window, including those with zero repeat purchases (frequency=0).

        Parameters
        ----------
        data:
            DataFrame with columns:
            - customer_id: Unique customer identifier
            - frequency: Number of repeat purchases (x)
            - recency: Time from first purchase to last purchase (t_x)
            - T: Time from first purchase to calibration end (T_cal)

        Returns
        -------
        BGNBDParameters
            Fitted parameters in the time unit of ``data``.

        Raises
        ------
        InvalidInputError:
            If required columns are missing or values violate BG/NBD constraints
        InsufficientDataError:
            If data is empty or every customer has T = 0
        ConvergenceError:
            If the optimizer fails to converge within its budget
        """
        self._validate_bg_nbd_data(data, operation="fit", allow_empty=False)

        x = data["frequency"].to_numpy(dtype=float)
        t_x = data["recency"].to_numpy(dtype=float)
        T = data["T"].to_numpy(dtype=float)

        max_T = float(T.max())
        if max_T <= 0:
            raise InsufficientDataError(
                "Cannot fit BG/NBD model: every customer has a zero-length "
                "observation window (T = 0)."
            )
        scale = RESCALED_MAX_T / max_T if self.config.rescale_time else 1.0

        def log_likelihood(theta: np.ndarray) -> float:
            params = BGNBDParameters(*theta)
            return float(np.sum(bg_nbd_log_likelihood(params, x, t_x * scale, T * scale)))

        logger.info(f"Fitting BG/NBD model on {len(data)} customers")
        result = maximize_log_likelihood(
            log_likelihood,
            self.config.initial_params,
            self.config.optimizer,
            model_name="BG/NBD",
        )
        r, alpha, a, b = result.params
        self.params = BGNBDParameters(r=r, alpha=alpha / scale, a=a, b=b)
        self.diagnostics = FitDiagnostics(
            log_likelihood=float(np.sum(bg_nbd_log_likelihood(self.params, x, t_x, T))),
            iterations=result.iterations,
            converged=True,
            message=result.message,
            log_likelihood_trace=result.trace,
            elapsed_seconds=result.elapsed_seconds,
            n_customers=len(data),
        )
        logger.info(f"BG/NBD parameters: {self.params.as_dict()}")
        return self.params

    def _require_fitted(self, operation: str) -> BGNBDParameters:
        if self.params is None:
            raise RuntimeError(
                f"Model has not been fitted. Call fit() before {operation}()."
            )
        return self.params

    def log_likelihood(self, data: pd.DataFrame) -> float:
        """Total log-likelihood of ``data`` under the fitted parameters."""
        params = self._require_fitted("log_likelihood")
        self._validate_bg_nbd_data(data, operation="score", allow_empty=True)
        return float(
            np.sum(
                bg_nbd_log_likelihood(
                    params,
                    data["frequency"].to_numpy(dtype=float),
                    data["recency"].to_numpy(dtype=float),
                    data["T"].to_numpy(dtype=float),
                )
            )
        )

    def predict_purchases(
        self, data: pd.DataFrame, time_periods: float
    ) -> pd.DataFrame:
        """Predict expected number of purchases in the next ``time_periods``.

        Parameters
        ----------
        data:
            DataFrame with columns customer_id, frequency, recency, T
        time_periods:
            Prediction horizon in the same unit as recency/T.

        Returns
        -------
        pd.DataFrame:
            DataFrame with columns:
            - customer_id: Customer identifier (preserved from input)
            - predicted_purchases: Expected number of purchases in time_periods

        Raises
        ------
        RuntimeError:
            If model has not been fitted yet (call fit() first)
        InvalidInputError:
            If data is malformed or time_periods <= 0
        """
        params = self._require_fitted("predict_purchases")
        if not time_periods > 0:
            raise InvalidInputError(
                f"time_periods must be positive, got {time_periods}. "
                "Specify the prediction horizon (e.g., 52.0 weeks for one year)."
            )
        self._validate_bg_nbd_data(data, operation="predict", allow_empty=True)

        if data.empty:
            return pd.DataFrame(columns=["customer_id", "predicted_purchases"])

        predictions = conditional_expected_transactions(
            params,
            time_periods,
            data["frequency"].to_numpy(dtype=float),
            data["recency"].to_numpy(dtype=float),
            data["T"].to_numpy(dtype=float),
        )
        undefined = ~np.isfinite(predictions)
        if undefined.any():
            logger.warning(
                f"Expected purchases are numerically undefined for "
                f"{int(undefined.sum())} customers"
            )
            predictions = np.where(undefined, np.nan, predictions)

        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "predicted_purchases": predictions,
            }
        )

    def calculate_probability_alive(self, data: pd.DataFrame) -> pd.DataFrame:
        """Calculate P(customer is still active).

        High-frequency recent buyers have high P(alive), while customers with
        no recent activity have lower P(alive). Customers without repeat
        purchases have P(alive) = 1 under BG/NBD.

        Returns
        -------
        pd.DataFrame:
            DataFrame with columns customer_id and prob_alive (0.0 to 1.0)
        """
        params = self._require_fitted("calculate_probability_alive")
        self._validate_bg_nbd_data(data, operation="probability", allow_empty=True)

        if data.empty:
            return pd.DataFrame(columns=["customer_id", "prob_alive"])

        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "prob_alive": probability_alive(
                    params,
                    data["frequency"].to_numpy(dtype=float),
                    data["recency"].to_numpy(dtype=float),
                    data["T"].to_numpy(dtype=float),
                ),
            }
        )
