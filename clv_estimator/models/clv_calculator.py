"""CLV Calculator combining BG/NBD and Gamma-Gamma models.

This module combines purchase frequency predictions (BG/NBD) with monetary value
predictions (Gamma-Gamma) to calculate customer lifetime value (CLV), then
assigns each customer a value tier.

Key formula:
    CLV = (Expected Transactions over horizon) × (Expected Average Spend)

Where:
    - Expected Transactions: From BG/NBD model (conditional expectation)
    - Expected Average Spend: From Gamma-Gamma model (posterior mean spend)

Tiers are assigned by percentile of the defined CLV values: ``high`` at or
above the 90th percentile, ``medium`` at or above the 50th percentile and
``low`` otherwise. Customers without a spend prediction keep an undefined
CLV and the ``undefined`` tier.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from clv_estimator.errors import InvalidInputError
from clv_estimator.models.bg_nbd import BGNBDModelWrapper
from clv_estimator.models.gamma_gamma import GammaGammaModelWrapper

logger = logging.getLogger(__name__)

HIGH_TIER_PERCENTILE = 90.0
MEDIUM_TIER_PERCENTILE = 50.0

SCORE_COLUMNS = [
    "customer_id",
    "expected_transactions",
    "expected_average_spend",
    "clv",
    "tier",
    "prob_alive",
]


class CLVTier(str, Enum):
    """Value tier of a customer."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNDEFINED = "undefined"


def _is_defined(value: Optional[float]) -> bool:
    return value is not None and not math.isnan(value)


@dataclass(frozen=True)
class CLVScore:
    """CLV prediction for a single customer.

    While CLVCalculator.calculate_clv() returns a DataFrame for performance,
    CLVScore documents the expected structure and validates individual rows
    (see :meth:`CLVCalculator.to_scores`).

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    expected_transactions:
        Expected number of transactions over the horizon (from BG/NBD)
    expected_average_spend:
        Expected average transaction value (from Gamma-Gamma); None when the
        customer has no spend prediction
    clv:
        expected_transactions × expected_average_spend; None when undefined
    tier:
        Value tier; UNDEFINED exactly when clv is None
    prob_alive:
        Probability customer is still active (from BG/NBD), range [0.0, 1.0]

    Examples
    --------
    >>> score = CLVScore(
    ...     customer_id="C123",
    ...     expected_transactions=5.2,
    ...     expected_average_spend=45.5,
    ...     clv=236.6,
    ...     tier=CLVTier.HIGH,
    ...     prob_alive=0.856,
    ... )
    >>> score.tier.value
    'high'
    """

    customer_id: str
    expected_transactions: float
    expected_average_spend: Optional[float]
    clv: Optional[float]
    tier: CLVTier
    prob_alive: float

    def __post_init__(self) -> None:
        """Validate CLV score values."""
        if self.expected_transactions < 0:
            raise InvalidInputError(
                f"expected_transactions cannot be negative: {self.expected_transactions} "
                f"(customer_id={self.customer_id})"
            )
        if self.expected_average_spend is not None and self.expected_average_spend < 0:
            raise InvalidInputError(
                f"expected_average_spend cannot be negative: {self.expected_average_spend} "
                f"(customer_id={self.customer_id})"
            )
        if self.clv is not None and self.clv < 0:
            raise InvalidInputError(
                f"clv cannot be negative: {self.clv} (customer_id={self.customer_id})"
            )
        if (self.clv is None) != (self.tier == CLVTier.UNDEFINED):
            raise InvalidInputError(
                f"tier {self.tier.value!r} is inconsistent with clv={self.clv} "
                f"(customer_id={self.customer_id})"
            )
        if not (0 <= self.prob_alive <= 1):
            raise InvalidInputError(
                f"prob_alive must be between 0 and 1: {self.prob_alive} "
                f"(customer_id={self.customer_id})"
            )


def assign_tiers(clv: pd.Series) -> pd.Series:
    """Assign value tiers by percentile of the defined CLV values.

    Missing (NaN) values are excluded from the percentile computation and
    receive ``CLVTier.UNDEFINED``. The result holds the tier values as strings
    and shares ``clv``'s index.

    Examples
    --------
    >>> assign_tiers(pd.Series([1.0, 2.0, 3.0, float("nan")])).tolist()
    ['low', 'medium', 'high', 'undefined']
    """
    values = clv.astype(float)
    defined = values.dropna()
    tiers = pd.Series(CLVTier.UNDEFINED.value, index=clv.index, dtype=object)
    if defined.empty:
        return tiers

    p90 = float(np.percentile(defined.to_numpy(), HIGH_TIER_PERCENTILE))
    p50 = float(np.percentile(defined.to_numpy(), MEDIUM_TIER_PERCENTILE))
    tiers[defined.index] = np.where(
        defined >= p90,
        CLVTier.HIGH.value,
        np.where(defined >= p50, CLVTier.MEDIUM.value, CLVTier.LOW.value),
    )
    return tiers


class CLVCalculator:
    """Calculate CLV by combining BG/NBD and Gamma-Gamma models.

    Examples
    --------
    >>> import pandas as pd
    >>> from clv_estimator.models.bg_nbd import BGNBDModelWrapper
    >>> from clv_estimator.models.gamma_gamma import GammaGammaModelWrapper
    >>> bg_nbd_data = pd.DataFrame({
    ...     'customer_id': ['C1', 'C2', 'C3'],
    ...     'frequency': [2, 5, 0],
    ...     'recency': [4.0, 8.0, 0.0],
    ...     'T': [12.0, 12.0, 12.0]
    ... })
    >>> gg_data = pd.DataFrame({
    ...     'customer_id': ['C1', 'C2'],
    ...     'frequency': [2, 5],
    ...     'monetary_value': [50.0, 75.0]
    ... })
    >>> bg_nbd_model = BGNBDModelWrapper()
    >>> _ = bg_nbd_model.fit(bg_nbd_data)
    >>> gg_model = GammaGammaModelWrapper()
    >>> _ = gg_model.fit(gg_data)
    >>> calculator = CLVCalculator(bg_nbd_model, gg_model, horizon=52.0)
    >>> clv_scores = calculator.calculate_clv(bg_nbd_data, gg_data)
    >>> list(clv_scores.columns)
    ['customer_id', 'expected_transactions', 'expected_average_spend', 'clv', 'tier', 'prob_alive']
    """

    def __init__(
        self,
        bg_nbd_model: BGNBDModelWrapper,
        gamma_gamma_model: GammaGammaModelWrapper,
        horizon: float,
    ) -> None:
        """Initialize CLV calculator.

        Parameters
        ----------
        bg_nbd_model:
            Fitted BG/NBD model for purchase frequency prediction
        gamma_gamma_model:
            Fitted Gamma-Gamma model for monetary value prediction
        horizon:
            Forward horizon, in the time unit the BG/NBD model was fitted in

        Raises
        ------
        InvalidInputError:
            If horizon <= 0
        RuntimeError:
            If models have not been fitted yet
        """
        if bg_nbd_model.params is None:
            raise RuntimeError(
                "BG/NBD model has not been fitted. Call fit() before creating CLVCalculator."
            )
        if gamma_gamma_model.params is None:
            raise RuntimeError(
                "Gamma-Gamma model has not been fitted. Call fit() before creating CLVCalculator."
            )
        if not horizon > 0:
            raise InvalidInputError(f"horizon must be positive, got {horizon}")

        self.bg_nbd_model = bg_nbd_model
        self.gamma_gamma_model = gamma_gamma_model
        self.horizon = horizon

    def calculate_clv(
        self, bg_nbd_data: pd.DataFrame, gamma_gamma_data: pd.DataFrame
    ) -> pd.DataFrame:
        """Calculate CLV and tier for all customers.

        **Edge Cases**:
        - Customers absent from ``gamma_gamma_data`` (e.g. one-time buyers with
          repeat-only spend): spend and CLV are undefined (NaN), tier is
          ``undefined``; the row is kept.
        - Undefined CLV values do not take part in the percentile computation.

        Parameters
        ----------
        bg_nbd_data:
            DataFrame with columns [customer_id, frequency, recency, T] for all customers
        gamma_gamma_data:
            DataFrame with columns [customer_id, frequency, monetary_value] for
            customers with spend observations

        Returns
        -------
        pd.DataFrame
            One row per customer of ``bg_nbd_data`` with columns customer_id,
            expected_transactions, expected_average_spend, clv, tier and
            prob_alive. Sorted by CLV descending, undefined CLV last, ties
            broken by customer_id.
        """
        purchase_predictions = self.bg_nbd_model.predict_purchases(
            bg_nbd_data, time_periods=self.horizon
        )
        prob_alive_predictions = self.bg_nbd_model.calculate_probability_alive(
            bg_nbd_data
        )
        monetary_predictions = self.gamma_gamma_model.predict_spend(gamma_gamma_data)

        unknown = set(monetary_predictions["customer_id"]) - set(
            purchase_predictions["customer_id"]
        )
        if unknown:
            logger.warning(
                f"Ignoring spend predictions for {len(unknown)} customers absent "
                f"from the purchase data"
            )

        result = purchase_predictions.merge(
            prob_alive_predictions, on="customer_id", how="left"
        )
        result = result.merge(monetary_predictions, on="customer_id", how="left")
        result = result.rename(
            columns={
                "predicted_purchases": "expected_transactions",
                "predicted_monetary_value": "expected_average_spend",
            }
        )
        for col in ("expected_transactions", "expected_average_spend", "prob_alive"):
            result[col] = result[col].astype(float)

        result["clv"] = result["expected_transactions"] * result["expected_average_spend"]
        result["tier"] = assign_tiers(result["clv"])

        undefined = int(result["clv"].isna().sum())
        if undefined:
            logger.info(f"{undefined} customers have undefined CLV (no spend prediction)")

        result = result[SCORE_COLUMNS].sort_values(
            ["clv", "customer_id"], ascending=[False, True], na_position="last"
        )
        return result.reset_index(drop=True)

    @staticmethod
    def to_scores(frame: pd.DataFrame) -> list[CLVScore]:
        """Convert a calculate_clv() result into validated CLVScore records."""
        scores = []
        for row in frame.itertuples(index=False):
            spend = float(row.expected_average_spend)
            clv = float(row.clv)
            scores.append(
                CLVScore(
                    customer_id=row.customer_id,
                    expected_transactions=float(row.expected_transactions),
                    expected_average_spend=spend if _is_defined(spend) else None,
                    clv=clv if _is_defined(clv) else None,
                    tier=CLVTier(row.tier),
                    prob_alive=float(row.prob_alive),
                )
            )
        return scores
