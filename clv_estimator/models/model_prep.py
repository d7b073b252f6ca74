"""Model input preparation for BG/NBD and Gamma-Gamma models.

This module transforms customer sufficient statistics (CBS rows) into the
input formats required by the probabilistic CLV models (BG/NBD for purchase
frequency and Gamma-Gamma for monetary value prediction).

When to Use Which Model
-----------------------
- **BG/NBD (Beta-Geometric/Negative Binomial Distribution)**: Predicts customer
  purchase frequency and lifetime by modeling transaction rates and dropout probability.
  Answers questions like "How many purchases will this customer make in the next 52 weeks?"
  and "What's the probability this customer is still active?"

- **Gamma-Gamma**: Predicts average monetary value per transaction by modeling the
  distribution of transaction values around each customer's latent mean spend.
  Answers "What's the expected value of this customer's next purchase?"

- **Typical workflow**: Prepare both inputs from the same CBS rows, fit both
  models and combine their predictions (CLV = expected transactions × expected spend).

Example Workflow
----------------
>>> from datetime import datetime, timedelta
>>> from clv_estimator.foundation import aggregate_transactions
>>> from clv_estimator.models.model_prep import (
...     prepare_bg_nbd_inputs,
...     prepare_gamma_gamma_inputs,
... )
>>> t0 = datetime(2024, 1, 1)
>>> split = aggregate_transactions([
...     {"customer_id": "C1", "amount": 20.0, "timestamp": t0},
...     {"customer_id": "C1", "amount": 30.0, "timestamp": t0 + timedelta(weeks=2)},
...     {"customer_id": "C2", "amount": 15.0, "timestamp": t0 + timedelta(weeks=1)},
... ])
>>> bgnbd_df = prepare_bg_nbd_inputs(split.statistics)
>>> bgnbd_df["frequency"].tolist()
[1, 0]
>>> gg_df = prepare_gamma_gamma_inputs(split.statistics)
>>> gg_df["customer_id"].tolist()  # one-time buyers are excluded
['C1']

Spend basis
-----------
By default the Gamma-Gamma input describes *repeat* transactions only
(``frequency = x`` and ``monetary_value = sales_x / x``), following the
original model derivation where the first purchase is treated as an
acquisition event. Set ``include_first_transaction=True`` to average over all
calibration transactions instead (``frequency = x + 1``,
``monetary_value = sales / (x + 1)``).

References
----------
- Fader, Peter S., Bruce G. S. Hardie, and Ka Lok Lee. "RFM and CLV: Using
  iso-value curves for customer base analysis." Journal of Marketing Research
  42.4 (2005): 415-430.
- Fader, Peter S., and Bruce G. S. Hardie. "The Gamma-Gamma model of monetary
  value." (2013).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import pandas as pd

from clv_estimator.errors import InvalidInputError
from clv_estimator.foundation.cbs import CustomerSufficientStatistics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BGNBDInput:
    """Input for BG/NBD model (Beta-Geometric/Negative Binomial Distribution).

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    frequency:
        Number of repeat purchases (x). BG/NBD models repeat behavior, so the
        first purchase is excluded.
    recency:
        Time of last purchase relative to first purchase (t_x).
        For a customer who made purchases at week 0 and week 3, recency=3.
    T:
        Time from first purchase to the end of the calibration window (T_cal).
        May be zero for a customer acquired exactly at the cutoff.
    """

    customer_id: str
    frequency: int
    recency: float
    T: float

    def __post_init__(self) -> None:
        """Validate BG/NBD inputs."""
        if self.frequency < 0:
            raise InvalidInputError(
                f"Frequency cannot be negative: {self.frequency} (customer_id={self.customer_id})"
            )
        if self.recency < 0:
            raise InvalidInputError(
                f"Recency cannot be negative: {self.recency} (customer_id={self.customer_id})"
            )
        if self.T < 0:
            raise InvalidInputError(
                f"T cannot be negative: {self.T} (customer_id={self.customer_id})"
            )
        if self.recency > self.T:
            raise InvalidInputError(
                f"Recency ({self.recency:.4f}) exceeds T ({self.T:.4f}) "
                f"for customer {self.customer_id}"
            )


@dataclass(frozen=True)
class GammaGammaInput:
    """Input for Gamma-Gamma model (monetary value prediction).

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    frequency:
        Number of transactions the average is taken over. Must be >= 1.
    monetary_value:
        Average transaction value over those transactions.
    """

    customer_id: str
    frequency: int
    monetary_value: float

    def __post_init__(self) -> None:
        """Validate Gamma-Gamma inputs."""
        if self.frequency < 1:
            raise InvalidInputError(
                f"Frequency must be >= 1 for Gamma-Gamma model: {self.frequency} "
                f"(customer_id={self.customer_id})"
            )
        if not self.monetary_value > 0:
            raise InvalidInputError(
                f"Monetary value must be positive (>0) for Gamma-Gamma model: "
                f"{self.monetary_value} (customer_id={self.customer_id})"
            )


def prepare_bg_nbd_inputs(
    statistics: Iterable[CustomerSufficientStatistics],
) -> pd.DataFrame:
    """Convert CBS rows to BG/NBD input format.

    Parameters
    ----------
    statistics:
        Calibration-window CBS rows (see
        :func:`clv_estimator.foundation.cbs.split_calibration`).

    Returns
    -------
    pd.DataFrame
        DataFrame with columns:
        - customer_id : str
        - frequency : int64, number of repeat purchases (x)
        - recency : float64, t_x
        - T : float64, T_cal

        One row per CBS row, including customers with frequency=0.
        Sorted by customer_id ascending.
    """
    rows = [
        BGNBDInput(
            customer_id=row.customer_id,
            frequency=row.x,
            recency=row.t_x,
            T=row.T_cal,
        )
        for row in statistics
    ]
    if not rows:
        return pd.DataFrame(
            {
                "customer_id": pd.Series(dtype=str),
                "frequency": pd.Series(dtype="int64"),
                "recency": pd.Series(dtype="float64"),
                "T": pd.Series(dtype="float64"),
            }
        )

    df = pd.DataFrame(
        {
            "customer_id": [row.customer_id for row in rows],
            "frequency": [row.frequency for row in rows],
            "recency": [row.recency for row in rows],
            "T": [row.T for row in rows],
        }
    )
    df = df.astype({"frequency": "int64", "recency": "float64", "T": "float64"})
    return df.sort_values("customer_id").reset_index(drop=True)


def prepare_gamma_gamma_inputs(
    statistics: Iterable[CustomerSufficientStatistics],
    min_frequency: int = 1,
    include_first_transaction: bool = False,
) -> pd.DataFrame:
    """Convert CBS rows to Gamma-Gamma input format.

    Customers whose spend cannot be averaged over at least ``min_frequency``
    transactions are excluded (with repeat-only spend this always excludes
    one-time buyers).

    Parameters
    ----------
    statistics:
        Calibration-window CBS rows.
    min_frequency:
        Minimum number of transactions required for inclusion. Must be >= 1.
    include_first_transaction:
        Average over all calibration transactions instead of repeat
        transactions only.

    Returns
    -------
    pd.DataFrame
        DataFrame with columns customer_id (str), frequency (int64) and
        monetary_value (float64), sorted by customer_id ascending.

    Raises
    ------
    ValueError:
        If min_frequency < 1
    """
    if min_frequency < 1:
        raise ValueError(f"min_frequency must be >= 1, got {min_frequency}")

    rows: list[GammaGammaInput] = []
    skipped = 0
    for row in statistics:
        if include_first_transaction:
            count, spend = row.transaction_count, row.sales
        else:
            count, spend = row.x, row.sales_x
        if count < min_frequency:
            skipped += 1
            continue
        rows.append(
            GammaGammaInput(
                customer_id=row.customer_id,
                frequency=count,
                monetary_value=spend / count,
            )
        )

    if skipped:
        logger.debug(
            f"Excluded {skipped} customers with fewer than {min_frequency} "
            f"transactions from Gamma-Gamma input"
        )

    if not rows:
        return pd.DataFrame(
            {
                "customer_id": pd.Series(dtype=str),
                "frequency": pd.Series(dtype="int64"),
                "monetary_value": pd.Series(dtype="float64"),
            }
        )

    df = pd.DataFrame(
        {
            "customer_id": [row.customer_id for row in rows],
            "frequency": [row.frequency for row in rows],
            "monetary_value": [row.monetary_value for row in rows],
        }
    )
    df = df.astype({"frequency": "int64", "monetary_value": "float64"})
    return df.sort_values("customer_id").reset_index(drop=True)
