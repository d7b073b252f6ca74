"""Customer-by-sufficient-statistic (CBS) construction.

This module turns customer timelines into the one-row-per-customer summary
both probabilistic models are fitted on, and optionally splits the
observation period into a calibration window and a holdout window.

CBS columns
-----------
- ``x``: repeat transactions in the calibration window (first one excluded)
- ``t_x``: time from first to last calibration transaction
- ``litt``: sum of log inter-transaction times in the calibration window
- ``sales`` / ``sales_x``: total and repeat-only calibration revenue
- ``first``: timestamp of the first transaction
- ``T_cal``: time from first transaction to the end of the calibration window
- ``T_star`` / ``x_star`` / ``sales_star``: holdout window length, repeat
  transactions and revenue (only when a holdout split is requested)

All elapsed times are expressed in a :class:`TimeUnit` (weeks by default).

References
----------
- Fader, Peter S., Bruce G. S. Hardie, and Ka Lok Lee. "Counting your
  customers the easy way: An alternative to the Pareto/NBD model."
  Marketing Science 24.2 (2005): 275-284.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Union

import pandas as pd

from clv_estimator.errors import InvalidInputError
from clv_estimator.foundation.transactions import (
    CustomerTimeline,
    EventLike,
    TimeUnit,
    collapse_transactions,
)

logger = logging.getLogger(__name__)

CBS_COLUMNS = ["customer_id", "x", "t_x", "litt", "sales", "sales_x", "first", "T_cal"]
HOLDOUT_COLUMNS = ["T_star", "x_star", "sales_star"]


@dataclass(frozen=True)
class CustomerSufficientStatistics:
    """Sufficient statistics of one customer's transaction history.

    Rows are created once per fitting run and never mutated. Construction
    validates the CBS invariants (``x >= 0``, ``0 <= t_x <= T_cal``) and
    raises :class:`InvalidInputError` when they do not hold.
    """

    customer_id: str
    x: int
    t_x: float
    litt: float
    sales: float
    sales_x: float
    first_transaction_time: datetime
    T_cal: float
    T_star: Optional[float] = None
    x_star: Optional[int] = None
    sales_star: Optional[float] = None

    def __post_init__(self) -> None:
        if self.x < 0:
            raise InvalidInputError(
                f"x cannot be negative: {self.x} (customer_id={self.customer_id})"
            )
        if self.T_cal < 0:
            raise InvalidInputError(
                f"T_cal cannot be negative: {self.T_cal} (customer_id={self.customer_id})"
            )
        if self.t_x < 0 or self.t_x > self.T_cal:
            raise InvalidInputError(
                f"t_x must lie in [0, T_cal]: t_x={self.t_x}, T_cal={self.T_cal} "
                f"(customer_id={self.customer_id})"
            )
        if self.sales_x < 0 or self.sales < self.sales_x:
            raise InvalidInputError(
                f"Expected sales >= sales_x >= 0, got sales={self.sales}, "
                f"sales_x={self.sales_x} (customer_id={self.customer_id})"
            )

        holdout = (self.T_star, self.x_star, self.sales_star)
        if any(value is None for value in holdout) and not all(
            value is None for value in holdout
        ):
            raise InvalidInputError(
                "Holdout fields T_star, x_star and sales_star must be set together "
                f"(customer_id={self.customer_id})"
            )
        if self.has_holdout:
            if self.T_star < 0 or self.x_star < 0 or self.sales_star < 0:
                raise InvalidInputError(
                    f"Holdout fields cannot be negative: T_star={self.T_star}, "
                    f"x_star={self.x_star}, sales_star={self.sales_star} "
                    f"(customer_id={self.customer_id})"
                )

    @property
    def has_holdout(self) -> bool:
        return self.T_star is not None

    @property
    def transaction_count(self) -> int:
        """Calibration transactions including the first one."""
        return self.x + 1

    def as_dict(self) -> dict[str, object]:
        row: dict[str, object] = {
            "customer_id": self.customer_id,
            "x": self.x,
            "t_x": self.t_x,
            "litt": self.litt,
            "sales": self.sales,
            "sales_x": self.sales_x,
            "first": self.first_transaction_time,
            "T_cal": self.T_cal,
        }
        if self.has_holdout:
            row.update(
                T_star=self.T_star, x_star=self.x_star, sales_star=self.sales_star
            )
        return row


@dataclass(frozen=True)
class CalibrationSplit:
    """Result of splitting customer timelines at a calibration cutoff.

    Attributes
    ----------
    statistics:
        CBS rows of every customer active in the calibration window,
        sorted by ``customer_id``.
    excluded_customer_ids:
        Customers whose first event falls after the cutoff. They cannot be
        fitted and only belong to the holdout scope.
    calibration_end:
        End of the calibration window (``None`` for an empty log).
    observation_end:
        End of the observation period (``None`` for an empty log).
    time_unit:
        Unit of every elapsed-time field.
    """

    statistics: tuple[CustomerSufficientStatistics, ...]
    excluded_customer_ids: tuple[str, ...] = ()
    calibration_end: Optional[datetime] = None
    observation_end: Optional[datetime] = None
    time_unit: TimeUnit = TimeUnit.WEEK
    has_holdout: bool = False

    def __len__(self) -> int:
        return len(self.statistics)

    def to_frame(self) -> pd.DataFrame:
        return cbs_to_frame(self.statistics)


def _resolve_time_unit(time_unit: Union[TimeUnit, str]) -> TimeUnit:
    try:
        return TimeUnit(time_unit)
    except ValueError as exc:
        raise InvalidInputError(
            f"Unsupported time unit: {time_unit!r}. "
            f"Expected one of {[unit.value for unit in TimeUnit]}"
        ) from exc


def _check_comparable(label: str, value: datetime, reference: datetime) -> None:
    if (value.tzinfo is None) != (reference.tzinfo is None):
        raise InvalidInputError(
            f"{label} ({value.isoformat()}) and the transaction timestamps must both "
            "be timezone-aware or both be naive"
        )


def _customer_statistics(
    timeline: CustomerTimeline,
    calibration_end: datetime,
    observation_end: datetime,
    unit: TimeUnit,
    with_holdout: bool,
) -> Optional[CustomerSufficientStatistics]:
    calibration = [
        (ts, amount)
        for ts, amount in zip(timeline.timestamps, timeline.amounts)
        if ts <= calibration_end and ts <= observation_end
    ]
    if not calibration:
        return None

    first_ts = calibration[0][0]
    last_ts = calibration[-1][0]
    x = len(calibration) - 1

    # Timelines are de-duplicated, so every gap is strictly positive
    litt = 0.0
    for (previous, _), (current, _) in zip(calibration, calibration[1:]):
        litt += math.log(unit.convert(current - previous))

    sales = sum((Decimal(str(amount)) for _, amount in calibration), Decimal("0"))
    sales_x = sum(
        (Decimal(str(amount)) for _, amount in calibration[1:]), Decimal("0")
    )

    holdout: dict[str, object] = {}
    if with_holdout:
        holdout_events = [
            amount
            for ts, amount in zip(timeline.timestamps, timeline.amounts)
            if calibration_end < ts <= observation_end
        ]
        holdout = {
            "T_star": unit.convert(observation_end - calibration_end),
            "x_star": len(holdout_events),
            "sales_star": float(
                sum((Decimal(str(amount)) for amount in holdout_events), Decimal("0"))
            ),
        }

    return CustomerSufficientStatistics(
        customer_id=timeline.customer_id,
        x=x,
        t_x=unit.convert(last_ts - first_ts) if x > 0 else 0.0,
        litt=litt,
        sales=float(sales),
        sales_x=float(sales_x),
        first_transaction_time=first_ts,
        T_cal=unit.convert(calibration_end - first_ts),
        **holdout,
    )


def split_calibration(
    timelines: Sequence[CustomerTimeline],
    time_unit: Union[TimeUnit, str] = TimeUnit.WEEK,
    calibration_end: Optional[datetime] = None,
    observation_end: Optional[datetime] = None,
) -> CalibrationSplit:
    """Compute CBS rows, optionally split into calibration and holdout windows.

    Parameters
    ----------
    timelines:
        Collapsed customer timelines (see :func:`collapse_transactions`).
    time_unit:
        Unit for ``t_x``, ``litt``, ``T_cal`` and ``T_star``.
    calibration_end:
        Calibration cutoff. Events at or before it are calibration events,
        events strictly after it (up to ``observation_end``) are holdout
        events. When omitted, or not earlier than ``observation_end``, all
        data is calibration data and no holdout fields are populated.
    observation_end:
        End of the observation period; defaults to the last observed event.
        Events after it are discarded.

    Returns
    -------
    CalibrationSplit
        Rows for every customer with at least one calibration event.
        Customers with no event at or before the cutoff are listed in
        ``excluded_customer_ids`` instead (data policy, not an error).
    """
    unit = _resolve_time_unit(time_unit)
    if not timelines:
        logger.warning("Empty transaction log: no customer statistics produced")
        return CalibrationSplit(statistics=(), time_unit=unit)

    reference = timelines[0].first_ts
    if observation_end is None:
        observation_end = max(timeline.last_ts for timeline in timelines)
    else:
        _check_comparable("observation_end", observation_end, reference)
    if calibration_end is not None:
        _check_comparable("calibration_end", calibration_end, reference)

    with_holdout = calibration_end is not None and calibration_end < observation_end
    cutoff = calibration_end if with_holdout else observation_end

    statistics: list[CustomerSufficientStatistics] = []
    excluded: list[str] = []
    for timeline in timelines:
        row = _customer_statistics(timeline, cutoff, observation_end, unit, with_holdout)
        if row is None:
            excluded.append(timeline.customer_id)
        else:
            statistics.append(row)

    if excluded:
        logger.warning(
            f"Excluded {len(excluded)} customers with no transactions at or before "
            f"{cutoff.isoformat()} from the calibration set"
        )
    logger.info(
        f"Built CBS for {len(statistics)} customers "
        f"(calibration_end={cutoff.isoformat()}, holdout={with_holdout}, "
        f"unit={unit.value})"
    )

    return CalibrationSplit(
        statistics=tuple(sorted(statistics, key=lambda row: row.customer_id)),
        excluded_customer_ids=tuple(sorted(excluded)),
        calibration_end=cutoff,
        observation_end=observation_end,
        time_unit=unit,
        has_holdout=with_holdout,
    )


def aggregate_transactions(
    events: Iterable[EventLike],
    time_unit: Union[TimeUnit, str] = TimeUnit.WEEK,
    calibration_end: Optional[datetime] = None,
    observation_end: Optional[datetime] = None,
) -> CalibrationSplit:
    """Collapse a raw transaction log into customer sufficient statistics.

    This is the one-call entry point: it merges same-timestamp events per
    customer (see :func:`collapse_transactions`) and then computes the CBS
    rows (see :func:`split_calibration`).

    An empty log yields an empty :class:`CalibrationSplit`; the estimators
    reject it with :class:`~clv_estimator.errors.InsufficientDataError`.

    Examples
    --------
    >>> from datetime import datetime, timedelta
    >>> t0 = datetime(2024, 1, 1)
    >>> split = aggregate_transactions([
    ...     {"customer_id": "A", "amount": 10.0, "timestamp": t0},
    ...     {"customer_id": "A", "amount": 10.0, "timestamp": t0},
    ...     {"customer_id": "A", "amount": 20.0, "timestamp": t0 + timedelta(weeks=1)},
    ... ])
    >>> row = split.statistics[0]
    >>> (row.x, row.t_x, row.sales, row.sales_x)
    (1, 1.0, 40.0, 20.0)
    """
    timelines = collapse_transactions(events)
    return split_calibration(
        timelines,
        time_unit=time_unit,
        calibration_end=calibration_end,
        observation_end=observation_end,
    )


def cbs_to_frame(rows: Iterable[CustomerSufficientStatistics]) -> pd.DataFrame:
    """Column-oriented view of CBS rows, one row per customer."""
    records = [row.as_dict() for row in rows]
    if not records:
        return pd.DataFrame(
            {
                "customer_id": pd.Series(dtype=str),
                "x": pd.Series(dtype="int64"),
                "t_x": pd.Series(dtype="float64"),
                "litt": pd.Series(dtype="float64"),
                "sales": pd.Series(dtype="float64"),
                "sales_x": pd.Series(dtype="float64"),
                "first": pd.Series(dtype="datetime64[ns]"),
                "T_cal": pd.Series(dtype="float64"),
            }
        )
    columns = CBS_COLUMNS + (HOLDOUT_COLUMNS if "T_star" in records[0] else [])
    return pd.DataFrame(records, columns=columns)
