"""End-to-end CLV estimation pipeline.

Runs the four stages in order, each consuming the previous stage's immutable
output:

1. aggregate the transaction log into customer sufficient statistics,
2. fit the BG/NBD purchase-timing model,
3. fit the Gamma-Gamma spend model (independent of step 2; both fits may run
   concurrently),
4. score every customer over the forward horizon and assign tiers.

Any stage failure propagates to the caller. Scores are only produced when
both fits succeeded.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import pandas as pd

from clv_estimator.foundation.cbs import CalibrationSplit, aggregate_transactions
from clv_estimator.foundation.transactions import EventLike, TimeUnit
from clv_estimator.models.bg_nbd import BGNBDConfig, BGNBDModelWrapper, BGNBDParameters
from clv_estimator.models.clv_calculator import CLVCalculator
from clv_estimator.models.estimation import FitDiagnostics
from clv_estimator.models.gamma_gamma import (
    GammaGammaConfig,
    GammaGammaModelWrapper,
    GammaGammaParameters,
)
from clv_estimator.models.model_prep import (
    prepare_bg_nbd_inputs,
    prepare_gamma_gamma_inputs,
)
from clv_estimator.validation.validation import HoldoutEvaluation, evaluate_holdout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration of a pipeline run.

    Attributes
    ----------
    time_unit:
        Unit of every elapsed time, including ``horizon``.
    horizon:
        Forward horizon the CLV is projected over.
    bg_nbd:
        BG/NBD fitting configuration.
    gamma_gamma:
        Gamma-Gamma fitting configuration.
    include_first_transaction:
        Average spend over all calibration transactions instead of repeat
        transactions only.
    parallel_fits:
        Fit the two models concurrently in a thread pool.
    """

    time_unit: TimeUnit = TimeUnit.WEEK
    horizon: float = 52.0
    bg_nbd: BGNBDConfig = field(default_factory=BGNBDConfig)
    gamma_gamma: GammaGammaConfig = field(default_factory=GammaGammaConfig)
    include_first_transaction: bool = False
    parallel_fits: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "time_unit", TimeUnit(self.time_unit))
        if not self.horizon > 0:
            raise ValueError(f"horizon must be positive, got {self.horizon}")


@dataclass(frozen=True)
class PipelineResult:
    """Scores and fitted models of one pipeline run."""

    scores: pd.DataFrame
    bg_nbd_params: BGNBDParameters
    gamma_gamma_params: GammaGammaParameters
    bg_nbd_diagnostics: FitDiagnostics
    gamma_gamma_diagnostics: FitDiagnostics
    statistics: CalibrationSplit

    def parameters_as_dict(self) -> dict[str, dict[str, float]]:
        """Fitted parameter sets, for audit and reproducibility."""
        return {
            "bg_nbd": self.bg_nbd_params.as_dict(),
            "gamma_gamma": self.gamma_gamma_params.as_dict(),
        }


def fit_models(
    bg_nbd_data: pd.DataFrame,
    gamma_gamma_data: pd.DataFrame,
    config: PipelineConfig,
) -> tuple[BGNBDModelWrapper, GammaGammaModelWrapper]:
    """Fit both models, concurrently when ``config.parallel_fits`` is set.

    Both fits always run to completion; the first failure is then re-raised.
    """
    bg_nbd_model = BGNBDModelWrapper(config.bg_nbd)
    gamma_gamma_model = GammaGammaModelWrapper(config.gamma_gamma)

    if config.parallel_fits:
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(bg_nbd_model.fit, bg_nbd_data),
                executor.submit(gamma_gamma_model.fit, gamma_gamma_data),
            ]
        for future in futures:
            future.result()
    else:
        bg_nbd_model.fit(bg_nbd_data)
        gamma_gamma_model.fit(gamma_gamma_data)

    return bg_nbd_model, gamma_gamma_model


def run_clv_pipeline(
    events: Iterable[EventLike],
    config: PipelineConfig = PipelineConfig(),
    observation_end: Optional[datetime] = None,
) -> PipelineResult:
    """Estimate CLV for every customer of a transaction log.

    Parameters
    ----------
    events:
        Transaction events or raw rows; any iterable, including a
        :class:`~clv_estimator.foundation.sources.PaginatedTransactionSource`.
    config:
        Pipeline configuration.
    observation_end:
        End of the observation period; defaults to the last event.

    Returns
    -------
    PipelineResult

    Raises
    ------
    InvalidInputError:
        If the log contains malformed events
    InsufficientDataError:
        If the log is empty or too sparse to fit either model
    ConvergenceError:
        If either fit fails to converge
    """
    split = aggregate_transactions(
        events, time_unit=config.time_unit, observation_end=observation_end
    )
    bg_nbd_data = prepare_bg_nbd_inputs(split.statistics)
    gamma_gamma_data = prepare_gamma_gamma_inputs(
        split.statistics,
        min_frequency=config.gamma_gamma.min_frequency,
        include_first_transaction=config.include_first_transaction,
    )

    bg_nbd_model, gamma_gamma_model = fit_models(bg_nbd_data, gamma_gamma_data, config)

    calculator = CLVCalculator(bg_nbd_model, gamma_gamma_model, horizon=config.horizon)
    scores = calculator.calculate_clv(bg_nbd_data, gamma_gamma_data)
    logger.info(
        f"Scored {len(scores)} customers over {config.horizon} "
        f"{config.time_unit.value}s"
    )

    return PipelineResult(
        scores=scores,
        bg_nbd_params=bg_nbd_model.params,
        gamma_gamma_params=gamma_gamma_model.params,
        bg_nbd_diagnostics=bg_nbd_model.diagnostics,
        gamma_gamma_diagnostics=gamma_gamma_model.diagnostics,
        statistics=split,
    )


def run_holdout_validation(
    events: Iterable[EventLike],
    calibration_end: datetime,
    config: PipelineConfig = PipelineConfig(),
    observation_end: Optional[datetime] = None,
) -> HoldoutEvaluation:
    """Fit BG/NBD on the calibration window and evaluate it on the holdout.

    Raises
    ------
    InvalidInputError:
        If ``calibration_end`` leaves no holdout window
    InsufficientDataError:
        If no customer is active in the calibration window
    """
    split = aggregate_transactions(
        events,
        time_unit=config.time_unit,
        calibration_end=calibration_end,
        observation_end=observation_end,
    )
    bg_nbd_model = BGNBDModelWrapper(config.bg_nbd)
    bg_nbd_model.fit(prepare_bg_nbd_inputs(split.statistics))
    return evaluate_holdout(bg_nbd_model, split)
