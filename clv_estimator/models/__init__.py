"""CLV models and model preparation utilities."""

from clv_estimator.models.bg_nbd import (
    BGNBDConfig,
    BGNBDModelWrapper,
    BGNBDParameters,
)
from clv_estimator.models.clv_calculator import (
    CLVCalculator,
    CLVScore,
    CLVTier,
    assign_tiers,
)
from clv_estimator.models.estimation import FitDiagnostics, OptimizerConfig
from clv_estimator.models.gamma_gamma import (
    GammaGammaConfig,
    GammaGammaModelWrapper,
    GammaGammaParameters,
)
from clv_estimator.models.model_prep import (
    BGNBDInput,
    GammaGammaInput,
    prepare_bg_nbd_inputs,
    prepare_gamma_gamma_inputs,
)

__all__ = [
    "BGNBDConfig",
    "BGNBDModelWrapper",
    "BGNBDParameters",
    "BGNBDInput",
    "GammaGammaConfig",
    "GammaGammaModelWrapper",
    "GammaGammaParameters",
    "GammaGammaInput",
    "CLVCalculator",
    "CLVScore",
    "CLVTier",
    "assign_tiers",
    "FitDiagnostics",
    "OptimizerConfig",
    "prepare_bg_nbd_inputs",
    "prepare_gamma_gamma_inputs",
]
