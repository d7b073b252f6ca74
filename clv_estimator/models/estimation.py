"""Maximum-likelihood driver shared by the BG/NBD and Gamma-Gamma models.

Both models have strictly positive parameters and a closed-form
log-likelihood. The driver optimizes over log-parameters inside a box
(``OptimizerConfig.log_bounds``), so positivity holds by construction, and
wraps :func:`scipy.optimize.minimize` with the pipeline's failure policy:

- the log-likelihood of accepted iterates must never decrease;
- the run must finish within ``max_iterations`` and ``timeout_seconds``;
- the optimum must be finite.

Any violation raises :class:`~clv_estimator.errors.ConvergenceError` instead
of returning a partially optimized parameter set.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np
from scipy.optimize import minimize

from clv_estimator.errors import ConvergenceError

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = ("powell", "nelder-mead", "l-bfgs-b")

# Objective value returned where the log-likelihood is not finite
_PENALTY = 1e100


@dataclass(frozen=True)
class OptimizerConfig:
    """Configuration of the numerical optimizer.

    Attributes
    ----------
    method:
        'nelder-mead' (default, derivative-free), 'powell' (derivative-free
        direction set) or 'l-bfgs-b' (gradient-based, finite-difference
        gradients).
    tolerance:
        Relative change of the log-likelihood below which the fit is
        considered converged.
    max_iterations:
        Iteration budget. Running out of it raises ConvergenceError.
    timeout_seconds:
        Optional wall-clock budget for a single fit.
    log_bounds:
        Box on the log of every parameter; (-18.42, 18.42) is roughly
        [1e-8, 1e8] in the rescaled units the models fit in.
    """

    method: str = "nelder-mead"
    tolerance: float = 1e-6
    max_iterations: int = 1000
    timeout_seconds: Optional[float] = None
    log_bounds: tuple[float, float] = (-18.42, 18.42)

    def __post_init__(self) -> None:
        if self.method not in SUPPORTED_METHODS:
            raise ValueError(
                f"Invalid optimizer method: {self.method}. "
                f"Must be one of {SUPPORTED_METHODS}."
            )
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.max_iterations <= 0:
            raise ValueError(
                f"max_iterations must be positive, got {self.max_iterations}"
            )
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(
                f"timeout_seconds must be positive, got {self.timeout_seconds}"
            )
        low, high = self.log_bounds
        if not low < high:
            raise ValueError(f"log_bounds must be increasing, got {self.log_bounds}")


@dataclass(frozen=True)
class FitDiagnostics:
    """Audit record of one maximum-likelihood fit.

    Attributes
    ----------
    log_likelihood:
        Total log-likelihood at the returned parameters, in the caller's units.
    iterations:
        Optimizer iterations performed.
    converged:
        Always True for returned diagnostics; failed fits raise instead.
    message:
        Optimizer termination message.
    log_likelihood_trace:
        Log-likelihood (in the rescaled units the optimizer works in) after
        each iteration. Non-decreasing.
    elapsed_seconds:
        Wall-clock duration of the fit.
    n_customers:
        Number of customers the model was fitted on.
    """

    log_likelihood: float
    iterations: int
    converged: bool
    message: str
    log_likelihood_trace: tuple[float, ...]
    elapsed_seconds: float
    n_customers: int


@dataclass(frozen=True)
class OptimizationResult:
    params: np.ndarray
    log_likelihood: float
    iterations: int
    message: str
    trace: tuple[float, ...]
    elapsed_seconds: float


def _solver_options(config: OptimizerConfig, x0: np.ndarray, scale: float) -> dict:
    if config.method == "powell":
        return {"ftol": config.tolerance, "maxiter": config.max_iterations}
    if config.method == "nelder-mead":
        simplex = np.vstack([x0, x0 + 0.5 * np.eye(len(x0))])
        low, high = config.log_bounds
        # Nelder-Mead only has an absolute tolerance
        return {
            "fatol": config.tolerance * scale,
            "xatol": 1e-4,
            "maxiter": config.max_iterations,
            "initial_simplex": np.clip(simplex, low, high),
        }
    return {"ftol": config.tolerance, "maxiter": config.max_iterations}


def maximize_log_likelihood(
    log_likelihood: Callable[[np.ndarray], float],
    initial_params: Sequence[float],
    config: OptimizerConfig,
    model_name: str,
) -> OptimizationResult:
    """Maximize ``log_likelihood`` over strictly positive parameters.

    Parameters
    ----------
    log_likelihood:
        Total log-likelihood as a function of the positive parameter vector.
    initial_params:
        Starting point (positive values).
    config:
        Optimizer settings.
    model_name:
        Used in log and error messages.

    Returns
    -------
    OptimizationResult
        Optimal parameters with the iteration trace.

    Raises
    ------
    ConvergenceError:
        If the optimizer stops without converging, exhausts its iteration or
        time budget, returns non-finite parameters, or an iteration lowers
        the log-likelihood.
    """
    initial = np.asarray(initial_params, dtype=float)
    if np.any(~np.isfinite(initial)) or np.any(initial <= 0):
        raise ValueError(
            f"Initial parameters must be finite and positive, got {initial.tolist()}"
        )

    low, high = config.log_bounds
    x0 = np.clip(np.log(initial), low, high)
    started = time.monotonic()
    trace: list[float] = []

    def objective(theta: np.ndarray) -> float:
        if (
            config.timeout_seconds is not None
            and time.monotonic() - started > config.timeout_seconds
        ):
            raise ConvergenceError(
                f"{model_name} fit exceeded its time budget of "
                f"{config.timeout_seconds}s after {len(trace)} iterations"
            )
        # Parameters outside the box are evaluated at the box edge
        theta = np.clip(theta, low, high)
        with np.errstate(all="ignore"):
            value = float(log_likelihood(np.exp(theta)))
        if not np.isfinite(value):
            return _PENALTY
        return -value

    def callback(xk: np.ndarray) -> None:
        current = -objective(xk)
        if trace:
            previous = trace[-1]
            if current < previous - 1e-9 * max(1.0, abs(previous)):
                raise ConvergenceError(
                    f"{model_name} log-likelihood decreased from {previous:.6f} to "
                    f"{current:.6f} at iteration {len(trace) + 1}"
                )
        trace.append(current)
        logger.debug(f"{model_name} iteration {len(trace)}: log-likelihood={current:.6f}")

    initial_value = objective(x0)
    scale = max(1.0, abs(initial_value)) if initial_value < _PENALTY else 1.0

    # Bounded Powell line searches can end on a worse point than they started
    # from, so Powell runs unbounded on the clipped objective.
    result = minimize(
        objective,
        x0,
        method=config.method,
        bounds=None if config.method == "powell" else [(low, high)] * len(x0),
        callback=callback,
        options=_solver_options(config, x0, scale),
    )
    elapsed = time.monotonic() - started
    iterations = int(getattr(result, "nit", len(trace)))

    if not result.success:
        raise ConvergenceError(
            f"{model_name} fit did not converge after {iterations} iterations "
            f"(method={config.method}): {result.message}"
        )

    theta = np.clip(np.asarray(result.x, dtype=float), low, high)
    params = np.exp(theta)
    best = -float(result.fun)
    if not np.all(np.isfinite(params)) or result.fun >= _PENALTY:
        raise ConvergenceError(
            f"{model_name} fit produced a non-finite optimum: params={params.tolist()}"
        )

    at_bound = np.isclose(theta, low) | np.isclose(theta, high)
    if np.any(at_bound):
        logger.warning(
            f"{model_name} parameters {np.flatnonzero(at_bound).tolist()} reached the "
            f"optimizer bounds; the likelihood is flat in that direction"
        )

    logger.info(
        f"{model_name} converged in {iterations} iterations ({elapsed:.2f}s), "
        f"log-likelihood={best:.4f}"
    )
    return OptimizationResult(
        params=params,
        log_likelihood=best,
        iterations=iterations,
        message=str(result.message),
        trace=tuple(trace),
        elapsed_seconds=elapsed,
    )
