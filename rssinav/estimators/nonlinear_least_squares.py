"""
Iterative weighted least squares for small nonlinear problems.

The fingerprint estimators hand this module a prediction function ``h``, its
Jacobian ``J = ∂h/∂x`` and the observed RSSI differences ``y``. The unknown
vector ``x`` (device position, and optionally source positions and path-loss
exponents) minimises

    cost(x) = ½ (y - h(x))ᵀ W (y - h(x)),    W = diag(w),  w = 1/σ²

Two iterations are available:

    Gauss-Newton:         N Δx = g
    Levenberg-Marquardt:  (N + μI) Δx = g,   μ driven by the gain ratio

with ``N = JᵀWJ`` (the normal matrix) and ``g = JᵀW(y - h(x))``. When the
weights are inverse variances, ``N⁻¹`` at the solution is the first-order
covariance of ``x``.

A run moves through ``SolverState``:

    UNSOLVED → ITERATING → CONVERGED | MAX_ITERATIONS | STALLED

An underdetermined or rank-deficient problem raises
``SingularNormalEquationsError``. Running out of iterations, or damping
that can no longer find a cost decrease (``STALLED``), only warns
(``ConvergenceWarning``) and returns the last iterate, unless
``raise_on_max_iterations`` asks for ``NonConvergenceError``.
"""

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Literal, Optional, Tuple

import numpy as np
from scipy import linalg

from rssinav.exceptions import (
    ConvergenceWarning,
    NonConvergenceError,
    SingularNormalEquationsError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_TOLERANCE = 1e-9
DEFAULT_INITIAL_DAMPING = 1e-3

# Reciprocal condition number below which the normal matrix is singular
_RCOND_SINGULAR = 1e-14

# Damping ceiling, relative to the largest normal-matrix diagonal entry
_MAX_RELATIVE_DAMPING = 1e10

ModelFunction = Callable[[np.ndarray], np.ndarray]


class SolverState(Enum):
    """Where a least squares run ended up."""

    UNSOLVED = "unsolved"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    STALLED = "stalled"


@dataclass
class NonlinearLSResult:
    """Outcome of ``gauss_newton`` / ``levenberg_marquardt``.

    Attributes:
        x: Final unknown vector (n,).
        covariance: N⁻¹ at ``x`` (optionally variance-scaled), or None when
            not requested.
        iterations: Iterations actually run.
        residuals: y - h(x) at the final iterate (m,).
        cost: ½ rᵀWr at the final iterate.
        converged: False when the iteration cap or a damping stall stopped
            the run.
        jacobian: J at the final iterate (m × n).
        weights: The weight vector w used for W = diag(w).
        state: Terminal ``SolverState``.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    jacobian: Optional[np.ndarray] = None
    weights: Optional[np.ndarray] = None
    state: SolverState = SolverState.UNSOLVED

    @property
    def chi_square(self) -> float:
        """rᵀWr, twice the cost."""
        return 2.0 * self.cost


def gauss_newton(
    h: ModelFunction,
    jacobian: ModelFunction,
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 20,
    tol: float = DEFAULT_TOLERANCE,
    return_covariance: bool = True,
    scale_covariance: bool = False,
    raise_on_max_iterations: bool = False,
) -> NonlinearLSResult:
    """
    Undamped iteration ``x ← x + N⁻¹ g``.

    Converges quickly when ``x0`` is already close and the model is well
    observed. Every step needs a non-singular normal matrix.

    Args:
        h: Prediction function, R^n → R^m.
        jacobian: Returns ∂h/∂x as an (m × n) array.
        y: Observations (m,).
        x0: Starting point (n,).
        weights: Per-observation weights (m,), normally 1/σ². None means
            unit weights.
        max_iter: Iteration cap.
        tol: Stop once the step norm ‖Δx‖ falls below this.
        return_covariance: Compute N⁻¹ at the final iterate.
        scale_covariance: Multiply N⁻¹ by rᵀWr / (m - n).
        raise_on_max_iterations: Raise instead of warning when the run ends
            without converging.

    Returns:
        NonlinearLSResult.

    Raises:
        SingularNormalEquationsError: N is singular at some iterate.
        NonConvergenceError: Cap reached or damping stalled, with
            ``raise_on_max_iterations``.

    Example:
        >>> sources = np.array([[0.0, 0.0], [30.0, 0.0], [0.0, 30.0]])
        >>> def h(p):
        ...     return -20.0 * np.log10(np.linalg.norm(sources - p, axis=1))
        >>> def jac(p):
        ...     diff = p - sources
        ...     return -20.0 / np.log(10.0) * diff / np.sum(diff**2, axis=1)[:, None]
        >>> y = h(np.array([12.0, 9.0]))
        >>> result = gauss_newton(h, jac, y, x0=np.array([10.0, 10.0]))
    """
    return _iterate(
        h,
        jacobian,
        y,
        x0,
        weights,
        damped=False,
        max_iter=max_iter,
        tol=tol,
        return_covariance=return_covariance,
        scale_covariance=scale_covariance,
        raise_on_max_iterations=raise_on_max_iterations,
    )


def levenberg_marquardt(
    h: ModelFunction,
    jacobian: ModelFunction,
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
    mu0: float = DEFAULT_INITIAL_DAMPING,
    return_covariance: bool = True,
    scale_covariance: bool = False,
    raise_on_max_iterations: bool = False,
) -> NonlinearLSResult:
    """
    Damped iteration ``(N + μI) Δx = g``.

    A trial step is kept when the cost actually drops, and μ shrinks by the
    Nielsen rule. Otherwise μ grows and the step is retried, which makes the
    iteration tolerant of a poor starting point such as a fingerprint
    centroid far from the device.

    Args:
        h: Prediction function, R^n → R^m.
        jacobian: Returns ∂h/∂x as an (m × n) array.
        y: Observations (m,).
        x0: Starting point (n,).
        weights: Per-observation weights (m,), normally 1/σ².
        max_iter: Iteration cap.
        tol: Stop once the step norm ‖Δx‖ falls below this.
        mu0: Starting damping as a fraction of max(diag(N)) at ``x0``.
        return_covariance: Compute N⁻¹ at the final iterate.
        scale_covariance: Multiply N⁻¹ by rᵀWr / (m - n).
        raise_on_max_iterations: Raise instead of warning when the run ends
            without converging.

    Returns:
        NonlinearLSResult.

    Raises:
        SingularNormalEquationsError: Fewer observations than unknowns, or
            N rank-deficient at the solution when a covariance is requested.
        NonConvergenceError: Cap reached or damping stalled, with
            ``raise_on_max_iterations``.
    """
    return _iterate(
        h,
        jacobian,
        y,
        x0,
        weights,
        damped=True,
        max_iter=max_iter,
        tol=tol,
        mu0=mu0,
        return_covariance=return_covariance,
        scale_covariance=scale_covariance,
        raise_on_max_iterations=raise_on_max_iterations,
    )


def normal_matrix_inverse(JtWJ: np.ndarray) -> np.ndarray:
    """
    Inverse of a normal matrix via Cholesky.

    A failed factorisation, non-finite entries or a pivot ratio
    ``min/max diag(L)`` under √1e-14 all mean there are not enough
    independent readings.

    Args:
        JtWJ: Symmetric (n × n) normal matrix.

    Returns:
        Symmetric (n × n) inverse.

    Raises:
        SingularNormalEquationsError: As described above.
    """
    if not np.all(np.isfinite(JtWJ)):
        raise SingularNormalEquationsError("Normal equations contain non-finite values")
    try:
        factor = linalg.cho_factor(JtWJ)
    except linalg.LinAlgError:
        raise SingularNormalEquationsError(
            "Normal equations are singular (not enough independent readings)"
        ) from None

    pivots = np.abs(np.diag(factor[0]))
    if pivots.min() <= np.sqrt(_RCOND_SINGULAR) * pivots.max():
        raise SingularNormalEquationsError(
            "Normal equations are ill-conditioned (not enough independent readings)"
        )

    inverse = linalg.cho_solve(factor, np.eye(JtWJ.shape[0]))
    return 0.5 * (inverse + inverse.T)


def _checked_weights(weights: Optional[np.ndarray], m: int) -> np.ndarray:
    if weights is None:
        return np.ones(m)
    w = np.asarray(weights, dtype=float)
    if w.ndim != 1 or len(w) != m:
        raise ValueError(f"weights must be a 1D array of length {m}, got shape {w.shape}")
    if np.any(w < 0):
        raise ValueError("weights must be non-negative")
    return w


def _normal_equations(
    J: np.ndarray, w: np.ndarray, r: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, float]:
    """N = JᵀWJ, g = JᵀWr and the cost ½rᵀWr."""
    JtW = J.T * w
    return JtW @ J, JtW @ r, 0.5 * float(r @ (w * r))


def _iterate(
    h: ModelFunction,
    jacobian: ModelFunction,
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray],
    damped: bool,
    max_iter: int,
    tol: float,
    mu0: float = DEFAULT_INITIAL_DAMPING,
    return_covariance: bool = True,
    scale_covariance: bool = False,
    raise_on_max_iterations: bool = False,
) -> NonlinearLSResult:
    y = np.asarray(y, dtype=float)
    x = np.array(x0, dtype=float)
    if y.ndim != 1:
        raise ValueError(f"y must be a 1D array, got shape {y.shape}")
    if x.ndim != 1:
        raise ValueError(f"x0 must be a 1D array, got shape {x.shape}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be >= 1, got {max_iter}")

    m, n = len(y), len(x)
    if m < n:
        raise SingularNormalEquationsError(
            f"{m} residuals are not enough to estimate {n} unknowns"
        )
    w = _checked_weights(weights, m)

    state = SolverState.ITERATING
    mu = None
    nu = 2.0
    iteration = 0

    for iteration in range(max_iter):
        predicted = h(x)
        if len(predicted) != m:
            raise ValueError(f"h(x) returned {len(predicted)} values, expected {m}")
        J = jacobian(x)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian has shape {J.shape}, expected ({m}, {n})")

        N, g, cost = _normal_equations(J, w, y - predicted)
        if not (np.all(np.isfinite(N)) and np.isfinite(cost)):
            raise SingularNormalEquationsError("Model evaluation produced non-finite values")

        if np.linalg.norm(g) <= tol * tol:
            state = SolverState.CONVERGED
            break

        if not damped:
            step = normal_matrix_inverse(N) @ g
            x = x + step
        else:
            if mu is None:
                mu = mu0 * max(float(np.max(np.diag(N))), np.finfo(float).tiny)
            x, step, mu, nu = _damped_step(h, y, w, x, N, g, cost, mu, nu, tol)
            if step is None:
                state = SolverState.STALLED
                break

        if np.linalg.norm(step) < tol:
            state = SolverState.CONVERGED
            break

    r = y - h(x)
    J = jacobian(x)
    N, _, cost = _normal_equations(J, w, r)

    # singularity takes precedence over non-convergence
    covariance = None
    if return_covariance:
        covariance = normal_matrix_inverse(N)
        if scale_covariance and m > n:
            covariance = covariance * (2.0 * cost / (m - n))

    if state is not SolverState.CONVERGED:
        if state is SolverState.STALLED:
            message = (
                f"Least squares stalled after {iteration + 1} iterations: damping "
                f"found no step lowering the cost (cost={cost:.3e})"
            )
        else:
            state = SolverState.MAX_ITERATIONS
            message = (
                f"Least squares stopped after {max_iter} iterations without converging "
                f"(cost={cost:.3e})"
            )
        if raise_on_max_iterations:
            raise NonConvergenceError(message)
        warnings.warn(message, ConvergenceWarning, stacklevel=3)

    logger.debug(
        "%s: %s after %d iterations, cost %.3e",
        "LM" if damped else "GN",
        state.value,
        iteration + 1,
        cost,
    )

    return NonlinearLSResult(
        x=x,
        covariance=covariance,
        iterations=iteration + 1,
        residuals=r,
        cost=cost,
        converged=state is SolverState.CONVERGED,
        jacobian=J,
        weights=w,
        state=state,
    )


def _damped_step(h, y, w, x, N, g, cost, mu, nu, tol):
    """Retry damped steps until one lowers the cost.

    Returns (x, step, mu, nu). ``step`` is None when the damping ceiling was
    reached without any cost decrease, in which case ``x`` is unchanged.
    """
    n = len(x)
    ceiling = _MAX_RELATIVE_DAMPING * max(float(np.max(np.diag(N))), 1.0)
    while True:
        damped_N = N + mu * np.eye(n)
        try:
            step = np.linalg.solve(damped_N, g)
        except np.linalg.LinAlgError:
            step = np.linalg.lstsq(damped_N, g, rcond=None)[0]

        if np.linalg.norm(step) < tol:
            return x + step, step, mu, nu

        trial = x + step
        r_trial = y - h(trial)
        trial_cost = 0.5 * float(r_trial @ (w * r_trial))

        # linear model decrease ½ Δxᵀ(μΔx + g)
        expected = 0.5 * float(step @ (mu * step + g))
        gain = (cost - trial_cost) / expected if expected > 0 and np.isfinite(trial_cost) else 0.0

        if gain > 0:
            mu *= max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
            return trial, step, mu, 2.0

        mu *= nu
        nu *= 2.0
        if mu > ceiling:
            return x, None, mu, nu


def solve_nonlinear_ls(
    h: ModelFunction,
    jacobian: ModelFunction,
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    method: Literal["gn", "lm"] = "lm",
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
    return_covariance: bool = True,
    mu0: float = DEFAULT_INITIAL_DAMPING,
    scale_covariance: bool = False,
    raise_on_max_iterations: bool = False,
) -> NonlinearLSResult:
    """
    Pick the iteration by name: ``"gn"`` or ``"lm"``.

    The remaining arguments are those of ``gauss_newton`` and
    ``levenberg_marquardt``; ``mu0`` only applies to ``"lm"``.
    """
    if method not in ("gn", "lm"):
        raise ValueError(f"Unknown method {method!r}, expected 'gn' or 'lm'")

    options = dict(
        weights=weights,
        max_iter=max_iter,
        tol=tol,
        return_covariance=return_covariance,
        scale_covariance=scale_covariance,
        raise_on_max_iterations=raise_on_max_iterations,
    )
    if method == "gn":
        return gauss_newton(h, jacobian, y, x0, **options)
    return levenberg_marquardt(h, jacobian, y, x0, mu0=mu0, **options)
