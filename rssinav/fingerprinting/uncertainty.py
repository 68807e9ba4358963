"""
First-order uncertainty propagation for fingerprint position estimates.

The solver minimizes ½ rᵀWr with W = diag(1/σᵢ²), σᵢ being the std of the
query readings. Its intrinsic parameter covariance is

    P₀ = (JᵀWJ)⁻¹

Each additional independent noise source s perturbs the observations
through a sensitivity matrix B_s = ∂y/∂ξ_s (or ∂h/∂ξ_s, the sign is
irrelevant) with covariance Σ_s. The weighted least squares solution
x̂ = x + G·δy, G = (JᵀWJ)⁻¹JᵀW, maps those perturbations into parameter
space, so that

    P = P₀ + Σ_s G·B_s·Σ_s·B_sᵀ·Gᵀ

Every term is positive-semidefinite: enabling a noise source never
decreases the trace of P.

Noise sources handled by the estimators:
    - RSSI std of the located fingerprint readings
    - path-loss exponent std of each radio source
    - position covariance of each located fingerprint
    - position covariance of each radio source
    - covariance of the initial position guess
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy import linalg

from rssinav.estimators.nonlinear_least_squares import normal_matrix_inverse
from rssinav.rf.residual_model import RssiDifferenceModel

from .types import POSITION_DIMS, validate_covariance


@dataclass(frozen=True)
class NoiseContribution:
    """
    Independent noise source entering the observations.

    Attributes:
        label: Short name used in logs, e.g. "fingerprint_rssi".
        sensitivity: Matrix B (m × k) mapping the noisy quantities to the
            observations.
        covariance: Covariance Σ (k × k) of the noisy quantities. A 1D
            array is interpreted as the diagonal (variances).
    """

    label: str
    sensitivity: np.ndarray
    covariance: np.ndarray

    def __post_init__(self) -> None:
        B = np.atleast_2d(np.asarray(self.sensitivity, dtype=float))
        S = np.asarray(self.covariance, dtype=float)
        if S.ndim == 1:
            S = np.diag(S)
        if S.shape != (B.shape[1], B.shape[1]):
            raise ValueError(
                f"{self.label}: covariance shape {S.shape} does not match "
                f"sensitivity shape {B.shape}"
            )
        object.__setattr__(self, "sensitivity", B)
        object.__setattr__(self, "covariance", S)

    def observation_covariance(self) -> np.ndarray:
        """B·Σ·Bᵀ, the covariance this source induces on the observations."""
        return self.sensitivity @ self.covariance @ self.sensitivity.T


def propagate_covariance(
    jacobian: np.ndarray,
    weights: np.ndarray,
    contributions: Sequence[NoiseContribution] = (),
) -> np.ndarray:
    """
    Parameter covariance including external noise sources.

    Args:
        jacobian: Model Jacobian J at the solution (m × n).
        weights: Solver weights w (m,), W = diag(w).
        contributions: Additional independent noise sources.

    Returns:
        Symmetric parameter covariance P (n × n).

    Raises:
        SingularNormalEquationsError: If JᵀWJ cannot be inverted.
    """
    J = np.asarray(jacobian, dtype=float)
    w = np.asarray(weights, dtype=float)
    JtW = J.T * w
    P0 = normal_matrix_inverse(JtW @ J)
    if not contributions:
        return P0

    G = P0 @ JtW
    P = P0.copy()
    for contribution in contributions:
        if contribution.sensitivity.shape[0] != J.shape[0]:
            raise ValueError(
                f"{contribution.label}: sensitivity has {contribution.sensitivity.shape[0]} "
                f"rows, expected {J.shape[0]}"
            )
        GB = G @ contribution.sensitivity
        P += GB @ contribution.covariance @ GB.T

    return 0.5 * (P + P.T)


def position_covariance(covariance: np.ndarray, dims: int = POSITION_DIMS) -> np.ndarray:
    """
    Position block of a parameter covariance.

    The device position is always the first ``dims`` parameters.

    Raises:
        NonPositiveDefiniteCovarianceError: If the block is not positive-definite.
    """
    block = np.asarray(covariance, dtype=float)[:dims, :dims]
    block = 0.5 * (block + block.T)
    return validate_covariance(block, dims=dims, name="estimated position covariance")


def chi_square(residuals: np.ndarray, weights: np.ndarray) -> float:
    """Sum of squared std-normalized residuals Σ wᵢ·rᵢ²."""
    r = np.asarray(residuals, dtype=float)
    return float(np.sum(np.asarray(weights, dtype=float) * r**2))


def fingerprint_rssi_contribution(model: RssiDifferenceModel) -> Optional[NoiseContribution]:
    """RSSI noise of the located fingerprint readings (fallback std when unknown)."""
    if model.n_observations == 0:
        return None
    return NoiseContribution(
        "fingerprint_rssi",
        model.fingerprint_rssi_sensitivity(),
        model.fingerprint_rssi_std**2,
    )


def path_loss_exponent_contribution(
    model: RssiDifferenceModel,
    position: np.ndarray,
    source_positions: np.ndarray,
    path_loss_exponent_stds: Sequence[Optional[float]],
) -> Optional[NoiseContribution]:
    """Uncertainty of the per-source path-loss exponents (sources without std skipped)."""
    stds = np.array(
        [np.nan if std is None else std for std in path_loss_exponent_stds], dtype=float
    )
    keep = np.flatnonzero(np.isfinite(stds) & (stds > 0))
    if len(keep) == 0:
        return None
    B = model.path_loss_exponent_jacobian(position, source_positions)[:, keep]
    return NoiseContribution("path_loss_exponent", B, stds[keep] ** 2)


def fingerprint_position_contribution(
    model: RssiDifferenceModel,
    position: np.ndarray,
    source_positions: np.ndarray,
    path_loss_exponents: np.ndarray,
) -> Optional[NoiseContribution]:
    """Position covariance of the located fingerprints that carry one."""
    covariances = [located.position_covariance for located in model.located_fingerprints]
    return _position_blocks_contribution(
        "fingerprint_position",
        model.fingerprint_position_jacobian(position, source_positions, path_loss_exponents),
        covariances,
    )


def source_position_contribution(
    model: RssiDifferenceModel,
    position: np.ndarray,
    source_positions: np.ndarray,
    path_loss_exponents: np.ndarray,
    covariances: Sequence[Optional[np.ndarray]],
) -> Optional[NoiseContribution]:
    """Position covariance of the radio sources that carry one."""
    return _position_blocks_contribution(
        "source_position",
        model.source_position_jacobian(position, source_positions, path_loss_exponents),
        covariances,
    )


def initial_position_contribution(
    model: RssiDifferenceModel,
    position: np.ndarray,
    source_positions: np.ndarray,
    path_loss_exponents: np.ndarray,
    initial_position_covariance: Optional[np.ndarray],
) -> Optional[NoiseContribution]:
    """Covariance of the caller supplied initial position."""
    if initial_position_covariance is None:
        return None
    B = model.position_jacobian(position, source_positions, path_loss_exponents)
    return NoiseContribution("initial_position", B, initial_position_covariance)


def _position_blocks_contribution(label, jacobian, covariances):
    columns = []
    blocks = []
    for i, covariance in enumerate(covariances):
        if covariance is None:
            continue
        columns.extend(range(POSITION_DIMS * i, POSITION_DIMS * (i + 1)))
        blocks.append(covariance)
    if not blocks:
        return None
    return NoiseContribution(label, jacobian[:, columns], linalg.block_diag(*blocks))
