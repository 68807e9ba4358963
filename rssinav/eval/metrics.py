"""
Evaluation metrics for fingerprint positioning.

Position error statistics over sets of estimates, plus the accuracy radius
of a single estimate: the radius of the smallest circle that contains the
confidence ellipse of its position covariance,

    r = sqrt( χ²_ppf(confidence, dof) · λ_max(P) )
"""

import logging
from typing import Dict, Optional, Tuple, Union

import numpy as np
from scipy import stats

logger = logging.getLogger(__name__)

# Probability mass within one standard deviation of a 1D Gaussian
DEFAULT_CONFIDENCE = 0.6827


def compute_position_errors(truth: np.ndarray, estimated: np.ndarray) -> np.ndarray:
    """
    Signed position errors ``estimated - truth``.

    Args:
        truth: Ground-truth device positions, (N, 2) or (2,).
        estimated: Estimated positions with the same shape.

    Raises:
        ValueError: The two arrays differ in shape.
    """
    truth = np.asarray(truth, dtype=float)
    estimated = np.asarray(estimated, dtype=float)
    if truth.shape != estimated.shape:
        raise ValueError(
            f"truth has shape {truth.shape} but estimated has shape {estimated.shape}"
        )
    return estimated - truth


def _error_magnitudes(errors: np.ndarray) -> np.ndarray:
    errors = np.asarray(errors, dtype=float)
    return np.linalg.norm(errors, axis=1) if errors.ndim > 1 else np.abs(errors)


def compute_rmse(errors: np.ndarray, axis: Optional[int] = None) -> Union[float, np.ndarray]:
    """Root mean square error, scalar (axis=None) or along ``axis``."""
    errors = np.asarray(errors, dtype=float)
    if axis is None:
        return float(np.sqrt(np.mean(errors**2)))
    return np.sqrt(np.mean(errors**2, axis=axis))


def compute_error_stats(errors: np.ndarray) -> Dict[str, float]:
    """
    Summary of the error magnitudes of a batch of position estimates.

    Args:
        errors: Error vectors (N, d), or already-scalar errors (N,).

    Returns:
        Dictionary with 'mean', 'median', 'std', 'rmse', 'p75', 'p90',
        'p95' and 'max', all in the units of the errors.
    """
    magnitudes = _error_magnitudes(errors)
    summary = {
        "mean": float(np.mean(magnitudes)),
        "median": float(np.median(magnitudes)),
        "std": float(np.std(magnitudes)),
        "rmse": compute_rmse(magnitudes),
        "max": float(np.max(magnitudes)),
    }
    for percentile in (75, 90, 95):
        summary[f"p{percentile}"] = float(np.percentile(magnitudes, percentile))
    return summary


def compute_nees(truth: np.ndarray, estimated: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """
    Normalised estimation error squared, ``eᵀ P⁻¹ e`` per estimate.

    With a consistent covariance the values are χ² distributed with as many
    degrees of freedom as position axes, so their mean should sit near 2
    for planar fixes.

    Args:
        truth: Ground-truth positions (N, n).
        estimated: Estimated positions (N, n).
        covariance: Position covariances (N, n, n).

    Returns:
        (N,) array, NaN where a covariance cannot be inverted.
    """
    errors = compute_position_errors(truth, estimated)
    covariance = np.asarray(covariance, dtype=float)
    N, n = errors.shape
    if covariance.shape != (N, n, n):
        raise ValueError(f"covariance must have shape ({N}, {n}, {n}), got {covariance.shape}")

    nees = np.full(N, np.nan)
    for i, (error, P) in enumerate(zip(errors, covariance)):
        try:
            nees[i] = error @ np.linalg.solve(P, error)
        except np.linalg.LinAlgError:
            logger.debug("Singular covariance for estimate %d, NEES left undefined", i)
    return nees


def _check_confidence(confidence: float) -> None:
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")


def accuracy_radius(covariance: np.ndarray, confidence: float = DEFAULT_CONFIDENCE) -> float:
    """
    Radius of the circle bounding the confidence ellipse of a covariance.

    Args:
        covariance: Position covariance (n × n), symmetric PSD.
        confidence: Probability mass of the ellipse, in (0, 1).

    Returns:
        Radius in the units of the position.

    Example:
        >>> accuracy_radius(np.diag([4.0, 1.0]), confidence=0.95)  # doctest: +ELLIPSIS
        4.89...
    """
    _check_confidence(confidence)
    covariance = np.asarray(covariance, dtype=float)
    if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
        raise ValueError(f"covariance must be square, got shape {covariance.shape}")

    eigenvalues = np.linalg.eigvalsh(0.5 * (covariance + covariance.T))
    if eigenvalues[0] < -1e-12 * max(abs(eigenvalues[-1]), 1.0):
        raise ValueError("covariance must be positive-semidefinite")

    chi2_value = stats.chi2.ppf(confidence, covariance.shape[0])
    return float(np.sqrt(chi2_value * max(eigenvalues[-1], 0.0)))


def accuracy_ellipse(
    covariance: np.ndarray, confidence: float = DEFAULT_CONFIDENCE
) -> Tuple[float, float, float]:
    """
    Confidence ellipse of a 2D position covariance.

    Returns:
        Tuple (semi_major, semi_minor, angle) with the angle of the major
        axis in radians from the x axis.
    """
    _check_confidence(confidence)
    covariance = np.asarray(covariance, dtype=float)
    if covariance.shape != (2, 2):
        raise ValueError(f"covariance must have shape (2, 2), got {covariance.shape}")

    eigenvalues, eigenvectors = np.linalg.eigh(0.5 * (covariance + covariance.T))
    eigenvalues = np.maximum(eigenvalues, 0.0)
    scale = stats.chi2.ppf(confidence, 2)
    semi_major = float(np.sqrt(scale * eigenvalues[1]))
    semi_minor = float(np.sqrt(scale * eigenvalues[0]))
    angle = float(np.arctan2(eigenvectors[1, 1], eigenvectors[0, 1]))
    return semi_major, semi_minor, angle
