"""
Evaluation module.

Error metrics over sets of position estimates and the accuracy radius /
confidence ellipse of a single position covariance.
"""

from .metrics import (
    DEFAULT_CONFIDENCE,
    accuracy_ellipse,
    accuracy_radius,
    compute_error_stats,
    compute_nees,
    compute_position_errors,
    compute_rmse,
)

__all__ = [
    "DEFAULT_CONFIDENCE",
    "accuracy_radius",
    "accuracy_ellipse",
    "compute_position_errors",
    "compute_rmse",
    "compute_error_stats",
    "compute_nees",
]
