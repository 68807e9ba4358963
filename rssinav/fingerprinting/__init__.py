"""RSSI fingerprint position estimation.

A query fingerprint (RSSI readings taken at an unknown position) is compared
against a radio map of located fingerprints. The nearest located
fingerprints feed a log-distance path-loss model which is fitted with
nonlinear least squares; the resulting covariance accounts for every
enabled noise source.

Main components:
    - RadioSource, Reading, Fingerprint, LocatedFingerprint: data model
    - NearestFingerprintFinder: k-nearest search in (mean-removed) RSSI space
    - NonlinearFingerprintPositionEstimator: position with known sources
    - NonlinearFingerprintPositionAndRadioSourceEstimator: joint position
      and radio source estimation
    - LinearFingerprintPositionEstimator: closed-form initial guess

Example usage:
    >>> from rssinav.fingerprinting import (
    ...     NonlinearFingerprintPositionEstimator,
    ...     EstimatorListener,
    ... )
    >>> estimator = NonlinearFingerprintPositionEstimator(radio_map, query, sources)
    >>> estimator.remove_means_from_fingerprint_readings = True
    >>> result = estimator.estimate()
    >>> result.position, result.position_covariance
"""

from .base import (
    DEFAULT_MAX_NEAREST_FINGERPRINTS,
    DEFAULT_MIN_NEAREST_FINGERPRINTS,
    DEFAULT_REMOVE_MEANS_FROM_FINGERPRINT_READINGS,
    DEFAULT_USE_NO_MEAN_NEAREST_FINGERPRINT_FINDER,
    DEFAULT_USE_SOURCES_PATH_LOSS_EXPONENT_WHEN_AVAILABLE,
    UNBOUNDED,
    BaseFingerprintPositionEstimator,
    EstimatorListener,
    EstimatorState,
)
from .deterministic import NearestFingerprintFinder, matched_rssi, signal_distance
from .linear import LinearFingerprintPositionEstimator
from .nonlinear import (
    FALLBACK_RSSI_STANDARD_DEVIATION,
    BaseNonlinearFingerprintPositionEstimator,
    NonlinearFingerprintPositionAndRadioSourceEstimator,
    NonlinearFingerprintPositionEstimator,
)
from .types import (
    POSITION_DIMS,
    EstimationResult,
    Fingerprint,
    LocatedFingerprint,
    LocatedRadioSource,
    RadioSource,
    Reading,
    validate_covariance,
)
from .uncertainty import (
    NoiseContribution,
    chi_square,
    position_covariance,
    propagate_covariance,
)

__all__ = [
    # Data model
    "POSITION_DIMS",
    "RadioSource",
    "LocatedRadioSource",
    "Reading",
    "Fingerprint",
    "LocatedFingerprint",
    "EstimationResult",
    "validate_covariance",
    # Nearest fingerprints
    "signal_distance",
    "matched_rssi",
    "NearestFingerprintFinder",
    # Uncertainty
    "NoiseContribution",
    "propagate_covariance",
    "position_covariance",
    "chi_square",
    # Estimators
    "UNBOUNDED",
    "DEFAULT_MIN_NEAREST_FINGERPRINTS",
    "DEFAULT_MAX_NEAREST_FINGERPRINTS",
    "DEFAULT_USE_NO_MEAN_NEAREST_FINGERPRINT_FINDER",
    "DEFAULT_REMOVE_MEANS_FROM_FINGERPRINT_READINGS",
    "DEFAULT_USE_SOURCES_PATH_LOSS_EXPONENT_WHEN_AVAILABLE",
    "FALLBACK_RSSI_STANDARD_DEVIATION",
    "EstimatorState",
    "EstimatorListener",
    "BaseFingerprintPositionEstimator",
    "BaseNonlinearFingerprintPositionEstimator",
    "NonlinearFingerprintPositionEstimator",
    "NonlinearFingerprintPositionAndRadioSourceEstimator",
    "LinearFingerprintPositionEstimator",
]
