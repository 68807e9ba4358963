"""Error taxonomy for fingerprint-based position estimation.

Three families are distinguished:
    - State errors raised by the estimator facades (``LockedError``,
      ``NotReadyError``).
    - Numerical errors raised while estimating (subclasses of
      ``FingerprintEstimationError``).
    - Soft conditions reported through ``warnings`` (``ConvergenceWarning``).

Construction-time validation problems (missing collaborators, invalid
bounds, malformed readings) are plain ``ValueError``/``TypeError``.
"""


class RssiNavError(Exception):
    """Base class for all errors raised by rssinav."""


class LockedError(RssiNavError):
    """An estimator mutator was called while ``estimate()`` is in progress."""


class NotReadyError(RssiNavError):
    """``estimate()`` was called before all required inputs were provided."""


class FingerprintEstimationError(RssiNavError):
    """Base class for numerical failures during estimation."""


class NearestFingerprintNotFoundError(FingerprintEstimationError):
    """No located fingerprint shares a radio source with the query."""


class SingularNormalEquationsError(FingerprintEstimationError):
    """Normal equations are singular or there are fewer readings than unknowns."""


class NonPositiveDefiniteCovarianceError(FingerprintEstimationError, ValueError):
    """A covariance matrix is not symmetric positive-definite."""


class NonConvergenceError(FingerprintEstimationError):
    """Iteration cap reached without meeting tolerance (strict mode only)."""


class ConvergenceWarning(RuntimeWarning):
    """Iteration cap reached; the best available estimate is returned."""
