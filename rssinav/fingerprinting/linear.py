"""
Linear (closed-form) fingerprint position estimator.

The RSSI of radio source a at an unknown position p close to a located
fingerprint f is approximated to first order around f:

    Pr(p) ≈ Pr(f) - gᵀ·(p - f),    g = 10·n·(f - a) / (ln10 · d²(f, a))

which, rearranged, gives one linear equation per shared reading:

    gᵀ·p = Pr(f) - Pr(p) + gᵀ·f

Stacking every (nearest fingerprint, known source) pair gives A·p = b, solved
with ordinary least squares. The result is only as good as the Taylor
approximation, so it is mostly useful as an initial guess for the nonlinear
estimators.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from rssinav.exceptions import SingularNormalEquationsError
from rssinav.rf.residual_model import LN10, TINY, RssiDifferenceModel

from .base import BaseFingerprintPositionEstimator, EstimatorListener
from .types import EstimationResult, Fingerprint, LocatedFingerprint, LocatedRadioSource

logger = logging.getLogger(__name__)


class LinearFingerprintPositionEstimator(BaseFingerprintPositionEstimator):
    """
    First-order position estimate from known radio sources.

    Args:
        located_fingerprints: Radio map.
        fingerprint: Query fingerprint.
        sources: Located radio sources (known emitters).
        listener: Optional EstimatorListener.

    Example:
        >>> linear = LinearFingerprintPositionEstimator(radio_map, query, sources)
        >>> guess = linear.estimate().position
        >>> nonlinear = NonlinearFingerprintPositionEstimator(
        ...     radio_map, query, sources, initial_position=guess
        ... )
    """

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        sources: Optional[Sequence[LocatedRadioSource]] = None,
        listener: Optional[EstimatorListener] = None,
    ):
        self._require_all_or_nothing(
            located_fingerprints=located_fingerprints,
            fingerprint=fingerprint,
            sources=sources,
        )
        self._sources: Optional[List[LocatedRadioSource]] = None
        super().__init__(located_fingerprints, fingerprint, listener)
        if sources is not None:
            self._sources = self._checked_sources(sources)

    @staticmethod
    def _checked_sources(sources) -> List[LocatedRadioSource]:
        if sources is None:
            raise ValueError("sources cannot be None")
        sources = list(sources)
        if len(sources) == 0:
            raise ValueError("sources cannot be empty")
        for source in sources:
            if not isinstance(source, LocatedRadioSource):
                raise TypeError(f"sources must contain LocatedRadioSource, got {type(source)}")
        return sources

    @property
    def sources(self) -> Optional[List[LocatedRadioSource]]:
        return self._sources

    @sources.setter
    def sources(self, value: Sequence[LocatedRadioSource]) -> None:
        self._check_not_locked()
        self._sources = self._checked_sources(value)
        self._on_inputs_changed()

    @property
    def is_ready(self) -> bool:
        return super().is_ready and bool(self._sources)

    def _exponent(self, located: LocatedRadioSource) -> float:
        if (
            self._use_sources_path_loss_exponent_when_available
            and located.path_loss_exponent is not None
        ):
            return located.path_loss_exponent
        return self._path_loss_exponent

    def _estimate_from(self, nearest_fingerprints):
        model = RssiDifferenceModel(
            self._fingerprint,
            nearest_fingerprints,
            [located.source for located in self._sources],
            remove_mean=self._remove_means_from_fingerprint_readings,
        )
        if model.n_observations < 2:
            raise SingularNormalEquationsError(
                f"{model.n_observations} readings are not enough to estimate a 2D position"
            )

        source_positions = np.array([located.position for located in self._sources])
        exponents = np.array([self._exponent(located) for located in self._sources])

        f = model.fingerprint_positions[model.fingerprint_index]
        f_minus_a = f - source_positions[model.source_index]
        d2_fa = np.maximum(np.sum(f_minus_a**2, axis=1), TINY)
        g = (10.0 * exponents[model.source_index] / (LN10 * d2_fa))[:, None] * f_minus_a

        A = model.project(g)
        b = model.project(np.sum(g * f, axis=1)) - model.observations

        position, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
        if rank < 2:
            raise SingularNormalEquationsError(
                "Linearized system is rank deficient (not enough independent readings)"
            )

        logger.debug(
            "Linear fit with %d readings from %d fingerprints",
            model.n_observations,
            len(nearest_fingerprints),
        )
        return EstimationResult(
            position=position,
            position_covariance=None,
            covariance=None,
            nearest_fingerprints=list(nearest_fingerprints),
        )
