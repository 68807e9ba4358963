"""
Nonlinear fingerprint position estimators.

Both estimators fit the RSSI-difference model (see
``rssinav.rf.residual_model``) to the readings shared by the query
fingerprint and its nearest located fingerprints, using Levenberg-Marquardt:

    - ``NonlinearFingerprintPositionEstimator``: radio source positions are
      known; the only unknown is the device position (x, y).
    - ``NonlinearFingerprintPositionAndRadioSourceEstimator``: the device
      position and the position of every radio source read by at least two
      nearest fingerprints are estimated jointly (optionally also their
      path-loss exponents).

After convergence the parameter covariance is propagated from the enabled
noise sources (see ``rssinav.fingerprinting.uncertainty``).

Non-convergence policy: reaching ``max_iterations`` is soft by default. The
best estimate is returned with ``result.converged == False`` and a
``ConvergenceWarning`` is emitted. Set ``raise_on_max_iterations = True`` to
get a ``NonConvergenceError`` instead.
"""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from rssinav.estimators.nonlinear_least_squares import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOLERANCE,
    levenberg_marquardt,
)
from rssinav.exceptions import SingularNormalEquationsError
from rssinav.rf.residual_model import RssiDifferenceModel

from .base import BaseFingerprintPositionEstimator, EstimatorListener
from .types import (
    POSITION_DIMS,
    EstimationResult,
    Fingerprint,
    LocatedFingerprint,
    LocatedRadioSource,
    RadioSource,
    _as_position,
    validate_covariance,
)
from .uncertainty import (
    chi_square,
    fingerprint_position_contribution,
    fingerprint_rssi_contribution,
    initial_position_contribution,
    path_loss_exponent_contribution,
    position_covariance,
    propagate_covariance,
    source_position_contribution,
)

logger = logging.getLogger(__name__)

FALLBACK_RSSI_STANDARD_DEVIATION = 1e-3
DEFAULT_PROPAGATE_FINGERPRINT_RSSI_STANDARD_DEVIATION = True
DEFAULT_PROPAGATE_PATH_LOSS_EXPONENT_STANDARD_DEVIATION = True
DEFAULT_PROPAGATE_FINGERPRINT_POSITION_COVARIANCE = True
DEFAULT_PROPAGATE_RADIO_SOURCE_POSITION_COVARIANCE = True
DEFAULT_PROPAGATE_INITIAL_POSITION_COVARIANCE = True
DEFAULT_RAISE_ON_MAX_ITERATIONS = False

# Nearest fingerprints that must read a radio source for it to be estimated
MIN_FINGERPRINTS_PER_SOURCE = 2


def centroid(located_fingerprints: Sequence[LocatedFingerprint]) -> np.ndarray:
    """Mean position of a set of located fingerprints."""
    return np.mean([located.position for located in located_fingerprints], axis=0)


def weighted_centroid(
    located_fingerprints: Sequence[LocatedFingerprint], source: RadioSource
) -> np.ndarray:
    """
    Position guess for a radio source from the fingerprints that read it.

    Fingerprint positions are averaged with weights proportional to the
    squared received power, so the few strongest readings dominate and each
    source gets a guess near its own strongest coverage.

    Raises:
        ValueError: If no fingerprint reads ``source``.
    """
    positions = []
    rssi = []
    for located in located_fingerprints:
        reading = located.reading_for(source)
        if reading is not None:
            positions.append(located.position)
            rssi.append(reading.rssi)
    if not positions:
        raise ValueError(f"No located fingerprint reads {source.identifier}")

    rssi = np.asarray(rssi, dtype=float)
    # (P/P_max)² in linear units, relative to the strongest reading
    weights = 10.0 ** ((rssi - rssi.max()) / 5.0)
    return np.average(np.asarray(positions, dtype=float), axis=0, weights=weights)


class BaseNonlinearFingerprintPositionEstimator(BaseFingerprintPositionEstimator):
    """
    Settings shared by the nonlinear estimators: initial guess, solver
    limits, RSSI std fallback and covariance propagation toggles.
    """

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        initial_position: Optional[np.ndarray] = None,
        listener: Optional[EstimatorListener] = None,
    ):
        super().__init__(located_fingerprints, fingerprint, listener)
        self._initial_position = None
        self._initial_position_covariance = None
        if initial_position is not None:
            self._initial_position = _as_position(initial_position, "initial_position")

        self._fallback_rssi_standard_deviation = FALLBACK_RSSI_STANDARD_DEVIATION
        self._fingerprint_rssi_standard_deviation_propagated = (
            DEFAULT_PROPAGATE_FINGERPRINT_RSSI_STANDARD_DEVIATION
        )
        self._path_loss_exponent_standard_deviation_propagated = (
            DEFAULT_PROPAGATE_PATH_LOSS_EXPONENT_STANDARD_DEVIATION
        )
        self._fingerprint_position_covariance_propagated = (
            DEFAULT_PROPAGATE_FINGERPRINT_POSITION_COVARIANCE
        )
        self._radio_source_position_covariance_propagated = (
            DEFAULT_PROPAGATE_RADIO_SOURCE_POSITION_COVARIANCE
        )
        self._initial_position_covariance_propagated = (
            DEFAULT_PROPAGATE_INITIAL_POSITION_COVARIANCE
        )
        self._max_iterations = DEFAULT_MAX_ITERATIONS
        self._tolerance = DEFAULT_TOLERANCE
        self._raise_on_max_iterations = DEFAULT_RAISE_ON_MAX_ITERATIONS

    # ------------------------------------------------------------------
    # Initial guess

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        """Initial guess; None to start from the centroid of the nearest fingerprints."""
        return self._initial_position

    @initial_position.setter
    def initial_position(self, value: Optional[np.ndarray]) -> None:
        self._check_not_locked()
        self._initial_position = (
            None if value is None else _as_position(value, "initial_position")
        )

    @property
    def initial_position_covariance(self) -> Optional[np.ndarray]:
        return self._initial_position_covariance

    @initial_position_covariance.setter
    def initial_position_covariance(self, value: Optional[np.ndarray]) -> None:
        self._check_not_locked()
        self._initial_position_covariance = validate_covariance(
            value, name="initial_position_covariance"
        )

    # ------------------------------------------------------------------
    # Noise and propagation

    @property
    def fallback_rssi_standard_deviation(self) -> float:
        """RSSI std (dB) used for readings that carry none."""
        return self._fallback_rssi_standard_deviation

    @fallback_rssi_standard_deviation.setter
    def fallback_rssi_standard_deviation(self, value: float) -> None:
        self._check_not_locked()
        if not value > 0:
            raise ValueError(f"fallback_rssi_standard_deviation must be positive, got {value}")
        self._fallback_rssi_standard_deviation = float(value)

    @property
    def fingerprint_rssi_standard_deviation_propagated(self) -> bool:
        return self._fingerprint_rssi_standard_deviation_propagated

    @fingerprint_rssi_standard_deviation_propagated.setter
    def fingerprint_rssi_standard_deviation_propagated(self, value: bool) -> None:
        self._check_not_locked()
        self._fingerprint_rssi_standard_deviation_propagated = bool(value)

    @property
    def path_loss_exponent_standard_deviation_propagated(self) -> bool:
        return self._path_loss_exponent_standard_deviation_propagated

    @path_loss_exponent_standard_deviation_propagated.setter
    def path_loss_exponent_standard_deviation_propagated(self, value: bool) -> None:
        self._check_not_locked()
        self._path_loss_exponent_standard_deviation_propagated = bool(value)

    @property
    def fingerprint_position_covariance_propagated(self) -> bool:
        return self._fingerprint_position_covariance_propagated

    @fingerprint_position_covariance_propagated.setter
    def fingerprint_position_covariance_propagated(self, value: bool) -> None:
        self._check_not_locked()
        self._fingerprint_position_covariance_propagated = bool(value)

    @property
    def radio_source_position_covariance_propagated(self) -> bool:
        return self._radio_source_position_covariance_propagated

    @radio_source_position_covariance_propagated.setter
    def radio_source_position_covariance_propagated(self, value: bool) -> None:
        self._check_not_locked()
        self._radio_source_position_covariance_propagated = bool(value)

    @property
    def initial_position_covariance_propagated(self) -> bool:
        return self._initial_position_covariance_propagated

    @initial_position_covariance_propagated.setter
    def initial_position_covariance_propagated(self, value: bool) -> None:
        self._check_not_locked()
        self._initial_position_covariance_propagated = bool(value)

    # ------------------------------------------------------------------
    # Solver

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._check_not_locked()
        if int(value) != value or value < 1:
            raise ValueError(f"max_iterations must be an integer >= 1, got {value}")
        self._max_iterations = int(value)

    @property
    def tolerance(self) -> float:
        return self._tolerance

    @tolerance.setter
    def tolerance(self, value: float) -> None:
        self._check_not_locked()
        if not value > 0:
            raise ValueError(f"tolerance must be positive, got {value}")
        self._tolerance = float(value)

    @property
    def raise_on_max_iterations(self) -> bool:
        """Raise NonConvergenceError instead of warning at the iteration cap."""
        return self._raise_on_max_iterations

    @raise_on_max_iterations.setter
    def raise_on_max_iterations(self, value: bool) -> None:
        self._check_not_locked()
        self._raise_on_max_iterations = bool(value)

    # ------------------------------------------------------------------
    # Helpers

    def _source_path_loss(self, located: Optional[LocatedRadioSource]):
        """Exponent and exponent std used for the residuals of one source."""
        if (
            located is not None
            and self._use_sources_path_loss_exponent_when_available
            and located.path_loss_exponent is not None
        ):
            return located.path_loss_exponent, located.path_loss_exponent_std
        return self._path_loss_exponent, None

    def _build_model(self, nearest_fingerprints, sources) -> RssiDifferenceModel:
        return RssiDifferenceModel(
            self._fingerprint,
            nearest_fingerprints,
            sources,
            remove_mean=self._remove_means_from_fingerprint_readings,
            fallback_rssi_std=self._fallback_rssi_standard_deviation,
        )

    def _initial_guess(self, nearest_fingerprints) -> np.ndarray:
        if self._initial_position is not None:
            return np.array(self._initial_position, dtype=float)
        return centroid(nearest_fingerprints)

    def _solve(self, model, h, jacobian, x0):
        return levenberg_marquardt(
            h,
            jacobian,
            model.observations,
            x0,
            weights=model.weights,
            max_iter=self._max_iterations,
            tol=self._tolerance,
            return_covariance=True,
            raise_on_max_iterations=self._raise_on_max_iterations,
        )

    def _noise_contributions(
        self,
        model,
        position,
        source_positions,
        exponents,
        exponent_stds,
        source_covariances,
    ):
        contributions = []
        if self._fingerprint_rssi_standard_deviation_propagated:
            contributions.append(fingerprint_rssi_contribution(model))
        if self._path_loss_exponent_standard_deviation_propagated:
            contributions.append(
                path_loss_exponent_contribution(
                    model, position, source_positions, exponent_stds
                )
            )
        if self._fingerprint_position_covariance_propagated:
            contributions.append(
                fingerprint_position_contribution(
                    model, position, source_positions, exponents
                )
            )
        if self._radio_source_position_covariance_propagated:
            contributions.append(
                source_position_contribution(
                    model, position, source_positions, exponents, source_covariances
                )
            )
        if self._initial_position_covariance_propagated:
            contributions.append(
                initial_position_contribution(
                    model,
                    position,
                    source_positions,
                    exponents,
                    self._initial_position_covariance,
                )
            )
        return [c for c in contributions if c is not None]


class NonlinearFingerprintPositionEstimator(BaseNonlinearFingerprintPositionEstimator):
    """
    Device position from a query fingerprint, a radio map and known radio
    sources.

    Only readings of sources listed in ``sources`` are used. Neither the
    transmitted power nor the carrier frequency is required: the model works
    on RSSI differences between the query and each nearest fingerprint.

    Args:
        located_fingerprints: Radio map.
        fingerprint: Query fingerprint.
        sources: Located radio sources (known emitters).
        initial_position: Optional initial guess.
        listener: Optional EstimatorListener.

    Raises:
        ValueError: If only some of located_fingerprints, fingerprint and
            sources are given.

    Example:
        >>> estimator = NonlinearFingerprintPositionEstimator(radio_map, query, sources)
        >>> result = estimator.estimate()
        >>> print(result.position, np.trace(result.position_covariance))
    """

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        sources: Optional[Sequence[LocatedRadioSource]] = None,
        initial_position: Optional[np.ndarray] = None,
        listener: Optional[EstimatorListener] = None,
    ):
        self._require_all_or_nothing(
            located_fingerprints=located_fingerprints,
            fingerprint=fingerprint,
            sources=sources,
        )
        self._sources: Optional[List[LocatedRadioSource]] = None
        super().__init__(located_fingerprints, fingerprint, initial_position, listener)
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
        """Known located radio sources."""
        return self._sources

    @sources.setter
    def sources(self, value: Sequence[LocatedRadioSource]) -> None:
        self._check_not_locked()
        self._sources = self._checked_sources(value)
        self._on_inputs_changed()

    @property
    def is_ready(self) -> bool:
        return super().is_ready and bool(self._sources)

    def _estimate_from(self, nearest_fingerprints):
        model = self._build_model(
            nearest_fingerprints, [located.source for located in self._sources]
        )

        source_positions = np.array([located.position for located in self._sources])
        path_loss = [self._source_path_loss(located) for located in self._sources]
        exponents = np.array([n for n, _ in path_loss], dtype=float)
        exponent_stds = [std for _, std in path_loss]
        source_covariances = [located.position_covariance for located in self._sources]

        solution = self._solve(
            model,
            lambda x: model.predict(x, source_positions, exponents),
            lambda x: model.position_jacobian(x, source_positions, exponents),
            self._initial_guess(nearest_fingerprints),
        )
        position = solution.x

        contributions = self._noise_contributions(
            model,
            position,
            source_positions,
            exponents,
            exponent_stds,
            source_covariances,
        )
        covariance = propagate_covariance(solution.jacobian, model.weights, contributions)
        logger.debug(
            "Position-only fit: %d readings, %d iterations, noise sources %s",
            model.n_observations,
            solution.iterations,
            [c.label for c in contributions],
        )

        return EstimationResult(
            position=position,
            position_covariance=position_covariance(covariance),
            covariance=covariance,
            nearest_fingerprints=list(nearest_fingerprints),
            iterations=solution.iterations,
            converged=solution.converged,
        )


class NonlinearFingerprintPositionAndRadioSourceEstimator(
    BaseNonlinearFingerprintPositionEstimator
):
    """
    Joint estimation of the device position and of the radio source positions.

    Unknowns are ordered as [x, y, x_0, y_0, ..., x_S-1, y_S-1] followed,
    when ``path_loss_exponents_estimated`` is set, by [n_0, ..., n_S-1].
    A radio source is estimated when the query and at least two nearest
    fingerprints read it. Its initial position is taken from
    ``initial_located_sources`` when listed there, else from the centroid of
    the radio map fingerprints that read it, weighted by squared received
    power. The working set should then be large enough to observe every
    source from several sides, e.g. the whole radio map.

    Args:
        located_fingerprints: Radio map.
        fingerprint: Query fingerprint.
        initial_located_sources: Optional seeds for the radio sources.
        initial_position: Optional initial guess of the device position.
        listener: Optional EstimatorListener.

    Raises:
        ValueError: If only one of located_fingerprints and fingerprint is given.
    """

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        initial_located_sources: Optional[Sequence[LocatedRadioSource]] = None,
        initial_position: Optional[np.ndarray] = None,
        listener: Optional[EstimatorListener] = None,
    ):
        super().__init__(located_fingerprints, fingerprint, initial_position, listener)
        self._initial_located_sources: Optional[List[LocatedRadioSource]] = None
        self._path_loss_exponents_estimated = False
        if initial_located_sources is not None:
            self._initial_located_sources = self._checked_initial_sources(
                initial_located_sources
            )

    @staticmethod
    def _checked_initial_sources(sources) -> Optional[List[LocatedRadioSource]]:
        if sources is None:
            return None
        sources = list(sources)
        for source in sources:
            if not isinstance(source, LocatedRadioSource):
                raise TypeError(f"sources must contain LocatedRadioSource, got {type(source)}")
        return sources

    @property
    def initial_located_sources(self) -> Optional[List[LocatedRadioSource]]:
        return self._initial_located_sources

    @initial_located_sources.setter
    def initial_located_sources(self, value: Optional[Sequence[LocatedRadioSource]]) -> None:
        self._check_not_locked()
        self._initial_located_sources = self._checked_initial_sources(value)

    @property
    def path_loss_exponents_estimated(self) -> bool:
        """Also estimate one path-loss exponent per radio source."""
        return self._path_loss_exponents_estimated

    @path_loss_exponents_estimated.setter
    def path_loss_exponents_estimated(self, value: bool) -> None:
        self._check_not_locked()
        self._path_loss_exponents_estimated = bool(value)

    @property
    def chi_square(self) -> Optional[float]:
        return None if self._result is None else self._result.chi_square

    @property
    def estimated_located_sources(self) -> Optional[List[LocatedRadioSource]]:
        return None if self._result is None else self._result.located_sources

    def _sources_to_estimate(self, nearest_fingerprints) -> List[RadioSource]:
        counts: Dict[RadioSource, int] = {}
        for located in nearest_fingerprints:
            for reading in located.readings:
                if self._fingerprint.reading_for(reading.source) is None:
                    continue
                counts[reading.source] = counts.get(reading.source, 0) + 1
        # dict preserves first-seen order
        return [
            source
            for source, count in counts.items()
            if count >= MIN_FINGERPRINTS_PER_SOURCE
        ]

    def _source_seed_position(self, source: RadioSource, seed) -> np.ndarray:
        if seed is not None:
            return np.array(seed.position, dtype=float)
        return weighted_centroid(self._located_fingerprints, source)

    def _estimate_from(self, nearest_fingerprints):
        sources = self._sources_to_estimate(nearest_fingerprints)
        if not sources:
            raise SingularNormalEquationsError(
                "No radio source is read by enough nearest fingerprints"
            )

        seeds = {}
        for located in self._initial_located_sources or []:
            seeds[located.source] = located
        num_sources = len(sources)

        seed_positions = np.array(
            [self._source_seed_position(source, seeds.get(source)) for source in sources]
        )
        path_loss = [self._source_path_loss(seeds.get(source)) for source in sources]
        seed_exponents = np.array([n for n, _ in path_loss], dtype=float)
        exponent_stds = [std for _, std in path_loss]
        source_covariances = [
            seeds[source].position_covariance if source in seeds else None
            for source in sources
        ]

        model = self._build_model(nearest_fingerprints, sources)
        estimate_exponents = self._path_loss_exponents_estimated
        n_position_unknowns = POSITION_DIMS * (1 + num_sources)

        def unpack(x):
            position = x[:POSITION_DIMS]
            source_positions = x[POSITION_DIMS:n_position_unknowns].reshape(
                num_sources, POSITION_DIMS
            )
            exponents = x[n_position_unknowns:] if estimate_exponents else seed_exponents
            return position, source_positions, exponents

        def h(x):
            return model.predict(*unpack(x))

        def jacobian(x):
            position, source_positions, exponents = unpack(x)
            blocks = [
                model.position_jacobian(position, source_positions, exponents),
                model.source_position_jacobian(position, source_positions, exponents),
            ]
            if estimate_exponents:
                blocks.append(model.path_loss_exponent_jacobian(position, source_positions))
            return np.hstack(blocks)

        x0 = [self._initial_guess(nearest_fingerprints), seed_positions.ravel()]
        if estimate_exponents:
            x0.append(seed_exponents)
        solution = self._solve(model, h, jacobian, np.concatenate(x0))
        position, source_positions, exponents = unpack(solution.x)

        contributions = self._noise_contributions(
            model,
            position,
            source_positions,
            exponents,
            exponent_stds,
            source_covariances,
        )
        covariance = propagate_covariance(solution.jacobian, model.weights, contributions)
        fit_chi_square = chi_square(solution.residuals, model.weights)

        located_sources = []
        for j, source in enumerate(sources):
            start = POSITION_DIMS * (1 + j)
            block = covariance[start : start + POSITION_DIMS, start : start + POSITION_DIMS]
            seed = seeds.get(source)
            if estimate_exponents:
                k = n_position_unknowns + j
                exponent_std = float(np.sqrt(covariance[k, k]))
            else:
                exponent_std = exponent_stds[j]
            located_sources.append(
                LocatedRadioSource(
                    source,
                    position=source_positions[j],
                    position_covariance=0.5 * (block + block.T),
                    transmitted_power=None if seed is None else seed.transmitted_power,
                    path_loss_exponent=float(exponents[j]),
                    path_loss_exponent_std=exponent_std,
                )
            )

        logger.debug(
            "Joint fit: %d readings, %d sources, %d iterations, chi2=%.3e",
            model.n_observations,
            num_sources,
            solution.iterations,
            fit_chi_square,
        )

        return EstimationResult(
            position=position.copy(),
            position_covariance=position_covariance(covariance),
            covariance=covariance,
            nearest_fingerprints=list(nearest_fingerprints),
            iterations=solution.iterations,
            converged=solution.converged,
            chi_square=fit_chi_square,
            located_sources=located_sources,
        )
