"""
Common state machine of the fingerprint position estimators.

Every estimator follows the same lifecycle:

    IDLE ──(all inputs set)──► READY ──estimate()──► LOCKED ──► ESTIMATED
                                                        └─────► FAILED

While LOCKED (i.e. during ``estimate()``), every mutator raises
``LockedError`` and leaves the estimator untouched; readers keep working.
Listeners are notified synchronously at the start and at the end of each
``estimate()`` call, exactly once each, also when estimation fails.

The working set of located fingerprints is chosen by growing k from
``min_nearest_fingerprints`` to ``max_nearest_fingerprints`` (bounded by the
radio map size) until the subclass manages to solve with the k nearest
fingerprints.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from rssinav.exceptions import (
    LockedError,
    NearestFingerprintNotFoundError,
    NotReadyError,
    SingularNormalEquationsError,
)
from rssinav.rf.measurement_models import DEFAULT_PATH_LOSS_EXPONENT

from .deterministic import NearestFingerprintFinder
from .types import EstimationResult, Fingerprint, LocatedFingerprint

logger = logging.getLogger(__name__)

# Sentinel for an unbounded maximum number of nearest fingerprints
UNBOUNDED = None

DEFAULT_MIN_NEAREST_FINGERPRINTS = 1
DEFAULT_MAX_NEAREST_FINGERPRINTS = UNBOUNDED
DEFAULT_USE_NO_MEAN_NEAREST_FINGERPRINT_FINDER = True
DEFAULT_REMOVE_MEANS_FROM_FINGERPRINT_READINGS = False
DEFAULT_USE_SOURCES_PATH_LOSS_EXPONENT_WHEN_AVAILABLE = True


class EstimatorState(Enum):
    """Lifecycle state of an estimator."""

    IDLE = "idle"
    READY = "ready"
    LOCKED = "locked"
    ESTIMATED = "estimated"
    FAILED = "failed"


@dataclass
class EstimatorListener:
    """
    Callbacks invoked synchronously by ``estimate()``.

    Both callbacks receive the estimator. Mutating the estimator from inside
    a callback raises ``LockedError``.

    Example:
        >>> events = []
        >>> listener = EstimatorListener(
        ...     on_estimate_start=lambda est: events.append("start"),
        ...     on_estimate_end=lambda est: events.append("end"),
        ... )
    """

    on_estimate_start: Optional[Callable[[Any], None]] = None
    on_estimate_end: Optional[Callable[[Any], None]] = None


class BaseFingerprintPositionEstimator(ABC):
    """
    Base class of the fingerprint position estimators.

    Subclasses implement ``_estimate_from(nearest_fingerprints)`` and, when
    they need more inputs, extend ``is_ready``.

    Args:
        located_fingerprints: Radio map (read-only).
        fingerprint: Query fingerprint whose position is estimated.
        listener: Optional ``EstimatorListener``.

    Raises:
        ValueError: If only some of the required inputs are given.
    """

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        listener: Optional[EstimatorListener] = None,
    ):
        self._require_all_or_nothing(
            located_fingerprints=located_fingerprints, fingerprint=fingerprint
        )
        self._state = EstimatorState.IDLE

        self._located_fingerprints: Optional[List[LocatedFingerprint]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._listener = listener
        self._path_loss_exponent = DEFAULT_PATH_LOSS_EXPONENT
        self._min_nearest_fingerprints = DEFAULT_MIN_NEAREST_FINGERPRINTS
        self._max_nearest_fingerprints = DEFAULT_MAX_NEAREST_FINGERPRINTS
        self._use_no_mean_nearest_fingerprint_finder = (
            DEFAULT_USE_NO_MEAN_NEAREST_FINGERPRINT_FINDER
        )
        self._remove_means_from_fingerprint_readings = (
            DEFAULT_REMOVE_MEANS_FROM_FINGERPRINT_READINGS
        )
        self._use_sources_path_loss_exponent_when_available = (
            DEFAULT_USE_SOURCES_PATH_LOSS_EXPONENT_WHEN_AVAILABLE
        )

        self._nearest_fingerprints: Optional[List[LocatedFingerprint]] = None
        self._result: Optional[EstimationResult] = None

        if located_fingerprints is not None:
            self._located_fingerprints = self._checked_located_fingerprints(
                located_fingerprints
            )
            self._fingerprint = self._checked_fingerprint(fingerprint)

    @staticmethod
    def _require_all_or_nothing(**required: Any) -> None:
        given = [name for name, value in required.items() if value is not None]
        if given and len(given) != len(required):
            missing = sorted(set(required) - set(given))
            raise ValueError(
                f"Required inputs must be given together; missing {', '.join(missing)}"
            )

    @staticmethod
    def _checked_located_fingerprints(located_fingerprints) -> List[LocatedFingerprint]:
        if located_fingerprints is None:
            raise ValueError("located_fingerprints cannot be None")
        located_fingerprints = list(located_fingerprints)
        if len(located_fingerprints) == 0:
            raise ValueError("located_fingerprints cannot be empty")
        for located in located_fingerprints:
            if not isinstance(located, LocatedFingerprint):
                raise TypeError(
                    f"located_fingerprints must contain LocatedFingerprint, got {type(located)}"
                )
        return located_fingerprints

    @staticmethod
    def _checked_fingerprint(fingerprint) -> Fingerprint:
        if fingerprint is None:
            raise ValueError("fingerprint cannot be None")
        if not isinstance(fingerprint, Fingerprint):
            raise TypeError(f"fingerprint must be a Fingerprint, got {type(fingerprint)}")
        return fingerprint

    def _check_not_locked(self) -> None:
        if self.is_locked:
            raise LockedError(f"{type(self).__name__} is locked while estimating")

    def _on_inputs_changed(self) -> None:
        self._state = EstimatorState.READY if self.is_ready else EstimatorState.IDLE

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> EstimatorState:
        if self._state in (EstimatorState.IDLE, EstimatorState.READY):
            return EstimatorState.READY if self.is_ready else EstimatorState.IDLE
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state is EstimatorState.LOCKED

    @property
    def is_ready(self) -> bool:
        """True when the radio map and the query fingerprint are available."""
        return bool(self._located_fingerprints) and self._fingerprint is not None

    # ------------------------------------------------------------------
    # Inputs and configuration

    @property
    def located_fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        return self._located_fingerprints

    @located_fingerprints.setter
    def located_fingerprints(self, value: Sequence[LocatedFingerprint]) -> None:
        self._check_not_locked()
        self._located_fingerprints = self._checked_located_fingerprints(value)
        self._on_inputs_changed()

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    @fingerprint.setter
    def fingerprint(self, value: Fingerprint) -> None:
        self._check_not_locked()
        self._fingerprint = self._checked_fingerprint(value)
        self._on_inputs_changed()

    @property
    def listener(self) -> Optional[EstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, value: Optional[EstimatorListener]) -> None:
        self._check_not_locked()
        self._listener = value

    @property
    def path_loss_exponent(self) -> float:
        """Path-loss exponent used for sources without their own (default 2.0)."""
        return self._path_loss_exponent

    @path_loss_exponent.setter
    def path_loss_exponent(self, value: float) -> None:
        self._check_not_locked()
        if not value > 0:
            raise ValueError(f"path_loss_exponent must be positive, got {value}")
        self._path_loss_exponent = float(value)

    @property
    def min_nearest_fingerprints(self) -> int:
        return self._min_nearest_fingerprints

    @property
    def max_nearest_fingerprints(self) -> Optional[int]:
        """Maximum working set size, ``UNBOUNDED`` (None) for no limit."""
        return self._max_nearest_fingerprints

    def set_min_max_nearest_fingerprints(
        self, min_nearest: int, max_nearest: Optional[int] = UNBOUNDED
    ) -> None:
        """
        Set the bounds of the working set size.

        Args:
            min_nearest: Minimum number of nearest fingerprints (>= 1).
            max_nearest: Maximum number of nearest fingerprints (>= min), or
                ``UNBOUNDED``.

        Raises:
            LockedError: If called during ``estimate()``.
            ValueError: If the bounds are invalid. Previous values are kept.
        """
        self._check_not_locked()
        if int(min_nearest) != min_nearest or min_nearest < 1:
            raise ValueError(f"min_nearest must be an integer >= 1, got {min_nearest}")
        if max_nearest is not UNBOUNDED:
            if int(max_nearest) != max_nearest or max_nearest < min_nearest:
                raise ValueError(
                    f"max_nearest must be an integer >= min_nearest ({min_nearest}), "
                    f"got {max_nearest}"
                )
            max_nearest = int(max_nearest)
        self._min_nearest_fingerprints = int(min_nearest)
        self._max_nearest_fingerprints = max_nearest

    @property
    def use_no_mean_nearest_fingerprint_finder(self) -> bool:
        """True to rank fingerprints on mean-removed RSSI, False for raw RSSI.

        Mean removal cancels a constant offset between the query device and
        the devices that surveyed the radio map.
        """
        return self._use_no_mean_nearest_fingerprint_finder

    @use_no_mean_nearest_fingerprint_finder.setter
    def use_no_mean_nearest_fingerprint_finder(self, value: bool) -> None:
        self._check_not_locked()
        self._use_no_mean_nearest_fingerprint_finder = bool(value)

    @property
    def remove_means_from_fingerprint_readings(self) -> bool:
        """True to center readings per fingerprint before fitting."""
        return self._remove_means_from_fingerprint_readings

    @remove_means_from_fingerprint_readings.setter
    def remove_means_from_fingerprint_readings(self, value: bool) -> None:
        self._check_not_locked()
        self._remove_means_from_fingerprint_readings = bool(value)

    @property
    def use_sources_path_loss_exponent_when_available(self) -> bool:
        return self._use_sources_path_loss_exponent_when_available

    @use_sources_path_loss_exponent_when_available.setter
    def use_sources_path_loss_exponent_when_available(self, value: bool) -> None:
        self._check_not_locked()
        self._use_sources_path_loss_exponent_when_available = bool(value)

    # ------------------------------------------------------------------
    # Results

    @property
    def nearest_fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        """Working set used by the last ``estimate()`` call."""
        return self._nearest_fingerprints

    @property
    def result(self) -> Optional[EstimationResult]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position_covariance

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    # ------------------------------------------------------------------
    # Estimation

    def estimate(self) -> EstimationResult:
        """
        Estimate the position of the query fingerprint.

        Returns:
            A new EstimationResult, also available through ``result``.

        Raises:
            LockedError: If an estimation is already in progress.
            NotReadyError: If required inputs are missing.
            FingerprintEstimationError: If no working set yields a solution.
        """
        self._check_not_locked()
        if not self.is_ready:
            raise NotReadyError(f"{type(self).__name__} is not ready")

        self._state = EstimatorState.LOCKED
        self._nearest_fingerprints = None
        self._result = None
        succeeded = False
        try:
            self._notify("on_estimate_start")
            self._result = self._estimate_with_nearest_fingerprints()
            succeeded = True
        finally:
            try:
                self._notify("on_estimate_end")
            finally:
                self._state = (
                    EstimatorState.ESTIMATED if succeeded else EstimatorState.FAILED
                )
        return self._result

    def _notify(self, event: str) -> None:
        if self._listener is None:
            return
        callback = getattr(self._listener, event, None)
        if callback is not None:
            callback(self)

    def _estimate_with_nearest_fingerprints(self) -> EstimationResult:
        finder = NearestFingerprintFinder(
            self._located_fingerprints,
            remove_mean=self._use_no_mean_nearest_fingerprint_finder,
        )

        num_located = len(self._located_fingerprints)
        max_k = (
            num_located
            if self._max_nearest_fingerprints is UNBOUNDED
            else min(self._max_nearest_fingerprints, num_located)
        )
        min_k = self._min_nearest_fingerprints
        if min_k > max_k:
            raise NearestFingerprintNotFoundError(
                f"Radio map holds {num_located} located fingerprints, "
                f"fewer than the minimum of {min_k}"
            )

        last_error = None
        for k in range(min_k, max_k + 1):
            nearest = finder.find_k_nearest_to(self._fingerprint, k)
            self._nearest_fingerprints = nearest
            try:
                result = self._estimate_from(nearest)
            except SingularNormalEquationsError as e:
                logger.debug("No solution with %d nearest fingerprints: %s", len(nearest), e)
                last_error = e
                if len(nearest) < k:
                    # no more candidates share a source with the query
                    break
                continue

            logger.debug(
                "Estimated position %s with %d nearest fingerprints",
                result.position,
                len(nearest),
            )
            return result

        raise last_error

    @abstractmethod
    def _estimate_from(self, nearest_fingerprints: List[LocatedFingerprint]) -> EstimationResult:
        """Solve with a given working set. Raise SingularNormalEquationsError to grow it."""
