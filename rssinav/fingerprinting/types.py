"""Type definitions for RSSI fingerprint positioning.

This module defines the data model shared by the nearest-fingerprint finder,
the residual model and the estimators:

    - RadioSource: identity (e.g. BSSID) + carrier frequency.
    - LocatedRadioSource: radio source with known or estimated 2D position.
    - Reading: RSSI of one radio source, optionally with its std.
    - Fingerprint: set of readings taken at one (unknown) location.
    - LocatedFingerprint: fingerprint with known position (radio map entry).
    - EstimationResult: output of one successful ``estimate()`` call.

All containers are frozen; the radio map and the query fingerprint are never
mutated by the estimators.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from rssinav.exceptions import NonPositiveDefiniteCovarianceError
from rssinav.rf.residual_model import POSITION_DIMS


def validate_covariance(
    covariance: Optional[np.ndarray], dims: int = POSITION_DIMS, name: str = "covariance"
) -> Optional[np.ndarray]:
    """
    Check that a covariance matrix is symmetric positive-definite.

    Args:
        covariance: Matrix to check, shape (dims, dims), or None.
        dims: Expected size.
        name: Name used in error messages.

    Returns:
        The covariance as a float array (None passes through).

    Raises:
        ValueError: If the shape is wrong.
        NonPositiveDefiniteCovarianceError: If the matrix is not symmetric or
            not positive-definite.
    """
    if covariance is None:
        return None
    covariance = np.array(covariance, dtype=float)
    if covariance.shape != (dims, dims):
        raise ValueError(
            f"{name} must have shape ({dims}, {dims}), got {covariance.shape}"
        )
    if not np.all(np.isfinite(covariance)):
        raise NonPositiveDefiniteCovarianceError(f"{name} contains non-finite values")
    if not np.allclose(covariance, covariance.T, rtol=1e-9, atol=1e-12):
        raise NonPositiveDefiniteCovarianceError(f"{name} is not symmetric")
    try:
        np.linalg.cholesky(covariance)
    except np.linalg.LinAlgError:
        raise NonPositiveDefiniteCovarianceError(
            f"{name} is not positive-definite"
        ) from None
    return covariance


def _as_position(position, name: str = "position") -> np.ndarray:
    position = np.array(position, dtype=float)
    if position.shape != (POSITION_DIMS,):
        raise ValueError(f"{name} must have shape ({POSITION_DIMS},), got {position.shape}")
    if not np.all(np.isfinite(position)):
        raise ValueError(f"{name} contains non-finite values")
    position.flags.writeable = False
    return position


@dataclass(frozen=True)
class RadioSource:
    """
    Radio source identity (Wi-Fi access point, BLE beacon, ...).

    Two radio sources are the same source when identifier and frequency
    match; readings from different fingerprints are paired on that basis.

    Attributes:
        identifier: Unique identifier, e.g. a BSSID "00:11:22:33:44:55".
        frequency: Carrier frequency in Hz (e.g. 2.4e9).
    """

    identifier: str
    frequency: float

    def __post_init__(self) -> None:
        if not isinstance(self.identifier, str) or not self.identifier:
            raise ValueError(f"identifier must be a non-empty string, got {self.identifier!r}")
        if not self.frequency > 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")


@dataclass(frozen=True, eq=False)
class LocatedRadioSource:
    """
    Radio source with a known or estimated 2D position.

    Attributes:
        source: Radio source identity.
        position: Position (x, y) in meters.
        position_covariance: Optional 2x2 SPD covariance of the position.
        transmitted_power: Optional equivalent transmitted power in dBm.
        path_loss_exponent: Optional path-loss exponent specific to this
            source. Estimators may use it instead of their own exponent.
        path_loss_exponent_std: Optional standard deviation of the exponent.

    Example:
        >>> ap = RadioSource("00:11:22:33:44:55", 2.4e9)
        >>> located = LocatedRadioSource(ap, position=np.array([1.0, 2.0]))
    """

    source: RadioSource
    position: np.ndarray
    position_covariance: Optional[np.ndarray] = None
    transmitted_power: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self) -> None:
        if not isinstance(self.source, RadioSource):
            raise TypeError(f"source must be a RadioSource, got {type(self.source)}")
        object.__setattr__(self, "position", _as_position(self.position))
        object.__setattr__(
            self,
            "position_covariance",
            validate_covariance(self.position_covariance, name="position_covariance"),
        )
        if self.path_loss_exponent is not None and not self.path_loss_exponent > 0:
            raise ValueError(
                f"path_loss_exponent must be positive, got {self.path_loss_exponent}"
            )
        if self.path_loss_exponent_std is not None and self.path_loss_exponent_std < 0:
            raise ValueError(
                f"path_loss_exponent_std must be non-negative, got {self.path_loss_exponent_std}"
            )

    @property
    def identifier(self) -> str:
        return self.source.identifier

    @property
    def frequency(self) -> float:
        return self.source.frequency


@dataclass(frozen=True)
class Reading:
    """
    RSSI reading of a single radio source.

    Attributes:
        source: Radio source the reading belongs to.
        rssi: Received signal strength in dBm.
        rssi_std: Optional standard deviation of the RSSI in dB. When None,
            estimators fall back to a configurable constant.
    """

    source: RadioSource
    rssi: float
    rssi_std: Optional[float] = None

    def __post_init__(self) -> None:
        if not isinstance(self.source, RadioSource):
            raise TypeError(f"source must be a RadioSource, got {type(self.source)}")
        if not np.isfinite(self.rssi):
            raise ValueError(f"rssi must be finite, got {self.rssi}")
        if self.rssi_std is not None and not self.rssi_std > 0:
            raise ValueError(f"rssi_std must be positive, got {self.rssi_std}")


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """
    Set of RSSI readings captured at a single location.

    Reading order is irrelevant; each radio source may appear at most once.

    Attributes:
        readings: Readings, stored as a tuple.

    Example:
        >>> ap1 = RadioSource("ap1", 2.4e9)
        >>> ap2 = RadioSource("ap2", 2.4e9)
        >>> fp = Fingerprint([Reading(ap1, -50.0), Reading(ap2, -62.0)])
        >>> fp.mean_rssi
        -56.0
    """

    readings: Tuple[Reading, ...]

    def __post_init__(self) -> None:
        readings = tuple(self.readings)
        if len(readings) == 0:
            raise ValueError("A fingerprint must contain at least one reading")
        for reading in readings:
            if not isinstance(reading, Reading):
                raise TypeError(f"readings must be Reading instances, got {type(reading)}")
        if len({reading.source for reading in readings}) != len(readings):
            raise ValueError("A fingerprint cannot contain two readings of the same source")
        object.__setattr__(self, "readings", readings)
        object.__setattr__(
            self, "_by_source", {reading.source: reading for reading in readings}
        )

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator[Reading]:
        return iter(self.readings)

    @property
    def sources(self) -> List[RadioSource]:
        """Radio sources read by this fingerprint, in reading order."""
        return [reading.source for reading in self.readings]

    @property
    def mean_rssi(self) -> float:
        """Mean RSSI over all readings (dBm)."""
        return float(np.mean([reading.rssi for reading in self.readings]))

    def reading_for(self, source: RadioSource) -> Optional[Reading]:
        """Return the reading of ``source`` or None if not read."""
        return self._by_source.get(source)


@dataclass(frozen=True, eq=False)
class LocatedFingerprint(Fingerprint):
    """
    Fingerprint with a known position (an entry of the radio map).

    Attributes:
        readings: Readings, stored as a tuple.
        position: Position (x, y) in meters where the readings were taken.
        position_covariance: Optional 2x2 SPD covariance of the position.
    """

    position: np.ndarray = field(default=None)
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.position is None:
            raise ValueError("A located fingerprint requires a position")
        object.__setattr__(self, "position", _as_position(self.position))
        object.__setattr__(
            self,
            "position_covariance",
            validate_covariance(self.position_covariance, name="position_covariance"),
        )


@dataclass
class EstimationResult:
    """
    Result of a successful estimation.

    Attributes:
        position: Estimated device position (x, y).
        position_covariance: 2x2 SPD covariance of the estimated position.
        covariance: Covariance of the full parameter vector.
        nearest_fingerprints: Located fingerprints used by the solver.
        iterations: Solver iterations.
        converged: False when the iteration cap was reached (soft result).
        chi_square: Normalized sum of squared residuals (position and radio
            source estimator only).
        located_sources: Refined radio sources (position and radio source
            estimator only).
    """

    position: np.ndarray
    position_covariance: Optional[np.ndarray]
    covariance: Optional[np.ndarray]
    nearest_fingerprints: Sequence[LocatedFingerprint]
    iterations: int = 0
    converged: bool = True
    chi_square: Optional[float] = None
    located_sources: Optional[List[LocatedRadioSource]] = None
