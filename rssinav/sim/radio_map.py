"""
Synthetic radio maps for examples and tests.

Readings follow the log-distance path-loss model exactly:

    Pr(dBm) = Pte(dBm) + 10·n·log10(c / (4·π·f)) - 10·n·log10(d)

optionally corrupted by zero-mean Gaussian noise (shadow fading) and, for
query fingerprints, a constant additive bias emulating an uncalibrated
device.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from rssinav.fingerprinting.types import (
    Fingerprint,
    LocatedFingerprint,
    LocatedRadioSource,
    RadioSource,
    Reading,
)
from rssinav.rf.measurement_models import DEFAULT_PATH_LOSS_EXPONENT, rssi_from_distance

DEFAULT_FREQUENCY = 2.4e9  # Hz
DEFAULT_TRANSMITTED_POWER = 20.0  # dBm


def generate_radio_sources(
    n_sources: int = 5,
    area_size: Tuple[float, float] = (50.0, 50.0),
    margin: float = 2.0,
    frequency: float = DEFAULT_FREQUENCY,
    transmitted_power: float = DEFAULT_TRANSMITTED_POWER,
    path_loss_exponent: Optional[float] = None,
    layout: str = "perimeter",
    rng: Optional[np.random.Generator] = None,
) -> List[LocatedRadioSource]:
    """
    Create located radio sources around (or inside) a rectangular area.

    Args:
        n_sources: Number of sources (at most 8 for the perimeter layout).
        area_size: (width, height) in meters.
        margin: Distance outside the area for the perimeter layout, so that
            no source coincides with a grid point.
        frequency: Carrier frequency in Hz.
        transmitted_power: Transmitted power in dBm.
        path_loss_exponent: Optional per-source exponent to attach.
        layout: "perimeter" (corners then mid-walls) or "random" (uniform
            inside the area, drawn from ``rng``).
        rng: Random generator for the random layout.

    Returns:
        List of LocatedRadioSource with identifiers "AP1", "AP2", ...
    """
    width, height = area_size
    if layout == "perimeter":
        candidates = np.array(
            [
                [-margin, -margin],
                [width + margin, -margin],
                [width + margin, height + margin],
                [-margin, height + margin],
                [width / 2, -margin],
                [width / 2, height + margin],
                [-margin, height / 2],
                [width + margin, height / 2],
            ]
        )
        if not 1 <= n_sources <= len(candidates):
            raise ValueError(f"perimeter layout supports 1 to 8 sources, got {n_sources}")
        positions = candidates[:n_sources]
    elif layout == "random":
        if rng is None:
            rng = np.random.default_rng()
        positions = rng.uniform([0.0, 0.0], [width, height], size=(n_sources, 2))
    else:
        raise ValueError(f"Unknown layout: {layout}. Use 'perimeter' or 'random'.")

    return [
        LocatedRadioSource(
            RadioSource(f"AP{i + 1}", frequency),
            position=position,
            transmitted_power=transmitted_power,
            path_loss_exponent=path_loss_exponent,
        )
        for i, position in enumerate(positions)
    ]


def grid_positions(
    area_size: Tuple[float, float] = (50.0, 50.0), grid_spacing: float = 5.0
) -> np.ndarray:
    """Reference point positions on a regular grid, shape (N, 2)."""
    width, height = area_size
    x_coords = np.arange(0, width + grid_spacing / 2, grid_spacing)
    y_coords = np.arange(0, height + grid_spacing / 2, grid_spacing)
    xx, yy = np.meshgrid(x_coords, y_coords, indexing="ij")
    return np.column_stack([xx.ravel(), yy.ravel()])


def _readings(
    position: np.ndarray,
    sources: Sequence[LocatedRadioSource],
    noise_std: float,
    bias: float,
    rssi_std: Optional[float],
    path_loss_exponent: float,
    rng: Optional[np.random.Generator],
) -> List[Reading]:
    if noise_std > 0 and rng is None:
        rng = np.random.default_rng()

    readings = []
    for located in sources:
        distance = max(float(np.linalg.norm(np.asarray(position) - located.position)), 1e-3)
        n = (
            located.path_loss_exponent
            if located.path_loss_exponent is not None
            else path_loss_exponent
        )
        power = (
            located.transmitted_power
            if located.transmitted_power is not None
            else DEFAULT_TRANSMITTED_POWER
        )
        rssi = rssi_from_distance(power, distance, located.frequency, n) + bias
        if noise_std > 0:
            rssi += rng.normal(0.0, noise_std)
        readings.append(Reading(located.source, rssi, rssi_std))
    return readings


def generate_fingerprint(
    position: np.ndarray,
    sources: Sequence[LocatedRadioSource],
    noise_std: float = 0.0,
    bias: float = 0.0,
    rssi_std: Optional[float] = None,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    rng: Optional[np.random.Generator] = None,
) -> Fingerprint:
    """
    Query fingerprint measured at ``position``.

    Args:
        position: True device position (x, y).
        sources: Radio sources heard by the device.
        noise_std: Std of the Gaussian noise added to each reading (dB).
        bias: Constant offset added to every reading (dB).
        rssi_std: Std stored in each reading, None to leave it unknown.
        path_loss_exponent: Exponent for sources without their own.
        rng: Random generator used for the noise.
    """
    return Fingerprint(
        _readings(position, sources, noise_std, bias, rssi_std, path_loss_exponent, rng)
    )


def generate_located_fingerprints(
    positions: np.ndarray,
    sources: Sequence[LocatedRadioSource],
    noise_std: float = 0.0,
    rssi_std: Optional[float] = None,
    position_covariance: Optional[np.ndarray] = None,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    rng: Optional[np.random.Generator] = None,
) -> List[LocatedFingerprint]:
    """
    Radio map with one located fingerprint per position.

    Args:
        positions: Reference point positions, shape (N, 2).
        sources: Radio sources read at every reference point.
        noise_std: Std of the Gaussian noise added to each reading (dB).
        rssi_std: Std stored in each reading, None to leave it unknown.
        position_covariance: Optional covariance attached to every position.
        path_loss_exponent: Exponent for sources without their own.
        rng: Random generator used for the noise.

    Example:
        >>> sources = generate_radio_sources(4)
        >>> radio_map = generate_located_fingerprints(grid_positions(), sources)
        >>> len(radio_map)
        121
    """
    return [
        LocatedFingerprint(
            _readings(position, sources, noise_std, 0.0, rssi_std, path_loss_exponent, rng),
            position=position,
            position_covariance=position_covariance,
        )
        for position in np.asarray(positions, dtype=float)
    ]
