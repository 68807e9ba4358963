"""
Log-distance path-loss model for RSSI-based positioning.

Received power from a radio source of frequency f at distance d:

    k = c / (4·π·f)
    Pr = Pte · kⁿ / dⁿ                                  (linear, watts)
    Pr(dBm) = Pte(dBm) + 10·n·log10(k) - 10·n·log10(d)   (logarithmic)

where Pte is the equivalent transmitted power and n the path-loss exponent
(2.0 in free space). Functions below convert between both domains and
between distance and RSSI.
"""

from typing import Union

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_PATH_LOSS_EXPONENT = 2.0

ArrayLike = Union[float, np.ndarray]


def dbm_to_watts(power_dbm: ArrayLike) -> ArrayLike:
    """
    Convert power from dBm to watts.

    Args:
        power_dbm: Power in dBm.

    Returns:
        Power in watts (10^(dBm/10) mW).

    Example:
        >>> dbm_to_watts(30.0)
        1.0
    """
    power_watts = 10.0 ** ((np.asarray(power_dbm, dtype=float) - 30.0) / 10.0)
    if power_watts.ndim == 0:
        return float(power_watts)
    return power_watts


def watts_to_dbm(power_watts: ArrayLike) -> ArrayLike:
    """
    Convert power from watts to dBm.

    Args:
        power_watts: Power in watts, must be positive.

    Returns:
        Power in dBm.

    Raises:
        ValueError: If any power is not positive.
    """
    power_watts = np.asarray(power_watts, dtype=float)
    if np.any(power_watts <= 0):
        raise ValueError("Power in watts must be positive")
    power_dbm = 10.0 * np.log10(power_watts) + 30.0
    if power_dbm.ndim == 0:
        return float(power_dbm)
    return power_dbm


def path_loss_constant(frequency: float, c: float = SPEED_OF_LIGHT) -> float:
    """
    Wavelength-dependent constant k = c / (4·π·f) of the log-distance model.

    Args:
        frequency: Carrier frequency in Hz.
        c: Speed of light in m/s.

    Returns:
        k in meters.
    """
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")
    return c / (4.0 * np.pi * frequency)


def received_power(
    transmitted_power_watts: float,
    distance: ArrayLike,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Received power in the linear domain: Pr = Pte · kⁿ / dⁿ.

    Args:
        transmitted_power_watts: Equivalent transmitted power in watts.
        distance: Distance(s) to the radio source in meters.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n.

    Returns:
        Received power in watts.
    """
    distance = np.asarray(distance, dtype=float)
    if np.any(distance <= 0):
        raise ValueError("Distance must be positive")
    k = path_loss_constant(frequency)
    power = transmitted_power_watts * (k / distance) ** path_loss_exp
    if power.ndim == 0:
        return float(power)
    return power


def rssi_from_distance(
    transmitted_power_dbm: float,
    distance: ArrayLike,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    RSSI in dBm at a given distance from a radio source.

    Implements Pr(dBm) = Pte(dBm) + 10·n·log10(k) - 10·n·log10(d), which is
    the logarithmic form of ``received_power``.

    Args:
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        distance: Distance(s) to the radio source in meters.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).

    Returns:
        RSSI in dBm.

    Example:
        >>> # 2.4 GHz access point transmitting 20 dBm, 10 m away
        >>> rssi = rssi_from_distance(20.0, 10.0, 2.4e9)
        >>> print(f"RSSI: {rssi:.2f} dBm")
        RSSI: -40.05 dBm
    """
    distance = np.asarray(distance, dtype=float)
    if np.any(distance <= 0):
        raise ValueError("Distance must be positive")
    k = path_loss_constant(frequency)
    rssi = (
        transmitted_power_dbm
        + 10.0 * path_loss_exp * np.log10(k)
        - 10.0 * path_loss_exp * np.log10(distance)
    )
    if rssi.ndim == 0:
        return float(rssi)
    return rssi


def distance_from_rssi(
    rssi_dbm: ArrayLike,
    transmitted_power_dbm: float,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Invert the log-distance model to recover distance from RSSI.

    d = k · 10^((Pte(dBm) - Pr(dBm)) / (10·n))

    Args:
        rssi_dbm: Received signal strength in dBm.
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n.

    Returns:
        Distance in meters.
    """
    if path_loss_exp <= 0:
        raise ValueError(f"Path-loss exponent must be positive, got {path_loss_exp}")
    k = path_loss_constant(frequency)
    exponent = (transmitted_power_dbm - np.asarray(rssi_dbm, dtype=float)) / (
        10.0 * path_loss_exp
    )
    distance = k * 10.0**exponent
    if distance.ndim == 0:
        return float(distance)
    return distance
