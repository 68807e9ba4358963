"""Nearest-fingerprint search in RSSI space.

Located fingerprints of the radio map are ranked by their signal-space
distance to a query fingerprint:

    D(z, f) = sqrt( Σ_a (z_a - f_a)² )

where the sum only runs over radio sources a read by both fingerprints.
Sources read by just one of them are ignored (never treated as zero), and a
candidate sharing no source with the query is excluded from the ranking.

In mean-removed mode each fingerprint has its own mean RSSI over the matched
readings subtracted before computing D, which cancels a constant
per-device calibration offset:

    D(z, f) = sqrt( Σ_a ((z_a - z̄) - (f_a - f̄))² )
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from rssinav.exceptions import NearestFingerprintNotFoundError

from .types import Fingerprint, LocatedFingerprint

logger = logging.getLogger(__name__)


def matched_rssi(
    fingerprint: Fingerprint, other: Fingerprint
) -> Tuple[np.ndarray, np.ndarray]:
    """
    RSSI values of the radio sources read by both fingerprints.

    Args:
        fingerprint: First fingerprint (typically the query).
        other: Second fingerprint.

    Returns:
        Tuple (z, f) of equally ordered RSSI arrays, possibly empty.
    """
    z = []
    f = []
    for reading in fingerprint.readings:
        other_reading = other.reading_for(reading.source)
        if other_reading is None:
            continue
        z.append(reading.rssi)
        f.append(other_reading.rssi)
    return np.asarray(z, dtype=float), np.asarray(f, dtype=float)


def signal_distance(
    fingerprint: Fingerprint, other: Fingerprint, remove_mean: bool = False
) -> float:
    """
    Signal-space Euclidean distance between two fingerprints.

    Args:
        fingerprint: Query fingerprint.
        other: Candidate fingerprint.
        remove_mean: If True, subtract from each fingerprint its mean RSSI
            over the matched readings before computing the distance.

    Returns:
        Distance in dB. Returns +inf if no radio source is shared.

    Examples:
        >>> ap1, ap2 = RadioSource("ap1", 2.4e9), RadioSource("ap2", 2.4e9)
        >>> z = Fingerprint([Reading(ap1, -50.0), Reading(ap2, -60.0)])
        >>> f = Fingerprint([Reading(ap1, -53.0), Reading(ap2, -64.0)])
        >>> signal_distance(z, f)
        5.0
        >>> # a constant offset between devices is cancelled
        >>> g = Fingerprint([Reading(ap1, -40.0), Reading(ap2, -50.0)])
        >>> signal_distance(z, g, remove_mean=True)
        0.0
    """
    z, f = matched_rssi(fingerprint, other)
    if len(z) == 0:
        return np.inf

    if remove_mean:
        z = z - np.mean(z)
        f = f - np.mean(f)

    return float(np.linalg.norm(z - f))


class NearestFingerprintFinder:
    """
    k-nearest located fingerprints of a query fingerprint.

    Attributes:
        located_fingerprints: Radio map being searched (not copied).
        remove_mean: Whether mean-removed distances are used.

    Example:
        >>> finder = NearestFingerprintFinder(radio_map, remove_mean=True)
        >>> nearest = finder.find_k_nearest_to(query, k=5)
    """

    def __init__(
        self,
        located_fingerprints: Sequence[LocatedFingerprint],
        remove_mean: bool = False,
    ):
        if located_fingerprints is None:
            raise ValueError("located_fingerprints cannot be None")
        self.located_fingerprints = located_fingerprints
        self.remove_mean = remove_mean

    def distances_to(self, fingerprint: Fingerprint) -> np.ndarray:
        """
        Signal distance from ``fingerprint`` to every located fingerprint.

        Returns:
            Array of shape (M,), +inf for candidates sharing no source.
        """
        if fingerprint is None:
            raise ValueError("fingerprint cannot be None")
        return np.array(
            [
                signal_distance(fingerprint, candidate, remove_mean=self.remove_mean)
                for candidate in self.located_fingerprints
            ],
            dtype=float,
        )

    def find_k_nearest_to(
        self,
        fingerprint: Fingerprint,
        k: int,
        distances: Optional[List[float]] = None,
    ) -> List[LocatedFingerprint]:
        """
        Find the k located fingerprints closest to ``fingerprint``.

        Args:
            fingerprint: Query fingerprint.
            k: Maximum number of fingerprints to return (must be >= 1).
            distances: Optional list that is cleared and filled with the
                signal distance of each returned fingerprint.

        Returns:
            Up to k located fingerprints ordered by ascending distance. Fewer
            than k are returned when fewer candidates share a radio source
            with the query.

        Raises:
            ValueError: If k < 1.
            NearestFingerprintNotFoundError: If the radio map is empty or no
                located fingerprint shares a radio source with the query.
        """
        if k < 1:
            raise ValueError(f"k must be >= 1, got k={k}")

        all_distances = self.distances_to(fingerprint)
        valid = np.flatnonzero(np.isfinite(all_distances))
        if len(valid) == 0:
            raise NearestFingerprintNotFoundError(
                "No located fingerprint shares a radio source with the query fingerprint"
            )

        # stable sort keeps radio map order on ties
        order = valid[np.argsort(all_distances[valid], kind="stable")][:k]

        if distances is not None:
            distances.clear()
            distances.extend(float(all_distances[i]) for i in order)

        logger.debug(
            "Selected %d of %d located fingerprints (remove_mean=%s)",
            len(order),
            len(self.located_fingerprints),
            self.remove_mean,
        )
        return [self.located_fingerprints[i] for i in order]

    def find_nearest_to(self, fingerprint: Fingerprint) -> LocatedFingerprint:
        """Closest located fingerprint to ``fingerprint``."""
        return self.find_k_nearest_to(fingerprint, 1)[0]
