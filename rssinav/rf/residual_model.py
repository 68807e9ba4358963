"""
RSSI-difference residual model with analytic Jacobians.

For a located fingerprint f and a radio source a read by both f and the
query fingerprint (taken at unknown position p), the log-distance model gives

    Pr(p) = K_a - 5·n·log10(d²(p, a))
    Pr(f) = K_a - 5·n·log10(d²(f, a))

where K_a = 10·n·log10(k) + Pte(dBm) only depends on the source. Differencing
both readings cancels K_a, so neither the transmitted power nor the carrier
frequency is needed:

    y_fa = Pr_query(a) - Pr_f(a)
    h_fa = 5·n·(log10 d²(f, a) - log10 d²(p, a))

Analytic partial derivatives of h_fa (ln10 = log(10)):

    ∂h/∂p = -10·n·(p - a) / (ln10 · d²(p, a))
    ∂h/∂a =  10·n/ln10 · ((p - a)/d²(p, a) - (f - a)/d²(f, a))
    ∂h/∂n =  5·(log10 d²(f, a) - log10 d²(p, a))
    ∂h/∂f =  10·n·(f - a) / (ln10 · d²(f, a))

Mean removal on readings centers observations and predictions per
fingerprint group, i.e. applies the projection C = blockdiag(I - 11ᵀ/m_g)
to y, h and every Jacobian. A constant offset on the query readings lies in
the null space of C and is cancelled exactly.
"""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from rssinav.rf.measurement_models import DEFAULT_PATH_LOSS_EXPONENT

logger = logging.getLogger(__name__)

# Number of coordinates of a 2D position
POSITION_DIMS = 2

# Lower clamp of squared distances (m²)
TINY = 1e-12

LN10 = np.log(10.0)


class RssiDifferenceModel:
    """
    Residual model over the readings shared by a query fingerprint and a set
    of located fingerprints.

    One observation row is built per (located fingerprint, radio source)
    pair where the source belongs to ``sources`` and is read by both
    fingerprints. Rows are ordered by fingerprint, then by reading order.

    Args:
        fingerprint: Query fingerprint.
        located_fingerprints: Working set of located fingerprints.
        sources: Radio sources taken into account. Readings of any other
            source are ignored.
        remove_mean: Center observations and predictions per fingerprint.
        fallback_rssi_std: Standard deviation used for readings without one.

    Attributes:
        fingerprint_index: Index into ``located_fingerprints`` for each row.
        source_index: Index into ``sources`` for each row.
        query_rssi_std: Std of the query reading of each row.
        fingerprint_rssi_std: Std of the located reading of each row.
        fingerprint_positions: Array (F, 2) of located fingerprint positions.

    Example:
        >>> model = RssiDifferenceModel(query, nearest, [ap1, ap2, ap3])
        >>> J = model.position_jacobian(p, source_positions, exponents)
    """

    def __init__(
        self,
        fingerprint,
        located_fingerprints: Sequence,
        sources: Sequence,
        remove_mean: bool = False,
        fallback_rssi_std: float = 1e-3,
    ):
        if fallback_rssi_std <= 0:
            raise ValueError(f"fallback_rssi_std must be positive, got {fallback_rssi_std}")

        self.fingerprint = fingerprint
        self.located_fingerprints = list(located_fingerprints)
        self.sources = list(sources)
        self.remove_mean = remove_mean

        source_lookup: Dict = {source: i for i, source in enumerate(self.sources)}

        fp_index: List[int] = []
        src_index: List[int] = []
        y: List[float] = []
        query_std: List[float] = []
        fp_std: List[float] = []
        for i, located in enumerate(self.located_fingerprints):
            for reading in located.readings:
                j = source_lookup.get(reading.source)
                if j is None:
                    continue
                query_reading = fingerprint.reading_for(reading.source)
                if query_reading is None:
                    continue
                fp_index.append(i)
                src_index.append(j)
                y.append(query_reading.rssi - reading.rssi)
                query_std.append(
                    query_reading.rssi_std
                    if query_reading.rssi_std is not None
                    else fallback_rssi_std
                )
                fp_std.append(
                    reading.rssi_std if reading.rssi_std is not None else fallback_rssi_std
                )

        self.fingerprint_index = np.asarray(fp_index, dtype=int)
        self.source_index = np.asarray(src_index, dtype=int)
        self._raw_observations = np.asarray(y, dtype=float)
        self.query_rssi_std = np.asarray(query_std, dtype=float)
        self.fingerprint_rssi_std = np.asarray(fp_std, dtype=float)

        if remove_mean:
            # single-reading groups are all-zero after centering
            counts = np.bincount(self.fingerprint_index, minlength=len(self.located_fingerprints))
            keep = counts[self.fingerprint_index] > 1
            self.fingerprint_index = self.fingerprint_index[keep]
            self.source_index = self.source_index[keep]
            self._raw_observations = self._raw_observations[keep]
            self.query_rssi_std = self.query_rssi_std[keep]
            self.fingerprint_rssi_std = self.fingerprint_rssi_std[keep]
            self._centering = self._centering_matrix(self.fingerprint_index)
        else:
            self._centering = None

        if self.located_fingerprints:
            self.fingerprint_positions = np.array(
                [located.position for located in self.located_fingerprints], dtype=float
            )
        else:
            self.fingerprint_positions = np.zeros((0, POSITION_DIMS))

        logger.debug(
            "Residual model: %d rows from %d fingerprints and %d sources (remove_mean=%s)",
            self.n_observations,
            len(self.located_fingerprints),
            len(self.sources),
            remove_mean,
        )

    @staticmethod
    def _centering_matrix(groups: np.ndarray) -> np.ndarray:
        m = len(groups)
        same_group = groups[:, None] == groups[None, :]
        sizes = same_group.sum(axis=1)
        return np.eye(m) - same_group / sizes[:, None]

    @property
    def n_observations(self) -> int:
        return len(self._raw_observations)

    @property
    def weights(self) -> np.ndarray:
        """Solver weights 1/σ², σ being the query reading std of each row."""
        return 1.0 / self.query_rssi_std**2

    def project(self, values: np.ndarray) -> np.ndarray:
        """Apply mean removal (no-op when disabled) to a vector or matrix of rows."""
        if self._centering is None:
            return values
        return self._centering @ values

    @property
    def observations(self) -> np.ndarray:
        """Observed RSSI differences y (centered when mean removal is on)."""
        return self.project(self._raw_observations)

    def sources_read(self) -> np.ndarray:
        """Indices of the sources appearing in at least one row."""
        return np.unique(self.source_index)

    def _geometry(self, position, source_positions, fingerprint_positions=None):
        p = np.asarray(position, dtype=float)
        a = np.asarray(source_positions, dtype=float)[self.source_index]
        if fingerprint_positions is None:
            fingerprint_positions = self.fingerprint_positions
        f = np.asarray(fingerprint_positions, dtype=float)[self.fingerprint_index]

        f_minus_a = f - a
        p_minus_a = p - a
        d2_fa = np.maximum(np.sum(f_minus_a**2, axis=1), TINY)
        d2_pa = np.maximum(np.sum(p_minus_a**2, axis=1), TINY)
        return f_minus_a, p_minus_a, d2_fa, d2_pa

    def _row_exponents(self, path_loss_exponents) -> np.ndarray:
        if path_loss_exponents is None:
            return np.full(self.n_observations, DEFAULT_PATH_LOSS_EXPONENT)
        n = np.asarray(path_loss_exponents, dtype=float)
        if n.ndim == 0:
            return np.full(self.n_observations, float(n))
        return n[self.source_index]

    def predict(
        self,
        position: np.ndarray,
        source_positions: np.ndarray,
        path_loss_exponents: Optional[np.ndarray] = None,
        fingerprint_positions: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Predicted RSSI differences h.

        Args:
            position: Device position p, shape (2,).
            source_positions: Positions of ``sources``, shape (S, 2).
            path_loss_exponents: Scalar or per-source exponents (S,).
                Defaults to 2.0.
            fingerprint_positions: Optional override of the located
                fingerprint positions, shape (F, 2).

        Returns:
            Array (m,) of predictions, centered when mean removal is on.
        """
        _, _, d2_fa, d2_pa = self._geometry(position, source_positions, fingerprint_positions)
        n = self._row_exponents(path_loss_exponents)
        return self.project(5.0 * n * (np.log10(d2_fa) - np.log10(d2_pa)))

    def residuals(self, position, source_positions, path_loss_exponents=None) -> np.ndarray:
        """Observed minus predicted RSSI differences."""
        return self.observations - self.predict(position, source_positions, path_loss_exponents)

    def position_jacobian(self, position, source_positions, path_loss_exponents=None) -> np.ndarray:
        """∂h/∂p, shape (m, 2)."""
        _, p_minus_a, _, d2_pa = self._geometry(position, source_positions)
        n = self._row_exponents(path_loss_exponents)
        J = -10.0 * (n / (LN10 * d2_pa))[:, None] * p_minus_a
        return self.project(J)

    def source_position_jacobian(
        self, position, source_positions, path_loss_exponents=None
    ) -> np.ndarray:
        """∂h/∂a for every source, shape (m, 2·S) ordered [x_0, y_0, x_1, y_1, ...]."""
        f_minus_a, p_minus_a, d2_fa, d2_pa = self._geometry(position, source_positions)
        n = self._row_exponents(path_loss_exponents)
        block = (10.0 * n / LN10)[:, None] * (
            p_minus_a / d2_pa[:, None] - f_minus_a / d2_fa[:, None]
        )

        J = np.zeros((self.n_observations, POSITION_DIMS * len(self.sources)))
        rows = np.arange(self.n_observations)
        for d in range(POSITION_DIMS):
            J[rows, POSITION_DIMS * self.source_index + d] = block[:, d]
        return self.project(J)

    def path_loss_exponent_jacobian(self, position, source_positions) -> np.ndarray:
        """∂h/∂n for every source, shape (m, S)."""
        _, _, d2_fa, d2_pa = self._geometry(position, source_positions)
        J = np.zeros((self.n_observations, len(self.sources)))
        J[np.arange(self.n_observations), self.source_index] = 5.0 * (
            np.log10(d2_fa) - np.log10(d2_pa)
        )
        return self.project(J)

    def fingerprint_position_jacobian(
        self, position, source_positions, path_loss_exponents=None
    ) -> np.ndarray:
        """∂h/∂f for every located fingerprint, shape (m, 2·F)."""
        f_minus_a, _, d2_fa, _ = self._geometry(position, source_positions)
        n = self._row_exponents(path_loss_exponents)
        block = (10.0 * n / (LN10 * d2_fa))[:, None] * f_minus_a

        J = np.zeros((self.n_observations, POSITION_DIMS * len(self.located_fingerprints)))
        rows = np.arange(self.n_observations)
        for d in range(POSITION_DIMS):
            J[rows, POSITION_DIMS * self.fingerprint_index + d] = block[:, d]
        return self.project(J)

    def fingerprint_rssi_sensitivity(self) -> np.ndarray:
        """∂y/∂(located RSSI), shape (m, m): one located reading per row."""
        return self.project(-np.eye(self.n_observations))
