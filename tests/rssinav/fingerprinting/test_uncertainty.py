"""Unit tests for first-order covariance propagation."""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssinav.exceptions import NonPositiveDefiniteCovarianceError, SingularNormalEquationsError
from rssinav.fingerprinting import (
    Fingerprint,
    LocatedFingerprint,
    NoiseContribution,
    RadioSource,
    Reading,
    chi_square,
    position_covariance,
    propagate_covariance,
)
from rssinav.fingerprinting.uncertainty import (
    fingerprint_position_contribution,
    fingerprint_rssi_contribution,
    initial_position_contribution,
    path_loss_exponent_contribution,
    source_position_contribution,
)
from rssinav.rf import RssiDifferenceModel

RNG_SEED = 7


@pytest.fixture
def square_problem():
    rng = np.random.default_rng(RNG_SEED)
    J = rng.normal(size=(8, 2))
    w = rng.uniform(0.5, 2.0, size=8)
    return J, w


class TestNoiseContribution:
    """Test NoiseContribution validation."""

    def test_diagonal_from_variances(self):
        contribution = NoiseContribution("x", np.ones((3, 2)), [4.0, 9.0])

        assert_allclose(contribution.covariance, np.diag([4.0, 9.0]))

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            NoiseContribution("x", np.ones((3, 2)), np.eye(3))

    def test_observation_covariance(self):
        B = np.array([[1.0, 0.0], [1.0, 1.0]])
        contribution = NoiseContribution("x", B, np.diag([2.0, 3.0]))

        assert_allclose(contribution.observation_covariance(), [[2.0, 2.0], [2.0, 5.0]])


class TestPropagateCovariance:
    """Test propagate_covariance()."""

    def test_no_contribution_is_normal_matrix_inverse(self, square_problem):
        J, w = square_problem

        P = propagate_covariance(J, w)

        assert_allclose(P, np.linalg.inv(J.T @ np.diag(w) @ J))

    def test_noise_on_parameters_adds_directly(self, square_problem):
        """With B = J, a perturbation Σ of the parameters adds Σ to P."""
        J, w = square_problem
        sigma = np.array([[0.3, 0.1], [0.1, 0.2]])
        P0 = propagate_covariance(J, w)

        P = propagate_covariance(J, w, [NoiseContribution("p", J, sigma)])

        assert_allclose(P, P0 + sigma, atol=1e-12)

    def test_each_contribution_increases_trace(self, square_problem):
        J, w = square_problem
        rng = np.random.default_rng(RNG_SEED + 1)
        contributions = [
            NoiseContribution("a", rng.normal(size=(8, 3)), [0.5, 1.0, 2.0]),
            NoiseContribution("b", -np.eye(8), np.full(8, 0.25)),
        ]

        traces = [np.trace(propagate_covariance(J, w, contributions[:k])) for k in range(3)]

        assert traces[0] <= traces[1] <= traces[2]

    def test_row_mismatch(self, square_problem):
        J, w = square_problem

        with pytest.raises(ValueError):
            propagate_covariance(J, w, [NoiseContribution("bad", np.ones((5, 1)), [1.0])])

    def test_singular_jacobian(self):
        J = np.column_stack([np.ones(4), np.ones(4)])

        with pytest.raises(SingularNormalEquationsError):
            propagate_covariance(J, np.ones(4))


class TestHelpers:
    """Test position_covariance() and chi_square()."""

    def test_position_block(self):
        cov = np.diag([1.0, 2.0, 3.0, 4.0])
        cov[0, 2] = cov[2, 0] = 0.5

        assert_allclose(position_covariance(cov), np.diag([1.0, 2.0]))

    def test_position_block_not_positive_definite(self):
        with pytest.raises(NonPositiveDefiniteCovarianceError):
            position_covariance(np.diag([1.0, 0.0, 1.0]))

    def test_chi_square(self):
        assert chi_square([1.0, -2.0], [4.0, 0.25]) == pytest.approx(5.0)


class TestContributionBuilders:
    """Builders skip noise sources without a known uncertainty."""

    sources = [RadioSource(f"ap{i}", 2.4e9) for i in range(3)]
    source_positions = np.array([[-2.0, -2.0], [22.0, -2.0], [10.0, 22.0]])
    p = np.array([8.0, 9.0])

    def model(self, position_covariance=None, rssi_std=None):
        nearest = [
            LocatedFingerprint(
                [Reading(s, -50.0 - 3 * i - j, rssi_std) for j, s in enumerate(self.sources)],
                position=[5.0 * i, 4.0],
                position_covariance=position_covariance if i == 0 else None,
            )
            for i in range(3)
        ]
        query = Fingerprint([Reading(s, -55.0 - j) for j, s in enumerate(self.sources)])
        return RssiDifferenceModel(query, nearest, self.sources, fallback_rssi_std=0.1)

    def test_fingerprint_rssi_uses_fallback(self):
        contribution = fingerprint_rssi_contribution(self.model())

        assert_allclose(np.diag(contribution.covariance), 0.01)
        assert contribution.sensitivity.shape == (9, 9)

    def test_path_loss_exponent_skips_unknown(self):
        model = self.model()

        assert (
            path_loss_exponent_contribution(model, self.p, self.source_positions, [None, 0.0, None])
            is None
        )
        contribution = path_loss_exponent_contribution(
            model, self.p, self.source_positions, [None, 0.2, np.nan]
        )
        assert contribution.sensitivity.shape == (9, 1)
        assert_allclose(contribution.covariance, [[0.04]])

    def test_fingerprint_position_only_where_known(self):
        assert (
            fingerprint_position_contribution(self.model(), self.p, self.source_positions, 2.0)
            is None
        )
        contribution = fingerprint_position_contribution(
            self.model(position_covariance=0.5 * np.eye(2)), self.p, self.source_positions, 2.0
        )
        assert contribution.sensitivity.shape == (9, 2)
        assert_allclose(contribution.covariance, 0.5 * np.eye(2))

    def test_source_position_blocks(self):
        contribution = source_position_contribution(
            self.model(), self.p, self.source_positions, 2.0,
            [np.eye(2), None, 2.0 * np.eye(2)],
        )

        assert contribution.sensitivity.shape == (9, 4)
        assert_allclose(np.diag(contribution.covariance), [1.0, 1.0, 2.0, 2.0])

    def test_initial_position(self):
        model = self.model()

        assert (
            initial_position_contribution(model, self.p, self.source_positions, 2.0, None) is None
        )
        contribution = initial_position_contribution(
            model, self.p, self.source_positions, 2.0, np.eye(2)
        )
        assert_allclose(
            contribution.sensitivity,
            model.position_jacobian(self.p, self.source_positions, 2.0),
        )
