"""Unit tests for rssinav.eval.metrics."""

import unittest

import numpy as np
from numpy.testing import assert_allclose
from scipy import stats

from rssinav.eval import (
    DEFAULT_CONFIDENCE,
    accuracy_ellipse,
    accuracy_radius,
    compute_error_stats,
    compute_nees,
    compute_position_errors,
    compute_rmse,
)


class TestErrorMetrics(unittest.TestCase):
    """Test error statistics over sets of estimates."""

    def test_position_errors(self):
        truth = np.array([[0.0, 0.0], [1.0, 1.0]])
        estimated = np.array([[3.0, 4.0], [1.0, 2.0]])

        errors = compute_position_errors(truth, estimated)

        assert_allclose(errors, [[3.0, 4.0], [0.0, 1.0]])
        with self.assertRaises(ValueError):
            compute_position_errors(truth, estimated[:1])

    def test_error_stats(self):
        errors = np.array([[3.0, 4.0], [0.0, 1.0], [0.0, 0.0], [6.0, 8.0]])

        stats_ = compute_error_stats(errors)

        self.assertAlmostEqual(stats_["mean"], 4.0)
        self.assertAlmostEqual(stats_["median"], 3.0)
        self.assertAlmostEqual(stats_["max"], 10.0)
        self.assertAlmostEqual(stats_["rmse"], np.sqrt((25 + 1 + 0 + 100) / 4))
        self.assertLessEqual(stats_["p75"], stats_["p90"])
        self.assertLessEqual(stats_["p90"], stats_["p95"])

    def test_rmse(self):
        self.assertAlmostEqual(compute_rmse(np.array([3.0, -4.0])), np.sqrt(12.5))
        assert_allclose(compute_rmse(np.array([[1.0, 2.0], [1.0, 2.0]]), axis=0), [1.0, 2.0])

    def test_nees(self):
        truth = np.zeros((2, 2))
        estimated = np.array([[2.0, 0.0], [0.0, 1.0]])
        covariance = np.array([np.diag([4.0, 1.0]), np.diag([4.0, 1.0])])

        assert_allclose(compute_nees(truth, estimated, covariance), [1.0, 1.0])

    def test_nees_singular_covariance(self):
        truth = np.zeros((2, 2))
        estimated = np.ones((2, 2))
        covariance = np.array([np.eye(2), np.zeros((2, 2))])

        nees = compute_nees(truth, estimated, covariance)

        self.assertAlmostEqual(nees[0], 2.0)
        self.assertTrue(np.isnan(nees[1]))
        with self.assertRaises(ValueError):
            compute_nees(truth, estimated, covariance[:1])


class TestAccuracyRadius(unittest.TestCase):
    """Test accuracy_radius() and accuracy_ellipse()."""

    def test_isotropic_one_sigma(self):
        """At the default confidence the radius scales with the std."""
        radius = accuracy_radius(np.eye(2) * 9.0)

        expected = 3.0 * np.sqrt(stats.chi2.ppf(DEFAULT_CONFIDENCE, 2))
        self.assertAlmostEqual(radius, expected)

    def test_uses_largest_eigenvalue(self):
        radius = accuracy_radius(np.diag([4.0, 1.0]), confidence=0.95)

        self.assertAlmostEqual(radius, np.sqrt(stats.chi2.ppf(0.95, 2) * 4.0))
        self.assertAlmostEqual(radius, 4.895, places=3)

    def test_rotation_invariant(self):
        theta = 0.7
        R = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        P = np.diag([5.0, 0.5])

        self.assertAlmostEqual(accuracy_radius(R @ P @ R.T), accuracy_radius(P))

    def test_grows_with_confidence(self):
        P = np.diag([2.0, 1.0])
        self.assertLess(accuracy_radius(P, 0.5), accuracy_radius(P, 0.99))

    def test_invalid(self):
        with self.assertRaises(ValueError):
            accuracy_radius(np.eye(2), confidence=1.0)
        with self.assertRaises(ValueError):
            accuracy_radius(np.ones((2, 3)))
        with self.assertRaises(ValueError):
            accuracy_radius(np.diag([1.0, -1.0]))

    def test_ellipse(self):
        theta = 0.3
        R = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        P = R @ np.diag([9.0, 1.0]) @ R.T

        semi_major, semi_minor, angle = accuracy_ellipse(P, confidence=0.95)

        scale = np.sqrt(stats.chi2.ppf(0.95, 2))
        self.assertAlmostEqual(semi_major, 3.0 * scale)
        self.assertAlmostEqual(semi_minor, 1.0 * scale)
        # the major axis direction is defined up to π
        self.assertAlmostEqual(np.tan(angle), np.tan(theta))
        self.assertAlmostEqual(semi_major, accuracy_radius(P, confidence=0.95))

        with self.assertRaises(ValueError):
            accuracy_ellipse(np.eye(3))


if __name__ == "__main__":
    unittest.main()
