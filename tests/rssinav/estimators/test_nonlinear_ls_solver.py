"""
Unit tests for nonlinear least squares solvers.

Tests cover:
    - Gauss-Newton and Levenberg-Marquardt on 2D range positioning
    - Weighted normal equations and covariance (J'WJ)⁻¹
    - Singular and underdetermined problems
    - Soft and strict handling of the iteration cap and of a damping stall
"""

import unittest
import warnings

import numpy as np
from numpy.testing import assert_allclose

from rssinav.estimators import (
    NonlinearLSResult,
    SolverState,
    gauss_newton,
    levenberg_marquardt,
    normal_matrix_inverse,
    solve_nonlinear_ls,
)
from rssinav.exceptions import (
    ConvergenceWarning,
    NonConvergenceError,
    SingularNormalEquationsError,
)


class RangeProblem:
    """hᵢ(x) = ‖x - aᵢ‖ for a set of anchors."""

    def __init__(self, anchors):
        self.anchors = np.asarray(anchors, dtype=float)

    def h(self, x):
        return np.linalg.norm(self.anchors - x, axis=1)

    def jacobian(self, x):
        diff = x - self.anchors
        ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        return diff / np.maximum(ranges, 1e-10)


class TestRangePositioning(unittest.TestCase):
    """Both solvers on the canonical 2D range positioning problem."""

    def setUp(self):
        self.problem = RangeProblem([[0, 0], [10, 0], [0, 10], [10, 10]])
        self.true_pos = np.array([3.0, 4.0])
        self.y = self.problem.h(self.true_pos)

    def test_gauss_newton_exact(self):
        result = gauss_newton(
            self.problem.h, self.problem.jacobian, self.y, np.array([5.0, 5.0])
        )

        assert_allclose(result.x, self.true_pos, atol=1e-8)
        self.assertTrue(result.converged)
        self.assertEqual(result.state, SolverState.CONVERGED)
        self.assertLess(result.iterations, 10)

    def test_levenberg_marquardt_exact(self):
        result = levenberg_marquardt(
            self.problem.h, self.problem.jacobian, self.y, np.array([9.0, 1.0])
        )

        assert_allclose(result.x, self.true_pos, atol=1e-8)
        self.assertTrue(result.converged)
        self.assertAlmostEqual(result.cost, 0.0, places=12)

    def test_lm_from_far_initial_guess(self):
        """LM damping copes with a poor starting point."""
        result = levenberg_marquardt(
            self.problem.h, self.problem.jacobian, self.y, np.array([40.0, -30.0])
        )

        assert_allclose(result.x, self.true_pos, atol=1e-6)

    def test_covariance_matches_weighted_normal_matrix(self):
        sigma = np.array([0.1, 0.2, 0.1, 0.4])
        weights = 1.0 / sigma**2

        result = levenberg_marquardt(
            self.problem.h,
            self.problem.jacobian,
            self.y,
            np.array([5.0, 5.0]),
            weights=weights,
        )

        J = self.problem.jacobian(result.x)
        expected = np.linalg.inv(J.T @ np.diag(weights) @ J)
        assert_allclose(result.covariance, expected, rtol=1e-8)
        assert_allclose(result.covariance, result.covariance.T)
        assert_allclose(result.weights, weights)

    def test_weights_favor_precise_measurements(self):
        """A biased range with a tiny weight barely moves the estimate."""
        y = self.y.copy()
        y[3] += 2.0
        weights = np.array([1.0, 1.0, 1.0, 1e-6])

        result = gauss_newton(
            self.problem.h, self.problem.jacobian, y, np.array([5.0, 5.0]), weights=weights
        )

        self.assertLess(np.linalg.norm(result.x - self.true_pos), 1e-3)

    def test_chi_square_is_twice_cost(self):
        y = self.y + np.array([0.1, -0.1, 0.05, 0.0])

        result = levenberg_marquardt(
            self.problem.h, self.problem.jacobian, y, np.array([5.0, 5.0])
        )

        self.assertAlmostEqual(result.chi_square, float(result.residuals @ result.residuals))

    def test_scaled_covariance(self):
        y = self.y + np.array([0.1, -0.1, 0.05, -0.02])

        unscaled = gauss_newton(self.problem.h, self.problem.jacobian, y, np.array([5.0, 5.0]))
        scaled = gauss_newton(
            self.problem.h,
            self.problem.jacobian,
            y,
            np.array([5.0, 5.0]),
            scale_covariance=True,
        )

        sigma2 = unscaled.chi_square / (4 - 2)
        assert_allclose(scaled.covariance, sigma2 * unscaled.covariance, rtol=1e-8)

    def test_without_covariance(self):
        result = gauss_newton(
            self.problem.h,
            self.problem.jacobian,
            self.y,
            np.array([5.0, 5.0]),
            return_covariance=False,
        )

        self.assertIsNone(result.covariance)
        self.assertIsInstance(result, NonlinearLSResult)

    def test_dispatcher(self):
        for method in ("gn", "lm"):
            result = solve_nonlinear_ls(
                self.problem.h, self.problem.jacobian, self.y, np.array([5.0, 5.0]),
                method=method,
            )
            assert_allclose(result.x, self.true_pos, atol=1e-8)

        with self.assertRaises(ValueError):
            solve_nonlinear_ls(
                self.problem.h, self.problem.jacobian, self.y, np.zeros(2), method="bfgs"
            )

    def test_dispatcher_options(self):
        """Solver options reach the solver and misspelled ones are rejected."""
        noisy = self.y + np.array([0.1, -0.1, 0.05, 0.0])
        plain = solve_nonlinear_ls(
            self.problem.h, self.problem.jacobian, noisy, np.array([5.0, 5.0])
        )
        scaled = solve_nonlinear_ls(
            self.problem.h,
            self.problem.jacobian,
            noisy,
            np.array([5.0, 5.0]),
            mu0=1.0,
            scale_covariance=True,
        )

        assert_allclose(scaled.x, plain.x, atol=1e-8)
        factor = 2.0 * scaled.cost / (len(noisy) - 2)
        assert_allclose(scaled.covariance, plain.covariance * factor, rtol=1e-6)

        with self.assertRaises(TypeError):
            solve_nonlinear_ls(
                self.problem.h,
                self.problem.jacobian,
                self.y,
                np.array([5.0, 5.0]),
                scale_covarance=True,
            )


class TestIterationCap(unittest.TestCase):
    """Reaching max_iter is soft unless asked otherwise."""

    def setUp(self):
        self.problem = RangeProblem([[0, 0], [10, 0], [0, 10], [10, 10]])
        self.y = self.problem.h(np.array([3.0, 4.0]))
        self.x0 = np.array([60.0, -45.0])

    def test_soft_by_default(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = levenberg_marquardt(
                self.problem.h, self.problem.jacobian, self.y, self.x0, max_iter=1
            )

        self.assertFalse(result.converged)
        self.assertEqual(result.state, SolverState.MAX_ITERATIONS)
        self.assertTrue(any(issubclass(w.category, ConvergenceWarning) for w in caught))
        self.assertEqual(result.iterations, 1)

    def test_strict(self):
        with self.assertRaises(NonConvergenceError):
            gauss_newton(
                self.problem.h,
                self.problem.jacobian,
                self.y,
                self.x0,
                max_iter=1,
                raise_on_max_iterations=True,
            )


class TestDampingStall(unittest.TestCase):
    """A Jacobian of the wrong sign makes every damped step go uphill."""

    @staticmethod
    def h(x):
        return np.array(x, dtype=float)

    @staticmethod
    def jacobian(x):
        return -np.eye(2)

    def test_stall_is_not_converged(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = levenberg_marquardt(
                self.h, self.jacobian, np.zeros(2), np.array([100.0, 100.0])
            )

        self.assertFalse(result.converged)
        self.assertEqual(result.state, SolverState.STALLED)
        assert_allclose(result.x, [100.0, 100.0])
        self.assertTrue(any(issubclass(w.category, ConvergenceWarning) for w in caught))

    def test_strict_stall(self):
        with self.assertRaises(NonConvergenceError):
            levenberg_marquardt(
                self.h,
                self.jacobian,
                np.zeros(2),
                np.array([100.0, 100.0]),
                raise_on_max_iterations=True,
            )


class TestDegenerateProblems(unittest.TestCase):
    """Singular and underdetermined normal equations."""

    def test_fewer_residuals_than_unknowns(self):
        problem = RangeProblem([[0, 0]])

        with self.assertRaises(SingularNormalEquationsError):
            levenberg_marquardt(problem.h, problem.jacobian, np.array([5.0]), np.ones(2))

    def test_collinear_geometry_is_singular(self):
        """Anchors on a line seen from that line leave one direction unobservable."""
        problem = RangeProblem([[0, 0], [10, 0], [20, 0]])
        y = problem.h(np.array([5.0, 0.0]))

        with self.assertRaises(SingularNormalEquationsError):
            levenberg_marquardt(problem.h, problem.jacobian, y + 0.5, np.array([4.0, 0.0]))

    def test_rank_deficient_start(self):
        """N singular at x0 but regular at the solution."""

        def h(x):
            return np.array([x[0], x[0] * x[1]])

        def jacobian(x):
            return np.array([[1.0, 0.0], [x[1], x[0]]])

        result = levenberg_marquardt(h, jacobian, np.array([2.0, 6.0]), np.zeros(2))

        self.assertTrue(result.converged)
        assert_allclose(result.x, [2.0, 3.0], atol=1e-6)
        self.assertTrue(np.all(np.isfinite(result.covariance)))

    def test_normal_matrix_inverse(self):
        A = np.array([[4.0, 1.0], [1.0, 3.0]])

        assert_allclose(normal_matrix_inverse(A), np.linalg.inv(A))

        with self.assertRaises(SingularNormalEquationsError):
            normal_matrix_inverse(np.array([[1.0, 1.0], [1.0, 1.0]]))
        with self.assertRaises(SingularNormalEquationsError):
            normal_matrix_inverse(np.diag([1.0, 1e-20]))
        with self.assertRaises(SingularNormalEquationsError):
            normal_matrix_inverse(np.array([[np.nan, 0.0], [0.0, 1.0]]))

    def test_invalid_inputs(self):
        problem = RangeProblem([[0, 0], [10, 0], [0, 10]])
        y = problem.h(np.array([1.0, 1.0]))

        with self.assertRaises(ValueError):
            gauss_newton(problem.h, problem.jacobian, y, np.ones(2), weights=np.ones(2))
        with self.assertRaises(ValueError):
            gauss_newton(problem.h, problem.jacobian, y, np.ones(2), weights=-np.ones(3))
        with self.assertRaises(ValueError):
            gauss_newton(problem.h, problem.jacobian, y, np.ones(2), max_iter=0)


if __name__ == "__main__":
    unittest.main()
