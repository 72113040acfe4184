"""
Unit tests for the weighted nonlinear least squares solvers.

Tests cover:
    - Gauss-Newton method
    - Levenberg-Marquardt method
    - Weighted problems, chi-square and covariance at convergence
    - Covariance inversion of singular information matrices
"""

import unittest
import warnings

import numpy as np
from numpy.testing import assert_allclose

from radiomap.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    covariance_from_information,
    gauss_newton,
    levenberg_marquardt,
    solve_nonlinear_ls,
)


class TestGaussNewton2DRangePositioning(unittest.TestCase):
    """Test Gauss-Newton on a 2D range positioning problem.

    This tests hᵢ(x) = ‖x - aᵢ‖ (range from position x to anchor aᵢ).
    """

    def setUp(self):
        """Setup 4 anchors at corners of 10x10 area."""
        self.anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        self.true_pos = np.array([3.0, 4.0])

        def h(x):
            return np.linalg.norm(self.anchors - x, axis=1)

        # ∂hᵢ/∂x = (x - aᵢ) / ‖x - aᵢ‖
        def jacobian(x):
            diff = x - self.anchors
            ranges = np.linalg.norm(diff, axis=1, keepdims=True)
            return diff / np.maximum(ranges, 1e-10)

        self.h = h
        self.jacobian = jacobian
        self.y_clean = h(self.true_pos)

    def test_exact_measurements_convergence(self):
        """GN converges to the true position with exact measurements."""
        result = gauss_newton(self.h, self.jacobian, self.y_clean, np.array([5.0, 5.0]))

        assert_allclose(result.x, self.true_pos, atol=1e-6)
        self.assertTrue(result.converged)
        self.assertLess(result.iterations, 10)

    def test_noisy_measurements(self):
        """GN with noisy measurements stays close to the true position."""
        np.random.seed(42)
        y_noisy = self.y_clean + 0.1 * np.random.randn(4)

        result = gauss_newton(self.h, self.jacobian, y_noisy, np.array([5.0, 5.0]))

        self.assertLess(np.linalg.norm(result.x - self.true_pos), 0.5)

    def test_covariance_is_symmetric_positive_definite(self):
        """Covariance at convergence is inv(J'WJ), symmetric and PD."""
        result = gauss_newton(self.h, self.jacobian, self.y_clean, np.array([5.0, 5.0]))

        self.assertIsNotNone(result.covariance)
        assert_allclose(result.covariance, result.covariance.T)
        self.assertTrue(np.all(np.linalg.eigvalsh(result.covariance) > 0))
        assert_allclose(result.covariance @ result.information, np.eye(2), atol=1e-9)


class TestLevenbergMarquardt(unittest.TestCase):
    """Test Levenberg-Marquardt on range and exponential fitting problems."""

    def setUp(self):
        self.anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        self.true_pos = np.array([7.0, 2.0])

        def h(x):
            return np.linalg.norm(self.anchors - x, axis=1)

        def jacobian(x):
            diff = x - self.anchors
            ranges = np.linalg.norm(diff, axis=1, keepdims=True)
            return diff / np.maximum(ranges, 1e-10)

        self.h = h
        self.jacobian = jacobian
        self.y_clean = h(self.true_pos)

    def test_exact_measurements_convergence(self):
        """LM converges to the true position with exact measurements."""
        result = levenberg_marquardt(
            self.h, self.jacobian, self.y_clean, np.array([5.0, 5.0])
        )

        assert_allclose(result.x, self.true_pos, atol=1e-6)
        self.assertTrue(result.converged)

    def test_far_initial_guess(self):
        """LM converges from an initial guess outside the anchor square."""
        result = levenberg_marquardt(
            self.h, self.jacobian, self.y_clean, np.array([15.0, 15.0])
        )

        assert_allclose(result.x, self.true_pos, atol=1e-5)

    def test_exponential_decay_fit(self):
        """LM fits y = a·exp(-b·t)."""
        t = np.linspace(0.0, 4.0, 20)
        a_true, b_true = 2.5, 0.8
        y = a_true * np.exp(-b_true * t)

        def h(x):
            return x[0] * np.exp(-x[1] * t)

        def jacobian(x):
            e = np.exp(-x[1] * t)
            return np.column_stack([e, -x[0] * t * e])

        result = levenberg_marquardt(h, jacobian, y, np.array([1.0, 0.1]))

        assert_allclose(result.x, [a_true, b_true], atol=1e-6)
        self.assertTrue(result.converged)


class TestWeightedSolutions(unittest.TestCase):
    """Test weights, chi-square and covariance scaling."""

    def setUp(self):
        # Linear model y = A x solved through the nonlinear interface
        self.A = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        self.h = lambda x: self.A @ x
        self.jacobian = lambda x: self.A

    def test_weights_pull_solution_toward_precise_measurements(self):
        """Inconsistent measurements are resolved toward high weights."""
        y = np.array([1.0, 1.0, 3.0])

        low = solve_nonlinear_ls(
            self.h, self.jacobian, y, np.zeros(2), weights=np.array([1.0, 1.0, 1e-6])
        )
        high = solve_nonlinear_ls(
            self.h, self.jacobian, y, np.zeros(2), weights=np.array([1.0, 1.0, 1e6])
        )

        self.assertAlmostEqual(np.sum(low.x), 2.0, places=4)
        self.assertAlmostEqual(np.sum(high.x), 3.0, places=4)

    def test_chi_sq_matches_weighted_residuals(self):
        """chi_sq equals r'Wr at the solution."""
        y = np.array([1.0, 2.0, 2.0])
        w = np.array([4.0, 1.0, 2.0])

        result = solve_nonlinear_ls(self.h, self.jacobian, y, np.zeros(2), weights=w)

        r = y - self.A @ result.x
        self.assertAlmostEqual(result.chi_sq, float(r @ (w * r)), places=10)
        assert_allclose(result.residuals, r, atol=1e-10)

    def test_covariance_scales_with_weights(self):
        """Covariance is the inverse of A'WA."""
        y = np.array([1.0, 2.0, 3.0])
        w = np.array([100.0, 100.0, 100.0])

        result = solve_nonlinear_ls(self.h, self.jacobian, y, np.zeros(2), weights=w)

        expected = np.linalg.inv(self.A.T @ np.diag(w) @ self.A)
        assert_allclose(result.covariance, expected, rtol=1e-10)

    def test_gn_and_lm_agree(self):
        """Both methods solve a well-posed problem to the same point."""
        y = np.array([1.0, 2.0, 3.5])

        gn = solve_nonlinear_ls(self.h, self.jacobian, y, np.zeros(2), method="gn")
        lm = solve_nonlinear_ls(self.h, self.jacobian, y, np.zeros(2), method="lm")

        assert_allclose(gn.x, lm.x, atol=1e-5)


class TestSingularInformation(unittest.TestCase):
    """Test problems whose information matrix is singular."""

    def test_unobservable_direction_gives_no_covariance(self):
        """x0 + x1 only: estimate is returned, covariance is not."""
        h = lambda x: np.array([x[0] + x[1], 2.0 * (x[0] + x[1])])
        jacobian = lambda x: np.array([[1.0, 1.0], [2.0, 2.0]])

        with self.assertWarns(RuntimeWarning):
            result = levenberg_marquardt(h, jacobian, np.array([2.0, 4.0]), np.zeros(2))

        self.assertAlmostEqual(result.x[0] + result.x[1], 2.0, places=6)
        self.assertIsNone(result.covariance)
        self.assertEqual(result.information.shape, (2, 2))

    def test_no_covariance_requested(self):
        """return_covariance=False skips the inversion without warnings."""
        h = lambda x: np.array([x[0] + x[1]])
        jacobian = lambda x: np.array([[1.0, 1.0]])

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = solve_nonlinear_ls(
                h, jacobian, np.array([1.0]), np.zeros(2), return_covariance=False
            )

        self.assertIsNone(result.covariance)


class TestCovarianceFromInformation(unittest.TestCase):
    """Test the Cholesky-based covariance inversion."""

    def test_positive_definite(self):
        information = np.array([[4.0, 1.0], [1.0, 3.0]])

        covariance = covariance_from_information(information)

        assert_allclose(covariance, np.linalg.inv(information))

    def test_singular(self):
        self.assertIsNone(covariance_from_information(np.ones((2, 2))))

    def test_indefinite(self):
        self.assertIsNone(covariance_from_information(np.diag([1.0, -1.0])))

    def test_non_finite(self):
        self.assertIsNone(covariance_from_information(np.diag([1.0, np.inf])))


class TestInputValidation(unittest.TestCase):
    """Test rejection of malformed problems."""

    def setUp(self):
        self.h = lambda x: x
        self.jacobian = lambda x: np.eye(2)

    def test_unknown_method(self):
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(self.h, self.jacobian, np.ones(2), np.zeros(2), method="qr")

    def test_weights_length(self):
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(
                self.h, self.jacobian, np.ones(2), np.zeros(2), weights=np.ones(3)
            )

    def test_negative_weights(self):
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(
                self.h, self.jacobian, np.ones(2), np.zeros(2), weights=np.array([1.0, -1.0])
            )

    def test_non_finite_initial_cost(self):
        with self.assertRaises(np.linalg.LinAlgError):
            solve_nonlinear_ls(lambda x: np.full(2, np.nan), self.jacobian, np.ones(2), np.zeros(2))

    def test_result_type(self):
        result = solve_nonlinear_ls(self.h, self.jacobian, np.ones(2), np.zeros(2))
        self.assertIsInstance(result, NonlinearLSResult)
        assert_allclose(result.x, np.ones(2), atol=1e-8)


if __name__ == "__main__":
    unittest.main()
