"""
Weighted nonlinear least squares using Gauss-Newton and Levenberg-Marquardt.

This module implements the iterative optimizers used by the joint fingerprint
estimator. The problem solved is generic: any measurement model h(x) with an
analytic Jacobian can be plugged in.

Mathematical Formulation:
    Given observations y and measurement model h(x), we seek:
        x̂ = argmin ½‖r(x)‖²_W
    where r(x) = y - h(x) is the residual vector and W = diag(w) holds the
    inverse measurement variances.

    Gauss-Newton update:
        (J'WJ) Δx = J'W r  →  x ← x + Δx

    Levenberg-Marquardt update:
        (J'WJ + μI) Δx = J'W r
    where μ is an adaptive damping parameter.

    At convergence, J'WJ approximates the Fisher information of x, so its
    inverse is the covariance of the estimate and r'Wr is the chi-square
    statistic of the fit.
"""

import warnings
from dataclasses import dataclass
from typing import Callable, Literal, Optional

import numpy as np
from scipy import linalg

# Gradient norm below which the current point is already a stationary point
GRADIENT_TOLERANCE = 1e-14

# Damping above which Levenberg-Marquardt gives up looking for a better step
MAX_DAMPING = 1e10


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated state vector.
        covariance: Covariance matrix inv(J'WJ) (n × n), or None when the
            information matrix is singular or not positive definite.
        information: Information matrix J'WJ at the final estimate (n × n).
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x̂).
        cost: Final cost value ½‖r‖²_W.
        converged: Whether the solver converged within tolerance.
        weights: Measurement weights used for the fit.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    information: np.ndarray
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    weights: Optional[np.ndarray] = None

    @property
    def chi_sq(self) -> float:
        """Weighted sum of squared residuals r'Wr."""
        return 2.0 * self.cost


def gauss_newton(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 20,
    tol: float = 1e-10,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Gauss-Newton solver for weighted nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W by repeatedly solving
    (J'WJ) Δx = J'W r, where J = ∂h/∂x and r = y - h(x).

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,), typically 1/σ².
            If None, uses uniform weights.
        max_iter: Maximum number of iterations.
        tol: Relative convergence tolerance on ‖Δx‖ and on the cost decrease.
        return_covariance: If True, compute covariance at final estimate.

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.

    Example:
        >>> import numpy as np
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]])
        >>> def h(x):
        ...     return np.linalg.norm(anchors - x, axis=1)
        >>> def jac(x):
        ...     diff = x - anchors
        ...     ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        ...     return diff / np.maximum(ranges, 1e-10)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = gauss_newton(h, jac, y, x0=np.array([5.0, 5.0]))
        >>> bool(result.converged)
        True
    """
    return _solve_nonlinear_ls(
        h=h,
        jacobian=jacobian,
        y=y,
        x0=x0,
        weights=weights,
        method="gn",
        max_iter=max_iter,
        tol=tol,
        return_covariance=return_covariance,
    )


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-10,
    mu0: float = 1e-3,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for weighted nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W using the damped update
    (J'WJ + μI) Δx = J'W r.

    LM combines Gauss-Newton (fast near solution) with gradient descent
    (robust far from solution) by adaptively adjusting μ with the gain
    ratio between actual and predicted cost decrease:
        - Small μ: Gauss-Newton behavior (quadratic convergence)
        - Large μ: Gradient descent behavior (global convergence)

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,), typically 1/σ².
        max_iter: Maximum number of iterations.
        tol: Relative convergence tolerance on ‖Δx‖ and on the cost decrease.
        mu0: Initial damping parameter relative to max(diag(J'WJ)).
        return_covariance: If True, compute covariance at final estimate.

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.
    """
    return _solve_nonlinear_ls(
        h=h,
        jacobian=jacobian,
        y=y,
        x0=x0,
        weights=weights,
        method="lm",
        max_iter=max_iter,
        tol=tol,
        mu0=mu0,
        return_covariance=return_covariance,
    )


def covariance_from_information(information: np.ndarray) -> Optional[np.ndarray]:
    """
    Invert an information matrix J'WJ into a covariance matrix.

    The inversion goes through a Cholesky factorization so that matrices
    which are singular or not positive definite are detected instead of
    producing a meaningless (possibly indefinite) covariance.

    Args:
        information: Symmetric information matrix (n × n).

    Returns:
        Symmetric positive definite covariance (n × n), or None if the
        information matrix cannot be inverted as a positive definite matrix.
    """
    information = np.asarray(information, dtype=float)
    if information.size == 0 or not np.all(np.isfinite(information)):
        return None

    # Symmetrize to remove round-off asymmetry from J'WJ
    information = 0.5 * (information + information.T)

    try:
        factor = linalg.cho_factor(information, lower=True)
        covariance = linalg.cho_solve(factor, np.eye(information.shape[0]))
    except (linalg.LinAlgError, ValueError):
        return None

    if not np.all(np.isfinite(covariance)):
        return None

    covariance = 0.5 * (covariance + covariance.T)
    if np.any(np.diag(covariance) <= 0.0):
        return None
    return covariance


def _solve_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray],
    method: str,
    max_iter: int,
    tol: float,
    mu0: float = 1e-3,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """Internal solver implementing both Gauss-Newton and Levenberg-Marquardt."""
    # Input validation
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")
    if tol <= 0:
        raise ValueError(f"tol must be positive, got {tol}")

    m = len(y)
    n = len(x0)
    x = x0.copy()

    if weights is None:
        w = np.ones(m)
    else:
        w = np.asarray(weights, dtype=float)
        if w.ndim != 1 or len(w) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(w < 0) or not np.all(np.isfinite(w)):
            raise ValueError("weights must be finite and non-negative")

    def evaluate(x_eval):
        hx = np.asarray(h(x_eval), dtype=float)
        if hx.shape != (m,):
            raise ValueError(f"h(x) returned shape {hx.shape}, expected ({m},)")
        r_eval = y - hx
        return r_eval, 0.5 * r_eval @ (w * r_eval)

    r, cost = evaluate(x)
    if not np.isfinite(cost):
        raise np.linalg.LinAlgError("Cost is not finite at the initial estimate")

    # LM-specific initialization
    mu = None
    nu = 2.0

    converged = False
    iteration = 0

    for iteration in range(max_iter):
        J = np.asarray(jacobian(x), dtype=float)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        # Weighted normal equations: (J'WJ) Δx = J'Wr
        JtW = J.T * w
        JtWJ = JtW @ J
        JtWr = JtW @ r

        if not (np.all(np.isfinite(JtWJ)) and np.all(np.isfinite(JtWr))):
            raise np.linalg.LinAlgError("Normal equations are not finite")

        # Already at a stationary point
        if np.linalg.norm(JtWr, ord=np.inf) <= GRADIENT_TOLERANCE * max(1.0, cost):
            converged = True
            break

        if method == "gn":
            try:
                delta_x = np.linalg.solve(JtWJ, JtWr)
            except np.linalg.LinAlgError:
                # Singular - use pseudo-inverse
                delta_x = np.linalg.lstsq(JtWJ, JtWr, rcond=None)[0]

            x_new = x + delta_x
            r_new, cost_new = evaluate(x_new)
            if not np.isfinite(cost_new):
                raise np.linalg.LinAlgError("Cost diverged during Gauss-Newton step")

        elif method == "lm":
            if mu is None:
                mu = mu0 * max(np.max(np.diag(JtWJ)), 1e-12)

            accepted = False
            while True:
                JtWJ_damped = JtWJ + mu * np.eye(n)

                try:
                    delta_x = np.linalg.solve(JtWJ_damped, JtWr)
                except np.linalg.LinAlgError:
                    delta_x = np.linalg.lstsq(JtWJ_damped, JtWr, rcond=None)[0]

                x_new = x + delta_x
                r_new, cost_new = evaluate(x_new)

                # Predicted decrease: ½ Δx'(μΔx + J'Wr)
                predicted_decrease = 0.5 * delta_x @ (mu * delta_x + JtWr)
                actual_decrease = cost - cost_new

                if np.isfinite(cost_new) and predicted_decrease > 0:
                    gain_ratio = actual_decrease / predicted_decrease
                else:
                    gain_ratio = -1.0

                if gain_ratio > 0:
                    accepted = True
                    mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                    nu = 2.0
                    break

                mu = mu * nu
                nu = 2.0 * nu
                if mu > MAX_DAMPING:
                    break

            if not accepted:
                # No descent direction left: current point is a minimum
                converged = True
                break

        else:
            raise ValueError(f"Unknown method: {method}. Use 'gn' or 'lm'.")

        step_norm = np.linalg.norm(delta_x)
        cost_decrease = cost - cost_new
        x, r, cost = x_new, r_new, cost_new

        # Check convergence
        if step_norm <= tol * (np.linalg.norm(x) + tol):
            converged = True
            break
        if 0.0 <= cost_decrease <= tol * cost:
            converged = True
            break

    J = np.asarray(jacobian(x), dtype=float)
    information = (J.T * w) @ J

    P = None
    if return_covariance:
        P = covariance_from_information(information)
        if P is None:
            warnings.warn(
                "Information matrix J'WJ is singular or not positive definite; "
                "covariance is unavailable for this solution.",
                RuntimeWarning,
            )

    return NonlinearLSResult(
        x=x,
        covariance=P,
        information=information,
        iterations=iteration + 1,
        residuals=r,
        cost=float(cost),
        converged=converged,
        weights=w,
    )


def solve_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    method: Literal["gn", "lm"] = "lm",
    max_iter: int = 100,
    tol: float = 1e-10,
    return_covariance: bool = True,
    **kwargs,
) -> NonlinearLSResult:
    """
    General weighted nonlinear least squares solver.

    Dispatches to Gauss-Newton or Levenberg-Marquardt.

    Args:
        h: Measurement model h(x) returning predicted observations.
        jacobian: Jacobian function J = ∂h/∂x.
        y: Observations (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights for WLS (m,).
        method: "gn" (Gauss-Newton) or "lm" (Levenberg-Marquardt).
        max_iter: Maximum iterations.
        tol: Convergence tolerance.
        return_covariance: If True, compute covariance at solution.
        **kwargs: Additional arguments passed to the solver (e.g., mu0 for LM).

    Returns:
        NonlinearLSResult with solution, covariance, and diagnostics.
    """
    if method == "gn":
        return gauss_newton(
            h=h,
            jacobian=jacobian,
            y=y,
            x0=x0,
            weights=weights,
            max_iter=max_iter,
            tol=tol,
            return_covariance=return_covariance,
        )
    elif method == "lm":
        mu0 = kwargs.get("mu0", 1e-3)
        return levenberg_marquardt(
            h=h,
            jacobian=jacobian,
            y=y,
            x0=x0,
            weights=weights,
            max_iter=max_iter,
            tol=tol,
            mu0=mu0,
            return_covariance=return_covariance,
        )
    else:
        raise ValueError(f"Unknown method: {method}. Use 'gn' or 'lm'.")
