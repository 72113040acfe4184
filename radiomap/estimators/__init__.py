"""
State estimation algorithms used by the fingerprint estimators.

Available estimators:
    - Weighted Nonlinear Least Squares (Gauss-Newton, Levenberg-Marquardt)
"""

from radiomap.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    covariance_from_information,
    gauss_newton,
    levenberg_marquardt,
    solve_nonlinear_ls,
)

__all__ = [
    "NonlinearLSResult",
    "covariance_from_information",
    "gauss_newton",
    "levenberg_marquardt",
    "solve_nonlinear_ls",
]
