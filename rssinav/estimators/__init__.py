"""Generic estimation algorithms."""

from .nonlinear_least_squares import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOLERANCE,
    NonlinearLSResult,
    SolverState,
    gauss_newton,
    levenberg_marquardt,
    normal_matrix_inverse,
    solve_nonlinear_ls,
)

__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_TOLERANCE",
    "NonlinearLSResult",
    "SolverState",
    "gauss_newton",
    "levenberg_marquardt",
    "normal_matrix_inverse",
    "solve_nonlinear_ls",
]
