"""Numerical engine: root bracketing, grid quadrature, Laplace corrections."""

from epengine.numerics.laplace import has_converged, is_greater, laplace_moments, laplace_moments2
from epengine.numerics.quadrature import (
    CUTOFF,
    ENDPOINT_LIMIT,
    IntegrationInterval,
    MeanVarianceAccumulator,
    alpha_beta,
    alpha_beta_scaled,
    check_endpoints,
    log_grid,
    relative_weights,
)
from epengine.numerics.roots import find_zero_newton, find_zeroes, get_real_roots, get_roots

__all__ = [
    "CUTOFF",
    "ENDPOINT_LIMIT",
    "IntegrationInterval",
    "MeanVarianceAccumulator",
    "alpha_beta",
    "alpha_beta_scaled",
    "check_endpoints",
    "find_zero_newton",
    "find_zeroes",
    "get_real_roots",
    "get_roots",
    "has_converged",
    "is_greater",
    "laplace_moments",
    "laplace_moments2",
    "log_grid",
    "relative_weights",
]
