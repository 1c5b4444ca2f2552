"""
epengine/numerics/quadrature.py

Grid quadrature over a bracketed interval.

Every factor that integrates out a nuisance parameter follows the same recipe:
1. bracket the region where the log-integrand is within CUTOFF nats of its mode
2. lay an evenly spaced grid over the bracket (in log space for scale parameters)
3. weight each node by exp(log f(x) - log f(mode)) so the mode has weight 1
4. reduce the weights into moments or into score/curvature sums

Node loops are vectorised with numpy.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from epengine.algebra.gaussian import Gaussian
from epengine.core.errors import NumericalFailureError

logger = logging.getLogger(__name__)

# Mass below exp(-CUTOFF) of the peak is ignored.
CUTOFF = 50.0
# Endpoints must sit at least this far below the mode.
ENDPOINT_LIMIT = -49.0


@dataclass(frozen=True)
class IntegrationInterval:
    """
    Bracket of a log-integrand.

    Attributes:
        mode: Location of the maximum
        lower: Lower end, where the log-ratio to the mode is -CUTOFF
        upper: Upper end, where the log-ratio to the mode is -CUTOFF
    """
    mode: float
    lower: float
    upper: float

    @property
    def is_degenerate(self) -> bool:
        """True when the integrand is so sharp that the bracket collapsed onto the mode."""
        return self.lower == self.mode or self.upper == self.mode


def log_grid(interval: IntegrationInterval, node_count: int) -> Tuple[np.ndarray, float]:
    """
    Evenly spaced nodes over the interval.

    Args:
        interval: Bracket in the transformed domain
        node_count: Number of nodes (>= 2)

    Returns:
        (nodes, increment)
    """
    inc = (interval.upper - interval.lower) / (node_count - 1)
    nodes = interval.lower + inc * np.arange(node_count, dtype=np.float64)
    logger.debug(
        "grid: mode=%g lower=%g upper=%g nodes=%d",
        interval.mode, interval.lower, interval.upper, node_count,
    )
    return nodes, inc


def check_endpoints(log_ratio: np.ndarray, lower_limit: float = -math.inf) -> None:
    """Raise if either endpoint of a grid is not far enough below the mode."""
    for diff in (log_ratio[0], log_ratio[-1]):
        if diff > ENDPOINT_LIMIT or diff < lower_limit:
            raise NumericalFailureError(f"invalid integration bounds (endpoint log-ratio {diff})")


def relative_weights(log_ratio: np.ndarray) -> Optional[np.ndarray]:
    """
    Exponentiate log-ratios to the mode.

    Returns:
        Weights, or None when a weight overflowed (the integrand is sharper
        than the grid can resolve)
    """
    with np.errstate(over="ignore"):
        weights = np.exp(log_ratio)
    if np.any(np.isposinf(weights)):
        return None
    return weights


def alpha_beta(weights: np.ndarray, dlogf: np.ndarray, ddlogf: np.ndarray) -> Tuple[float, float]:
    """
    Score and negative curvature of log Z from per-node derivatives.

    alpha = E[f'/f], beta = alpha^2 - E[f''/f] under the node weights.
    """
    z = float(np.sum(weights))
    alpha = float(np.dot(weights, dlogf)) / z
    beta = alpha * alpha - float(np.dot(weights, ddlogf)) / z
    return alpha, beta


def alpha_beta_scaled(weights: np.ndarray, xdlogf: np.ndarray, xxddlogf: np.ndarray) -> Tuple[float, float]:
    """
    alpha_beta for a scale parameter, with derivatives pre-multiplied by x and x^2.

    alpha = E[x f'/f], beta = E[x f'/f + x^2 f''/f] - alpha^2.
    """
    z = float(np.sum(weights))
    sum1 = float(np.dot(weights, xdlogf))
    sum2 = float(np.dot(weights, xxddlogf))
    alpha = sum1 / z
    beta = (sum1 + sum2) / z - alpha * alpha
    return alpha, beta


class MeanVarianceAccumulator:
    """
    Weighted mean and variance of scalars, or of a mixture of Gaussians.

    Batches are merged with the pairwise update so that several grids can
    be accumulated into one estimate.
    """

    def __init__(self):
        self.count = 0.0
        self.mean = 0.0
        self.variance = 0.0

    def add(self, values, weights, variances=None) -> "MeanVarianceAccumulator":
        """
        Add weighted points (or weighted Gaussian components).

        Args:
            values: Per-node values (or component means)
            weights: Non-negative per-node weights
            variances: Optional per-node component variances
        """
        values = np.asarray(values, dtype=np.float64)
        weights = np.asarray(weights, dtype=np.float64)
        wsum = float(np.sum(weights))
        if wsum == 0:
            return self
        bmean = float(np.dot(weights, values)) / wsum
        dev = values - bmean
        bvar = float(np.dot(weights, dev * dev)) / wsum
        if variances is not None:
            bvar += float(np.dot(weights, np.asarray(variances, dtype=np.float64))) / wsum

        total = self.count + wsum
        delta = bmean - self.mean
        self.variance = (
            (self.count * self.variance + wsum * bvar) / total
            + self.count * wsum * delta * delta / (total * total)
        )
        self.mean = self.mean + delta * wsum / total
        self.count = total
        return self

    def check(self) -> None:
        if math.isnan(self.count):
            raise NumericalFailureError("Quadrature mass is NaN")
        if self.count == 0:
            raise NumericalFailureError("Quadrature found zero mass")

    def to_gaussian(self) -> Gaussian:
        self.check()
        return Gaussian.from_mean_and_variance(self.mean, self.variance)
