"""
epengine/numerics/laplace.py

Laplace moment correction for integrals against a Gamma-shaped buffer.

Given a Gamma q fitted at the mode of p(x) f(x), the moments of g(x) under
the normalized p(x) f(x) are approximated from derivatives of g and log f at
the mean of q, with digamma/trigamma corrections for the skew of the Gamma.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence, Tuple

from scipy.special import digamma, polygamma

from epengine.algebra.gamma import Gamma
from epengine.algebra.special import abs_diff
from epengine.core.errors import NumericalFailureError

logger = logging.getLogger(__name__)

MAX_ITER = 1000
TOLERANCE = 1e-10


def _trigamma(a: float) -> float:
    return float(polygamma(1, a))


def laplace_moments(q: Gamma, g: Sequence[float], dlogf: Sequence[float]) -> Tuple[float, float]:
    """
    Approximate mean and variance of g(x) where x ~ q(x) f(x).

    Args:
        q: Gamma fitted to q(x) f(x) at its mode
        g: [g, g', g'', g'''] at the mean of q (variance needs all four)
        dlogf: [(log f)', (log f)'', (log f)''', (log f)''''] at the mean of q

    Returns:
        (mean, variance); variance is 0 when only three terms of g are given
        and may come out negative, unlike laplace_moments2
    """
    if q.is_point_mass:
        return g[0], 0.0
    a = q.shape
    b = q.rate
    x = a / b
    dg = g[1]
    ddg = g[2]
    ddlogf = dlogf[1]
    dddlogf = dlogf[2]
    dx = dg * x / b
    a1 = -2 * x * ddlogf - x * x * dddlogf
    da = -x * x * ddg + dx * a1
    psi_gap = float(digamma(a)) - math.log(a)
    m = g[0] + psi_gap * da
    if len(g) <= 3:
        return m, 0.0
    dddg = g[3]
    d4logf = dlogf[3]
    db = -dg + da / x
    ddx = (dg + x * ddg) / b * dx - x * dg / (b * b) * db
    a2 = -2 * ddlogf - 4 * x * dddlogf - x * x * d4logf
    dda = (-2 * x * ddg - x * x * dddg) * dx + a2 * dx * dx + a1 * ddx
    v = dg * dx + (_trigamma(a) - 1 / a) * da * da + psi_gap * dda
    # sign unchecked: callers only use v scaled by a squared difference and re-project the marginal
    return m, v


def laplace_moments2(q: Gamma, xg: Sequence[float], xdlogf: Sequence[float]) -> Tuple[float, float]:
    """
    laplace_moments with every k-th derivative pre-multiplied by x^k.

    The scaled form stays finite when x is very large or very small.

    Raises:
        NumericalFailureError: If the corrected variance is negative
    """
    if q.is_point_mass:
        return xg[0], 0.0
    a = q.shape
    xdg = xg[1]
    xxddg = xg[2]
    xxddlogf = xdlogf[1]
    xxxdddlogf = xdlogf[2]
    dxix = xdg / a
    xa1 = -2 * xxddlogf - xxxdddlogf
    da = -xxddg + dxix * xa1
    psi_gap = float(digamma(a)) - math.log(a)
    m = xg[0] + psi_gap * da
    if len(xg) <= 3:
        return m, 0.0
    xxxdddg = xg[3]
    x4d4logf = xdlogf[3]
    xdb = da - xdg
    ddxix = (xdg + xxddg) / a * dxix - xdg / (a * a) * xdb
    x2a2 = -2 * xxddlogf - 4 * xxxdddlogf - x4d4logf
    dda = (-2 * xxddg - xxxdddg) * dxix + x2a2 * dxix * dxix + xa1 * ddxix
    v = xdg * dxix + (_trigamma(a) - 1 / a) * da * da + psi_gap * dda
    if v < 0:
        raise NumericalFailureError(f"Laplace variance is negative ({v}) for q = {q}")
    return m, v


def is_greater(a: float, b: float) -> bool:
    """a > b by more than round-off."""
    return a > b and abs_diff(a, b, 1e-14) > 1e-12


def has_converged(old: float, new: float) -> bool:
    return abs_diff(old, new, TOLERANCE) < TOLERANCE
