"""
epengine/numerics/roots.py

Root bracketing for unimodal log-integrands.

The integration bounds of every quadrature in the engine are the two points
where the log-likelihood ratio to the mode drops by a fixed number of nats.
Between consecutive stationary points the shifted function is monotone, so a
Newton iteration started where the derivative is largest (an inflection point)
cannot overshoot and needs no tolerance: it stops when the step reverses.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from epengine.core.errors import InvalidArgumentError, NumericalFailureError

logger = logging.getLogger(__name__)

NEWTON_MAX_ITER = 1000
IMAG_TOLERANCE = 1e-15

ScalarFn = Callable[[float], float]


def get_roots(coeffs: Sequence[float]) -> np.ndarray:
    """
    Complex roots of a polynomial via the eigenvalues of its companion matrix.

    Args:
        coeffs: Coefficients from the highest degree monomial down to the constant

    Returns:
        Complex array of roots (empty when the degree is 0)
    """
    coeffs = np.asarray(coeffs, dtype=np.float64)
    nonzero = np.flatnonzero(coeffs)
    if nonzero.size == 0:
        return np.zeros(0, dtype=np.complex128)
    coeffs = coeffs[nonzero[0]:]
    n = coeffs.size - 1
    if n <= 0:
        return np.zeros(0, dtype=np.complex128)

    companion = np.zeros((n, n))
    companion[1:, :-1] = np.eye(n - 1)
    companion[0, :] = -coeffs[1:] / coeffs[0]
    return np.linalg.eigvals(companion).astype(np.complex128)


def get_real_roots(
    coeffs: Sequence[float],
    predicate: Optional[Callable[[float], bool]] = None,
) -> List[float]:
    """Real roots of a polynomial, optionally filtered by a predicate."""
    roots = []
    for root in get_roots(coeffs):
        if abs(root.imag) < IMAG_TOLERANCE:
            x = float(root.real)
            if predicate is None or predicate(x):
                roots.append(x)
    return roots


def find_zero_newton(
    func: ScalarFn,
    deriv: ScalarFn,
    start: float,
    lower: float,
    upper: float,
) -> Tuple[bool, float]:
    """
    Newton's method on a function assumed monotone in [lower, upper].

    Returns:
        (converged, x). On failure x is the last iterate, which callers
        use to decide which bound to clamp to.
    """
    x = start
    prev_delta_positive = False
    for it in range(NEWTON_MAX_ITER):
        if x < lower or x > upper or math.isnan(x):
            return False, x
        fx = func(x)
        dfx = deriv(x)
        with np.errstate(divide="ignore", invalid="ignore"):
            delta = float(np.float64(fx) / np.float64(dfx))
        delta_positive = delta > 0
        if it > 0 and delta_positive != prev_delta_positive:
            # changed direction
            if fx > 0:
                x -= delta
            return True, x
        prev_delta_positive = delta_positive
        old_x = x
        x -= delta
        if x == old_x:
            return True, x
    return False, x


def find_zeroes(
    func: ScalarFn,
    deriv: ScalarFn,
    stationary_points: Sequence[float],
    inflection_points: Sequence[float],
) -> List[float]:
    """
    Find every zero of func, one per sign change between stationary points.

    Args:
        func: Function whose zeroes are sought (defined at +-inf)
        deriv: Derivative of func
        stationary_points: Stationary points of func
        inflection_points: Candidate Newton starting points

    Returns:
        Zeroes in increasing order of the bracketing interval

    Raises:
        InvalidArgumentError: If a zero must be bracketed but no stationary point is finite
        NumericalFailureError: If no zero can be found in a bracket that must contain one
    """
    points = sorted(list(stationary_points) + [-math.inf, math.inf])
    values = [func(x) for x in points]
    zeroes: List[float] = []

    for i in range(1, len(points)):
        prev_greater = values[i - 1] > 0
        this_greater = values[i] > 0
        if prev_greater == this_greater:
            continue
        lower = points[i - 1]
        upper = points[i]

        found = False
        for inflection in inflection_points:
            deriv_start = abs(deriv(inflection))
            valid = deriv_start >= abs(deriv(lower)) and deriv_start >= abs(deriv(upper))
            if not valid:
                continue
            converged, x = find_zero_newton(func, deriv, inflection, lower, upper)
            if converged:
                zeroes.append(x)
                found = True
                break
        if found:
            continue

        # start from the edge of the bracket
        if not math.isinf(lower):
            if not math.isinf(upper):
                start = 0.5 * (lower + upper)
            else:
                delta = max(1.0, abs(lower))
                start = lower
                greater = prev_greater
                while greater == prev_greater:
                    start = lower + delta
                    greater = func(start) > 0
                    delta *= 2
        elif not math.isinf(upper):
            delta = max(1.0, abs(upper))
            start = upper
            greater = this_greater
            while greater == this_greater:
                start = upper - delta
                greater = func(start) > 0
                delta *= 2
        else:
            raise InvalidArgumentError("no finite stationary points")

        converged, x = find_zero_newton(func, deriv, start, lower, upper)
        if converged:
            zeroes.append(x)
        elif x < lower:
            logger.debug("Newton left [%g, %g] below; clamping to lower bound", lower, upper)
            zeroes.append(lower)
        elif x > upper:
            logger.debug("Newton left [%g, %g] above; clamping to upper bound", lower, upper)
            zeroes.append(upper)
        else:
            raise NumericalFailureError(f"could not find a zero between {lower} and {upper}")
    return zeroes
