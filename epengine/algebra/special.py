"""
epengine/algebra/special.py

Special functions and log-domain helpers shared across the engine.

Scalar helpers evaluate through numpy so that overflow yields IEEE infinities
instead of raising, matching how the bound searches evaluate extreme points.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple, Union

import numpy as np
from scipy.special import gammaln

LN_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)


def logsumexp(x: np.ndarray, axis: Optional[Union[int, Tuple[int, ...]]] = None) -> np.ndarray:
    """Numerically stable logsumexp."""
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return np.array(-np.inf)

    if axis is None:
        m = np.max(x)
        if np.isneginf(m):
            return np.array(-np.inf)
        if np.isposinf(m):
            return np.array(np.inf)
        return m + np.log(np.sum(np.exp(x - m)))

    if isinstance(axis, int):
        axis = (axis,)

    m = np.max(x, axis=axis, keepdims=True)
    # Guard against -inf
    m_safe = np.where(np.isneginf(m), 0.0, m)
    y = np.log(np.sum(np.exp(x - m_safe), axis=axis, keepdims=True)) + m_safe
    y = np.where(np.isneginf(m), -np.inf, y)
    return np.squeeze(y, axis=axis)


def exp(x: float) -> float:
    """exp that overflows to inf."""
    with np.errstate(over="ignore"):
        return float(np.exp(x))


def difference_of_exp(a: float, b: float) -> float:
    """exp(a) - exp(b) computed around the larger exponent."""
    if a == b:
        return 0.0
    with np.errstate(over="ignore", invalid="ignore"):
        if a > b:
            return float(np.exp(a) * -np.expm1(b - a))
        return float(-np.exp(b) * -np.expm1(a - b))


def abs_diff(a: float, b: float, rel: float = 0.0) -> float:
    """Distance between two numbers relative to |a| + rel."""
    if a == b:
        return 0.0
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.abs(a - b) / (np.abs(a) + rel))


def t_pdf_ln(x: float, v: float, n: float) -> float:
    """
    Log density of a Student-t variable.

    Args:
        x: Point of evaluation
        v: Scale parameter (twice the Gamma rate when marginalising a precision)
        n: Degrees of freedom plus one

    Returns:
        log p(x)
    """
    return (
        float(gammaln(n * 0.5) - gammaln((n - 1) * 0.5))
        - 0.5 * math.log(v * math.pi)
        - 0.5 * n * math.log1p(x * x / v)
    )


def gaussian_log_prob(x: float, mean: float, variance: float) -> float:
    """log N(x; mean, variance), with delta semantics for variance 0."""
    if variance == 0.0:
        return 0.0 if x == mean else -math.inf
    if math.isinf(variance):
        return 0.0
    diff = x - mean
    return -LN_SQRT_2PI - 0.5 * math.log(variance) - 0.5 * diff * diff / variance
