"""
epengine/factors/product_op.py

Messages for the deterministic factor product = a * b with Gaussian beliefs.

Integrating b out leaves a likelihood for a,

    f(a) = N(mp; a mb, vp + a^2 vb)

so every EP message is a one-dimensional integral over a against the belief
N(a; ma, va). The integrand is bracketed with the root finder (its stationary
points are the real roots of a quintic) and summed on an even grid.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np

from epengine.algebra.gaussian import Gaussian, as_gaussian
from epengine.algebra.special import LN_SQRT_2PI, logsumexp
from epengine.config import DEFAULT_PRODUCT, ProductOpConfig
from epengine.core.errors import AllZeroError, NotSupportedError, NumericalFailureError
from epengine.messages.projection import gaussian_from_alpha_beta, gaussian_message
from epengine.numerics.quadrature import (
    CUTOFF,
    IntegrationInterval,
    MeanVarianceAccumulator,
    alpha_beta,
    check_endpoints,
    log_grid,
    relative_weights,
)
from epengine.numerics.roots import find_zeroes, get_real_roots

logger = logging.getLogger(__name__)

VMP_NOT_SUPPORTED_MESSAGE = (
    "Variational Message Passing does not support a Product factor with fixed output and two random inputs."
)

# Product beliefs broader than this carry no information.
MIN_PRODUCT_PRECISION = 1e-100


# ----------------------------------------------------------------------
# Likelihood of a
# ----------------------------------------------------------------------

def _log_likelihood(a: float, mp: float, vp: float, tau_a: float, prec_a: float, mb: float, vb: float) -> float:
    """log f(a) + log N(a; ma, va), up to a constant; -inf where undefined."""
    if math.isinf(a):
        return -math.inf
    with np.errstate(all="ignore"):
        v = vp + vb * np.float64(a) * a
        diff = mp - a * mb
        value = -0.5 * (np.log(v) + diff * diff / v + prec_a * a * a) + tau_a * a
    return -math.inf if np.isnan(value) else float(value)


def _log_likelihood_ratio(a, a0: float, mp: float, vp: float, tau_a: float, prec_a: float, mb: float, vb: float) -> np.ndarray:
    """Log of the integrand at a relative to a0, vectorised over a."""
    a = np.asarray(a, dtype=np.float64)
    with np.errstate(all="ignore"):
        v = vp + vb * a * a
        diff = mp - a * mb
        v0 = vp + vb * a0 * a0
        diff0 = mp - a0 * mb
        llr = (
            -0.5 * (np.log(v / v0) + diff * diff / v - diff0 * diff0 / v0 + prec_a * (a * a - a0 * a0))
            + tau_a * (a - a0)
        )
    return np.where(np.isinf(a), -np.inf, llr)


def _likelihood_derivatives(a, mp: float, vp: float, mb: float, vb: float) -> Tuple[np.ndarray, np.ndarray]:
    """First and second derivatives of log f(a), vectorised over a."""
    a = np.asarray(a, dtype=np.float64)
    with np.errstate(all="ignore"):
        v = vp + a * a * vb
        diffv = (mp - a * mb) / v
        diffv2 = diffv * diffv
        avb = a * vb
        dlogf = -avb / v + mb * diffv + avb * diffv2
        ddlogf = (
            (-vb - mb * mb) / v
            + 2 * avb * avb / (v * v)
            - 4 * avb * mb * diffv / v
            + vb * diffv2
            - 4 * avb * avb * diffv2 / v
        )
    return dlogf, ddlogf


def a_bounds(mp: float, vp: float, tau_a: float, prec_a: float, mb: float, vb: float) -> IntegrationInterval:
    """
    Bracket of a where the integrand is within CUTOFF nats of its maximum.

    Works for a uniform belief on a (prec_a = 0) as well.

    Args:
        mp: Mean of the product belief
        vp: Variance of the product belief
        tau_a: Mean times precision of the belief on a
        prec_a: Precision of the belief on a
        mb: Mean of the belief on b
        vb: Variance of the belief on b

    Returns:
        IntegrationInterval in a
    """
    vb2 = vb * vb
    vp2 = vp * vp
    # numerator of the derivative, a quintic
    coeffs = [
        -prec_a * vb2,
        tau_a * vb2,
        -prec_a * 2 * vp * vb - vb2,
        tau_a * 2 * vp * vb - vb * mb * mp,
        -prec_a * vp2 + vb * mp * mp - vb * vp - vp * mb * mb,
        tau_a * vp2 + vp * mb * mp,
    ]
    stationary = get_real_roots(coeffs)
    # numerator of the second derivative, a sextic
    coeffs2 = []
    for i in range(7):
        c = 0.0
        if i >= 2:
            c += vp * coeffs[i - 2] * (5 - (i - 2))
        if i <= 5:
            c += vb * coeffs[i] * (5 - i - 4)
        coeffs2.append(c)
    inflection = get_real_roots(coeffs2)
    if not stationary:
        raise NumericalFailureError("no stationary point for the product likelihood")

    values = [_log_likelihood(a, mp, vp, tau_a, prec_a, mb, vb) for a in stationary]
    a0 = stationary[int(np.argmax(values))]

    def func(a: float) -> float:
        return float(_log_likelihood_ratio(a, a0, mp, vp, tau_a, prec_a, mb, vb)) + CUTOFF

    def deriv(a: float) -> float:
        if math.isinf(a):
            return -a
        with np.errstate(all="ignore"):
            v = vp + vb * np.float64(a) * a
            diffv = (mp - a * mb) / v
            return float(a * vb * (diffv * diffv - 1 / v) + mb * diffv - (a * prec_a - tau_a))

    zeroes = find_zeroes(func, deriv, stationary, inflection)
    if not zeroes:
        raise NumericalFailureError("no integration bounds for the product likelihood")
    amin = min(zeroes)
    amax = max(zeroes)
    if not amin < amax:
        raise NumericalFailureError(f"empty integration interval [{amin}, {amax}]")
    return IntegrationInterval(a0, amin, amax)


# ----------------------------------------------------------------------
# Closed forms
# ----------------------------------------------------------------------

def _product_given_constant(a: float, b: Gaussian) -> Gaussian:
    """Belief about a * b for a constant a."""
    if b.is_point_mass:
        return Gaussian.point_mass(a * b.point)
    if a == 0:
        return Gaussian.point_mass(0.0)
    return Gaussian.from_natural(b.mean_times_precision / a, b.precision / (a * a))


def _a_given_constant(product: Gaussian, b: float) -> Gaussian:
    """Message to a when b is a constant."""
    if product.is_point_mass:
        if b == 0:
            if product.point != 0:
                raise AllZeroError(f"product = {product.point} cannot equal a * 0")
            return Gaussian.uniform()
        return Gaussian.point_mass(product.point / b)
    # also right for b = 0 and for a uniform product
    return Gaussian(b * b * product.precision, b * product.mean_times_precision)


# ----------------------------------------------------------------------
# EP messages
# ----------------------------------------------------------------------

def product_average_conditional(product, a, b, config: ProductOpConfig = DEFAULT_PRODUCT) -> Gaussian:
    """
    EP message to product.

    Args:
        product: Incoming belief about the product (or a number)
        a: Incoming belief about a (or a number)
        b: Incoming belief about b (or a number)
        config: Quadrature settings

    Returns:
        Outgoing Gaussian message
    """
    product = as_gaussian(product)
    a = as_gaussian(a)
    b = as_gaussian(b)
    if a.is_point_mass:
        return _product_given_constant(a.point, b)
    if b.is_point_mass:
        return _product_given_constant(b.point, a)
    if a.is_uniform or b.is_uniform:
        return Gaussian.uniform()
    if product.is_point_mass:
        raise NotSupportedError("message to an observed product")
    if product.precision < MIN_PRODUCT_PRECISION:
        return product_average_logarithm(a, b)

    force_proper = config.force_proper
    mp, vp = product.mean_and_variance()
    mb, vb = b.mean_and_variance()
    interval = a_bounds(mp, vp, a.mean_times_precision, a.precision, mb, vb)
    if interval.is_degenerate:
        return product_average_conditional(product, Gaussian.point_mass(interval.mode), b, config)
    nodes, _ = log_grid(interval, config.node_count)
    diff = _log_likelihood_ratio(nodes, interval.mode, mp, vp, a.mean_times_precision, a.precision, mb, vb)
    check_endpoints(diff)
    weights = relative_weights(diff)

    with np.errstate(all="ignore"):
        v = vp + nodes * nodes * vb
        if vp < 1:
            # differentiate log Z with respect to the product mean directly
            if weights is None:
                return product_average_conditional(product, Gaussian.point_mass(interval.mode), b, config)
            diffv = (mp - nodes * mb) / v
            alpha, beta = alpha_beta(weights, -diffv, diffv * diffv - 1 / v)
            return gaussian_from_alpha_beta(product, alpha, beta, force_proper)

        if weights is None:
            raise NumericalFailureError("overflow")
        # product given a is Gaussian; accumulate the mixture
        mx = nodes * (mp * nodes * vb + vp * mb) / v
        vx = nodes * nodes * vb * vp / v
        acc = MeanVarianceAccumulator().add(mx, weights, vx)
    acc.check()
    if acc.variance <= 0:
        raise NumericalFailureError("quadrature failed")
    marginal = Gaussian.from_mean_and_variance(acc.mean, acc.variance)
    return gaussian_message(marginal, product, force_proper)


def a_average_conditional(product, a, b, config: ProductOpConfig = DEFAULT_PRODUCT) -> Gaussian:
    """
    EP message to a.

    Args:
        product: Incoming belief about the product (or a number)
        a: Incoming belief about a (or a number)
        b: Incoming belief about b (or a number)
        config: Quadrature settings

    Returns:
        Outgoing Gaussian message
    """
    product = as_gaussian(product)
    a = as_gaussian(a)
    b = as_gaussian(b)
    if b.is_point_mass:
        return _a_given_constant(product, b.point)
    if b.is_uniform or product.precision < MIN_PRODUCT_PRECISION:
        return Gaussian.uniform()

    force_proper = config.force_proper
    mp, vp = product.mean_and_variance()
    mb, vb = b.mean_and_variance()
    if a.is_point_mass:
        # limiting case: match the derivatives of f at the point
        dlogf, ddlogf = _likelihood_derivatives(a.point, mp, vp, mb, vb)
        return Gaussian.from_derivatives(a.point, float(dlogf), float(ddlogf), force_proper)

    interval = a_bounds(mp, vp, a.mean_times_precision, a.precision, mb, vb)
    if interval.is_degenerate:
        return a_average_conditional(product, Gaussian.point_mass(interval.mode), b, config)
    nodes, _ = log_grid(interval, config.node_count)
    diff = _log_likelihood_ratio(nodes, interval.mode, mp, vp, a.mean_times_precision, a.precision, mb, vb)
    check_endpoints(diff)
    weights = relative_weights(diff)

    if a.precision > 1:
        # belief on a is sharp (variance < 1): use the score and curvature of log Z
        if weights is None:
            return a_average_conditional(product, Gaussian.point_mass(interval.mode), b, config)
        dlogf, ddlogf = _likelihood_derivatives(nodes, mp, vp, mb, vb)
        alpha, beta = alpha_beta(weights, dlogf, ddlogf)
        return gaussian_from_alpha_beta(a, alpha, beta, force_proper)

    if weights is None:
        raise NumericalFailureError("overflow")
    acc = MeanVarianceAccumulator().add(nodes, weights)
    acc.check()
    if acc.variance <= 0:
        raise NumericalFailureError("quadrature failed")
    marginal = Gaussian.from_mean_and_variance(acc.mean, acc.variance)
    return gaussian_message(marginal, a, force_proper)


def b_average_conditional(product, a, b, config: ProductOpConfig = DEFAULT_PRODUCT) -> Gaussian:
    """EP message to b (the factor is symmetric in a and b)."""
    return a_average_conditional(product, b, a, config)


# ----------------------------------------------------------------------
# Evidence
# ----------------------------------------------------------------------

def _log_average_factor_given_constant(product: Gaussian, x: Gaussian, c: float) -> float:
    return _product_given_constant(c, x).log_average_of(product)


def log_average_factor(product, a, b, config: ProductOpConfig = DEFAULT_PRODUCT) -> float:
    """log of the factor averaged over all three incoming beliefs."""
    product = as_gaussian(product)
    a = as_gaussian(a)
    b = as_gaussian(b)
    if a.is_point_mass and b.is_point_mass:
        if product.is_point_mass:
            return 0.0 if product.point == a.point * b.point else -math.inf
        return product.log_prob(a.point * b.point)
    if a.is_point_mass:
        return _log_average_factor_given_constant(product, b, a.point)
    if b.is_point_mass:
        return _log_average_factor_given_constant(product, a, b.point)
    if product.is_uniform or a.is_uniform or b.is_uniform:
        return 0.0

    mp, vp = product.mean_and_variance()
    ma, _ = a.mean_and_variance()
    mb, vb = b.mean_and_variance()
    pa = a.precision
    interval = a_bounds(mp, vp, a.mean_times_precision, pa, mb, vb)
    if interval.is_degenerate:
        raise NumericalFailureError("integration interval collapsed onto the mode")
    nodes, inc = log_grid(interval, config.node_count)
    diff = _log_likelihood_ratio(nodes, interval.mode, mp, vp, a.mean_times_precision, pa, mb, vb)

    a0 = interval.mode
    v0 = vp + vb * a0 * a0
    diff0 = mp - a0 * mb
    diffa0 = a0 - ma
    log_z0 = -0.5 * (math.log(v0) + diff0 * diff0 / v0 + diffa0 * diffa0 * pa)
    log_z0 += 0.5 * math.log(pa) - 2 * LN_SQRT_2PI
    return log_z0 + float(logsumexp(diff)) + math.log(inc)


def log_evidence_ratio(
    product,
    a,
    b,
    to_product: Optional[Gaussian] = None,
    config: ProductOpConfig = DEFAULT_PRODUCT,
) -> float:
    """
    This factor's contribution to the EP log-evidence.

    Args:
        product: Incoming belief about the product (or a number)
        a: Incoming belief about a (or a number)
        b: Incoming belief about b (or a number)
        to_product: Outgoing message to product; recomputed when missing
        config: Quadrature settings

    Returns:
        log average factor minus the log normalizer already counted at product
    """
    product = as_gaussian(product)
    a = as_gaussian(a)
    b = as_gaussian(b)
    if product.is_point_mass:
        return log_average_factor(product, a, b, config)
    if a.is_point_mass or b.is_point_mass:
        return 0.0
    if to_product is None:
        to_product = product_average_conditional(product, a, b, config)
    return log_average_factor(product, a, b, config) - to_product.log_average_of(product)


# ----------------------------------------------------------------------
# VMP
# ----------------------------------------------------------------------

def product_average_logarithm(a, b) -> Gaussian:
    """
    VMP message to product.

    Uses N(E[a] E[b], E[b]^2 var(a) + E[a]^2 var(b) + var(a) var(b)) rather
    than the strictly variational point mass.
    """
    a = as_gaussian(a)
    b = as_gaussian(b)
    if a.is_point_mass:
        return _product_given_constant(a.point, b)
    if b.is_point_mass:
        return _product_given_constant(b.point, a)
    if a.is_uniform or b.is_uniform:
        return Gaussian.uniform()
    ma, va = a.mean_and_variance()
    mb, vb = b.mean_and_variance()
    return Gaussian.from_mean_and_variance(ma * mb, mb * mb * va + ma * ma * vb + va * vb)


def a_average_logarithm(product, b) -> Gaussian:
    """VMP message to a."""
    product = as_gaussian(product)
    b = as_gaussian(b)
    if b.is_point_mass:
        return _a_given_constant(product, b.point)
    if product.is_point_mass:
        raise NotSupportedError(VMP_NOT_SUPPORTED_MESSAGE)
    mb, vb = b.mean_and_variance()
    # exact for a point mass b (vb = 0)
    return Gaussian(product.precision * (vb + mb * mb), product.mean_times_precision * mb)


def b_average_logarithm(product, a) -> Gaussian:
    """VMP message to b."""
    return a_average_logarithm(product, a)


def average_log_factor(product, a, b) -> float:
    """VMP evidence of a deterministic factor is accounted for at its output."""
    return 0.0
