"""
epengine/factors/gaussian_op.py

Messages for the factor sample ~ N(mean, 1/precision) with a Gamma precision.

Integrating the precision out leaves, as a function of r = precision,

    f(r) = N(m; 0, v + 1/r) Ga(r; a, b)

where m = E[sample] - E[mean] and v = var(sample) + var(mean). The EP messages
are moments under f. Two strategies are available (GaussianOpConfig.method):
- "quadrature": bracket f in log r, then sum over an even log grid
- "laplace": fit a Gamma buffer q at the mode of f and apply Laplace moment
  corrections; the buffer lives in a RefinementBuffer owned by the edge

Arguments may be beliefs or plain numbers (point masses).
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Tuple

import numpy as np
from scipy.special import gammaln

from epengine.algebra.gamma import Gamma, as_gamma
from epengine.algebra.gaussian import Gaussian, as_gaussian
from epengine.algebra.special import LN_SQRT_2PI, exp, gaussian_log_prob, logsumexp, t_pdf_ln
from epengine.config import DEFAULT_GAUSSIAN, GaussianOpConfig
from epengine.core.errors import (
    ImproperMessageError,
    InvalidArgumentError,
    NumericalFailureError,
)
from epengine.messages.projection import (
    gamma_from_alpha_beta,
    gamma_message,
    gaussian_from_alpha_beta,
    gaussian_message,
)
from epengine.numerics.laplace import MAX_ITER, has_converged, is_greater, laplace_moments, laplace_moments2
from epengine.numerics.quadrature import (
    CUTOFF,
    IntegrationInterval,
    MeanVarianceAccumulator,
    alpha_beta,
    alpha_beta_scaled,
    check_endpoints,
    log_grid,
    relative_weights,
)
from epengine.numerics.roots import find_zeroes, get_real_roots

logger = logging.getLogger(__name__)

# Stand-in for a uniform sample when E[1/precision] is infinite.
_VAGUE_SAMPLE = Gaussian.from_natural(1e-20, 1e-20)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _difference_moments(sample: Gaussian, mean: Gaussian) -> Tuple[float, float]:
    """Mean and variance of sample - mean."""
    mx, vx = sample.mean_and_variance()
    mm, vm = mean.mean_and_variance()
    return mx - mm, vx + vm


def _is_positive(r: float) -> bool:
    return r > 0.0


def _log_likelihood(logx, m2: float, v: float, a: float, b: float):
    if np.isinf(logx):
        return -np.inf
    x = np.exp(logx)
    vx = v + 1 / x
    return a * logx - b * x - 0.5 * np.log(vx) - 0.5 * m2 / vx


def _log_likelihood_ratio(logx, logx0: float, m: float, v: float, a: float, b: float) -> np.ndarray:
    """log f(exp(logx)) - log f(exp(logx0)), vectorised over logx."""
    logx = np.asarray(logx, dtype=np.float64)
    with np.errstate(all="ignore"):
        vx = v + np.exp(-logx)
        vx0 = v + np.exp(-logx0)
        diff = np.exp(logx0) * np.expm1(logx - logx0)
        llr = a * (logx - logx0) - b * diff - 0.5 * np.log(vx / vx0) - 0.5 * m * m * (1 / vx - 1 / vx0)
    return np.where(np.isinf(logx), -np.inf, llr)


def precision_bounds(m: float, v: float, a: float, b: float) -> IntegrationInterval:
    """
    Bracket of log r where f(r) is within CUTOFF nats of its maximum.

    Stationary points of f in r are the positive roots of a cubic, and so are
    the inflection points used to seed Newton's method.

    Args:
        m: Mean of sample - mean
        v: Variance of sample - mean
        a: Shape of the precision belief
        b: Rate of the precision belief

    Returns:
        IntegrationInterval in log r
    """
    v2 = v * v
    m2 = m * m
    coeffs = [-b * v2, a * v2 - 2 * b * v, 0.5 * v - 0.5 * m2 + 2 * a * v - b, 0.5 + a]
    stationary = [math.log(r) for r in get_real_roots(coeffs, _is_positive)]
    v3 = v * v2
    coeffs2 = [-b * v3, -3 * b * v2, -3 * b * v - 0.5 * v2 + 0.5 * m2 * v, -0.5 * v - b - 0.5 * m2]
    inflection = [math.log(r) for r in get_real_roots(coeffs2, _is_positive)]
    if not stationary:
        raise NumericalFailureError(f"no stationary point for m={m}, v={v}, a={a}, b={b}")

    with np.errstate(all="ignore"):
        values = [_log_likelihood(np.float64(lx), m2, v, a, b) for lx in stationary]
        logx0 = stationary[int(np.argmax(values))]

        def func(logx: float) -> float:
            return float(_log_likelihood_ratio(logx, logx0, m, v, a, b)) + CUTOFF

        def deriv(logx: float) -> float:
            x = np.exp(np.float64(logx))
            vx = v * x + 1
            return float(a - b * x + 0.5 * (vx - m2 * x) / (vx * vx))

        zeroes = find_zeroes(func, deriv, stationary, inflection)
    if not zeroes:
        raise NumericalFailureError(f"no integration bounds for m={m}, v={v}, a={a}, b={b}")
    return IntegrationInterval(logx0, min(zeroes), max(zeroes))


def _student_t_sample(sample: Gaussian, mean: Gaussian, precision: Gamma, force_proper: bool) -> Gaussian:
    # log f(x) = -(a + 1/2) log(1 + (x - mean)^2 / (2b))
    y = sample.point - mean.point
    n = 2 * precision.shape + 1
    vt = 2 * precision.rate
    denom = vt + y * y
    dlogf = -n * y / denom
    ddlogf = -n * (vt - y * y) / (denom * denom)
    return Gaussian.from_derivatives(sample.point, dlogf, ddlogf, force_proper)


def _sample_given_precision(mean: Gaussian, precision: float) -> Gaussian:
    """Message to sample for a constant precision."""
    if precision < 0:
        raise InvalidArgumentError(f"The constant precision given to the Gaussian factor is negative ({precision})")
    if mean.is_point_mass:
        return Gaussian.from_mean_and_precision(mean.point, precision)
    if precision == 0:
        return Gaussian.uniform()
    if math.isinf(precision):
        return mean
    if mean.precision <= -precision:
        raise ImproperMessageError(mean)
    # N(x; mm, mv + 1/prec); also covers a uniform mean
    r = precision / (precision + mean.precision)
    return Gaussian(r * mean.precision, r * mean.mean_times_precision)


def _sample_given_uniform(mean: Gaussian, precision: Gamma) -> Gaussian:
    # for large vx, Z ~ N(mx; mm, vx + vm + E[1/prec])
    if precision.shape <= 1.0:
        raise InvalidArgumentError(
            f"The posterior has infinite variance due to precision distributed as {precision} "
            "(shape <= 1). Try using a different prior for the precision, with shape > 1."
        )
    mm, vm = mean.mean_and_variance()
    return Gaussian.from_mean_and_variance(mm, vm + precision.mean_inverse())


def _precision_given_point(sample: Gaussian, mean: Gaussian, r: float, force_proper: bool) -> Gamma:
    """Message to a precision that is (nearly) a point mass at r, from derivatives of log f."""
    ym, yv = _difference_moments(sample, mean)
    if math.isinf(yv):
        return Gamma.uniform()
    ym2 = ym * ym
    v = 1 / r
    v2 = v * v
    denom = 1 / (yv + v)
    denom2 = denom * denom
    dlogf = (-0.5 * denom + 0.5 * ym2 * denom2) * (-v2)
    ddlogf = dlogf * (-2 * v) + (0.5 - ym2 * denom) * denom2 * v2 * v2
    return Gamma.from_derivatives(r, dlogf, ddlogf, force_proper)


def _log_average_factor_given_precision(sample: Gaussian, mean: Gaussian, precision: float) -> float:
    if precision < 0:
        raise InvalidArgumentError(f"The constant precision given to the Gaussian factor is negative ({precision})")
    if math.isinf(precision):
        return sample.log_average_of(mean)
    variance = 1.0 / precision if precision > 0 else math.inf
    mx, vx = sample.mean_and_variance()
    mm, vm = mean.mean_and_variance()
    return gaussian_log_prob(mx, mm, vx + vm + variance)


# ----------------------------------------------------------------------
# Laplace buffer
# ----------------------------------------------------------------------

def dlogfs(x: float, m: float, v: float) -> List[float]:
    """First four derivatives of log f(x) = -0.5 log(v + 1/x) - 0.5 m^2/(v + 1/x)."""
    if math.isinf(v):
        return [0.0, 0.0, 0.0, 0.0]
    m2 = m * m
    x2 = x * x
    x3 = x * x2
    x4 = x * x3
    p = 1 / (v + 1 / x)
    p2 = p * p
    p3 = p * p2
    dlogf1 = -0.5 * p + 0.5 * m2 * p2
    dlogf = dlogf1 * (-1 / x2)
    ddlogf1 = 0.5 * p2 - m2 * p3
    ddlogf = dlogf1 * 2 / x3 + ddlogf1 / x4
    dddlogf1 = -p3 + 3 * m2 * p * p3
    dddlogf = dlogf1 * (-6) / x4 + ddlogf1 * (-6) / (x * x4) + dddlogf1 * (-1) / (x2 * x4)
    d4logf1 = 3 * p * p3 - 12 * m2 * p2 * p3
    d4logf = dlogf1 * 24 / (x2 * x3) + ddlogf1 * 36 / (x3 * x3) + dddlogf1 * 12 / (x4 * x3) + d4logf1 / (x4 * x4)
    return [dlogf, ddlogf, dddlogf, d4logf]


def xdlogfs(x: float, m: float, v: float) -> List[float]:
    """dlogfs with the k-th derivative multiplied by x^k."""
    if math.isinf(v):
        return [0.0, 0.0, 0.0, 0.0]
    m2 = m * m
    if x * v > 1:
        x2 = x * x
        x3 = x * x2
        x4 = x * x3
        p = 1 / (v + 1 / x)
        p2 = p * p
        p3 = p * p2
        dlogf1 = -0.5 * p + 0.5 * m2 * p2
        ddlogf1 = 0.5 * p2 - m2 * p3
        dddlogf1 = -p3 + 3 * m2 * p * p3
        d4logf1 = 3 * p * p3 - 12 * m2 * p2 * p3
        xdlogf = dlogf1 * (-1 / x)
        xxddlogf = dlogf1 * 2 / x + ddlogf1 / x2
        xxxdddlogf = dlogf1 * (-6) / x + ddlogf1 * (-6) / x2 + dddlogf1 * (-1) / x3
        x4d4logf = dlogf1 * 24 / x + ddlogf1 * 36 / x2 + dddlogf1 * 12 / x3 + d4logf1 / x4
    else:
        # x is small
        p = 1 / (v * x + 1)
        p2 = p * p
        p3 = p * p2
        ixdlogf1 = -0.5 * p + 0.5 * m2 * p2 * x
        ix2ddlogf1 = 0.5 * p2 - m2 * p3 * x
        ix3dddlogf1 = -p3 + 3 * m2 * p * p3 * x
        ix4d4logf1 = 3 * p * p3 - 12 * m2 * p2 * p3 * x
        xdlogf = -ixdlogf1
        xxddlogf = ixdlogf1 * 2 + ix2ddlogf1
        xxxdddlogf = ixdlogf1 * (-6) + ix2ddlogf1 * (-6) + ix3dddlogf1 * (-1)
        x4d4logf = ixdlogf1 * 24 + ix2ddlogf1 * 36 + ix3dddlogf1 * 12 + ix4d4logf1
    return [xdlogf, xxddlogf, xxxdddlogf, x4d4logf]


def _log_z(x: float, m2: float, v: float, a: float, b: float) -> float:
    with np.errstate(all="ignore"):
        x = np.float64(x)
        logz = -0.5 * np.log(1 + 1 / x / v) - 0.5 * m2 / (v + 1 / x) + a * np.log(x) - b * x
    return -math.inf if np.isnan(logz) else float(logz)


def _q_reinitialize(m: float, v: float, a: float, b: float, x: float) -> float:
    # f can have two local optima; jump to the better one
    m2 = m * m
    init0 = (a + 0.5) / b
    init1 = (a + 0.5) / (b + 0.5 * (m2 + v))
    if v > m2:
        c = 0.5 / v * (m2 / v - 1)
        init1 = (a + math.sqrt(a * a - 4 * b * c)) / (2 * b)
    logz0 = _log_z(init0, m2, v, a, b)
    logz1 = _log_z(init1, m2, v, a, b)
    logz = _log_z(x, m2, v, a, b)
    if is_greater(logz0, max(logz1, logz)):
        logger.debug("q reinitialized from %g to %g", x, init0)
        return init0
    if is_greater(logz1, logz):
        logger.debug("q reinitialized from %g to %g", x, init1)
        return init1
    return x


def q_init() -> Gamma:
    return Gamma.uniform()


def q_update(sample, mean, precision, q) -> Gamma:
    """
    Fit the Laplace buffer at the mode of f(r) Ga(r; a, b).

    The mode is found by repeatedly maximizing a closed-form lower bound of
    log f, which never decreases the objective.

    Args:
        sample: Belief about the sample
        mean: Belief about the mean
        precision: Belief about the precision
        q: Previous buffer value (its mean is the starting point)

    Returns:
        Gamma with the mode and curvature of the integrand
    """
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    q = as_gamma(q)
    if precision.is_point_mass or sample.is_uniform or mean.is_uniform:
        return precision
    if not precision.is_proper:
        raise ImproperMessageError(precision)
    m, v = _difference_moments(sample, mean)
    if math.isinf(v):
        return precision
    m2 = m * m
    a = precision.shape
    b = precision.rate
    if q.is_uniform:
        x = 0.0
    else:
        x = q.mean()
        if math.isinf(x):
            x = (a + math.sqrt(a * a + 2 * b / v)) / (2 * b)

    with np.errstate(all="ignore"):
        for it in range(MAX_ITER):
            old_x = x
            log_slope = a
            slope = -b
            denom = v * x + 1
            if v * x < 1:
                # 1/(v+1/x) <= 1/(v+1/x0) + (x-x0)/(v*x0+1)^2
                slope += -0.5 * m2 / (denom * denom)
                # log(v*x+1) <= log(v*x0+1) + (x-x0)*v/(v*x0+1)
                log_slope += 0.5
                slope += -0.5 * v / denom
                x = -log_slope / slope
            else:
                # log(v+1/x) <= log(v+1/x0) + (1/x - 1/x0)/(v + 1/x0)
                inv_slope = -0.5 * x / denom
                x2 = x * x
                d = dlogfs(x, m, v)
                c1 = 0.5 * x * x2 * (d[1] - a / x2)
                c2 = (d[0] + a / x - b) + c1 / x2
                if c1 < 0 and c2 < 0:
                    x = math.sqrt(c1 / c2)
                else:
                    slope += -0.5 * m2 / (denom * denom)
                    c = 0.5 * log_slope / slope
                    d = inv_slope / slope
                    x = float(np.sqrt(c * c + d) - c)
            if x < 0:
                raise NumericalFailureError(f"Laplace mode search went negative (x = {x})")
            if math.isnan(x):
                raise NumericalFailureError("Laplace mode search produced NaN")
            if has_converged(old_x, x):
                x = _q_reinitialize(m, v, a, b, x)
                if has_converged(old_x, x):
                    logger.debug("q converged after %d iterations at %g", it + 1, x)
                    break
            if it == MAX_ITER - 1:
                raise NumericalFailureError("Laplace mode search is not converging")

    xd = xdlogfs(x, m, v)
    shape = a - xd[1]
    rate = b - (xd[0] + xd[1]) / x
    if math.isnan(shape) or math.isnan(rate):
        raise NumericalFailureError("result is nan")
    if shape <= 0 or rate <= 0:
        raise NumericalFailureError(f"Laplace buffer is improper (shape={shape}, rate={rate})")
    return Gamma(shape, rate)


def _fresh_q(sample: Gaussian, mean: Gaussian, precision: Gamma, q: Optional[Gamma]) -> Gamma:
    if q is None or q.is_uniform:
        return q_update(sample, mean, precision, q_init())
    return q


# ----------------------------------------------------------------------
# EP messages
# ----------------------------------------------------------------------

def sample_average_conditional(
    sample,
    mean,
    precision,
    config: GaussianOpConfig = DEFAULT_GAUSSIAN,
    q: Optional[Gamma] = None,
) -> Gaussian:
    """
    EP message to sample.

    Args:
        sample: Incoming belief about the sample (or a number)
        mean: Incoming belief about the mean (or a number)
        precision: Incoming belief about the precision (or a number)
        config: Method and quadrature settings
        q: Laplace buffer (method "laplace"); fitted on the fly when missing

    Returns:
        Outgoing Gaussian message
    """
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    if precision.is_point_mass:
        return _sample_given_precision(mean, precision.point)
    if sample.is_point_mass and mean.is_point_mass:
        if precision.is_uniform:
            return Gaussian.uniform()
        if not precision.is_proper:
            raise ImproperMessageError(precision)
        return _student_t_sample(sample, mean, precision, config.force_proper)
    if config.method == "laplace":
        if precision.is_uniform:
            return Gaussian.uniform()
        if not precision.is_proper:
            raise ImproperMessageError(precision)
        return _laplace_sample(sample, mean, precision, _fresh_q(sample, mean, precision, q), config.force_proper)
    return _quadrature_sample(sample, mean, precision, config)


def mean_average_conditional(
    sample,
    mean,
    precision,
    config: GaussianOpConfig = DEFAULT_GAUSSIAN,
    q: Optional[Gamma] = None,
) -> Gaussian:
    """EP message to mean (the factor is symmetric in sample and mean)."""
    return sample_average_conditional(mean, sample, precision, config, q)


def _quadrature_sample(sample: Gaussian, mean: Gaussian, precision: Gamma, config: GaussianOpConfig) -> Gaussian:
    force_proper = config.force_proper
    if sample.is_uniform and precision.shape <= 1.0:
        sample = _VAGUE_SAMPLE
    if sample.is_uniform:
        return _sample_given_uniform(mean, precision)
    if mean.is_uniform or precision.is_uniform:
        return Gaussian.uniform()
    if not precision.is_proper:
        raise ImproperMessageError(precision)

    mx, vx = sample.mean_and_variance()
    mm, vm = mean.mean_and_variance()
    m = mx - mm
    v = vx + vm
    if math.isinf(v):
        return Gaussian.uniform()
    a = precision.shape
    b = precision.rate
    interval = precision_bounds(m, v, a, b)
    if interval.is_degenerate:
        return _sample_given_precision(mean, exp(interval.mode))
    logr, _ = log_grid(interval, config.node_count)
    diff = _log_likelihood_ratio(logr, interval.mode, m, v, a, b)

    with np.errstate(all="ignore"):
        if vx < 1 and mean.precision > 0:
            # differentiate log Z with respect to the sample mean directly
            check_endpoints(diff)
            weights = relative_weights(diff)
            if weights is None:
                # likelihood is sharper than the grid
                return _sample_given_precision(mean, exp(interval.mode))
            ivr = 1 / (v + np.exp(-logr))
            dlogf = -m * ivr
            ddlogf = dlogf * dlogf - ivr
            alpha, beta = alpha_beta(weights, dlogf, ddlogf)
            return gaussian_from_alpha_beta(sample, alpha, beta, force_proper)

        check_endpoints(diff, lower_limit=-CUTOFF - 1)
        weights = relative_weights(diff)
        if weights is None:
            raise NumericalFailureError("overflow")
        prec = np.exp(logr)
        # valid for a uniform sample as well (sample.precision == 0)
        if mean.is_point_mass:
            new_var = 1.0 / (prec + sample.precision)
            new_mean = new_var * (prec * mean.point + sample.mean_times_precision)
        else:
            r = prec / (prec + mean.precision)
            new_var = 1.0 / (r * mean.precision + sample.precision)
            new_mean = new_var * (r * mean.mean_times_precision + sample.mean_times_precision)
        marginal = MeanVarianceAccumulator().add(new_mean, weights, new_var).to_gaussian()
    return gaussian_message(marginal, sample, force_proper)


def _laplace_sample(sample: Gaussian, mean: Gaussian, precision: Gamma, q: Gamma, force_proper: bool) -> Gaussian:
    if mean.is_uniform or sample.is_point_mass:
        return Gaussian.uniform()
    if q.is_point_mass:
        raise NumericalFailureError(f"Laplace buffer is a point mass ({q})")
    mm, vm = mean.mean_and_variance()
    if sample.is_uniform:
        if precision.shape > 1.0:
            return Gaussian.from_mean_and_variance(mm, vm + precision.mean_inverse())
        sample = _VAGUE_SAMPLE
    mx, vx = sample.mean_and_variance()
    m = mx - mm
    v = vx + vm
    x = q.shape / q.rate
    dlogf = dlogfs(x, m, v)
    if mean.is_point_mass:
        denom = 1 + x * v
        denom2 = denom * denom
        y = sample * mean
        my, vy = y.mean_and_variance()
        g = [1 / denom, -v / denom2, 2 * v * v / (denom2 * denom), -6 * v * v * v / (denom2 * denom2)]
        edenom, vdenom = laplace_moments(q, g, dlogf)
        sample_mean = mx * edenom + my * (1 - edenom)
        diff = mx - my
        sample_var = vx * edenom + vy * (1 - edenom) + diff * diff * vdenom
    else:
        sprec = sample.precision
        mprec = mean.precision
        yprec = sprec + mprec
        ymprec = sample.mean_times_precision + mean.mean_times_precision
        denom = sprec * mprec + x * yprec
        denom2 = denom * denom
        g = [1 / denom, -yprec / denom2, 2 * yprec * yprec / (denom2 * denom), -6 * yprec ** 3 / (denom2 * denom2)]
        edenom, vdenom = laplace_moments(q, g, dlogf)
        sample_mean = sample.mean_times_precision * mprec * edenom + ymprec / yprec * (1 - sprec * mprec * edenom)
        diff = sample.mean_times_precision * mprec - sprec * mprec * ymprec / yprec
        sample_var = mprec * edenom + (1 - sprec * mprec * edenom) / yprec + diff * diff * vdenom
    marginal = Gaussian.from_mean_and_variance(sample_mean, sample_var)
    result = gaussian_message(marginal, sample, force_proper)
    if result.precision < -0.001:
        raise NumericalFailureError(f"Laplace message is improper ({result})")
    return result


def precision_average_conditional(
    sample,
    mean,
    precision,
    config: GaussianOpConfig = DEFAULT_GAUSSIAN,
    q: Optional[Gamma] = None,
) -> Gamma:
    """
    EP message to precision.

    Args:
        sample: Incoming belief about the sample (or a number)
        mean: Incoming belief about the mean (or a number)
        precision: Incoming belief about the precision (or a number)
        config: Method and quadrature settings
        q: Laplace buffer (method "laplace"); fitted on the fly when missing

    Returns:
        Outgoing Gamma message
    """
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    force_proper = config.force_proper
    if sample.is_point_mass and mean.is_point_mass:
        diff = sample.point - mean.point
        return Gamma(1.5, 0.5 * diff * diff)
    if precision.is_point_mass:
        return _precision_given_point(sample, mean, precision.point, force_proper)
    if sample.is_uniform or mean.is_uniform:
        return Gamma.uniform()
    if not precision.is_proper:
        raise ImproperMessageError(precision)
    if precision.variance() < 1e-20:
        return _precision_given_point(sample, mean, precision.mean(), force_proper)
    if config.method == "laplace":
        return _laplace_precision(sample, mean, precision, _fresh_q(sample, mean, precision, q), force_proper)
    return _quadrature_precision(sample, mean, precision, config)


def _quadrature_precision(sample: Gaussian, mean: Gaussian, precision: Gamma, config: GaussianOpConfig) -> Gamma:
    force_proper = config.force_proper
    m, v = _difference_moments(sample, mean)
    if math.isinf(v):
        return Gamma.uniform()
    m2 = m * m
    a = precision.shape
    b = precision.rate
    interval = precision_bounds(m, v, a, b)
    if interval.is_degenerate:
        return _precision_given_point(sample, mean, exp(interval.mode), force_proper)
    logr, _ = log_grid(interval, config.node_count)
    diff = _log_likelihood_ratio(logr, interval.mode, m, v, a, b)
    check_endpoints(diff)

    with np.errstate(all="ignore"):
        r = np.exp(logr)
        if m2 - v < b:
            # avoids marginal / cavity, which cancels badly when b is large
            weights = relative_weights(diff)
            if weights is None:
                return _precision_given_point(sample, mean, exp(interval.mode), force_proper)
            ir = 1 / r
            denom = 1 / (v + ir)
            denom2 = denom * denom
            dlogf1 = -0.5 * denom + 0.5 * m2 * denom2
            # r f'/f
            dlogfr = dlogf1 * (-ir)
            dlogf2 = (0.5 - m2 * denom) * denom2
            # r^2 f''/f
            ddfrr = dlogfr * dlogfr + dlogf2 * ir * ir + (2 * ir) * dlogf1
            alpha, beta = alpha_beta_scaled(weights, dlogfr, ddfrr)
            return gamma_from_alpha_beta(precision, alpha, beta, force_proper)

        weights = relative_weights(diff)
        if weights is None:
            raise NumericalFailureError("overflow")
        acc = MeanVarianceAccumulator().add(r, weights)
    acc.check()
    marginal = Gamma.from_mean_and_variance(acc.mean, acc.variance)
    return gamma_message(marginal, precision, force_proper)


def _laplace_precision(sample: Gaussian, mean: Gaussian, precision: Gamma, q: Gamma, force_proper: bool) -> Gamma:
    m, v = _difference_moments(sample, mean)
    x = q.mean()
    xg = [x, x, 0.0, 0.0]
    prec_mean, prec_var = laplace_moments2(q, xg, xdlogfs(x, m, v))
    if math.isnan(prec_mean) or math.isnan(prec_var):
        raise NumericalFailureError("result is nan")
    if prec_mean < 0:
        raise NumericalFailureError(f"Laplace precision mean is negative ({prec_mean})")
    marginal = Gamma.from_mean_and_variance(prec_mean, prec_var)
    return gamma_message(marginal, precision, force_proper)


# ----------------------------------------------------------------------
# Evidence
# ----------------------------------------------------------------------

def log_average_factor(
    sample,
    mean,
    precision,
    config: GaussianOpConfig = DEFAULT_GAUSSIAN,
    q: Optional[Gamma] = None,
) -> float:
    """log of the factor averaged over all three incoming beliefs."""
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    if precision.is_point_mass:
        return _log_average_factor_given_precision(sample, mean, precision.point)
    if precision.is_uniform:
        return math.inf
    if sample.is_point_mass and mean.is_point_mass:
        return t_pdf_ln(sample.point - mean.point, 2 * precision.rate, 2 * precision.shape + 1)
    if sample.is_uniform or mean.is_uniform:
        return 0.0
    if not precision.is_proper:
        raise ImproperMessageError(precision)
    if config.method == "laplace":
        return _laplace_log_average_factor(sample, mean, precision, _fresh_q(sample, mean, precision, q))

    m, v = _difference_moments(sample, mean)
    a = precision.shape
    b = precision.rate
    interval = precision_bounds(m, v, a, b)
    if interval.is_degenerate:
        raise NumericalFailureError("integration interval collapsed onto the mode")
    logr, inc = log_grid(interval, config.node_count)
    with np.errstate(all="ignore"):
        r = np.exp(logr)
        vr = v + 1 / r
        logp = -0.5 * np.log(vr) - 0.5 * m * m / vr + a * logr - b * r
    log_z = float(logsumexp(logp))
    return log_z - LN_SQRT_2PI - float(gammaln(a)) + a * math.log(b) + math.log(inc)


def _laplace_log_average_factor(sample: Gaussian, mean: Gaussian, precision: Gamma, q: Gamma) -> float:
    m, v = _difference_moments(sample, mean)
    x = q.mean()
    vr = v + 1 / x
    logf = -LN_SQRT_2PI - 0.5 * math.log(vr) - 0.5 * m * m / vr
    return logf + precision.log_prob(x) - q.log_prob(x)


def log_evidence_ratio(
    sample,
    mean,
    precision,
    to_sample: Optional[Gaussian] = None,
    config: GaussianOpConfig = DEFAULT_GAUSSIAN,
    q: Optional[Gamma] = None,
) -> float:
    """
    This factor's contribution to the EP log-evidence.

    Args:
        sample: Incoming belief about the sample (or a number)
        mean: Incoming belief about the mean (or a number)
        precision: Incoming belief about the precision (or a number)
        to_sample: Outgoing message to sample; recomputed when missing
        config: Method and quadrature settings
        q: Laplace buffer

    Returns:
        log average factor minus the log normalizer already counted at sample
    """
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    if precision.is_point_mass and not sample.is_point_mass:
        return 0.0
    logz = log_average_factor(sample, mean, precision, config, q)
    if sample.is_point_mass:
        return logz
    if to_sample is None:
        to_sample = sample_average_conditional(sample, mean, precision, config, q)
    return logz - sample.log_average_of(to_sample)


# ----------------------------------------------------------------------
# VMP
# ----------------------------------------------------------------------

def _require_proper(belief) -> None:
    if not belief.is_point_mass and not belief.is_proper:
        raise ImproperMessageError(belief)


def sample_average_logarithm(mean, precision) -> Gaussian:
    """VMP message to sample: N(E[mean], 1/E[precision])."""
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    _require_proper(mean)
    if precision.is_point_mass:
        if precision.point < 0:
            raise InvalidArgumentError(f"precision < 0 ({precision.point})")
        prec = precision.point
    else:
        _require_proper(precision)
        prec = precision.mean()
    return Gaussian.from_mean_and_precision(mean.mean(), prec)


def mean_average_logarithm(sample, precision) -> Gaussian:
    """VMP message to mean."""
    return sample_average_logarithm(sample, precision)


def precision_average_logarithm(sample, mean) -> Gamma:
    """VMP message to precision: Gamma(1.5, E[(sample - mean)^2] / 2)."""
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    if sample.is_uniform:
        raise ImproperMessageError(sample)
    if mean.is_uniform:
        raise ImproperMessageError(mean)
    mx, vx = sample.mean_and_variance()
    mm, vm = mean.mean_and_variance()
    diff = mx - mm
    return Gamma(1.5, 0.5 * (vx + diff * diff + vm))


def _compute_average_log_factor(sample: Gaussian, mean: Gaussian, elog_prec: float, eprec: float) -> float:
    if eprec == 0.0:
        raise InvalidArgumentError("precision == 0")
    if math.isinf(eprec):
        raise InvalidArgumentError("precision is infinite")
    mx, vx = sample.mean_and_variance()
    mm, vm = mean.mean_and_variance()
    diff = mx - mm
    return -LN_SQRT_2PI + 0.5 * (elog_prec - eprec * (diff * diff + vx + vm))


def average_log_factor(sample, mean, precision) -> float:
    """VMP evidence: E[log N(sample; mean, 1/precision)]."""
    sample = as_gaussian(sample)
    mean = as_gaussian(mean)
    precision = as_gamma(precision)
    for belief in (sample, mean, precision):
        _require_proper(belief)
    if sample.is_point_mass and mean.is_point_mass:
        diff = sample.point - mean.point
        if not precision.is_point_mass:
            return -LN_SQRT_2PI + 0.5 * (precision.mean_log() - precision.mean() * diff * diff)
        p = precision.point
        if math.isinf(p):
            return 0.0 if diff == 0.0 else -math.inf
        if p == 0.0:
            return 0.0
        return -LN_SQRT_2PI + 0.5 * (math.log(p) - p * diff * diff)
    if precision.is_point_mass:
        p = precision.point
        if p < 0:
            raise InvalidArgumentError(f"precision < 0 ({p})")
        if math.isinf(p):
            return sample.log_average_of(mean)
        if p == 0.0:
            return 0.0
        return _compute_average_log_factor(sample, mean, math.log(p), p)
    return _compute_average_log_factor(sample, mean, precision.mean_log(), precision.mean())
