"""
epengine/factors/gamma_op.py

Messages for the factor sample ~ Gamma(shape, rate) with a constant shape.

With q(y) = Ga(ay, by) on the sample and Ga(ar, br) on the rate, integrating
the sample out leaves, in log r,

    log f(r) = (s + ar) log r - (s + ay - 1) log(r + by) - br r

which has a single stationary point and at most one inflection point.
Integrating the rate out gives a function of the same form in log y, so one
bracketing routine (rate_bounds) serves both messages.

Stochastic shapes are not supported under EP.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional

import numpy as np
from scipy.special import gammaln

from epengine.algebra.gamma import Gamma, as_gamma
from epengine.algebra.special import abs_diff, exp, logsumexp
from epengine.config import DEFAULT_GAMMA, GammaOpConfig
from epengine.core.errors import (
    ImproperMessageError,
    InvalidArgumentError,
    NotSupportedError,
    NumericalFailureError,
)
from epengine.messages.projection import gamma_from_alpha_beta, gamma_message
from epengine.numerics.laplace import laplace_moments2
from epengine.numerics.quadrature import (
    CUTOFF,
    IntegrationInterval,
    MeanVarianceAccumulator,
    alpha_beta_scaled,
    check_endpoints,
    log_grid,
    relative_weights,
)

logger = logging.getLogger(__name__)

STOCHASTIC_SHAPE_MESSAGE = "Expectation Propagation does not support Gamma variables with stochastic shape"

# Newton iterations for each end of the bracket.
BOUNDS_MAX_ITER = 200


def _constant_shape(shape) -> float:
    if isinstance(shape, Gamma):
        if not shape.is_point_mass:
            raise NotSupportedError(STOCHASTIC_SHAPE_MESSAGE)
        return shape.point
    return float(shape)


def add_shapes_minus1(a1: float, a2: float) -> float:
    """a1 + a2 - 1, adding the smaller shape last."""
    if a1 < a2:
        return a1 + (a2 - 1)
    return a2 + (a1 - 1)


# ----------------------------------------------------------------------
# Bracketing
# ----------------------------------------------------------------------

def find_maximum(shape1: float, shape2: float, offset: float, slope: float) -> float:
    """
    Maximizer of shape1 log r - shape2 log(r + offset) - slope r over r > 0.

    Setting the derivative to zero gives the quadratic
    -slope r^2 + (shape1 - shape2 - slope offset) r + shape1 offset = 0.

    Returns:
        The positive root (inf when the function increases without bound)
    """
    a = -slope
    b = shape1 - shape2 - offset * slope
    c = shape1 * offset
    if a == 0:
        if b >= 0:
            return math.inf
        return -c / b
    if b == 0:
        return -math.sqrt(-a * c) / a
    numer = (-b - math.copysign(math.sqrt(b * b - 4 * a * c), b)) / 2
    r0 = numer / a
    if r0 < 0:
        # a < 0 and c > 0, so the other root is positive
        r0 = c / numer
    # polish with one Newton step in log r
    p = r0 / (r0 + offset)
    df = shape1 - shape2 * p - slope * r0
    if abs(df) > 1:
        ddf = shape2 * p * (p - 1) - slope * r0
        r0 *= exp(-df / ddf)
    if math.isnan(r0):
        raise NumericalFailureError("result is NaN")
    return r0


def _log_ratio(logx, log_mode: float, shape1: float, shape2: float, offset: float, slope: float) -> np.ndarray:
    """log f(exp(logx)) - log f(exp(log_mode)), vectorised over logx."""
    logx = np.asarray(logx, dtype=np.float64)
    with np.errstate(all="ignore"):
        x = np.exp(logx)
        r = np.exp(log_mode)
        return (
            shape1 * (logx - log_mode)
            - slope * (x - r)
            - shape2 * (np.log(x + offset) - np.log(r + offset))
        )


def rate_bounds(sample: Gamma, shape: float, rate: Gamma) -> IntegrationInterval:
    """
    Bracket of log r where f(r) is within CUTOFF nats of its maximum.

    The upper end is found by Newton's method started at the inflection
    point (or just above the mode when there is none); the lower end by
    Newton's method in log r started just below the mode. Each end is then
    nudged outwards until it lies strictly beyond the cutoff.

    Args:
        sample: Belief about the sample (supplies ay, by)
        shape: Constant shape s
        rate: Belief about the rate (supplies ar, br)

    Returns:
        IntegrationInterval in log r
    """
    if sample.rate < 0:
        raise InvalidArgumentError(f"sample.rate < 0 ({sample.rate})")
    if rate.rate < 0:
        raise InvalidArgumentError(f"rate.rate < 0 ({rate.rate})")
    if shape < 0:
        raise InvalidArgumentError(f"shape < 0 ({shape})")
    if rate.shape < 0:
        raise InvalidArgumentError(f"rate.shape < 0 ({rate.shape})")
    # integrating in log r turns (s + ar - 1) into s + ar
    shape1 = shape + rate.shape
    shape2 = add_shapes_minus1(shape, sample.shape)
    y_rate = sample.rate
    r_rate = rate.rate
    r = find_maximum(shape1, shape2, y_rate, r_rate)
    if not 0 < r < math.inf:
        raise NumericalFailureError(f"integrand has no interior maximum (r = {r})")

    with np.errstate(all="ignore"):
        r = np.float64(r)

        def gap(x):
            return (
                shape1 * np.log(x / r)
                - shape2 * np.log((x + y_rate) / (r + y_rate))
                - (x - r) * r_rate
                + CUTOFF
            )

        has_inflection = shape2 > shape1
        if has_inflection:
            # -shape1 (r + by)^2 + shape2 r^2 = 0
            qa = shape2 - shape1
            qb = -shape1 * 2 * y_rate
            qc = -shape1 * y_rate * y_rate
            rmax = np.float64((-qb - np.sign(qb) * math.sqrt(qb * qb - 4 * qa * qc)) / (2 * qa))
            if rmax <= r:
                raise NumericalFailureError("inflection point is less than the stationary point")
        else:
            rmax = r * 1.1
        for _ in range(BOUNDS_MAX_ITER):
            old_rmax = rmax
            df = shape1 / rmax - r_rate - shape2 / (rmax + y_rate)
            rmax = rmax - gap(rmax) / df
            if rmax < r:
                if not has_inflection:
                    raise NumericalFailureError("rmax < r")
                rmax = r * 1.1
            if rmax == r:
                break
            if rmax == old_rmax or abs_diff(rmax, old_rmax) < 1e-15:
                while gap(rmax) >= 0:
                    rmax *= 1 + 2e-16
                break
        if np.isposinf(rmax):
            raise NumericalFailureError("rmax is infinity")

        bound = shape1 * np.log(r) - shape2 * np.log(r + y_rate) - r * r_rate - CUTOFF
        rmin = r * 0.9
        for _ in range(BOUNDS_MAX_ITER):
            old_rmin = rmin
            if rmin == 0:
                rmin = np.exp((bound + shape2 * np.log(y_rate)) / shape1)
            df = shape1 - r_rate * rmin - shape2 * rmin / (rmin + y_rate)
            rmin = rmin * np.exp(-gap(rmin) / df)
            if np.isnan(rmin):
                raise NumericalFailureError("rmin is nan")
            if rmin > r:
                raise NumericalFailureError("rmin > r")
            if rmin == r:
                break
            if rmin == old_rmin or abs_diff(np.log(rmin), np.log(old_rmin), 1e-15) < 1e-15:
                while gap(rmin) >= 0:
                    rmin *= 1 - 2e-16
                break
        if rmin > rmax:
            raise NumericalFailureError(f"Internal: rmin ({rmin}) > rmax ({rmax})")
        interval = IntegrationInterval(float(np.log(r)), float(np.log(rmin)), float(np.log(rmax)))
    logger.debug("rate bounds: r=%g rmin=%g rmax=%g", r, rmin, rmax)
    return interval


def sample_bounds(sample: Gamma, shape: float, rate: Gamma) -> IntegrationInterval:
    """Bracket of log y for the function left after integrating the rate out."""
    if shape < 1:
        raise InvalidArgumentError(f"shape < 1 ({shape})")
    # y^(s-1) / (y + br)^(s+ar) has the same form as f(r) with these arguments
    return rate_bounds(Gamma(rate.shape + 2, rate.rate), shape - 1, sample)


# ----------------------------------------------------------------------
# Closed forms
# ----------------------------------------------------------------------

def _rate_given_sample(x: float, shape: float) -> Gamma:
    return Gamma.from_shape_and_rate(shape + 1, x)


def _sample_given_point_sample(x: float, shape: float, rate: Gamma, force_proper: bool) -> Gamma:
    # log f(x) = (s-1) log x - (s+ar) log(x+br)
    shape2 = shape + rate.shape
    xrr = x + rate.rate
    dlogf = (shape - 1) / x - shape2 / xrr
    ddlogf = -(shape - 1) / (x * x) + shape2 / (xrr * xrr)
    return Gamma.from_derivatives(x, dlogf, ddlogf, force_proper)


def _rate_given_point_rate(sample: Gamma, shape: float, r: float, force_proper: bool) -> Gamma:
    # log f(r) = s log r - (s+ay-1) log(r+by)
    shape2 = add_shapes_minus1(shape, sample.shape)
    v = 1 / r
    v2 = 1 / (r + sample.rate)
    dlogf = shape * v - shape2 * v2
    ddlogf = -shape * v * v + shape2 * v2 * v2
    return Gamma.from_derivatives(r, dlogf, ddlogf, force_proper)


def _log_average_factor_given_point_sample(x: float, shape: float, rate: Gamma) -> float:
    if rate.is_point_mass:
        return Gamma.from_shape_and_rate(shape, rate.point).log_prob(x)
    # Ga(x; s, r) = Ga(r; s+1, x) s / x^2
    return rate.log_average_of(_rate_given_sample(x, shape)) - 2 * math.log(x) + math.log(shape)


# ----------------------------------------------------------------------
# Laplace buffer
# ----------------------------------------------------------------------

def xdlogfs(r: float, shape: float, sample: Gamma) -> List[float]:
    """
    Derivatives of log f(r), the factor with the sample integrated out,
    with the k-th derivative multiplied by r^k.
    """
    if sample.is_point_mass:
        # log f = s log r - y r
        return [shape - sample.point * r, -shape, 2 * shape, -6 * shape]
    p = r / (r + sample.rate)
    p2 = p * p
    shape2 = add_shapes_minus1(sample.shape, shape)
    return [
        shape - shape2 * p,
        -shape + shape2 * p2,
        2 * shape - 2 * shape2 * p * p2,
        -6 * shape + 6 * shape2 * p2 * p2,
    ]


def gamma_from_derivatives2(prior: Gamma, x: float, xdlogf: float, xxddlogf: float) -> Gamma:
    """
    prior times the Gamma matching the (scaled) derivatives of log f at x.

    Raises:
        NumericalFailureError: If the result is improper or NaN
    """
    b = prior.rate - (xdlogf + xxddlogf) / x
    a = prior.shape - xxddlogf
    if a <= 0:
        a = b * prior.shape / (prior.rate - xdlogf / x)
    if math.isnan(a) or math.isnan(b):
        raise NumericalFailureError("result is nan")
    if a <= 0 or b <= 0:
        raise NumericalFailureError(f"Laplace buffer is improper (shape={a}, rate={b})")
    return Gamma(a, b)


def q_init() -> Gamma:
    return Gamma.uniform()


def q_update(sample, shape, rate, q: Optional[Gamma] = None) -> Gamma:
    """
    Fit the Laplace buffer over the rate.

    The mode of f(r) Ga(r; ar, br) is available in closed form, so the
    previous buffer value is not needed; it is accepted so the function can
    drive a RefinementBuffer.

    Args:
        sample: Belief about the sample
        shape: Constant shape
        rate: Belief about the rate (proper)
        q: Previous buffer value (ignored)

    Returns:
        Gamma with the mode and curvature of the integrand
    """
    sample = as_gamma(sample)
    shape = _constant_shape(shape)
    rate = as_gamma(rate)
    if rate.is_point_mass:
        return rate
    if not rate.is_proper:
        raise ImproperMessageError(rate)
    if sample.is_point_mass:
        return _rate_given_sample(sample.point, shape) * rate
    shape1 = shape + rate.shape
    shape2 = add_shapes_minus1(shape, sample.shape)
    x = find_maximum(shape1, shape2, sample.rate, rate.rate)
    if x == 0:
        return rate
    xd = xdlogfs(x, shape, sample)
    return gamma_from_derivatives2(rate, x, xd[0], xd[1])


def _fresh_q(sample: Gamma, shape: float, rate: Gamma, q: Optional[Gamma]) -> Gamma:
    if q is None or q.is_uniform:
        return q_update(sample, shape, rate)
    return q


# ----------------------------------------------------------------------
# EP messages
# ----------------------------------------------------------------------

def sample_average_conditional(
    sample,
    shape,
    rate,
    config: GammaOpConfig = DEFAULT_GAMMA,
    q: Optional[Gamma] = None,
) -> Gamma:
    """
    EP message to sample.

    Args:
        sample: Incoming belief about the sample (or a number)
        shape: Constant shape (a number or a point-mass Gamma)
        rate: Incoming belief about the rate (or a number)
        config: Method and quadrature settings
        q: Unused; the Laplace method fits its own buffer over the sample

    Returns:
        Outgoing Gamma message
    """
    sample = as_gamma(sample)
    shape = _constant_shape(shape)
    rate = as_gamma(rate)
    force_proper = config.force_proper
    if rate.is_point_mass:
        return Gamma.from_shape_and_rate(shape, rate.point)
    if rate.rate == 0:
        return Gamma.uniform()
    if sample.is_point_mass:
        # limiting case: match the derivatives of the factor at the point
        return _sample_given_point_sample(sample.point, shape, rate, force_proper)
    if config.method == "laplace":
        return _laplace_sample(sample, shape, rate, force_proper)
    return _quadrature_sample(sample, shape, rate, config)


def _quadrature_sample(sample: Gamma, shape: float, rate: Gamma, config: GammaOpConfig) -> Gamma:
    force_proper = config.force_proper
    if sample.rate == 0:
        # integrating the sample out leaves r^(1-ay) times the rate belief
        shape2 = add_shapes_minus1(shape, sample.shape)
        rate_post = Gamma.from_shape_and_rate(rate.shape + (1 - sample.shape), rate.rate)
        sample_mean = shape2 * rate_post.mean_inverse()
        sample_var = shape2 * (1 + shape2) * rate_post.mean_power(-2) - sample_mean * sample_mean
        return gamma_message(Gamma.from_mean_and_variance(sample_mean, sample_var), sample, force_proper)

    interval = sample_bounds(sample, shape, rate)
    if interval.is_degenerate:
        return _sample_given_point_sample(exp(interval.mode), shape, rate, force_proper)
    shape1 = add_shapes_minus1(shape, sample.shape)
    shape2 = shape + rate.shape
    logy, _ = log_grid(interval, config.node_count)
    diff = _log_ratio(logy, interval.mode, shape1, shape2, rate.rate, sample.rate)
    check_endpoints(diff)
    weights = relative_weights(diff)
    if weights is None:
        return _sample_given_point_sample(exp(interval.mode), shape, rate, force_proper)

    with np.errstate(all="ignore"):
        y = np.exp(logy)
        if shape != 1:
            # score and curvature directly, which stays accurate for a sharp prior
            p = y / (y + rate.rate)
            xdlogf = shape - 1 - shape2 * p
            xxddlogf = -(shape - 1) + shape2 * p * p + xdlogf * xdlogf
            alpha, beta = alpha_beta_scaled(weights, xdlogf, xxddlogf)
            return gamma_from_alpha_beta(sample, alpha, beta, force_proper)
        acc = MeanVarianceAccumulator().add(y, weights)
    acc.check()
    marginal = Gamma.from_mean_and_variance(acc.mean, acc.variance)
    return gamma_message(marginal, sample, force_proper)


def _laplace_sample(sample: Gamma, shape: float, rate: Gamma, force_proper: bool) -> Gamma:
    sample = Gamma(sample.shape, max(sample.rate, 1e-20))
    # int Ga(y; s, r) Ga(r; ar, br) dr = y^(s-1) / (y + br)^(s+ar), the rate form with these arguments
    temp = Gamma(rate.shape + 2, rate.rate)
    qy = q_update(temp, shape - 1, sample)
    y = qy.mean()
    sample_mean, sample_var = laplace_moments2(qy, [y, y, 0.0, 0.0], xdlogfs(y, shape - 1, temp))
    if math.isinf(sample_var):
        raise NumericalFailureError("posterior variance is infinite")
    marginal = Gamma.from_mean_and_variance(sample_mean, sample_var)
    return gamma_message(marginal, sample, force_proper)


def rate_average_conditional(
    sample,
    shape,
    rate,
    config: GammaOpConfig = DEFAULT_GAMMA,
    q: Optional[Gamma] = None,
) -> Gamma:
    """
    EP message to rate.

    Args:
        sample: Incoming belief about the sample (or a number)
        shape: Constant shape (a number or a point-mass Gamma)
        rate: Incoming belief about the rate (or a number)
        config: Method and quadrature settings
        q: Laplace buffer over the rate (method "laplace"); fitted when missing

    Returns:
        Outgoing Gamma message
    """
    sample = as_gamma(sample)
    shape = _constant_shape(shape)
    rate = as_gamma(rate)
    force_proper = config.force_proper
    if sample.is_point_mass:
        return _rate_given_sample(sample.point, shape)
    if sample.is_uniform:
        return Gamma.uniform()
    if sample.rate == 0:
        # integrating the sample out leaves r^(1-ay)
        marginal = Gamma.from_shape_and_rate(rate.shape + 1 - sample.shape, rate.rate)
        return gamma_message(marginal, rate, force_proper)
    if rate.is_point_mass:
        return _rate_given_point_rate(sample, shape, rate.point, force_proper)
    if not rate.is_proper:
        raise ImproperMessageError(rate)
    if config.method == "laplace":
        return _laplace_rate(sample, shape, rate, _fresh_q(sample, shape, rate, q), force_proper)
    return _quadrature_rate(sample, shape, rate, config)


def _quadrature_rate(sample: Gamma, shape: float, rate: Gamma, config: GammaOpConfig) -> Gamma:
    force_proper = config.force_proper
    interval = rate_bounds(sample, shape, rate)
    if interval.is_degenerate:
        return _rate_given_point_rate(sample, shape, exp(interval.mode), force_proper)
    shape1 = shape + rate.shape
    shape2 = add_shapes_minus1(shape, sample.shape)
    logr, _ = log_grid(interval, config.node_count)
    diff = _log_ratio(logr, interval.mode, shape1, shape2, sample.rate, rate.rate)
    check_endpoints(diff)
    weights = relative_weights(diff)
    if weights is None:
        return _rate_given_point_rate(sample, shape, exp(interval.mode), force_proper)
    with np.errstate(all="ignore"):
        r = np.exp(logr)
        p = r / (r + sample.rate)
        xdlogf = shape - shape2 * p
        xxddlogf = -shape + shape2 * p * p + xdlogf * xdlogf
    alpha, beta = alpha_beta_scaled(weights, xdlogf, xxddlogf)
    return gamma_from_alpha_beta(rate, alpha, beta, force_proper)


def _laplace_rate(sample: Gamma, shape: float, rate: Gamma, q: Gamma, force_proper: bool) -> Gamma:
    x = q.mean()
    rate_mean, rate_var = laplace_moments2(q, [x, x, 0.0, 0.0], xdlogfs(x, shape, sample))
    if math.isnan(rate_mean) or math.isnan(rate_var):
        raise NumericalFailureError("result is nan")
    marginal = Gamma.from_mean_and_variance(rate_mean, rate_var)
    return gamma_message(marginal, rate, force_proper)


# ----------------------------------------------------------------------
# Evidence
# ----------------------------------------------------------------------

def log_average_factor(
    sample,
    shape,
    rate,
    config: GammaOpConfig = DEFAULT_GAMMA,
    q: Optional[Gamma] = None,
) -> float:
    """log of the factor averaged over the sample and rate beliefs."""
    sample = as_gamma(sample)
    shape = _constant_shape(shape)
    rate = as_gamma(rate)
    if sample.is_point_mass:
        return _log_average_factor_given_point_sample(sample.point, shape, rate)
    if rate.is_point_mass:
        return sample.log_average_of(Gamma.from_shape_and_rate(shape, rate.point))
    if sample.is_uniform or rate.is_uniform:
        return 0.0
    shape1 = shape + rate.shape
    shape2 = add_shapes_minus1(shape, sample.shape)
    if config.method == "laplace":
        q = _fresh_q(sample, shape, rate, q)
        x = q.mean()
        logf = (
            shape * math.log(x) - shape2 * math.log(x + sample.rate)
            + float(gammaln(shape2) - gammaln(shape)) - sample.log_normalizer()
        )
        return logf + rate.log_prob(x) - q.log_prob(x)

    if find_maximum(shape1, shape2, sample.rate, rate.rate) == 0:
        return math.inf
    interval = rate_bounds(sample, shape, rate)
    if interval.is_degenerate:
        raise NumericalFailureError("integration interval collapsed onto the mode")
    logr, inc = log_grid(interval, config.node_count)
    with np.errstate(all="ignore"):
        r = np.exp(logr)
        logp = shape1 * logr - shape2 * np.log(r + sample.rate) - r * rate.rate
    log_z = float(logsumexp(logp))
    return (
        log_z + math.log(inc)
        + float(gammaln(shape2) - gammaln(shape))
        - rate.log_normalizer() - sample.log_normalizer()
    )


def log_evidence_ratio(
    sample,
    shape,
    rate,
    to_sample: Optional[Gamma] = None,
    config: GammaOpConfig = DEFAULT_GAMMA,
    q: Optional[Gamma] = None,
) -> float:
    """
    This factor's contribution to the EP log-evidence.

    Args:
        sample: Incoming belief about the sample (or a number)
        shape: Constant shape
        rate: Incoming belief about the rate (or a number)
        to_sample: Outgoing message to sample; recomputed when missing
        config: Method and quadrature settings
        q: Laplace buffer over the rate

    Returns:
        log average factor minus the log normalizer already counted at sample
    """
    sample = as_gamma(sample)
    rate = as_gamma(rate)
    if sample.is_point_mass:
        return log_average_factor(sample, shape, rate, config, q)
    if rate.is_point_mass:
        return 0.0
    logz = log_average_factor(sample, shape, rate, config, q)
    if to_sample is None:
        to_sample = sample_average_conditional(sample, shape, rate, config, q)
    return logz - to_sample.log_average_of(sample)


# ----------------------------------------------------------------------
# VMP
# ----------------------------------------------------------------------

def _expected(belief: Gamma) -> float:
    if belief.is_point_mass:
        return belief.point
    if not belief.is_proper:
        raise ImproperMessageError(belief)
    return belief.mean()


def sample_average_logarithm(shape, rate) -> Gamma:
    """VMP message to sample: Gamma(E[shape], E[rate])."""
    return Gamma.from_shape_and_rate(_expected(as_gamma(shape)), _expected(as_gamma(rate)))


def rate_average_logarithm(sample, shape) -> Gamma:
    """VMP message to rate: Gamma(E[shape] + 1, E[sample])."""
    return Gamma.from_shape_and_rate(_expected(as_gamma(shape)) + 1, _expected(as_gamma(sample)))


def average_log_factor(sample, shape, rate) -> float:
    """VMP evidence: E[log Gamma(sample; shape, rate)] for a constant shape."""
    sample = as_gamma(sample)
    shape = _constant_shape(shape)
    rate = as_gamma(rate)
    for belief in (sample, rate):
        if not belief.is_point_mass and not belief.is_proper:
            raise ImproperMessageError(belief)
    if sample.is_point_mass and rate.is_point_mass:
        return Gamma.from_shape_and_rate(shape, rate.point).log_prob(sample.point)
    return (
        (shape - 1) * sample.mean_log()
        + shape * rate.mean_log()
        - rate.mean() * sample.mean()
        - float(gammaln(shape))
    )
