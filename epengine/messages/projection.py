"""
epengine/messages/projection.py

Turning integrated moments into outgoing messages.

Two representations are supported:
- marginal moments, divided by the cavity (gaussian_message / gamma_message)
- alpha/beta, the first derivative and negative second derivative of the
  log marginal likelihood with respect to the cavity's natural location,
  which avoids the cancellation in marginal / cavity when the cavity is
  much sharper than the likelihood
"""

from __future__ import annotations

import logging
import math

from epengine.algebra.gamma import Gamma, proper_shape_and_rate
from epengine.algebra.gaussian import Gaussian
from epengine.core.errors import NumericalFailureError

logger = logging.getLogger(__name__)


def gaussian_from_alpha_beta(prior: Gaussian, alpha: float, beta: float, force_proper: bool) -> Gaussian:
    """
    Gaussian message from the score and curvature of log Z at the prior.

    Args:
        prior: Cavity belief
        alpha: d log Z / d mean
        beta: -d^2 log Z / d mean^2
        force_proper: Clamp a negative message precision to zero

    Returns:
        Outgoing message
    """
    if prior.is_point_mass:
        return Gaussian.from_derivatives(prior.point, alpha, -beta, force_proper)
    prec = prior.precision
    tau = prior.mean_times_precision
    if prec == beta:
        if not force_proper:
            raise NumericalFailureError("message precision is infinite")
        weight = 0.0
    else:
        weight = beta / (prec - beta)
        if force_proper and weight < 0:
            logger.debug("negative message precision projected to zero (weight=%g)", weight)
            weight = 0.0
    result_prec = prec * weight
    result_tau = weight * (tau + alpha) + alpha
    if math.isnan(result_prec) or math.isnan(result_tau):
        raise NumericalFailureError("result is nan")
    return Gaussian.from_natural(result_tau, result_prec)


def gamma_from_alpha_beta(prior: Gamma, alpha: float, beta: float, force_proper: bool) -> Gamma:
    """
    Gamma message from the scaled score and curvature of log Z.

    Args:
        prior: Cavity belief (proper)
        alpha: E[x f'(x)/f(x)] under the posterior
        beta: E[x f'/f + x^2 f''/f] - alpha^2 under the posterior
        force_proper: Keep shape - 1 and rate non-negative

    Raises:
        NumericalFailureError: If the implied posterior variance is not positive
    """
    bv = (prior.shape + alpha + beta) / prior.rate
    if bv <= 0:
        raise NumericalFailureError("Quadrature found zero variance")
    rate = -beta / bv
    shape_m1 = (prior.mean() * (alpha - beta) + alpha * alpha / prior.rate) / bv
    if force_proper:
        rmean = (prior.shape + alpha) / prior.rate
        projected = proper_shape_and_rate(prior, rmean, shape_m1, rate)
        if projected != (shape_m1, rate):
            logger.debug("gamma message (%g, %g) projected to %s", shape_m1 + 1, rate, projected)
        shape_m1, rate = projected
    return Gamma(shape_m1 + 1.0, rate)


def gaussian_message(marginal: Gaussian, cavity: Gaussian, force_proper: bool) -> Gaussian:
    """marginal / cavity, projected to properness."""
    result = Gaussian.ratio(marginal, cavity, force_proper)
    if math.isnan(result.precision) or math.isnan(result.mean_times_precision):
        raise NumericalFailureError("result is nan")
    return result


def gamma_message(marginal: Gamma, cavity: Gamma, force_proper: bool) -> Gamma:
    """marginal / cavity, projected to properness."""
    result = Gamma.ratio(marginal, cavity, force_proper)
    if math.isnan(result.rate) or math.isnan(result.shape):
        raise NumericalFailureError("result is nan")
    return result
