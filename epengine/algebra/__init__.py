"""Belief algebra: Gaussian and Gamma beliefs, special functions."""

from epengine.algebra.gamma import Gamma, as_gamma, proper_shape_and_rate
from epengine.algebra.gaussian import Gaussian, as_gaussian
from epengine.algebra.kind import Kind
from epengine.algebra.special import (
    LN_SQRT_2PI,
    abs_diff,
    difference_of_exp,
    exp,
    gaussian_log_prob,
    logsumexp,
    t_pdf_ln,
)

__all__ = [
    "Gamma",
    "Gaussian",
    "Kind",
    "LN_SQRT_2PI",
    "abs_diff",
    "as_gamma",
    "as_gaussian",
    "difference_of_exp",
    "exp",
    "gaussian_log_prob",
    "logsumexp",
    "proper_shape_and_rate",
    "t_pdf_ln",
]
