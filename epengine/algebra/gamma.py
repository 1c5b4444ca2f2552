"""
epengine/algebra/gamma.py

Positive-valued belief (PositiveBelief) with shape/rate parameters.

Density: x^(shape-1) * exp(-rate*x) / Z, with Z = Gamma(shape) / rate^shape.

Conventions:
- rate = +inf marks a point mass; the point is kept in the shape slot
- shape = 1, rate = 0 is the uniform belief
- shape <= 0 or rate <= 0 is improper
- products add (shape - 1) and rate, ratios subtract them
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from scipy.special import digamma, gammaln

from epengine.algebra.kind import Kind
from epengine.core.errors import (
    AllZeroError,
    DivisionByPointMassError,
    ImproperMessageError,
    InvalidArgumentError,
)


@dataclass(frozen=True)
class Gamma:
    """
    Gamma belief over the positive reals.

    Attributes:
        shape: Shape parameter (the point, for a point mass)
        rate: Rate parameter (+inf for a point mass)
    """
    shape: float = 1.0
    rate: float = 0.0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @staticmethod
    def from_shape_and_rate(shape: float, rate: float) -> "Gamma":
        if math.isinf(rate) and rate > 0:
            return Gamma.point_mass(0.0)
        return Gamma(float(shape), float(rate))

    @staticmethod
    def from_natural(shape_minus1: float, rate: float) -> "Gamma":
        return Gamma.from_shape_and_rate(shape_minus1 + 1.0, rate)

    @staticmethod
    def from_mean_and_variance(mean: float, variance: float) -> "Gamma":
        if variance == 0:
            return Gamma.point_mass(mean)
        rate = mean / variance
        return Gamma(mean * rate, rate)

    @staticmethod
    def point_mass(x: float) -> "Gamma":
        return Gamma(float(x), math.inf)

    @staticmethod
    def uniform() -> "Gamma":
        return Gamma(1.0, 0.0)

    @staticmethod
    def from_derivatives(x: float, dlogp: float, ddlogp: float, force_proper: bool = False) -> "Gamma":
        """
        Gamma whose log-density has the given derivatives at x.

        Args:
            x: Expansion point (> 0)
            dlogp: First derivative of the log-density at x
            ddlogp: Second derivative of the log-density at x
            force_proper: Keep shape - 1 and rate non-negative

        Returns:
            Gamma matching both derivatives (or the closest proper one)
        """
        a = -x * x * ddlogp
        if force_proper and a < 0:
            a = 0.0
        b = a / x - dlogp
        if force_proper and b < 0:
            b = 0.0
            a = x * dlogp
        return Gamma.from_natural(a, b)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def kind(self) -> Kind:
        if self.is_point_mass:
            return Kind.POINT_MASS
        if self.is_uniform:
            return Kind.UNIFORM
        return Kind.DISTRIBUTION

    @property
    def is_point_mass(self) -> bool:
        return math.isinf(self.rate) and self.rate > 0

    @property
    def is_uniform(self) -> bool:
        return self.shape == 1 and self.rate == 0

    @property
    def is_proper(self) -> bool:
        return self.shape > 0 and self.rate > 0

    @property
    def point(self) -> float:
        if not self.is_point_mass:
            raise ValueError(f"{self} is not a point mass")
        return self.shape

    def _require_proper(self) -> None:
        if not self.is_proper:
            raise ImproperMessageError(self)

    def mean(self) -> float:
        if self.is_point_mass:
            return self.shape
        if self.rate == 0:
            return math.inf
        self._require_proper()
        return self.shape / self.rate

    def variance(self) -> float:
        if self.is_point_mass:
            return 0.0
        if self.rate == 0:
            return math.inf
        self._require_proper()
        return self.shape / (self.rate * self.rate)

    def mean_and_variance(self) -> Tuple[float, float]:
        return self.mean(), self.variance()

    def mean_log(self) -> float:
        """E[log x]."""
        if self.is_point_mass:
            return math.log(self.shape) if self.shape > 0 else -math.inf
        if self.rate == 0:
            return math.inf
        self._require_proper()
        return float(digamma(self.shape)) - math.log(self.rate)

    def mean_inverse(self) -> float:
        """E[1/x]."""
        if self.is_point_mass:
            return 1.0 / self.shape if self.shape != 0 else math.inf
        self._require_proper()
        if self.shape <= 1:
            raise InvalidArgumentError(f"Cannot compute E[1/x] for shape <= 1 ({self})")
        return self.rate / (self.shape - 1)

    def mean_power(self, power: float) -> float:
        """E[x^power]."""
        if self.is_point_mass:
            return self.shape ** power
        self._require_proper()
        if self.shape + power <= 0:
            raise InvalidArgumentError(f"Cannot compute E[x^{power}] for shape {self.shape}")
        return math.exp(
            float(gammaln(self.shape + power) - gammaln(self.shape)) - power * math.log(self.rate)
        )

    # ------------------------------------------------------------------
    # Algebra
    # ------------------------------------------------------------------

    def __mul__(self, other: "Gamma") -> "Gamma":
        if self.is_point_mass:
            if other.is_point_mass and other.point != self.point:
                raise AllZeroError(f"Product of different point masses {self} and {other}")
            return self
        if other.is_point_mass:
            return other
        return Gamma(self.shape + other.shape - 1.0, self.rate + other.rate)

    def __truediv__(self, other: "Gamma") -> "Gamma":
        return Gamma.ratio(self, other)

    @staticmethod
    def ratio(numerator: "Gamma", denominator: "Gamma", force_proper: bool = False) -> "Gamma":
        """
        Divide two beliefs in natural-parameter space.

        With force_proper, a ratio with negative (shape - 1) or negative rate
        is replaced by the closest message whose product with the denominator
        keeps the numerator's mean.
        """
        if denominator.is_point_mass:
            if numerator.is_point_mass and numerator.point == denominator.point:
                return Gamma.uniform()
            raise DivisionByPointMassError(f"Cannot divide {numerator} by point mass {denominator}")
        if numerator.is_point_mass:
            return numerator
        shape_m1 = numerator.shape - denominator.shape
        rate = numerator.rate - denominator.rate
        if force_proper and (shape_m1 < 0 or rate < 0):
            shape_m1, rate = proper_shape_and_rate(
                denominator, numerator.mean(), shape_m1, rate
            )
        return Gamma(shape_m1 + 1.0, rate)

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def log_prob(self, x: float) -> float:
        """Log-density at x (unnormalized for improper beliefs)."""
        if self.is_point_mass:
            return 0.0 if x == self.point else -math.inf
        if x < 0:
            return -math.inf
        shape_m1 = self.shape - 1.0
        if x == 0:
            if shape_m1 > 0:
                return -math.inf
            if shape_m1 < 0:
                return math.inf
            return -self.log_normalizer()
        return shape_m1 * math.log(x) - self.rate * x - self.log_normalizer()

    def log_normalizer(self) -> float:
        if not self.is_proper or self.is_point_mass:
            return 0.0
        return float(gammaln(self.shape)) - self.shape * math.log(self.rate)

    def log_average_of(self, that: "Gamma") -> float:
        """log of the integral of the product of the two densities."""
        if self.is_point_mass:
            return that.log_prob(self.point)
        if that.is_point_mass:
            return self.log_prob(that.point)
        product = self * that
        return product.log_normalizer() - self.log_normalizer() - that.log_normalizer()

    def __str__(self) -> str:
        if self.is_point_mass:
            return f"Gamma.point_mass({self.point:g})"
        if self.is_uniform:
            return "Gamma.uniform()"
        return f"Gamma({self.shape:g}, {self.rate:g})"


def proper_shape_and_rate(
    prior: Gamma,
    target_mean: float,
    shape_minus1: float,
    rate: float,
) -> Tuple[float, float]:
    """
    Move a message with negative (shape - 1) or rate back to the boundary.

    The returned message m keeps shape - 1 >= 0 and rate >= 0 and, where
    possible, makes m * prior have mean target_mean.

    Args:
        prior: The belief the message will be multiplied with
        target_mean: Mean the product should have
        shape_minus1: Raw shape - 1 of the message
        rate: Raw rate of the message

    Returns:
        (shape_minus1, rate) of the projected message
    """
    if rate < 0:
        if shape_minus1 > 0:
            rate = (prior.shape + shape_minus1) / target_mean - prior.rate
    elif shape_minus1 < 0:
        shape_minus1 = target_mean * (prior.rate + rate) - prior.shape
    if shape_minus1 < 0 or rate < 0:
        alpha = target_mean * prior.rate - prior.shape
        if alpha > 0:
            # mean increased
            rate = 0.0
            shape_minus1 = alpha
        else:
            shape_minus1 = 0.0
            rate = prior.shape / target_mean - prior.rate
    return shape_minus1, rate


def as_gamma(value) -> Gamma:
    """Accept a Gamma or a plain number (treated as a point mass)."""
    if isinstance(value, Gamma):
        return value
    return Gamma.point_mass(float(value))
