"""
epengine/algebra/gaussian.py

Real-valued belief (RealBelief) in natural parameters.

A Gaussian is stored as (precision, mean_times_precision):
- product of two beliefs adds the pairs, ratio subtracts them
- precision = +inf marks a point mass; the point is kept in mean_times_precision
- precision = 0 and mean_times_precision = 0 is the uniform belief
- precision < 0 (or precision = 0 with a nonzero mean_times_precision) is improper,
  which is legal for messages but not for beliefs that must be integrated
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from epengine.algebra.kind import Kind
from epengine.algebra.special import LN_SQRT_2PI
from epengine.core.errors import AllZeroError, DivisionByPointMassError, ImproperMessageError


@dataclass(frozen=True)
class Gaussian:
    """
    Gaussian belief over the real line.

    Attributes:
        precision: Inverse variance (+inf for a point mass)
        mean_times_precision: Mean times precision (the point, for a point mass)
    """
    precision: float = 0.0
    mean_times_precision: float = 0.0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @staticmethod
    def from_natural(mean_times_precision: float, precision: float) -> "Gaussian":
        return Gaussian(float(precision), float(mean_times_precision))

    @staticmethod
    def from_mean_and_precision(mean: float, precision: float) -> "Gaussian":
        if math.isinf(precision) and precision > 0:
            return Gaussian.point_mass(mean)
        return Gaussian(float(precision), float(precision * mean) if precision != 0 else 0.0)

    @staticmethod
    def from_mean_and_variance(mean: float, variance: float) -> "Gaussian":
        if variance == 0:
            return Gaussian.point_mass(mean)
        if math.isinf(variance):
            return Gaussian.uniform()
        return Gaussian(1.0 / variance, mean / variance)

    @staticmethod
    def point_mass(x: float) -> "Gaussian":
        return Gaussian(math.inf, float(x))

    @staticmethod
    def uniform() -> "Gaussian":
        return Gaussian(0.0, 0.0)

    @staticmethod
    def from_derivatives(x: float, dlogp: float, ddlogp: float, force_proper: bool = False) -> "Gaussian":
        """
        Gaussian whose log-density has the given derivatives at x.

        Args:
            x: Expansion point
            dlogp: First derivative of the log-density at x
            ddlogp: Second derivative of the log-density at x
            force_proper: Clamp a negative precision to zero

        Returns:
            Gaussian with precision -ddlogp and matching slope at x
        """
        prec = -ddlogp
        if force_proper and prec < 0:
            prec = 0.0
        if math.isinf(prec) and prec > 0:
            return Gaussian.point_mass(x)
        return Gaussian.from_natural(prec * x + dlogp, prec)

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
        return math.isinf(self.precision) and self.precision > 0

    @property
    def is_uniform(self) -> bool:
        return self.precision == 0 and self.mean_times_precision == 0

    @property
    def is_proper(self) -> bool:
        return self.precision > 0

    @property
    def point(self) -> float:
        if not self.is_point_mass:
            raise ValueError(f"{self} is not a point mass")
        return self.mean_times_precision

    def mean_and_variance(self) -> Tuple[float, float]:
        """Mean and variance; (0, inf) for the uniform belief."""
        if self.is_point_mass:
            return self.mean_times_precision, 0.0
        if self.is_uniform:
            return 0.0, math.inf
        if not self.is_proper:
            raise ImproperMessageError(self)
        return self.mean_times_precision / self.precision, 1.0 / self.precision

    def mean(self) -> float:
        return self.mean_and_variance()[0]

    def variance(self) -> float:
        return self.mean_and_variance()[1]

    # ------------------------------------------------------------------
    # Algebra
    # ------------------------------------------------------------------

    def __mul__(self, other: "Gaussian") -> "Gaussian":
        if self.is_point_mass:
            if other.is_point_mass and other.point != self.point:
                raise AllZeroError(f"Product of different point masses {self} and {other}")
            return self
        if other.is_point_mass:
            return other
        return Gaussian(
            self.precision + other.precision,
            self.mean_times_precision + other.mean_times_precision,
        )

    def __truediv__(self, other: "Gaussian") -> "Gaussian":
        return Gaussian.ratio(self, other)

    @staticmethod
    def ratio(numerator: "Gaussian", denominator: "Gaussian", force_proper: bool = False) -> "Gaussian":
        """
        Divide two beliefs in natural-parameter space.

        With force_proper, a ratio whose precision would be negative is
        replaced by a zero-precision message whose product with the
        denominator has the numerator's mean.
        """
        if denominator.is_point_mass:
            if numerator.is_point_mass and numerator.point == denominator.point:
                return Gaussian.uniform()
            raise DivisionByPointMassError(f"Cannot divide {numerator} by point mass {denominator}")
        if numerator.is_point_mass:
            return numerator
        if force_proper and numerator.precision < denominator.precision:
            return Gaussian(
                0.0,
                numerator.mean() * denominator.precision - denominator.mean_times_precision,
            )
        return Gaussian(
            numerator.precision - denominator.precision,
            numerator.mean_times_precision - denominator.mean_times_precision,
        )

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def log_prob(self, x: float) -> float:
        """Log-density at x (unnormalized for improper beliefs)."""
        if self.is_point_mass:
            return 0.0 if x == self.point else -math.inf
        prec = self.precision
        tau = self.mean_times_precision
        if self.is_proper:
            return -LN_SQRT_2PI + 0.5 * math.log(prec) - 0.5 * prec * x * x + tau * x - 0.5 * tau * tau / prec
        return tau * x - 0.5 * prec * x * x

    def log_normalizer(self) -> float:
        if not self.is_proper or self.is_point_mass:
            return 0.0
        tau = self.mean_times_precision
        return LN_SQRT_2PI - 0.5 * math.log(self.precision) + 0.5 * tau * tau / self.precision

    def log_average_of(self, that: "Gaussian") -> float:
        """log of the integral of the product of the two densities."""
        if self.is_point_mass:
            return that.log_prob(self.point)
        if that.is_point_mass:
            return self.log_prob(that.point)
        product = self * that
        return product.log_normalizer() - self.log_normalizer() - that.log_normalizer()

    def __str__(self) -> str:
        if self.is_point_mass:
            return f"Gaussian.point_mass({self.point:g})"
        if self.is_uniform:
            return "Gaussian.uniform()"
        if self.is_proper:
            m, v = self.mean_and_variance()
            return f"Gaussian({m:g}, {v:g})"
        return f"Gaussian.from_natural({self.mean_times_precision:g}, {self.precision:g})"


def as_gaussian(value) -> Gaussian:
    """Accept a Gaussian or a plain number (treated as a point mass)."""
    if isinstance(value, Gaussian):
        return value
    return Gaussian.point_mass(float(value))
