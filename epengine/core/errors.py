"""
epengine/core/errors.py

Error taxonomy for message computations.

Every failure raised by the engine derives from EPEngineError and from the
builtin exception that best describes it, so callers can catch either the
engine-wide base class or the familiar builtin.

- ImproperMessageError: an input that must be proper is uniform or has negative scale
- InvalidArgumentError: structurally impossible inputs (caller bug)
- NumericalFailureError: NaN, zero mass, negative variance, non-convergence
- NotSupportedError: argument patterns the algorithm does not define
- AllZeroError: the factor assigns zero probability everywhere
- DivisionByPointMassError: ratio with a point-mass denominator
"""

from __future__ import annotations

from typing import Any, Optional


class EPEngineError(Exception):
    """Base class for all engine errors."""


class ImproperMessageError(EPEngineError, ValueError):
    """An incoming belief required to be proper was not."""

    def __init__(self, distribution: Any, message: Optional[str] = None):
        self.distribution = distribution
        if message is None:
            message = f"Improper distribution during inference: {distribution!r}"
        super().__init__(message)


class InvalidArgumentError(EPEngineError, ValueError):
    """Structurally impossible input, such as a negative rate."""


class NumericalFailureError(EPEngineError, ArithmeticError):
    """A numerical routine produced an unusable result."""


class NotSupportedError(EPEngineError, NotImplementedError):
    """The requested message is undefined for this argument pattern."""


class AllZeroError(EPEngineError, ValueError):
    """The factor is zero for every value of the target variable."""

    def __init__(self, message: str = "The model has zero probability"):
        super().__init__(message)


class DivisionByPointMassError(EPEngineError, ZeroDivisionError):
    """A ratio was taken with a point-mass denominator."""
