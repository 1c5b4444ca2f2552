"""
Core module: error taxonomy shared by every component.
"""

from epengine.core.errors import (
    EPEngineError,
    ImproperMessageError,
    InvalidArgumentError,
    NumericalFailureError,
    NotSupportedError,
    AllZeroError,
    DivisionByPointMassError,
)

__all__ = [
    "EPEngineError",
    "ImproperMessageError",
    "InvalidArgumentError",
    "NumericalFailureError",
    "NotSupportedError",
    "AllZeroError",
    "DivisionByPointMassError",
]
