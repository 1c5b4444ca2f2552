"""
epengine/config.py

Per-factor configuration values.

Each operator takes its config as an argument; there is no module-level
mutable state. Defaults match the accuracy/cost tradeoff of each factor.
"""

from __future__ import annotations

from dataclasses import dataclass

from epengine.core.errors import InvalidArgumentError

METHODS = ("quadrature", "laplace")


def _check_node_count(node_count: int) -> None:
    if node_count < 2:
        raise InvalidArgumentError(f"node_count must be at least 2, got {node_count}")


def _check_method(method: str) -> None:
    if method not in METHODS:
        raise InvalidArgumentError(f"Unknown method {method!r}; expected one of {METHODS}")


@dataclass(frozen=True)
class GaussianOpConfig:
    """
    Settings for the Gaussian factor with unknown precision.

    Attributes:
        method: "quadrature" (bracketed log grid) or "laplace" (buffer-driven)
        node_count: Grid size for quadrature
        force_proper: Project messages back to properness
    """
    method: str = "quadrature"
    node_count: int = 20000
    force_proper: bool = True

    def __post_init__(self):
        _check_method(self.method)
        _check_node_count(self.node_count)


@dataclass(frozen=True)
class GammaOpConfig:
    """
    Settings for the Gamma factor with constant shape.

    Attributes:
        method: "quadrature" or "laplace"
        node_count: Grid size for quadrature
        force_proper: Project messages back to properness
    """
    method: str = "quadrature"
    node_count: int = 1_000_000
    force_proper: bool = True

    def __post_init__(self):
        _check_method(self.method)
        _check_node_count(self.node_count)


@dataclass(frozen=True)
class ProductOpConfig:
    """Settings for the Gaussian product factor."""
    node_count: int = 20000
    force_proper: bool = True

    def __post_init__(self):
        _check_node_count(self.node_count)


DEFAULT_GAUSSIAN = GaussianOpConfig()
DEFAULT_GAMMA = GammaOpConfig()
DEFAULT_PRODUCT = ProductOpConfig()
