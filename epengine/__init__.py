"""
EPEngine: numerical engine for non-conjugate message passing

Computes Expectation Propagation and Variational Message Passing messages for
factors with no closed-form update, by bracketing a one-dimensional
log-integrand, integrating it on a grid (or refining a Laplace buffer), and
projecting the resulting moments back to a proper outgoing message.

Key components:
- algebra: Gaussian and Gamma beliefs with natural-parameter arithmetic
- numerics: Root bracketing, grid quadrature and Laplace corrections
- messages: Moment-to-message conversion with properness projection
- runtime: Per-edge refinement buffers
- factors: Gaussian with unknown precision, Gamma from shape and rate, product
- config: Per-factor settings
- core: Error taxonomy
"""

__version__ = "1.0.0"
__author__ = "EPEngine Team"

from epengine.algebra.gamma import Gamma
from epengine.algebra.gaussian import Gaussian
from epengine.algebra.kind import Kind
from epengine.config import (
    DEFAULT_GAMMA,
    DEFAULT_GAUSSIAN,
    DEFAULT_PRODUCT,
    GammaOpConfig,
    GaussianOpConfig,
    ProductOpConfig,
)
from epengine.core.errors import (
    AllZeroError,
    DivisionByPointMassError,
    EPEngineError,
    ImproperMessageError,
    InvalidArgumentError,
    NotSupportedError,
    NumericalFailureError,
)
from epengine.factors import gamma_op, gaussian_op, product_op
from epengine.runtime.buffers import BufferStore, RefinementBuffer

__all__ = [
    # Beliefs
    "Gamma",
    "Gaussian",
    "Kind",
    # Configuration
    "GaussianOpConfig",
    "GammaOpConfig",
    "ProductOpConfig",
    "DEFAULT_GAUSSIAN",
    "DEFAULT_GAMMA",
    "DEFAULT_PRODUCT",
    # Errors
    "EPEngineError",
    "ImproperMessageError",
    "InvalidArgumentError",
    "NumericalFailureError",
    "NotSupportedError",
    "AllZeroError",
    "DivisionByPointMassError",
    # Factors
    "gaussian_op",
    "gamma_op",
    "product_op",
    # Buffers
    "RefinementBuffer",
    "BufferStore",
]
