"""Factor operators: one module per factor, one function per message."""

from epengine.factors import gamma_op, gaussian_op, product_op

__all__ = ["gamma_op", "gaussian_op", "product_op"]
