"""
epengine/runtime/buffers.py

Per-edge refinement state for Laplace-capable factors.

A RefinementBuffer holds the Gamma that tracks the mode and curvature of the
integrand over a positive nuisance parameter. It is created once per model
edge, refined once per scheduler pass, and dropped with the edge.

Buffers are not locked: a buffer must only be touched by the thread that
currently owns its edge.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Hashable, Optional

from epengine.algebra.gamma import Gamma

logger = logging.getLogger(__name__)

EdgeID = Hashable


class RefinementBuffer:
    """
    Mutable holder for a factor's Laplace buffer.

    Attributes:
        value: Current Gamma estimate (uniform until the first update)
        iterations: Number of updates applied since init/reset
    """

    def __init__(self, value: Optional[Gamma] = None):
        self.value: Gamma = value if value is not None else Gamma.uniform()
        self.iterations: int = 0

    @classmethod
    def init(cls) -> "RefinementBuffer":
        """A fresh buffer holding the uniform Gamma."""
        return cls()

    def update(self, fn: Callable[..., Gamma], *beliefs) -> "RefinementBuffer":
        """
        Refine the buffer in place.

        Args:
            fn: Update rule called as fn(*beliefs, current_value)
            *beliefs: Current incoming beliefs of the factor

        Returns:
            self, for chaining
        """
        self.value = fn(*beliefs, self.value)
        self.iterations += 1
        logger.debug("buffer update %d: %s", self.iterations, self.value)
        return self

    def reset(self) -> None:
        self.value = Gamma.uniform()
        self.iterations = 0

    def __repr__(self) -> str:
        return f"RefinementBuffer({self.value}, iterations={self.iterations})"


class BufferStore:
    """
    Buffers keyed by model edge.

    The scheduler allocates a buffer when an edge is created and frees it
    when the edge is removed.
    """

    def __init__(self):
        self.data: Dict[EdgeID, RefinementBuffer] = {}

    def alloc(self, edge: EdgeID) -> RefinementBuffer:
        """Create (or replace) the buffer of an edge."""
        buf = RefinementBuffer.init()
        self.data[edge] = buf
        return buf

    def get(self, edge: EdgeID) -> RefinementBuffer:
        if edge not in self.data:
            raise KeyError(f"No buffer allocated for edge {edge!r}")
        return self.data[edge]

    def free(self, edge: EdgeID) -> None:
        self.data.pop(edge, None)

    def has(self, edge: EdgeID) -> bool:
        return edge in self.data

    def __len__(self) -> int:
        return len(self.data)
