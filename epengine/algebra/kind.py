"""
epengine/algebra/kind.py

Tag of the argument union used by every factor operator.

An argument to a factor is one of:
- POINT_MASS: all mass at a single value (also how constants are represented)
- UNIFORM: carries no information
- DISTRIBUTION: any other belief, proper or improper

Operators branch on this tag explicitly instead of relying on overloads.
"""

from __future__ import annotations

from enum import Enum


class Kind(Enum):
    """Which member of the argument union a belief is."""
    POINT_MASS = 1
    UNIFORM = 2
    DISTRIBUTION = 3
