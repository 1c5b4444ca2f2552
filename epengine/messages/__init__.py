"""Moment-to-message conversion with properness projection."""

from epengine.messages.projection import (
    gamma_from_alpha_beta,
    gamma_message,
    gaussian_from_alpha_beta,
    gaussian_message,
)

__all__ = [
    "gamma_from_alpha_beta",
    "gamma_message",
    "gaussian_from_alpha_beta",
    "gaussian_message",
]
