"""
Tests for per-factor configuration.
"""

import dataclasses

import pytest

from epengine.config import (
    DEFAULT_GAMMA,
    DEFAULT_GAUSSIAN,
    DEFAULT_PRODUCT,
    GammaOpConfig,
    GaussianOpConfig,
    ProductOpConfig,
)
from epengine.core.errors import InvalidArgumentError


class TestDefaults:
    def test_gaussian(self):
        assert DEFAULT_GAUSSIAN.method == "quadrature"
        assert DEFAULT_GAUSSIAN.node_count == 20000
        assert DEFAULT_GAUSSIAN.force_proper

    def test_gamma(self):
        assert DEFAULT_GAMMA.method == "quadrature"
        assert DEFAULT_GAMMA.node_count == 1_000_000

    def test_product(self):
        assert DEFAULT_PRODUCT.node_count == 20000
        assert DEFAULT_PRODUCT.force_proper


class TestValidation:
    def test_unknown_method(self):
        with pytest.raises(InvalidArgumentError):
            GaussianOpConfig(method="monte-carlo")
        with pytest.raises(InvalidArgumentError):
            GammaOpConfig(method="")

    def test_node_count(self):
        with pytest.raises(InvalidArgumentError):
            GaussianOpConfig(node_count=1)
        with pytest.raises(InvalidArgumentError):
            ProductOpConfig(node_count=0)
        assert GammaOpConfig(node_count=2).node_count == 2

    def test_frozen(self):
        config = GaussianOpConfig(method="laplace")
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.method = "quadrature"

    def test_replace_revalidates(self):
        config = dataclasses.replace(DEFAULT_GAMMA, node_count=500)
        assert config.node_count == 500
        with pytest.raises(InvalidArgumentError):
            dataclasses.replace(DEFAULT_GAMMA, method="exact")
