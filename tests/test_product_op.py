"""
Tests for the Gaussian product factor.
"""

import math

import pytest
from scipy import stats
from scipy.integrate import quad

from epengine.algebra.gaussian import Gaussian
from epengine.algebra.special import gaussian_log_prob
from epengine.config import ProductOpConfig
from epengine.core.errors import AllZeroError, ImproperMessageError, NotSupportedError
from epengine.factors import product_op

QUAD = ProductOpConfig(node_count=20000, force_proper=False)


@pytest.fixture
def product():
    return Gaussian.from_mean_and_variance(2.0, 1.0)


@pytest.fixture
def b():
    return Gaussian.from_mean_and_variance(2.0, 0.2)


def _likelihood(a, mp, vp, mb, vb):
    return stats.norm.pdf(mp, loc=a * mb, scale=math.sqrt(vp + a * a * vb))


def _a_posterior_moments(ma, va, mp, vp, mb, vb):
    def density(a, k):
        return a ** k * stats.norm.pdf(a, loc=ma, scale=math.sqrt(va)) * _likelihood(a, mp, vp, mb, vb)

    z = quad(density, -30.0, 30.0, args=(0,), limit=200)[0]
    m1 = quad(density, -30.0, 30.0, args=(1,), limit=200)[0] / z
    m2 = quad(density, -30.0, 30.0, args=(2,), limit=200)[0] / z
    return m1, m2 - m1 * m1


def _product_posterior_moments(ma, va, mp, vp, mb, vb):
    """Moments of the product as a mixture over a of Gaussian posteriors."""
    def weight(a):
        return stats.norm.pdf(a, loc=ma, scale=math.sqrt(va)) * _likelihood(a, mp, vp, mb, vb)

    def mean_given(a):
        return a * (mp * a * vb + vp * mb) / (vp + a * a * vb)

    def var_given(a):
        return a * a * vb * vp / (vp + a * a * vb)

    z = quad(weight, -30.0, 30.0, limit=200)[0]
    m1 = quad(lambda a: weight(a) * mean_given(a), -30.0, 30.0, limit=200)[0] / z
    m2 = quad(lambda a: weight(a) * (var_given(a) + mean_given(a) ** 2), -30.0, 30.0, limit=200)[0] / z
    return m1, m2 - m1 * m1


def _log_derivatives(logf, x, h):
    """First and second derivatives of logf at x by five-point central differences."""
    f = [logf(x + k * h) for k in (-2, -1, 0, 1, 2)]
    d1 = (f[0] - 8 * f[1] + 8 * f[3] - f[4]) / (12 * h)
    d2 = (-f[0] + 16 * f[1] - 30 * f[2] + 16 * f[3] - f[4]) / (12 * h * h)
    return d1, d2


class TestConstantInputs:
    def test_product_given_constant(self):
        b = Gaussian.from_mean_and_variance(1.0, 0.5)
        msg = product_op.product_average_conditional(Gaussian.uniform(), 2.0, b)
        assert msg.mean() == pytest.approx(2.0)
        assert msg.variance() == pytest.approx(2.0)

    def test_product_of_point_masses(self):
        assert product_op.product_average_conditional(Gaussian.uniform(), 2.0, 3.0) == Gaussian.point_mass(6.0)

    def test_zero_b_gives_uniform(self, product):
        assert product_op.a_average_conditional(product, Gaussian.uniform(), 0.0).is_uniform

    def test_zero_b_with_nonzero_product(self):
        with pytest.raises(AllZeroError):
            product_op.a_average_conditional(Gaussian.point_mass(1.0), Gaussian.uniform(), 0.0)

    def test_zero_b_with_zero_product(self):
        assert product_op.a_average_conditional(Gaussian.point_mass(0.0), Gaussian.uniform(), 0.0).is_uniform

    def test_observed_product(self):
        msg = product_op.a_average_conditional(Gaussian.point_mass(4.0), Gaussian.uniform(), 2.0)
        assert msg == Gaussian.point_mass(2.0)

    def test_constant_b(self, product):
        msg = product_op.a_average_conditional(product, Gaussian.uniform(), 2.0)
        assert msg == Gaussian(4.0, 4.0)


class TestProductMessage:
    def test_observed_product_not_supported(self, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        with pytest.raises(NotSupportedError):
            product_op.product_average_conditional(Gaussian.point_mass(2.0), a, b)

    def test_uniform_input(self, product, b):
        assert product_op.product_average_conditional(product, Gaussian.uniform(), b).is_uniform

    def test_vague_product_uses_variational_form(self, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        msg = product_op.product_average_conditional(Gaussian(1e-200, 0.0), a, b)
        assert msg == product_op.product_average_logarithm(a, b)

    @pytest.mark.parametrize("vp", [0.5, 1.0])
    def test_matches_adaptive_quadrature(self, vp, b):
        product = Gaussian.from_mean_and_variance(2.0, vp)
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        msg = product_op.product_average_conditional(product, a, b, QUAD)
        posterior = msg * product
        expected_mean, expected_var = _product_posterior_moments(1.0, 0.5, 2.0, vp, 2.0, 0.2)
        assert posterior.mean() == pytest.approx(expected_mean, rel=1e-5)
        assert posterior.variance() == pytest.approx(expected_var, rel=1e-4)

    def test_point_mass_a_matches_evidence_derivatives(self, b):
        msg = product_op.product_average_conditional(Gaussian.uniform(), 1.0, b)
        y = 1.5
        d1, d2 = _log_derivatives(lambda x: product_op.log_average_factor(x, 1.0, b), y, 1e-2)
        expected = Gaussian.from_derivatives(y, d1, d2)
        assert msg.precision == pytest.approx(expected.precision, rel=1e-6)
        assert msg.mean_times_precision == pytest.approx(expected.mean_times_precision, rel=1e-6)
        assert msg.precision == pytest.approx(b.precision, rel=1e-12)


class TestFactorMessage:
    def test_uniform_b(self, product):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        assert product_op.a_average_conditional(product, a, Gaussian.uniform()).is_uniform

    def test_vague_product(self, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        assert product_op.a_average_conditional(Gaussian(1e-200, 0.0), a, b).is_uniform

    @pytest.mark.parametrize("va", [0.5, 2.0])
    def test_matches_adaptive_quadrature(self, va, product, b):
        a = Gaussian.from_mean_and_variance(1.0, va)
        msg = product_op.a_average_conditional(product, a, b, QUAD)
        posterior = msg * a
        expected_mean, expected_var = _a_posterior_moments(1.0, va, 2.0, 1.0, 2.0, 0.2)
        assert posterior.mean() == pytest.approx(expected_mean, rel=1e-5)
        assert posterior.variance() == pytest.approx(expected_var, rel=1e-4)

    @pytest.mark.parametrize("a", [1.0, -0.5])
    def test_point_mass_matches_evidence_derivatives(self, a, product, b):
        point = product_op.a_average_conditional(product, a, b, ProductOpConfig(force_proper=False))
        d1, d2 = _log_derivatives(lambda x: product_op.log_average_factor(product, x, b), a, 2e-3)
        expected = Gaussian.from_derivatives(a, d1, d2)
        assert point.precision == pytest.approx(expected.precision, rel=1e-6)
        assert point.mean_times_precision == pytest.approx(expected.mean_times_precision, rel=1e-6)

    def test_b_message_is_symmetric(self, product, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        assert product_op.b_average_conditional(product, b, a) == product_op.a_average_conditional(product, a, b)

    @pytest.mark.parametrize("a", [-2.0, 0.3, 1.7])
    def test_derivatives_by_finite_differences(self, a):
        mp, vp, mb, vb = 2.0, 1.0, 2.0, 0.2

        def logf(x):
            return product_op._log_likelihood(x, mp, vp, 0.0, 0.0, mb, vb)

        h = 1e-5
        dlogf, ddlogf = product_op._likelihood_derivatives(a, mp, vp, mb, vb)
        d_plus, _ = product_op._likelihood_derivatives(a + h, mp, vp, mb, vb)
        d_minus, _ = product_op._likelihood_derivatives(a - h, mp, vp, mb, vb)
        assert float(dlogf) == pytest.approx((logf(a + h) - logf(a - h)) / (2 * h), rel=1e-6)
        assert float(ddlogf) == pytest.approx(float(d_plus - d_minus) / (2 * h), rel=1e-5)


class TestEvidence:
    def test_point_masses(self, product):
        assert product_op.log_average_factor(product, 2.0, 1.5) == pytest.approx(product.log_prob(3.0))
        assert product_op.log_average_factor(3.0, 2.0, 1.5) == 0.0
        assert product_op.log_average_factor(4.0, 2.0, 1.5) == -math.inf

    def test_constant_a(self, product, b):
        laf = product_op.log_average_factor(product, 1.5, b)
        assert laf == pytest.approx(gaussian_log_prob(2.0, 1.5 * 2.0, 1.5 ** 2 * 0.2 + 1.0))

    def test_uniform_input(self, product, b):
        assert product_op.log_average_factor(product, Gaussian.uniform(), b) == 0.0

    def test_improper_a_raises(self, product, b):
        with pytest.raises(ImproperMessageError):
            product_op.log_average_factor(product, Gaussian(-1.0, 0.0), b)

    def test_matches_adaptive_quadrature(self, product, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        expected = math.log(quad(
            lambda x: stats.norm.pdf(x, loc=1.0, scale=math.sqrt(0.5)) * _likelihood(x, 2.0, 1.0, 2.0, 0.2),
            -30.0, 30.0, limit=200,
        )[0])
        assert product_op.log_average_factor(product, a, b, QUAD) == pytest.approx(expected, abs=1e-6)

    def test_log_evidence_ratio(self, product, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        assert product_op.log_evidence_ratio(product, 2.0, b) == 0.0
        to_product = product_op.product_average_conditional(product, a, b, QUAD)
        ratio = product_op.log_evidence_ratio(product, a, b, to_product, QUAD)
        laf = product_op.log_average_factor(product, a, b, QUAD)
        assert ratio == pytest.approx(laf - to_product.log_average_of(product))


class TestVMP:
    def test_product_message(self, b):
        a = Gaussian.from_mean_and_variance(1.0, 0.5)
        msg = product_op.product_average_logarithm(a, b)
        assert msg.mean() == pytest.approx(2.0)
        assert msg.variance() == pytest.approx(4.0 * 0.5 + 1.0 * 0.2 + 0.5 * 0.2)

    def test_a_message(self, product, b):
        msg = product_op.a_average_logarithm(product, b)
        assert msg.precision == pytest.approx(4.2)
        assert msg.mean_times_precision == pytest.approx(4.0)

    def test_a_message_constant_b(self, product):
        assert product_op.a_average_logarithm(product, 2.0) == Gaussian(4.0, 4.0)

    def test_observed_product_not_supported(self, b):
        with pytest.raises(NotSupportedError):
            product_op.a_average_logarithm(Gaussian.point_mass(2.0), b)

    def test_average_log_factor(self, product, b):
        assert product_op.average_log_factor(product, 1.0, b) == 0.0
