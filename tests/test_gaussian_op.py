"""
Tests for the Gaussian factor with unknown precision.
"""

import math

import numpy as np
import pytest
from scipy.integrate import quad
from scipy.special import gammaln

from epengine.algebra.gamma import Gamma
from epengine.algebra.gaussian import Gaussian
from epengine.algebra.special import LN_SQRT_2PI, gaussian_log_prob
from epengine.config import GaussianOpConfig
from epengine.core.errors import ImproperMessageError, InvalidArgumentError
from epengine.factors import gaussian_op

QUAD = GaussianOpConfig(node_count=20000, force_proper=False)


def _precision_posterior_moments(m, v, a, b):
    """Mean and variance of r under N(m; 0, v + 1/r) Ga(r; a, b), by adaptive quadrature."""
    def density(r, k):
        vr = v + 1 / r
        return r ** (a - 1 + k) * math.exp(-b * r - 0.5 * m * m / vr) / math.sqrt(vr)

    z = quad(density, 0.0, 60.0, args=(0,), limit=200)[0]
    m1 = quad(density, 0.0, 60.0, args=(1,), limit=200)[0] / z
    m2 = quad(density, 0.0, 60.0, args=(2,), limit=200)[0] / z
    return m1, m2 - m1 * m1


def _log_derivatives(logf, x, h):
    """First and second derivatives of logf at x by five-point central differences."""
    f = [logf(x + k * h) for k in (-2, -1, 0, 1, 2)]
    d1 = (f[0] - 8 * f[1] + 8 * f[3] - f[4]) / (12 * h)
    d2 = (-f[0] + 16 * f[1] - 30 * f[2] + 16 * f[3] - f[4]) / (12 * h * h)
    return d1, d2


@pytest.fixture
def beliefs():
    sample = Gaussian.from_mean_and_variance(0.5, 0.3)
    mean = Gaussian.from_mean_and_variance(-0.2, 0.1)
    precision = Gamma(3.0, 2.0)
    return sample, mean, precision


class TestConstantPrecision:
    def test_conjugate_message(self):
        prior = Gaussian.from_mean_and_variance(0.0, 1.0)
        msg = gaussian_op.sample_average_conditional(prior, 1.0, 2.0)
        assert msg == Gaussian.from_mean_and_precision(1.0, 2.0)

    def test_mean_message_is_symmetric(self):
        prior = Gaussian.from_mean_and_variance(0.0, 1.0)
        msg = gaussian_op.mean_average_conditional(1.0, prior, 2.0)
        assert msg == Gaussian.from_mean_and_precision(1.0, 2.0)

    def test_random_mean(self):
        mean = Gaussian.from_mean_and_variance(0.0, 1.0)
        msg = gaussian_op.sample_average_conditional(Gaussian.uniform(), mean, 1.0)
        assert msg.mean() == pytest.approx(0.0)
        assert msg.variance() == pytest.approx(2.0)

    def test_zero_and_infinite_precision(self):
        mean = Gaussian.from_mean_and_variance(1.0, 1.0)
        assert gaussian_op.sample_average_conditional(Gaussian.uniform(), mean, 0.0).is_uniform
        assert gaussian_op.sample_average_conditional(Gaussian.uniform(), mean, math.inf) == mean

    def test_negative_precision(self):
        mean = Gaussian.from_mean_and_variance(1.0, 1.0)
        with pytest.raises(InvalidArgumentError):
            gaussian_op.sample_average_conditional(Gaussian.uniform(), mean, -1.0)

    def test_negative_precision_with_observed_mean(self):
        with pytest.raises(InvalidArgumentError):
            gaussian_op.sample_average_conditional(Gaussian.uniform(), 0.0, -1.0)


class TestSampleMessage:
    def test_both_observed_is_student_t(self):
        precision = Gamma(3.0, 2.0)
        msg = gaussian_op.sample_average_conditional(1.0, 0.0, precision)
        # log f(x) = -(a + 1/2) log(1 + x^2 / (2b)) around x = 1
        n, vt = 7.0, 4.0
        assert msg.precision == pytest.approx(n * (vt - 1.0) / (vt + 1.0) ** 2)
        dlogf = -n / (vt + 1.0)
        assert msg.mean_times_precision == pytest.approx(msg.precision + dlogf)

    def test_both_observed_uniform_precision(self):
        assert gaussian_op.sample_average_conditional(1.0, 0.0, Gamma.uniform()).is_uniform

    def test_uniform_mean(self, beliefs):
        sample, _, precision = beliefs
        assert gaussian_op.sample_average_conditional(sample, Gaussian.uniform(), precision).is_uniform

    def test_uniform_sample(self):
        mean = Gaussian.from_mean_and_variance(1.0, 0.5)
        precision = Gamma(3.0, 2.0)
        msg = gaussian_op.sample_average_conditional(Gaussian.uniform(), mean, precision)
        assert msg.mean() == pytest.approx(1.0)
        assert msg.variance() == pytest.approx(0.5 + precision.mean_inverse())

    def test_constant_precision_matches_evidence_derivatives(self, beliefs):
        _, mean, _ = beliefs
        msg = gaussian_op.sample_average_conditional(Gaussian.uniform(), mean, 2.0)
        x = 0.5
        d1, d2 = _log_derivatives(lambda y: gaussian_op.log_average_factor(y, mean, 2.0), x, 1e-2)
        expected = Gaussian.from_derivatives(x, d1, d2)
        assert msg.precision == pytest.approx(expected.precision, rel=1e-6)
        assert msg.mean_times_precision == pytest.approx(expected.mean_times_precision, rel=1e-6)

    def test_point_mass_mean_uses_mixture(self):
        sample = Gaussian.from_mean_and_variance(0.5, 2.0)
        precision = Gamma(3.0, 2.0)
        msg = gaussian_op.sample_average_conditional(sample, 0.0, precision, QUAD)
        m, v = (msg * sample).mean_and_variance()
        # posterior of the sample is a scale mixture centred between 0 and 0.5
        assert 0.0 < m < 0.5
        assert 0.0 < v < 2.0

    def test_laplace_close_to_quadrature(self, beliefs):
        sample, mean, precision = beliefs
        quad_msg = gaussian_op.sample_average_conditional(sample, mean, precision, QUAD)
        lap_msg = gaussian_op.sample_average_conditional(
            sample, mean, precision, GaussianOpConfig(method="laplace")
        )
        assert (lap_msg * sample).mean() == pytest.approx((quad_msg * sample).mean(), rel=5e-2)


class TestPrecisionMessage:
    def test_both_observed(self):
        msg = gaussian_op.precision_average_conditional(1.5, 0.5, Gamma(3.0, 2.0))
        assert msg == Gamma(1.5, 0.5)

    def test_uniform_sample(self, beliefs):
        _, mean, precision = beliefs
        assert gaussian_op.precision_average_conditional(Gaussian.uniform(), mean, precision).is_uniform

    def test_improper_precision(self, beliefs):
        sample, mean, _ = beliefs
        with pytest.raises(ImproperMessageError):
            gaussian_op.precision_average_conditional(sample, mean, Gamma(-1.0, 2.0))

    def test_matches_adaptive_quadrature(self, beliefs):
        sample, mean, precision = beliefs
        msg = gaussian_op.precision_average_conditional(sample, mean, precision, QUAD)
        posterior = msg * precision
        expected_mean, expected_var = _precision_posterior_moments(0.7, 0.4, 3.0, 2.0)
        assert posterior.mean() == pytest.approx(expected_mean, rel=1e-5)
        assert posterior.variance() == pytest.approx(expected_var, rel=1e-4)

    def test_large_difference_uses_moments(self):
        # (E[sample] - E[mean])^2 - var exceeds the precision rate
        sample = Gaussian.from_mean_and_variance(3.0, 0.2)
        mean = Gaussian.from_mean_and_variance(0.0, 0.2)
        precision = Gamma(3.0, 2.0)
        msg = gaussian_op.precision_average_conditional(sample, mean, precision, QUAD)
        posterior = msg * precision
        expected_mean, _ = _precision_posterior_moments(3.0, 0.4, 3.0, 2.0)
        assert posterior.mean() == pytest.approx(expected_mean, rel=1e-4)

    def test_point_mass_vs_near_point_mass(self, beliefs):
        sample, mean, _ = beliefs
        point = gaussian_op.precision_average_conditional(sample, mean, Gamma.point_mass(2.0))
        near = gaussian_op.precision_average_conditional(sample, mean, Gamma(1e22, 5e21))
        assert near.shape == pytest.approx(point.shape)
        assert near.rate == pytest.approx(point.rate)

    def test_point_mass_matches_evidence_derivatives(self, beliefs):
        sample, mean, _ = beliefs
        r = 2.0
        point = gaussian_op.precision_average_conditional(sample, mean, r)
        d1, d2 = _log_derivatives(lambda x: gaussian_op.log_average_factor(sample, mean, x), r, 1e-2)
        expected = Gamma.from_derivatives(r, d1, d2, force_proper=True)
        assert point.shape == pytest.approx(expected.shape, rel=1e-6)
        assert point.rate == pytest.approx(expected.rate, rel=1e-6)

    def test_laplace_close_to_quadrature(self, beliefs):
        sample, mean, precision = beliefs
        quad_msg = gaussian_op.precision_average_conditional(sample, mean, precision, QUAD)
        q = gaussian_op.q_update(sample, mean, precision, gaussian_op.q_init())
        lap_msg = gaussian_op.precision_average_conditional(
            sample, mean, precision, GaussianOpConfig(method="laplace"), q
        )
        assert (lap_msg * precision).mean() == pytest.approx((quad_msg * precision).mean(), rel=5e-2)


class TestImproperPrecision:
    LAPLACE = GaussianOpConfig(method="laplace")

    @pytest.mark.parametrize("config", [QUAD, LAPLACE])
    def test_uniform_precision_gives_uniform_sample_message(self, config, beliefs):
        sample, mean, _ = beliefs
        assert gaussian_op.sample_average_conditional(sample, mean, Gamma.uniform(), config).is_uniform

    @pytest.mark.parametrize("config", [QUAD, LAPLACE])
    def test_improper_precision_sample_message(self, config, beliefs):
        sample, mean, _ = beliefs
        with pytest.raises(ImproperMessageError):
            gaussian_op.sample_average_conditional(sample, mean, Gamma(2.0, 0.0), config)

    @pytest.mark.parametrize("config", [QUAD, LAPLACE])
    def test_improper_precision_message(self, config, beliefs):
        sample, mean, _ = beliefs
        with pytest.raises(ImproperMessageError):
            gaussian_op.precision_average_conditional(sample, mean, Gamma(2.0, 0.0), config)

    @pytest.mark.parametrize("config", [QUAD, LAPLACE])
    def test_improper_precision_evidence(self, config, beliefs):
        sample, mean, _ = beliefs
        with pytest.raises(ImproperMessageError):
            gaussian_op.log_average_factor(sample, mean, Gamma(2.0, 0.0), config)

    def test_buffer_update_rejects_improper_precision(self, beliefs):
        sample, mean, _ = beliefs
        with pytest.raises(ImproperMessageError):
            gaussian_op.q_update(sample, mean, Gamma(2.0, 0.0), gaussian_op.q_init())


class TestDerivatives:
    @pytest.mark.parametrize("x", [0.3, 2.0, 10.0])
    def test_dlogfs_by_finite_differences(self, x):
        m, v = 0.7, 0.4

        def logf(r):
            vr = v + 1 / r
            return -0.5 * math.log(vr) - 0.5 * m * m / vr

        h = 1e-5 * x
        d = gaussian_op.dlogfs(x, m, v)
        assert d[0] == pytest.approx((logf(x + h) - logf(x - h)) / (2 * h), rel=1e-6)
        d_plus = gaussian_op.dlogfs(x + h, m, v)
        d_minus = gaussian_op.dlogfs(x - h, m, v)
        assert d[1] == pytest.approx((d_plus[0] - d_minus[0]) / (2 * h), rel=1e-5)
        assert d[2] == pytest.approx((d_plus[1] - d_minus[1]) / (2 * h), rel=1e-5)
        assert d[3] == pytest.approx((d_plus[2] - d_minus[2]) / (2 * h), rel=1e-4)

    @pytest.mark.parametrize("x", [0.3, 10.0])
    def test_scaled_derivatives(self, x):
        d = gaussian_op.dlogfs(x, 0.7, 0.4)
        xd = gaussian_op.xdlogfs(x, 0.7, 0.4)
        for k in range(4):
            assert xd[k] == pytest.approx(d[k] * x ** (k + 1), rel=1e-9)


class TestEvidence:
    def test_constant_precision(self, beliefs):
        sample, mean, _ = beliefs
        laf = gaussian_op.log_average_factor(sample, mean, 2.0)
        assert laf == pytest.approx(gaussian_log_prob(0.5, -0.2, 0.3 + 0.1 + 0.5))

    def test_both_observed(self):
        d, a, b = 0.7, 3.0, 2.0
        laf = gaussian_op.log_average_factor(d, 0.0, Gamma(a, b))
        expected = (
            a * math.log(b) - gammaln(a) - LN_SQRT_2PI + gammaln(a + 0.5)
            - (a + 0.5) * math.log(b + 0.5 * d * d)
        )
        assert laf == pytest.approx(expected)

    def test_uniform_inputs(self, beliefs):
        sample, mean, precision = beliefs
        assert gaussian_op.log_average_factor(Gaussian.uniform(), mean, precision) == 0.0
        assert gaussian_op.log_average_factor(sample, mean, Gamma.uniform()) == math.inf

    def test_matches_adaptive_quadrature(self, beliefs):
        sample, mean, precision = beliefs
        m, v, a, b = 0.7, 0.4, 3.0, 2.0

        def integrand(r):
            vr = v + 1 / r
            log_ga = a * math.log(b) - gammaln(a) + (a - 1) * math.log(r) - b * r
            return math.exp(gaussian_log_prob(m, 0.0, vr) + log_ga)

        expected = math.log(quad(integrand, 0.0, 60.0, limit=200)[0])
        assert gaussian_op.log_average_factor(sample, mean, precision, QUAD) == pytest.approx(expected, abs=1e-6)

    def test_log_evidence_ratio(self, beliefs):
        sample, mean, precision = beliefs
        to_sample = gaussian_op.sample_average_conditional(sample, mean, precision, QUAD)
        ratio = gaussian_op.log_evidence_ratio(sample, mean, precision, to_sample, QUAD)
        laf = gaussian_op.log_average_factor(sample, mean, precision, QUAD)
        assert ratio == pytest.approx(laf - sample.log_average_of(to_sample))
        assert gaussian_op.log_evidence_ratio(sample, mean, 2.0) == 0.0


class TestVMP:
    def test_sample_message(self):
        msg = gaussian_op.sample_average_logarithm(Gaussian.from_mean_and_variance(1.0, 2.0), Gamma(3.0, 2.0))
        assert msg.mean() == pytest.approx(1.0)
        assert msg.precision == pytest.approx(1.5)

    def test_precision_message(self):
        sample = Gaussian.from_mean_and_variance(1.0, 0.5)
        mean = Gaussian.from_mean_and_variance(0.0, 0.5)
        assert gaussian_op.precision_average_logarithm(sample, mean) == Gamma(1.5, 1.0)

    def test_precision_message_needs_proper_inputs(self):
        with pytest.raises(ImproperMessageError):
            gaussian_op.precision_average_logarithm(Gaussian.uniform(), 0.0)

    def test_average_log_factor_point_masses(self):
        laf = gaussian_op.average_log_factor(1.0, 0.0, 2.0)
        assert laf == pytest.approx(-LN_SQRT_2PI + 0.5 * (math.log(2.0) - 2.0))

    def test_average_log_factor(self):
        sample = Gaussian.from_mean_and_variance(1.0, 0.5)
        mean = Gaussian.from_mean_and_variance(0.0, 0.5)
        precision = Gamma(3.0, 2.0)
        expected = -LN_SQRT_2PI + 0.5 * (precision.mean_log() - 1.5 * (1.0 + 0.5 + 0.5))
        assert gaussian_op.average_log_factor(sample, mean, precision) == pytest.approx(expected)

    def test_vmp_evidence_matches_average(self):
        # E over a sampled grid of the exact log density
        rng = np.random.default_rng(0)
        precision = Gamma(3.0, 2.0)
        r = rng.gamma(3.0, 0.5, size=200000)
        values = -LN_SQRT_2PI + 0.5 * (np.log(r) - r * 0.49)
        laf = gaussian_op.average_log_factor(0.7, 0.0, precision)
        assert laf == pytest.approx(float(np.mean(values)), abs=1e-2)
