"""
Tests for Laplace corrections and per-edge refinement buffers.
"""

import pytest

from epengine.algebra.gamma import Gamma
from epengine.algebra.gaussian import Gaussian
from epengine.core.errors import NumericalFailureError
from epengine.factors import gamma_op, gaussian_op
from epengine.numerics.laplace import has_converged, is_greater, laplace_moments, laplace_moments2
from epengine.runtime.buffers import BufferStore, RefinementBuffer


class TestLaplaceMoments:
    def test_point_mass_buffer(self):
        assert laplace_moments(Gamma.point_mass(2.0), [5.0, 1.0, 0.0, 0.0], [0.0] * 4) == (5.0, 0.0)
        assert laplace_moments2(Gamma.point_mass(2.0), [5.0, 1.0, 0.0, 0.0], [0.0] * 4) == (5.0, 0.0)

    def test_flat_likelihood_recovers_buffer_moments(self):
        # with log f constant the tilted distribution is q itself
        q = Gamma(4.0, 2.0)
        x = q.mean()
        mean, var = laplace_moments2(q, [x, x, 0.0, 0.0], [0.0] * 4)
        assert mean == pytest.approx(q.mean())
        assert var == pytest.approx(q.variance())

    def test_unscaled_matches_scaled(self):
        q = Gamma(4.0, 2.0)
        x = q.mean()
        m1, v1 = laplace_moments(q, [x, 1.0, 0.0, 0.0], [0.0] * 4)
        m2, v2 = laplace_moments2(q, [x, x, 0.0, 0.0], [0.0] * 4)
        assert m1 == pytest.approx(m2)
        assert v1 == pytest.approx(v2)

    def test_negative_variance(self):
        # a large negative third derivative of g drives the correction below zero
        q = Gamma(1.0, 1.0)
        _, var = laplace_moments(q, [1.0, 1.0, 0.0, -10.0], [0.0] * 4)
        assert var < 0
        with pytest.raises(NumericalFailureError):
            laplace_moments2(q, [1.0, 1.0, 0.0, -10.0], [0.0] * 4)

    def test_mean_only(self):
        q = Gamma(4.0, 2.0)
        x = q.mean()
        _, var = laplace_moments2(q, [x, x, 0.0], [0.0] * 4)
        assert var == 0.0

    def test_convergence_helpers(self):
        assert has_converged(1.0, 1.0 + 1e-14)
        assert not has_converged(1.0, 1.1)
        assert is_greater(2.0, 1.0)
        assert not is_greater(1.0 + 1e-16, 1.0)


class TestRefinementBuffer:
    def test_init_is_uniform(self):
        buf = RefinementBuffer.init()
        assert buf.value.is_uniform
        assert buf.iterations == 0

    def test_update_passes_current_value(self):
        seen = []

        def fn(x, current):
            seen.append(current)
            return Gamma(x, 1.0)

        buf = RefinementBuffer.init()
        assert buf.update(fn, 3.0) is buf
        buf.update(fn, 4.0)
        assert seen[0].is_uniform
        assert seen[1] == Gamma(3.0, 1.0)
        assert buf.value == Gamma(4.0, 1.0)
        assert buf.iterations == 2

    def test_reset(self):
        buf = RefinementBuffer(Gamma(2.0, 1.0))
        buf.iterations = 5
        buf.reset()
        assert buf.value.is_uniform
        assert buf.iterations == 0

    def test_gaussian_factor_buffer(self):
        sample = Gaussian.from_mean_and_variance(0.5, 0.3)
        mean = Gaussian.from_mean_and_variance(-0.2, 0.1)
        precision = Gamma(3.0, 2.0)
        buf = RefinementBuffer.init()
        buf.update(gaussian_op.q_update, sample, mean, precision)
        first = buf.value
        assert first.is_proper
        # refining again from the fitted value lands on the same mode
        buf.update(gaussian_op.q_update, sample, mean, precision)
        assert buf.value.mean() == pytest.approx(first.mean(), rel=1e-6)

    def test_gamma_factor_buffer(self):
        buf = RefinementBuffer.init().update(gamma_op.q_update, Gamma(5.0, 2.0), 2.0, Gamma(4.0, 3.0))
        assert buf.value.is_proper
        assert buf.iterations == 1

    def test_gamma_buffer_for_observed_sample(self):
        q = gamma_op.q_update(3.0, 2.0, Gamma(4.0, 3.0))
        assert q == Gamma(3.0, 3.0) * Gamma(4.0, 3.0)

    def test_gaussian_buffer_passes_through_point_mass_precision(self):
        precision = Gamma.point_mass(2.0)
        q = gaussian_op.q_update(Gaussian(1.0, 0.0), Gaussian(1.0, 0.0), precision, Gamma.uniform())
        assert q == precision


class TestBufferStore:
    def test_lifecycle(self):
        store = BufferStore()
        buf = store.alloc("edge-1")
        assert store.has("edge-1")
        assert store.get("edge-1") is buf
        assert len(store) == 1
        store.free("edge-1")
        assert not store.has("edge-1")
        assert len(store) == 0

    def test_alloc_replaces(self):
        store = BufferStore()
        old = store.alloc(("f", 0))
        old.value = Gamma(2.0, 1.0)
        new = store.alloc(("f", 0))
        assert new is not old
        assert new.value.is_uniform
        assert len(store) == 1

    def test_get_missing(self):
        with pytest.raises(KeyError):
            BufferStore().get("nope")

    def test_free_missing_is_noop(self):
        store = BufferStore()
        store.free("nope")
        assert len(store) == 0
