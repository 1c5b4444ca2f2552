"""
Example: Learning the precision of noisy observations with EP.

y_i ~ N(mu, 1/tau), mu ~ N(0, 0.05) held fixed, tau ~ Gamma(2, 1).

Each observation contributes one Gaussian factor. EP sweeps over the factors,
dividing out the old message, computing a new one and multiplying it back in.
The Laplace run keeps one RefinementBuffer per factor edge; the quadrature
run needs no state.
"""

import numpy as np

from epengine import BufferStore, Gamma, Gaussian, GaussianOpConfig, gaussian_op

LAPLACE = GaussianOpConfig(method="laplace")
QUADRATURE = GaussianOpConfig(method="quadrature")


def run_ep(data, mean, prior, config, sweeps=5, store=None):
    messages = [Gamma.uniform() for _ in data]
    posterior = prior
    for sweep in range(sweeps):
        for i, y in enumerate(data):
            cavity = posterior / messages[i]
            q = None
            if store is not None:
                q = store.get(i).update(gaussian_op.q_update, y, mean, cavity).value
            messages[i] = gaussian_op.precision_average_conditional(y, mean, cavity, config, q)
            posterior = cavity * messages[i]
        print(f"  sweep {sweep + 1}: E[tau] = {posterior.mean():.6f}, var = {posterior.variance():.6f}")
    return posterior


def main():
    rng = np.random.default_rng(0)
    true_tau = 4.0
    data = rng.normal(0.0, 1.0 / np.sqrt(true_tau), size=20)

    mean = Gaussian.from_mean_and_variance(0.0, 0.05)
    prior = Gamma(2.0, 1.0)

    print(f"Learning tau from {len(data)} observations (true tau = {true_tau})")

    print("\nQuadrature:")
    quad_post = run_ep(data, mean, prior, QUADRATURE)

    print("\nLaplace with per-edge buffers:")
    store = BufferStore()
    for i in range(len(data)):
        store.alloc(i)
    lap_post = run_ep(data, mean, prior, LAPLACE, store=store)

    print(f"\nQuadrature posterior: {quad_post}")
    print(f"Laplace posterior:    {lap_post}")
    print(f"Buffers refined: {sum(store.get(i).iterations for i in range(len(data)))}")

    for i in range(len(data)):
        store.free(i)


if __name__ == "__main__":
    main()
