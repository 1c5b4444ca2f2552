"""
Example: Messages of the Gaussian product factor y = a * b.

Shows the closed forms for a constant input, the quadrature message to a,
the message to the product and the evidence contribution.
"""

from epengine import Gaussian, product_op


def main():
    a = Gaussian.from_mean_and_variance(1.0, 0.5)
    b = Gaussian.from_mean_and_variance(2.0, 0.2)
    product = Gaussian.from_mean_and_variance(2.0, 1.0)

    print("Factor y = a * b")
    print(f"  a ~ {a}")
    print(f"  b ~ {b}")
    print(f"  y ~ {product}")

    # Constant b
    print("\nWith b = 2 observed:")
    print(f"  message to a: {product_op.a_average_conditional(product, a, 2.0)}")
    print(f"  message to y: {product_op.product_average_conditional(product, a, 2.0)}")

    print("\nWith b random:")
    to_a = product_op.a_average_conditional(product, a, b)
    to_b = product_op.b_average_conditional(product, a, b)
    to_product = product_op.product_average_conditional(product, a, b)
    print(f"  message to a: {to_a}")
    print(f"  posterior a:  {to_a * a}")
    print(f"  message to b: {to_b}")
    print(f"  message to y: {to_product}")

    laf = product_op.log_average_factor(product, a, b)
    ratio = product_op.log_evidence_ratio(product, a, b, to_product)
    print(f"\nlog E[f] = {laf:.6f}")
    print(f"log evidence ratio = {ratio:.6f}")

    print("\nVariational messages:")
    print(f"  to y: {product_op.product_average_logarithm(a, b)}")
    print(f"  to a: {product_op.a_average_logarithm(product, b)}")


if __name__ == "__main__":
    main()
