#!/usr/bin/env python3
"""
EPEngine: numerical engine for non-conjugate message passing

Computes EP and VMP messages for the Gaussian factor with unknown precision,
the Gamma factor with constant shape, and the Gaussian product factor.

Usage:
    # Run demos
    python main.py demo --example gaussian

    # Run tests
    python main.py test

    # Show versions
    python main.py info
"""

from __future__ import annotations

import argparse
import logging
import math
import sys
from pathlib import Path

import numpy as np

# Handle imports whether running as package or directly
try:
    from epengine import (
        Gamma,
        GammaOpConfig,
        Gaussian,
        GaussianOpConfig,
        ProductOpConfig,
        RefinementBuffer,
        __version__,
        gamma_op,
        gaussian_op,
        product_op,
    )
except ImportError:
    sys.path.insert(0, str(Path(__file__).parent))
    from epengine import (
        Gamma,
        GammaOpConfig,
        Gaussian,
        GaussianOpConfig,
        ProductOpConfig,
        RefinementBuffer,
        __version__,
        gamma_op,
        gaussian_op,
        product_op,
    )

logger = logging.getLogger("epengine")


def _close(x: float, y: float, rel: float) -> bool:
    return abs(x - y) <= rel * max(abs(x), abs(y), 1.0)


def demo_gaussian():
    """Demo: Gaussian factor with known and unknown precision"""
    print("=" * 60)
    print("Demo: sample ~ N(mean, 1/precision)")
    print("=" * 60)

    prior = Gaussian.from_mean_and_variance(0.0, 1.0)
    msg = gaussian_op.sample_average_conditional(prior, 1.0, 2.0)
    print("\nKnown mean 1 and precision 2, sample prior N(0, 1):")
    print(f"  message to sample = {msg}")
    exact = Gaussian.from_mean_and_precision(1.0, 2.0)
    match = msg == exact
    print(f"  equals N(1, 1/2): {match}")

    sample = Gaussian.from_mean_and_variance(0.5, 0.3)
    mean = Gaussian.from_mean_and_variance(-0.2, 0.1)
    precision = Gamma.from_shape_and_rate(3.0, 2.0)
    quad = GaussianOpConfig(node_count=2000)
    lap = GaussianOpConfig(method="laplace")
    print("\nUnknown precision Ga(3, 2):")
    to_prec_quad = gaussian_op.precision_average_conditional(sample, mean, precision, quad)
    buf = RefinementBuffer.init().update(gaussian_op.q_update, sample, mean, precision)
    to_prec_lap = gaussian_op.precision_average_conditional(sample, mean, precision, lap, buf.value)
    print(f"  quadrature: {to_prec_quad}")
    print(f"  laplace:    {to_prec_lap}")
    post_quad = to_prec_quad * precision
    post_lap = to_prec_lap * precision
    agree = _close(post_quad.mean(), post_lap.mean(), 5e-2)
    print(f"  posterior means agree: {agree}")

    return match and agree


def demo_gamma():
    """Demo: Gamma factor with constant shape"""
    print("=" * 60)
    print("Demo: sample ~ Gamma(shape, rate)")
    print("=" * 60)

    msg = gamma_op.rate_average_conditional(3.0, 2.0, Gamma.from_shape_and_rate(1.0, 1.0))
    print("\nObserved sample 3, shape 2:")
    print(f"  message to rate = {msg}")
    match = msg == Gamma.from_shape_and_rate(3.0, 3.0)
    print(f"  equals Gamma(3, 3): {match}")

    sample = Gamma.from_shape_and_rate(5.0, 2.0)
    rate = Gamma.from_shape_and_rate(4.0, 3.0)
    quad = GammaOpConfig(node_count=5000)
    lap = GammaOpConfig(method="laplace")
    to_rate_quad = gamma_op.rate_average_conditional(sample, 2.0, rate, quad)
    to_rate_lap = gamma_op.rate_average_conditional(sample, 2.0, rate, lap)
    print("\nSample Ga(5, 2), rate Ga(4, 3):")
    print(f"  quadrature: {to_rate_quad}")
    print(f"  laplace:    {to_rate_lap}")
    agree = _close((to_rate_quad * rate).mean(), (to_rate_lap * rate).mean(), 5e-2)
    print(f"  posterior means agree: {agree}")

    return match and agree


def demo_product():
    """Demo: Gaussian product factor"""
    print("=" * 60)
    print("Demo: product = a * b")
    print("=" * 60)

    product = Gaussian.from_mean_and_variance(2.0, 1.0)
    msg = product_op.a_average_conditional(product, Gaussian.uniform(), 0.0)
    print("\nb = 0, product ~ N(2, 1):")
    print(f"  message to a = {msg}")
    degenerate = msg.is_uniform
    print(f"  uniform: {degenerate}")

    a = Gaussian.from_mean_and_variance(1.0, 0.5)
    b = Gaussian.from_mean_and_variance(2.0, 0.2)
    config = ProductOpConfig(node_count=2000)
    to_a = product_op.a_average_conditional(product, a, b, config)
    to_product = product_op.product_average_conditional(product, a, b, config)
    print("\na ~ N(1, 0.5), b ~ N(2, 0.2), product ~ N(2, 1):")
    print(f"  message to a:       {to_a}")
    print(f"  message to product: {to_product}")
    proper = to_a.precision >= 0 and to_product.precision >= 0
    print(f"  proper: {proper}")
    evidence = product_op.log_evidence_ratio(product, a, b, to_product, config)
    print(f"  log evidence ratio = {evidence:.6f}")

    return degenerate and proper and math.isfinite(evidence)


def cmd_demo(args):
    """Execute the demo command."""
    demos = {
        "gaussian": demo_gaussian,
        "gamma": demo_gamma,
        "product": demo_product,
    }

    if args.example == "all":
        results = []
        for name, func in demos.items():
            try:
                passed = func()
                results.append((name, passed))
            except Exception as e:
                print(f"Error in {name}: {e}")
                import traceback
                traceback.print_exc()
                results.append((name, False))
            print()

        print("=" * 60)
        print("Summary")
        print("=" * 60)
        all_passed = True
        for name, passed in results:
            status = "✓ PASS" if passed else "✗ FAIL"
            print(f"  {name}: {status}")
            if not passed:
                all_passed = False

        return 0 if all_passed else 1

    elif args.example in demos:
        try:
            passed = demos[args.example]()
            return 0 if passed else 1
        except Exception as e:
            print(f"Error: {e}")
            import traceback
            traceback.print_exc()
            return 1
    else:
        print(f"Unknown example: {args.example}")
        print(f"Available: {', '.join(demos.keys())}, all")
        return 1


def cmd_test(args):
    """Execute the test command."""
    import subprocess

    test_dir = Path(__file__).parent / "tests"
    if not test_dir.exists():
        print(f"Test directory not found: {test_dir}")
        return 1

    cmd = [sys.executable, "-m", "pytest", str(test_dir)]
    if args.verbose:
        cmd.append("-v")
    if args.coverage:
        cmd.extend(["--cov=epengine", "--cov-report=term-missing"])

    print(f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, cwd=Path(__file__).parent)
    return result.returncode


def cmd_info(args):
    """Display system information."""
    print(f"EPEngine v{__version__}")
    print("Message computations for non-conjugate factors")
    print()
    print("Factors:")
    print("  gaussian - sample ~ N(mean, 1/precision), Gamma precision")
    print("  gamma    - sample ~ Gamma(shape, rate), constant shape")
    print("  product  - product = a * b, Gaussian inputs")
    print()
    print("Methods:")
    print("  quadrature - bracketed grid integration (default)")
    print("  laplace    - Laplace corrections around a refined buffer")
    print()
    print("Python:", sys.version.split()[0])
    print("NumPy:", np.__version__)

    try:
        import scipy
        print("SciPy:", scipy.__version__)
    except ImportError:
        print("SciPy: not installed")

    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="epengine",
        description="EPEngine: numerical engine for non-conjugate message passing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run demos
  epengine demo --example gaussian
  epengine demo --example all

  # Show the engine's debug log while running a demo
  epengine --log-level DEBUG demo --example gamma

  # Run tests
  epengine test -v

  # Show info
  epengine info
"""
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"EPEngine {__version__}"
    )
    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level (default: WARNING)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demonstration examples")
    demo_parser.add_argument(
        "--example", "-e",
        choices=["gaussian", "gamma", "product", "all"],
        default="all",
        help="Which example to run (default: all)"
    )

    # Test command
    test_parser = subparsers.add_parser("test", help="Run test suite")
    test_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    test_parser.add_argument("--coverage", "-c", action="store_true", help="With coverage")

    # Info command
    subparsers.add_parser("info", help="Show system information")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.debug("epengine %s", __version__)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "demo":
        return cmd_demo(args)
    elif args.command == "test":
        return cmd_test(args)
    elif args.command == "info":
        return cmd_info(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
