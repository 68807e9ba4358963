"""
Example: Nonlinear RSSI Fingerprint Positioning

Demonstrates the nonlinear fingerprint estimators on a synthetic radio map:
    - Linear (first-order Taylor) estimate, used as a cheap initial guess
    - Position-only nonlinear estimate with known radio sources
    - Same estimate with per-fingerprint mean removal (robust to device bias)
    - Joint position and radio source estimation

The query device carries a constant RSSI offset (``--bias``) that is not
present in the radio map, as happens with uncalibrated phones.

Usage:
    python examples/example_nonlinear.py --n-queries 50 --bias 6
"""

import argparse
import logging
import time
import warnings
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.patches import Ellipse

from rssinav.eval import (
    accuracy_ellipse,
    accuracy_radius,
    compute_error_stats,
    compute_position_errors,
)
from rssinav.exceptions import ConvergenceWarning, FingerprintEstimationError
from rssinav.fingerprinting import (
    LinearFingerprintPositionEstimator,
    NonlinearFingerprintPositionAndRadioSourceEstimator,
    NonlinearFingerprintPositionEstimator,
)
from rssinav.sim import (
    generate_fingerprint,
    generate_located_fingerprints,
    generate_radio_sources,
    grid_positions,
)


def build_estimators(radio_map, sources, max_nearest):
    """Estimators compared in this example, keyed by display name."""
    linear = LinearFingerprintPositionEstimator(radio_map, radio_map[0], sources)
    linear.set_min_max_nearest_fingerprints(1, max_nearest)
    linear.use_no_mean_nearest_fingerprint_finder = False

    raw = NonlinearFingerprintPositionEstimator(radio_map, radio_map[0], sources)
    raw.set_min_max_nearest_fingerprints(1, max_nearest)
    raw.use_no_mean_nearest_fingerprint_finder = False

    demeaned = NonlinearFingerprintPositionEstimator(radio_map, radio_map[0], sources)
    demeaned.set_min_max_nearest_fingerprints(1, max_nearest)
    demeaned.remove_means_from_fingerprint_readings = True

    joint = NonlinearFingerprintPositionAndRadioSourceEstimator(
        radio_map, radio_map[0], initial_located_sources=sources
    )
    joint.set_min_max_nearest_fingerprints(3 * len(sources), max(max_nearest, 3 * len(sources)))
    joint.remove_means_from_fingerprint_readings = True

    return {
        "Linear": linear,
        "Nonlinear (raw)": raw,
        "Nonlinear (mean removed)": demeaned,
        "Joint position + sources": joint,
    }


def run_queries(estimators, queries, true_positions, linear_seed=True):
    """Run every estimator on every query and collect positions and covariances."""
    results = {
        name: {"positions": [], "covariances": [], "times": [], "failures": 0}
        for name in estimators
    }
    linear = estimators["Linear"]

    for query, truth in zip(queries, true_positions):
        initial_position = None
        if linear_seed:
            linear.fingerprint = query
            try:
                initial_position = linear.estimate().position
            except FingerprintEstimationError:
                initial_position = None

        for name, estimator in estimators.items():
            estimator.fingerprint = query
            if hasattr(estimator, "initial_position"):
                estimator.initial_position = initial_position

            t0 = time.perf_counter()
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", ConvergenceWarning)
                    result = estimator.estimate()
            except FingerprintEstimationError as e:
                print(f"    {name} failed at {truth}: {e}")
                results[name]["failures"] += 1
                result = None
            elapsed = (time.perf_counter() - t0) * 1000.0

            if result is not None:
                results[name]["positions"].append(result.position)
                results[name]["covariances"].append(result.position_covariance)
            else:
                results[name]["positions"].append(np.full(2, np.nan))
                results[name]["covariances"].append(None)
            results[name]["times"].append(elapsed)

    return results


def plot_results(radio_map, sources, true_positions, results, output_file=None):
    """Radio map with estimates and 95% ellipses, plus error CDFs."""
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(14, 6))

    rp = np.array([fp.position for fp in radio_map])
    ax1.scatter(rp[:, 0], rp[:, 1], s=8, c="lightgray", label="Located fingerprints")
    ap = np.array([source.position for source in sources])
    ax1.scatter(ap[:, 0], ap[:, 1], marker="^", s=120, c="black", label="Radio sources")
    ax1.scatter(
        true_positions[:, 0], true_positions[:, 1], marker="x", c="green", label="Truth"
    )

    colors = ["tab:orange", "tab:blue", "tab:red", "tab:purple"]
    for color, (name, r) in zip(colors, results.items()):
        est = np.array(r["positions"])
        ax1.scatter(est[:, 0], est[:, 1], s=15, c=color, label=name)
        for position, covariance in zip(est, r["covariances"]):
            if covariance is None or not np.all(np.isfinite(position)):
                continue
            semi_major, semi_minor, angle = accuracy_ellipse(covariance, confidence=0.95)
            ax1.add_patch(
                Ellipse(
                    position,
                    2 * semi_major,
                    2 * semi_minor,
                    angle=np.degrees(angle),
                    fill=False,
                    color=color,
                    alpha=0.4,
                )
            )

    ax1.set_xlabel("X (m)")
    ax1.set_ylabel("Y (m)")
    ax1.set_title("Estimates and 95% Confidence Ellipses")
    ax1.set_aspect("equal")
    ax1.legend(fontsize=8, loc="upper right")
    ax1.grid(True, alpha=0.3)

    for color, (name, r) in zip(colors, results.items()):
        errors = np.linalg.norm(
            compute_position_errors(true_positions, np.array(r["positions"])), axis=1
        )
        errors = np.sort(errors[np.isfinite(errors)])
        if len(errors) == 0:
            continue
        cdf = np.arange(1, len(errors) + 1) / len(errors)
        ax2.plot(errors, cdf, color=color, linewidth=2, label=name)

    ax2.set_xlabel("Position Error (m)")
    ax2.set_ylabel("CDF")
    ax2.set_title("Error CDF")
    ax2.legend(fontsize=8)
    ax2.grid(True, alpha=0.3)

    plt.tight_layout()
    if output_file is not None:
        plt.savefig(output_file, dpi=150, bbox_inches="tight")
        print(f"   Saved: {output_file}")
    plt.show()


def main():
    """Main entry point for the nonlinear fingerprinting example."""
    parser = argparse.ArgumentParser(
        description="Nonlinear RSSI fingerprint positioning on a synthetic radio map"
    )
    parser.add_argument("--n-sources", type=int, default=6, help="Number of radio sources")
    parser.add_argument("--grid-spacing", type=float, default=5.0, help="Radio map spacing (m)")
    parser.add_argument("--n-queries", type=int, default=30, help="Number of test queries")
    parser.add_argument("--noise-std", type=float, default=2.0, help="RSSI noise std (dB)")
    parser.add_argument("--bias", type=float, default=6.0, help="Query device RSSI bias (dB)")
    parser.add_argument("--max-nearest", type=int, default=9, help="Max nearest fingerprints")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--no-plot", action="store_true", help="Skip the figure")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("examples/nonlinear_positioning.png"),
        help="Figure output path",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s %(levelname)s: %(message)s",
    )
    rng = np.random.default_rng(args.seed)

    print("=" * 70)
    print("Nonlinear RSSI Fingerprint Positioning")
    print("=" * 70)

    print("\n1. Building radio map...")
    area = (50.0, 50.0)
    sources = generate_radio_sources(args.n_sources, area_size=area)
    radio_map = generate_located_fingerprints(
        grid_positions(area, args.grid_spacing),
        sources,
        noise_std=args.noise_std,
        rssi_std=max(args.noise_std, 1e-3),
        rng=rng,
    )
    print(f"   {len(radio_map)} located fingerprints, {len(sources)} radio sources")

    print("\n2. Generating queries...")
    true_positions = rng.uniform([2.0, 2.0], [area[0] - 2.0, area[1] - 2.0], (args.n_queries, 2))
    queries = [
        generate_fingerprint(
            position,
            sources,
            noise_std=args.noise_std,
            bias=args.bias,
            rssi_std=max(args.noise_std, 1e-3),
            rng=rng,
        )
        for position in true_positions
    ]
    print(f"   {len(queries)} queries, noise {args.noise_std} dB, bias {args.bias} dB")

    print("\n3. Estimating...")
    estimators = build_estimators(radio_map, sources, args.max_nearest)
    results = run_queries(estimators, queries, true_positions)

    print("\n" + "=" * 70)
    print("RESULTS SUMMARY")
    print("=" * 70)
    print(f"{'Method':<28} {'RMSE (m)':<10} {'Median (m)':<12} {'P90 (m)':<10} "
          f"{'Radius68 (m)':<14} {'Time (ms)':<10}")
    print("-" * 84)
    for name, r in results.items():
        est = np.array(r["positions"])
        valid = np.all(np.isfinite(est), axis=1)
        if not np.any(valid):
            print(f"{name:<28} all queries failed")
            continue
        stats = compute_error_stats(compute_position_errors(true_positions[valid], est[valid]))
        radii = [accuracy_radius(c) for c in r["covariances"] if c is not None]
        radius = f"{np.median(radii):.2f}" if radii else "-"
        print(f"{name:<28} {stats['rmse']:<10.2f} {stats['median']:<12.2f} "
              f"{stats['p90']:<10.2f} {radius:<14} {np.mean(r['times']):<10.2f}")

    if not args.no_plot:
        print("\n4. Generating visualizations...")
        plot_results(radio_map, sources, true_positions, results, args.output)

    print("\nKey Findings:")
    print("  - Differencing RSSI against each fingerprint cancels the transmitted power")
    print("  - Mean removal cancels the constant device bias the raw estimator absorbs")
    print("  - The joint estimator also refines the radio source positions")


if __name__ == "__main__":
    main()
