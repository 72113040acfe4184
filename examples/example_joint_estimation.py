"""
Example: Joint Receiver and Radio Source Estimation from RSSI Fingerprints

Builds a synthetic radio map of access points with unknown positions and
estimates, for a set of query fingerprints, both the receiver position and
the access point positions.

Demonstrates:
    - RSSI differences ΔPr = 5·n·(log10‖f - s‖² - log10‖p - s‖²), which do
      not depend on the transmitted power
    - No-mean nearest fingerprint search against a receiver gain offset
    - Covariance of the receiver and access point estimates

Author: Navigation Engineer
Date: 2024
"""

import logging
import time
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from radiomap.fingerprinting import (
    Fingerprint,
    FingerprintEstimationError,
    FingerprintPositionAndRadioSourceEstimator,
    RadioSource,
    Reading,
    fingerprints_from_radio_map,
)
from radiomap.rf import simulate_rss_measurement


def build_radio_map(n_sources=6, grid_step=5.0, area=50.0, sigma_db=1.0, seed=42):
    """
    Simulate a grid radio map.

    Args:
        n_sources: Number of access points.
        grid_step: Spacing between reference points (m).
        area: Side of the square area (m).
        sigma_db: Shadowing std dev of the survey readings (dB).
        seed: Random seed.

    Returns:
        Tuple of (located fingerprints, sources, true source positions,
        transmitted powers).
    """
    rng = np.random.default_rng(seed)

    source_positions = rng.uniform(0.0, area, (n_sources, 2))
    tx_powers = rng.uniform(-5.0, 5.0, n_sources)
    sources = [
        RadioSource(f"AP{i}", path_loss_exponent=rng.uniform(1.7, 2.1))
        for i in range(n_sources)
    ]

    ticks = np.arange(grid_step / 2, area, grid_step)
    locations = np.array([[x, y] for x in ticks for y in ticks])

    features = np.array([
        [
            simulate_rss_measurement(
                s_pos, loc, tx, source.path_loss_exponent, sigma_db=sigma_db, rng=rng
            )
            for source, s_pos, tx in zip(sources, source_positions, tx_powers)
        ]
        for loc in locations
    ])

    stds = np.full(features.shape, sigma_db)
    database = fingerprints_from_radio_map(locations, features, sources, rssi_stds=stds)
    return database, sources, source_positions, tx_powers


def make_query(position, sources, source_positions, tx_powers, sigma_db, bias_db, rng):
    readings = [
        Reading(
            source,
            simulate_rss_measurement(
                s_pos, position, tx, source.path_loss_exponent,
                sigma_db=sigma_db, bias_db=bias_db, rng=rng,
            ),
            sigma_db,
        )
        for source, s_pos, tx in zip(sources, source_positions, tx_powers)
    ]
    return Fingerprint(readings)


def run_queries(estimator, queries, true_positions):
    """
    Estimate every query and collect errors.

    Returns:
        Dictionary with receiver errors, failures and timings.
    """
    errors = []
    times = []
    failures = 0

    for query, true_position in zip(queries, true_positions):
        estimator.fingerprint = query
        t_start = time.perf_counter()
        try:
            result = estimator.estimate()
        except FingerprintEstimationError:
            failures += 1
            continue
        times.append((time.perf_counter() - t_start) * 1000)  # ms
        errors.append(np.linalg.norm(result.position - true_position))

    errors = np.array(errors)
    return {
        "errors": errors,
        "failures": failures,
        "rmse": np.sqrt(np.mean(errors**2)) if len(errors) else np.nan,
        "p90": np.percentile(errors, 90) if len(errors) else np.nan,
        "mean_time_ms": np.mean(times) if times else np.nan,
    }


def main():
    """Run joint estimation examples."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 70)
    print("Joint Receiver and Radio Source Estimation")
    print("=" * 70)

    print("\n1. Building radio map...")
    database, sources, source_positions, tx_powers = build_radio_map()
    print(f"   {len(database)} reference points, {len(sources)} access points")

    print("\n2. Generating test queries...")
    rng = np.random.default_rng(7)
    n_queries = 50
    sigma_db = 1.0
    bias_db = 6.0  # receiver gain offset
    true_positions = rng.uniform(5.0, 45.0, (n_queries, 2))
    queries = [
        make_query(p, sources, source_positions, tx_powers, sigma_db, bias_db, rng)
        for p in true_positions
    ]
    print(f"   {n_queries} queries, noise {sigma_db} dB, offset {bias_db} dB")

    print("\n3. Estimating...")
    results = {}
    for label, no_mean in [("No-mean finder", True), ("Plain finder", False)]:
        estimator = FingerprintPositionAndRadioSourceEstimator(
            dim=2,
            located_fingerprints=database,
            min_nearest_fingerprints=20,
            max_nearest_fingerprints=40,
            use_no_mean_nearest_fingerprint_finder=no_mean,
            fallback_rssi_standard_deviation=sigma_db,
        )
        results[label] = run_queries(estimator, queries, true_positions)

    print("\n" + "=" * 70)
    print(f"{'Finder':<20} {'RMSE (m)':<12} {'90th % (m)':<12} {'Failures':<10} {'Time (ms)':<10}")
    print("-" * 70)
    for label, r in results.items():
        print(f"{label:<20} {r['rmse']:<12.2f} {r['p90']:<12.2f} "
              f"{r['failures']:<10d} {r['mean_time_ms']:<10.1f}")

    # Single detailed estimate
    estimator = FingerprintPositionAndRadioSourceEstimator(
        dim=2,
        located_fingerprints=database,
        fingerprint=queries[0],
        min_nearest_fingerprints=20,
        max_nearest_fingerprints=40,
        fallback_rssi_standard_deviation=sigma_db,
    )
    result = estimator.estimate()
    print(f"\n   Query 0: true {true_positions[0]}, estimated {result.position}")
    if result.position_covariance is not None:
        print(f"   Position std: {np.sqrt(np.diag(result.position_covariance))}")
    print(f"   chi_sq: {result.chi_sq:.2f} over {len(result.nearest_fingerprints)} fingerprints")

    print("\n4. Generating visualizations...")
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    locations = np.array([fp.position for fp in database])
    ax1.scatter(locations[:, 0], locations[:, 1], c="lightgray", marker="s", s=20,
                label="Reference Points")
    ax1.scatter(source_positions[:, 0], source_positions[:, 1], c="blue", marker="^", s=80,
                label="True APs")
    estimated = np.array([s.position for s in result.located_sources])
    if len(estimated):
        ax1.scatter(estimated[:, 0], estimated[:, 1], c="orange", marker="v", s=80,
                    label="Estimated APs")
    ax1.scatter(*true_positions[0], c="red", marker="x", s=80, label="True Receiver")
    ax1.scatter(*result.position, c="green", marker="+", s=120, label="Estimated Receiver")
    ax1.set_xlabel("X (m)")
    ax1.set_ylabel("Y (m)")
    ax1.set_title("Joint Estimate (Query 0)")
    ax1.legend(fontsize=8)
    ax1.grid(True, alpha=0.3)
    ax1.axis("equal")

    for label, r in results.items():
        if len(r["errors"]) == 0:
            continue
        sorted_errors = np.sort(r["errors"])
        cdf = np.arange(1, len(sorted_errors) + 1) / len(sorted_errors)
        ax2.plot(sorted_errors, cdf, label=label, linewidth=2)
    ax2.set_xlabel("Positioning Error (m)")
    ax2.set_ylabel("CDF")
    ax2.set_title("Receiver Error with a Gain Offset")
    ax2.legend()
    ax2.grid(True, alpha=0.3)

    plt.tight_layout()

    output_file = Path(__file__).parent / "joint_estimation.png"
    plt.savefig(output_file, dpi=150, bbox_inches="tight")
    print(f"   Saved: {output_file}")

    plt.show()

    print("\n" + "=" * 70)
    print("Example complete!")
    print("=" * 70)


if __name__ == "__main__":
    main()
