"""
Naive vs Shared-Memory Greyscale Benchmark
==========================================
Times the compute stage of both greyscale kernels over a sweep of image
sizes, checks both against the CPU reference, and reports speedup with a
95% CI and t-test per size.

Usage:
    python variant_benchmark.py
    python variant_benchmark.py --sizes 512 1024 2048 4096 --runs 20
    python variant_benchmark.py --csv variant_results.csv
"""

import argparse
import csv

from numba import cuda

from gpu_greyscale.benchmark import compare_variants
from gpu_greyscale.config import detect_environment


def run_sweep(sizes, runs, warmup, clock):
    results = []
    for size in sizes:
        print(f"\n{'-' * 40}")
        print(f"{size}x{size} ({size * size:,} pixels)")
        print(f"{'-' * 40}")
        r = compare_variants(size, size, runs=runs, warmup=warmup, clock=clock)

        print(f"  Naive:  {r['naive_ms']:.3f} ms (±{r['naive_std']:.3f})")
        if r['naive_ci']:
            print(f"          95% CI: [{r['naive_ci'][0]:.3f}, {r['naive_ci'][1]:.3f}]")
        print(f"  Shared: {r['shared_ms']:.3f} ms (±{r['shared_std']:.3f})")
        if r['shared_ci']:
            print(f"          95% CI: [{r['shared_ci'][0]:.3f}, {r['shared_ci'][1]:.3f}]")
        if r['p_value'] is not None:
            print(f"  t-statistic: {r['t_stat']:.2f}, p-value: {r['p_value']:.2e}")
            if r['p_value'] < 0.05:
                print(f"  >>> SIGNIFICANT (p < 0.05) <<<")
        print(f"  Speedup: {r['speedup']:.2f}x")
        print(f"  Output matches CPU: {'✓ PASS' if r['identical'] else '✗ FAIL'}")
        results.append(r)
    return results


def main():
    parser = argparse.ArgumentParser(description='Naive vs shared-memory greyscale benchmark')
    parser.add_argument('--sizes', type=int, nargs='+', default=[512, 1024, 2048],
                        help='Square image sides (default: 512 1024 2048)')
    parser.add_argument('--runs', type=int, default=10, help='Timed runs per kernel')
    parser.add_argument('--warmup', type=int, default=3, help='Untimed runs per kernel')
    parser.add_argument('--clock', choices=['event', 'wall'], default=None,
                        help='Stage timer (default: event on a GPU, wall on the simulator)')
    parser.add_argument('--csv', help='Save results to this CSV file')
    args = parser.parse_args()

    env = detect_environment()
    clock = args.clock or ("wall" if env.simulated else "event")

    print("=" * 60)
    print("NAIVE vs SHARED-MEMORY GREYSCALE")
    print("=" * 60)
    print(f"Device: {env.describe()}")
    print(f"Runs: {args.runs} (+{args.warmup} warmup), clock: {clock}")

    results = run_sweep(args.sizes, args.runs, args.warmup, clock)

    print(f"\n{'=' * 60}")
    print("SUMMARY")
    print(f"{'=' * 60}")
    print(f"\n{'Size':<12} {'Naive':>10} {'Shared':>10} {'Speedup':>9} {'Match':>7}")
    print(f"{'-' * 52}")
    for r in results:
        size = f"{r['width']}x{r['height']}"
        print(f"{size:<12} {r['naive_ms']:>8.3f}ms {r['shared_ms']:>8.3f}ms "
              f"{r['speedup']:>8.2f}x {'yes' if r['identical'] else 'NO':>7}")

    if args.csv:
        with open(args.csv, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(["width", "height", "runs", "naive_ms", "naive_std",
                             "shared_ms", "shared_std", "speedup", "p_value", "identical"])
            for r in results:
                writer.writerow([r['width'], r['height'], r['runs'],
                                 f"{r['naive_ms']:.4f}", f"{r['naive_std']:.4f}",
                                 f"{r['shared_ms']:.4f}", f"{r['shared_std']:.4f}",
                                 f"{r['speedup']:.3f}",
                                 "" if r['p_value'] is None else f"{r['p_value']:.3e}",
                                 r['identical']])
        print(f"\n  CSV saved: {args.csv}")
    print("=" * 60)


if __name__ == "__main__":
    if cuda.is_available():
        main()
    else:
        print("CUDA not available")
