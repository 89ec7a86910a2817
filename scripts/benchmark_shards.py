#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import time

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from portfolio_engine import finalize_partial_result, merge_partial_results, run_simulation_batch
from return_sampler import GbmReturnSampler


def _random_population(size, assets, seed):
    rng = np.random.default_rng(seed)
    weights = rng.random((size, assets))
    return weights / weights.sum(axis=1, keepdims=True)


def _sampler(args):
    return GbmReturnSampler(
        periods=args.periods,
        assets=args.assets,
        drift_annual=0.07,
        volatility_annual=0.18,
        time_horizon_in_days=args.horizon_days,
        correlation=0.3,
        seed=args.seed,
    )


def run_case(name, runner):
    t0 = time.perf_counter()
    result = runner()
    elapsed = time.perf_counter() - t0
    print(f"\n{name}")
    print(f"  elapsed_s:             {elapsed:.3f}")
    print(f"  best_return:           {result.best_return:.4f}")
    print(f"  best_volatility:       {result.best_volatility:.6f}")
    print(f"  best_sharpe:           {result.best_sharpe:.4f}")
    print(f"  mean_sharpe:           {result.population_average_sharpe:.4f}")
    return elapsed, result


def main():
    parser = argparse.ArgumentParser(description="Compare one combined batch against sharded batches merged by addition.")
    parser.add_argument("--population-size", type=int, default=2_000)
    parser.add_argument("--assets", type=int, default=8)
    parser.add_argument("--periods", type=int, default=30)
    parser.add_argument("--horizon-days", type=float, default=30.0)
    parser.add_argument("--iterations", type=int, default=200)
    parser.add_argument("--shards", type=int, default=4)
    parser.add_argument("--seed", type=int, default=123)
    args = parser.parse_args()

    population = _random_population(args.population_size, args.assets, args.seed)
    config = {"evaluation": {"time_horizon_in_days": args.horizon_days}}

    def combined():
        partial = run_simulation_batch(population, args.iterations, config=config, sampler=_sampler(args))
        return finalize_partial_result(partial)

    def sharded():
        # one sampler shared across shards reproduces the combined run's draws
        sampler = _sampler(args)
        base, extra = divmod(args.iterations, args.shards)
        counts = [base + (1 if idx < extra else 0) for idx in range(args.shards)]
        partials = [
            run_simulation_batch(population, count, config=config, sampler=sampler)
            for count in counts
        ]
        return finalize_partial_result(merge_partial_results(partials))

    combined_elapsed, combined_result = run_case("Combined Batch", combined)
    sharded_elapsed, sharded_result = run_case(f"{args.shards} Merged Shards", sharded)

    max_diff = float(np.max(np.abs(combined_result.average_sharpe_ratios - sharded_result.average_sharpe_ratios)))
    print(f"\nMax per-portfolio sharpe difference: {max_diff:.3e}")
    if combined_elapsed > 0:
        print(f"Overhead (sharded/combined): {sharded_elapsed / combined_elapsed:.2f}x")


if __name__ == "__main__":
    main()
