#!/usr/bin/env python3
"""
run_cma.py

Bound-constrained CMA-ES on a standard test objective

Example:
    python run_cma.py --objective rosenbrock --x0 3 3 3 --xmin -2 --xmax 2 --concurrency 4
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace

from boundcma.core.objectives import OBJECTIVES
from boundcma.model.driver import Settings, minimize
from boundcma.optim.cma.params import CmaConfig


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------
def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Bound-constrained CMA-ES")
    p.add_argument(
        "--objective",
        choices=sorted(OBJECTIVES),
        default="sphere",
        help="Objective to minimise",
    )
    p.add_argument(
        "--x0", type=float, nargs="+", default=[3.0, 3.0], help="Initial mean"
    )
    p.add_argument(
        "--xmin",
        type=float,
        nargs="+",
        default=None,
        help="Lower bounds (shorter than x0 leaves the rest unbounded)",
    )
    p.add_argument("--xmax", type=float, nargs="+", default=None, help="Upper bounds")
    p.add_argument("--sigma0", type=float, default=0.0, help="Initial step size (0: default)")
    p.add_argument("--popsize", type=int, default=0, help="Population λ (0: default)")
    p.add_argument("--concurrency", type=int, default=1, help="Parallel evaluations")
    p.add_argument("--max-gen", type=int, default=1000, help="Maximum generations")
    p.add_argument("--seed", type=int, default=None, help="Random seed")
    p.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML file with CmaConfig options; flags given explicitly override it",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p.parse_args()


# ----------------------------------------------------------------------
# Main
# ----------------------------------------------------------------------
def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    config = CmaConfig.from_yaml(args.config) if args.config else CmaConfig()
    overrides = {}
    if args.sigma0:
        overrides["init_step_size"] = args.sigma0
    if args.popsize:
        overrides["population"] = args.popsize
    if args.xmin is not None:
        overrides["xmin"] = args.xmin
    if args.xmax is not None:
        overrides["xmax"] = args.xmax
    if args.seed is not None:
        overrides["seed"] = args.seed
    config = replace(config, **overrides)

    func = OBJECTIVES[args.objective]
    res = minimize(
        func,
        args.x0,
        config,
        Settings(
            max_generations=args.max_gen,
            concurrency=args.concurrency,
            log_every=max(args.max_gen // 10, 1),
        ),
    )

    print(
        f"CMA finished in {res.wall_time_s:.2f}s  |  "
        f"{args.objective} {res.f:.8e}  |  {res.generations} gens, "
        f"{res.evaluations} evals  |  {res.stop_reason} ({res.status.value})"
    )
    print("best x:", " ".join(f"{v:.6g}" for v in res.x))
    if res.error is not None:
        print(f"error: {res.error}")


if __name__ == "__main__":
    main()
