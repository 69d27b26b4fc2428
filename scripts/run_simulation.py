#!/usr/bin/env python3
"""Run an EpiAgents simulation headless and export its results.

Loads a YAML configuration (or the defaults), initializes the population,
ticks synchronously, then writes the results CSV, the agent-history CSV,
and the configuration used. Optionally saves a counters chart.

Usage:
    python scripts/run_simulation.py --agents 200 --iterations 300
    python scripts/run_simulation.py configs/two_towns.yaml --seed 7
    python scripts/run_simulation.py configs/two_towns.yaml --plot -v

References:
    - epiagents/config.py: load_config, default_config
    - epiagents/simulation.py: Simulation
    - epiagents/export.py: export_run
"""

import argparse
import logging
import sys
import time
from pathlib import Path

# ── Project imports ──────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from epiagents.config import default_config, load_config
from epiagents.export import export_run
from epiagents.simulation import Simulation

logger = logging.getLogger("run_simulation")


def build_config(args):
    overrides = {}
    if args.seed is not None:
        overrides.setdefault('simulation', {})['seed'] = args.seed
    if args.iterations is not None:
        overrides.setdefault('simulation', {})['max_iterations'] = args.iterations

    if args.config is None:
        config = default_config(num_agents=args.agents)
        for key, value in overrides.get('simulation', {}).items():
            setattr(config.simulation, key, value)
        return config
    return load_config(args.config, args.scenario, overrides or None)


def main():
    parser = argparse.ArgumentParser(
        description="Run an EpiAgents simulation and export the results.",
        epilog="Example: python scripts/run_simulation.py --agents 200 --iterations 300",
    )
    parser.add_argument(
        "config", nargs="?", default=None,
        help="Base YAML configuration (default: built-in single cluster)",
    )
    parser.add_argument(
        "--scenario", type=str, default=None,
        help="Scenario YAML deep-merged over the base configuration",
    )
    parser.add_argument(
        "--agents", type=int, default=100,
        help="Agent count when no config file is given (default: 100)",
    )
    parser.add_argument(
        "--iterations", type=int, default=None,
        help="Iteration cap (overrides simulation.max_iterations)",
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Master random seed",
    )
    parser.add_argument(
        "--output-dir", type=str, default="results/epiagents",
        help="Directory for exported files (default: results/epiagents)",
    )
    parser.add_argument(
        "--plot", action="store_true",
        help="Also save a counters chart (needs matplotlib)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    config = build_config(args)
    if config.simulation.max_iterations <= 0:
        parser.error("an iteration cap is required: pass --iterations or set "
                     "simulation.max_iterations")

    sim = Simulation(config)
    sim.initialize()

    t0 = time.perf_counter()
    sim.run()
    elapsed = time.perf_counter() - t0
    logger.info("%d iterations in %.2fs (%d collisions)",
                sim.iteration, elapsed, sim.collisions)

    paths = export_run(sim, args.output_dir)
    if args.plot:
        from epiagents.viz import save_counters_plot
        paths['plot'] = save_counters_plot(sim, Path(args.output_dir) / "epiagents_counters.png")

    final = sim.counter_snapshot()
    for name in sim.counters.printable_names():
        print(f"  {name:<30s} {final[name]:>8d}")
    for kind, path in paths.items():
        print(f"  {kind:<8s} → {path}")


if __name__ == "__main__":
    main()
