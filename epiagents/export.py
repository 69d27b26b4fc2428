"""Export a run to disk.

Three files, all plain text:
    results CSV   '#' column then one column per counter; rows S, 0..n-1, E
    agents CSV    agent,iteration,state, one row per history entry
    config YAML   the simulation's configuration, reloadable with load_config()
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Union

import yaml

from epiagents.config import config_to_dict

if TYPE_CHECKING:
    from epiagents.simulation import Simulation

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

AGENT_HISTORY_HEADER = ['agent', 'iteration', 'state']


def write_results_csv(sim: 'Simulation', path: PathLike, printable_only: bool = False) -> Path:
    """Write the results log with its '#' header row."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with sim.lock:
        header = sim.results_header(printable_only)
        columns = [sim.results.counter_names.index(n) + 1 for n in header[1:]]
        rows = [[row[0]] + [row[i] for i in columns] for row in sim.results]
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)
    logger.info("wrote %d result rows to %s", len(rows), path)
    return path


def write_agents_csv(sim: 'Simulation', path: PathLike) -> Path:
    """Write every agent's compartment history."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with sim.lock:
        records = list(sim.agent_history_records())
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(AGENT_HISTORY_HEADER)
        writer.writerows(records)
    logger.info("wrote %d history records to %s", len(records), path)
    return path


def write_config_yaml(sim: 'Simulation', path: PathLike) -> Path:
    """Dump the configuration, with each cluster's current catalog inlined."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with sim.lock:
        data = config_to_dict(sim.config)
        for section, cluster in zip(data['clusters'], sim.clusters):
            section.update(
                left=cluster.left, top=cluster.top,
                right=cluster.right, bottom=cluster.bottom,
                num_agents=cluster.target_agent_count,
                compartments=cluster.catalog.to_dict(),
                compartment_overrides=None,
            )
    with open(path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    logger.info("wrote configuration to %s", path)
    return path


def export_run(sim: 'Simulation', out_dir: PathLike, prefix: str = 'epiagents') -> dict:
    """Write all three exports into out_dir. Returns {kind: path}."""
    out_dir = Path(out_dir)
    return {
        'results': write_results_csv(sim, out_dir / f"{prefix}_results.csv"),
        'agents': write_agents_csv(sim, out_dir / f"{prefix}_agents.csv"),
        'config': write_config_yaml(sim, out_dir / f"{prefix}_config.yaml"),
    }
