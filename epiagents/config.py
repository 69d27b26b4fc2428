"""Configuration system for EpiAgents.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → programmatic overrides

Layout (top-level YAML keys map 1:1 to sections):

    simulation:
      width: 320
      height: 320
      interval: 0.05        # seconds between ticks while playing
      max_iterations: 500   # 0 = unbounded
      seed: 42              # omit for an unseeded run
    agents:
      radius: 3
      speed: 1.0
      elastic_collisions: true
    clusters:
      - name: town
        right: 160
        num_agents: 100
        compartment_overrides:
          SUSCEPTIBLE: {initial_ratio: 90}

A cluster takes either a full `compartments` mapping (replaces the default
catalog) or `compartment_overrides` (patches the default catalog).
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from epiagents.compartments import CompartmentCatalog, default_catalog
from epiagents.types import ConfigurationError, UnknownCompartmentError

__all__ = [
    'AgentSection',
    'ClusterSection',
    'ConfigurationError',
    'SimulationConfig',
    'SimulationSection',
    'UnknownCompartmentError',
    'build_catalog',
    'config_to_dict',
    'deep_merge',
    'default_config',
    'load_config',
    'validate_config',
]


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Canvas, timing, and run control."""
    name: Optional[str] = None
    description: Optional[str] = None
    width: float = 320.0
    height: float = 320.0
    interval: float = 0.0          # seconds between scheduled ticks
    max_iterations: int = 0        # 0 = unbounded
    seed: Optional[int] = None     # None = fresh entropy each run


@dataclass
class AgentSection:
    """Per-agent physical parameters (shared by every cluster)."""
    radius: float = 3.0
    speed: float = 1.0
    movement_randomness_mean: float = 0.0   # |Normal(mean, stdev)| = P(new direction) per tick
    movement_randomness_stdev: float = 0.0
    elastic_collisions: bool = True


@dataclass
class ClusterSection:
    """One rectangular cluster.

    right/bottom default to the canvas width/height.
    """
    name: str = "default"
    left: float = 0.0
    top: float = 0.0
    right: Optional[float] = None
    bottom: Optional[float] = None
    num_agents: int = 0
    border: bool = True
    border_color: str = "black"
    compartments: Optional[Dict[str, Dict[str, Any]]] = None
    compartment_overrides: Optional[Dict[str, Dict[str, Any]]] = None


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    agents: AgentSection = field(default_factory=AgentSection)
    clusters: List[ClusterSection] = field(default_factory=lambda: [ClusterSection()])


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    Dicts merge recursively; everything else (including lists, so a
    scenario's `clusters` list replaces the base list) is replaced.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    simulation = (
        _dict_to_section(SimulationSection, data['simulation'])
        if isinstance(data.get('simulation'), dict) else SimulationSection()
    )
    agents = (
        _dict_to_section(AgentSection, data['agents'])
        if isinstance(data.get('agents'), dict) else AgentSection()
    )
    clusters = [ClusterSection()]
    if isinstance(data.get('clusters'), list):
        clusters = [
            _dict_to_section(ClusterSection, dict(c))
            for c in data['clusters'] if isinstance(c, dict)
        ]
    return SimulationConfig(simulation=simulation, agents=agents, clusters=clusters)


def config_to_dict(config: SimulationConfig) -> Dict[str, Any]:
    """Plain-dict form of a config (YAML-serializable, reloadable)."""
    return dataclasses.asdict(config)


def build_catalog(section: ClusterSection) -> CompartmentCatalog:
    """Build the compartment catalog a cluster section describes."""
    if section.compartments is not None:
        if section.compartment_overrides:
            raise ConfigurationError(
                f"cluster '{section.name}': give either compartments or "
                f"compartment_overrides, not both"
            )
        return CompartmentCatalog.from_dict(section.compartments)
    return default_catalog(section.compartment_overrides)


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Checks:
      - Canvas and agent geometry are positive
      - Run control values are non-negative
      - Every cluster rectangle is non-degenerate
      - Every cluster catalog is well formed, and a cluster that starts
        with agents has a positive total initial-ratio weight
    """
    sim = config.simulation
    if sim.width <= 0 or sim.height <= 0:
        raise ConfigurationError(
            f"simulation width/height must be positive, got {sim.width}x{sim.height}"
        )
    if sim.interval < 0:
        raise ConfigurationError(
            f"simulation.interval must be >= 0, got {sim.interval}"
        )
    if sim.max_iterations < 0:
        raise ConfigurationError(
            f"simulation.max_iterations must be >= 0, got {sim.max_iterations}"
        )
    if sim.seed is not None and sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")

    ag = config.agents
    if ag.radius <= 0:
        raise ConfigurationError(f"agents.radius must be positive, got {ag.radius}")
    if ag.movement_randomness_stdev < 0:
        raise ConfigurationError(
            f"agents.movement_randomness_stdev must be >= 0, "
            f"got {ag.movement_randomness_stdev}"
        )

    if not config.clusters:
        raise ConfigurationError("at least one cluster is required")

    for i, cl in enumerate(config.clusters):
        right = sim.width if cl.right is None else cl.right
        bottom = sim.height if cl.bottom is None else cl.bottom
        if right <= cl.left or bottom <= cl.top:
            raise ConfigurationError(
                f"clusters[{i}] ('{cl.name}') has a degenerate rectangle: "
                f"left={cl.left}, top={cl.top}, right={right}, bottom={bottom}"
            )
        if cl.num_agents < 0:
            raise ConfigurationError(
                f"clusters[{i}].num_agents must be >= 0, got {cl.num_agents}"
            )
        if cl.left < 0 or cl.top < 0 or right > sim.width or bottom > sim.height:
            warnings.warn(
                f"clusters[{i}] ('{cl.name}') extends beyond the "
                f"{sim.width}x{sim.height} canvas",
                UserWarning,
                stacklevel=2,
            )
        catalog = build_catalog(cl)
        if cl.num_agents > 0 and not catalog.total_initial_ratio() > 0:
            raise ConfigurationError(
                f"clusters[{i}] ('{cl.name}') has {cl.num_agents} agents but "
                f"a zero total initial ratio"
            )


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config(num_agents: int = 0) -> SimulationConfig:
    """Return a SimulationConfig with all default values.

    Args:
        num_agents: Agent count of the single default cluster.
    """
    config = SimulationConfig(clusters=[ClusterSection(num_agents=num_agents)])
    validate_config(config)
    return config
