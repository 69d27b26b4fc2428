"""EpiAgents: agent-based simulation of infectious disease spread.

A spatially explicit, individual-based toy model:
  - Agents move in straight lines inside rectangular clusters and bounce
    off the cluster walls (billiard style)
  - Colliding agents may swap velocities (elastic collisions) and transmit
    infection from an infectious agent to a susceptible one
  - Each agent walks a configurable compartment chain (SEIR-like by
    default) with ordered, first-match-wins transition probabilities
  - The run is driven through BEFORE / DURING / AFTER phases with a
    play / pause / step / stop state machine and a results log

Typical use:
    >>> from epiagents import Simulation, default_config
    >>> sim = Simulation(default_config())
    >>> sim.initialize()
    >>> sim.step()
"""

from epiagents.compartments import Compartment, CompartmentCatalog, default_catalog
from epiagents.config import (
    ConfigurationError,
    SimulationConfig,
    UnknownCompartmentError,
    default_config,
    load_config,
)
from epiagents.simulation import Cluster, Simulation
from epiagents.types import EventPhase, SimulationPhase

__version__ = "0.1.0"

__all__ = [
    "Cluster",
    "Compartment",
    "CompartmentCatalog",
    "ConfigurationError",
    "EventPhase",
    "Simulation",
    "SimulationConfig",
    "SimulationPhase",
    "UnknownCompartmentError",
    "default_catalog",
    "default_config",
    "load_config",
]
