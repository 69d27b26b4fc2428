"""Core data types for EpiAgents.

This module is the SINGLE SOURCE OF TRUTH for:
  - SimulationPhase, EventPhase enumerations
  - The eight fixed motion directions (DIRECTIONS)
  - Sentinel compartment names and results-log phase markers
  - Inter-module records (HistoryEntry, AgentView)
  - Configuration exceptions

All modules import these types from here.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import NamedTuple, Union

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class SimulationPhase(IntEnum):
    """Run state of the scheduling state machine.

    PAUSED  →  PLAYING:  play()
    PLAYING →  PAUSED:   pause(), stop(), or iteration cap reached
    """
    PAUSED  = 0
    PLAYING = 1


class EventPhase(IntEnum):
    """Which event pipeline is (or was last) executing."""
    BEFORE = 0   # Pre-run snapshot, once, before the first tick
    DURING = 1   # Repeating simulation step (one tick)
    AFTER  = 2   # Post-run snapshot, once per stop()


# ═══════════════════════════════════════════════════════════════════════
# MOTION
# ═══════════════════════════════════════════════════════════════════════

# Unit direction vectors (dx, dy); velocity = DIRECTIONS[k] * speed.
# Diagonals are deliberately not normalized.
DIRECTIONS = np.array([
    [-1, -1], [-1, 0], [-1, 1], [0, -1],
    [0, 1],   [1, -1], [1, 0],  [1, 1],
], dtype=np.float64)

N_DIRECTIONS = len(DIRECTIONS)


# ═══════════════════════════════════════════════════════════════════════
# COMPARTMENT SENTINELS & RESULT MARKERS
# ═══════════════════════════════════════════════════════════════════════

SUSCEPTIBLE = "SUSCEPTIBLE"            # the only compartment that can be infected
INFECTED_EXPOSED = "INFECTED_EXPOSED"  # entry compartment after transmission
DEAD = "DEAD"                          # absorbing; no motion, collision, transitions

START_MARKER = "S"   # history/results marker for initial draws and BEFORE rows
END_MARKER = "E"     # results marker for AFTER rows

Marker = Union[int, str]


# ═══════════════════════════════════════════════════════════════════════
# INTER-MODULE RECORDS
# ═══════════════════════════════════════════════════════════════════════

class Bounds(NamedTuple):
    """Axis-aligned cluster rectangle in canvas coordinates (y grows down)."""
    left: float
    top: float
    right: float
    bottom: float


class HistoryEntry(NamedTuple):
    """One compartment change in an agent's audit trail."""
    marker: Marker        # iteration index, or START_MARKER for the initial draw
    compartment: str


@dataclass(frozen=True)
class AgentView:
    """Read-only per-agent state handed to renderers."""
    agent_id: int
    x: float
    y: float
    radius: float
    compartment: str
    color: str
    cluster: str


# ═══════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════

class ConfigurationError(ValueError):
    """Invalid simulation, cluster, or catalog configuration."""


class UnknownCompartmentError(ConfigurationError, KeyError):
    """A catalog operation referenced a compartment that does not exist."""

    def __init__(self, name: str, operation: str = ""):
        self.name = name
        self.operation = operation
        where = f" in {operation}" if operation else ""
        super().__init__(f"Unknown compartment{where}: {name!r}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]
