"""Agents: straight-line motion, predictive collisions, and transmission.

Motion (once per DURING tick, every non-DEAD agent, global sequence order):
    1. With probability p = |Normal(mean, stdev)|, draw a new direction
       uniformly from the eight DIRECTIONS (scaled by speed).
    2. Reflect dx (dy) if the projected position x+dx (y+dy) would cross
       the owning cluster's wall (billiard style, per-cluster box).
    3. Test against every OTHER non-DEAD agent in the simulation: a pair
       collides if the centres are closer than the sum of radii now, or
       would be after both apply their current velocities.
    4. On collision: swap velocities (elastic mode; only the lower-id agent
       of the pair performs the swap) and attempt transmission.
    5. Apply velocity, clamp back inside the cluster.

Transmission: exactly one member SUSCEPTIBLE, the other with
infectiousness > 0 → one Bernoulli(infectiousness) trial; success appends
INFECTED_EXPOSED to the susceptible agent's history.

Compartment transitions: first-match-wins over the ordered outgoing edges
of the agent's current compartment, one U[0, 1) draw per edge tried.

The pairwise scan is O(n²). A vectorized distance prefilter
(candidate_neighbours) discards pairs that cannot collide this tick; the
exact sequential test then runs on the survivors in sequence order, so
outcomes match a full brute-force scan draw for draw.
"""

from __future__ import annotations

import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

import numpy as np

from epiagents.compartments import is_absorbing
from epiagents.types import (
    DIRECTIONS,
    INFECTED_EXPOSED,
    N_DIRECTIONS,
    SUSCEPTIBLE,
    AgentView,
    HistoryEntry,
    Marker,
)

if TYPE_CHECKING:
    from epiagents.simulation import Cluster


# ═══════════════════════════════════════════════════════════════════════
# AGENT
# ═══════════════════════════════════════════════════════════════════════

class Agent:
    """A point mass with an append-only compartment history.

    The cluster link is weak: clusters are owned by the Simulation, agents
    only use them for geometry and catalog lookups.
    """

    __slots__ = ('agent_id', 'x', 'y', 'dx', 'dy', 'radius', 'speed',
                 'history', '_cluster_ref')

    def __init__(
        self,
        agent_id: int,
        cluster: 'Cluster',
        x: float,
        y: float,
        radius: float,
        speed: float,
        dx: float = 0.0,
        dy: float = 0.0,
    ):
        self.agent_id = agent_id
        self.x = float(x)
        self.y = float(y)
        self.dx = float(dx)
        self.dy = float(dy)
        self.radius = float(radius)
        self.speed = float(speed)
        self.history: List[HistoryEntry] = []
        self._cluster_ref = weakref.ref(cluster)

    def __repr__(self) -> str:
        state = self.history[-1].compartment if self.history else None
        return (f"Agent(id={self.agent_id}, x={self.x:.2f}, y={self.y:.2f}, "
                f"compartment={state})")

    @property
    def cluster(self) -> 'Cluster':
        cluster = self._cluster_ref()
        if cluster is None:
            raise RuntimeError(f"Agent {self.agent_id} outlived its cluster")
        return cluster

    @property
    def compartment(self) -> str:
        """Current compartment: the last history entry."""
        return self.history[-1].compartment

    @property
    def is_dead(self) -> bool:
        return bool(self.history) and is_absorbing(self.history[-1].compartment)

    @property
    def infectiousness(self) -> float:
        return self.cluster.catalog.infectiousness(self.compartment)

    @property
    def color(self) -> str:
        return self.cluster.catalog.color(self.compartment)

    def record(self, marker: Marker, compartment: str) -> None:
        """Append a compartment change. History is never rewritten."""
        self.history.append(HistoryEntry(marker, compartment))

    def set_direction(self, rng: np.random.Generator) -> None:
        """Pick one of the eight directions uniformly, scaled by speed."""
        k = int(rng.integers(N_DIRECTIONS))
        self.dx = float(DIRECTIONS[k, 0]) * self.speed
        self.dy = float(DIRECTIONS[k, 1]) * self.speed

    def reflect(self) -> None:
        """Flip dx/dy independently if the next step would cross a wall."""
        c = self.cluster
        nx = self.x + self.dx
        ny = self.y + self.dy
        if nx >= c.right - self.radius or nx <= c.left + self.radius:
            self.dx = -self.dx
        if ny >= c.bottom - self.radius or ny <= c.top + self.radius:
            self.dy = -self.dy

    def correct_position(self) -> None:
        """Clamp the agent's disc back inside its cluster."""
        c = self.cluster
        if self.x - self.radius < c.left:
            self.x = c.left + self.radius
        elif self.x + self.radius > c.right:
            self.x = c.right - self.radius
        if self.y - self.radius < c.top:
            self.y = c.top + self.radius
        elif self.y + self.radius > c.bottom:
            self.y = c.bottom - self.radius

    def view(self) -> AgentView:
        return AgentView(
            agent_id=self.agent_id,
            x=self.x,
            y=self.y,
            radius=self.radius,
            compartment=self.compartment,
            color=self.color,
            cluster=self.cluster.name,
        )

    def describe_history(self) -> str:
        """Human-readable audit trail, e.g. '(S - susceptible) (4 - exposed)'."""
        catalog = self.cluster.catalog
        parts = []
        for marker, name in self.history:
            desc = catalog[name].description if name in catalog else name
            parts.append(f"({marker} - {desc})")
        return f"Agent {self.agent_id}: [" + " ".join(parts) + "]"


# ═══════════════════════════════════════════════════════════════════════
# COLLISIONS & TRANSMISSION
# ═══════════════════════════════════════════════════════════════════════

def overlapping(a: Agent, b: Agent) -> bool:
    """Discs overlap at their current positions."""
    rr = a.radius + b.radius
    ddx = a.x - b.x
    ddy = a.y - b.y
    return ddx * ddx + ddy * ddy < rr * rr


def will_overlap(a: Agent, b: Agent) -> bool:
    """Discs overlap after both apply their current velocities."""
    rr = a.radius + b.radius
    ddx = (a.x + a.dx) - (b.x + b.dx)
    ddy = (a.y + a.dy) - (b.y + b.dy)
    return ddx * ddx + ddy * ddy < rr * rr


def attempt_transmission(
    a: Agent,
    b: Agent,
    marker: Marker,
    rng: np.random.Generator,
) -> bool:
    """One Bernoulli transmission trial for a colliding pair.

    Symmetric in (a, b). Only the susceptible member's history changes.

    Returns:
        True if the susceptible member became INFECTED_EXPOSED.
    """
    a_sus = a.compartment == SUSCEPTIBLE
    b_sus = b.compartment == SUSCEPTIBLE
    if a_sus == b_sus:
        return False
    target, source = (a, b) if a_sus else (b, a)
    risk = source.infectiousness
    if risk <= 0:
        return False
    if rng.random() < risk:
        target.record(marker, INFECTED_EXPOSED)
        return True
    return False


@dataclass
class MotionStats:
    """Per-tick motion diagnostics."""
    collisions: int = 0      # pairs found overlapping at current positions
    swaps: int = 0           # elastic velocity swaps performed
    infections: int = 0      # successful transmissions


def _max_velocity(agents: Sequence[Agent]) -> float:
    vmax = 0.0
    for a in agents:
        v = max(np.hypot(a.dx, a.dy), a.speed * np.sqrt(2.0))
        if v > vmax:
            vmax = v
    return float(vmax)


def candidate_neighbours(
    i: int,
    xs: np.ndarray,
    ys: np.ndarray,
    radii: np.ndarray,
    active: np.ndarray,
    vmax: float,
) -> np.ndarray:
    """Indices j != i that could collide with agent i this tick.

    A pair whose centres are at least r_i + r_j + 2·vmax apart can overlap
    neither now nor after one step, whatever velocities they swap into.
    """
    reach = radii[i] + radii + 2.0 * vmax
    d2 = (xs - xs[i]) ** 2 + (ys - ys[i]) ** 2
    mask = active & (d2 < reach * reach)
    mask[i] = False
    return np.flatnonzero(mask)


def move_agents(
    agents: Sequence[Agent],
    marker: Marker,
    motion_rng: np.random.Generator,
    infection_rng: np.random.Generator,
    elastic_collisions: bool = True,
    randomness_mean: float = 0.0,
    randomness_stdev: float = 0.0,
) -> MotionStats:
    """Move every non-DEAD agent one tick, resolving collisions (in-place).

    Args:
        agents: Global agent sequence (all clusters).
        marker: Iteration marker recorded on new infections.
        motion_rng: Stream for movement randomness and direction draws.
        infection_rng: Stream for transmission trials.
        elastic_collisions: Swap velocities of colliding pairs.
        randomness_mean, randomness_stdev: Parameters of the per-tick
            direction-change probability |Normal(mean, stdev)|.

    Returns:
        MotionStats for this tick.
    """
    stats = MotionStats()
    n = len(agents)
    if n == 0:
        return stats

    xs = np.fromiter((a.x for a in agents), dtype=np.float64, count=n)
    ys = np.fromiter((a.y for a in agents), dtype=np.float64, count=n)
    radii = np.fromiter((a.radius for a in agents), dtype=np.float64, count=n)
    active = np.fromiter((not a.is_dead for a in agents), dtype=bool, count=n)
    vmax = _max_velocity(agents)
    randomize = randomness_mean != 0.0 or randomness_stdev != 0.0

    for i, agent in enumerate(agents):
        if not active[i]:
            continue

        if randomize:
            p = abs(motion_rng.normal(randomness_mean, randomness_stdev))
            if motion_rng.random() < p:
                agent.set_direction(motion_rng)

        agent.reflect()

        for j in candidate_neighbours(i, xs, ys, radii, active, vmax):
            other = agents[j]
            if overlapping(agent, other):
                stats.collisions += 1
            elif not will_overlap(agent, other):
                continue
            if elastic_collisions and agent.agent_id < other.agent_id:
                agent.dx, other.dx = other.dx, agent.dx
                agent.dy, other.dy = other.dy, agent.dy
                stats.swaps += 1
            if attempt_transmission(agent, other, marker, infection_rng):
                stats.infections += 1

        agent.x += agent.dx
        agent.y += agent.dy
        agent.correct_position()
        xs[i] = agent.x
        ys[i] = agent.y

    return stats


# ═══════════════════════════════════════════════════════════════════════
# COMPARTMENT TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════

def advance_compartment(
    agent: Agent,
    marker: Marker,
    rng: np.random.Generator,
) -> Optional[str]:
    """First-match-wins transition for one agent.

    Edges are tried in insertion order with an independent U[0, 1) draw
    each; the first success is committed and evaluation stops.

    Returns:
        The destination compartment, or None if the agent stayed put.
    """
    current = agent.compartment
    if is_absorbing(current):
        return None
    for target, probability in agent.cluster.catalog.transitions(current).items():
        if rng.random() < probability:
            agent.record(marker, target)
            return target
    return None


def advance_agents(
    agents: Sequence[Agent],
    marker: Marker,
    rng: np.random.Generator,
) -> int:
    """Apply advance_compartment to every agent. Returns the transition count."""
    n_transitions = 0
    for agent in agents:
        if advance_compartment(agent, marker, rng) is not None:
            n_transitions += 1
    return n_transitions
