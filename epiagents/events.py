"""Event pipeline: the work done in each phase.

Every phase (BEFORE, DURING, AFTER) runs an ordered list of
SimulationEvent objects. The engine's own list runs once per phase; each
cluster may add its own events, which run afterwards in cluster order and
receive that cluster.

Engine defaults:
    BEFORE:  CalculateCounters, RecordResult
    DURING:  AdvanceCompartments, MoveAgents, CalculateCounters, RecordResult
    AFTER:   CalculateCounters, RecordResult

Custom events subclass SimulationEvent (or wrap a function with
CallbackEvent). They may read anything on the simulation and call its
documented mutation operations; they run inside the tick, so they never
race with the scheduler.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from epiagents.agents import advance_agents, move_agents
from epiagents.types import EventPhase

if TYPE_CHECKING:
    from epiagents.simulation import Cluster, Simulation

logger = logging.getLogger(__name__)


class SimulationEvent:
    """One pipeline stage. Subclasses override run()."""

    name = "event"

    def run(self, simulation: 'Simulation', cluster: Optional['Cluster'] = None) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class AdvanceCompartments(SimulationEvent):
    """First-match-wins compartment transitions for every agent."""

    name = "advance"

    def run(self, simulation, cluster=None):
        n = advance_agents(simulation.agents, simulation.iteration,
                           simulation.rngs['transition'])
        logger.debug("iteration %d: %d transitions", simulation.iteration, n)


class MoveAgents(SimulationEvent):
    """Motion, collisions, and transmission for every agent."""

    name = "move"

    def run(self, simulation, cluster=None):
        ag = simulation.config.agents
        stats = move_agents(
            simulation.agents,
            simulation.iteration,
            simulation.rngs['motion'],
            simulation.rngs['infection'],
            elastic_collisions=ag.elastic_collisions,
            randomness_mean=ag.movement_randomness_mean,
            randomness_stdev=ag.movement_randomness_stdev,
        )
        simulation.collisions += stats.collisions
        simulation.counters.increment('total_simulation_infections', stats.infections)
        logger.debug("iteration %d: %d collisions, %d swaps, %d infections",
                     simulation.iteration, stats.collisions, stats.swaps,
                     stats.infections)


class CalculateCounters(SimulationEvent):
    """Rebuild current-state counters from the agent set."""

    name = "calculate"

    def run(self, simulation, cluster=None):
        simulation.counters.recompute(simulation.agents)


class RecordResult(SimulationEvent):
    """Append a results row for the current phase."""

    name = "record"

    def run(self, simulation, cluster=None):
        simulation.results.record(simulation.current_marker(), simulation.counters)


class CallbackEvent(SimulationEvent):
    """Adapter for a plain function fn(simulation, cluster)."""

    def __init__(self, fn: Callable[['Simulation', Optional['Cluster']], None],
                 name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, '__name__', 'callback')

    def run(self, simulation, cluster=None):
        self.fn(simulation, cluster)

    def __repr__(self) -> str:
        return f"CallbackEvent({self.name})"


def as_event(obj) -> SimulationEvent:
    """Accept a SimulationEvent or a callable(simulation, cluster)."""
    if isinstance(obj, SimulationEvent):
        return obj
    if callable(obj):
        return CallbackEvent(obj)
    raise TypeError(f"Not a SimulationEvent or callable: {obj!r}")


def default_events(phase: EventPhase) -> List[SimulationEvent]:
    """Fresh instances of the engine's events for one phase."""
    if phase == EventPhase.DURING:
        return [AdvanceCompartments(), MoveAgents(), CalculateCounters(), RecordResult()]
    return [CalculateCounters(), RecordResult()]


class PhasePipeline:
    """Three ordered event lists, one per EventPhase."""

    def __init__(
        self,
        before: Iterable = (),
        during: Iterable = (),
        after: Iterable = (),
    ):
        self._events: Dict[EventPhase, List[SimulationEvent]] = {
            EventPhase.BEFORE: [as_event(e) for e in before],
            EventPhase.DURING: [as_event(e) for e in during],
            EventPhase.AFTER: [as_event(e) for e in after],
        }

    @classmethod
    def engine_defaults(cls) -> 'PhasePipeline':
        return cls(
            before=default_events(EventPhase.BEFORE),
            during=default_events(EventPhase.DURING),
            after=default_events(EventPhase.AFTER),
        )

    def events(self, phase: EventPhase) -> List[SimulationEvent]:
        return self._events[phase]

    def add(self, phase: EventPhase, event) -> SimulationEvent:
        event = as_event(event)
        self._events[phase].append(event)
        return event

    def remove(self, phase: EventPhase, event: SimulationEvent) -> None:
        self._events[phase].remove(event)

    def run(self, phase: EventPhase, simulation: 'Simulation',
            cluster: Optional['Cluster'] = None) -> None:
        for event in list(self._events[phase]):
            event.run(simulation, cluster)

    def __len__(self) -> int:
        return sum(len(v) for v in self._events.values())
