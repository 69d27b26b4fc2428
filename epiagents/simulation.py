"""Simulation: clusters, agents, phase lifecycle, and scheduling.

Lifecycle:
  initialize()  → create agents per cluster, draw initial compartments
                  from each cluster's cumulative initial ratios, compute
                  counters
  step()        → BEFORE once (iteration 0 only), then one DURING tick
  play()        → BEFORE once if needed, then DURING ticks every
                  `interval` seconds on a TickScheduler until pause(),
                  stop(), or the iteration cap
  pause()       → cancel the timer at the next tick boundary (idempotent)
  stop()        → pause(), then AFTER once per completed run

A DURING tick runs the engine pipeline (advance → move → calculate →
record), then each cluster's own DURING events, then increments the
iteration counter. When `max_iterations` > 0 and the counter reaches it,
the engine calls stop() itself.

Concurrency: every tick and every public mutation holds one re-entrant
lock, so external edits (catalog setters, resizes, geometry) land between
ticks. Events running inside a tick may call the same operations freely.

Population resize: growing a cluster appends agents (new ids, initial
compartments drawn over the new agents only); shrinking removes agents
from the TAIL of the global sequence, which is not necessarily the
cluster being shrunk when clusters interleave.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from epiagents.agents import Agent
from epiagents.compartments import CompartmentCatalog
from epiagents.config import (
    ClusterSection,
    SimulationConfig,
    SimulationSection,
    build_catalog,
    default_config,
    validate_config,
)
from epiagents.events import PhasePipeline
from epiagents.metrics import Counters, ResultsLog
from epiagents.rng import create_rng_hierarchy, get_cluster_rng
from epiagents.scheduler import TickScheduler
from epiagents.types import (
    END_MARKER,
    INFECTED_EXPOSED,
    START_MARKER,
    SUSCEPTIBLE,
    AgentView,
    Bounds,
    ConfigurationError,
    EventPhase,
    Marker,
    SimulationPhase,
)

logger = logging.getLogger(__name__)

ClusterRef = Union['Cluster', int, str]


# ═══════════════════════════════════════════════════════════════════════
# CLUSTER
# ═══════════════════════════════════════════════════════════════════════

class Cluster:
    """A rectangular region with its own catalog, agent target, and events."""

    def __init__(
        self,
        name: str,
        left: float,
        top: float,
        right: float,
        bottom: float,
        catalog: CompartmentCatalog,
        target_agent_count: int = 0,
        index: int = 0,
        border: bool = True,
        border_color: str = "black",
        events: Optional[PhasePipeline] = None,
    ):
        if SUSCEPTIBLE in catalog and INFECTED_EXPOSED not in catalog:
            raise ConfigurationError(
                f"cluster '{name}': catalog has {SUSCEPTIBLE} but no "
                f"{INFECTED_EXPOSED} to receive transmissions"
            )
        self.name = name
        self.index = index
        self.left = float(left)
        self.top = float(top)
        self.right = float(right)
        self.bottom = float(bottom)
        self.catalog = catalog
        self.target_agent_count = int(target_agent_count)
        self.border = border
        self.border_color = border_color
        self.events = events if events is not None else PhasePipeline()

    @classmethod
    def from_section(
        cls,
        section: ClusterSection,
        canvas: SimulationSection,
        index: int = 0,
    ) -> 'Cluster':
        return cls(
            name=section.name,
            left=section.left,
            top=section.top,
            right=canvas.width if section.right is None else section.right,
            bottom=canvas.height if section.bottom is None else section.bottom,
            catalog=build_catalog(section),
            target_agent_count=section.num_agents,
            index=index,
            border=section.border,
            border_color=section.border_color,
        )

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.left, self.top, self.right, self.bottom)

    def contains(self, x: float, y: float, radius: float = 0.0) -> bool:
        return (self.left + radius <= x <= self.right - radius
                and self.top + radius <= y <= self.bottom - radius)

    def __repr__(self) -> str:
        return (f"Cluster({self.name!r}, [{self.left}, {self.top}, "
                f"{self.right}, {self.bottom}], agents={self.target_agent_count})")


# ═══════════════════════════════════════════════════════════════════════
# SIMULATION
# ═══════════════════════════════════════════════════════════════════════

class Simulation:
    """Owns clusters, agents, counters, results, and the run state machine.

    Args:
        config: Simulation configuration (defaults to default_config()).
            The simulation keeps its own deep copy.
        extra_events: Optional {EventPhase: [event, ...]} appended to the
            engine pipeline (after the defaults).
        cluster_events: Optional {cluster name or index: PhasePipeline}.
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        extra_events: Optional[Dict[EventPhase, Sequence]] = None,
        cluster_events: Optional[Dict[Union[int, str], PhasePipeline]] = None,
    ):
        if config is None:
            config = default_config()
        validate_config(config)
        self.config = copy.deepcopy(config)

        canvas = self.config.simulation
        self.clusters: List[Cluster] = [
            Cluster.from_section(section, canvas, index=i)
            for i, section in enumerate(self.config.clusters)
        ]

        self.pipeline = PhasePipeline.engine_defaults()
        for phase, events in (extra_events or {}).items():
            for event in events:
                self.pipeline.add(EventPhase(phase), event)
        for ref, pipeline in (cluster_events or {}).items():
            self._resolve_cluster(ref).events = pipeline

        self._lock = threading.RLock()
        self._scheduler: Optional[TickScheduler] = None
        self._last_scheduler: Optional[TickScheduler] = None
        self.last_error: Optional[BaseException] = None
        self.state = SimulationPhase.PAUSED
        self._reset_run_state()

    def _reset_run_state(self) -> None:
        self.rngs = create_rng_hierarchy(self.config.simulation.seed, len(self.clusters))
        self.agents: List[Agent] = []
        self._next_agent_id = 0
        self.iteration = 0
        self.event_phase = EventPhase.BEFORE
        self.collisions = 0
        self._before_done = False
        self._after_done = False
        names: List[str] = []
        for cluster in self.clusters:
            names.extend(n for n in cluster.catalog if n not in names)
        self.counters = Counters(names)
        self.results = ResultsLog(self.counters.names())

    def __repr__(self) -> str:
        return (f"Simulation(clusters={len(self.clusters)}, agents={len(self.agents)}, "
                f"iteration={self.iteration}, state={self.state.name})")

    # ── properties ───────────────────────────────────────────────────

    @property
    def lock(self) -> threading.RLock:
        """Hold to batch several external edits between two ticks."""
        return self._lock

    @property
    def playing(self) -> bool:
        return self.state == SimulationPhase.PLAYING

    @property
    def max_iterations(self) -> int:
        return self.config.simulation.max_iterations

    @property
    def interval(self) -> float:
        return self.config.simulation.interval

    @property
    def complete(self) -> bool:
        """True once the iteration cap (if any) has been reached."""
        return 0 < self.max_iterations <= self.iteration

    def current_marker(self) -> Marker:
        if self.event_phase == EventPhase.BEFORE:
            return START_MARKER
        if self.event_phase == EventPhase.AFTER:
            return END_MARKER
        return self.iteration

    def _resolve_cluster(self, ref: ClusterRef) -> Cluster:
        if isinstance(ref, Cluster):
            if ref not in self.clusters:
                raise ValueError(f"{ref!r} does not belong to this simulation")
            return ref
        if isinstance(ref, (int, np.integer)):
            return self.clusters[int(ref)]
        for cluster in self.clusters:
            if cluster.name == ref:
                return cluster
        raise KeyError(f"No cluster named {ref!r}")

    def cluster(self, ref: ClusterRef) -> Cluster:
        return self._resolve_cluster(ref)

    # ── agents ───────────────────────────────────────────────────────

    def _create_agents(self, cluster: Cluster, n: int) -> List[Agent]:
        rng = self.rngs['placement']
        ag = self.config.agents
        created = []
        for _ in range(n):
            agent = Agent(
                agent_id=self._next_agent_id,
                cluster=cluster,
                x=rng.random() * cluster.width + cluster.left,
                y=rng.random() * cluster.height + cluster.top,
                radius=ag.radius,
                speed=ag.speed,
            )
            self._next_agent_id += 1
            agent.correct_position()
            agent.set_direction(rng)
            created.append(agent)
        self.agents.extend(created)
        logger.debug("created %d agents in cluster '%s'", n, cluster.name)
        return created

    def _assign_initial_compartments(self, cluster: Cluster, agents: Sequence[Agent]) -> None:
        if not agents:
            return
        names = cluster.catalog.draw_initial_compartments(
            len(agents), get_cluster_rng(self.rngs, cluster.index))
        for agent, name in zip(agents, names):
            agent.record(START_MARKER, name)
            if cluster.catalog.is_infectious(name):
                self.counters.increment('total_initial_infections')

    def calc_initial_ratios(self) -> None:
        """Recompute cumulative initial proportions for every populated cluster.

        Raises:
            ConfigurationError: A cluster with agents has zero total weight.
        """
        for cluster in self.clusters:
            if cluster.target_agent_count > 0:
                cluster.catalog.compute_initial_proportions()

    def initialize(self) -> None:
        """Build the population and compute initial counters.

        Re-initializing discards any previous run (agents, counters,
        results, iteration) and re-seeds the random streams.
        """
        with self._lock:
            if self.playing:
                raise RuntimeError("pause() before re-initializing a playing simulation")
            self.calc_initial_ratios()
            self._reset_run_state()
            for cluster in self.clusters:
                created = self._create_agents(cluster, cluster.target_agent_count)
                self._assign_initial_compartments(cluster, created)
            self.counters.recompute(self.agents)
            logger.info("initialized %d agents in %d clusters (%d initially infected)",
                        len(self.agents), len(self.clusters),
                        self.counters['total_initial_infections'])

    def reset(self) -> None:
        """Pause and re-initialize from the current cluster configuration."""
        self.pause()
        self.initialize()

    def set_cluster_agent_count(self, cluster: ClusterRef, n: int) -> None:
        """Grow or shrink a cluster's population target mid-run.

        Growth appends the delta as new agents in this cluster. Shrinkage
        removes agents from the tail of the global sequence.
        """
        if n < 0:
            raise ValueError(f"agent count must be >= 0, got {n}")
        with self._lock:
            c = self._resolve_cluster(cluster)
            delta = n - c.target_agent_count
            if delta > 0:
                c.catalog.compute_initial_proportions()
                created = self._create_agents(c, delta)
                self._assign_initial_compartments(c, created)
            elif delta < 0:
                self._remove_agents(-delta)
            c.target_agent_count = n
            self.counters.recompute(self.agents)
            logger.info("cluster '%s' target %d agents (delta %+d, total %d)",
                        c.name, n, delta, len(self.agents))

    def _remove_agents(self, n: int) -> List[Agent]:
        """Remove up to n agents from the tail of the global sequence."""
        with self._lock:
            n = min(n, len(self.agents))
            removed = self.agents[len(self.agents) - n:] if n else []
            del self.agents[len(self.agents) - n:]
            logger.debug("removed %d agents from the tail", n)
            return removed

    def agent(self, agent_id: int) -> Agent:
        for a in self.agents:
            if a.agent_id == agent_id:
                return a
        raise KeyError(f"No agent with id {agent_id}")

    def nearest_agent(self, x: float, y: float) -> Optional[Agent]:
        """Agent whose centre is closest to (x, y), or None if there are none."""
        if not self.agents:
            return None
        xs = np.array([a.x for a in self.agents])
        ys = np.array([a.y for a in self.agents])
        return self.agents[int(np.argmin((xs - x) ** 2 + (ys - y) ** 2))]

    # ── read access for renderers & exporters ────────────────────────

    def agent_views(self, include_dead: bool = False) -> List[AgentView]:
        with self._lock:
            return [a.view() for a in self.agents if include_dead or not a.is_dead]

    def counter_snapshot(self) -> Dict[str, int]:
        with self._lock:
            return self.counters.as_dict()

    def results_header(self, printable_only: bool = False) -> List[str]:
        printable = self.counters.printable_names() if printable_only else ()
        return self.results.header(printable)

    def agent_history_records(self) -> Iterator[Tuple[int, Marker, str]]:
        """Flat (agent_id, marker, compartment) records, agent by agent."""
        for agent in list(self.agents):
            for marker, name in list(agent.history):
                yield agent.agent_id, marker, name

    # ── catalog editing ──────────────────────────────────────────────

    def _edit_catalogs(self, clusters: Iterable[Cluster], method: str, *args) -> None:
        """Apply one catalog operation to several clusters, all or nothing.

        The edit is first rehearsed on copies; an unknown compartment in
        any cluster aborts before the real catalogs are touched.
        """
        clusters = list(clusters)
        with self._lock:
            for cluster in clusters:
                getattr(cluster.catalog.copy(), method)(*args)
            for cluster in clusters:
                getattr(cluster.catalog, method)(*args)

    def _one(self, cluster: ClusterRef) -> List[Cluster]:
        return [self._resolve_cluster(cluster)]

    # initial ratios
    def set_cluster_initial_ratio(self, cluster: ClusterRef, name: str, value: float) -> None:
        self._edit_catalogs(self._one(cluster), 'set_initial_ratio', name, value)

    def set_initial_ratio(self, name: str, value: float) -> None:
        self._edit_catalogs(self.clusters, 'set_initial_ratio', name, value)

    def set_cluster_initial_ratios(self, cluster: ClusterRef, pairs: Sequence[Tuple[str, float]]) -> None:
        self._edit_catalogs(self._one(cluster), 'set_initial_ratios', pairs)

    def set_initial_ratios(self, pairs: Sequence[Tuple[str, float]]) -> None:
        self._edit_catalogs(self.clusters, 'set_initial_ratios', pairs)

    def clear_cluster_initial_ratio(self, cluster: ClusterRef, name: str) -> None:
        self._edit_catalogs(self._one(cluster), 'clear_initial_ratio', name)

    def clear_initial_ratio(self, name: str) -> None:
        self._edit_catalogs(self.clusters, 'clear_initial_ratio', name)

    def clear_all_initial_ratios(self) -> None:
        self._edit_catalogs(self.clusters, 'clear_initial_ratios')

    # infectiousness
    def set_cluster_infectiousness(self, cluster: ClusterRef, name: str, value: float) -> None:
        self._edit_catalogs(self._one(cluster), 'set_infectiousness', name, value)

    def set_infectiousness(self, name: str, value: float) -> None:
        self._edit_catalogs(self.clusters, 'set_infectiousness', name, value)

    def set_cluster_infectiousnesses(self, cluster: ClusterRef, pairs: Sequence[Tuple[str, float]]) -> None:
        self._edit_catalogs(self._one(cluster), 'set_infectiousnesses', pairs)

    def set_infectiousnesses(self, pairs: Sequence[Tuple[str, float]]) -> None:
        self._edit_catalogs(self.clusters, 'set_infectiousnesses', pairs)

    def clear_cluster_infectiousness(self, cluster: ClusterRef, name: str) -> None:
        self._edit_catalogs(self._one(cluster), 'clear_infectiousness', name)

    def clear_infectiousness(self, name: str) -> None:
        self._edit_catalogs(self.clusters, 'clear_infectiousness', name)

    def clear_all_infectiousness(self) -> None:
        self._edit_catalogs(self.clusters, 'clear_all_infectiousness')

    # transitions
    def set_cluster_transition(self, cluster: ClusterRef, from_name: str,
                               to_name: str, probability: float) -> None:
        self._edit_catalogs(self._one(cluster), 'set_transition',
                            from_name, to_name, probability)

    def set_transition(self, from_name: str, to_name: str, probability: float) -> None:
        self._edit_catalogs(self.clusters, 'set_transition', from_name, to_name, probability)

    def set_cluster_transitions(self, cluster: ClusterRef,
                                triples: Sequence[Tuple[str, str, float]]) -> None:
        self._edit_catalogs(self._one(cluster), 'set_transitions', triples)

    def set_transitions(self, triples: Sequence[Tuple[str, str, float]]) -> None:
        self._edit_catalogs(self.clusters, 'set_transitions', triples)

    def clear_cluster_transition(self, cluster: ClusterRef, from_name: str, to_name: str) -> None:
        self._edit_catalogs(self._one(cluster), 'clear_transition', from_name, to_name)

    def clear_transition(self, from_name: str, to_name: str) -> None:
        self._edit_catalogs(self.clusters, 'clear_transition', from_name, to_name)

    def clear_cluster_transitions(self, cluster: ClusterRef, name: str) -> None:
        self._edit_catalogs(self._one(cluster), 'clear_transitions', name)

    def clear_transitions(self, name: str) -> None:
        self._edit_catalogs(self.clusters, 'clear_transitions', name)

    def clear_all_transitions(self) -> None:
        self._edit_catalogs(self.clusters, 'clear_all_transitions')

    # everything
    def clear_cluster(self, cluster: ClusterRef) -> None:
        self._edit_catalogs(self._one(cluster), 'clear')

    def clear(self) -> None:
        """Reset every catalog to the neutral baseline."""
        self._edit_catalogs(self.clusters, 'clear')

    # ── geometry ─────────────────────────────────────────────────────

    def set_cluster_bounds(self, cluster: ClusterRef, left: float, top: float,
                           right: float, bottom: float) -> None:
        if right <= left or bottom <= top:
            raise ConfigurationError(
                f"degenerate cluster rectangle: {left}, {top}, {right}, {bottom}"
            )
        with self._lock:
            c = self._resolve_cluster(cluster)
            c.left, c.top, c.right, c.bottom = float(left), float(top), float(right), float(bottom)
            for agent in self.agents:
                if agent.cluster is c:
                    agent.correct_position()

    def set_cluster_area(self, proportion: float) -> None:
        """Resize every cluster to `proportion` of the canvas from its top-left."""
        if proportion <= 0:
            raise ValueError(f"proportion must be positive, got {proportion}")
        canvas = self.config.simulation
        with self._lock:
            for c in self.clusters:
                c.right = min(c.left + proportion * canvas.width, canvas.width)
                c.bottom = min(c.top + proportion * canvas.height, canvas.height)
            for agent in self.agents:
                agent.correct_position()

    # ── events ───────────────────────────────────────────────────────

    def add_event(self, phase: EventPhase, event, cluster: Optional[ClusterRef] = None):
        """Append an event to the engine pipeline or to one cluster's."""
        with self._lock:
            pipeline = self.pipeline if cluster is None else self._resolve_cluster(cluster).events
            return pipeline.add(EventPhase(phase), event)

    def _run_phase(self, phase: EventPhase) -> None:
        self.event_phase = phase
        self.pipeline.run(phase, self)
        for cluster in self.clusters:
            cluster.events.run(phase, self, cluster)

    def before_iteration(self) -> None:
        with self._lock:
            self._run_phase(EventPhase.BEFORE)
            self._before_done = True

    def one_iteration(self) -> None:
        """Run one DURING tick and advance the iteration counter."""
        with self._lock:
            self._run_phase(EventPhase.DURING)
            self.iteration += 1
            self._after_done = False
            if self.complete:
                logger.info("reached max_iterations=%d; stopping", self.max_iterations)
                self.stop()

    def after_iteration(self) -> None:
        with self._lock:
            self._run_phase(EventPhase.AFTER)
            self._after_done = True

    # ── run control ──────────────────────────────────────────────────

    def _ensure_before(self) -> None:
        if self.iteration == 0 and not self._before_done:
            self.before_iteration()

    def step(self) -> None:
        """One DURING tick (BEFORE first if this is iteration 0). Ignored while playing."""
        with self._lock:
            if self.playing:
                return
            if self.complete:
                logger.warning("step() ignored: run complete at iteration %d", self.iteration)
                return
            self.last_error = None
            self._ensure_before()
            self.one_iteration()

    def play(self) -> None:
        """Start ticking every `interval` seconds on a background timer."""
        with self._lock:
            if self.playing:
                return
            if self.complete:
                logger.warning("play() ignored: run complete at iteration %d", self.iteration)
                return
            self.state = SimulationPhase.PLAYING
            self.last_error = None
            self._ensure_before()
            if not self.playing:
                # a BEFORE event paused or stopped the run
                return
            scheduler = TickScheduler(self._scheduled_tick, self.interval)
            self._scheduler = scheduler
            self._last_scheduler = scheduler
            scheduler.start()
            logger.info("playing (interval=%.3fs, max_iterations=%d)",
                        self.interval, self.max_iterations)

    def _scheduled_tick(self, scheduler: TickScheduler) -> None:
        with self._lock:
            if not self.playing or self._scheduler is not scheduler:
                scheduler.cancel()
                return
            try:
                self.one_iteration()
            except Exception as exc:
                # surfaced to the caller by wait()
                logger.exception("tick %d failed; pausing", self.iteration)
                self.last_error = exc
                self.pause()

    def pause(self) -> None:
        """Return to PAUSED; takes effect at the next tick boundary. Idempotent."""
        with self._lock:
            if not self.playing:
                return
            self.state = SimulationPhase.PAUSED
            scheduler, self._scheduler = self._scheduler, None
            if scheduler is not None:
                scheduler.cancel()
            logger.info("paused at iteration %d", self.iteration)

    def stop(self) -> None:
        """pause() then the AFTER phase, at most once per completed run."""
        with self._lock:
            self.pause()
            if not self._after_done:
                self.after_iteration()
                logger.info("stopped at iteration %d", self.iteration)

    def set_interval(self, interval: float) -> None:
        """Change the tick interval; a playing run is paused and replayed."""
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")
        with self._lock:
            self.config.simulation.interval = float(interval)
            if self.playing:
                self.pause()
                self.play()

    def set_max_iterations(self, max_iterations: int) -> None:
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {max_iterations}")
        with self._lock:
            self.config.simulation.max_iterations = int(max_iterations)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the background timer exits (e.g. after auto-stop).

        Returns:
            True if the run is no longer playing.

        Raises:
            The exception that aborted a scheduled tick, if any;
            it is raised once and then cleared.
        """
        with self._lock:
            scheduler = self._last_scheduler
        if scheduler is not None:
            scheduler.join(timeout)
        error, self.last_error = self.last_error, None
        if error is not None:
            raise error
        return not self.playing

    def run(self, iterations: Optional[int] = None) -> ResultsLog:
        """Tick synchronously.

        Args:
            iterations: Number of ticks; None runs until max_iterations
                (which must then be positive).

        Returns:
            The results log.
        """
        if iterations is None:
            if self.max_iterations <= 0:
                raise ValueError("run() without iterations needs max_iterations > 0")
            iterations = self.max_iterations - self.iteration
        for _ in range(iterations):
            if self.complete:
                break
            self.step()
        return self.results
