"""Counters and the results log.

Counters come in two kinds:
  - Cumulative (name starts with 'total_'): never reset during a run.
      total_initial_infections     agents whose initial draw was infectious
      total_simulation_infections  successful collision transmissions
  - Current-state (everything else): zeroed and rebuilt from the agent
    set on every recomputation, so they cannot drift.
      alive         agents not in DEAD
      infections    agents in an infectious compartment
      <COMPARTMENT> one per compartment name

Column order is fixed at construction: the four compulsory counters, then
compartments in first-appearance order across cluster catalogs.

The results log holds one row per BEFORE phase ('S'), per DURING tick (the
iteration index), and per AFTER phase ('E'). The header row is produced on
demand by ResultsLog.header().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Sequence

import numpy as np

from epiagents.types import DEAD, Marker

if TYPE_CHECKING:
    from epiagents.agents import Agent

COMPULSORY_COUNTERS = (
    'alive',
    'total_initial_infections',
    'total_simulation_infections',
    'infections',
)

# Shown in summary tables by default
DEFAULT_PRINTABLE = {
    'alive', 'total_simulation_infections', 'infections',
    'SUSCEPTIBLE', 'RECOVERED',
}

CUMULATIVE_PREFIX = 'total_'


@dataclass
class Counter:
    name: str
    value: int = 0
    printable: bool = False

    @property
    def cumulative(self) -> bool:
        return self.name.startswith(CUMULATIVE_PREFIX)


class Counters:
    """Ordered counter table shared by the engine and its observers."""

    def __init__(self, compartment_names: Iterable[str]):
        self._counters: Dict[str, Counter] = {}
        for name in COMPULSORY_COUNTERS:
            self._add(name)
        for name in compartment_names:
            if name not in self._counters:
                self._add(name)

    def _add(self, name: str) -> None:
        self._counters[name] = Counter(name, 0, name in DEFAULT_PRINTABLE)

    def __getitem__(self, name: str) -> int:
        return self._counters[name].value

    def __contains__(self, name: object) -> bool:
        return name in self._counters

    def __iter__(self) -> Iterator[str]:
        return iter(self._counters)

    def __len__(self) -> int:
        return len(self._counters)

    def names(self) -> List[str]:
        return list(self._counters)

    def values(self) -> List[int]:
        return [c.value for c in self._counters.values()]

    def as_dict(self) -> Dict[str, int]:
        return {name: c.value for name, c in self._counters.items()}

    def printable_names(self) -> List[str]:
        return [name for name, c in self._counters.items() if c.printable]

    def set_printable(self, name: str, printable: bool = True) -> None:
        self._counters[name].printable = printable

    def increment(self, name: str, by: int = 1) -> None:
        self._counters[name].value += by

    def reset_current(self) -> None:
        """Zero every non-cumulative counter."""
        for counter in self._counters.values():
            if not counter.cumulative:
                counter.value = 0

    def reset_all(self) -> None:
        for counter in self._counters.values():
            counter.value = 0

    def recompute(self, agents: Sequence['Agent']) -> None:
        """Rebuild current-state counters with one full scan of agents."""
        self.reset_current()
        counters = self._counters
        alive = counters['alive']
        infections = counters['infections']
        for agent in agents:
            name = agent.compartment
            if name in counters:
                counters[name].value += 1
            if agent.cluster.catalog.is_infectious(name):
                infections.value += 1
            if name != DEAD:
                alive.value += 1


class ResultsLog:
    """Ordered table of counter snapshots."""

    def __init__(self, counter_names: Sequence[str]):
        self.counter_names = list(counter_names)
        self.rows: List[List] = []

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[List]:
        return iter(self.rows)

    def __getitem__(self, index: int) -> List:
        return self.rows[index]

    def header(self, printable: Sequence[str] = ()) -> List[str]:
        """Header row: '#' then counter names (optionally only printable)."""
        names = self.counter_names
        if printable:
            names = [n for n in names if n in printable]
        return ['#'] + names

    def record(self, marker: Marker, counters: Counters) -> List:
        """Append [marker, *counter values] and return the row."""
        row = [marker] + [counters[name] for name in self.counter_names]
        self.rows.append(row)
        return row

    def markers(self) -> List[Marker]:
        return [row[0] for row in self.rows]

    def column(self, name: str) -> np.ndarray:
        """Time series of one counter across all rows (for charting)."""
        idx = self.counter_names.index(name) + 1
        return np.array([row[idx] for row in self.rows], dtype=np.int64)

    def tick_rows(self) -> List[List]:
        """Only the DURING rows (numeric markers)."""
        return [row for row in self.rows if isinstance(row[0], (int, np.integer))]

    def clear(self) -> None:
        self.rows.clear()
