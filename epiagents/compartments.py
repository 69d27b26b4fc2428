"""Compartment catalog: disease states, infectiousness, and transitions.

A catalog is an ORDERED collection of compartments. Two orderings matter:
  - Catalog order drives the cumulative initial-ratio distribution used to
    draw each agent's starting compartment.
  - Within one compartment, the insertion order of outgoing transitions
    drives first-match-wins evaluation (see advance_compartment in
    agents.py). Probabilities need not sum to 1; the unassigned mass
    means "stay put this tick".

Each cluster owns an independent catalog, produced by CompartmentCatalog.copy()
so edits to one cluster never leak into another.

Default model (eleven compartments, SEIR-like):
  S → E → Ia → Is → {isolated, hospital, recovered} → ICU → DEAD
  plus TREATED, RECOVERED ⇄ SUSCEPTIBLE, VACCINATED ⇄ SUSCEPTIBLE.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from epiagents.types import DEAD, ConfigurationError, UnknownCompartmentError


# ═══════════════════════════════════════════════════════════════════════
# COMPARTMENT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Compartment:
    """One disease state in a catalog."""
    name: str
    description: str = ""
    color: str = "rgb(0, 0, 0)"
    infectious: bool = False       # counts toward the aggregate 'infections' counter
    infectiousness: float = 0.0    # per-collision transmission probability
    initial_ratio: float = 0.0     # nonnegative weight for the initial draw
    transitions: Dict[str, float] = field(default_factory=dict)  # ordered
    initial_proportion: float = 0.0  # derived: cumulative share, see compute_initial_proportions

    def copy(self) -> 'Compartment':
        return Compartment(
            name=self.name,
            description=self.description,
            color=self.color,
            infectious=self.infectious,
            infectiousness=self.infectiousness,
            initial_ratio=self.initial_ratio,
            transitions=dict(self.transitions),
            initial_proportion=self.initial_proportion,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'color': self.color,
            'infectious': self.infectious,
            'infectiousness': self.infectiousness,
            'initial_ratio': self.initial_ratio,
            'transitions': dict(self.transitions),
        }


# ═══════════════════════════════════════════════════════════════════════
# DEFAULT MODEL
# ═══════════════════════════════════════════════════════════════════════

# name: (description, color, infectious, infectiousness, initial_ratio, transitions)
DEFAULT_COMPARTMENTS = {
    'SUSCEPTIBLE': ("susceptible", "rgb(0, 0, 255)", False, 0.0, 95,
                    {'VACCINATED': 0.0025}),
    'INFECTED_EXPOSED': ("exposed", "rgb(200, 0, 0)", True, 0.0, 3,
                         {'INFECTED_ASYMPTOMATIC': 0.33}),
    'INFECTED_ASYMPTOMATIC': ("asymptomatic", "rgb(210, 0, 0)", True, 0.1, 1,
                              {'INFECTED_SYMPTOMATIC': 0.33,
                               'RECOVERED': 0.33}),
    'INFECTED_SYMPTOMATIC': ("symptomatic", "rgb(220, 0, 0)", True, 0.5, 1,
                             {'INFECTED_ISOLATED': 0.1,
                              'INFECTED_HOSPITAL': 0.1,
                              'RECOVERED': 0.1}),
    'INFECTED_ISOLATED': ("isolated", "rgb(225, 0, 0)", True, 0.001, 0,
                          {'INFECTED_HOSPITAL': 0.1,
                           'RECOVERED': 0.1}),
    'INFECTED_HOSPITAL': ("hospitalized", "rgb(230, 0, 0)", True, 0.5, 0,
                          {'INFECTED_ICU': 0.1,
                           'RECOVERED': 0.1}),
    'INFECTED_ICU': ("high care", "rgb(240, 0, 0)", True, 0.5, 0,
                     {'DEAD': 0.5,
                      'RECOVERED': 0.1}),
    'TREATED': ("treated", "rgb(0, 150, 40)", True, 0.001, 0,
                {'DEAD': 0.0001,
                 'INFECTED_ASYMPTOMATIC': 0.001}),
    'RECOVERED': ("recovered", "rgb(0, 150, 0)", False, 0.0, 0,
                  {'SUSCEPTIBLE': 0.001,
                   'VACCINATED': 0.001}),
    'VACCINATED': ("vaccinated", "rgb(0, 255, 0)", False, 0.0, 0,
                   {'SUSCEPTIBLE': 0.0005}),
    'DEAD': ("dead", "rgb(0, 0, 0)", False, 0.0, 0, {}),
}


def clamp_probability(value: float) -> float:
    """Clamp an edited probability into [0, 1].

    Provided for editing layers. Catalog setters never call it: values are
    stored exactly as given.
    """
    return max(0.0, min(1.0, float(value)))


# ═══════════════════════════════════════════════════════════════════════
# CATALOG
# ═══════════════════════════════════════════════════════════════════════

class CompartmentCatalog:
    """Ordered, value-semantic collection of compartments.

    Every setter validates compartment names before touching any state and
    raises UnknownCompartmentError on the first unknown name, so a failed
    call never leaves the catalog partially edited.
    """

    def __init__(self, compartments: Iterable[Compartment] = ()):
        self._compartments: Dict[str, Compartment] = {}
        for comp in compartments:
            if comp.name in self._compartments:
                raise ConfigurationError(
                    f"Duplicate compartment name: {comp.name!r}"
                )
            self._compartments[comp.name] = comp

    # ── container protocol ───────────────────────────────────────────

    def __contains__(self, name: object) -> bool:
        return name in self._compartments

    def __getitem__(self, name: str) -> Compartment:
        return self._require(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._compartments)

    def __len__(self) -> int:
        return len(self._compartments)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CompartmentCatalog):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"CompartmentCatalog({list(self._compartments)})"

    def names(self) -> List[str]:
        return list(self._compartments)

    def compartments(self) -> List[Compartment]:
        return list(self._compartments.values())

    def copy(self) -> 'CompartmentCatalog':
        """Independent deep copy; edits to the copy never touch self."""
        return CompartmentCatalog(c.copy() for c in self._compartments.values())

    def _require(self, name: str, operation: str = "") -> Compartment:
        try:
            return self._compartments[name]
        except KeyError:
            raise UnknownCompartmentError(name, operation) from None

    def _require_all(self, names: Iterable[str], operation: str) -> None:
        for name in names:
            self._require(name, operation)

    # ── queries ──────────────────────────────────────────────────────

    def is_infectious(self, name: str) -> bool:
        return self._require(name).infectious

    def infectiousness(self, name: str) -> float:
        return self._require(name).infectiousness

    def transitions(self, name: str) -> Dict[str, float]:
        """Outgoing transitions of one compartment, in evaluation order."""
        return self._require(name).transitions

    def color(self, name: str) -> str:
        return self._require(name).color

    def total_initial_ratio(self) -> float:
        return float(sum(float(c.initial_ratio) for c in self._compartments.values()))

    # ── initial ratios ───────────────────────────────────────────────

    def set_initial_ratio(self, name: str, value: float) -> None:
        self._require(name, "set_initial_ratio").initial_ratio = value

    def clear_initial_ratio(self, name: str) -> None:
        self._require(name, "clear_initial_ratio").initial_ratio = 0

    def set_initial_ratios(self, pairs: Sequence[Tuple[str, float]]) -> None:
        self._require_all((name for name, _ in pairs), "set_initial_ratios")
        for name, value in pairs:
            self._compartments[name].initial_ratio = value

    def clear_initial_ratios(self) -> None:
        for comp in self._compartments.values():
            comp.initial_ratio = 0

    # ── infectiousness ───────────────────────────────────────────────

    def set_infectiousness(self, name: str, value: float) -> None:
        self._require(name, "set_infectiousness").infectiousness = value

    def clear_infectiousness(self, name: str) -> None:
        self._require(name, "clear_infectiousness").infectiousness = 0.0

    def set_infectiousnesses(self, pairs: Sequence[Tuple[str, float]]) -> None:
        self._require_all((name for name, _ in pairs), "set_infectiousnesses")
        for name, value in pairs:
            self._compartments[name].infectiousness = value

    def clear_all_infectiousness(self) -> None:
        for comp in self._compartments.values():
            comp.infectiousness = 0.0

    # ── transitions ──────────────────────────────────────────────────

    def set_transition(self, from_name: str, to_name: str, probability: float) -> None:
        """Set one outgoing edge.

        An existing edge keeps its position in the evaluation order; a new
        edge is appended after the existing ones.
        """
        source = self._require(from_name, "set_transition")
        self._require(to_name, "set_transition")
        source.transitions[to_name] = probability

    def clear_transition(self, from_name: str, to_name: str) -> None:
        source = self._require(from_name, "clear_transition")
        self._require(to_name, "clear_transition")
        source.transitions.pop(to_name, None)

    def set_transitions(self, triples: Sequence[Tuple[str, str, float]]) -> None:
        for from_name, to_name, _ in triples:
            self._require(from_name, "set_transitions")
            self._require(to_name, "set_transitions")
        for from_name, to_name, probability in triples:
            self._compartments[from_name].transitions[to_name] = probability

    def clear_transitions(self, name: str) -> None:
        """Remove every outgoing edge of one compartment."""
        self._require(name, "clear_transitions").transitions = {}

    def clear_all_transitions(self) -> None:
        for comp in self._compartments.values():
            comp.transitions = {}

    def clear(self) -> None:
        """Neutral baseline: no ratios, no infectiousness, no transitions."""
        self.clear_all_transitions()
        self.clear_all_infectiousness()
        self.clear_initial_ratios()

    # ── initial distribution ─────────────────────────────────────────

    def compute_initial_proportions(self) -> np.ndarray:
        """Recompute each compartment's cumulative initial proportion.

        Returns:
            Array of cumulative proportions in catalog order; the last
            element is 1.0.

        Raises:
            ConfigurationError: If the total initial-ratio weight is zero
                (the cumulative distribution would be undefined).
        """
        ratios = np.array(
            [float(c.initial_ratio) for c in self._compartments.values()],
            dtype=np.float64,
        )
        total = ratios.sum()
        if not total > 0:
            raise ConfigurationError(
                f"Total initial ratio must be positive, got {total} "
                f"for compartments {self.names()}"
            )
        cumulative = np.cumsum(ratios / total)
        # Trailing compartments whose share is zero would otherwise sit at
        # 0.999...; pin the tail to exactly 1.0.
        last_positive = int(np.flatnonzero(ratios > 0)[-1])
        cumulative[last_positive:] = 1.0
        for comp, value in zip(self._compartments.values(), cumulative):
            comp.initial_proportion = float(value)
        return cumulative

    def draw_initial_compartments(
        self,
        n: int,
        rng: np.random.Generator,
    ) -> List[str]:
        """Draw n starting compartments from the cumulative initial ratios.

        Each draw u ~ U[0, 1) selects the first compartment (catalog order)
        whose cumulative proportion exceeds u.
        """
        cumulative = self.compute_initial_proportions()
        names = self.names()
        u = rng.random(n)
        idx = np.searchsorted(cumulative, u, side='right')
        return [names[i] for i in idx]

    # ── serialization ────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: comp.to_dict() for name, comp in self._compartments.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> 'CompartmentCatalog':
        """Build a catalog from {name: {field: value}} (YAML layout).

        Raises:
            UnknownCompartmentError: If a transition targets a compartment
                not defined in data.
        """
        comps = []
        for name, spec in data.items():
            spec = dict(spec or {})
            transitions = spec.pop('transitions', None) or {}
            comps.append(Compartment(
                name=name,
                description=spec.get('description', name.lower()),
                color=spec.get('color', "rgb(0, 0, 0)"),
                infectious=bool(spec.get('infectious', False)),
                infectiousness=float(spec.get('infectiousness', 0.0)),
                initial_ratio=spec.get('initial_ratio', 0),
                transitions={str(k): float(v) for k, v in transitions.items()},
            ))
        catalog = cls(comps)
        for comp in comps:
            for target in comp.transitions:
                if target not in catalog:
                    raise UnknownCompartmentError(target, f"transitions of {comp.name}")
        return catalog


_OVERRIDE_FIELDS = ('description', 'color', 'infectious',
                    'infectiousness', 'initial_ratio')


def default_catalog(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> CompartmentCatalog:
    """Return a fresh copy of the default eleven-compartment catalog.

    Args:
        overrides: Optional {name: {field: value}} applied on top of the
            defaults (unknown names raise UnknownCompartmentError;
            unknown field keys raise ConfigurationError).
    """
    catalog = CompartmentCatalog(
        Compartment(
            name=name,
            description=desc,
            color=color,
            infectious=infectious,
            infectiousness=infectiousness,
            initial_ratio=ratio,
            transitions=dict(transitions),
        )
        for name, (desc, color, infectious, infectiousness, ratio, transitions)
        in DEFAULT_COMPARTMENTS.items()
    )
    if overrides:
        for name, fields in overrides.items():
            comp = catalog._require(name, "default_catalog overrides")
            for key, value in (fields or {}).items():
                if key == 'transitions':
                    catalog.clear_transitions(name)
                    for target, p in (value or {}).items():
                        catalog.set_transition(name, target, float(p))
                elif key in _OVERRIDE_FIELDS:
                    setattr(comp, key, value)
                else:
                    raise ConfigurationError(
                        f"unknown field {key!r} in overrides for {name}"
                    )
    return catalog


def is_absorbing(name: str) -> bool:
    """DEAD is absorbing regardless of catalog content."""
    return name == DEAD
