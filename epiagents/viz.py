"""Matplotlib rendering for EpiAgents runs.

Two kinds of output:
  - Frames: cluster rectangles plus one disc per agent, coloured by its
    current compartment. draw_frame() renders onto an existing axis;
    RenderSession keeps one figure alive and redraws it per tick.
  - Charts: counter time series from a ResultsLog.

Renderers read through Simulation.agent_views() so they see a consistent
snapshot taken under the simulation lock.

Usage:
    session = RenderSession(sim)
    sim.add_event(EventPhase.DURING, session.as_event(every=10))
    sim.run(200)
    fig = plot_counters(sim.results)
    fig.savefig("counters.png", dpi=150, bbox_inches="tight")
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence, Tuple, Union

import matplotlib
matplotlib.use("Agg")  # Non-interactive backend
import matplotlib.pyplot as plt
import matplotlib.colors as mcolors
import matplotlib.patches as mpatches
from matplotlib.collections import PatchCollection
import numpy as np

from epiagents.events import CallbackEvent
from epiagents.metrics import ResultsLog

if TYPE_CHECKING:
    from epiagents.simulation import Simulation

logger = logging.getLogger(__name__)

_RGB = re.compile(r"rgba?\(\s*([\d.]+)\s*,\s*([\d.]+)\s*,\s*([\d.]+)\s*(?:,\s*([\d.]+)\s*)?\)")


def to_mpl_color(color: str) -> Tuple[float, float, float, float]:
    """CSS 'rgb(r, g, b)' / 'rgba(r, g, b, a)' or any matplotlib colour → RGBA."""
    m = _RGB.fullmatch(color.strip())
    if m:
        r, g, b = (float(v) / 255.0 for v in m.groups()[:3])
        a = float(m.group(4)) if m.group(4) is not None else 1.0
        return (r, g, b, a)
    return mcolors.to_rgba(color)


def _style_axis(ax, xlabel: str = "", ylabel: str = "", title: str = ""):
    ax.set_xlabel(xlabel, fontsize=10)
    ax.set_ylabel(ylabel, fontsize=10)
    if title:
        ax.set_title(title, fontsize=12, fontweight="bold")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.tick_params(labelsize=9)


# ═══════════════════════════════════════════════════════════════════════
# FRAMES
# ═══════════════════════════════════════════════════════════════════════

def draw_frame(sim: 'Simulation', ax, include_dead: bool = False) -> int:
    """Render clusters and agents onto ax. Returns the number of discs drawn."""
    with sim.lock:
        views = sim.agent_views(include_dead=include_dead)
        clusters = [(c.bounds, c.border, c.border_color) for c in sim.clusters]
        marker = sim.iteration
    canvas = sim.config.simulation

    ax.clear()
    for b, border, border_color in clusters:
        if border:
            ax.add_patch(mpatches.Rectangle(
                (b.left, b.top), b.right - b.left, b.bottom - b.top, fill=False,
                edgecolor=to_mpl_color(border_color), linewidth=1.0))

    if views:
        discs = [mpatches.Circle((v.x, v.y), v.radius) for v in views]
        coll = PatchCollection(discs, facecolors=[to_mpl_color(v.color) for v in views],
                               edgecolors="none")
        ax.add_collection(coll)

    ax.set_xlim(0, canvas.width)
    ax.set_ylim(canvas.height, 0)  # canvas y grows downward
    ax.set_aspect("equal")
    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_title(f"iteration {marker}", fontsize=10)
    return len(views)


class RenderSession:
    """One figure redrawn on demand; optionally saves numbered PNG frames."""

    def __init__(self, sim: 'Simulation', out_dir: Optional[Union[str, Path]] = None,
                 figsize: Tuple[float, float] = (6, 6), dpi: int = 100):
        self.sim = sim
        self.out_dir = Path(out_dir) if out_dir is not None else None
        if self.out_dir is not None:
            self.out_dir.mkdir(parents=True, exist_ok=True)
        self.dpi = dpi
        self.fig, self.ax = plt.subplots(figsize=figsize)
        self.frames = 0

    def render(self) -> Optional[Path]:
        draw_frame(self.sim, self.ax)
        self.fig.canvas.draw()
        self.frames += 1
        if self.out_dir is None:
            return None
        path = self.out_dir / f"frame_{self.frames:05d}.png"
        self.fig.savefig(path, dpi=self.dpi)
        return path

    def as_event(self, every: int = 1) -> CallbackEvent:
        """A DURING event that renders every `every` ticks."""
        def render_tick(sim, cluster=None):
            if sim.iteration % every == 0:
                self.render()
        return CallbackEvent(render_tick, name="render")

    def close(self) -> None:
        plt.close(self.fig)


# ═══════════════════════════════════════════════════════════════════════
# CHARTS
# ═══════════════════════════════════════════════════════════════════════

def plot_counters(
    results: ResultsLog,
    names: Optional[Sequence[str]] = None,
    colors: Optional[dict] = None,
    title: str = "Counters",
) -> plt.Figure:
    """Line chart of counters over DURING ticks.

    Args:
        results: Results log of a run.
        names: Counters to plot (default: every compartment counter).
        colors: Optional {name: colour string} (CSS rgb() accepted).

    Returns:
        matplotlib Figure.
    """
    if names is None:
        names = [n for n in results.counter_names
                 if n not in ('alive', 'infections') and not n.startswith('total_')]
    ticks = results.tick_rows()
    x = np.array([row[0] for row in ticks], dtype=np.int64)

    fig, ax = plt.subplots(figsize=(10, 4))
    for name in names:
        idx = results.counter_names.index(name) + 1
        y = np.array([row[idx] for row in ticks], dtype=np.int64)
        kwargs = {}
        if colors and name in colors:
            kwargs['color'] = to_mpl_color(colors[name])
        ax.plot(x, y, linewidth=1.5, label=name, **kwargs)

    _style_axis(ax, "Iteration", "Agents", title)
    if names:
        ax.legend(loc="upper right", fontsize=8, framealpha=0.9)
    fig.tight_layout()
    return fig


def compartment_colors(sim: 'Simulation') -> dict:
    """First-seen colour for each compartment name across clusters."""
    colors = {}
    for cluster in sim.clusters:
        for comp in cluster.catalog.compartments():
            colors.setdefault(comp.name, comp.color)
    return colors


def save_counters_plot(sim: 'Simulation', path: Union[str, Path], **kwargs) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig = plot_counters(sim.results, colors=compartment_colors(sim), **kwargs)
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info("saved counters plot to %s", path)
    return path
