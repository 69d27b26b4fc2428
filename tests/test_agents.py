"""Tests for epiagents.agents — motion, collisions, transmission, transitions."""

import numpy as np
import pytest

from epiagents.agents import (
    Agent,
    advance_agents,
    advance_compartment,
    attempt_transmission,
    candidate_neighbours,
    move_agents,
    overlapping,
    will_overlap,
)
from epiagents.compartments import default_catalog
from epiagents.rng import rng_state_snapshot
from epiagents.simulation import Cluster
from epiagents.types import DEAD, DIRECTIONS, INFECTED_EXPOSED, SUSCEPTIBLE


def make_cluster(left=0.0, top=0.0, right=100.0, bottom=100.0, catalog=None, name='c'):
    return Cluster(name, left, top, right, bottom, catalog or default_catalog())


def make_agent(cluster, agent_id, x, y, dx=0.0, dy=0.0, compartment=SUSCEPTIBLE,
               radius=3.0, speed=1.0):
    agent = Agent(agent_id, cluster, x, y, radius=radius, speed=speed, dx=dx, dy=dy)
    agent.record('S', compartment)
    return agent


class ScriptedRng:
    """Returns preset uniforms and counts how many were drawn."""

    def __init__(self, values):
        self.values = list(values)
        self.draws = 0

    def random(self):
        self.draws += 1
        return self.values.pop(0)


# ── agent basics ─────────────────────────────────────────────────────

class TestAgent:
    def test_history_tracks_current_compartment(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, 10, 10)
        assert agent.compartment == SUSCEPTIBLE
        agent.record(4, INFECTED_EXPOSED)
        assert agent.compartment == INFECTED_EXPOSED
        assert [h.marker for h in agent.history] == ['S', 4]

    def test_cluster_link_is_weak(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, 10, 10)
        assert agent.cluster is cluster
        del cluster
        with pytest.raises(RuntimeError):
            agent.cluster

    def test_is_dead_follows_history(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, 10, 10)
        assert not agent.is_dead
        agent.record(1, DEAD)
        assert agent.is_dead

    def test_set_direction_scaled_by_speed(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, 10, 10, speed=2.0)
        rng = np.random.default_rng(0)
        allowed = {tuple(d) for d in (DIRECTIONS * 2.0)}
        for _ in range(50):
            agent.set_direction(rng)
            assert (agent.dx, agent.dy) in allowed

    def test_view(self):
        cluster = make_cluster(name='town')
        agent = make_agent(cluster, 7, 10, 20)
        view = agent.view()
        assert (view.agent_id, view.x, view.y, view.cluster) == (7, 10.0, 20.0, 'town')
        assert view.color == "rgb(0, 0, 255)"

    def test_describe_history(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 3, 10, 10)
        agent.record(2, INFECTED_EXPOSED)
        assert agent.describe_history() == "Agent 3: [(S - susceptible) (2 - exposed)]"


class TestWalls:
    def test_reflect_right_wall(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, 96.5, 50, dx=1.0, dy=0.0)
        agent.reflect()
        assert agent.dx == -1.0

    def test_reflect_axes_independent(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, 50, 3.5, dx=1.0, dy=-1.0)
        agent.reflect()
        assert agent.dx == 1.0
        assert agent.dy == 1.0

    def test_reflect_uses_own_cluster(self):
        cluster = make_cluster(left=100, right=200)
        agent = make_agent(cluster, 0, 103.5, 50, dx=-1.0)
        agent.reflect()
        assert agent.dx == 1.0

    def test_correct_position(self):
        cluster = make_cluster()
        agent = make_agent(cluster, 0, -5, 120)
        agent.correct_position()
        assert (agent.x, agent.y) == (3.0, 97.0)

    def test_agents_stay_inside(self):
        cluster = make_cluster(right=40, bottom=40)
        rng = np.random.default_rng(3)
        agents = []
        for i in range(15):
            a = make_agent(cluster, i, rng.uniform(3, 37), rng.uniform(3, 37))
            a.set_direction(rng)
            agents.append(a)
        for it in range(200):
            move_agents(agents, it, rng, rng, randomness_mean=0.1, randomness_stdev=0.05)
            for a in agents:
                assert 3.0 <= a.x <= 37.0
                assert 3.0 <= a.y <= 37.0


# ── collisions ───────────────────────────────────────────────────────

class TestCollisionGeometry:
    def test_overlapping(self):
        cluster = make_cluster()
        a = make_agent(cluster, 0, 50, 50)
        b = make_agent(cluster, 1, 55, 50)
        c = make_agent(cluster, 2, 56, 50)
        assert overlapping(a, b)
        assert not overlapping(a, c)

    def test_will_overlap(self):
        cluster = make_cluster()
        a = make_agent(cluster, 0, 50, 50, dx=1.0)
        b = make_agent(cluster, 1, 57, 50, dx=-1.0)
        assert not overlapping(a, b)
        assert will_overlap(a, b)

    def test_candidate_prefilter(self):
        xs = np.array([0.0, 5.0, 50.0, 6.0])
        ys = np.zeros(4)
        radii = np.full(4, 3.0)
        active = np.array([True, True, True, False])
        idx = candidate_neighbours(0, xs, ys, radii, active, vmax=1.0)
        assert list(idx) == [1]


class TestMoveAgents:
    def test_single_swap_per_pair(self):
        cluster = make_cluster()
        a = make_agent(cluster, 0, 50, 50, dx=1.0)
        b = make_agent(cluster, 1, 55, 50, dx=-1.0)
        rng = np.random.default_rng(0)
        stats = move_agents([a, b], 1, rng, rng)
        assert stats.swaps == 1
        assert (a.dx, b.dx) == (-1.0, 1.0)
        assert (a.x, b.x) == (49.0, 56.0)

    def test_both_detect_but_only_lower_id_swaps(self):
        cluster = make_cluster()
        a = make_agent(cluster, 0, 50, 50, dx=1.0, dy=0.0)
        b = make_agent(cluster, 1, 53, 50, dx=0.0, dy=1.0)
        rng = np.random.default_rng(0)
        stats = move_agents([a, b], 1, rng, rng)
        assert stats.collisions == 2
        assert stats.swaps == 1
        assert (a.dx, a.dy) == (0.0, 1.0)
        assert (b.dx, b.dy) == (1.0, 0.0)

    def test_inelastic_keeps_velocities(self):
        cluster = make_cluster()
        a = make_agent(cluster, 0, 50, 50, dx=1.0)
        b = make_agent(cluster, 1, 55, 50, dx=-1.0)
        rng = np.random.default_rng(0)
        stats = move_agents([a, b], 1, rng, rng, elastic_collisions=False)
        assert stats.swaps == 0
        assert (a.dx, b.dx) == (1.0, -1.0)

    def test_cross_cluster_collision(self):
        west = make_cluster(right=50, name='west')
        east = make_cluster(left=50, name='east')
        a = make_agent(west, 0, 47, 50)
        b = make_agent(east, 1, 52, 50)
        rng = np.random.default_rng(0)
        stats = move_agents([a, b], 1, rng, rng)
        assert stats.collisions >= 1

    def test_dead_agents_frozen_and_ignored(self):
        catalog = default_catalog()
        catalog.set_infectiousness(DEAD, 1.0)
        cluster = make_cluster(catalog=catalog)
        dead = make_agent(cluster, 0, 50, 50, dx=1.0, compartment=DEAD)
        alive = make_agent(cluster, 1, 52, 50)
        rng = np.random.default_rng(0)
        stats = move_agents([dead, alive], 1, rng, rng)
        assert (dead.x, dead.y, dead.dx) == (50.0, 50.0, 1.0)
        assert stats.collisions == 0
        assert alive.compartment == SUSCEPTIBLE

    def test_no_randomness_draws_when_disabled(self):
        cluster = make_cluster()
        a = make_agent(cluster, 0, 20, 20, dx=1.0)
        motion = np.random.default_rng(5)
        before = rng_state_snapshot({'m': motion})
        move_agents([a], 1, motion, np.random.default_rng(6))
        assert rng_state_snapshot({'m': motion}) == before

    def test_transmission_on_collision(self):
        catalog = default_catalog()
        catalog.set_infectiousness('INFECTED_SYMPTOMATIC', 1.0)
        cluster = make_cluster(catalog=catalog)
        sick = make_agent(cluster, 0, 50, 50, compartment='INFECTED_SYMPTOMATIC')
        well = make_agent(cluster, 1, 54, 50)
        rng = np.random.default_rng(0)
        stats = move_agents([sick, well], 9, rng, rng)
        assert stats.infections == 1
        assert well.history[-1] == (9, INFECTED_EXPOSED)
        assert sick.compartment == 'INFECTED_SYMPTOMATIC'

    def test_prefilter_matches_brute_force(self):
        cluster = make_cluster(right=60, bottom=60)
        catalog = cluster.catalog
        catalog.set_infectiousness('INFECTED_SYMPTOMATIC', 0.5)
        rng = np.random.default_rng(11)
        agents = []
        for i in range(40):
            comp = 'INFECTED_SYMPTOMATIC' if i % 5 == 0 else SUSCEPTIBLE
            if i % 13 == 0:
                comp = DEAD
            a = make_agent(cluster, i, rng.uniform(3, 57), rng.uniform(3, 57), compartment=comp)
            a.set_direction(rng)
            agents.append(a)
        reference = [make_agent(cluster, a.agent_id, a.x, a.y, a.dx, a.dy, a.compartment)
                     for a in agents]

        m1, i1 = np.random.default_rng(1), np.random.default_rng(2)
        m2, i2 = np.random.default_rng(1), np.random.default_rng(2)
        for it in range(30):
            move_agents(agents, it, m1, i1, randomness_mean=0.2, randomness_stdev=0.1)
            _brute_force_move(reference, it, m2, i2, 0.2, 0.1)

        for a, r in zip(agents, reference):
            assert (a.x, a.y, a.dx, a.dy) == (r.x, r.y, r.dx, r.dy)
            assert a.history == r.history


def _brute_force_move(agents, marker, motion_rng, infection_rng, mean, stdev):
    for agent in agents:
        if agent.is_dead:
            continue
        p = abs(motion_rng.normal(mean, stdev))
        if motion_rng.random() < p:
            agent.set_direction(motion_rng)
        agent.reflect()
        for other in agents:
            if other is agent or other.is_dead:
                continue
            if not (overlapping(agent, other) or will_overlap(agent, other)):
                continue
            if agent.agent_id < other.agent_id:
                agent.dx, other.dx = other.dx, agent.dx
                agent.dy, other.dy = other.dy, agent.dy
            attempt_transmission(agent, other, marker, infection_rng)
        agent.x += agent.dx
        agent.y += agent.dy
        agent.correct_position()


# ── transmission ─────────────────────────────────────────────────────

class TestAttemptTransmission:
    def setup_method(self):
        self.catalog = default_catalog()
        self.catalog.set_infectiousness('INFECTED_SYMPTOMATIC', 1.0)
        self.cluster = make_cluster(catalog=self.catalog)

    def test_symmetric(self):
        rng = np.random.default_rng(0)
        sick = make_agent(self.cluster, 0, 0, 0, compartment='INFECTED_SYMPTOMATIC')
        well = make_agent(self.cluster, 1, 0, 0)
        assert attempt_transmission(well, sick, 3, rng)
        assert well.compartment == INFECTED_EXPOSED

    def test_zero_infectiousness_never_draws(self):
        rng = ScriptedRng([])
        source = make_agent(self.cluster, 0, 0, 0, compartment='RECOVERED')
        well = make_agent(self.cluster, 1, 0, 0)
        assert not attempt_transmission(source, well, 3, rng)
        assert rng.draws == 0

    def test_both_susceptible(self):
        rng = ScriptedRng([])
        a = make_agent(self.cluster, 0, 0, 0)
        b = make_agent(self.cluster, 1, 0, 0)
        assert not attempt_transmission(a, b, 3, rng)
        assert len(a.history) == len(b.history) == 1

    def test_neither_susceptible(self):
        rng = ScriptedRng([])
        a = make_agent(self.cluster, 0, 0, 0, compartment='INFECTED_SYMPTOMATIC')
        b = make_agent(self.cluster, 1, 0, 0, compartment='INFECTED_SYMPTOMATIC')
        assert not attempt_transmission(a, b, 3, rng)

    def test_failed_trial(self):
        self.catalog.set_infectiousness('INFECTED_SYMPTOMATIC', 0.3)
        rng = ScriptedRng([0.5])
        sick = make_agent(self.cluster, 0, 0, 0, compartment='INFECTED_SYMPTOMATIC')
        well = make_agent(self.cluster, 1, 0, 0)
        assert not attempt_transmission(sick, well, 3, rng)
        assert well.compartment == SUSCEPTIBLE


# ── transitions ──────────────────────────────────────────────────────

class TestAdvanceCompartment:
    def test_first_match_wins(self):
        catalog = default_catalog()
        catalog.clear_transitions(SUSCEPTIBLE)
        catalog.set_transitions([(SUSCEPTIBLE, 'VACCINATED', 1.0),
                                 (SUSCEPTIBLE, 'RECOVERED', 1.0)])
        cluster = make_cluster(catalog=catalog)
        agent = make_agent(cluster, 0, 10, 10)
        assert advance_compartment(agent, 1, np.random.default_rng(0)) == 'VACCINATED'
        assert agent.history[-1] == (1, 'VACCINATED')

    def test_one_draw_per_edge_tried(self):
        catalog = default_catalog()
        catalog.clear_transitions(SUSCEPTIBLE)
        catalog.set_transitions([(SUSCEPTIBLE, 'VACCINATED', 0.5),
                                 (SUSCEPTIBLE, 'RECOVERED', 0.5),
                                 (SUSCEPTIBLE, DEAD, 0.5)])
        cluster = make_cluster(catalog=catalog)
        agent = make_agent(cluster, 0, 10, 10)
        rng = ScriptedRng([0.9, 0.1, 0.0])
        assert advance_compartment(agent, 2, rng) == 'RECOVERED'
        assert rng.draws == 2

    def test_no_match_stays(self):
        catalog = default_catalog()
        catalog.set_transition(SUSCEPTIBLE, 'VACCINATED', 0.0)
        cluster = make_cluster(catalog=catalog)
        agent = make_agent(cluster, 0, 10, 10)
        assert advance_compartment(agent, 1, np.random.default_rng(0)) is None
        assert len(agent.history) == 1

    def test_dead_is_absorbing(self):
        catalog = default_catalog()
        catalog.set_transition(DEAD, SUSCEPTIBLE, 1.0)
        cluster = make_cluster(catalog=catalog)
        agent = make_agent(cluster, 0, 10, 10, compartment=DEAD)
        assert advance_compartment(agent, 1, np.random.default_rng(0)) is None
        assert agent.compartment == DEAD

    def test_advance_agents_counts(self):
        catalog = default_catalog()
        catalog.set_transition(SUSCEPTIBLE, 'VACCINATED', 1.0)
        cluster = make_cluster(catalog=catalog)
        agents = [make_agent(cluster, i, 10, 10) for i in range(5)]
        assert advance_agents(agents, 1, np.random.default_rng(0)) == 5
        assert all(a.compartment == 'VACCINATED' for a in agents)
