"""Tests for epiagents.rng — seeded RNG hierarchy and checkpointing."""

import numpy as np
import pytest

from epiagents.rng import (
    GLOBAL_STREAMS,
    create_rng_hierarchy,
    get_cluster_rng,
    restore_rng_state,
    rng_state_snapshot,
)


class TestCreateRngHierarchy:
    def test_returns_correct_keys(self):
        rngs = create_rng_hierarchy(42, n_clusters=3)
        for name in GLOBAL_STREAMS:
            assert name in rngs
        for i in range(3):
            assert f'cluster_{i}' in rngs
        assert len(rngs) == 3 + len(GLOBAL_STREAMS)

    def test_generators_are_independent(self):
        rngs = create_rng_hierarchy(42, n_clusters=2)
        vals = {name: rng.random() for name, rng in rngs.items()}
        assert len(set(vals.values())) == len(vals)

    def test_reproducibility(self):
        rngs1 = create_rng_hierarchy(7, n_clusters=2)
        rngs2 = create_rng_hierarchy(7, n_clusters=2)
        for name in rngs1:
            np.testing.assert_array_equal(rngs1[name].random(50), rngs2[name].random(50))

    def test_cluster_streams_stable_when_adding_clusters(self):
        small = create_rng_hierarchy(42, n_clusters=2)
        large = create_rng_hierarchy(42, n_clusters=6)
        for i in range(2):
            np.testing.assert_array_equal(
                small[f'cluster_{i}'].random(20), large[f'cluster_{i}'].random(20))

    def test_unseeded(self):
        rngs = create_rng_hierarchy(None, n_clusters=1)
        assert 0.0 <= rngs['motion'].random() < 1.0


class TestGetClusterRng:
    def test_valid(self):
        rngs = create_rng_hierarchy(42, n_clusters=2)
        assert get_cluster_rng(rngs, 1) is rngs['cluster_1']

    def test_invalid(self):
        rngs = create_rng_hierarchy(42, n_clusters=2)
        with pytest.raises(KeyError):
            get_cluster_rng(rngs, 5)


class TestCheckpoint:
    def test_snapshot_restore_replays(self):
        rngs = create_rng_hierarchy(42, n_clusters=1)
        rngs['motion'].random(10)
        snap = rng_state_snapshot(rngs)
        expected = rngs['motion'].random(5)
        restore_rng_state(rngs, snap)
        np.testing.assert_array_equal(rngs['motion'].random(5), expected)

    def test_restore_unknown_stream(self):
        rngs = create_rng_hierarchy(42, n_clusters=1)
        snap = rng_state_snapshot(rngs)
        snap['bogus'] = snap['motion']
        with pytest.raises(KeyError):
            restore_rng_state(rngs, snap)
