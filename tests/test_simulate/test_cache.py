"""Tests for per-branch transition caches."""

import numpy as np
import pytest

from hetsim.exceptions import NumericalError
from hetsim.io.trees import Tree
from hetsim.models.rates import RateHeterogeneity
from hetsim.models.substitution import MixtureModel, hky, jc
from hetsim.simulate.annotator import INVARIANT_INDEX
from hetsim.simulate.cache import TransitionCache, branch_lengths_by_category, caching_allowed


class TestCachingAllowed:

    def test_uniform(self):
        assert caching_allowed(RateHeterogeneity.uniform())

    def test_discrete(self):
        assert caching_allowed(RateHeterogeneity.gamma(0.5, 4))
        assert not caching_allowed(RateHeterogeneity.gamma(0.5, 4), threshold=3)

    def test_continuous(self):
        assert not caching_allowed(RateHeterogeneity.gamma(0.5, continuous=True))


class TestTransitionCache:
    """Accumulated transition tables for one branch."""

    def test_rows_accumulate_to_one(self):
        cache = TransitionCache.build(hky(2.0), RateHeterogeneity.gamma(0.5, 4), [0.3])
        assert cache.table.shape == (1, 4, 4, 4)
        np.testing.assert_allclose(cache.table[..., -1], 1.0, atol=1e-10)
        assert np.all(np.diff(cache.table, axis=-1) >= 0)

    def test_uniform_single_slot(self):
        cache = TransitionCache.build(jc(), RateHeterogeneity.uniform(), [0.1])
        assert cache.n_categories == 1
        expected = np.cumsum(jc().transition_matrix(0.1), axis=1)
        np.testing.assert_allclose(cache.table[0, 0], expected)

    def test_partition_rate_scales_time(self):
        slow = TransitionCache.build(jc(), RateHeterogeneity.uniform(), [0.2], partition_rate=0.5)
        fast = TransitionCache.build(jc(), RateHeterogeneity.uniform(), [0.1])
        np.testing.assert_allclose(slow.table, fast.table)

    def test_fused_skips_pairs(self):
        mix = MixtureModel([jc(), hky(2.0)], fused=True)
        rates = RateHeterogeneity.free_rate(2, "0.5,0.5,0.5,1.5")
        cache = TransitionCache.build(mix, rates, [0.1])
        np.testing.assert_array_equal(cache.computed, np.eye(2, dtype=bool))
        assert np.all(cache.table[0, 1] == 0.0)

        with pytest.raises(NumericalError, match="not cached"):
            cache.sample_many(np.array([0.5]), np.array([0]), np.array([1]), np.array([0]))

    def test_invariant_site_rejected(self, rng):
        cache = TransitionCache.build(jc(), RateHeterogeneity.invariant(0.2), [0.1])
        with pytest.raises(NumericalError, match="Invariant"):
            cache.sample(rng, 0, INVARIANT_INDEX, 0)
        with pytest.raises(NumericalError, match="Invariant"):
            cache.sample_many(np.array([0.1]), np.array([0]), np.array([INVARIANT_INDEX]),
                              np.array([0]))

    def test_sample_many_matches_sample(self):
        rates = RateHeterogeneity.gamma(0.7, 4)
        cache = TransitionCache.build(hky(3.0), rates, [0.5])
        sites = 300
        categories = np.random.default_rng(0).integers(0, 4, size=sites)
        states = np.random.default_rng(1).integers(0, 4, size=sites)

        rng = np.random.default_rng(99)
        one_by_one = [cache.sample(rng, 0, int(c), int(s)) for c, s in zip(categories, states)]
        many = cache.sample_many(np.random.default_rng(99).random(sites),
                                 np.zeros(sites, dtype=np.int64), categories, states)
        assert list(many) == one_by_one

    def test_malformed_rows_rejected(self, rng):
        cache = TransitionCache.build(jc(), RateHeterogeneity.uniform(), [0.1])
        cache.table[0, 0, 2] = np.nan
        with pytest.raises(NumericalError, match="Malformed"):
            cache.sample(rng, 0, 0, 2)
        with pytest.raises(NumericalError, match="Malformed"):
            cache.sample_many(rng.random(3), np.zeros(3, dtype=np.int64),
                              np.zeros(3, dtype=np.int64), np.array([0, 2, 1]))
        # Other rows still sample
        assert cache.sample(rng, 0, 0, 1) in range(4)

    def test_zero_length_keeps_state(self, rng):
        cache = TransitionCache.build(jc(), RateHeterogeneity.uniform(), [0.0])
        states = np.array([0, 1, 2, 3, 2, 1])
        result = cache.sample_many(rng.random(6), np.zeros(6, dtype=np.int64),
                                   np.zeros(6, dtype=np.int64), states)
        np.testing.assert_array_equal(result, states)

    def test_heterotachy_lengths(self):
        tree = Tree.from_newick("(A:0.1/0.4,B:0.2/0.2);")
        node_a = tree.leaves()[0]
        assert branch_lengths_by_category(node_a, 2, heterotachy=True) == [0.1, 0.4]
        assert branch_lengths_by_category(node_a, 2, heterotachy=False) == [0.25, 0.25]

        rates = RateHeterogeneity.heterotachy(2)
        cache = TransitionCache.build(jc(), rates, [0.1, 0.4])
        np.testing.assert_allclose(cache.table[0, 0], np.cumsum(jc().transition_matrix(0.1), axis=1))
        np.testing.assert_allclose(cache.table[0, 1], np.cumsum(jc().transition_matrix(0.4), axis=1))

    def test_release(self):
        cache = TransitionCache.build(jc(), RateHeterogeneity.uniform(), [0.1])
        cache.release()
        assert cache.table.size == 0
