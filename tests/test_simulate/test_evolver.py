"""Tests for the site-heterogeneous sequence simulator."""

import gzip

import numpy as np
import pytest

from hetsim.config import SimulationConfig
from hetsim.exceptions import ConfigurationError
from hetsim.io.sequences import Alignment
from hetsim.io.trees import Tree
from hetsim.models.rates import RateHeterogeneity
from hetsim.models.substitution import MixtureModel, hky, jc
from hetsim.simulate.evolver import HeterogeneousSimulator


def hamming(a, b):
    return int(np.sum(a != b))


class TestHeterogeneousSimulator:
    """Test suite for HeterogeneousSimulator."""

    @pytest.fixture
    def simple_tree(self):
        return Tree.from_newick("((A:0.1,B:0.2):0.15,(C:0.3,D:0.1):0.05);")

    @pytest.fixture
    def zero_tree(self):
        """Tree with zero branch lengths: every leaf equals the root."""
        return Tree.from_newick("((A:0,B:0):0,(C:0,D:0):0);")

    def make(self, tree, model=None, rates=None, length=200, seed=42, **kwargs):
        config = SimulationConfig(sequence_length=length, seed=seed, **kwargs)
        return HeterogeneousSimulator(tree, model or jc(), rates or RateHeterogeneity.uniform(), config)

    def test_output_shape(self, simple_tree):
        seqs = self.make(simple_tree).simulate()
        assert set(seqs) == {"A", "B", "C", "D"}
        for seq in seqs.values():
            assert seq.shape == (200,)
            assert seq.min() >= 0 and seq.max() < 4

    def test_reproducible_with_seed(self, simple_tree):
        rates = RateHeterogeneity.gamma(0.5, 4)
        a = self.make(simple_tree, hky(2.0), rates, seed=7).simulate()
        b = self.make(simple_tree, hky(2.0), rates, seed=7).simulate()
        c = self.make(simple_tree, hky(2.0), rates, seed=8).simulate()
        for name in a:
            np.testing.assert_array_equal(a[name], b[name])
        assert any(not np.array_equal(a[name], c[name]) for name in a)

    def test_root_frequencies(self, simple_tree):
        model = hky(2.0, np.array([0.4, 0.1, 0.1, 0.4]))
        sim = self.make(simple_tree, model, length=20000)
        root = sim._generate_ancestral_sequence()
        freqs = np.bincount(root, minlength=4) / len(root)
        np.testing.assert_allclose(freqs, model.freqs, atol=0.015)

    def test_divergence_grows_with_branch_length(self):
        tree = Tree.from_newick("(A:0.02,B:1.5);")
        sim = self.make(tree, length=5000, keep_ancestral=True)
        seqs = sim.simulate()
        root = sim.annotation.root_sequence
        assert hamming(seqs["A"], root) < hamming(seqs["B"], root)
        # Expected JC distance: p = 3/4 (1 - exp(-4t/3))
        p_b = hamming(seqs["B"], root) / 5000
        assert p_b == pytest.approx(0.75 * (1 - np.exp(-2.0)), abs=0.03)

    def test_zero_branches_copy_root(self, zero_tree):
        sim = self.make(zero_tree, hky(2.0), RateHeterogeneity.gamma(0.5, 4))
        seqs = sim.simulate()
        for seq in seqs.values():
            np.testing.assert_array_equal(seq, sim.annotation.root_sequence)

    def test_invariant_sites_match_root(self, simple_tree):
        rates = RateHeterogeneity.from_string("+I{0.5}+G4{0.5}")
        tree = Tree.from_newick("((A:2,B:2):2,(C:2,D:2):2);")
        sim = self.make(tree, rates=rates, length=2000)
        seqs = sim.simulate()
        invariant = sim.annotation.invariant_sites
        root = sim.annotation.root_sequence
        assert invariant.any()
        for seq in seqs.values():
            np.testing.assert_array_equal(seq[invariant], root[invariant])
            assert hamming(seq[~invariant], root[~invariant]) > 0

    def test_ancestral_sequences_kept(self, simple_tree):
        sim = self.make(simple_tree, keep_ancestral=True)
        sim.simulate()
        assert len(sim.ancestral_sequences) == 3
        for seq in sim.ancestral_sequences.values():
            assert seq.shape == (200,)

    def test_ancestral_sequences_dropped_by_default(self, simple_tree):
        sim = self.make(simple_tree)
        sim.simulate()
        assert sim.ancestral_sequences == {}

    def test_supplied_root(self, zero_tree):
        root = np.array([0, 1, 2, 3] * 5)
        config = SimulationConfig(sequence_length=20, seed=1)
        sim = HeterogeneousSimulator(zero_tree, jc(), RateHeterogeneity.uniform(), config,
                                     root_sequence=root)
        for seq in sim.simulate().values():
            np.testing.assert_array_equal(seq, root)

    def test_supplied_root_wrong_length(self, zero_tree):
        config = SimulationConfig(sequence_length=20, seed=1)
        with pytest.raises(ConfigurationError, match="length"):
            HeterogeneousSimulator(zero_tree, jc(), RateHeterogeneity.uniform(), config,
                                   root_sequence=np.zeros(10, dtype=int))

    def test_uncached_path_matches_distribution(self, zero_tree):
        """Transitions computed per site give the same zero-length result."""
        sim = self.make(zero_tree, rates=RateHeterogeneity.gamma(0.5, 4),
                        max_rate_categories_for_caching=0)
        assert not sim.use_cache
        seqs = sim.simulate()
        for seq in seqs.values():
            np.testing.assert_array_equal(seq, sim.annotation.root_sequence)

    def test_cached_and_uncached_agree_statistically(self):
        tree = Tree.from_newick("(A:0.5,B:0.5);")
        rates = RateHeterogeneity.gamma(1.0, 4)
        cached = self.make(tree, rates=rates, length=20000, seed=3).simulate()
        uncached = self.make(tree, rates=rates, length=20000, seed=3,
                             max_rate_categories_for_caching=0).simulate()
        p_cached = np.mean(cached["A"] != cached["B"])
        p_uncached = np.mean(uncached["A"] != uncached["B"])
        assert p_cached == pytest.approx(p_uncached, abs=0.02)

    def test_sibling_order_does_not_change_distribution(self):
        """Reversing children changes the draw order, not leaf statistics."""
        forward = Tree.from_newick("((A:0.1,B:0.6):0.3,(C:1.0,D:0.05):0.2);")
        reversed_ = Tree.from_newick("((D:0.05,C:1.0):0.2,(B:0.6,A:0.1):0.3);")
        model = hky(3.0, np.array([0.4, 0.1, 0.2, 0.3]))
        rates = RateHeterogeneity.from_string("+I{0.2}+G4{0.7}")

        def leaf_statistics(tree, seed):
            sim = self.make(tree, model, rates, length=20000, seed=seed)
            seqs = sim.simulate()
            root = sim.annotation.root_sequence
            stats = {}
            for name in "ABCD":
                stats[name + "_root"] = np.mean(seqs[name] != root)
                for state, freq in enumerate(np.bincount(seqs[name], minlength=4) / 20000):
                    stats[f"{name}_{state}"] = freq
            stats["A_C"] = np.mean(seqs["A"] != seqs["C"])
            stats["B_D"] = np.mean(seqs["B"] != seqs["D"])
            return stats

        a = leaf_statistics(forward, seed=21)
        b = leaf_statistics(reversed_, seed=22)
        for key in a:
            assert a[key] == pytest.approx(b[key], abs=0.025), key

    def test_continuous_gamma(self, simple_tree):
        sim = self.make(simple_tree, rates=RateHeterogeneity.gamma(0.3, continuous=True))
        assert not sim.use_cache
        seqs = sim.simulate()
        assert len(seqs) == 4

    def test_mixture(self, simple_tree):
        mix = MixtureModel([jc(), hky(5.0)], weights=[0.5, 0.5])
        sim = self.make(simple_tree, mix, RateHeterogeneity.gamma(1.0, 4))
        seqs = sim.simulate()
        assert len(seqs) == 4
        assert set(np.unique(sim.annotation.model_index)) == {0, 1}

    def test_fused_mixture(self, simple_tree):
        mix = MixtureModel([jc(), hky(5.0)], fused=True)
        rates = RateHeterogeneity.free_rate(2, "0.5,0.5,0.5,1.5")
        sim = self.make(simple_tree, mix, rates)
        sim.simulate()
        np.testing.assert_array_equal(sim.annotation.model_index, sim.annotation.rate_index)

    def test_heterotachy(self):
        """Category 0 has zero-length branches, so its sites never change."""
        tree = Tree.from_newick("((A:0/2,B:0/2):0/2,(C:0/2,D:0/2):0/2);")
        sim = self.make(tree, rates=RateHeterogeneity.heterotachy(2), length=2000)
        seqs = sim.simulate()
        frozen = sim.annotation.rate_index == 0
        root = sim.annotation.root_sequence
        for seq in seqs.values():
            np.testing.assert_array_equal(seq[frozen], root[frozen])
            assert hamming(seq[~frozen], root[~frozen]) > 0

    def test_heterotachy_length_mismatch(self):
        tree = Tree.from_newick("(A:0.1/0.2/0.3,B:0.1/0.2/0.3);")
        config = SimulationConfig(sequence_length=10)
        with pytest.raises(ConfigurationError, match="heterotachy"):
            HeterogeneousSimulator(tree, jc(), RateHeterogeneity.heterotachy(2), config)

    def test_fundi(self, zero_tree):
        """FunDi taxa carry a permutation of the root at the selected sites."""
        sim = self.make(zero_tree, length=100, fundi_taxa={"A"}, fundi_proportion=0.2)
        seqs = sim.simulate()
        root = sim.annotation.root_sequence
        sites = sim.fundi_sites
        assert len(sites) == 20
        np.testing.assert_array_equal(np.sort(sim.fundi_permutation), sites)
        np.testing.assert_array_equal(seqs["A"][sites], root[sim.fundi_permutation])
        np.testing.assert_array_equal(seqs["B"], root)

        others = np.setdiff1d(np.arange(100), sites)
        np.testing.assert_array_equal(seqs["A"][others], root[others])
        assert "fundi" in sim.get_parameters()

    def test_fundi_unknown_taxon(self, simple_tree):
        with pytest.raises(ConfigurationError, match="FunDi"):
            self.make(simple_tree, fundi_taxa={"Z"}, fundi_proportion=0.1)

    def test_negative_branch_length(self):
        tree = Tree.from_newick("(A:0.1,B:0.1);")
        tree.leaves()[0].branch_length = -0.1
        with pytest.raises(ConfigurationError, match="negative"):
            self.make(tree)

    def test_parameters(self, simple_tree):
        sim = self.make(simple_tree, rates=RateHeterogeneity.from_string("+I{0.2}+G4{0.5}"))
        sim.simulate()
        params = sim.get_parameters()
        assert params["sequence_length"] == 200
        assert params["seed"] == 42
        assert params["transition_caching"] is True
        assert 0 < params["n_invariant_sites"] < 200


class TestSimulateToFile:
    """Streaming output to PHYLIP and FASTA files."""

    def make(self, tree, length=50, **kwargs):
        config = SimulationConfig(sequence_length=length, seed=11, **kwargs)
        return HeterogeneousSimulator(tree, jc(), RateHeterogeneity.uniform(), config)

    def test_phylip(self, tmp_path, four_taxon_tree):
        path = self.make(four_taxon_tree).simulate_to_file(tmp_path / "out")
        assert path.name == "out.phy"
        lines = path.read_text().splitlines()
        assert lines[0] == "4 50"
        aln = Alignment.from_phylip(path)
        assert set(aln.names) == {"A", "B", "C", "D"}
        assert aln.n_sites == 50

    def test_fasta(self, tmp_path, four_taxon_tree):
        path = self.make(four_taxon_tree, output_format="fasta").simulate_to_file(tmp_path / "out")
        assert path.suffix == ".fa"
        aln = Alignment.from_fasta(path)
        assert aln.n_species == 4

    def test_same_as_in_memory(self, tmp_path, four_taxon_tree):
        in_memory = self.make(four_taxon_tree).simulate()
        path = self.make(four_taxon_tree).simulate_to_file(tmp_path / "out")
        aln = Alignment.from_phylip(path)
        for name, seq in in_memory.items():
            np.testing.assert_array_equal(aln.get_sequence(name), seq)

    def test_compressed(self, tmp_path, four_taxon_tree):
        path = self.make(four_taxon_tree, compress=True).simulate_to_file(tmp_path / "out")
        with gzip.open(path, "rt") as f:
            assert f.readline().strip() == "4 50"
