"""Tests for FreeRate proportion and rate estimation."""

import numpy as np
import pytest

from hetsim.config import RateFreeConfig, SimulationConfig
from hetsim.core.likelihood import LikelihoodCalculator
from hetsim.exceptions import ConfigurationError, NumericalError
from hetsim.io.sequences import Alignment, decode, state_mapping
from hetsim.io.trees import Tree
from hetsim.models.rates import OptimizingParams, RateHeterogeneity
from hetsim.models.substitution import jc
from hetsim.optimize.ratefree import EMStrategy, GradientStrategy, RateFreeEstimator
from hetsim.simulate.evolver import HeterogeneousSimulator


SIX_TAXA = "(((A:0.3,B:0.2):0.2,C:0.4):0.1,(D:0.3,(E:0.2,F:0.5):0.2):0.1);"


@pytest.fixture(scope="module")
def simulated_alignment():
    """Alignment simulated with two rate categories (rates 0.2 and 2.2)."""
    tree = Tree.from_newick(SIX_TAXA)
    rates = RateHeterogeneity.free_rate(2, "0.6,0.2,0.4,2.2")
    sim = HeterogeneousSimulator(tree, jc(), rates, SimulationConfig(sequence_length=400, seed=17))
    mapping = state_mapping("dna")
    return Alignment.from_strings({name: decode(seq, mapping) for name, seq in sim.simulate().items()})


def make_calculator(alignment, rate_string="+R2"):
    rates = RateHeterogeneity.from_string(rate_string)
    return LikelihoodCalculator(Tree.from_newick(SIX_TAXA), alignment, jc(), rates)


class TestStrategySelection:

    def test_em(self, simulated_alignment):
        estimator = RateFreeEstimator(make_calculator(simulated_alignment),
                                      RateFreeConfig(algorithm="EM"))
        assert isinstance(estimator.strategy, EMStrategy)

    def test_gradient_default(self, simulated_alignment):
        estimator = RateFreeEstimator(make_calculator(simulated_alignment))
        assert isinstance(estimator.strategy, GradientStrategy)

    def test_fixed_proportions_use_gradient(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+R2{0.5,0.5}")
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM"))
        assert isinstance(estimator.strategy, GradientStrategy)
        assert estimator.strategy.phases(calc.rate_model) == [OptimizingParams.RATES]

    def test_phases(self):
        rates = RateHeterogeneity.free_rate(3)
        assert GradientStrategy(RateFreeConfig()).phases(rates) == [
            OptimizingParams.PROPORTIONS, OptimizingParams.RATES
        ]
        assert GradientStrategy(RateFreeConfig(algorithm="1-BFGS")).phases(rates) == [
            OptimizingParams.BOTH
        ]
        rates.set_fix_rates(True)
        assert GradientStrategy(RateFreeConfig()).phases(rates) == [OptimizingParams.PROPORTIONS]

    def test_fixed_p_invar_uses_gradient(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+I{0.2}+R2")
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM"))
        assert isinstance(estimator.strategy, GradientStrategy)

        estimator.optimize()
        rates = calc.rate_model
        assert rates.p_invar == 0.2
        assert rates.props.sum() + rates.p_invar == pytest.approx(1.0)

    def test_em_rejects_fixed_p_invar_before_changes(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+I{0.2}+R2")
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM"))
        before = calc.rate_model.props.copy()
        with pytest.raises(ConfigurationError, match="p-invar"):
            EMStrategy(estimator.config).optimize(estimator, 0.0)
        np.testing.assert_array_equal(calc.rate_model.props, before)
        assert calc.rate_model.props.sum() + calc.rate_model.p_invar == pytest.approx(1.0)

    def test_non_free_rejected(self, simulated_alignment):
        with pytest.raises(ConfigurationError, match=r"\+R"):
            RateFreeEstimator(make_calculator(simulated_alignment, "+G4"))

    def test_config_applied(self, simulated_alignment):
        calc = make_calculator(simulated_alignment)
        RateFreeEstimator(calc, RateFreeConfig(sorted_rates=True, proportion_tolerance=1e-3))
        assert calc.rate_model.sorted_rates
        assert calc.rate_model.proportion_tolerance == 1e-3


class TestEMOptimization:
    """EM fitting on simulated data."""

    def test_improves_likelihood(self, simulated_alignment):
        calc = make_calculator(simulated_alignment)
        start = calc.compute_log_likelihood()
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM"))
        lnl = estimator.optimize()

        assert lnl >= start - 1e-6
        assert lnl < 0
        assert len(estimator.history) >= 1
        assert estimator.history[0]["lnL"] == pytest.approx(start)

    def test_history_within_slack(self, simulated_alignment):
        config = RateFreeConfig(algorithm="EM")
        estimator = RateFreeEstimator(make_calculator(simulated_alignment, "+R3"), config)
        estimator.optimize()
        scores = [h["lnL"] for h in estimator.history]
        assert all(b > a - config.em_slack for a, b in zip(scores, scores[1:]))

    def test_proportions_and_mean_rate(self, simulated_alignment):
        calc = make_calculator(simulated_alignment)
        RateFreeEstimator(calc, RateFreeConfig(algorithm="EM")).optimize()
        rates = calc.rate_model
        assert rates.props.sum() == pytest.approx(1.0, abs=1e-6)
        assert np.all(rates.props >= 1e-4)
        assert rates.mean_rate() == pytest.approx(1.0)
        assert rates.optimizing_params == OptimizingParams.BOTH

    def test_sorted_rates(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+R3")
        RateFreeEstimator(calc, RateFreeConfig(algorithm="EM", sorted_rates=True)).optimize()
        assert np.all(np.diff(calc.rate_model.rates) >= 0)

    def test_with_invariant_sites(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+I+R2")
        RateFreeEstimator(calc, RateFreeConfig(algorithm="EM")).optimize()
        rates = calc.rate_model
        assert 0.0 < rates.p_invar < 1.0
        assert rates.props.sum() + rates.p_invar == pytest.approx(1.0, abs=1e-3)

    def test_non_negative_score(self, simulated_alignment, monkeypatch):
        calc = make_calculator(simulated_alignment)
        monkeypatch.setattr(calc, "compute_pattern_lh_cat", lambda: 0.0)
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM"))
        with pytest.raises(NumericalError, match="Non-negative"):
            estimator.optimize()
        assert calc.rate_model.optimizing_params == OptimizingParams.BOTH

    def _drop_second_score(self, calc, monkeypatch):
        original = calc.compute_pattern_lh_cat
        calls = []

        def dropping():
            score = original()
            calls.append(score)
            return score - 100.0 if len(calls) == 2 else score

        monkeypatch.setattr(calc, "compute_pattern_lh_cat", dropping)

    def test_likelihood_drop_raises(self, simulated_alignment, monkeypatch):
        calc = make_calculator(simulated_alignment)
        self._drop_second_score(calc, monkeypatch)
        with pytest.raises(NumericalError, match="decreased"):
            RateFreeEstimator(calc, RateFreeConfig(algorithm="EM")).optimize()

    def test_likelihood_drop_ignored(self, simulated_alignment, monkeypatch):
        calc = make_calculator(simulated_alignment)
        self._drop_second_score(calc, monkeypatch)
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM", ignore_errors=True))
        with pytest.warns(UserWarning, match="decreased"):
            estimator.optimize()


class TestGradientOptimization:
    """Bounded quasi-Newton fitting."""

    def test_improves_likelihood(self, simulated_alignment):
        calc = make_calculator(simulated_alignment)
        start = calc.compute_log_likelihood()
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="2-BFGS"))
        lnl = estimator.optimize()

        assert lnl >= start - 1e-6
        assert [h["phase"] for h in estimator.history] == ["proportions", "rates"]
        assert calc.rate_model.mean_rate() == pytest.approx(1.0)
        assert calc.rate_model.optimizing_params == OptimizingParams.BOTH

    def test_joint_phase(self, simulated_alignment):
        calc = make_calculator(simulated_alignment)
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="1-BFGS"))
        estimator.optimize()
        assert [h["phase"] for h in estimator.history] == ["both"]

    def test_fixed_proportions_unchanged(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+R2{0.6,0.4}")
        RateFreeEstimator(calc).optimize()
        np.testing.assert_allclose(calc.rate_model.props, [0.6, 0.4])


class TestNothingToOptimize:

    def test_single_category(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+R1")
        estimator = RateFreeEstimator(calc, RateFreeConfig(algorithm="EM"))
        assert estimator.optimize() == pytest.approx(calc.compute_log_likelihood())
        assert estimator.history == []

    def test_all_fixed(self, simulated_alignment):
        calc = make_calculator(simulated_alignment, "+R2{0.5,0.5,0.5,1.5}")
        before = calc.rate_model.rates.copy()
        RateFreeEstimator(calc).optimize()
        np.testing.assert_array_equal(calc.rate_model.rates, before)

    def test_normalize_mean_rate_preserves_likelihood(self, simulated_alignment):
        calc = make_calculator(simulated_alignment)
        estimator = RateFreeEstimator(calc)
        before = calc.compute_log_likelihood()
        calc.rate_model.rates = calc.rate_model.rates * 3.0
        calc.scale_tree_length(1.0 / 3.0)
        estimator.normalize_mean_rate()
        assert calc.rate_model.mean_rate() == pytest.approx(1.0)
        assert calc.compute_log_likelihood() == pytest.approx(before)
