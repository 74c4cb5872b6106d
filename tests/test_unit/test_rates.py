"""
Unit tests for rate heterogeneity models and checkpointing.
"""

import numpy as np
import pytest

from hetsim.core.checkpoint import Checkpoint
from hetsim.exceptions import ConfigurationError, OutputError
from hetsim.models.rates import (
    OptimizingParams,
    RateHeterogeneity,
    RateType,
    discrete_gamma_rates,
)


class TestConstructors:
    """Rate model variants and parameter validation."""

    def test_uniform(self):
        model = RateHeterogeneity.uniform()
        assert model.rate_type == RateType.NONE
        assert model.n_categories == 1
        assert model.name == ""
        assert not model.is_heterogeneous

    def test_discrete_gamma_mean_one(self):
        for alpha in (0.2, 1.0, 5.0):
            rates = discrete_gamma_rates(alpha, 4)
            assert rates.mean() == pytest.approx(1.0)
            assert np.all(np.diff(rates) > 0)

    def test_gamma_with_invariant(self):
        model = RateHeterogeneity.gamma(0.5, 4, p_invar=0.2)
        assert model.props.sum() == pytest.approx(0.8)
        assert model.mean_rate() == pytest.approx(1.0)
        assert model.name == "+I+G4"

    def test_continuous_gamma(self):
        model = RateHeterogeneity.gamma(0.7, continuous=True)
        assert model.continuous
        assert model.n_discrete_categories == 0
        assert model.name == "+GC"
        with pytest.raises(ConfigurationError, match="invariant"):
            RateHeterogeneity.gamma(0.7, p_invar=0.1, continuous=True)

    def test_proportions_must_sum_to_one(self):
        with pytest.raises(ConfigurationError, match="not equal to 1"):
            RateHeterogeneity(RateType.FREE, [0.3, 0.3], [1.0, 1.0])

    def test_free_rate_pairs(self):
        """(p, r) pairs are fixed and rescaled to mean rate 1."""
        model = RateHeterogeneity.free_rate(2, "0.3,1,0.7,2")
        np.testing.assert_allclose(model.props, [0.3, 0.7])
        assert model.mean_rate() == pytest.approx(1.0)
        assert model.rates[1] / model.rates[0] == pytest.approx(2.0)
        assert model.fix_proportions and model.fix_rates
        assert model.n_dim() == 0

    def test_free_rate_proportions_only(self):
        model = RateHeterogeneity.free_rate(3, [0.2, 0.3, 0.5])
        assert model.fix_proportions and not model.fix_rates
        np.testing.assert_allclose(model.rates, 1.0)
        assert model.n_dim() == 2

    def test_free_rate_optimize_from_given(self):
        model = RateHeterogeneity.free_rate(2, "0.3,1,0.7,2", optimize_from_given_params=True)
        assert not model.fix_proportions and not model.fix_rates

    def test_free_rate_wrong_count(self):
        with pytest.raises(ConfigurationError, match="twice the number"):
            RateHeterogeneity.free_rate(3, "0.2,0.3,0.5,1")

    def test_free_rate_bad_sum(self):
        with pytest.raises(ConfigurationError, match="not equal to 1"):
            RateHeterogeneity.free_rate(2, "0.3,1,0.6,2")

    def test_free_rate_with_invariant(self):
        """Given proportions are scaled by 1 - p_invar."""
        model = RateHeterogeneity.free_rate(2, "0.5,0.5", p_invar=0.2)
        np.testing.assert_allclose(model.props, [0.4, 0.4])

    def test_heterotachy(self):
        model = RateHeterogeneity.heterotachy(2, [0.25, 0.75])
        assert model.is_heterotachy
        assert model.fix_rates
        np.testing.assert_allclose(model.rates, 1.0)


class TestFromString:
    """Rate model name parsing."""

    @pytest.mark.parametrize("text,name", [
        ("", ""),
        ("+G4{0.5}", "+G4"),
        ("+I{0.2}", "+I"),
        ("+I{0.1}+G8", "+I+G8"),
        ("+GC{1.5}", "+GC"),
        ("+R3", "+R3"),
        ("+I+R2", "+I+R2"),
        ("+H2{0.4,0.6}", "+H2"),
    ])
    def test_names(self, text, name):
        assert RateHeterogeneity.from_string(text).name == name

    def test_invariant_default_start(self):
        """+I without a value starts at 0.25 and is estimated."""
        model = RateHeterogeneity.from_string("+I+R2")
        assert model.p_invar == pytest.approx(0.25)
        assert not model.fix_p_invar
        assert RateHeterogeneity.from_string("+I{0.1}+R2").fix_p_invar

    def test_unknown_token(self):
        with pytest.raises(ConfigurationError, match="Unknown"):
            RateHeterogeneity.from_string("+X3")

    def test_two_rate_models(self):
        with pytest.raises(ConfigurationError, match="More than one"):
            RateHeterogeneity.from_string("+G4+R3")

    def test_name_params(self):
        model = RateHeterogeneity.free_rate(2, "0.5,0.5,0.5,1.5")
        assert model.name_params() == "+R2{0.5,0.5,0.5,1.5}"
        assert model.describe().startswith("Site proportion and rates: (0.5,0.5)")


class TestOptimizationVariables:
    """Variable transforms used by the gradient optimizer."""

    @pytest.fixture
    def model(self):
        return RateHeterogeneity.free_rate(3, "0.2,0.5,0.3,1.0,0.5,2.0",
                                           optimize_from_given_params=True)

    def test_n_dim_by_phase(self, model):
        assert model.n_dim() == 4
        model.optimizing_params = OptimizingParams.RATES
        assert model.n_dim() == 2
        model.set_fix_proportions(True)
        model.optimizing_params = OptimizingParams.BOTH
        assert model.n_dim() == 2
        model.set_fix_rates(True)
        assert model.n_dim() == 0

    @pytest.mark.parametrize("phase", list(OptimizingParams))
    def test_round_trip(self, model, phase):
        """update_from_variables(get_variables()) leaves the model unchanged."""
        model.optimizing_params = phase
        props, rates = model.props.copy(), model.rates.copy()
        model.update_from_variables(model.get_variables())
        np.testing.assert_allclose(model.props, props)
        np.testing.assert_allclose(model.rates, rates)

    def test_proportions_keep_simplex(self, model):
        model.optimizing_params = OptimizingParams.PROPORTIONS
        assert model.update_from_variables(np.array([3.0, 0.01]))
        assert model.props.sum() == pytest.approx(1.0)
        assert model.props[0] / model.props[2] == pytest.approx(3.0)

    def test_joint_update_mean_rate_one(self, model):
        model.optimizing_params = OptimizingParams.BOTH
        model.update_from_variables(np.array([1.0, 2.0, 0.1, 0.4]))
        assert model.mean_rate() == pytest.approx(1.0)

    def test_mean_rate_invariant_after_rescale(self, model):
        model.optimizing_params = OptimizingParams.RATES
        model.update_from_variables(np.array([3.0, 0.2]))
        model.rescale_rates()
        assert np.dot(model.props, model.rates) == pytest.approx(1.0)

    def test_bounds_match_variables(self, model):
        for phase in OptimizingParams:
            model.optimizing_params = phase
            assert len(model.variable_bounds(0.001, 1000, 0.001, 1000)) == len(model.get_variables())

    def test_sort_if_required(self):
        model = RateHeterogeneity.free_rate(2, "0.3,2.0,0.7,1.0", sorted_rates=True)
        model.sort_if_required()
        assert model.rates[0] < model.rates[1]
        np.testing.assert_allclose(model.props, [0.7, 0.3])

    def test_tolerance_setters(self, model):
        with pytest.raises(ConfigurationError):
            model.set_proportion_tolerance(0.0)
        with pytest.raises(ConfigurationError):
            model.set_rate_tolerance(-1.0)


class TestCheckpoint:
    """Checkpoint save/restore and seeding from fewer categories."""

    def test_round_trip_exact(self, tmp_path):
        model = RateHeterogeneity.free_rate(3, "0.123456789,0.3,0.4,1.1,0.476543211,1.37")
        checkpoint = Checkpoint(tmp_path / "fit.ckp")
        model.save_checkpoint(checkpoint)
        checkpoint.dump()

        restored = RateHeterogeneity.free_rate(3)
        restored.restore_checkpoint(Checkpoint.load(tmp_path / "fit.ckp"))
        assert np.array_equal(restored.props, model.props)
        assert np.array_equal(restored.rates, model.rates)

    def test_dump_unwritable(self, tmp_path):
        checkpoint = Checkpoint()
        RateHeterogeneity.free_rate(2).save_checkpoint(checkpoint)
        target = tmp_path / "missing_dir" / "fit.ckp"
        with pytest.raises(OutputError, match="fit.ckp") as excinfo:
            checkpoint.dump(target)
        assert excinfo.value.path == str(target)

    def test_dump_without_path(self):
        with pytest.raises(ConfigurationError, match="No checkpoint file"):
            Checkpoint().dump()

    def test_missing_struct(self):
        with pytest.raises(ConfigurationError, match="no struct"):
            RateHeterogeneity.free_rate(2).restore_checkpoint(Checkpoint())

    def test_size_mismatch(self):
        checkpoint = Checkpoint()
        checkpoint.save_struct("RateFree2", prop=[0.5, 0.25, 0.25], rates=[1, 1, 1])
        with pytest.raises(ConfigurationError, match="expected 2"):
            RateHeterogeneity.free_rate(2).restore_checkpoint(checkpoint)

    def test_init_from_fewer_categories(self):
        """The largest category is split into two halves."""
        checkpoint = Checkpoint()
        RateHeterogeneity.free_rate(2, "0.3,0.5,0.7,1.2142857142857142").save_checkpoint(checkpoint)
        model = RateHeterogeneity.free_rate(3)
        model.init_from_fewer_categories(checkpoint)
        np.testing.assert_allclose(model.props, [0.3, 0.35, 0.35])
        assert model.mean_rate() == pytest.approx(1.0)
        assert np.all(model.rates > 0)
        assert model.rates[2] > model.rates[1]

    def test_init_from_one_category(self):
        checkpoint = Checkpoint()
        checkpoint.save_struct("RateFree1", prop=[1.0], rates=[1.0])
        model = RateHeterogeneity.free_rate(2)
        model.init_from_fewer_categories(checkpoint)
        np.testing.assert_allclose(model.props, [0.5, 0.5])
        np.testing.assert_allclose(model.rates, [0.5, 1.5])
