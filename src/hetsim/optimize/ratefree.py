"""
Maximum-likelihood estimation of FreeRate category proportions and rates.

Two strategies are available:

- EM (Wang, Li, Susko and Roger 2008): posterior category weights give new
  proportions; each category's rate is then refined on its own by scaling
  the tree against the category's posterior pattern weights.
- Gradient: bounded L-BFGS-B over proportion ratios and rates, in a
  proportions phase followed by a rates phase (or a single joint phase).
"""

import warnings
from typing import Optional

import numpy as np
from scipy.optimize import minimize

from ..config import RateFreeConfig
from ..core.likelihood import LikelihoodCalculator
from ..exceptions import ConfigurationError, NumericalError
from ..models.rates import OptimizingParams, RateHeterogeneity, RateType


def expectation_step(pattern_lh_cat: np.ndarray, ptn_invar: np.ndarray,
                     ptn_freq: np.ndarray) -> np.ndarray:
    """
    E-step: turn category likelihoods into posterior category weights.

    ``pattern_lh_cat`` is overwritten in place with
    ``ptn_freq * lh_cat / (ptn_invar + sum(lh_cat))``.

    Parameters
    ----------
    pattern_lh_cat : ndarray, shape (n_patterns, n_categories)
        Proportion-weighted category likelihoods of each pattern
    ptn_invar : ndarray, shape (n_patterns,)
        Invariant-site likelihood of each pattern (same scaling)
    ptn_freq : ndarray, shape (n_patterns,)
        Number of sites with each pattern

    Returns
    -------
    ndarray, shape (n_categories,)
        Posterior-weighted site count of each category
    """
    lk_ptn = ptn_invar + pattern_lh_cat.sum(axis=1)
    zero = np.flatnonzero(lk_ptn == 0.0)
    if zero.size:
        raise NumericalError(f"Pattern {zero[0]} has zero likelihood")
    pattern_lh_cat *= (ptn_freq / lk_ptn)[:, np.newaxis]
    return pattern_lh_cat.sum(axis=0)


def maximization_step(new_prop: np.ndarray, n_sites: int) -> tuple[np.ndarray, int]:
    """
    M-step: normalize by the number of sites.

    Returns
    -------
    new_prop : ndarray
        Updated proportions
    max_id : int
        Category with the largest proportion (first one on ties)
    """
    new_prop = new_prop / n_sites
    return new_prop, int(np.argmax(new_prop))


def regularize_proportions(new_prop: np.ndarray, max_id: int,
                           min_prop: float = 1e-4) -> tuple[np.ndarray, bool]:
    """
    Clamp proportions below ``min_prop`` to ``min_prop``.

    The deficit is taken from category ``max_id``.

    Returns
    -------
    new_prop : ndarray
        Regularized copy
    zero_prop : bool
        True if any category was clamped (proportions are degenerate)
    """
    new_prop = np.array(new_prop, dtype=float)
    zero_prop = False
    for c in range(len(new_prop)):
        if new_prop[c] < min_prop:
            new_prop[max_id] -= min_prop - new_prop[c]
            new_prop[c] = min_prop
            zero_prop = True
    return new_prop, zero_prop


class EMStrategy:
    """Expectation-maximization over proportions with per-category rate refinement."""

    name = "EM"

    def __init__(self, config: RateFreeConfig):
        self.config = config

    def optimize(self, estimator: "RateFreeEstimator", gradient_epsilon: float) -> float:
        calc = estimator.calculator
        rate_model = estimator.rate_model
        config = self.config
        n_cat = rate_model.n_categories
        if rate_model.fix_p_invar and rate_model.p_invar > 0:
            raise ConfigurationError("EM cannot keep a fixed given p-invar")

        old_score = 0.0
        for step in range(n_cat):
            score = calc.compute_pattern_lh_cat()
            if config.verbose:
                print(f"At start of EM step {step} likelihood score is {score}")
            if not score < 0:
                raise NumericalError(
                    f"Non-negative log-likelihood {score} at EM step {step}\n"
                    f"{calc.tree.to_newick()}\n{rate_model.describe()}"
                )
            if step > 0 and score <= old_score - config.em_slack:
                message = (
                    f"EM step {step} decreased the log-likelihood: "
                    f"score: {score}  old_score: {old_score}"
                )
                if not config.ignore_errors:
                    raise NumericalError(message)
                warnings.warn(message, UserWarning)
            old_score = score
            estimator.history.append({'step': step, 'lnL': score,
                                      'proportions': rate_model.props.tolist(),
                                      'rates': rate_model.rates.tolist()})

            new_prop = expectation_step(calc.pattern_lh_cat, calc.ptn_invar, calc.ptn_freq)
            new_prop, max_id = maximization_step(new_prop, calc.n_sites)
            new_prop, zero_prop = regularize_proportions(new_prop, max_id, config.min_prop)
            if zero_prop:
                if config.verbose:
                    warnings.warn(
                        f"EM stopped at step {step}: a category proportion fell below "
                        f"{config.min_prop}",
                        UserWarning,
                    )
                break

            converged = bool(np.all(np.abs(rate_model.props - new_prop) < rate_model.proportion_tolerance))
            rate_model.props = new_prop.copy()

            new_pinvar = 1.0 - new_prop.sum()
            if new_pinvar > 1e-4 and rate_model.p_invar != 0.0:
                converged = converged and abs(rate_model.p_invar - new_pinvar) < rate_model.proportion_tolerance
                rate_model.set_p_invar(new_pinvar)
                calc.compute_ptn_invar()

            if not abs(new_prop.sum() + new_pinvar - 1.0) < config.min_prop:
                raise NumericalError(
                    f"Category proportions ({new_prop.sum()}) and p-invar ({new_pinvar}) do not sum to 1"
                )

            converged = self._optimize_rates_one_by_one(estimator, converged)
            calc.clear_partial_lh()
            estimator.normalize_mean_rate()
            if converged:
                break

        rate_model.sort_if_required()
        calc.clear_partial_lh()
        return calc.compute_log_likelihood()

    def _optimize_rates_one_by_one(self, estimator: "RateFreeEstimator", converged: bool) -> bool:
        """
        Refine each category rate against that category's posterior weights.

        The category's posterior-weighted pattern counts become the pattern
        frequencies of a single-category copy of the calculator, whose tree
        length scaling is then optimized in [min_prop, 1/prop(c)].
        """
        calc = estimator.calculator
        rate_model = estimator.rate_model
        for c in range(rate_model.n_categories):
            scoped = calc.scoped_copy(c)
            scoped.ptn_freq = calc.pattern_lh_cat[:, c].copy()
            scaling = rate_model.rate(c)
            scoped.scale_tree_length(scaling)
            scaling, _ = scoped.optimize_tree_length_scaling(
                self.config.min_prop, scaling, 1.0 / rate_model.proportion(c),
                self.config.scaling_tolerance,
            )
            converged = converged and abs(rate_model.rate(c) - scaling) < rate_model.rate_tolerance
            rate_model.rates[c] = scaling
        return converged


class GradientStrategy:
    """Bounded quasi-Newton optimization of proportion ratios and rates."""

    name = "BFGS"

    def __init__(self, config: RateFreeConfig):
        self.config = config

    def phases(self, rate_model: RateHeterogeneity) -> list[OptimizingParams]:
        """
        Optimization phases, in order.

        Proportions then rates by default; rates only when proportions are
        fixed; a single joint phase for the "1-BFGS" algorithm.
        """
        if rate_model.fix_proportions:
            return [OptimizingParams.RATES]
        if rate_model.fix_rates:
            return [OptimizingParams.PROPORTIONS]
        if "1-BFGS" in self.config.algorithm:
            return [OptimizingParams.BOTH]
        return [OptimizingParams.PROPORTIONS, OptimizingParams.RATES]

    def optimize(self, estimator: "RateFreeEstimator", gradient_epsilon: float) -> float:
        calc = estimator.calculator
        rate_model = estimator.rate_model
        config = self.config
        tolerance = max(gradient_epsilon, config.tol_rate)

        score = calc.compute_log_likelihood()
        for phase in self.phases(rate_model):
            rate_model.optimizing_params = phase
            bounds = rate_model.variable_bounds(config.min_prop_ratio, config.max_prop_ratio,
                                                config.min_rate, config.max_rate)
            lower, upper = np.array(bounds).T
            x0 = np.clip(rate_model.get_variables(), lower, upper)

            def objective(x):
                rate_model.update_from_variables(x)
                if rate_model.is_optimizing_rates:
                    # Category likelihoods only depend on rates
                    calc.clear_partial_lh()
                return -calc.compute_log_likelihood()

            result = minimize(
                objective, x0, method='L-BFGS-B', bounds=bounds,
                options={'maxiter': config.maxiter, 'gtol': tolerance},
            )
            if config.verbose:
                print(f"  {phase.name.lower()} phase: lnL = {-result.fun:.6f} "
                      f"({result.nit} iterations)")

            rate_model.update_from_variables(result.x)
            rate_model.sort_if_required()
            calc.clear_partial_lh()
            estimator.normalize_mean_rate()
            score = calc.compute_log_likelihood()
            estimator.history.append({'phase': phase.name.lower(), 'lnL': score,
                                      'proportions': rate_model.props.tolist(),
                                      'rates': rate_model.rates.tolist()})
        return score


class RateFreeEstimator:
    """
    Optimize the FreeRate model attached to a likelihood calculator.

    The rate model is updated in place. EM is used when the algorithm name
    contains "EM", no ascertainment correction is active and nothing is
    fixed (a given +I proportion included); otherwise the gradient strategy
    is used.

    Parameters
    ----------
    calculator : LikelihoodCalculator
        Calculator whose ``rate_model`` is a FreeRate model
    config : RateFreeConfig, optional
        Bounds, tolerances and algorithm name

    Attributes
    ----------
    strategy : EMStrategy or GradientStrategy
        Selected optimization strategy
    history : list[dict]
        Log-likelihood and parameters after each EM step or gradient phase
    """

    def __init__(self, calculator: LikelihoodCalculator, config: Optional[RateFreeConfig] = None):
        self.calculator = calculator
        self.rate_model = calculator.rate_model
        self.config = config or RateFreeConfig()

        if self.rate_model.rate_type != RateType.FREE:
            raise ConfigurationError(
                f"FreeRate optimization needs a +R model, got {self.rate_model.name or 'no rate model'}"
            )
        self.rate_model.sorted_rates = self.rate_model.sorted_rates or self.config.sorted_rates
        self.rate_model.set_proportion_tolerance(self.config.proportion_tolerance)
        self.rate_model.set_rate_tolerance(self.config.rate_tolerance)

        self.strategy = self.select_strategy()
        self.history: list[dict] = []

    def select_strategy(self):
        rate_model = self.rate_model
        use_em = (
            "EM" in self.config.algorithm
            and not self.calculator.has_unobserved_patterns
            and not rate_model.fix_proportions
            and not rate_model.fix_rates
            and not (rate_model.fix_p_invar and rate_model.p_invar > 0)
        )
        return EMStrategy(self.config) if use_em else GradientStrategy(self.config)

    def normalize_mean_rate(self) -> None:
        """
        Rescale rates to mean 1 and stretch the tree by the same factor.

        Effective branch lengths (length * rate) are unchanged, so the
        likelihood is too.
        """
        norm = self.rate_model.rescale_rates()
        if norm != 1.0:
            self.calculator.scale_tree_length(norm)

    def optimize(self, gradient_epsilon: float = 0.0) -> float:
        """
        Optimize proportions and rates.

        Parameters
        ----------
        gradient_epsilon : float
            Convergence tolerance for the gradient strategy (at least
            ``config.tol_rate``)

        Returns
        -------
        float
            Log-likelihood after optimization
        """
        if self.rate_model.n_dim() == 0:
            return self.calculator.compute_log_likelihood()

        if self.config.verbose:
            print(f"Optimizing {self.rate_model.name} model parameters by "
                  f"{self.config.algorithm} algorithm...")
        try:
            return self.strategy.optimize(self, gradient_epsilon)
        finally:
            self.rate_model.optimizing_params = OptimizingParams.BOTH
