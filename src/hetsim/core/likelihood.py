"""
Per-pattern, per-category likelihood calculation.

Felsenstein pruning over compressed site patterns, vectorized over
patterns with numpy. Each rate category (and mixture component) is pruned
separately; per-node scaling keeps partials in range and the log scale
factors are carried through to the returned log-likelihoods.
"""

from typing import TYPE_CHECKING, Optional, Union

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.special import logsumexp

from ..exceptions import ConfigurationError
from ..io.sequences import Alignment
from ..io.trees import Tree
from ..models.rates import RateHeterogeneity

if TYPE_CHECKING:
    from ..models.substitution import MixtureModel, SubstitutionModel

Model = Union["SubstitutionModel", "MixtureModel"]


class LikelihoodCalculator:
    """
    Likelihood of an alignment on a fixed tree topology.

    After ``compute_pattern_lh_cat`` the buffers hold, for every pattern,
    the category contributions ``pattern_lh_cat[ptn, c]`` (already weighted
    by the category proportion) and the invariant-site contribution
    ``ptn_invar[ptn]``. Both are divided by the same per-pattern factor
    ``exp(log_scale[ptn])``, so ratios between them are exact.

    Parameters
    ----------
    tree : Tree
        Tree with branch lengths in substitutions per site
    alignment : Alignment
        Observed sequences; names must match the tree's leaf names
    model : SubstitutionModel or MixtureModel
        Substitution process
    rate_model : RateHeterogeneity
        Site rate categories
    """

    # Ascertainment-bias correction is not implemented
    has_unobserved_patterns = False

    def __init__(
        self,
        tree: Tree,
        alignment: Alignment,
        model: Model,
        rate_model: RateHeterogeneity,
    ):
        missing = set(tree.leaf_names) - set(alignment.names)
        if missing:
            raise ConfigurationError(f"Taxa in tree but not in alignment: {sorted(missing)}")
        if alignment.n_states != model.n_states:
            raise ConfigurationError(
                f"Alignment has {alignment.n_states} states, model has {model.n_states}"
            )

        patterns, freqs = alignment.compress_patterns()
        rows = {name: i for i, name in enumerate(alignment.names)}
        leaf_patterns = np.array([patterns[rows[name]] for name in tree.leaf_names])
        self._setup(tree, model, rate_model, leaf_patterns, freqs, alignment.n_sites)

    @classmethod
    def _from_patterns(cls, tree: Tree, model: Model, rate_model: RateHeterogeneity,
                       patterns: np.ndarray, ptn_freq: np.ndarray,
                       n_sites: int) -> "LikelihoodCalculator":
        """Calculator over already compressed patterns (rows in leaf order)."""
        calc = cls.__new__(cls)
        calc._setup(tree, model, rate_model, patterns, ptn_freq, n_sites)
        return calc

    def _setup(self, tree, model, rate_model, patterns, ptn_freq, n_sites) -> None:
        if patterns.shape[0] != len(tree.leaf_names):
            raise ConfigurationError(
                f"Expected one pattern row per leaf ({len(tree.leaf_names)}), got {patterns.shape[0]}"
            )
        self.tree = tree
        self.model = model
        self.rate_model = rate_model
        self.patterns = patterns
        self.ptn_freq = np.asarray(ptn_freq, dtype=float)
        self.n_patterns = patterns.shape[1]
        self.n_sites = n_sites
        self._init_buffers()

    def _init_buffers(self) -> None:
        n_states = self.model.n_states
        self._tip_partials = {}
        for row, leaf in enumerate(self.tree.leaves()):
            states = self.patterns[row]
            partial = np.zeros((self.n_patterns, n_states))
            known = states >= 0
            partial[known, states[known]] = 1.0
            partial[~known, :] = 1.0
            self._tip_partials[leaf.id] = partial

        self.pattern_lh_cat = np.zeros((self.n_patterns, self.rate_model.n_categories))
        self.ptn_invar = np.zeros(self.n_patterns)
        self.log_scale = np.zeros(self.n_patterns)
        self._ptn_invar_raw = np.zeros(self.n_patterns)
        self._log_lh_cat: Optional[np.ndarray] = None
        self.compute_ptn_invar()

    def clear_partial_lh(self) -> None:
        """Invalidate memoized per-category likelihoods."""
        self._log_lh_cat = None

    def compute_ptn_invar(self) -> None:
        """
        Recompute the invariant-site likelihood of each pattern.

        A pattern is compatible with invariance in state s when every known
        character is s; its contribution is p_invar * sum_s pi_s.
        """
        freqs = self.model.frequencies
        n_states = self.model.n_states
        unknown = self.patterns < 0
        constant = np.array([
            np.all((self.patterns == s) | unknown, axis=0) for s in range(n_states)
        ])
        self._ptn_invar_raw = self.rate_model.p_invar * (freqs @ constant)

    def _branch_length(self, node, category: int) -> float:
        if self.rate_model.is_heterotachy:
            return node.get_length(category)
        return node.branch_length

    def _prune(self, component: "SubstitutionModel", category: int) -> np.ndarray:
        """Log-likelihood of every pattern for one (component, category) pair."""
        rate = self.rate_model.rate(category)
        partials = {}
        log_scale = np.zeros(self.n_patterns)

        for node in self.tree.postorder():
            if node.is_leaf:
                partials[node.id] = self._tip_partials[node.id]
                continue
            partial = np.ones((self.n_patterns, component.n_states))
            for child in node.children:
                P = component.transition_matrix(self._branch_length(child, category) * rate)
                partial = partial * (partials.pop(child.id) @ P.T)
            scale = partial.max(axis=1)
            scale = np.where(scale > 0, scale, 1.0)
            partial /= scale[:, np.newaxis]
            log_scale += np.log(scale)
            partials[node.id] = partial

        site_lh = partials[self.tree.root.id] @ component.freqs
        with np.errstate(divide='ignore'):
            return np.log(site_lh) + log_scale

    def _category_log_likelihoods(self) -> np.ndarray:
        """(n_patterns, n_categories) log-likelihoods, memoized."""
        if self._log_lh_cat is not None:
            return self._log_lh_cat

        n_cat = self.rate_model.n_categories
        log_lh = np.empty((self.n_patterns, n_cat))
        for c in range(n_cat):
            if not self.model.is_mixture:
                log_lh[:, c] = self._prune(self.model, c)
            elif self.model.is_fused:
                log_lh[:, c] = self._prune(self.model.component(c), c)
            else:
                per_component = np.array([
                    self._prune(self.model.component(m), c) for m in range(self.model.n_mixtures)
                ])
                with np.errstate(divide='ignore'):
                    log_w = np.log(self.model.weights)
                log_lh[:, c] = logsumexp(per_component + log_w[:, np.newaxis], axis=0)

        self._log_lh_cat = log_lh
        return log_lh

    def compute_pattern_lh_cat(self) -> float:
        """
        Fill ``pattern_lh_cat``, ``ptn_invar`` and ``log_scale``.

        Returns
        -------
        float
            Log-likelihood of the alignment
        """
        with np.errstate(divide='ignore'):
            log_weighted = np.log(self.rate_model.props)[np.newaxis, :] + self._category_log_likelihoods()
            log_invar = np.log(self._ptn_invar_raw)

        scale = np.maximum(log_weighted.max(axis=1), log_invar)
        scale = np.where(np.isfinite(scale), scale, 0.0)

        self.pattern_lh_cat = np.exp(log_weighted - scale[:, np.newaxis])
        self.ptn_invar = np.exp(log_invar - scale)
        self.log_scale = scale

        lk_ptn = self.pattern_lh_cat.sum(axis=1) + self.ptn_invar
        with np.errstate(divide='ignore'):
            return float(np.sum(self.ptn_freq * (np.log(lk_ptn) + scale)))

    def compute_log_likelihood(self) -> float:
        return self.compute_pattern_lh_cat()

    def scale_tree_length(self, factor: float) -> None:
        """Multiply all branch lengths by factor."""
        self.tree.scale(factor)
        self.clear_partial_lh()

    def scoped_copy(self, category: int) -> "LikelihoodCalculator":
        """
        Calculator for a single rate category.

        The copy has its own tree (with the category's branch lengths under
        heterotachy), the category's substitution model (its own component
        for fused mixtures), no rate heterogeneity and its own pattern
        weights. Changes to it do not affect this calculator.
        """
        tree = self.tree.copy()
        if self.rate_model.is_heterotachy:
            for node in tree.preorder():
                node.branch_length = node.get_length(category)
                node.category_lengths = None

        model = self.model
        if self.model.is_mixture and self.model.is_fused:
            model = self.model.component(category)

        # Tip partials are keyed by leaf id, which the deep copy preserves
        return LikelihoodCalculator._from_patterns(
            tree, model, RateHeterogeneity.uniform(), self.patterns,
            self.ptn_freq.copy(), self.n_sites,
        )

    def optimize_tree_length_scaling(
        self, min_scaling: float, scaling: float, max_scaling: float, tolerance: float
    ) -> tuple[float, float]:
        """
        Optimize a factor applied to all branch lengths.

        The tree is assumed to be currently scaled by ``scaling``; it is left
        scaled by the optimal factor in [min_scaling, max_scaling].

        Returns
        -------
        tuple
            (best scaling, log-likelihood at best scaling)
        """
        base = [(node, node.branch_length / scaling,
                 None if node.category_lengths is None
                 else [v / scaling for v in node.category_lengths])
                for node in self.tree.preorder()]

        def apply(factor: float) -> None:
            for node, length, cat_lengths in base:
                node.branch_length = length * factor
                if cat_lengths is not None:
                    node.category_lengths = [v * factor for v in cat_lengths]
            self.clear_partial_lh()

        def objective(factor: float) -> float:
            apply(factor)
            return -self.compute_log_likelihood()

        upper = max(max_scaling, min_scaling)
        result = minimize_scalar(
            objective, bounds=(min_scaling, upper), method='bounded',
            options={'xatol': tolerance},
        )
        best = float(result.x)
        apply(best)
        return best, self.compute_log_likelihood()
