"""
Accumulated transition matrices for every (component, category) pair.

With few discrete rate categories every site on a branch uses one of a
handful of matrices, so they are computed once per branch and sampled by
table lookup. Continuous rates or many categories make the table too large
(or useless), and transitions are then computed per site instead.
"""

from typing import Sequence, Union

import numpy as np

from ..exceptions import NumericalError
from ..models.rates import RateHeterogeneity, RateType
from ..models.substitution import MixtureModel, SubstitutionModel
from .annotator import INVARIANT_INDEX
from .probability import NO_CATEGORY, accumulate, sample_accumulated, sample_states_many


DEFAULT_MAX_CATEGORIES_FOR_CACHING = 100


def caching_allowed(rate_model: RateHeterogeneity,
                    threshold: int = DEFAULT_MAX_CATEGORIES_FOR_CACHING) -> bool:
    """
    Whether a transition cache may be used with this rate model.

    True without rate heterogeneity, or with discrete heterogeneity of at
    most ``threshold`` categories.
    """
    if rate_model.rate_type == RateType.NONE:
        return True
    return not rate_model.continuous and rate_model.n_discrete_categories <= threshold


class TransitionCache:
    """
    Table of accumulated transition matrices for one branch.

    Attributes
    ----------
    table : ndarray, shape (n_components, n_categories, n_states, n_states)
        ``table[m, c, i]`` is the accumulated row P(t_c * r_c)[i, :] of
        component m. Pairs skipped for fused mixtures stay zero.
    computed : ndarray of bool, shape (n_components, n_categories)
        Which (component, category) pairs hold a matrix
    """

    def __init__(self, table: np.ndarray, computed: np.ndarray):
        self.table = table
        self.computed = computed

    @classmethod
    def build(
        cls,
        model: Union[SubstitutionModel, MixtureModel],
        rate_model: RateHeterogeneity,
        branch_lengths: Sequence[float],
        partition_rate: float = 1.0,
    ) -> "TransitionCache":
        """
        Compute the accumulated matrices for one branch.

        Parameters
        ----------
        model : SubstitutionModel or MixtureModel
            Substitution process
        rate_model : RateHeterogeneity
            Rate categories (a single rate-1 slot without heterogeneity)
        branch_lengths : sequence of float
            Branch length per rate category; only the first is used unless
            the rate model is heterotachous
        partition_rate : float
            Overall rate multiplier

        Returns
        -------
        TransitionCache
        """
        n_components = model.n_mixtures
        n_categories = 1 if rate_model.rate_type == RateType.NONE else rate_model.n_categories
        n_states = model.n_states
        fused = model.is_mixture and model.is_fused

        table = np.zeros((n_components, n_categories, n_states, n_states))
        computed = np.zeros((n_components, n_categories), dtype=bool)
        for m in range(n_components):
            for c in range(n_categories):
                if fused and m != c:
                    continue
                rate = 1.0 if rate_model.rate_type == RateType.NONE else rate_model.rate(c)
                length = branch_lengths[c] if rate_model.is_heterotachy else branch_lengths[0]
                table[m, c] = model.transition_matrix(partition_rate * length * rate, component=m)
                computed[m, c] = True

        return cls(accumulate(table, axis=-1), computed)

    @property
    def n_categories(self) -> int:
        return self.table.shape[1]

    def sample(self, rng: np.random.Generator, component: int, category: int,
               from_state: int) -> int:
        """Draw the child state of one site."""
        if category == INVARIANT_INDEX:
            raise NumericalError("Invariant site reached transition sampling")
        row = self.table[component, category, from_state]
        state = sample_accumulated(rng, row, max_prob_first=from_state, total=row[-1])
        if state == NO_CATEGORY:
            raise NumericalError(f"Malformed accumulated table for state {from_state}")
        return state

    def sample_many(
        self,
        draws: np.ndarray,
        components: np.ndarray,
        categories: np.ndarray,
        from_states: np.ndarray,
    ) -> np.ndarray:
        """
        Draw child states for many sites from pre-drawn uniforms.

        Equivalent to calling ``sample`` once per site in order.
        """
        if np.any(categories == INVARIANT_INDEX):
            raise NumericalError("Invariant site reached transition sampling")
        if not np.all(self.computed[components, categories]):
            raise NumericalError("Transition matrix for a (component, category) pair was not cached")
        rows = self.table[components, categories, from_states]
        return sample_states_many(rows, draws, hints=from_states)

    def release(self) -> None:
        """Drop the table once the branch is finished."""
        self.table = np.zeros((0, 0, 0, 0))
        self.computed = np.zeros((0, 0), dtype=bool)


def branch_lengths_by_category(node, n_categories: int,
                               heterotachy: bool) -> list[float]:
    """Length of the branch above ``node`` for each rate category."""
    if not heterotachy:
        return [node.branch_length] * max(n_categories, 1)
    return [node.get_length(c) for c in range(n_categories)]
