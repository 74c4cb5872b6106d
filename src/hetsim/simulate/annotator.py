"""
Per-site assignment of mixture components and rate categories.
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

from ..exceptions import ConfigurationError
from ..models.rates import RateHeterogeneity, RateType
from ..models.substitution import MixtureModel, SubstitutionModel
from .probability import NO_CATEGORY, accumulate, sample_accumulated_many, sample_states_many


INVARIANT_INDEX = NO_CATEGORY  # Rate-zero site; state is copied from the parent
RATE_ONE_INDEX = 0             # No rate heterogeneity; the single rate slot
CONTINUOUS_INDEX = -2          # Rate drawn from a continuous gamma


@dataclass
class SiteAnnotation:
    """
    Site-specific model and rate assignment for one simulation run.

    Attributes
    ----------
    model_index : ndarray of int, shape (length,)
        Mixture component of each site (0 for non-mixture models)
    rate_index : ndarray of int, shape (length,)
        Rate category of each site, or one of INVARIANT_INDEX,
        RATE_ONE_INDEX, CONTINUOUS_INDEX
    rates : ndarray, shape (length,)
        Rate of each site (0 for invariant sites)
    root_sequence : ndarray of int, optional
        Root states regenerated from the mixture components' frequencies
    """

    model_index: np.ndarray
    rate_index: np.ndarray
    rates: np.ndarray
    root_sequence: Optional[np.ndarray] = None

    @property
    def length(self) -> int:
        return len(self.rate_index)

    @property
    def invariant_sites(self) -> np.ndarray:
        """Boolean mask of invariant sites."""
        return self.rate_index == INVARIANT_INDEX

    def category_counts(self, n_categories: int) -> np.ndarray:
        """Number of sites in each discrete rate category."""
        valid = self.rate_index[self.rate_index >= 0]
        return np.bincount(valid, minlength=n_categories)


class SiteAnnotator:
    """
    Assigns each site a mixture component and a rate category.

    Parameters
    ----------
    model : SubstitutionModel or MixtureModel
        Substitution process; fused mixtures tie components to categories
    rate_model : RateHeterogeneity
        Rate categories and invariant proportion
    rng : np.random.Generator
        Shared random source
    root_supplied : bool
        The root sequence comes from the user, so it is not regenerated
        for mixture models
    """

    def __init__(
        self,
        model: Union[SubstitutionModel, MixtureModel],
        rate_model: RateHeterogeneity,
        rng: np.random.Generator,
        root_supplied: bool = False,
    ):
        if model.is_mixture and model.is_fused and model.n_mixtures != rate_model.n_categories:
            raise ConfigurationError(
                f"Fused mixture has {model.n_mixtures} components but the rate model has "
                f"{rate_model.n_categories} categories"
            )
        self.model = model
        self.rate_model = rate_model
        self.rng = rng
        self.root_supplied = root_supplied

    def annotate(self, length: int) -> SiteAnnotation:
        """Model indices (and mixture root states), then rate indices."""
        model_index, root = self.assign_model_indices(length)
        rates, rate_index = self.assign_rate_indices(length, model_index)
        return SiteAnnotation(model_index, rate_index, rates, root)

    def component_weights(self) -> np.ndarray:
        """Probability of each mixture component per site."""
        model = self.model
        if model.is_fused:
            return self.rate_model.props / (1.0 - self.rate_model.p_invar)
        return np.array([model.mixture_weight(i) for i in range(model.n_mixtures)])

    def assign_model_indices(self, length: int) -> tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Sample a mixture component for each site.

        Returns
        -------
        model_index : ndarray of int
            All zero for non-mixture models
        root_sequence : ndarray of int or None
            Root states drawn from each site's component frequencies, for
            mixtures without a user-supplied root sequence
        """
        if not self.model.is_mixture:
            return np.zeros(length, dtype=np.int64), None

        weights = self.component_weights()
        acc_weights = accumulate(weights)
        hint = int(np.argmax(weights))
        draws = self.rng.random(length)
        model_index = sample_accumulated_many(acc_weights, draws)
        # Rounding can leave the weights a hair short of 1
        model_index[model_index == NO_CATEGORY] = hint

        if self.root_supplied:
            return model_index, None
        return model_index, self.regenerate_root(model_index)

    def regenerate_root(self, model_index: np.ndarray) -> np.ndarray:
        """Draw each root state from its site's component frequencies."""
        acc_freqs = accumulate(np.array([
            self.model.state_frequency(i) for i in range(self.model.n_mixtures)
        ]))
        rows = acc_freqs[model_index]
        draws = self.rng.random(len(model_index))
        return sample_states_many(rows, draws)

    def assign_rate_indices(self, length: int,
                            model_index: Optional[np.ndarray] = None) -> tuple[np.ndarray, np.ndarray]:
        """
        Assign a rate and rate index to each site.

        The first matching rule wins:

        1. fused mixture: invariant with probability p_invar, otherwise the
           site's component index is its category
        2. no rate heterogeneity: rate 1, RATE_ONE_INDEX
        3. continuous gamma: rates drawn from Gamma(shape, 1/shape)
        4. discrete categories sampled by proportion; the leftover
           p_invar mass gives invariant sites

        Returns
        -------
        rates : ndarray
        rate_index : ndarray of int
        """
        rate_model = self.rate_model

        if self.model.is_mixture and self.model.is_fused:
            if rate_model.continuous:
                warnings.warn(
                    "Fused mixture with continuous gamma rates: site rates follow the "
                    "fused rate categories and the continuous gamma is ignored",
                    UserWarning,
                )
            if model_index is None:
                raise ConfigurationError("Fused mixtures need model indices before rate indices")
            invariant = self.rng.random(length) <= rate_model.p_invar
            rate_index = np.where(invariant, INVARIANT_INDEX, model_index)
            rates = np.where(invariant, 0.0, rate_model.rates[model_index])
            return rates, rate_index

        if rate_model.rate_type == RateType.NONE:
            return np.ones(length), np.full(length, RATE_ONE_INDEX, dtype=np.int64)

        if rate_model.continuous:
            shape = rate_model.gamma_shape
            rates = self.rng.gamma(shape, 1.0 / shape, size=length)
            return rates, np.full(length, CONTINUOUS_INDEX, dtype=np.int64)

        acc_props = accumulate(rate_model.props)
        draws = self.rng.random(length)
        rate_index = sample_accumulated_many(acc_props, draws)
        if rate_model.p_invar == 0.0:
            rate_index[rate_index == NO_CATEGORY] = rate_model.n_categories - 1
        rates = np.where(rate_index == INVARIANT_INDEX, 0.0, rate_model.rates[rate_index])
        return rates, rate_index
