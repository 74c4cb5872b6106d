"""
Sequence simulation under site-heterogeneous substitution processes.

Each site is assigned a mixture component and a rate category once per
run; every branch then evolves all variable sites of the parent sequence,
either by lookup in a per-branch TransitionCache or, for continuous or
numerous rate categories, from transition rows computed per site.
"""

from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from ..config import SimulationConfig
from ..exceptions import ConfigurationError
from ..io.sequences import state_mapping
from ..io.trees import Tree, TreeNode
from ..models.rates import RateHeterogeneity, RateType
from ..models.substitution import MixtureModel, SubstitutionModel
from .annotator import SiteAnnotation, SiteAnnotator
from .base import SequenceSimulator, node_label
from .cache import TransitionCache, branch_lengths_by_category, caching_allowed
from .output import AlignmentWriter
from .probability import accumulate, sample_states_many


SEQTYPE_FOR_STATES = {4: 'dna', 20: 'aa', 2: 'bin'}


class HeterogeneousSimulator(SequenceSimulator):
    """
    Simulator for mixture models, rate heterogeneity and heterotachy.

    Parameters
    ----------
    tree : Tree
        Rooted tree; per-category branch lengths (``a/b/c``) for heterotachy
    model : SubstitutionModel or MixtureModel
        Substitution process
    rate_model : RateHeterogeneity
        Across-site rate variation
    config : SimulationConfig
        Sequence length, seed, caching threshold, FunDi and output options
    root_sequence : ndarray of int, optional
        User-supplied ancestral sequence (not regenerated for mixtures)

    Attributes
    ----------
    annotation : SiteAnnotation
        Site assignments of the last run
    fundi_sites : ndarray of int
        Sites permuted in FunDi taxa (empty without FunDi)
    fundi_permutation : ndarray of int
        Source position for each of ``fundi_sites``
    """

    def __init__(
        self,
        tree: Tree,
        model: Union[SubstitutionModel, MixtureModel],
        rate_model: RateHeterogeneity,
        config: SimulationConfig,
        root_sequence: Optional[np.ndarray] = None,
    ):
        super().__init__(tree, config.sequence_length, config.seed,
                         keep_ancestral=config.keep_ancestral)
        self.model = model
        self.rate_model = rate_model
        self.config = config

        if root_sequence is not None:
            root_sequence = np.asarray(root_sequence, dtype=np.int64)
            if root_sequence.shape != (config.sequence_length,):
                raise ConfigurationError(
                    f"Ancestral sequence has length {root_sequence.shape[0]}, "
                    f"expected {config.sequence_length}"
                )
            if np.any(root_sequence < 0) or np.any(root_sequence >= model.n_states):
                raise ConfigurationError("Ancestral sequence has states outside the model alphabet")
        self.root_sequence = root_sequence

        if rate_model.is_heterotachy:
            n_lengths = tree.n_category_lengths
            if n_lengths not in (0, rate_model.n_categories):
                raise ConfigurationError(
                    f"Tree has {n_lengths} branch lengths per branch, but the heterotachy "
                    f"model has {rate_model.n_categories} categories"
                )

        missing = set(config.fundi_taxa) - {node_label(leaf) for leaf in tree.leaves()}
        if missing:
            raise ConfigurationError(f"FunDi taxa not in tree: {sorted(missing)}")

        if model.is_mixture and model.randomize_empirical_frequencies(self.rng):
            if config.verbose:
                print("Random state frequencies generated for empirical mixture components")

        self.annotator = SiteAnnotator(model, rate_model, self.rng,
                                       root_supplied=root_sequence is not None)
        self.use_cache = caching_allowed(rate_model, config.max_rate_categories_for_caching)
        self.annotation: Optional[SiteAnnotation] = None
        self.fundi_sites = np.zeros(0, dtype=np.int64)
        self.fundi_permutation = np.zeros(0, dtype=np.int64)
        self._fundi_done: set[int] = set()

    def _generate_ancestral_sequence(self) -> np.ndarray:
        """
        Annotate sites and produce the root sequence.

        Draw order: component per site, mixture root states, rate per
        site, then (non-mixture, no supplied root) root states from the
        model frequencies, then the FunDi site selection.
        """
        length = self.sequence_length
        self.annotation = self.annotator.annotate(length)

        if self.root_sequence is not None:
            root = self.root_sequence.copy()
        elif self.annotation.root_sequence is not None:
            root = self.annotation.root_sequence
        else:
            acc = accumulate(self.model.frequencies)
            root = sample_states_many(acc, self.rng.random(length))
        self.annotation.root_sequence = root

        self._select_fundi_sites()
        self._fundi_done = set()
        return root

    def _select_fundi_sites(self) -> None:
        """Random subset of sites and a random permutation of their positions."""
        if not self.config.fundi_taxa or self.config.fundi_proportion <= 0:
            return
        n = int(round(self.config.fundi_proportion * self.sequence_length))
        sites = np.sort(self.rng.choice(self.sequence_length, size=n, replace=False))
        self.fundi_sites = sites
        self.fundi_permutation = self.rng.permutation(sites)

    def _finish_sequence(self, node: TreeNode, seq: np.ndarray) -> None:
        """Permute the FunDi sites of a FunDi leaf (once per leaf)."""
        if not node.is_leaf or node.id in self._fundi_done:
            return
        if node_label(node) not in self.config.fundi_taxa or self.fundi_sites.size == 0:
            return
        seq[self.fundi_sites] = seq[self.fundi_permutation]
        self._fundi_done.add(node.id)

    def _evolve_sequence(self, parent_seq: np.ndarray, node: TreeNode) -> np.ndarray:
        """
        Derive the child sequence site by site.

        Invariant sites copy the parent state; all other sites consume one
        uniform draw each, in site order.
        """
        annotation = self.annotation
        child = parent_seq.copy()
        sites = np.flatnonzero(~annotation.invariant_sites)
        if sites.size == 0:
            return child

        draws = self.rng.random(sites.size)
        from_states = parent_seq[sites]
        components = annotation.model_index[sites]
        categories = annotation.rate_index[sites]

        if self.use_cache:
            n_categories = 1 if self.rate_model.rate_type == RateType.NONE else self.rate_model.n_categories
            lengths = branch_lengths_by_category(node, n_categories, self.rate_model.is_heterotachy)
            cache = TransitionCache.build(self.model, self.rate_model, lengths,
                                          self.config.partition_rate)
            child[sites] = cache.sample_many(draws, components, categories, from_states)
            cache.release()
            return child

        if self.rate_model.is_heterotachy:
            lengths = np.array([node.get_length(int(c)) for c in categories])
        else:
            lengths = np.full(sites.size, node.branch_length)
        times = self.config.partition_rate * lengths * annotation.rates[sites]

        for m in np.unique(components):
            mask = components == m
            rows = accumulate(self.model.transition_rows(from_states[mask], times[mask], component=int(m)))
            child[sites[mask]] = sample_states_many(rows, draws[mask], hints=from_states[mask])
        return child

    @property
    def seqtype(self) -> str:
        return SEQTYPE_FOR_STATES.get(self.model.n_states, 'dna')

    def simulate_to_file(self, output_base: Path | str) -> Path:
        """
        Simulate and stream the leaf sequences to a file.

        The ``.phy``/``.fa`` suffix is added to ``output_base`` according to
        the configured format.

        Returns
        -------
        Path
            The alignment file written
        """
        path = AlignmentWriter.output_path(output_base, self.config.output_format)
        leaves = self.tree.leaves()
        writer = AlignmentWriter(
            path,
            n_taxa=len(leaves),
            n_sites=self.sequence_length,
            mapping=state_mapping(self.seqtype),
            fmt=self.config.output_format,
            compress=self.config.compress,
            name_width=max(len(node_label(leaf)) for leaf in leaves),
        )
        with writer:
            self.simulate(writer)
        if self.config.verbose:
            print(f"An alignment has just been exported to {path}")
        return path

    def get_parameters(self) -> Dict:
        """Get simulation parameters for output metadata."""
        params = {
            'simulator': type(self).__name__,
            'sequence_length': self.sequence_length,
            'seed': self.config.seed,
            'partition_rate': self.config.partition_rate,
            'transition_caching': self.use_cache,
            'model': self.model.get_parameters(),
            'rate_heterogeneity': self.rate_model.get_parameters(),
            'tree': self.tree.to_newick(),
        }
        if self.config.fundi_taxa:
            params['fundi'] = {
                'taxa': sorted(self.config.fundi_taxa),
                'proportion': self.config.fundi_proportion,
                'sites': (self.fundi_sites + 1).tolist(),
            }
        if self.annotation is not None:
            params['n_invariant_sites'] = int(self.annotation.invariant_sites.sum())
        return params
