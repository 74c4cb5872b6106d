"""
High-level API for hetsim.

This module provides a simplified interface for simulating alignments under
site-heterogeneous models and for fitting FreeRate models, with result
objects and automatic file format detection.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
import json

import numpy as np

from .config import RateFreeConfig, SimulationConfig
from .core.checkpoint import Checkpoint
from .core.likelihood import LikelihoodCalculator
from .exceptions import ConfigurationError
from .io.sequences import Alignment, n_states_for, read_ancestral_sequence, state_mapping
from .io.trees import Tree
from .models.rates import RateHeterogeneity, RateType
from .models.substitution import FreqType, MixtureModel, SubstitutionModel, model_from_string
from .optimize.ratefree import RateFreeEstimator
from .simulate.annotator import SiteAnnotation
from .simulate.evolver import HeterogeneousSimulator
from .simulate.output import SimulationOutput


@dataclass
class SimulationResult:
    """
    Result of one simulation run.

    Attributes
    ----------
    sequences : dict
        Leaf name -> state array (empty when streamed to ``alignment_path``)
    annotation : SiteAnnotation
        Component, rate category and rate of every site
    parameters : dict
        Simulation parameters (as written to the params JSON)
    alignment_path : Path, optional
        Alignment file written, if any
    ancestral_sequences : dict
        Internal node sequences (only with ``keep_ancestral``)
    mapping : list[str]
        Output character of each state
    """

    sequences: Dict[str, np.ndarray]
    annotation: SiteAnnotation
    parameters: Dict[str, Any]
    alignment_path: Optional[Path] = None
    ancestral_sequences: Dict[str, np.ndarray] = field(default_factory=dict)
    mapping: List[str] = field(default_factory=list)

    def to_strings(self) -> Dict[str, str]:
        """Leaf sequences as character strings."""
        return {name: ''.join(self.mapping[s] for s in seq) for name, seq in self.sequences.items()}

    def __repr__(self) -> str:
        n_taxa = len(self.sequences) or self.parameters.get('n_taxa', 0)
        return (f"SimulationResult(n_taxa={n_taxa}, "
                f"length={self.annotation.length}, path={self.alignment_path})")


@dataclass
class FreeRateResult:
    """
    Result of fitting a FreeRate model.

    Attributes
    ----------
    model_name : str
        Substitution model and rate model, e.g. "JC+R3"
    lnL : float
        Log-likelihood after optimization
    proportions : list[float]
        Category proportions
    rates : list[float]
        Category rates (mean rate 1)
    p_invar : float
        Proportion of invariant sites
    algorithm : str
        Strategy that was used ("EM" or "BFGS")
    tree : Tree
        Tree rescaled by the rate normalization
    history : list[dict]
        Log-likelihood after each EM step or gradient phase

    Examples
    --------
    >>> from hetsim import fit_free_rates
    >>> result = fit_free_rates("alignment.phy", "tree.nwk", rate_model="+R3")
    >>> print(result.summary())
    >>> result.to_json("fit.json")
    """

    model_name: str
    lnL: float
    proportions: List[float]
    rates: List[float]
    p_invar: float
    algorithm: str
    tree: Tree
    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def n_categories(self) -> int:
        return len(self.proportions)

    @property
    def n_params(self) -> int:
        """Free parameters of the rate model (k-1 proportions, k-1 rates)."""
        k = self.n_categories
        return 2 * (k - 1) + (1 if self.p_invar > 0 else 0)

    def summary(self) -> str:
        """
        Generate human-readable summary of the fit.

        Returns
        -------
        str
            Formatted multi-line summary
        """
        lines = []
        lines.append("=" * 70)
        lines.append(f"MODEL: {self.model_name}")
        lines.append("=" * 70)
        lines.append("")
        lines.append(f"Log-likelihood:       {self.lnL:.6f}")
        lines.append(f"Number of parameters: {self.n_params}")
        lines.append(f"Algorithm:            {self.algorithm}")
        lines.append("")
        lines.append("PARAMETERS:")
        if self.p_invar > 0:
            lines.append(f"  p-invar = {self.p_invar:.4f}")
        lines.append("")
        lines.append("  Rate categories:")
        for i, (prop, rate) in enumerate(zip(self.proportions, self.rates)):
            lines.append(f"    Category {i + 1}: proportion = {prop:.4f}, rate = {rate:.4f}")
        lines.append("")
        lines.append("TREE:")
        lines.append(f"  {self.tree.n_leaves} sequences")
        lines.append(f"  total length = {self.tree.total_length():.4f}")
        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """
        Export results as a dictionary.

        The tree is exported as a Newick string to keep it JSON-serializable.
        """
        return {
            'model_name': self.model_name,
            'lnL': float(self.lnL),
            'proportions': [float(p) for p in self.proportions],
            'rates': [float(r) for r in self.rates],
            'p_invar': float(self.p_invar),
            'algorithm': self.algorithm,
            'n_params': int(self.n_params),
            'tree': self.tree.to_newick(),
            'history': self.history,
        }

    def to_json(self, filepath: Optional[Union[str, Path]] = None, indent: int = 2) -> str:
        """
        Export results as JSON.

        Parameters
        ----------
        filepath : str or Path, optional
            If provided, write JSON to this file
        indent : int, default=2
            Indentation level for pretty printing

        Returns
        -------
        str
            JSON string representation
        """
        json_str = json.dumps(self.to_dict(), indent=indent)
        if filepath:
            with open(filepath, 'w') as f:
                f.write(json_str)
        return json_str

    def __str__(self) -> str:
        return self.summary()

    def __repr__(self) -> str:
        return (f"FreeRateResult(model='{self.model_name}', lnL={self.lnL:.2f}, "
                f"n_categories={self.n_categories})")


def _load_alignment(alignment: Union[str, Path, Alignment], seqtype: str = "dna") -> Alignment:
    """
    Load alignment with automatic format detection.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Path to alignment file (FASTA or PHYLIP) or Alignment object

    Raises
    ------
    FileNotFoundError
        If the alignment file doesn't exist
    """
    if isinstance(alignment, Alignment):
        return alignment
    path = Path(alignment)
    if not path.exists():
        raise FileNotFoundError(f"Alignment file not found: {path}")
    suffix = path.suffix.lower()
    if suffix in ('.fa', '.fasta', '.fna', '.faa'):
        return Alignment.from_fasta(path, seqtype)
    if suffix in ('.phy', '.phylip'):
        return Alignment.from_phylip(path, seqtype)
    return Alignment.from_file(path, seqtype)


def _load_tree(tree: Union[str, Path, Tree]) -> Tree:
    """Load tree from a Newick file, a Newick string or a Tree object."""
    if isinstance(tree, Tree):
        return tree
    text = str(tree)
    if not text.strip().endswith(';') and Path(text).exists():
        return Tree.from_file(text)
    return Tree.from_newick(text)


def _load_rate_model(rate_model: Union[str, RateHeterogeneity], **kwargs) -> RateHeterogeneity:
    if isinstance(rate_model, RateHeterogeneity):
        return rate_model
    return RateHeterogeneity.from_string(rate_model or "", **kwargs)


def build_model(
    model: Union[str, SubstitutionModel, MixtureModel] = "JC",
    components: Optional[Sequence[str]] = None,
    weights: Optional[Sequence[float]] = None,
    fused: bool = False,
    seqtype: str = "dna",
    freqs: Optional[Sequence[float]] = None,
    random_freqs: bool = False,
) -> Union[SubstitutionModel, MixtureModel]:
    """
    Build a substitution model from short specifications.

    Parameters
    ----------
    model : str, SubstitutionModel or MixtureModel
        Model string such as ``"HKY{2.0}"`` (ignored when ``components`` is given)
    components : sequence of str, optional
        Component model strings of a mixture
    weights : sequence of float, optional
        Mixture weights (default: equal)
    fused : bool
        Tie mixture components to rate categories
    seqtype : str
        'dna', 'aa' or 'bin'
    freqs : sequence of float, optional
        Stationary frequencies (default: equal)
    random_freqs : bool
        Draw random state frequencies per mixture component at simulation time

    Returns
    -------
    SubstitutionModel or MixtureModel
    """
    if isinstance(model, (SubstitutionModel, MixtureModel)):
        return model
    n_states = n_states_for(seqtype)
    freqs = None if freqs is None else np.asarray(freqs, dtype=float)
    freq_type = FreqType.EMPIRICAL if random_freqs else FreqType.FIXED
    if not components:
        if random_freqs:
            raise ConfigurationError("Random state frequencies are only drawn for mixture components")
        return model_from_string(model, n_states=n_states, freqs=freqs)
    parts = [model_from_string(c, n_states=n_states, freqs=freqs, freq_type=freq_type)
             for c in components]
    name = "MIX{" + ",".join(p.name for p in parts) + "}"
    return MixtureModel(parts, weights=weights, fused=fused, name=name)


def simulate_alignment(
    tree: Union[str, Path, Tree],
    sequence_length: int,
    model: Union[str, SubstitutionModel, MixtureModel] = "JC",
    rate_model: Union[str, RateHeterogeneity] = "",
    seed: Optional[int] = None,
    output: Optional[Union[str, Path]] = None,
    root_sequence: Optional[Union[str, Path, np.ndarray]] = None,
    seqtype: str = "dna",
    write_parameters: bool = True,
    **config_kwargs,
) -> SimulationResult:
    """
    Simulate an alignment on a tree.

    Parameters
    ----------
    tree : str, Path, or Tree
        Tree file, Newick string or Tree object; per-category branch
        lengths (``a/b``) for heterotachy models
    sequence_length : int
        Number of sites
    model : str, SubstitutionModel or MixtureModel
        Substitution model (see ``build_model``)
    rate_model : str or RateHeterogeneity
        Rate model string such as ``"+I{0.2}+G4{0.5}"`` or ``"+R3{...}"``
    seed : int, optional
        Random seed for reproducibility
    output : str or Path, optional
        Output base name; the alignment is streamed to ``output`` + .phy/.fa
        and parameters go to ``output`` + .params.json
    root_sequence : str, Path or ndarray, optional
        Ancestral sequence (file with the sequence, or state array)
    seqtype : str
        'dna', 'aa' or 'bin'
    write_parameters : bool
        Write the parameters JSON next to ``output``
    **config_kwargs
        Further ``SimulationConfig`` fields (partition_rate, fundi_taxa,
        fundi_proportion, output_format, compress, keep_ancestral, ...)

    Returns
    -------
    SimulationResult

    Examples
    --------
    >>> result = simulate_alignment("tree.nwk", 1000, "HKY{2.0}", "+G4{0.5}", seed=1)
    >>> result.to_strings()["A"][:10]
    """
    tree_obj = _load_tree(tree)
    sub_model = build_model(model, seqtype=seqtype)
    rates = _load_rate_model(rate_model)
    config = SimulationConfig(sequence_length=sequence_length, seed=seed, **config_kwargs)

    if root_sequence is not None and not isinstance(root_sequence, np.ndarray):
        root_sequence = read_ancestral_sequence(root_sequence, seqtype)

    simulator = HeterogeneousSimulator(tree_obj, sub_model, rates, config,
                                       root_sequence=root_sequence)
    mapping = state_mapping(simulator.seqtype)

    path = None
    if output is not None:
        path = simulator.simulate_to_file(output)
        sequences = {}
    else:
        sequences = simulator.simulate()

    parameters = simulator.get_parameters()
    parameters['n_taxa'] = tree_obj.n_leaves
    if output is not None:
        base = Path(output)
        if write_parameters:
            SimulationOutput.write_parameters(parameters, base.with_name(base.name + ".params.json"))
        if config.keep_ancestral and simulator.ancestral_sequences:
            SimulationOutput.write_ancestral_sequences(
                simulator.ancestral_sequences, base.with_name(base.name + ".anc.fa"), mapping
            )

    return SimulationResult(
        sequences=sequences,
        annotation=simulator.annotation,
        parameters=parameters,
        alignment_path=path,
        ancestral_sequences=dict(simulator.ancestral_sequences),
        mapping=mapping,
    )


def fit_free_rates(
    alignment: Union[str, Path, Alignment],
    tree: Union[str, Path, Tree],
    model: Union[str, SubstitutionModel, MixtureModel] = "JC",
    rate_model: Union[str, RateHeterogeneity] = "+R4",
    algorithm: str = "EM",
    checkpoint: Optional[Union[str, Path, Checkpoint]] = None,
    init_from_fewer_categories: bool = False,
    seqtype: str = "dna",
    gradient_epsilon: float = 0.0,
    **config_kwargs,
) -> FreeRateResult:
    """
    Fit FreeRate proportions and rates on a fixed tree.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Alignment file (FASTA/PHYLIP) or Alignment object
    tree : str, Path, or Tree
        Tree with branch lengths
    model : str, SubstitutionModel or MixtureModel
        Substitution model (kept fixed)
    rate_model : str or RateHeterogeneity
        FreeRate model, e.g. ``"+R4"`` or ``"+I+R3"``
    algorithm : str
        "EM", "2-BFGS" or "1-BFGS"
    checkpoint : str, Path or Checkpoint, optional
        Where to save the fitted parameters (struct ``RateFree<k>``)
    init_from_fewer_categories : bool
        Start from the (k-1)-category solution stored in ``checkpoint``
    seqtype : str
        'dna', 'aa' or 'bin'
    gradient_epsilon : float
        Gradient convergence tolerance
    **config_kwargs
        Further ``RateFreeConfig`` fields

    Returns
    -------
    FreeRateResult
    """
    aln = _load_alignment(alignment, seqtype)
    tree_obj = _load_tree(tree).copy()
    sub_model = build_model(model, seqtype=aln.seqtype)
    config = RateFreeConfig(algorithm=algorithm, **config_kwargs)
    rates = _load_rate_model(rate_model, sorted_rates=config.sorted_rates)
    if rates.rate_type != RateType.FREE:
        raise ConfigurationError(f"Expected a FreeRate (+R) model, got {rates.name or 'none'}")

    if isinstance(checkpoint, (str, Path)):
        path = Path(checkpoint)
        checkpoint = Checkpoint.load(path) if path.exists() else Checkpoint(path)
    if init_from_fewer_categories:
        if checkpoint is None:
            raise ConfigurationError("init_from_fewer_categories needs a checkpoint")
        rates.init_from_fewer_categories(checkpoint)

    calculator = LikelihoodCalculator(tree_obj, aln, sub_model, rates)
    estimator = RateFreeEstimator(calculator, config)
    lnL = estimator.optimize(gradient_epsilon)

    if checkpoint is not None:
        rates.save_checkpoint(checkpoint)
        if checkpoint.path is not None:
            checkpoint.dump()

    return FreeRateResult(
        model_name=f"{sub_model.name}{rates.name}",
        lnL=lnL,
        proportions=rates.props.tolist(),
        rates=rates.rates.tolist(),
        p_invar=rates.p_invar,
        algorithm=estimator.strategy.name,
        tree=calculator.tree,
        history=estimator.history,
    )
