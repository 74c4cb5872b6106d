"""
Run configuration for the simulator and the FreeRate estimator.
"""

from dataclasses import dataclass, field
from typing import Optional

from .exceptions import ConfigurationError


OUTPUT_FORMATS = ("phylip", "fasta")


@dataclass
class SimulationConfig:
    """
    Settings for one simulation run.

    Attributes
    ----------
    sequence_length : int
        Number of sites to simulate
    seed : int, optional
        Random seed (None for a fresh, non-reproducible stream)
    partition_rate : float
        Overall rate multiplier applied to every branch
    max_rate_categories_for_caching : int
        Discrete rate models with at most this many categories get their
        transition matrices cached per branch
    fundi_taxa : frozenset of str
        Taxa whose sequences receive the FunDi site permutation
    fundi_proportion : float
        Fraction of sites permuted for FunDi taxa
    output_format : str
        'phylip' or 'fasta'
    compress : bool
        Write gzip-compressed output
    keep_ancestral : bool
        Retain internal node sequences after simulation
    verbose : bool
        Print progress messages
    """

    sequence_length: int
    seed: Optional[int] = None
    partition_rate: float = 1.0
    max_rate_categories_for_caching: int = 100
    fundi_taxa: frozenset = field(default_factory=frozenset)
    fundi_proportion: float = 0.0
    output_format: str = "phylip"
    compress: bool = False
    keep_ancestral: bool = False
    verbose: bool = False

    def __post_init__(self):
        self.fundi_taxa = frozenset(self.fundi_taxa)
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError on out-of-range settings."""
        if self.sequence_length <= 0:
            raise ConfigurationError(
                f"sequence_length must be positive, got {self.sequence_length}"
            )
        if self.partition_rate <= 0:
            raise ConfigurationError(
                f"partition_rate must be positive, got {self.partition_rate}"
            )
        if self.max_rate_categories_for_caching < 0:
            raise ConfigurationError("max_rate_categories_for_caching must be >= 0")
        if not (0.0 <= self.fundi_proportion <= 1.0):
            raise ConfigurationError(
                f"fundi_proportion must be in [0, 1], got {self.fundi_proportion}"
            )
        if self.fundi_taxa and self.fundi_proportion == 0.0:
            raise ConfigurationError("FunDi taxa given but fundi_proportion is 0")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigurationError(
                f"output_format must be one of {OUTPUT_FORMATS}, got {self.output_format!r}"
            )


@dataclass
class RateFreeConfig:
    """
    Bounds and tolerances for FreeRate optimization.

    Proportion bounds are in ratio space (prop[i] / prop[last]), so the
    simplex constraint holds for any value the minimizer proposes.
    """

    min_rate: float = 0.001
    max_rate: float = 1000.0
    tol_rate: float = 1e-4
    min_prop_ratio: float = 0.001
    max_prop_ratio: float = 1000.0
    # EM floor for a category proportion
    min_prop: float = 1e-4
    proportion_tolerance: float = 1e-4
    rate_tolerance: float = 1e-4
    em_slack: float = 0.1
    scaling_tolerance: float = 0.001
    algorithm: str = "2-BFGS"
    sorted_rates: bool = False
    ignore_errors: bool = False
    maxiter: int = 200
    verbose: bool = False

    def __post_init__(self):
        if self.proportion_tolerance <= 0 or self.rate_tolerance <= 0:
            raise ConfigurationError("tolerances must be positive")
        if not (0 < self.min_rate < self.max_rate):
            raise ConfigurationError("need 0 < min_rate < max_rate")
        if not (0 < self.min_prop_ratio < self.max_prop_ratio):
            raise ConfigurationError("need 0 < min_prop_ratio < max_prop_ratio")
