"""
hetsim: sequence simulation under site-heterogeneous models.

Simulates alignments along a phylogenetic tree under mixture models, rate
heterogeneity (invariant sites, gamma, free rates) and heterotachy, and
fits FreeRate category proportions and rates to observed alignments.

Quick Start
-----------
Simulate an alignment:

>>> from hetsim import simulate_alignment
>>> result = simulate_alignment("tree.nwk", 1000, model="HKY{2.0}",
...                             rate_model="+I{0.2}+G4{0.5}", seed=42)
>>> result.to_strings()

Fit a FreeRate model:

>>> from hetsim import fit_free_rates
>>> fit = fit_free_rates("alignment.phy", "tree.nwk", rate_model="+R3")
>>> print(fit.summary())
"""

__version__ = "0.1.0"

# High-level API
from .api import (
    FreeRateResult,
    SimulationResult,
    build_model,
    fit_free_rates,
    simulate_alignment,
)

from .config import RateFreeConfig, SimulationConfig
from .exceptions import ConfigurationError, HetsimError, NumericalError, OutputError

# I/O classes (for advanced users)
from .io.sequences import Alignment
from .io.trees import Tree

from .models.rates import RateHeterogeneity
from .models.substitution import MixtureModel, SubstitutionModel

# Engines (expert use)
from .core.likelihood import LikelihoodCalculator
from .optimize.ratefree import RateFreeEstimator
from .simulate.evolver import HeterogeneousSimulator

__all__ = [
    "simulate_alignment",
    "fit_free_rates",
    "build_model",
    "SimulationResult",
    "FreeRateResult",
    "SimulationConfig",
    "RateFreeConfig",
    "HetsimError",
    "ConfigurationError",
    "NumericalError",
    "OutputError",
    "Alignment",
    "Tree",
    "RateHeterogeneity",
    "SubstitutionModel",
    "MixtureModel",
    "LikelihoodCalculator",
    "RateFreeEstimator",
    "HeterogeneousSimulator",
    "__version__",
]
