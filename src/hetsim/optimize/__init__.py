"""
FreeRate parameter estimation.

- **EM**: posterior category weights for proportions, per-category tree
  scaling for rates
- **Gradient**: L-BFGS-B over proportion ratios and rates
"""

from hetsim.optimize.ratefree import (
    EMStrategy,
    GradientStrategy,
    RateFreeEstimator,
    expectation_step,
    maximization_step,
    regularize_proportions,
)

__all__ = [
    "RateFreeEstimator",
    "EMStrategy",
    "GradientStrategy",
    "expectation_step",
    "maximization_step",
    "regularize_proportions",
]
