"""
Core numerical routines shared by the simulator and the rate optimizer.

- **Matrix operations**: reversible rate matrices, eigendecomposition, P(t)
- **Likelihood calculation**: per-pattern, per-category pruning
- **Checkpointing**: named parameter structs with exact save/restore
"""

from hetsim.core.checkpoint import Checkpoint
from hetsim.core.likelihood import LikelihoodCalculator
from hetsim.core.matrix import eigen_decompose_rev, matrix_exponential

__all__ = ["Checkpoint", "LikelihoodCalculator", "matrix_exponential", "eigen_decompose_rev"]
