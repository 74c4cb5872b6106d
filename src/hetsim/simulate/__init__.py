"""
Sequence simulation under site-heterogeneous models.

This module provides:

- **Site annotation**: mixture component and rate category of every site
- **Transition caching**: per-branch accumulated transition matrices
- **Tree traversal**: pre-order evolution with streamed leaf output
- **Output**: PHYLIP/FASTA alignments, parameter JSON, site annotations
"""

from hetsim.simulate.annotator import (
    CONTINUOUS_INDEX,
    INVARIANT_INDEX,
    RATE_ONE_INDEX,
    SiteAnnotation,
    SiteAnnotator,
)
from hetsim.simulate.base import SequenceSimulator
from hetsim.simulate.cache import TransitionCache, caching_allowed
from hetsim.simulate.evolver import HeterogeneousSimulator
from hetsim.simulate.output import AlignmentWriter, SimulationOutput
from hetsim.simulate.probability import (
    NO_CATEGORY,
    accumulate,
    sample_accumulated,
    sample_accumulated_many,
    sample_probabilities,
    sample_states_many,
)

__all__ = [
    "SequenceSimulator",
    "HeterogeneousSimulator",
    "SiteAnnotator",
    "SiteAnnotation",
    "TransitionCache",
    "caching_allowed",
    "AlignmentWriter",
    "SimulationOutput",
    "accumulate",
    "sample_accumulated",
    "sample_accumulated_many",
    "sample_probabilities",
    "sample_states_many",
    "NO_CATEGORY",
    "INVARIANT_INDEX",
    "RATE_ONE_INDEX",
    "CONTINUOUS_INDEX",
]
