"""
Substitution and rate-heterogeneity models.

- **Substitution models**: JC/Poisson, HKY, GTR and mixtures of them
- **Rate heterogeneity**: invariant sites, gamma, free rates, heterotachy
"""

from hetsim.models.rates import RateHeterogeneity, RateType
from hetsim.models.substitution import (
    FreqType,
    MixtureModel,
    SubstitutionModel,
    gtr,
    hky,
    jc,
    model_from_string,
)

__all__ = [
    "RateHeterogeneity",
    "RateType",
    "FreqType",
    "MixtureModel",
    "SubstitutionModel",
    "gtr",
    "hky",
    "jc",
    "model_from_string",
]
