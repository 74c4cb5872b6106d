"""
Across-site rate heterogeneity models.

A single ``RateHeterogeneity`` class covers all supported variants through
its ``rate_type`` tag:

- NONE: every site evolves at rate 1
- INVARIANT: a proportion of invariant sites, the rest at 1/(1-p_invar)
- GAMMA: discrete gamma (mean of each quantile bin), or continuous gamma
- FREE: free-rate model with free (proportion, rate) pairs
- HETEROTACHY: categories with their own branch lengths (rates are 1)

Any variant except NONE may be combined with invariant sites; the
category proportions then sum to 1 - p_invar.
"""

import re
from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
from scipy import special, stats

from ..exceptions import ConfigurationError

if TYPE_CHECKING:
    from ..core.checkpoint import Checkpoint


PROPORTION_SUM_TOLERANCE = 1e-5


class RateType(str, Enum):
    NONE = "none"
    INVARIANT = "invariant"
    GAMMA = "gamma"
    FREE = "free"
    HETEROTACHY = "heterotachy"


class OptimizingParams(int, Enum):
    """Which free-rate parameters the current minimization phase varies."""
    BOTH = 0
    RATES = 1
    PROPORTIONS = 2


def discrete_gamma_rates(alpha: float, n_categories: int) -> np.ndarray:
    """
    Mean rate of each of K equal-probability bins of Gamma(alpha, 1/alpha).

    Bin boundaries are gamma quantiles; the mean within a bin uses the
    identity x f(x; a, a) = f(x; a+1, a), so the rates average to exactly 1.
    """
    if alpha <= 0:
        raise ConfigurationError(f"Gamma shape must be positive, got {alpha}")
    if n_categories == 1:
        return np.ones(1)
    cuts = stats.gamma.ppf(np.arange(1, n_categories) / n_categories, alpha, scale=1.0 / alpha)
    upper = np.append(special.gammainc(alpha + 1.0, cuts * alpha), 1.0)
    lower = np.insert(upper[:-1], 0, 0.0)
    return (upper - lower) * n_categories


def _parse_values(text: str) -> list[float]:
    try:
        return [float(v) for v in text.replace(' ', '').split(',') if v]
    except ValueError:
        raise ConfigurationError(f"Invalid numeric parameter list {text!r}")


class RateHeterogeneity:
    """
    Rate-heterogeneity model: ordered (proportion, rate) pairs.

    Parameters
    ----------
    rate_type : RateType
        Variant tag
    proportions : sequence of float
        Category proportions (sum to 1 - p_invar)
    rates : sequence of float
        Category rates (non-negative)
    p_invar : float
        Proportion of invariant sites
    gamma_shape : float, optional
        Shape parameter for GAMMA models
    continuous : bool
        Continuous gamma: site rates are drawn from Gamma(shape, 1/shape)
        instead of from discrete categories
    sorted_rates : bool
        Keep free-rate categories in increasing rate order after updates
    fix_proportions, fix_rates : bool
        Exclude proportions or rates from optimization
    fix_p_invar : bool
        The invariant proportion was given and must not be re-estimated
    """

    def __init__(
        self,
        rate_type: RateType = RateType.NONE,
        proportions: Optional[Sequence[float]] = None,
        rates: Optional[Sequence[float]] = None,
        p_invar: float = 0.0,
        gamma_shape: Optional[float] = None,
        continuous: bool = False,
        sorted_rates: bool = False,
        fix_proportions: bool = False,
        fix_rates: bool = False,
        fix_p_invar: bool = False,
    ):
        if not 0.0 <= p_invar < 1.0:
            raise ConfigurationError(f"p_invar must be in [0, 1), got {p_invar}")
        proportions = np.array([1.0 - p_invar] if proportions is None else proportions, dtype=float)
        rates = np.ones(len(proportions)) if rates is None else np.array(rates, dtype=float)
        if proportions.ndim != 1 or proportions.shape != rates.shape:
            raise ConfigurationError(
                f"Need one rate per category: {proportions.shape} proportions, {rates.shape} rates"
            )
        if np.any(proportions < 0) or np.any(rates < 0):
            raise ConfigurationError("Category proportions and rates must be non-negative")
        if abs(proportions.sum() + p_invar - 1.0) > PROPORTION_SUM_TOLERANCE:
            raise ConfigurationError(
                f"Sum of category proportions ({proportions.sum():g}) and p_invar "
                f"({p_invar:g}) not equal to 1"
            )
        if continuous and rate_type != RateType.GAMMA:
            raise ConfigurationError("Only gamma models can be continuous")

        self.rate_type = RateType(rate_type)
        self.props = proportions
        self.rates = rates
        self.p_invar = p_invar
        self.gamma_shape = gamma_shape
        self.continuous = continuous
        self.sorted_rates = sorted_rates
        self.fix_proportions = fix_proportions
        self.fix_rates = fix_rates
        self.fix_p_invar = fix_p_invar
        self.optimizing_params = OptimizingParams.BOTH
        self.proportion_tolerance = 1e-4
        self.rate_tolerance = 1e-4

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def uniform(cls) -> "RateHeterogeneity":
        """No rate heterogeneity."""
        return cls(RateType.NONE)

    @classmethod
    def invariant(cls, p_invar: float, fixed: bool = False) -> "RateHeterogeneity":
        """Invariant sites only; variable sites share rate 1/(1-p_invar)."""
        return cls(
            RateType.INVARIANT,
            proportions=[1.0 - p_invar],
            rates=[1.0 / (1.0 - p_invar)],
            p_invar=p_invar,
            fix_p_invar=fixed,
        )

    @classmethod
    def gamma(cls, alpha: float, n_categories: int = 4, p_invar: float = 0.0,
              continuous: bool = False) -> "RateHeterogeneity":
        """
        Gamma rate heterogeneity.

        Discrete: K equal-proportion categories with bin-mean rates.
        Continuous: rates are drawn per site from Gamma(alpha, 1/alpha), so
        the category arrays hold a single rate-1 category.
        """
        if alpha <= 0:
            raise ConfigurationError(f"Gamma shape must be positive, got {alpha}")
        if continuous:
            if p_invar > 0:
                raise ConfigurationError("Continuous gamma cannot be combined with invariant sites")
            return cls(RateType.GAMMA, [1.0], [1.0], gamma_shape=alpha, continuous=True)
        if n_categories < 1:
            raise ConfigurationError(f"Need at least one category, got {n_categories}")
        props = np.full(n_categories, (1.0 - p_invar) / n_categories)
        rates = discrete_gamma_rates(alpha, n_categories) / (1.0 - p_invar)
        return cls(RateType.GAMMA, props, rates, p_invar=p_invar, gamma_shape=alpha)

    @classmethod
    def free_rate(
        cls,
        n_categories: int,
        params: Optional[str | Sequence[float]] = None,
        p_invar: float = 0.0,
        sorted_rates: bool = False,
        optimize_from_given_params: bool = False,
        start_alpha: float = 1.0,
    ) -> "RateHeterogeneity":
        """
        Free-rate model with ``n_categories`` categories.

        Parameters
        ----------
        n_categories : int
            Number of rate categories
        params : str or sequence of float, optional
            Either K proportions (rates start at 1; proportions are fixed) or
            K (proportion, rate) pairs (rates are rescaled to mean 1; both
            are fixed). Proportions must sum to 1 and are scaled by
            1 - p_invar. Without params the model starts from the discrete
            gamma(start_alpha) rates with equal proportions.
        p_invar : float
            Proportion of invariant sites
        sorted_rates : bool
            Keep rates in increasing order after each update
        optimize_from_given_params : bool
            Treat given params as starting values rather than fixed values
        """
        if n_categories < 1:
            raise ConfigurationError(f"Need at least one category, got {n_categories}")

        if params is None or (isinstance(params, str) and not params.strip()):
            props = np.full(n_categories, (1.0 - p_invar) / n_categories)
            rates = discrete_gamma_rates(start_alpha, n_categories) / (1.0 - p_invar)
            return cls(RateType.FREE, props, rates, p_invar=p_invar, gamma_shape=start_alpha,
                       sorted_rates=sorted_rates)

        values = _parse_values(params) if isinstance(params, str) else [float(v) for v in params]
        fix_proportions = fix_rates = False
        if len(values) == n_categories:
            props = np.array(values)
            rates = np.ones(n_categories)
            fix_proportions = not optimize_from_given_params
        elif len(values) == 2 * n_categories:
            props = np.array(values[0::2])
            rates = np.array(values[1::2])
            fix_proportions = fix_rates = not optimize_from_given_params
        else:
            raise ConfigurationError(
                "Number of parameters for FreeRate model must be twice the number of "
                f"categories ({2 * n_categories}) or equal to it, got {len(values)}"
            )
        if abs(props.sum() - 1.0) > PROPORTION_SUM_TOLERANCE:
            raise ConfigurationError(
                f"Sum of category proportions not equal to 1 (got {props.sum():g})"
            )
        props = props / props.sum() * (1.0 - p_invar)
        rates = rates / np.dot(props, rates)
        return cls(
            RateType.FREE, props, rates, p_invar=p_invar, sorted_rates=sorted_rates,
            fix_proportions=fix_proportions, fix_rates=fix_rates,
        )

    @classmethod
    def heterotachy(cls, n_categories: int, proportions: Optional[Sequence[float]] = None,
                    p_invar: float = 0.0) -> "RateHeterogeneity":
        """Heterotachy: each category uses its own set of branch lengths."""
        if proportions is None:
            proportions = np.full(n_categories, 1.0 / n_categories)
        proportions = np.asarray(proportions, dtype=float)
        if proportions.shape != (n_categories,):
            raise ConfigurationError(
                f"Heterotachy model with {n_categories} categories needs {n_categories} proportions"
            )
        if abs(proportions.sum() - 1.0) > PROPORTION_SUM_TOLERANCE:
            raise ConfigurationError("Sum of category proportions not equal to 1")
        props = proportions * (1.0 - p_invar)
        rates = np.full(n_categories, 1.0 / (1.0 - p_invar))
        return cls(RateType.HETEROTACHY, props, rates, p_invar=p_invar, fix_rates=True)

    _TOKEN_RE = re.compile(r'^(I|GC|G|R|H)(\d*)(?:\{([^}]*)\})?$')

    @classmethod
    def from_string(cls, text: str, sorted_rates: bool = False,
                    optimize_from_given_params: bool = False) -> "RateHeterogeneity":
        """
        Parse a rate-model name such as ``+G4{0.5}``, ``+I{0.2}+R3`` or ``+H2``.

        Tokens: ``I{p}`` invariant sites, ``G<k>{alpha}`` discrete gamma,
        ``GC{alpha}`` continuous gamma, ``R<k>{params}`` free rates,
        ``H<k>{proportions}`` heterotachy. An empty string means no
        heterogeneity.
        """
        tokens = [t.strip() for t in text.strip().split('+') if t.strip()]
        if not tokens:
            return cls.uniform()

        p_invar, fix_p_invar = 0.0, False
        main = None
        for token in tokens:
            match = cls._TOKEN_RE.match(token.upper())
            if match is None:
                raise ConfigurationError(f"Unknown rate heterogeneity component '+{token}'")
            kind, count, params = match.groups()
            if kind == 'I':
                # Default starting value for an estimated invariant proportion
                p_invar = float(params) if params else 0.25
                fix_p_invar = bool(params)
                continue
            if main is not None:
                raise ConfigurationError(f"More than one rate model in {text!r}")
            main = (kind, int(count) if count else 4, params)

        if main is None:
            return cls.invariant(p_invar, fixed=fix_p_invar)

        kind, n_cat, params = main
        if kind in ('G', 'GC'):
            alpha = float(params) if params else 1.0
            model = cls.gamma(alpha, n_cat, p_invar=p_invar, continuous=(kind == 'GC'))
        elif kind == 'R':
            model = cls.free_rate(n_cat, params, p_invar=p_invar, sorted_rates=sorted_rates,
                                  optimize_from_given_params=optimize_from_given_params)
        else:
            model = cls.heterotachy(n_cat, _parse_values(params) if params else None,
                                    p_invar=p_invar)
        model.fix_p_invar = fix_p_invar
        return model

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    @property
    def n_categories(self) -> int:
        return len(self.props)

    @property
    def n_discrete_categories(self) -> int:
        """Number of discrete categories (0 for continuous gamma)."""
        return 0 if self.continuous else self.n_categories

    @property
    def is_heterogeneous(self) -> bool:
        return self.rate_type != RateType.NONE

    @property
    def is_heterotachy(self) -> bool:
        return self.rate_type == RateType.HETEROTACHY

    def proportion(self, category: int) -> float:
        return float(self.props[category])

    def rate(self, category: int) -> float:
        return float(self.rates[category])

    @property
    def name(self) -> str:
        """Short model name, e.g. ``+I+R3``; empty without heterogeneity."""
        name = "+I" if self.p_invar > 0 or self.rate_type == RateType.INVARIANT else ""
        if self.rate_type == RateType.GAMMA:
            name += "+GC" if self.continuous else f"+G{self.n_categories}"
        elif self.rate_type == RateType.FREE:
            name += f"+R{self.n_categories}"
        elif self.rate_type == RateType.HETEROTACHY:
            name += f"+H{self.n_categories}"
        return name

    def mean_rate(self) -> float:
        return float(np.dot(self.props, self.rates))

    def rescale_rates(self) -> float:
        """Scale rates so the mean rate is 1; returns the old mean."""
        norm = self.mean_rate()
        self.rates = self.rates / norm
        return norm

    def set_p_invar(self, p_invar: float) -> None:
        if not 0.0 <= p_invar < 1.0:
            raise ConfigurationError(f"p_invar must be in [0, 1), got {p_invar}")
        self.p_invar = p_invar

    def set_fix_proportions(self, fixed: bool) -> None:
        self.fix_proportions = fixed

    def set_fix_rates(self, fixed: bool) -> None:
        self.fix_rates = fixed

    def set_proportion_tolerance(self, tol: float) -> None:
        if tol <= 0:
            raise ConfigurationError(f"Proportion tolerance must be positive, got {tol}")
        self.proportion_tolerance = tol

    def set_rate_tolerance(self, tol: float) -> None:
        if tol <= 0:
            raise ConfigurationError(f"Rate tolerance must be positive, got {tol}")
        self.rate_tolerance = tol

    def sort_if_required(self) -> None:
        """Sort categories by increasing rate (co-permuting proportions)."""
        if not self.sorted_rates:
            return
        order = np.argsort(self.rates, kind='stable')
        self.rates = self.rates[order]
        self.props = self.props[order]

    # ------------------------------------------------------------------
    # Optimization variables (free-rate models)
    # ------------------------------------------------------------------

    @property
    def all_fixed(self) -> bool:
        return self.fix_proportions and self.fix_rates

    def n_dim(self) -> int:
        """Number of free variables in the current optimization phase."""
        if self.rate_type != RateType.FREE or self.all_fixed or self.n_categories < 2:
            return 0
        if self.fix_proportions or self.fix_rates:
            return self.n_categories - 1
        if self.optimizing_params == OptimizingParams.BOTH:
            return 2 * self.n_categories - 2
        return self.n_categories - 1

    @property
    def is_optimizing_proportions(self) -> bool:
        return self.optimizing_params != OptimizingParams.RATES

    @property
    def is_optimizing_rates(self) -> bool:
        return self.optimizing_params != OptimizingParams.PROPORTIONS

    def get_variables(self) -> np.ndarray:
        """
        Current parameters in optimization space.

        Proportions are expressed relative to the last category's
        proportion. Rates are used directly when optimized alone, and
        relative to the last rate when optimized jointly with proportions.
        """
        k = self.n_categories
        prop_ratios = self.props[:k - 1] / self.props[k - 1]
        if self.optimizing_params == OptimizingParams.PROPORTIONS:
            return prop_ratios
        if self.optimizing_params == OptimizingParams.RATES:
            return self.rates[:k - 1].copy()
        return np.concatenate([prop_ratios, self.rates[:k - 1] / self.rates[k - 1]])

    def variable_bounds(self, min_prop: float, max_prop: float,
                        min_rate: float, max_rate: float) -> list[tuple[float, float]]:
        """Box bounds matching ``get_variables``."""
        k = self.n_categories
        if self.optimizing_params == OptimizingParams.PROPORTIONS:
            return [(min_prop, max_prop)] * (k - 1)
        if self.optimizing_params == OptimizingParams.RATES:
            return [(min_rate, max_rate)] * (k - 1)
        return [(min_prop, max_prop)] * (k - 1) + [(min_rate, max_rate)] * (k - 1)

    def update_from_variables(self, x: np.ndarray) -> bool:
        """
        Inverse of ``get_variables``; returns True if anything changed.

        Proportions are renormalized to sum to 1 - p_invar. In the joint
        phase the rates are normalized to mean 1 as part of the transform.
        """
        x = np.asarray(x, dtype=float)
        k = self.n_categories
        old_props, old_rates = self.props.copy(), self.rates.copy()
        scale = 1.0 - self.p_invar

        if self.optimizing_params in (OptimizingParams.PROPORTIONS, OptimizingParams.BOTH):
            total = 1.0 + x[:k - 1].sum()
            self.props = np.append(x[:k - 1], 1.0) / total * scale

        if self.optimizing_params == OptimizingParams.RATES:
            self.rates = np.append(x, self.rates[k - 1])
        elif self.optimizing_params == OptimizingParams.BOTH:
            rel = np.append(x[k - 1:], 1.0)
            self.rates = rel / np.dot(self.props, rel)

        return not (np.array_equal(old_props, self.props) and np.array_equal(old_rates, self.rates))

    # ------------------------------------------------------------------
    # Reporting and checkpointing
    # ------------------------------------------------------------------

    def name_params(self) -> str:
        """Name with parameters, e.g. ``+R2{0.3,0.5,0.7,1.21429}``."""
        if self.rate_type == RateType.FREE:
            pairs = ','.join(f"{p:g},{r:g}" for p, r in zip(self.props, self.rates))
            text = f"+R{self.n_categories}{{{pairs}}}"
        elif self.rate_type == RateType.GAMMA:
            text = ("+GC" if self.continuous else f"+G{self.n_categories}") + f"{{{self.gamma_shape:g}}}"
        elif self.rate_type == RateType.HETEROTACHY:
            props = ','.join(f"{p:g}" for p in self.props / (1.0 - self.p_invar))
            text = f"+H{self.n_categories}{{{props}}}"
        else:
            text = ""
        if self.p_invar > 0 or self.rate_type == RateType.INVARIANT:
            text = f"+I{{{self.p_invar:g}}}" + text
        return text

    def describe(self) -> str:
        """One-line description of the category proportions and rates."""
        pairs = ' '.join(f"({p:g},{r:g})" for p, r in zip(self.props, self.rates))
        text = f"Site proportion and rates: {pairs}"
        if self.p_invar > 0:
            text += f"\nProportion of invariable sites: {self.p_invar:g}"
        return text

    def get_parameters(self) -> dict:
        params = {
            'type': self.rate_type.value,
            'name': self.name_params(),
            'proportions': self.props.tolist(),
            'rates': self.rates.tolist(),
            'p_invar': self.p_invar,
        }
        if self.gamma_shape is not None:
            params['gamma_shape'] = self.gamma_shape
            params['continuous'] = self.continuous
        return params

    def checkpoint_name(self, n_categories: Optional[int] = None) -> str:
        return f"RateFree{self.n_categories if n_categories is None else n_categories}"

    def save_checkpoint(self, checkpoint: "Checkpoint") -> None:
        checkpoint.save_struct(self.checkpoint_name(), prop=self.props, rates=self.rates)

    def restore_checkpoint(self, checkpoint: "Checkpoint") -> None:
        k = self.n_categories
        struct = checkpoint.load_struct(self.checkpoint_name(), sizes={'prop': k, 'rates': k})
        self.props = struct['prop']
        self.rates = struct['rates']

    def init_from_fewer_categories(self, checkpoint: "Checkpoint") -> None:
        """
        Start a K-category model from the saved (K-1)-category solution.

        The largest category is split in two halves of equal proportion;
        the new rates straddle the old one using the second-largest
        category's rate, unless that would make a rate negative.
        """
        k = self.n_categories
        if k < 2:
            raise ConfigurationError("Need at least two categories to split")
        struct = checkpoint.load_struct(self.checkpoint_name(k - 1),
                                        sizes={'prop': k - 1, 'rates': k - 1})
        props = np.append(struct['prop'], 0.0)
        rates = np.append(struct['rates'], 0.0)

        first = int(np.argmax(props[:k - 1]))
        others = [i for i in range(k - 1) if i != first]
        second = max(others, key=lambda i: (props[i], -i)) if others else None

        if second is not None and 3 * rates[first] - rates[second] > 0.0:
            rates[k - 1] = (3 * rates[first] - rates[second]) / 2.0
            rates[first] = (rates[second] + rates[first]) / 2.0
        else:
            rates[k - 1] = 1.5 * rates[first]
            rates[first] = 0.5 * rates[first]
        props[k - 1] = props[first] / 2.0
        props[first] = props[first] / 2.0

        self.props = props
        self.rates = rates
        self.rescale_rates()
        self.sort_if_required()

    def __repr__(self) -> str:
        return f"RateHeterogeneity({self.name or 'uniform'!r}, n_categories={self.n_categories})"
