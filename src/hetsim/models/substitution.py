"""
Substitution models and mixtures of substitution models.

Both classes expose the same component-indexed interface, so the
simulator and the likelihood calculator treat a plain model as a
one-component, non-mixture model.
"""

import re
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from ..core.matrix import (
    check_detailed_balance,
    create_reversible_Q,
    eigen_decompose_rev,
    transition_matrix_from_eigen,
    transition_rows_from_eigen,
)
from ..exceptions import ConfigurationError


class FreqType(str, Enum):
    """Origin of a model's state frequencies."""
    EQUAL = "equal"
    FIXED = "fixed"
    # Estimated from data; random when simulating without an alignment
    EMPIRICAL = "empirical"


def _check_frequencies(freqs: np.ndarray, n_states: int) -> np.ndarray:
    freqs = np.asarray(freqs, dtype=float)
    if freqs.shape != (n_states,):
        raise ConfigurationError(
            f"State frequencies must have length {n_states}, got {freqs.shape[0]}"
        )
    if np.any(freqs <= 0):
        raise ConfigurationError("State frequencies must all be positive")
    if not np.isclose(freqs.sum(), 1.0, atol=1e-5):
        raise ConfigurationError(f"State frequencies must sum to 1, got {freqs.sum()}")
    return freqs / freqs.sum()


class SubstitutionModel:
    """
    Time-reversible substitution model.

    Parameters
    ----------
    exchangeabilities : ndarray, shape (n, n)
        Symmetric exchangeability matrix
    freqs : ndarray, shape (n,)
        Stationary state frequencies
    name : str
        Model name, used in parameter output
    freq_type : FreqType
        Where the frequencies came from
    """

    is_mixture = False
    is_fused = False
    n_mixtures = 1

    def __init__(
        self,
        exchangeabilities: np.ndarray,
        freqs: np.ndarray,
        name: str = "GTR",
        freq_type: FreqType = FreqType.FIXED,
    ):
        exchangeabilities = np.asarray(exchangeabilities, dtype=float)
        n = exchangeabilities.shape[0]
        if exchangeabilities.shape != (n, n):
            raise ConfigurationError("Exchangeability matrix must be square")
        if not np.allclose(exchangeabilities, exchangeabilities.T):
            raise ConfigurationError("Exchangeability matrix must be symmetric")

        self.name = name
        self.n_states = n
        self.freq_type = FreqType(freq_type)
        self.exchangeabilities = exchangeabilities
        self.set_state_frequency(freqs)

    def set_state_frequency(self, freqs: np.ndarray) -> None:
        """Replace the stationary frequencies and rebuild Q."""
        self.freqs = _check_frequencies(freqs, self.n_states)
        self.Q = create_reversible_Q(self.exchangeabilities, self.freqs)
        if not check_detailed_balance(self.Q, self.freqs, rtol=1e-8):
            raise ConfigurationError(f"{self.name} rate matrix is not reversible")
        self.eigenvalues, self.U, self.V = eigen_decompose_rev(self.Q, self.freqs)

    def component(self, index: int = 0) -> "SubstitutionModel":
        if index != 0:
            raise IndexError(f"{self.name} has a single component, got index {index}")
        return self

    def mixture_weight(self, index: int = 0) -> float:
        return 1.0

    def state_frequency(self, index: int = 0) -> np.ndarray:
        return self.component(index).freqs

    @property
    def frequencies(self) -> np.ndarray:
        return self.freqs

    def transition_matrix(self, t: float, component: int = 0) -> np.ndarray:
        """P(t) for this model (component must be 0)."""
        self.component(component)
        return transition_matrix_from_eigen(self.eigenvalues, self.U, self.V, t)

    def transition_rows(self, from_states: np.ndarray, times: np.ndarray,
                        component: int = 0) -> np.ndarray:
        """Per-site transition rows, one branch length per row."""
        self.component(component)
        return transition_rows_from_eigen(self.eigenvalues, self.U, self.V, from_states, times)

    def randomize_empirical_frequencies(self, rng: np.random.Generator) -> bool:
        """
        Draw random frequencies if this model's are empirical.

        Returns True if the frequencies were replaced.
        """
        if self.freq_type != FreqType.EMPIRICAL:
            return False
        freqs = rng.uniform(0.1, 1.0, size=self.n_states)
        self.set_state_frequency(freqs / freqs.sum())
        return True

    def get_parameters(self) -> dict:
        return {
            'name': self.name,
            'freqs': self.freqs.tolist(),
            'freq_type': self.freq_type.value,
        }

    def __repr__(self) -> str:
        return f"SubstitutionModel(name={self.name!r}, n_states={self.n_states})"


class MixtureModel:
    """
    Mixture of substitution models.

    Parameters
    ----------
    components : sequence of SubstitutionModel
        Mixture components (all with the same number of states)
    weights : sequence of float, optional
        Mixture weights (default: equal). Ignored for site assignment when
        ``fused`` is set, since then the rate-category proportions drive
        the component choice.
    fused : bool
        Component index and rate-category index are the same for each site
    """

    is_mixture = True

    def __init__(
        self,
        components: Sequence[SubstitutionModel],
        weights: Optional[Sequence[float]] = None,
        fused: bool = False,
        name: str = "MIX",
    ):
        if len(components) == 0:
            raise ConfigurationError("Mixture model needs at least one component")
        n_states = {c.n_states for c in components}
        if len(n_states) != 1:
            raise ConfigurationError("Mixture components must have the same number of states")

        if weights is None:
            weights = np.ones(len(components)) / len(components)
        weights = np.asarray(weights, dtype=float)
        if weights.shape != (len(components),):
            raise ConfigurationError(
                f"Expected {len(components)} mixture weights, got {weights.shape[0]}"
            )
        if np.any(weights < 0) or not np.isclose(weights.sum(), 1.0, atol=1e-5):
            raise ConfigurationError("Mixture weights must be non-negative and sum to 1")

        self.components = list(components)
        self.weights = weights
        self.is_fused = fused
        self.name = name
        self.n_states = n_states.pop()

    @property
    def n_mixtures(self) -> int:
        return len(self.components)

    def component(self, index: int) -> SubstitutionModel:
        return self.components[index]

    def mixture_weight(self, index: int) -> float:
        return float(self.weights[index])

    def state_frequency(self, index: int) -> np.ndarray:
        return self.components[index].freqs

    @property
    def frequencies(self) -> np.ndarray:
        """Overall stationary frequencies (weighted over components)."""
        return np.sum([w * c.freqs for w, c in zip(self.weights, self.components)], axis=0)

    def transition_matrix(self, t: float, component: int = 0) -> np.ndarray:
        return self.components[component].transition_matrix(t)

    def transition_rows(self, from_states: np.ndarray, times: np.ndarray,
                        component: int = 0) -> np.ndarray:
        return self.components[component].transition_rows(from_states, times)

    def randomize_empirical_frequencies(self, rng: np.random.Generator) -> bool:
        changed = False
        for comp in self.components:
            changed |= comp.randomize_empirical_frequencies(rng)
        return changed

    def get_parameters(self) -> dict:
        return {
            'name': self.name,
            'fused': self.is_fused,
            'weights': self.weights.tolist(),
            'components': [c.get_parameters() for c in self.components],
        }

    def __repr__(self) -> str:
        return f"MixtureModel(n_mixtures={self.n_mixtures}, fused={self.is_fused})"


def _equal_freqs(n_states: int) -> np.ndarray:
    return np.ones(n_states) / n_states


def jc(n_states: int = 4, name: str = "JC") -> SubstitutionModel:
    """Equal-rates, equal-frequencies model (JC69, Poisson, binary)."""
    exch = np.ones((n_states, n_states)) - np.eye(n_states)
    return SubstitutionModel(exch, _equal_freqs(n_states), name=name, freq_type=FreqType.EQUAL)


def hky(kappa: float, freqs: Optional[np.ndarray] = None,
        freq_type: FreqType = FreqType.FIXED) -> SubstitutionModel:
    """HKY85 for DNA in ACGT order (transitions A<->G and C<->T)."""
    if kappa <= 0:
        raise ConfigurationError(f"kappa must be positive, got {kappa}")
    exch = np.ones((4, 4)) - np.eye(4)
    exch[0, 2] = exch[2, 0] = kappa
    exch[1, 3] = exch[3, 1] = kappa
    if freqs is None:
        freqs = _equal_freqs(4)
        if freq_type == FreqType.FIXED:
            freq_type = FreqType.EQUAL
    return SubstitutionModel(exch, freqs, name="HKY", freq_type=freq_type)


def gtr(rates: Sequence[float], freqs: Optional[np.ndarray] = None,
        freq_type: FreqType = FreqType.FIXED) -> SubstitutionModel:
    """GTR for DNA; rates in AC, AG, AT, CG, CT, GT order."""
    rates = np.asarray(rates, dtype=float)
    if rates.shape != (6,):
        raise ConfigurationError(f"GTR needs 6 exchangeabilities, got {rates.shape[0]}")
    if np.any(rates <= 0):
        raise ConfigurationError("GTR exchangeabilities must be positive")
    exch = np.zeros((4, 4))
    exch[np.triu_indices(4, k=1)] = rates
    exch = exch + exch.T
    if freqs is None:
        freqs = _equal_freqs(4)
        if freq_type == FreqType.FIXED:
            freq_type = FreqType.EQUAL
    return SubstitutionModel(exch, freqs, name="GTR", freq_type=freq_type)


_MODEL_RE = re.compile(r'^\s*([A-Za-z0-9]+)\s*(?:\{([^}]*)\})?\s*$')


def model_from_string(text: str, n_states: int = 4,
                      freqs: Optional[np.ndarray] = None,
                      freq_type: FreqType = FreqType.FIXED) -> SubstitutionModel:
    """
    Build a model from a short specification.

    Accepted forms: ``JC``, ``HKY{kappa}``, ``GTR{ac,ag,at,cg,ct,gt}``,
    ``POISSON`` (equal rates for any number of states).
    """
    match = _MODEL_RE.match(text)
    if match is None:
        raise ConfigurationError(f"Cannot parse model specification {text!r}")
    name = match.group(1).upper()
    params = []
    if match.group(2):
        try:
            params = [float(v) for v in match.group(2).split(',')]
        except ValueError:
            raise ConfigurationError(f"Invalid model parameters in {text!r}")

    if name in ("JC", "JC69", "POISSON"):
        model = jc(n_states, name=name)
        if freqs is not None:
            model.set_state_frequency(freqs)
        if freqs is not None or freq_type == FreqType.EMPIRICAL:
            model.freq_type = FreqType(freq_type)
        return model
    if n_states != 4:
        raise ConfigurationError(f"{name} is a DNA model, but {n_states} states were requested")
    if name == "HKY":
        if len(params) != 1:
            raise ConfigurationError("HKY takes exactly one parameter (kappa)")
        return hky(params[0], freqs, freq_type)
    if name == "GTR":
        if len(params) != 6:
            raise ConfigurationError("GTR takes exactly six parameters")
        return gtr(params, freqs, freq_type)
    raise ConfigurationError(f"Unknown substitution model {name!r}")
