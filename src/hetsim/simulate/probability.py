"""
Weighted sampling from accumulated (cumulative) probability tables.

Simulation draws one category, component or state per site per branch,
so tables are accumulated once and then searched for each uniform draw.
"""

from typing import Optional

import numpy as np

from ..exceptions import NumericalError


NO_CATEGORY = -1  # Draw fell past the last accumulated entry

# Tables up to this length are searched linearly
LINEAR_SEARCH_LIMIT = 4


def accumulate(probs: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Running sums of a probability vector or a stack of probability rows.

    Entry i of the result is the sum of entries 0..i. Rows need not sum
    to 1; any shortfall becomes the NO_CATEGORY region when sampling.
    """
    probs = np.asarray(probs, dtype=float)
    if np.any(probs < 0):
        raise NumericalError("Cannot accumulate negative probabilities")
    return np.cumsum(probs, axis=axis)


def _in_interval(accumulated: np.ndarray, index: int, draw: float) -> bool:
    lower = accumulated[index - 1] if index > 0 else 0.0
    return lower <= draw < accumulated[index]


def sample_accumulated(
    rng: np.random.Generator,
    accumulated: np.ndarray,
    max_prob_first: Optional[int] = None,
    total: Optional[float] = None,
) -> int:
    """
    Sample an index from an accumulated probability vector.

    Parameters
    ----------
    rng : np.random.Generator
        Random source (one uniform is consumed)
    accumulated : ndarray, shape (n,)
        Non-decreasing running sums
    max_prob_first : int, optional
        Index tried before searching, usually the most probable one
    total : float, optional
        Scale the uniform draw by this value (pass ``accumulated[-1]`` to
        sample from an unnormalized table)

    Returns
    -------
    int
        First index whose accumulated value exceeds the draw, or
        NO_CATEGORY when the draw is at or past the last entry
    """
    draw = rng.random()
    if total is not None:
        draw *= total
    return locate(accumulated, draw, max_prob_first)


def locate(accumulated: np.ndarray, draw: float, max_prob_first: Optional[int] = None) -> int:
    """Index selected by a given draw (see ``sample_accumulated``)."""
    n = len(accumulated)
    if n == 0:
        raise NumericalError("Cannot sample from an empty probability table")
    if not draw < accumulated[-1]:
        return NO_CATEGORY
    if max_prob_first is not None and 0 <= max_prob_first < n:
        if _in_interval(accumulated, max_prob_first, draw):
            return max_prob_first

    if n <= LINEAR_SEARCH_LIMIT:
        for i in range(n):
            if accumulated[i] > draw:
                return i
    return int(np.searchsorted(accumulated, draw, side='right'))


def sample_accumulated_many(
    accumulated_rows: np.ndarray,
    draws: np.ndarray,
    hints: Optional[np.ndarray] = None,
    totals: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Vectorized ``locate`` over many rows.

    Parameters
    ----------
    accumulated_rows : ndarray, shape (k, n) or (n,)
        One accumulated table per draw, or a single table shared by all
    draws : ndarray, shape (k,)
        Uniform draws in [0, 1), taken from the generator beforehand so the
        random stream matches sequential ``sample_accumulated`` calls
    hints : ndarray of int, shape (k,), optional
        Index tried first for each row
    totals : ndarray, shape (k,), optional
        Per-row scale for the draws

    Returns
    -------
    ndarray of int, shape (k,)
        Selected indices (NO_CATEGORY where the draw is past the last entry)
    """
    draws = np.asarray(draws, dtype=float)
    if totals is not None:
        draws = draws * totals
    k = draws.shape[0]

    if accumulated_rows.ndim == 1:
        result = np.searchsorted(accumulated_rows, draws, side='right')
        result[~(draws < accumulated_rows[-1])] = NO_CATEGORY
        return result.astype(np.int64)

    last = accumulated_rows[:, -1]
    result = np.full(k, NO_CATEGORY, dtype=np.int64)
    inside = draws < last
    if hints is None:
        todo = inside
    else:
        rows = np.arange(k)
        hints = np.asarray(hints, dtype=np.int64)
        upper = accumulated_rows[rows, hints]
        lower = np.where(hints > 0, accumulated_rows[rows, np.maximum(hints - 1, 0)], 0.0)
        hit = inside & (lower <= draws) & (draws < upper)
        result[hit] = hints[hit]
        todo = inside & ~hit

    if np.any(todo):
        result[todo] = _search_rows(accumulated_rows[todo], draws[todo])
    return result


def _search_rows(rows: np.ndarray, draws: np.ndarray) -> np.ndarray:
    """Per-row count of entries <= draw, by bisection for wide tables."""
    k, n = rows.shape
    if n <= LINEAR_SEARCH_LIMIT:
        return np.sum(rows <= draws[:, np.newaxis], axis=1)

    index = np.arange(k)
    lo = np.zeros(k, dtype=np.int64)
    hi = np.full(k, n, dtype=np.int64)
    active = lo < hi
    while np.any(active):
        mid = (lo + hi) // 2
        go_right = active & (rows[index, np.minimum(mid, n - 1)] <= draws)
        lo = np.where(go_right, mid + 1, lo)
        hi = np.where(active & ~go_right, mid, hi)
        active = lo < hi
    return lo


def sample_states_many(
    accumulated_rows: np.ndarray,
    draws: np.ndarray,
    hints: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Draw states from unnormalized accumulated rows.

    Each draw is scaled by its row total, so every draw must land on a
    state; NO_CATEGORY can only come from a malformed table.
    """
    totals = accumulated_rows[..., -1]
    states = sample_accumulated_many(accumulated_rows, draws, hints=hints, totals=totals)
    bad = np.flatnonzero(states == NO_CATEGORY)
    if bad.size:
        raise NumericalError(
            f"Malformed accumulated table: {bad.size} state draw(s) fell past the "
            f"last entry (first at row {bad[0]})"
        )
    return states


def sample_probabilities(
    rng: np.random.Generator,
    probs: np.ndarray,
    max_prob_first: Optional[int] = None,
) -> int:
    """Sample an index from a (non-accumulated) probability vector."""
    accumulated = accumulate(probs)
    return sample_accumulated(rng, accumulated, max_prob_first, total=accumulated[-1])
