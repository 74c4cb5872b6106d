"""
Matrix operations for transition probability calculations.

This module provides the matrix kernels shared by the simulator and the
likelihood calculator: reversible rate matrix construction, eigen
decomposition, and P(t) evaluation for one or many branch lengths.
"""

import numpy as np
from scipy.linalg import expm


def matrix_exponential(Q: np.ndarray, t: float) -> np.ndarray:
    """
    Compute transition probability matrix P(t) = exp(Q*t).

    Uses scipy's matrix exponential (Padé approximation with scaling and
    squaring). Used for non-reversible rate matrices where the symmetric
    eigen decomposition does not apply.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix
    t : float
        Branch length (time)

    Returns
    -------
    P : ndarray, shape (n, n)
        Transition probability matrix
    """
    return expm(Q * t)


def eigen_decompose_rev(Q: np.ndarray, pi: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose reversible rate matrix Q = U @ diag(eigenvalues) @ V.

    Uses the symmetrization trick: Q' = √D @ Q @ √D^(-1), with D = diag(pi),
    is symmetric when Q satisfies detailed balance, so ``eigh`` can be used.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Reversible rate matrix satisfying π_i * Q[i,j] = π_j * Q[j,i]
    pi : ndarray, shape (n,)
        Stationary distribution (all entries > 0)

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Eigenvalues of Q, ascending
    U : ndarray, shape (n, n)
        Right eigenvector matrix
    V : ndarray, shape (n, n)
        Left eigenvector matrix (inverse of U)
    """
    sqrt_pi = np.sqrt(pi)

    Q_sym = Q * sqrt_pi[:, np.newaxis] / sqrt_pi[np.newaxis, :]
    # Remove rounding asymmetry before eigh
    Q_sym = 0.5 * (Q_sym + Q_sym.T)

    eigenvalues, eigenvectors = np.linalg.eigh(Q_sym)

    U = eigenvectors / sqrt_pi[:, np.newaxis]
    V = eigenvectors.T * sqrt_pi[np.newaxis, :]

    return eigenvalues, U, V


def create_reversible_Q(
    rates: np.ndarray, pi: np.ndarray, normalize: bool = True
) -> np.ndarray:
    """
    Create a reversible rate matrix from exchangeabilities and frequencies.

    Q[i,j] = r[i,j] * pi[j] for i ≠ j, Q[i,i] = -sum_j Q[i,j]. With
    ``normalize`` the matrix is scaled to one expected substitution per
    unit time, so branch lengths are in substitutions per site.

    Parameters
    ----------
    rates : ndarray, shape (n, n)
        Symmetric exchangeability matrix
    pi : ndarray, shape (n,)
        Stationary distribution
    normalize : bool, default=True
        Scale Q to an expected rate of 1

    Returns
    -------
    Q : ndarray, shape (n, n)
        Reversible rate matrix
    """
    Q = rates * pi[np.newaxis, :]

    np.fill_diagonal(Q, 0.0)
    row_sums = np.sum(Q, axis=1)
    np.fill_diagonal(Q, -row_sums)

    if normalize:
        expected_rate = -np.dot(pi, Q.diagonal())
        Q /= expected_rate

    return Q


def check_detailed_balance(Q: np.ndarray, pi: np.ndarray, rtol: float = 1e-10) -> bool:
    """
    Test if rate matrix Q satisfies detailed balance with stationary distribution pi.

    Detailed balance: π_i * Q[i,j] = π_j * Q[j,i] for all i, j
    """
    flux = pi[:, np.newaxis] * Q
    return bool(np.allclose(flux, flux.T, rtol=rtol, atol=1e-14))


def clean_probabilities(P: np.ndarray) -> np.ndarray:
    """
    Clip tiny negative entries and renormalize rows to sum to 1.

    Floating point error in U @ diag(exp(λt)) @ V can leave values such as
    -1e-17; samplers need proper probability rows.
    """
    P = np.maximum(P, 0.0)
    return P / P.sum(axis=-1, keepdims=True)


def transition_matrix_from_eigen(
    eigenvalues: np.ndarray, U: np.ndarray, V: np.ndarray, t: float
) -> np.ndarray:
    """
    P(t) = U @ diag(exp(eigenvalues * t)) @ V.

    O(n²) per evaluation once the decomposition is known.
    """
    exp_eigvals = np.exp(eigenvalues * t)
    return clean_probabilities((U * exp_eigvals[np.newaxis, :]) @ V)


def transition_rows_from_eigen(
    eigenvalues: np.ndarray,
    U: np.ndarray,
    V: np.ndarray,
    from_states: np.ndarray,
    times: np.ndarray,
) -> np.ndarray:
    """
    Rows P(t_k)[from_states[k], :] for many (state, time) pairs at once.

    Each row is computed from its own branch length, so this is equivalent
    to computing a full matrix per site and taking one row, without the
    n x n intermediate.

    Parameters
    ----------
    from_states : ndarray of int, shape (k,)
        Source state for each row
    times : ndarray, shape (k,)
        Scaled branch length for each row

    Returns
    -------
    ndarray, shape (k, n)
        Transition probability rows
    """
    exp_eigvals = np.exp(np.outer(times, eigenvalues))
    rows = (U[from_states, :] * exp_eigvals) @ V
    return clean_probabilities(rows)
