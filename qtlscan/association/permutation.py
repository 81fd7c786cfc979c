"""
Permutations for genome-wide significance thresholds.

Every column of a permutation matrix is an independent shuffle of the input
(never a cumulative one). Stratified variants shuffle only within strata, so
a blocking factor such as sex keeps its composition in every replicate.
"""

from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..utils.errors import InvalidDimensionError


def get_permutation(n: int, seed: Optional[int] = None) -> np.ndarray:
    """A random permutation of 0..n-1."""
    if n < 0:
        raise ValueError("n must be non-negative")
    return np.random.default_rng(seed).permutation(n)


def random_int(n: int, low: int, high: int, seed: Optional[int] = None) -> np.ndarray:
    """n random integers drawn uniformly from [low, high] (both inclusive)."""
    if high < low:
        raise ValueError("high must be >= low")
    return np.random.default_rng(seed).integers(low, high, size=n, endpoint=True)


def _permute_columns(n_perm: int, x: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    if n_perm < 0:
        raise ValueError("n_perm must be non-negative")
    result = np.empty((x.shape[0], n_perm), dtype=x.dtype)
    for i in range(n_perm):
        result[:, i] = x[rng.permutation(x.shape[0])]
    return result


def permute_nvector(n_perm: int, x: Sequence[float], seed: Optional[int] = None) -> np.ndarray:
    """Matrix (len(x) × n_perm) of independent permutations of a real vector."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim != 1:
        raise InvalidDimensionError("x must be a vector")
    return _permute_columns(n_perm, x, np.random.default_rng(seed))


def permute_ivector(n_perm: int, x: Sequence[int], seed: Optional[int] = None) -> np.ndarray:
    """Matrix (len(x) × n_perm) of independent permutations of an integer vector."""
    x = np.asarray(x, dtype=np.int64)
    if x.ndim != 1:
        raise InvalidDimensionError("x must be a vector")
    return _permute_columns(n_perm, x, np.random.default_rng(seed))


def _check_strata(x: np.ndarray, strata, n_strata: Optional[int]) -> Tuple[np.ndarray, int]:
    strata = np.asarray(strata)
    if strata.ndim != 1 or strata.shape[0] != x.shape[0]:
        raise InvalidDimensionError("strata must have one entry per element of x")
    if strata.size and not np.issubdtype(strata.dtype, np.integer):
        raise InvalidDimensionError("strata must be integer codes; use make_strata for labels")
    strata = strata.astype(np.int64)
    if n_strata is None:
        n_strata = int(strata.max()) + 1 if strata.size else 0
    if strata.size and (strata.min() < 0 or strata.max() >= n_strata):
        raise InvalidDimensionError(f"strata codes must lie in 0..{n_strata - 1}")
    return strata, n_strata


def _permute_stratified(n_perm: int, x: np.ndarray, strata, n_strata: Optional[int],
                        seed: Optional[int]) -> np.ndarray:
    if n_perm < 0:
        raise ValueError("n_perm must be non-negative")
    strata, n_strata = _check_strata(x, strata, n_strata)
    rng = np.random.default_rng(seed)
    members = [np.flatnonzero(strata == s) for s in range(n_strata)]

    result = np.empty((x.shape[0], n_perm), dtype=x.dtype)
    for i in range(n_perm):
        column = x.copy()
        for idx in members:
            if idx.size > 1:
                column[idx] = x[idx[rng.permutation(idx.size)]]
        result[:, i] = column
    return result


def permute_nvector_stratified(n_perm: int, x: Sequence[float], strata: Sequence[int],
                               n_strata: Optional[int] = None,
                               seed: Optional[int] = None) -> np.ndarray:
    """Independent within-stratum permutations of a real vector.

    Args:
        n_perm: Number of permutations (columns)
        x: Values to permute
        strata: Stratum code 0..n_strata-1 for each element of x
        n_strata: Number of strata; inferred from the largest code when None
        seed: Seed for numpy.random.default_rng

    Returns:
        Matrix (len(x) × n_perm)
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim != 1:
        raise InvalidDimensionError("x must be a vector")
    return _permute_stratified(n_perm, x, strata, n_strata, seed)


def permute_ivector_stratified(n_perm: int, x: Sequence[int], strata: Sequence[int],
                               n_strata: Optional[int] = None,
                               seed: Optional[int] = None) -> np.ndarray:
    """Independent within-stratum permutations of an integer vector."""
    x = np.asarray(x, dtype=np.int64)
    if x.ndim != 1:
        raise InvalidDimensionError("x must be a vector")
    return _permute_stratified(n_perm, x, strata, n_strata, seed)


def make_strata(labels) -> Tuple[np.ndarray, int]:
    """Integer codes 0..n_strata-1 for blocking labels, in order of first appearance.

    Accepts a vector, a pandas Series, or a DataFrame whose rows are combined
    (each distinct combination of values is one stratum).
    """
    if isinstance(labels, pd.DataFrame):
        labels = labels.astype(str).agg("|".join, axis=1)
    codes, uniques = pd.factorize(pd.Series(labels), sort=False)
    if np.any(codes < 0):
        raise ValueError("strata labels must not be missing")
    return codes.astype(np.int64), len(uniques)
