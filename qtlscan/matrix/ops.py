"""
Row weighting and rotation helpers for matrices and 3D probability arrays
"""

import numpy as np

from ..utils.errors import InvalidDimensionError


def weighted_matrix(mat: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Multiply row i of `mat` by weights[i]; returns a new array."""
    mat = np.asarray(mat, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    if weights.ndim != 1 or weights.shape[0] != mat.shape[0]:
        raise InvalidDimensionError("weights must have one entry per row")
    if mat.ndim == 1:
        return mat * weights
    return mat * weights.reshape((-1,) + (1,) * (mat.ndim - 1))


def weighted_3darray(array: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Multiply every (individual, ·, ·) slice of a 3D array by weights[individual]."""
    array = np.asarray(array, dtype=np.float64)
    if array.ndim != 3:
        raise InvalidDimensionError("array must be 3D")
    return weighted_matrix(array, weights)


def matrix_x_3darray(X: np.ndarray, A: np.ndarray) -> np.ndarray:
    """Left-multiply each n × k slab of a 3D array: result[:, :, m] = X @ A[:, :, m]."""
    X = np.asarray(X, dtype=np.float64)
    A = np.asarray(A, dtype=np.float64)
    if A.ndim != 3:
        raise InvalidDimensionError("A must be 3D")
    if X.ndim != 2 or X.shape[1] != A.shape[0]:
        raise InvalidDimensionError(
            f"Cannot multiply a {X.shape} matrix by an array with {A.shape[0]} rows"
        )
    # Guard against spurious BLAS FPE flags.
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        flat = X @ A.reshape(A.shape[0], -1)
    return flat.reshape((X.shape[0],) + A.shape[1:])
