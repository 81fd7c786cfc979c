"""
Eigendecomposition of a kinship matrix and rotation into its eigenbasis.

With K = U diag(lambda) U', the model y = Xb + g + e with
Var(g + e) = sigma^2 (hsq K + (1 - hsq) I) becomes, after left-multiplying by
U', a weighted regression with independent errors of variance
sigma^2 (hsq lambda_i + 1 - hsq). Everything downstream works on U'y and U'X.

The rotation assumes U is orthonormal and that rows of K, y and X refer to the
same individuals in the same order. Neither is checked here; a mismatch in
individual order silently gives wrong results. The genome-wide drivers check
alignment when individual IDs are available.
"""

import warnings
from typing import Dict, Optional, Union

import numpy as np

from ..utils.data_types import KinshipMatrix
from ..utils.errors import InvalidDimensionError, NumericDegeneracyError


def eigen_decomp(K: Union[KinshipMatrix, np.ndarray]) -> Dict[str, np.ndarray]:
    """Symmetric eigendecomposition, eigenvalues in descending order.

    Eigenvalues that are negative only through rounding are clipped to zero.

    Returns:
        {"eigenvals": (n,), "eigenvecs": (n × n), columns are eigenvectors}
    """
    if isinstance(K, KinshipMatrix):
        K = K.to_numpy()
    K = np.asarray(K, dtype=np.float64)
    if K.ndim != 2 or K.shape[0] != K.shape[1]:
        raise InvalidDimensionError("Kinship matrix must be square")

    eigenvals, eigenvecs = np.linalg.eigh(K)
    sort_indices = np.argsort(eigenvals)[::-1]
    eigenvals = eigenvals[sort_indices]
    eigenvecs = eigenvecs[:, sort_indices]

    scale = max(float(np.max(np.abs(eigenvals))) if eigenvals.size else 0.0, 1.0)
    rounding = (eigenvals < 0) & (eigenvals > -1e-8 * scale)
    eigenvals[rounding] = 0.0
    if np.any(eigenvals < 0):
        warnings.warn("Kinship matrix has clearly negative eigenvalues; it is not positive semi-definite")

    return {"eigenvals": eigenvals, "eigenvecs": np.ascontiguousarray(eigenvecs)}


def rotate(eigenvecs: np.ndarray, mat: np.ndarray) -> np.ndarray:
    """Rotate rows into the eigenbasis: eigenvecs' @ mat."""
    eigenvecs = np.asarray(eigenvecs, dtype=np.float64)
    mat = np.asarray(mat, dtype=np.float64)
    if mat.shape[0] != eigenvecs.shape[0]:
        raise InvalidDimensionError(
            f"Cannot rotate {mat.shape[0]} rows with a {eigenvecs.shape[0]}-individual eigenbasis"
        )
    # Guard against spurious BLAS FPE flags.
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        return eigenvecs.T @ mat


def eigen_rotation(K: Optional[Union[KinshipMatrix, np.ndarray]],
                   y: np.ndarray,
                   X: np.ndarray,
                   eigenK: Optional[Dict[str, np.ndarray]] = None) -> Dict[str, np.ndarray]:
    """Decompose K (unless eigenK is given) and rotate phenotypes and design.

    Returns:
        {"eigenvals", "eigenvecs", "y": U'y, "X": U'X}
    """
    if eigenK is None:
        if K is None:
            raise ValueError("Either K or eigenK is required")
        eigenK = eigen_decomp(K)
    eigenvals = np.asarray(eigenK["eigenvals"], dtype=np.float64)
    eigenvecs = np.asarray(eigenK["eigenvecs"], dtype=np.float64)
    return {
        "eigenvals": eigenvals,
        "eigenvecs": eigenvecs,
        "y": rotate(eigenvecs, y),
        "X": rotate(eigenvecs, X),
    }


def calc_logdetXpX(X: np.ndarray) -> float:
    """log det(X'X), the REML normalising term for design X.

    Raises:
        NumericDegeneracyError: X'X is singular (X is column rank deficient)
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, np.newaxis]
    sign, logdet = np.linalg.slogdet(X.T @ X)
    if sign <= 0 or not np.isfinite(logdet):
        raise NumericDegeneracyError("X'X is singular; drop dependent columns before computing log det")
    return float(logdet)
