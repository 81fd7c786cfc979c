"""
Least-squares kernels for the genome scans.

Two independent solvers are provided:
- Cholesky: factor the normal equations X'X and back-solve. Cheap, but it
  needs X to have full column rank and fails with NumericDegeneracyError
  when X'X is not positive definite.
- Pivoted QR: rank-revealing factorisation X P = Q R. A column whose pivot
  |R_jj| falls below tol * |R_00| is treated as linearly dependent and left
  out of the fit, so rank-deficient designs still give finite residuals.

Multivariate responses (n × k) share one factorisation and one rank decision;
each column is otherwise handled independently.
"""

from dataclasses import dataclass
from typing import Tuple, Union

import numba
import numpy as np
from scipy import linalg

from ..utils.errors import InvalidDimensionError, NumericDegeneracyError

DEFAULT_TOL = 1e-12


@dataclass
class LinRegFit:
    """Single-response least-squares fit.

    Coefficients and standard errors of columns dropped by the QR rank
    decision are NaN.
    """

    coef: np.ndarray
    se: np.ndarray
    fitted: np.ndarray
    resid: np.ndarray
    rss: float
    sigma: float
    rank: int
    df: int


def _as_design(X: np.ndarray) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, np.newaxis]
    if X.ndim != 2:
        raise InvalidDimensionError("Design matrix must be 2D (individuals × predictors)")
    return X


def _as_response(Y: np.ndarray, n: int, name: str = "y") -> Tuple[np.ndarray, bool]:
    """Return Y as a 2D column block and whether the input was a vector."""
    Y = np.asarray(Y, dtype=np.float64)
    is_vector = Y.ndim == 1
    if is_vector:
        Y = Y[:, np.newaxis]
    if Y.ndim != 2:
        raise InvalidDimensionError(f"{name} must be a vector or a 2D matrix")
    if Y.shape[0] != n:
        raise InvalidDimensionError(
            f"{name} has {Y.shape[0]} rows but the design matrix has {n}"
        )
    return Y, is_vector


def _as_single_response(y: np.ndarray, n: int) -> np.ndarray:
    Y, _ = _as_response(y, n)
    if Y.shape[1] != 1:
        raise InvalidDimensionError("fit_linreg_* expects a single response column")
    return Y[:, 0]


# ---------------------------------------------------------------------------
# Cholesky path
# ---------------------------------------------------------------------------

def _chol_factor(X: np.ndarray):
    XtX = X.T @ X
    try:
        return linalg.cho_factor(XtX, lower=True)
    except linalg.LinAlgError as exc:
        raise NumericDegeneracyError(
            "X'X is not positive definite; use the QR path for rank-deficient designs"
        ) from exc


def _chol_coef(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    if X.shape[1] == 0:
        return np.zeros((0, Y.shape[1]))
    factor = _chol_factor(X)
    return linalg.cho_solve(factor, X.T @ Y)


def fit_linreg_chol(X: np.ndarray, y: np.ndarray) -> LinRegFit:
    """Least squares via Cholesky decomposition of X'X.

    Args:
        X: Design matrix (n × p), full column rank
        y: Response vector (n,)

    Returns:
        LinRegFit

    Raises:
        NumericDegeneracyError: X'X is not positive definite
    """
    X = _as_design(X)
    y = _as_single_response(y, X.shape[0])
    n, p = X.shape

    factor = _chol_factor(X)
    coef = linalg.cho_solve(factor, X.T @ y)
    fitted = X @ coef
    resid = y - fitted
    rss = float(resid @ resid)
    df = n - p
    sigma = float(np.sqrt(rss / df)) if df > 0 else np.nan

    XtX_inv = linalg.cho_solve(factor, np.eye(p))
    se = sigma * np.sqrt(np.diag(XtX_inv))

    return LinRegFit(coef, se, fitted, resid, rss, sigma, p, df)


def calc_rss_chol(X: np.ndarray, y: np.ndarray) -> float:
    """Residual sum of squares for a single response via Cholesky."""
    return float(calc_mvrss_chol(X, y)[0])


def calc_mvrss_chol(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Residual sum of squares for each column of Y via Cholesky."""
    resid = calc_resid_chol(X, Y)
    if resid.ndim == 1:
        resid = resid[:, np.newaxis]
    return np.sum(resid * resid, axis=0)


def calc_resid_chol(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Residuals of each column of Y regressed on X via Cholesky."""
    X = _as_design(X)
    Y, is_vector = _as_response(Y, X.shape[0], "Y")
    resid = Y - X @ _chol_coef(X, Y)
    return resid[:, 0] if is_vector else resid


# ---------------------------------------------------------------------------
# Pivoted QR path
# ---------------------------------------------------------------------------

def _qr_rank(R: np.ndarray, tol: float) -> int:
    """Numerical rank from the diagonal of a column-pivoted R factor."""
    if R.size == 0:
        return 0
    diag = np.abs(np.diag(R))
    if diag[0] == 0.0:
        return 0
    return int(np.sum(diag > tol * diag[0]))


def _qr_decomp(X: np.ndarray, tol: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
    """Thin pivoted QR; returns Q, R, column pivots and numerical rank."""
    if X.shape[1] == 0:
        return np.zeros((X.shape[0], 0)), np.zeros((0, 0)), np.zeros(0, dtype=int), 0
    Q, R, piv = linalg.qr(X, mode="economic", pivoting=True)
    return Q, R, piv, _qr_rank(R, tol)


def _qr_fitted(X: np.ndarray, Y: np.ndarray, tol: float) -> np.ndarray:
    Q, _, _, rank = _qr_decomp(X, tol)
    Qr = Q[:, :rank]
    return Qr @ (Qr.T @ Y)


def fit_linreg_qr(X: np.ndarray, y: np.ndarray, tol: float = DEFAULT_TOL) -> LinRegFit:
    """Least squares via column-pivoted QR decomposition of X.

    Columns judged dependent at `tol` are excluded; their coefficients and
    standard errors are NaN and `rank` reports the number of columns used.

    Args:
        X: Design matrix (n × p)
        y: Response vector (n,)
        tol: Relative pivot tolerance for the rank decision

    Returns:
        LinRegFit
    """
    X = _as_design(X)
    y = _as_single_response(y, X.shape[0])
    n, p = X.shape

    Q, R, piv, rank = _qr_decomp(X, tol)
    Qr = Q[:, :rank]
    Rr = R[:rank, :rank]
    Qty = Qr.T @ y

    coef = np.full(p, np.nan)
    se = np.full(p, np.nan)
    fitted = Qr @ Qty
    resid = y - fitted
    rss = float(resid @ resid)
    df = n - rank
    sigma = float(np.sqrt(rss / df)) if df > 0 else np.nan

    if rank > 0:
        coef[piv[:rank]] = linalg.solve_triangular(Rr, Qty)
        Rinv = linalg.solve_triangular(Rr, np.eye(rank))
        se[piv[:rank]] = sigma * np.sqrt(np.sum(Rinv * Rinv, axis=1))

    return LinRegFit(coef, se, fitted, resid, rss, sigma, rank, df)


def calc_rss_qr(X: np.ndarray, y: np.ndarray, tol: float = DEFAULT_TOL) -> float:
    """Residual sum of squares for a single response via pivoted QR."""
    return float(calc_mvrss_qr(X, y, tol)[0])


def calc_mvrss_qr(X: np.ndarray, Y: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """Residual sum of squares for each column of Y via pivoted QR."""
    resid = calc_resid_qr(X, Y, tol)
    if resid.ndim == 1:
        resid = resid[:, np.newaxis]
    return np.sum(resid * resid, axis=0)


def calc_resid_qr(X: np.ndarray, Y: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """Residuals of each column of Y regressed on X via pivoted QR."""
    X = _as_design(X)
    Y, is_vector = _as_response(Y, X.shape[0], "Y")
    resid = Y - _qr_fitted(X, Y, tol)
    return resid[:, 0] if is_vector else resid


def calc_rss_linreg(X: np.ndarray, Y: np.ndarray,
                    tol: float = DEFAULT_TOL) -> Union[float, np.ndarray]:
    """RSS of Y on X using the rank-robust QR path.

    Returns a float for a vector response and an array (one per column) for
    a matrix response.
    """
    if np.ndim(Y) == 1:
        return calc_rss_qr(X, Y, tol)
    return calc_mvrss_qr(X, Y, tol)


def calc_resid_linreg(X: np.ndarray, Y: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """Residuals of Y on X using the rank-robust QR path."""
    return calc_resid_qr(X, Y, tol)


def calc_resid_linreg_3d(X: np.ndarray, P: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """Residuals of every slab of a 3D array regressed on one design matrix.

    X is factored once and applied to all n × (k·m) columns of P at the same
    time, so no per-position refactorisation takes place.

    Args:
        X: Design matrix (n × p)
        P: Array (n × k × m), e.g. genotype probabilities
        tol: Relative pivot tolerance for the rank decision

    Returns:
        Array with the shape of P
    """
    X = _as_design(X)
    P = np.asarray(P, dtype=np.float64)
    if P.ndim != 3:
        raise InvalidDimensionError("P must be a 3D array")
    if P.shape[0] != X.shape[0]:
        raise InvalidDimensionError(
            f"P has {P.shape[0]} rows but the design matrix has {X.shape[0]}"
        )
    flat = P.reshape(P.shape[0], -1)
    resid = flat - _qr_fitted(X, flat, tol)
    return resid.reshape(P.shape)


# ---------------------------------------------------------------------------
# Column dependence helpers
# ---------------------------------------------------------------------------

def find_lin_indep_cols(mat: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """Indices (0-based, sorted) of a maximal linearly independent set of columns.

    Uses the same pivoted-QR rank decision as the QR regression path, so the
    count equals the numerical rank of `mat`.
    """
    mat = _as_design(mat)
    _, _, piv, rank = _qr_decomp(mat, tol)
    return np.sort(piv[:rank]).astype(np.int64)


@numba.jit(nopython=True, cache=True)
def _find_matching_cols_jit(mat, tol):
    n, p = mat.shape
    result = np.full(p, -1, dtype=np.int64)
    for i in range(1, p):
        for j in range(i):
            if result[j] != -1:
                continue
            is_match = True
            for k in range(n):
                if abs(mat[k, i] - mat[k, j]) > tol:
                    is_match = False
                    break
            if is_match:
                result[i] = j
                break
    return result


def find_matching_cols(mat: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """Find columns that repeat an earlier column element-wise within tol.

    Returns:
        Integer array with one entry per column: -1 if the column does not
        match an earlier one, otherwise the 0-based index of the first column
        it matches. Matches always point to a column that is itself unmatched.
    """
    mat = np.ascontiguousarray(_as_design(mat))
    return _find_matching_cols_jit(mat, float(tol))
