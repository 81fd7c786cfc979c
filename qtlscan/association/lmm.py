"""
Heritability search for the linear mixed model in the kinship eigenbasis.

The model is y = Xb + g + e with Var(g + e) = sigma^2 (hsq K + (1 - hsq) I).
After rotation by the kinship eigenvectors (see qtlscan.matrix.eigen) the
errors are independent with variances proportional to
v_i = hsq * lambda_i + 1 - hsq, so every likelihood evaluation is a weighted
least-squares fit costing O(n p^2) with no matrix inversion of size n.

Log-likelihoods here omit additive constants; they cancel in every likelihood
ratio the scans take.
"""

import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy import optimize

from ..matrix.eigen import calc_logdetXpX
from ..utils.errors import (
    InvalidDimensionError,
    NumericDegeneracyError,
    OptimizationNonConvergenceWarning,
)

DEFAULT_HSQ_TOL = 1e-4

# Spread below this (relative) means the kinship carries no information.
_EQUAL_EIGENVALS_RTOL = 1e-10


@dataclass
class LMMFit:
    """Maximum (restricted) likelihood fit at the chosen heritability."""

    hsq: float
    loglik: float
    beta: np.ndarray
    sigmasq: float
    rss: float
    logdetXSX: float


def _check_inputs(eigenvals: np.ndarray, y: np.ndarray, X: np.ndarray):
    eigenvals = np.asarray(eigenvals, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, np.newaxis]
    if eigenvals.ndim != 1 or y.ndim != 1 or X.ndim != 2:
        raise InvalidDimensionError("eigenvals and y must be vectors and X a matrix")
    if not (eigenvals.shape[0] == y.shape[0] == X.shape[0]):
        raise InvalidDimensionError(
            f"eigenvals ({eigenvals.shape[0]}), y ({y.shape[0]}) and X ({X.shape[0]}) "
            "must have the same number of individuals"
        )
    return eigenvals, y, X


def _lmm_soln(hsq: float, eigenvals: np.ndarray, y: np.ndarray, X: np.ndarray):
    """Weighted least squares at a fixed hsq.

    Returns (beta, rss, sum log v, logdet X'SX), or None when some variance
    v_i is not positive.
    """
    v = hsq * eigenvals + (1.0 - hsq)
    if np.any(v <= 0):
        return None
    S = 1.0 / v
    sum_logv = float(np.sum(np.log(v)))
    p = X.shape[1]
    if p == 0:
        return np.zeros(0), float(np.sum(S * y * y)), sum_logv, 0.0

    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        SX = S[:, np.newaxis] * X
        XSX = X.T @ SX
        XSy = SX.T @ y
    try:
        beta = np.linalg.solve(XSX, XSy)
    except np.linalg.LinAlgError as exc:
        raise NumericDegeneracyError("X'SX is singular; prune dependent columns first") from exc
    resid = y - X @ beta
    rss = float(np.sum(S * resid * resid))
    sign, logdetXSX = np.linalg.slogdet(XSX)
    if sign <= 0:
        raise NumericDegeneracyError("X'SX is not positive definite")
    return beta, rss, sum_logv, float(logdetXSX)


def _loglik_from_soln(soln, n: int, p: int, reml: bool, logdetXpX: Optional[float]) -> float:
    if soln is None:
        return -np.inf
    _, rss, sum_logv, logdetXSX = soln
    if rss <= 0:
        return np.inf if rss == 0 else -np.inf
    if not reml:
        return -0.5 * (n * np.log(rss) + sum_logv)
    return -0.5 * ((n - p) * np.log(rss) + sum_logv + logdetXSX - logdetXpX)


def calc_ll(hsq: float, eigenvals: np.ndarray, y: np.ndarray, X: np.ndarray,
            reml: bool = True, logdetXpX: Optional[float] = None) -> float:
    """Log-likelihood (REML if `reml`) of the rotated model at heritability hsq.

    Args:
        hsq: Heritability in [0, 1]
        eigenvals: Kinship eigenvalues
        y: Rotated phenotype (U'y)
        X: Rotated design (U'X)
        reml: Restricted likelihood instead of ordinary likelihood
        logdetXpX: log det(X'X) of the unrotated design; computed when None

    Returns:
        Log-likelihood without additive constants; -inf where any variance
        hsq * lambda_i + 1 - hsq is not positive
    """
    eigenvals, y, X = _check_inputs(eigenvals, y, X)
    n, p = X.shape
    if reml and logdetXpX is None:
        logdetXpX = calc_logdetXpX(X)
    return float(_loglik_from_soln(_lmm_soln(hsq, eigenvals, y, X), n, p, reml, logdetXpX))


def maximize_bounded(objective: Callable[[float], float],
                     lower: float = 0.0,
                     upper: float = 1.0,
                     tol: float = DEFAULT_HSQ_TOL) -> Tuple[float, float, bool]:
    """Maximise a scalar function on [lower, upper] with bounded Brent search.

    Returns:
        (argmax, maximum, converged); argmax always lies inside the bounds
    """
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        result = optimize.minimize_scalar(
            lambda x: -objective(x),
            bounds=(lower, upper),
            method="bounded",
            options={"xatol": tol, "maxiter": 500},
        )
    x = float(np.clip(result.x, lower, upper))
    value = -float(result.fun)
    converged = bool(result.success) and bool(np.isfinite(value))
    return x, value, converged


def _eigenvals_all_equal(eigenvals: np.ndarray) -> bool:
    if eigenvals.size == 0:
        return True
    scale = max(float(np.max(np.abs(eigenvals))), 1.0)
    return float(np.ptp(eigenvals)) <= _EQUAL_EIGENVALS_RTOL * scale


def fit_lmm(eigenvals: np.ndarray, y: np.ndarray, X: np.ndarray,
            reml: bool = True, check_boundary: bool = True,
            logdetXpX: Optional[float] = None,
            tol: float = DEFAULT_HSQ_TOL) -> LMMFit:
    """Estimate heritability by maximising calc_ll over hsq in [0, 1].

    A bounded one-dimensional search finds the interior optimum. With
    `check_boundary`, or when the search does not converge, hsq = 0 and hsq = 1
    are evaluated as well and win only if strictly better. When all
    eigenvalues are equal the likelihood does not depend on hsq and the fit
    is made at hsq = 0 (ordinary least squares).

    Args:
        eigenvals: Kinship eigenvalues
        y: Rotated phenotype (U'y)
        X: Rotated design (U'X), full column rank
        reml: Maximise the restricted likelihood
        check_boundary: Compare the interior optimum with hsq = 0 and 1
        logdetXpX: log det(X'X), computed when None and `reml` is set
        tol: Absolute tolerance on hsq

    Returns:
        LMMFit
    """
    eigenvals, y, X = _check_inputs(eigenvals, y, X)
    n, p = X.shape
    if reml and logdetXpX is None:
        logdetXpX = calc_logdetXpX(X)

    def loglik(h: float) -> float:
        return _loglik_from_soln(_lmm_soln(h, eigenvals, y, X), n, p, reml, logdetXpX)

    if _eigenvals_all_equal(eigenvals):
        hsq = 0.0
    else:
        hsq, best, converged = maximize_bounded(loglik, 0.0, 1.0, tol)
        if not converged:
            warnings.warn(
                f"Heritability search did not converge (hsq={hsq:.4g}); checking boundaries",
                OptimizationNonConvergenceWarning,
            )
            check_boundary = True
            if not np.isfinite(best):
                best = -np.inf
        if check_boundary:
            for bound in (0.0, 1.0):
                value = loglik(bound)
                if value > best:
                    hsq, best = bound, value

    hsq = float(min(max(hsq, 0.0), 1.0))
    soln = _lmm_soln(hsq, eigenvals, y, X)
    if soln is None:
        raise NumericDegeneracyError(f"Variance is not positive at hsq={hsq}")
    beta, rss, _, logdetXSX = soln
    df = n - p if reml else n
    sigmasq = rss / df if df > 0 else np.nan
    return LMMFit(
        hsq=hsq,
        loglik=float(_loglik_from_soln(soln, n, p, reml, logdetXpX)),
        beta=beta,
        sigmasq=float(sigmasq),
        rss=rss,
        logdetXSX=logdetXSX,
    )


def fit_lmm_mat(eigenvals: np.ndarray, Y: np.ndarray, X: np.ndarray,
                reml: bool = True, check_boundary: bool = True,
                logdetXpX: Optional[float] = None,
                tol: float = DEFAULT_HSQ_TOL) -> List[LMMFit]:
    """fit_lmm for every column of a rotated phenotype matrix.

    The rotation and log det(X'X) are shared; each trait gets its own hsq.
    """
    Y = np.asarray(Y, dtype=np.float64)
    if Y.ndim == 1:
        Y = Y[:, np.newaxis]
    if Y.ndim != 2:
        raise InvalidDimensionError("Y must be a vector or a 2D matrix")
    X = np.asarray(X, dtype=np.float64)
    if reml and logdetXpX is None:
        logdetXpX = calc_logdetXpX(X)
    return [
        fit_lmm(eigenvals, Y[:, j], X, reml=reml, check_boundary=check_boundary,
                logdetXpX=logdetXpX, tol=tol)
        for j in range(Y.shape[1])
    ]
