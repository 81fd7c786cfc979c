"""
Haley-Knott regression scans for a single chromosome.

At every position the phenotypes are regressed on the genotype probabilities
(plus covariates) and compared with the null model [1 | addcovar]:

    LOD = n/2 * log10(RSS0 / RSS1)

All variants return a (positions × traits) LOD matrix. Rank-deficient
positions are handled by the pivoted-QR fits and still give finite LODs.
"""

from typing import Optional

import numpy as np

from .design import (
    AdditiveDesign,
    IntcovarHighmemDesign,
    IntcovarLowmemDesign,
    NULL_FIT_RTOL,
    PositionDesign,
    scan_rss,
)
from .linreg import DEFAULT_TOL, find_matching_cols
from ..utils.data_types import as_probs_array
from ..utils.errors import InvalidDimensionError

_TINY = np.finfo(float).tiny


def lod_from_rss(rss0: np.ndarray, rss: np.ndarray, n: int,
                 yss: Optional[np.ndarray] = None) -> np.ndarray:
    """n/2 * log10(rss0 / rss), floored at zero.

    The full model always contains the null model, so negative values are
    rounding error. A perfect null fit gives LOD 0: a null RSS of zero, or,
    when the response sum of squares `yss` is given, a null RSS at the
    rounding level of `yss`.
    """
    rss0 = np.asarray(rss0, dtype=np.float64)
    rss = np.asarray(rss, dtype=np.float64)
    exact_null = rss0 <= 0
    if yss is not None:
        exact_null = exact_null | (rss0 <= NULL_FIT_RTOL * np.asarray(yss, dtype=np.float64))
    with np.errstate(divide="ignore", invalid="ignore"):
        lod = (n / 2.0) * (np.log10(np.maximum(rss0, _TINY)) - np.log10(np.maximum(rss, _TINY)))
    lod = np.where(exact_null, 0.0, lod)
    return np.maximum(lod, 0.0)


def null_covariates(n: int, addcovar: Optional[np.ndarray] = None,
                    intcovar: Optional[np.ndarray] = None,
                    tol: float = DEFAULT_TOL) -> np.ndarray:
    """Null design [1 | addcovar | intcovar columns not already in addcovar]."""
    blocks = [np.ones((n, 1))]
    for name, mat in (("addcovar", addcovar), ("intcovar", intcovar)):
        if mat is None:
            continue
        mat = np.asarray(mat, dtype=np.float64)
        if mat.ndim == 1:
            mat = mat[:, np.newaxis]
        if mat.ndim != 2 or mat.shape[0] != n:
            raise InvalidDimensionError(f"{name} must have {n} rows")
        blocks.append(mat)
    X0 = np.hstack(blocks)
    # Interactive covariates duplicating an additive one add nothing to the null.
    matches = find_matching_cols(X0, tol)
    return X0[:, matches < 0]


def _prepare(genoprobs, pheno, weights=None):
    probs = as_probs_array(genoprobs)
    pheno = np.asarray(pheno, dtype=np.float64)
    if pheno.ndim == 1:
        pheno = pheno[:, np.newaxis]
    if pheno.ndim != 2:
        raise InvalidDimensionError("pheno must be a vector or a 2D matrix")
    n = probs.shape[0]
    if pheno.shape[0] != n:
        raise InvalidDimensionError(
            f"pheno has {pheno.shape[0]} rows but genotype probabilities have {n} individuals"
        )
    if weights is not None:
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape != (n,):
            raise InvalidDimensionError(f"weights must have length {n}")
        if np.any(weights < 0):
            raise ValueError("weights must be non-negative")
        weights = np.sqrt(weights)
    return probs, pheno, weights


def _lod(design: PositionDesign, pheno: np.ndarray, tol: float) -> np.ndarray:
    rss0, rss, yss = scan_rss(design, pheno, tol)
    return lod_from_rss(rss0[np.newaxis, :], rss, pheno.shape[0], yss[np.newaxis, :])


def scan_hk_onechr_nocovar(genoprobs, pheno, tol: float = DEFAULT_TOL) -> np.ndarray:
    """HK scan with no covariates; the null model is the intercept alone."""
    return scan_hk_onechr(genoprobs, pheno, None, tol)


def scan_hk_onechr(genoprobs, pheno, addcovar: Optional[np.ndarray] = None,
                   tol: float = DEFAULT_TOL) -> np.ndarray:
    """HK scan with additive covariates.

    Args:
        genoprobs: GenotypeProbs or array (n × k × m)
        pheno: Phenotypes (n,) or (n × t)
        addcovar: Additive covariates (n × c), no intercept column
        tol: Rank tolerance

    Returns:
        LOD scores (m × t)
    """
    probs, pheno, _ = _prepare(genoprobs, pheno)
    X0 = null_covariates(probs.shape[0], addcovar, tol=tol)
    return _lod(AdditiveDesign(X0, probs, tol=tol), pheno, tol)


def scan_hk_onechr_weighted(genoprobs, pheno, addcovar: Optional[np.ndarray],
                            weights: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """HK scan by weighted least squares; rows are scaled by sqrt(weights)."""
    probs, pheno, sqrt_w = _prepare(genoprobs, pheno, weights)
    X0 = null_covariates(probs.shape[0], addcovar, tol=tol)
    return _lod(AdditiveDesign(X0, probs, weights=sqrt_w, tol=tol), pheno, tol)


def scan_hk_onechr_intcovar_highmem(genoprobs, pheno, addcovar: Optional[np.ndarray],
                                    intcovar: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """HK scan with interactive covariates, expanded probabilities held in memory."""
    probs, pheno, _ = _prepare(genoprobs, pheno)
    X0 = null_covariates(probs.shape[0], addcovar, intcovar, tol=tol)
    return _lod(IntcovarHighmemDesign(X0, probs, intcovar, tol=tol), pheno, tol)


def scan_hk_onechr_intcovar_weighted_highmem(genoprobs, pheno, addcovar: Optional[np.ndarray],
                                             intcovar: np.ndarray, weights: np.ndarray,
                                             tol: float = DEFAULT_TOL) -> np.ndarray:
    probs, pheno, sqrt_w = _prepare(genoprobs, pheno, weights)
    X0 = null_covariates(probs.shape[0], addcovar, intcovar, tol=tol)
    return _lod(IntcovarHighmemDesign(X0, probs, intcovar, weights=sqrt_w, tol=tol), pheno, tol)


def scan_hk_onechr_intcovar_lowmem(genoprobs, pheno, addcovar: Optional[np.ndarray],
                                   intcovar: np.ndarray, tol: float = DEFAULT_TOL) -> np.ndarray:
    """HK scan with interactive covariates, design formed per position."""
    probs, pheno, _ = _prepare(genoprobs, pheno)
    X0 = null_covariates(probs.shape[0], addcovar, intcovar, tol=tol)
    return _lod(IntcovarLowmemDesign(X0, probs, intcovar, tol=tol), pheno, tol)


def scan_hk_onechr_intcovar_weighted_lowmem(genoprobs, pheno, addcovar: Optional[np.ndarray],
                                            intcovar: np.ndarray, weights: np.ndarray,
                                            tol: float = DEFAULT_TOL) -> np.ndarray:
    probs, pheno, sqrt_w = _prepare(genoprobs, pheno, weights)
    X0 = null_covariates(probs.shape[0], addcovar, intcovar, tol=tol)
    return _lod(IntcovarLowmemDesign(X0, probs, intcovar, weights=sqrt_w, tol=tol), pheno, tol)
