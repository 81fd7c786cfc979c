"""
Linear mixed model scans for a single chromosome.

Phenotypes, null covariates and genotype probabilities are rotated once into
the kinship eigenbasis. Per trait the heritability is fitted on the null
model (REML by default) and every position is then fitted at that hsq by
weighted least squares with weights w_i = 1/sqrt(hsq * lambda_i + 1 - hsq).
Both models are compared by their ordinary log-likelihood at the null hsq:

    loglik = -n/2 * log(RSS_w) + sum(log w)
    LOD    = (loglik1 - loglik0) / ln(10)

With `refit_hsq` the heritability is re-estimated (ML) at every position
instead, which is slower and changes the LOD only slightly.
"""

from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np

from .design import (
    NULL_FIT_RTOL,
    AdditiveDesign,
    IntcovarLowmemDesign,
    PositionDesign,
    scan_rss,
)
from .linreg import DEFAULT_TOL, calc_rss_qr, find_lin_indep_cols
from .lmm import DEFAULT_HSQ_TOL, fit_lmm, fit_lmm_mat
from .scan_hk import _prepare, null_covariates
from ..matrix.eigen import eigen_decomp, rotate
from ..matrix.intcovar import expand_genoprobs_intcovar
from ..matrix.ops import matrix_x_3darray
from ..utils.data_types import KinshipMatrix
from ..utils.errors import InvalidDimensionError, NumericDegeneracyError

_TINY = np.finfo(float).tiny
_LN10 = np.log(10.0)

EigenInput = Union[Dict[str, np.ndarray], KinshipMatrix, np.ndarray]


def _eigen_parts(eigenK: EigenInput, n: int) -> Tuple[np.ndarray, np.ndarray]:
    if isinstance(eigenK, dict):
        eigen = eigenK
    else:
        eigen = eigen_decomp(eigenK)
    eigenvals = np.asarray(eigen["eigenvals"], dtype=np.float64)
    eigenvecs = np.asarray(eigen["eigenvecs"], dtype=np.float64)
    if eigenvals.shape != (n,) or eigenvecs.shape != (n, n):
        raise InvalidDimensionError(
            f"Kinship eigendecomposition does not match {n} individuals"
        )
    return eigenvals, eigenvecs


def lmm_weights(hsq: float, eigenvals: np.ndarray) -> np.ndarray:
    """Row multipliers 1/sqrt(hsq * lambda + 1 - hsq) in the eigenbasis."""
    v = hsq * np.asarray(eigenvals, dtype=np.float64) + (1.0 - hsq)
    if np.any(v <= 0):
        raise NumericDegeneracyError(f"Variance is not positive for every individual at hsq={hsq}")
    return 1.0 / np.sqrt(v)


def _weighted_loglik(rss: np.ndarray, n: int, sum_logw: float) -> np.ndarray:
    return -0.5 * n * np.log(np.maximum(rss, _TINY)) + sum_logw


def _null_hsq(eigenvals, Y_rot, X0_rot, hsq, reml, check_boundary, hsq_tol) -> np.ndarray:
    n_traits = Y_rot.shape[1]
    if hsq is not None:
        hsq = np.broadcast_to(np.asarray(hsq, dtype=np.float64), (n_traits,)).copy()
        if np.any((hsq < 0) | (hsq > 1)):
            raise ValueError("hsq must lie in [0, 1]")
        return hsq
    fits = fit_lmm_mat(eigenvals, Y_rot, X0_rot, reml=reml,
                       check_boundary=check_boundary, tol=hsq_tol)
    return np.array([fit.hsq for fit in fits])


def _refit_lod(design: PositionDesign, eigenvals: np.ndarray, y_rot: np.ndarray,
               X0_rot: np.ndarray, check_boundary: bool, tol: float, hsq_tol: float):
    """LOD with hsq re-estimated by ML at each position; returns (lod, null hsq)."""
    null_fit = fit_lmm(eigenvals, y_rot, X0_rot, reml=False,
                       check_boundary=check_boundary, tol=hsq_tol)
    if calc_rss_qr(X0_rot, y_rot, tol) <= NULL_FIT_RTOL * float(y_rot @ y_rot):
        return np.zeros(design.n_positions), null_fit.hsq
    lod = np.empty(design.n_positions)
    for pos in range(design.n_positions):
        X = design.full(pos)
        X = X[:, find_lin_indep_cols(X, tol)]
        fit = fit_lmm(eigenvals, y_rot, X, reml=False,
                      check_boundary=check_boundary, tol=hsq_tol)
        lod[pos] = (fit.loglik - null_fit.loglik) / _LN10
    return np.maximum(lod, 0.0), null_fit.hsq


def _scan_lmm(kind: str, genoprobs, pheno, addcovar, intcovar, eigenK,
              reml: bool, check_boundary: bool, tol: float, hsq_tol: float,
              hsq, refit_hsq: bool):
    probs, pheno, _ = _prepare(genoprobs, pheno)
    n = probs.shape[0]
    X0 = null_covariates(n, addcovar, intcovar if kind != "additive" else None, tol=tol)
    X0 = X0[:, find_lin_indep_cols(X0, tol)]
    eigenvals, eigenvecs = _eigen_parts(eigenK, n)

    Y_rot = rotate(eigenvecs, pheno)
    X0_rot = rotate(eigenvecs, X0)

    if kind == "lowmem":
        rotation = eigenvecs.T

        def make_design(weights):
            return IntcovarLowmemDesign(X0, probs, intcovar, weights=weights,
                                        rotation=rotation, tol=tol)
        Y_in = pheno
    else:
        scan_probs = probs if kind == "additive" else expand_genoprobs_intcovar(probs, intcovar)
        probs_rot = matrix_x_3darray(eigenvecs.T, scan_probs)

        def make_design(weights):
            return AdditiveDesign(X0_rot, probs_rot, weights=weights, tol=tol)
        Y_in = Y_rot

    n_traits = pheno.shape[1]
    lod = np.empty((probs.shape[2], n_traits))

    if refit_hsq:
        hsqs = np.empty(n_traits)
        design = make_design(None)
        for j in range(n_traits):
            lod[:, j], hsqs[j] = _refit_lod(design, eigenvals, Y_rot[:, j], X0_rot,
                                           check_boundary, tol, hsq_tol)
        return lod, hsqs

    hsqs = _null_hsq(eigenvals, Y_rot, X0_rot, hsq, reml, check_boundary, hsq_tol)
    for j in range(n_traits):
        w = lmm_weights(hsqs[j], eigenvals)
        sum_logw = float(np.sum(np.log(w)))
        rss0, rss, yss = scan_rss(make_design(w), Y_in[:, [j]], tol)
        if rss0[0] <= max(NULL_FIT_RTOL * yss[0], 0.0):
            # Exact null fit.
            lod[:, j] = 0.0
            continue
        loglik0 = _weighted_loglik(rss0[0], n, sum_logw)
        loglik1 = _weighted_loglik(rss[:, 0], n, sum_logw)
        lod[:, j] = np.maximum((loglik1 - loglik0) / _LN10, 0.0)
    return lod, hsqs


def scan_lmm_onechr(genoprobs, pheno, addcovar: Optional[np.ndarray], eigenK: EigenInput,
                    reml: bool = True, check_boundary: bool = True,
                    tol: float = DEFAULT_TOL, hsq_tol: float = DEFAULT_HSQ_TOL,
                    hsq: Optional[Union[float, Sequence[float]]] = None,
                    refit_hsq: bool = False, return_hsq: bool = False):
    """LMM scan with additive covariates.

    Args:
        genoprobs: GenotypeProbs or array (n × k × m)
        pheno: Phenotypes (n,) or (n × t)
        addcovar: Additive covariates (n × c) or None; intercept added here
        eigenK: {"eigenvals", "eigenvecs"} of the (LOCO) kinship matrix, or
            the kinship matrix itself
        reml: Fit the null heritability by REML (else ML)
        check_boundary: Also evaluate hsq = 0 and 1 in the search
        tol: Rank tolerance for the regressions
        hsq_tol: Tolerance of the heritability search
        hsq: Fixed heritability (scalar or per trait) instead of the null fit
        refit_hsq: Re-estimate hsq by ML at every position
        return_hsq: Also return the null heritability per trait

    Returns:
        LOD scores (m × t), or (LOD, hsq) when `return_hsq` is set
    """
    lod, hsqs = _scan_lmm("additive", genoprobs, pheno, addcovar, None, eigenK,
                          reml, check_boundary, tol, hsq_tol, hsq, refit_hsq)
    return (lod, hsqs) if return_hsq else lod


def scan_lmm_onechr_intcovar_highmem(genoprobs, pheno, addcovar: Optional[np.ndarray],
                                     intcovar: np.ndarray, eigenK: EigenInput,
                                     reml: bool = True, check_boundary: bool = True,
                                     tol: float = DEFAULT_TOL, hsq_tol: float = DEFAULT_HSQ_TOL,
                                     hsq=None, refit_hsq: bool = False,
                                     return_hsq: bool = False):
    """LMM scan with interactive covariates; expanded probabilities rotated once."""
    lod, hsqs = _scan_lmm("highmem", genoprobs, pheno, addcovar, intcovar, eigenK,
                          reml, check_boundary, tol, hsq_tol, hsq, refit_hsq)
    return (lod, hsqs) if return_hsq else lod


def scan_lmm_onechr_intcovar_lowmem(genoprobs, pheno, addcovar: Optional[np.ndarray],
                                    intcovar: np.ndarray, eigenK: EigenInput,
                                    reml: bool = True, check_boundary: bool = True,
                                    tol: float = DEFAULT_TOL, hsq_tol: float = DEFAULT_HSQ_TOL,
                                    hsq=None, refit_hsq: bool = False,
                                    return_hsq: bool = False):
    """LMM scan with interactive covariates; each position's design is built,
    rotated and weighted on its own."""
    lod, hsqs = _scan_lmm("lowmem", genoprobs, pheno, addcovar, intcovar, eigenK,
                          reml, check_boundary, tol, hsq_tol, hsq, refit_hsq)
    return (lod, hsqs) if return_hsq else lod
