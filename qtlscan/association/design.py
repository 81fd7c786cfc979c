"""
Per-position design strategies for the genome scans.

A design owns the null covariates (intercept included), the genotype
probability array for one chromosome and an optional row transform: a
rotation matrix applied first (U' for the mixed model), then row weights
(square roots of the regression weights). The scan loop in `scan_rss` only
asks a design for the transformed null design, the working response and the
matrix to regress on at each position.

- AdditiveDesign: Frisch-Waugh-Lovell. Phenotypes and every probability slab
  are residualised on the null design once; each position then needs only a
  small k-column fit.
- IntcovarHighmemDesign: expands probabilities with the genotype x covariate
  cross terms up front, then proceeds as AdditiveDesign.
- IntcovarLowmemDesign: builds [covar | P | cross terms] one position at a
  time and fits it directly. Cross terms are formed before the rotation,
  since rotation mixes individuals.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np

from .linreg import (
    DEFAULT_TOL,
    _as_design,
    _as_response,
    calc_mvrss_qr,
    calc_resid_linreg,
    calc_resid_linreg_3d,
)
from ..matrix.intcovar import expand_genoprobs_intcovar, formX_intcovar
from ..matrix.ops import matrix_x_3darray, weighted_matrix
from ..utils.errors import InvalidDimensionError

_EXPLAINED_RTOL = 1e-8
# A null RSS below this fraction of the response sum of squares is an exact fit.
NULL_FIT_RTOL = _EXPLAINED_RTOL ** 2


class PositionDesign(ABC):
    """Base class; holds the null design and the row transform.

    Subclasses implement `full`, the design at one position.
    """

    def __init__(self, covar: np.ndarray, probs: np.ndarray,
                 weights: Optional[np.ndarray] = None,
                 rotation: Optional[np.ndarray] = None,
                 tol: float = DEFAULT_TOL):
        self.covar = _as_design(covar)
        self.probs = np.asarray(probs, dtype=np.float64)
        self.tol = tol
        n = self.covar.shape[0]
        if self.probs.ndim != 3:
            raise InvalidDimensionError("Genotype probabilities must be 3D (individuals × genotypes × positions)")
        if self.probs.shape[0] != n:
            raise InvalidDimensionError(
                f"Genotype probabilities have {self.probs.shape[0]} individuals but covariates have {n}"
            )
        self.weights = None
        if weights is not None:
            self.weights = np.asarray(weights, dtype=np.float64)
            if self.weights.shape != (n,):
                raise InvalidDimensionError(f"weights must have length {n}")
        self.rotation = None
        if rotation is not None:
            self.rotation = np.asarray(rotation, dtype=np.float64)
            if self.rotation.shape != (n, n):
                raise InvalidDimensionError(f"rotation must be {n} × {n}")
        self._covar_t = self._transform(self.covar)

    @property
    def n_individuals(self) -> int:
        return self.covar.shape[0]

    @property
    def n_positions(self) -> int:
        return self.probs.shape[2]

    def _transform(self, mat: np.ndarray) -> np.ndarray:
        """Rotate, then weight rows; works on 1D, 2D and 3D arrays."""
        out = mat
        if self.rotation is not None:
            if out.ndim == 3:
                out = matrix_x_3darray(self.rotation, out)
            else:
                with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
                    out = self.rotation @ out
        if self.weights is not None:
            out = weighted_matrix(out, self.weights)
        return out

    def null_design(self) -> np.ndarray:
        return self._covar_t

    def response(self, pheno: np.ndarray) -> np.ndarray:
        """Transformed phenotype matrix (always 2D)."""
        Y, _ = _as_response(pheno, self.n_individuals, "pheno")
        return self._transform(Y)

    def working_response(self, Y: np.ndarray) -> np.ndarray:
        """Response regressed on __call__(pos); Y is already transformed."""
        return Y

    @abstractmethod
    def full(self, pos: int) -> np.ndarray:
        """Transformed full design at a position, not residualised."""

    def __call__(self, pos: int) -> np.ndarray:
        return self.full(pos)


class AdditiveDesign(PositionDesign):
    """Full model [covar | P[:, :, pos]] fitted through residualisation."""

    def __init__(self, covar, probs, weights=None, rotation=None, tol=DEFAULT_TOL):
        super().__init__(covar, probs, weights, rotation, tol)
        self._probs_t = None
        self._probs_resid = None

    def _transformed_probs(self) -> np.ndarray:
        if self._probs_t is None:
            self._probs_t = self._transform(self.probs)
        return self._probs_t

    def working_response(self, Y: np.ndarray) -> np.ndarray:
        return calc_resid_linreg(self._covar_t, Y, self.tol)

    def full(self, pos: int) -> np.ndarray:
        return np.hstack([self._covar_t, self._transformed_probs()[:, :, pos]])

    def __call__(self, pos: int) -> np.ndarray:
        if self._probs_resid is None:
            probs_t = self._transformed_probs()
            resid = calc_resid_linreg_3d(self._covar_t, probs_t, self.tol)
            # Columns the null design explains fully are set to exactly zero.
            scale = np.sqrt(np.sum(probs_t * probs_t, axis=0))
            explained = np.sqrt(np.sum(resid * resid, axis=0)) <= _EXPLAINED_RTOL * scale
            resid[:, explained] = 0.0
            self._probs_resid = resid
        return self._probs_resid[:, :, pos]


class IntcovarHighmemDesign(AdditiveDesign):
    """Interactive covariates with the expanded probability array held in memory."""

    def __init__(self, covar, probs, intcovar, weights=None, rotation=None, tol=DEFAULT_TOL):
        super().__init__(covar, expand_genoprobs_intcovar(probs, intcovar), weights, rotation, tol)


class IntcovarLowmemDesign(PositionDesign):
    """Interactive covariates, design built and fitted one position at a time."""

    def __init__(self, covar, probs, intcovar, weights=None, rotation=None, tol=DEFAULT_TOL):
        super().__init__(covar, probs, weights, rotation, tol)
        self.intcovar = _as_design(intcovar)
        if self.intcovar.shape[0] != self.n_individuals:
            raise InvalidDimensionError(f"intcovar must have {self.n_individuals} rows")

    def full(self, pos: int) -> np.ndarray:
        return self._transform(formX_intcovar(self.probs, self.covar, self.intcovar, pos))


def scan_rss(design: PositionDesign, pheno: np.ndarray,
             tol: float = DEFAULT_TOL) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Null and per-position residual sums of squares.

    Returns:
        (rss0 of shape (traits,), rss of shape (positions, traits),
         total sum of squares of the transformed response, shape (traits,))
    """
    Y = design.response(pheno)
    rss0 = calc_mvrss_qr(design.null_design(), Y, tol)
    Yw = design.working_response(Y)
    rss = np.empty((design.n_positions, Y.shape[1]))
    for pos in range(design.n_positions):
        rss[pos] = calc_mvrss_qr(design(pos), Yw, tol)
    return rss0, rss, np.sum(Y * Y, axis=0)
