"""
Design matrices with genotype × covariate interaction terms.

For k genotype columns and c interactive covariates the cross terms are
P[:, 1:] * ic_j for each covariate j. The first genotype column is the
reference: its interaction is spanned by the covariate main effect together
with the other cross terms, since probabilities sum to one.
"""

from typing import Optional

import numpy as np

from ..utils.errors import InvalidDimensionError


def _as_matrix(mat: Optional[np.ndarray], n: int, name: str) -> np.ndarray:
    if mat is None:
        return np.zeros((n, 0))
    mat = np.asarray(mat, dtype=np.float64)
    if mat.ndim == 1:
        mat = mat[:, np.newaxis]
    if mat.ndim != 2 or mat.shape[0] != n:
        raise InvalidDimensionError(f"{name} must have {n} rows")
    return mat


def _cross_terms(probs_pos: np.ndarray, intcovar: np.ndarray) -> np.ndarray:
    """[P[:,1:]*ic_1 | P[:,1:]*ic_2 | ...] for a single position (or a 3D block)."""
    nonref = probs_pos[:, 1:]
    blocks = []
    for j in range(intcovar.shape[1]):
        ic = intcovar[:, j].reshape((-1,) + (1,) * (nonref.ndim - 1))
        blocks.append(nonref * ic)
    if not blocks:
        return nonref[:, :0]
    return np.concatenate(blocks, axis=1)


def formX_intcovar(genoprobs: np.ndarray,
                   addcovar: Optional[np.ndarray],
                   intcovar: Optional[np.ndarray],
                   position: int) -> np.ndarray:
    """Design matrix for one position with interaction terms.

    Args:
        genoprobs: Genotype probabilities (n × k × m)
        addcovar: Additive covariates (n × a), may be None
        intcovar: Interactive covariates (n × c), may be None
        position: Position index into the last axis of genoprobs

    Returns:
        Matrix n × (a + k + (k-1)·c): [addcovar | P | cross terms]
    """
    genoprobs = np.asarray(genoprobs, dtype=np.float64)
    if genoprobs.ndim != 3:
        raise InvalidDimensionError("genoprobs must be 3D (individuals × genotypes × positions)")
    n, _, n_pos = genoprobs.shape
    if not 0 <= position < n_pos:
        raise IndexError(f"position {position} out of range for {n_pos} positions")
    addcovar = _as_matrix(addcovar, n, "addcovar")
    intcovar = _as_matrix(intcovar, n, "intcovar")

    probs_pos = genoprobs[:, :, position]
    return np.hstack([addcovar, probs_pos, _cross_terms(probs_pos, intcovar)])


def expand_genoprobs_intcovar(genoprobs: np.ndarray, intcovar: Optional[np.ndarray]) -> np.ndarray:
    """Expand genotype probabilities with interaction columns for every position.

    Same position count, k + (k-1)·c "genotype" columns laid out like the
    probability part of formX_intcovar.
    """
    genoprobs = np.asarray(genoprobs, dtype=np.float64)
    if genoprobs.ndim != 3:
        raise InvalidDimensionError("genoprobs must be 3D (individuals × genotypes × positions)")
    intcovar = _as_matrix(intcovar, genoprobs.shape[0], "intcovar")
    return np.concatenate([genoprobs, _cross_terms(genoprobs, intcovar)], axis=1)
