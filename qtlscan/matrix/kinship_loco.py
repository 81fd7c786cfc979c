"""
Kinship from genotype probabilities, overall and leave-one-chromosome-out.

Kinship between individuals i and j is the proportion of shared genotype
probability, averaged over positions:

    K_ij = mean over positions of sum_g p_ig * p_jg

Each chromosome's raw sum over its positions is kept so that any LOCO matrix
is (total - chrom) / (n_pos_total - n_pos_chrom) without rescanning.
"""

import multiprocessing
import warnings
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from .eigen import eigen_decomp
from ..utils.data_types import GenotypeProbs, KinshipMatrix, as_probs_array
from ..utils.errors import InvalidDimensionError


class LocoKinship:
    """Container for LOCO kinship computations and cached eigendecompositions."""

    def __init__(self,
                 total_raw: np.ndarray,
                 total_npos: int,
                 chrom_raw: Dict[str, np.ndarray],
                 chrom_npos: Dict[str, int],
                 chrom_order: List[str],
                 ind_ids: Optional[np.ndarray] = None):
        self._total_raw = total_raw
        self._total_npos = int(total_npos)
        self._chrom_raw = chrom_raw
        self._chrom_npos = chrom_npos
        self._chrom_order = list(chrom_order)
        self.ind_ids = ind_ids

        self._loco_cache: Dict[str, KinshipMatrix] = {}
        self._eigen_cache: Dict[str, Dict[str, np.ndarray]] = {}
        self._full_cache: Optional[KinshipMatrix] = None
        self._full_eigen: Optional[Dict[str, np.ndarray]] = None

    @property
    def chromosomes(self) -> List[str]:
        """Chromosome labels in the order they were given."""
        return list(self._chrom_order)

    @property
    def n_individuals(self) -> int:
        return self._total_raw.shape[0]

    def _normalize(self, raw: np.ndarray, n_pos: int, label: str) -> KinshipMatrix:
        if n_pos <= 0:
            raise ValueError(f"No positions left to compute the {label} kinship matrix")
        kin = (raw + raw.T) / (2.0 * n_pos)
        return KinshipMatrix(kin, ids=self.ind_ids)

    def get_full(self) -> KinshipMatrix:
        """Kinship over all chromosomes."""
        if self._full_cache is None:
            self._full_cache = self._normalize(self._total_raw, self._total_npos, "full")
        return self._full_cache

    def get_loco(self, chrom: Union[str, int]) -> KinshipMatrix:
        """Kinship from every chromosome except `chrom`."""
        chrom_key = str(chrom)
        if chrom_key in self._loco_cache:
            return self._loco_cache[chrom_key]
        if chrom_key not in self._chrom_raw:
            raise KeyError(f"Chromosome {chrom_key} not found in LOCO kinship")

        raw_loco = self._total_raw - self._chrom_raw[chrom_key]
        npos_loco = self._total_npos - self._chrom_npos[chrom_key]
        kin = self._normalize(raw_loco, npos_loco, f"loco:{chrom_key}")
        self._loco_cache[chrom_key] = kin
        return kin

    def get_eigen(self, chrom: Union[str, int]) -> Dict[str, np.ndarray]:
        """Cached eigendecomposition of the LOCO kinship matrix for `chrom`."""
        chrom_key = str(chrom)
        if chrom_key not in self._eigen_cache:
            self._eigen_cache[chrom_key] = eigen_decomp(self.get_loco(chrom_key))
        return self._eigen_cache[chrom_key]

    def get_full_eigen(self) -> Dict[str, np.ndarray]:
        if self._full_eigen is None:
            self._full_eigen = eigen_decomp(self.get_full())
        return self._full_eigen


def _compute_chrom_kinship(chrom: str, probs: np.ndarray) -> Tuple[str, np.ndarray, int]:
    """Raw shared-probability sum for a single chromosome.

    Returns:
        Tuple of (chrom, raw_kinship, n_positions)
    """
    n_ind, n_gen, n_pos = probs.shape
    # (individuals, genotypes · positions): one product sums over both
    flat = probs.reshape(n_ind, n_gen * n_pos)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            raw = flat @ flat.T
    return chrom, raw, n_pos


def QTLSCAN_Kinship(genoprobs: Mapping[str, Union[GenotypeProbs, np.ndarray]],
                    cores: int = 1,
                    verbose: bool = True) -> LocoKinship:
    """Compute overall and LOCO kinship from genotype probabilities.

    Args:
        genoprobs: Mapping chromosome -> probabilities (n × k × m)
        cores: Number of CPU cores for parallel chromosome processing (0 = all)
        verbose: Print progress information

    Returns:
        LocoKinship object with total and per-chromosome kinship data
    """
    if len(genoprobs) == 0:
        raise ValueError("genoprobs must contain at least one chromosome")
    chrom_order = [str(c) for c in genoprobs.keys()]
    arrays = {str(c): as_probs_array(p) for c, p in genoprobs.items()}
    n_individuals = {a.shape[0] for a in arrays.values()}
    if len(n_individuals) != 1:
        raise InvalidDimensionError("All chromosomes must have the same individuals")
    n_ind = n_individuals.pop()

    ind_ids = None
    for p in genoprobs.values():
        if isinstance(p, GenotypeProbs) and p.ind_ids is not None:
            ind_ids = p.ind_ids
            break

    n_chroms = len(chrom_order)
    if verbose:
        n_pos = sum(a.shape[2] for a in arrays.values())
        print(f"Calculating kinship for {n_ind} individuals, {n_pos} positions")
        print(f"Chromosomes: {n_chroms}")

    if cores == 0:
        cores = multiprocessing.cpu_count()

    use_parallel = cores > 1 and n_chroms > 1
    if use_parallel:
        if verbose:
            print(f"Using parallel processing with {min(cores, n_chroms)} workers")
        results = Parallel(n_jobs=min(cores, n_chroms), backend='loky')(
            delayed(_compute_chrom_kinship)(chrom, arrays[chrom]) for chrom in chrom_order
        )
    else:
        results = []
        for chrom in chrom_order:
            if verbose:
                print(f"Processing chromosome {chrom} ({arrays[chrom].shape[2]} positions)")
            results.append(_compute_chrom_kinship(chrom, arrays[chrom]))

    raw_by_chrom: Dict[str, np.ndarray] = {}
    npos_by_chrom: Dict[str, int] = {}
    raw_total = np.zeros((n_ind, n_ind))
    npos_total = 0
    for chrom, raw, n_pos in results:
        raw_by_chrom[chrom] = (raw + raw.T) / 2.0
        npos_by_chrom[chrom] = n_pos
        raw_total += raw_by_chrom[chrom]
        npos_total += n_pos

    return LocoKinship(
        total_raw=raw_total,
        total_npos=npos_total,
        chrom_raw=raw_by_chrom,
        chrom_npos=npos_by_chrom,
        chrom_order=chrom_order,
        ind_ids=ind_ids,
    )
