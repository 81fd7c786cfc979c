"""
Genome-wide scan drivers.

`QTLSCAN_Scan1` scans every chromosome (Haley-Knott, or LMM when a kinship is
given) and `QTLSCAN_Scan1Perm` repeats the whole scan on permuted phenotypes
to give genome-wide maximum LOD scores. Chromosomes and permutation groups are
independent units of work dispatched through joblib; a failing unit is
recorded and reported without touching the results of the others.
"""

import multiprocessing
import time
import warnings
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..association.linreg import DEFAULT_TOL, find_lin_indep_cols
from ..association.permutation import make_strata, permute_ivector, permute_ivector_stratified
from ..association.scan_hk import (
    scan_hk_onechr,
    scan_hk_onechr_intcovar_highmem,
    scan_hk_onechr_intcovar_lowmem,
    scan_hk_onechr_intcovar_weighted_highmem,
    scan_hk_onechr_intcovar_weighted_lowmem,
    scan_hk_onechr_weighted,
)
from ..association.scan_lmm import (
    scan_lmm_onechr,
    scan_lmm_onechr_intcovar_highmem,
    scan_lmm_onechr_intcovar_lowmem,
)
from ..matrix.eigen import eigen_decomp
from ..matrix.kinship_loco import LocoKinship
from ..utils.data_types import (
    GenotypeProbs,
    KinshipMatrix,
    PermutationResult,
    ScanResult,
    as_probs_array,
)
from ..utils.errors import InvalidDimensionError, RankDeficiencyWarning, ScanUnitError

INTCOVAR_METHODS = ("highmem", "lowmem")


def split_into_groups(labels: Sequence, n_workers: int) -> List[np.ndarray]:
    """Group indices by label, then rebalance for `n_workers` workers.

    Indices sharing a label start in one group (in order of first appearance).
    While there are fewer groups than workers, the largest group is split
    into its even- and odd-position halves. Stops early once every group has
    a single member.
    """
    labels = np.asarray(labels)
    codes, _ = pd.factorize(pd.Series(labels), sort=False)
    groups = [np.flatnonzero(codes == c) for c in range(codes.max() + 1)] if codes.size else []

    while groups and len(groups) < n_workers:
        sizes = [g.size for g in groups]
        largest = int(np.argmax(sizes))
        if sizes[largest] <= 1:
            break
        group = groups.pop(largest)
        groups.insert(largest, group[1::2])
        groups.insert(largest, group[0::2])
    return groups


def check_individual_alignment(**id_sequences) -> Optional[np.ndarray]:
    """Raise InvalidDimensionError unless every labelled input lists the same
    individuals in the same order. Inputs given as None are skipped.

    Returns:
        The shared individual IDs, or None when no input carried IDs
    """
    reference_name, reference = None, None
    for name, ids in id_sequences.items():
        if ids is None:
            continue
        ids = np.asarray(ids).astype(str)
        if reference is None:
            reference_name, reference = name, ids
            continue
        if ids.shape != reference.shape:
            raise InvalidDimensionError(
                f"{name} has {ids.shape[0]} individuals but {reference_name} has {reference.shape[0]}"
            )
        if not np.array_equal(ids, reference):
            first = int(np.flatnonzero(ids != reference)[0])
            raise InvalidDimensionError(
                f"Individual order of {name} differs from {reference_name} "
                f"(row {first}: {ids[first]!r} vs {reference[first]!r})"
            )
    return reference


# ---------------------------------------------------------------------------
# Input normalisation
# ---------------------------------------------------------------------------

def _resolve_cores(cores: int) -> int:
    if cores == 0:
        return multiprocessing.cpu_count()
    return max(int(cores), 1)


def _labelled_matrix(mat, name: str):
    """Return (2D float array or None, names, individual IDs or None)."""
    if mat is None:
        return None, [], None
    if isinstance(mat, pd.Series):
        mat = mat.to_frame()
    if isinstance(mat, pd.DataFrame):
        return mat.to_numpy(dtype=np.float64), [str(c) for c in mat.columns], mat.index.to_numpy()
    arr = np.asarray(mat, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[:, np.newaxis]
    if arr.ndim != 2:
        raise InvalidDimensionError(f"{name} must be a vector or a 2D matrix")
    return arr, [f"{name}{i + 1}" for i in range(arr.shape[1])], None


def _prepare_genoprobs(genoprobs: Mapping) -> Tuple[List[str], Dict[str, np.ndarray],
                                                   Dict[str, List[str]], Dict[str, Optional[np.ndarray]]]:
    if len(genoprobs) == 0:
        raise ValueError("genoprobs must contain at least one chromosome")
    chroms, arrays, pos_names, ids = [], {}, {}, {}
    for chrom, probs in genoprobs.items():
        chrom = str(chrom)
        chroms.append(chrom)
        arrays[chrom] = as_probs_array(probs)
        if isinstance(probs, GenotypeProbs):
            pos_names[chrom] = list(probs.position_names)
            ids[chrom] = probs.ind_ids
        else:
            pos_names[chrom] = [f"pos{i + 1}" for i in range(arrays[chrom].shape[2])]
            ids[chrom] = None
    n_ind = {a.shape[0] for a in arrays.values()}
    if len(n_ind) != 1:
        raise InvalidDimensionError("All chromosomes must have the same number of individuals")
    return chroms, arrays, pos_names, ids


def _drop_dependent_covariates(addcovar: Optional[np.ndarray], names: List[str],
                               tol: float) -> Optional[np.ndarray]:
    if addcovar is None:
        return None
    intercept = np.ones((addcovar.shape[0], 1))
    # Greedy left to right so the intercept and earlier columns always win.
    keep: List[int] = []
    for j in range(addcovar.shape[1]):
        trial = np.hstack([intercept, addcovar[:, keep + [j]]])
        if find_lin_indep_cols(trial, tol).size == len(keep) + 2:
            keep.append(j)
    if len(keep) < addcovar.shape[1]:
        dropped = [names[i] for i in range(addcovar.shape[1]) if i not in keep]
        warnings.warn(
            f"Dropping linearly dependent covariate column(s): {', '.join(dropped)}",
            RankDeficiencyWarning,
        )
    if not keep:
        return None
    return addcovar[:, keep]


def _eigen_by_chrom(kinship, chroms: List[str]) -> Tuple[Optional[Dict[str, Dict[str, np.ndarray]]],
                                                          Optional[np.ndarray]]:
    """One eigendecomposition per chromosome plus kinship individual IDs, if any."""
    if kinship is None:
        return None, None
    if isinstance(kinship, LocoKinship):
        return {c: kinship.get_eigen(c) for c in chroms}, kinship.ind_ids
    if isinstance(kinship, dict) and "eigenvals" in kinship:
        return {c: kinship for c in chroms}, None
    if isinstance(kinship, dict):
        result, ids = {}, None
        for c in chroms:
            if c not in kinship:
                raise KeyError(f"No kinship supplied for chromosome {c}")
            k = kinship[c]
            if isinstance(k, KinshipMatrix) and k.ids is not None:
                ids = k.ids
            result[c] = k if isinstance(k, dict) else eigen_decomp(k)
        return result, ids
    ids = kinship.ids if isinstance(kinship, KinshipMatrix) else None
    eigen = eigen_decomp(kinship)
    return {c: eigen for c in chroms}, ids


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------

def _run_chromosome_scan(probs: np.ndarray, pheno: np.ndarray,
                         addcovar: Optional[np.ndarray], intcovar: Optional[np.ndarray],
                         weights: Optional[np.ndarray], eigenK: Optional[Dict[str, np.ndarray]],
                         reml: bool, refit_hsq: bool, intcovar_method: str,
                         tol: float) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Pick the scan variant for one chromosome; returns (lod, hsq or None)."""
    highmem = intcovar_method == "highmem"
    if eigenK is not None:
        if intcovar is None:
            scan = scan_lmm_onechr
            args = (probs, pheno, addcovar, eigenK)
        else:
            scan = scan_lmm_onechr_intcovar_highmem if highmem else scan_lmm_onechr_intcovar_lowmem
            args = (probs, pheno, addcovar, intcovar, eigenK)
        return scan(*args, reml=reml, tol=tol, refit_hsq=refit_hsq, return_hsq=True)

    if intcovar is None:
        if weights is None:
            return scan_hk_onechr(probs, pheno, addcovar, tol), None
        return scan_hk_onechr_weighted(probs, pheno, addcovar, weights, tol), None
    if weights is None:
        scan = scan_hk_onechr_intcovar_highmem if highmem else scan_hk_onechr_intcovar_lowmem
        return scan(probs, pheno, addcovar, intcovar, tol), None
    scan = scan_hk_onechr_intcovar_weighted_highmem if highmem else scan_hk_onechr_intcovar_weighted_lowmem
    return scan(probs, pheno, addcovar, intcovar, weights, tol), None


def _scan_one_chromosome(chrom, probs, pheno, addcovar, intcovar, weights, eigenK,
                         reml, refit_hsq, intcovar_method, tol):
    """Worker function to scan a single chromosome in a separate process."""
    try:
        lod, hsq = _run_chromosome_scan(probs, pheno, addcovar, intcovar, weights, eigenK,
                                        reml, refit_hsq, intcovar_method, tol)
        return (chrom, lod, hsq, None)
    except Exception as e:
        return (chrom, None, None, f"{type(e).__name__}: {e}")


def _permutation_group(label, replicates, perms, chroms, arrays, pheno, addcovar, intcovar,
                       weights, eigen, reml, intcovar_method, tol):
    """Worker function: genome-wide maximum LOD for a group of replicates."""
    try:
        max_lod = np.full((len(replicates), pheno.shape[1]), -np.inf)
        for row, rep in enumerate(replicates):
            pheno_perm = pheno[perms[:, rep]]
            for chrom in chroms:
                lod, _ = _run_chromosome_scan(
                    arrays[chrom], pheno_perm, addcovar, intcovar, weights,
                    None if eigen is None else eigen[chrom],
                    reml, False, intcovar_method, tol,
                )
                if lod.shape[0] > 0:
                    max_lod[row] = np.maximum(max_lod[row], lod.max(axis=0))
        return (label, replicates, max_lod, None)
    except Exception as e:
        return (label, replicates, None, f"{type(e).__name__}: {e}")


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------

def _prepare_inputs(genoprobs, pheno, kinship, addcovar, intcovar, weights,
                    intcovar_method, tol):
    if intcovar_method not in INTCOVAR_METHODS:
        raise ValueError(f"intcovar_method must be one of {INTCOVAR_METHODS}")
    if kinship is not None and weights is not None:
        raise ValueError("weights are not supported together with a kinship matrix")

    chroms, arrays, pos_names, probs_ids = _prepare_genoprobs(genoprobs)
    n = next(iter(arrays.values())).shape[0]

    pheno_arr, traits, pheno_ids = _labelled_matrix(pheno, "trait")
    add_arr, add_names, add_ids = _labelled_matrix(addcovar, "addcovar")
    int_arr, _, int_ids = _labelled_matrix(intcovar, "intcovar")
    weights_ids = weights.index.to_numpy() if isinstance(weights, pd.Series) else None
    weights_arr = None if weights is None else np.asarray(weights, dtype=np.float64)

    for name, arr in (("pheno", pheno_arr), ("addcovar", add_arr), ("intcovar", int_arr)):
        if arr is not None and arr.shape[0] != n:
            raise InvalidDimensionError(
                f"{name} has {arr.shape[0]} rows but genotype probabilities have {n} individuals"
            )
    if weights_arr is not None and weights_arr.shape != (n,):
        raise InvalidDimensionError(f"weights must have length {n}")

    eigen, kinship_ids = _eigen_by_chrom(kinship, chroms)
    check_individual_alignment(
        pheno=pheno_ids, addcovar=add_ids, intcovar=int_ids, weights=weights_ids,
        kinship=kinship_ids, **{f"genoprobs[{c}]": probs_ids[c] for c in chroms},
    )

    add_arr = _drop_dependent_covariates(add_arr, add_names, tol)
    return chroms, arrays, pos_names, pheno_arr, traits, add_arr, int_arr, weights_arr, eigen


def QTLSCAN_Scan1(genoprobs: Mapping[str, Union[GenotypeProbs, np.ndarray]],
                  pheno: Union[np.ndarray, pd.DataFrame],
                  kinship=None,
                  addcovar: Optional[Union[np.ndarray, pd.DataFrame]] = None,
                  intcovar: Optional[Union[np.ndarray, pd.DataFrame]] = None,
                  weights: Optional[Union[np.ndarray, pd.Series]] = None,
                  reml: bool = True,
                  refit_hsq: bool = False,
                  intcovar_method: str = "highmem",
                  tol: float = DEFAULT_TOL,
                  cores: int = 1,
                  raise_on_failure: bool = True,
                  verbose: bool = True) -> ScanResult:
    """Genome scan over all chromosomes.

    Haley-Knott regression by default; a linear mixed model when `kinship` is
    given (a LocoKinship gives each chromosome its LOCO matrix).

    Args:
        genoprobs: Mapping chromosome -> probabilities (n × k × m)
        pheno: Phenotypes (n,) or (n × t); a DataFrame supplies trait names and IDs
        kinship: KinshipMatrix, square array, eigen dict, LocoKinship, or a
            mapping chromosome -> any of the first three
        addcovar: Additive covariates (n × c), no intercept column
        intcovar: Interactive covariates (n × d); also used additively
        weights: Per-individual weights (HK only)
        reml: Fit the null heritability by REML (LMM only)
        refit_hsq: Re-estimate heritability at every position (LMM only)
        intcovar_method: "highmem" (expand once) or "lowmem" (per position)
        tol: Rank tolerance
        cores: Number of CPU cores for parallel chromosome processing (0 = all)
        raise_on_failure: Raise ScanUnitError if any chromosome failed
        verbose: Print progress information

    Returns:
        ScanResult with one row per position; rows of failed chromosomes are NaN

    Raises:
        InvalidDimensionError: Inputs disagree on the number or order of individuals
        ScanUnitError: One or more chromosomes failed and `raise_on_failure` is set
    """
    start_time = time.time()
    (chroms, arrays, pos_names, pheno_arr, traits, add_arr, int_arr,
     weights_arr, eigen) = _prepare_inputs(genoprobs, pheno, kinship, addcovar, intcovar,
                                           weights, intcovar_method, tol)
    n_chroms = len(chroms)
    cores = _resolve_cores(cores)

    if verbose:
        print("=" * 60)
        print("LMM genome scan" if eigen is not None else "Haley-Knott genome scan")
        print("=" * 60)
        print(f"Individuals: {pheno_arr.shape[0]}, traits: {len(traits)}, chromosomes: {n_chroms}")

    worker_args = [
        (chrom, arrays[chrom], pheno_arr, add_arr, int_arr, weights_arr,
         None if eigen is None else eigen[chrom], reml, refit_hsq, intcovar_method, tol)
        for chrom in chroms
    ]

    use_parallel = cores > 1 and n_chroms > 1
    if use_parallel:
        if verbose:
            print(f"Using parallel processing with {min(cores, n_chroms)} workers")
        # Use 'loky' for CPU-bound work (releases GIL in numpy/scipy)
        results = Parallel(n_jobs=min(cores, n_chroms), backend='loky')(
            delayed(_scan_one_chromosome)(*args) for args in worker_args
        )
    else:
        results = []
        for args in worker_args:
            if verbose:
                print(f"Processing chromosome {args[0]} ({args[1].shape[2]} positions)")
            results.append(_scan_one_chromosome(*args))

    lod_blocks, chrom_labels, positions = [], [], []
    hsq_rows: Dict[str, np.ndarray] = {}
    failures: Dict[str, str] = {}
    for chrom, lod, hsq, error in results:
        n_pos = arrays[chrom].shape[2]
        if error is not None:
            failures[chrom] = error
            warnings.warn(f"Scan of chromosome {chrom} failed: {error}")
            lod = np.full((n_pos, len(traits)), np.nan)
        if hsq is not None:
            hsq_rows[chrom] = hsq
        lod_blocks.append(lod)
        chrom_labels.extend([chrom] * n_pos)
        positions.extend(pos_names[chrom])

    hsq_df = None
    if eigen is not None:
        hsq_df = pd.DataFrame(
            [hsq_rows.get(c, np.full(len(traits), np.nan)) for c in chroms],
            index=chroms, columns=traits,
        )
    lod_all = np.vstack(lod_blocks) if lod_blocks else np.zeros((0, len(traits)))
    result = ScanResult(lod_all, chrom_labels, positions, traits, hsq=hsq_df, failures=failures)

    if verbose:
        print(f"Positions scanned: {result.n_positions}")
        for trait, value in result.max_lod().items():
            print(f"Maximum LOD for {trait}: {value:.3f}")
        print(f"Elapsed: {time.time() - start_time:.2f}s")

    if failures and raise_on_failure:
        raise ScanUnitError(failures, partial=result)
    return result


def QTLSCAN_Scan1Perm(genoprobs: Mapping[str, Union[GenotypeProbs, np.ndarray]],
                      pheno: Union[np.ndarray, pd.DataFrame],
                      kinship=None,
                      addcovar: Optional[Union[np.ndarray, pd.DataFrame]] = None,
                      intcovar: Optional[Union[np.ndarray, pd.DataFrame]] = None,
                      weights: Optional[Union[np.ndarray, pd.Series]] = None,
                      reml: bool = True,
                      intcovar_method: str = "highmem",
                      n_perm: int = 1000,
                      perm_strata=None,
                      seed: Optional[int] = None,
                      tol: float = DEFAULT_TOL,
                      cores: int = 1,
                      raise_on_failure: bool = True,
                      verbose: bool = True) -> PermutationResult:
    """Permutation test: genome-wide maximum LOD for each permuted phenotype.

    Phenotype rows are permuted (within strata when `perm_strata` is given)
    while genotype probabilities, covariates and kinship stay fixed. Replicates
    are split into balanced groups, one unit of parallel work per group.

    Args:
        n_perm: Number of permutation replicates
        perm_strata: Blocking labels (one per individual); permutations stay within strata
        seed: Seed for numpy.random.default_rng
        Remaining arguments as for QTLSCAN_Scan1

    Returns:
        PermutationResult; rows of failed replicate groups are NaN

    Raises:
        ScanUnitError: One or more replicate groups failed and `raise_on_failure` is set
    """
    start_time = time.time()
    (chroms, arrays, _, pheno_arr, traits, add_arr, int_arr,
     weights_arr, eigen) = _prepare_inputs(genoprobs, pheno, kinship, addcovar, intcovar,
                                           weights, intcovar_method, tol)
    n = pheno_arr.shape[0]
    cores = _resolve_cores(cores)

    if perm_strata is None:
        perms = permute_ivector(n_perm, np.arange(n), seed=seed)
    else:
        if len(perm_strata) != n:
            raise InvalidDimensionError(f"perm_strata must have length {n}")
        codes, n_strata = make_strata(perm_strata)
        perms = permute_ivector_stratified(n_perm, np.arange(n), codes, n_strata, seed=seed)

    groups = split_into_groups(np.zeros(n_perm, dtype=int), cores)

    if verbose:
        print("=" * 60)
        print("Permutation test")
        print("=" * 60)
        strata_note = "" if perm_strata is None else f", {n_strata} strata"
        print(f"Replicates: {n_perm}{strata_note}, groups: {len(groups)}")

    worker_args = [
        (f"perm_group{i + 1}", group, perms, chroms, arrays, pheno_arr, add_arr, int_arr,
         weights_arr, eigen, reml, intcovar_method, tol)
        for i, group in enumerate(groups)
    ]

    use_parallel = cores > 1 and len(groups) > 1
    if use_parallel:
        if verbose:
            print(f"Using parallel processing with {min(cores, len(groups))} workers")
        results = Parallel(n_jobs=min(cores, len(groups)), backend='loky')(
            delayed(_permutation_group)(*args) for args in worker_args
        )
    else:
        results = [_permutation_group(*args) for args in worker_args]

    max_lod = np.full((n_perm, len(traits)), np.nan)
    failures: Dict[str, str] = {}
    for label, replicates, group_max, error in results:
        if error is not None:
            failures[label] = error
            warnings.warn(f"Permutation {label} failed: {error}")
            continue
        max_lod[replicates] = group_max

    result = PermutationResult(
        pd.DataFrame(max_lod, columns=traits), perms, failures=failures
    )

    if verbose:
        print(f"Replicates completed: {result.completed().shape[0]} of {n_perm}")
        print(f"Elapsed: {time.time() - start_time:.2f}s")

    if failures and raise_on_failure:
        raise ScanUnitError(failures, partial=result)
    return result
