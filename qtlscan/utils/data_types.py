"""
Core data structures for the qtlscan package
"""

import numpy as np
import pandas as pd
from typing import Optional, Union, Tuple, Dict, Sequence, List
from pathlib import Path


def _readonly_view(arr: np.ndarray) -> np.ndarray:
    """Return a non-writeable view; the caller's array keeps its own flags."""
    view = arr.view()
    view.flags.writeable = False
    return view


class GenotypeProbs:
    """Genotype probabilities for one chromosome

    Layout is individuals × genotypes × positions. Probabilities for an
    individual at a position are expected to sum to 1; this is not checked.

    The wrapped array is exposed through a read-only view so the same buffer
    can be shared by every worker without copies. A float64 input is never
    copied.
    """

    def __init__(self, data: np.ndarray,
                 ind_ids: Optional[Sequence] = None,
                 genotype_names: Optional[Sequence[str]] = None,
                 position_names: Optional[Sequence[str]] = None):
        if isinstance(data, GenotypeProbs):
            data = data._data
        arr = np.asarray(data, dtype=np.float64)
        if arr.ndim != 3:
            raise ValueError("Genotype probabilities must be a 3D array (individuals × genotypes × positions)")
        self._data = _readonly_view(arr)

        n_ind, n_gen, n_pos = arr.shape
        self.ind_ids = None if ind_ids is None else np.asarray(ind_ids)
        if self.ind_ids is not None and len(self.ind_ids) != n_ind:
            raise ValueError("ind_ids must have one entry per individual")
        self.genotype_names = None if genotype_names is None else list(genotype_names)
        if self.genotype_names is not None and len(self.genotype_names) != n_gen:
            raise ValueError("genotype_names must have one entry per genotype column")
        if position_names is None:
            position_names = [f"pos{i + 1}" for i in range(n_pos)]
        self.position_names = list(position_names)
        if len(self.position_names) != n_pos:
            raise ValueError("position_names must have one entry per position")

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Array shape (n_individuals, n_genotypes, n_positions)"""
        return self._data.shape

    @property
    def n_individuals(self) -> int:
        return self.shape[0]

    @property
    def n_genotypes(self) -> int:
        return self.shape[1]

    @property
    def n_positions(self) -> int:
        return self.shape[2]

    def __getitem__(self, key):
        """Support array indexing"""
        return self._data[key]

    def get_position(self, pos: int) -> np.ndarray:
        """Probabilities at one position (n_individuals × n_genotypes)"""
        return self._data[:, :, pos]

    def to_numpy(self) -> np.ndarray:
        """Read-only view of the underlying array"""
        return self._data


def as_probs_array(genoprobs: Union[GenotypeProbs, np.ndarray]) -> np.ndarray:
    """Return a float64 3D array for either a GenotypeProbs or a plain array."""
    if isinstance(genoprobs, GenotypeProbs):
        return genoprobs.to_numpy()
    arr = np.asarray(genoprobs, dtype=np.float64)
    if arr.ndim != 3:
        raise ValueError("Genotype probabilities must be a 3D array (individuals × genotypes × positions)")
    return arr


class KinshipMatrix:
    """Kinship matrix with validation and properties

    Must be a symmetric matrix; rows and columns follow the same individual
    order as phenotypes and genotype probabilities.
    """

    def __init__(self, data: Union[np.ndarray, str, Path], ids: Optional[Sequence] = None):
        if isinstance(data, (str, Path)):
            df = pd.read_csv(data, header=0, index_col=0)
            self._data = df.values.astype(float)
            if ids is None:
                ids = df.index.to_numpy()
        elif isinstance(data, np.ndarray):
            self._data = np.array(data, dtype=np.float64, copy=True)
        else:
            raise ValueError("Data must be array or file path")

        if self._data.ndim != 2:
            raise ValueError("Kinship matrix must be 2D")
        if self._data.shape[0] != self._data.shape[1]:
            raise ValueError("Kinship matrix must be square")
        if not np.allclose(self._data, self._data.T, atol=1e-10):
            raise ValueError("Kinship matrix must be symmetric")

        self.n = self._data.shape[0]
        self.ids = None if ids is None else np.asarray(ids)
        if self.ids is not None and len(self.ids) != self.n:
            raise ValueError("ids must have one entry per row of the kinship matrix")

    @property
    def shape(self) -> Tuple[int, int]:
        """Matrix shape"""
        return self._data.shape

    def __getitem__(self, key):
        """Support array indexing"""
        return self._data[key]

    def to_numpy(self) -> np.ndarray:
        """Convert to numpy array"""
        return self._data.copy()

    def eigendecomposition(self) -> Dict[str, np.ndarray]:
        """Eigendecomposition in the layout consumed by the LMM scans"""
        from ..matrix.eigen import eigen_decomp
        return eigen_decomp(self._data)


class ScanResult:
    """Genome scan results: LOD scores, positions × traits

    Created fresh by every scan call; the LOD array is read-only.
    """

    def __init__(self, lod: np.ndarray,
                 chromosomes: Sequence[str],
                 positions: Sequence[str],
                 traits: Sequence[str],
                 hsq: Optional[pd.DataFrame] = None,
                 failures: Optional[Dict[str, str]] = None):
        lod = np.array(lod, dtype=np.float64, copy=True)
        if lod.ndim == 1:
            lod = lod[:, np.newaxis]
        if not (lod.shape[0] == len(chromosomes) == len(positions)):
            raise ValueError("LOD rows, chromosomes and positions must have the same length")
        if lod.shape[1] != len(traits):
            raise ValueError("LOD columns must match the number of traits")
        lod.flags.writeable = False

        self.lod = lod
        self.chromosomes = np.asarray(chromosomes).astype(str)
        self.positions = list(positions)
        self.traits = list(traits)
        self.hsq = hsq
        self.failures: Dict[str, str] = dict(failures) if failures else {}

    @property
    def n_positions(self) -> int:
        return self.lod.shape[0]

    @property
    def n_traits(self) -> int:
        return self.lod.shape[1]

    def chromosome(self, chrom: str) -> np.ndarray:
        """LOD rows for a single chromosome"""
        return self.lod[self.chromosomes == str(chrom)]

    def max_lod(self) -> pd.Series:
        """Genome-wide maximum LOD per trait (NaN rows from failed units ignored)"""
        with np.errstate(invalid="ignore"):
            if self.n_positions == 0 or np.all(np.isnan(self.lod)):
                values = np.full(self.n_traits, np.nan)
            else:
                values = np.nanmax(self.lod, axis=0)
        return pd.Series(values, index=self.traits, name="max_lod")

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to pandas DataFrame with chromosome/position columns"""
        df = pd.DataFrame(self.lod, columns=self.traits)
        df.insert(0, "Pos", self.positions)
        df.insert(0, "Chr", self.chromosomes)
        return df


class PermutationResult:
    """Genome-wide maximum LOD scores from permuted phenotypes

    Attributes:
        max_lod: DataFrame (n_perm × traits); rows of failed replicates are NaN
        permutations: Index matrix (n_individuals × n_perm) used to reorder phenotype rows
        failures: Mapping of replicate-group label to error message
    """

    def __init__(self, max_lod: pd.DataFrame,
                 permutations: np.ndarray,
                 failures: Optional[Dict[str, str]] = None):
        self.max_lod = max_lod
        self.permutations = permutations
        self.failures: Dict[str, str] = dict(failures) if failures else {}

    @property
    def n_perm(self) -> int:
        return self.max_lod.shape[0]

    def completed(self) -> pd.DataFrame:
        """Replicates that finished for every trait"""
        return self.max_lod.dropna(how="any")

    def failed_replicates(self) -> List[int]:
        """Indices of replicates that did not produce a result"""
        mask = self.max_lod.isna().any(axis=1).to_numpy()
        return np.where(mask)[0].tolist()
