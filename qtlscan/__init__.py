"""
qtlscan: genome scans for quantitative trait loci

Haley-Knott regression and linear mixed model LOD scans over genotype
probabilities, with interactive covariates, weights, LOCO kinship and
(stratified) permutation tests.
"""

__version__ = "0.1.0"

from .matrix.kinship_loco import QTLSCAN_Kinship, LocoKinship
from .pipelines.scan1 import QTLSCAN_Scan1, QTLSCAN_Scan1Perm
from .utils.data_types import GenotypeProbs, KinshipMatrix, ScanResult, PermutationResult

__all__ = [
    'QTLSCAN_Kinship',
    'QTLSCAN_Scan1',
    'QTLSCAN_Scan1Perm',
    'LocoKinship',
    'GenotypeProbs',
    'KinshipMatrix',
    'ScanResult',
    'PermutationResult',
]
