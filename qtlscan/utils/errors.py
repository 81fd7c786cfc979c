"""
Exception and warning types raised by the scan engine
"""

from typing import Any, Dict, Optional

import numpy as np


class InvalidDimensionError(ValueError):
    """Row/column counts of two inputs do not agree."""


class NumericDegeneracyError(np.linalg.LinAlgError):
    """A factorisation that requires a positive definite matrix did not get one.

    Raised by the Cholesky regression path and by log-determinant helpers.
    Callers that can tolerate rank deficiency should use the QR path instead.
    """


class RankDeficiencyWarning(RuntimeWarning):
    """Dependent covariate columns were dropped before scanning."""


class OptimizationNonConvergenceWarning(RuntimeWarning):
    """The heritability search did not converge and boundary values were used."""


class ScanUnitError(RuntimeError):
    """One or more units of parallel work (chromosomes, permutation groups) failed.

    Attributes:
        failures: Mapping of unit label to error message
        partial: Result assembled from the units that succeeded
    """

    def __init__(self, failures: Dict[str, str], partial: Optional[Any] = None):
        self.failures = dict(failures)
        self.partial = partial
        labels = ", ".join(str(k) for k in self.failures)
        super().__init__(f"{len(self.failures)} scan unit(s) failed: {labels}")
