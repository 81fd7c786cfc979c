"""
Regression kernels, heritability search and single-chromosome scans
"""

from .scan_hk import scan_hk_onechr, scan_hk_onechr_nocovar, scan_hk_onechr_weighted
from .scan_lmm import scan_lmm_onechr

__all__ = ['scan_hk_onechr', 'scan_hk_onechr_nocovar', 'scan_hk_onechr_weighted', 'scan_lmm_onechr']
