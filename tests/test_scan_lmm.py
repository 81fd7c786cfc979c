import numpy as np
import pytest

from qtlscan.association.linreg import calc_rss_qr, find_lin_indep_cols
from qtlscan.association.lmm import calc_ll, fit_lmm
from qtlscan.association.scan_hk import (
    scan_hk_onechr,
    scan_hk_onechr_intcovar_highmem,
)
from qtlscan.association.scan_lmm import (
    lmm_weights,
    scan_lmm_onechr,
    scan_lmm_onechr_intcovar_highmem,
    scan_lmm_onechr_intcovar_lowmem,
)
from qtlscan.matrix.eigen import eigen_decomp
from qtlscan.matrix.kinship_loco import QTLSCAN_Kinship
from qtlscan.utils.errors import InvalidDimensionError, NumericDegeneracyError


def _make_lmm_scan_inputs(n: int = 40, m: int = 5, seed: int = 0):
    rng = np.random.default_rng(seed)
    probs_by_chrom = {
        c: np.transpose(rng.dirichlet(np.ones(3), size=(n, m)), (0, 2, 1)) for c in ("1", "2")
    }
    loco = QTLSCAN_Kinship(probs_by_chrom, verbose=False)
    eigen = loco.get_eigen("1")
    polygenic = eigen["eigenvecs"] @ (np.sqrt(eigen["eigenvals"]) * rng.normal(size=n))
    addcovar = rng.normal(size=(n, 1))
    intcovar = rng.integers(0, 2, size=(n, 1)).astype(float)
    probs = probs_by_chrom["1"]
    y = 1.5 * probs[:, 2, 1] + 0.3 * addcovar[:, 0] + 2.0 * polygenic + rng.normal(scale=0.5, size=n)
    return probs, y, addcovar, intcovar, eigen


def test_identity_kinship_lmm_equals_hk() -> None:
    probs, y, addcovar, _, _ = _make_lmm_scan_inputs()
    eigen = eigen_decomp(np.eye(y.shape[0]))

    lod, hsq = scan_lmm_onechr(probs, y, addcovar, eigen, return_hsq=True)

    assert hsq[0] == 0.0
    np.testing.assert_allclose(lod, scan_hk_onechr(probs, y, addcovar), rtol=1e-6, atol=1e-8)


def test_fixed_zero_hsq_equals_hk() -> None:
    probs, y, addcovar, _, eigen = _make_lmm_scan_inputs(seed=1)

    lod = scan_lmm_onechr(probs, y, addcovar, eigen, hsq=0.0)

    np.testing.assert_allclose(lod, scan_hk_onechr(probs, y, addcovar), rtol=1e-6, atol=1e-8)


def test_null_loglik_from_weighted_rss_matches_calc_ll() -> None:
    _, y, addcovar, _, eigen = _make_lmm_scan_inputs(seed=2)
    n = y.shape[0]
    U = eigen["eigenvecs"]
    X0 = np.column_stack([np.ones(n), addcovar])
    Uy, UX0 = U.T @ y, U.T @ X0

    fit = fit_lmm(eigen["eigenvals"], Uy, UX0, reml=True)
    w = lmm_weights(fit.hsq, eigen["eigenvals"])
    rss0 = calc_rss_qr(UX0 * w[:, None], Uy * w)

    loglik = -0.5 * n * np.log(rss0) + np.sum(np.log(w))

    assert loglik == pytest.approx(calc_ll(fit.hsq, eigen["eigenvals"], Uy, UX0, reml=False), rel=1e-9)


def test_lmm_lod_is_loglik_difference_at_null_hsq() -> None:
    probs, y, addcovar, _, eigen = _make_lmm_scan_inputs(seed=3)
    n = y.shape[0]
    U, vals = eigen["eigenvecs"], eigen["eigenvals"]
    X0 = np.column_stack([np.ones(n), addcovar])

    lod, hsq = scan_lmm_onechr(probs, y, addcovar, eigen, return_hsq=True)

    assert 0.0 <= hsq[0] <= 1.0
    ll0 = calc_ll(hsq[0], vals, U.T @ y, U.T @ X0, reml=False)
    for pos in range(probs.shape[2]):
        X1 = np.column_stack([X0, probs[:, :, pos]])
        X1 = X1[:, find_lin_indep_cols(X1)]
        ll1 = calc_ll(hsq[0], vals, U.T @ y, U.T @ X1, reml=False)
        assert lod[pos, 0] == pytest.approx((ll1 - ll0) / np.log(10), rel=1e-6, abs=1e-8)


def test_lmm_lod_non_negative_and_reproducible() -> None:
    probs, y, addcovar, _, eigen = _make_lmm_scan_inputs(seed=4)
    Y = np.column_stack([y, np.random.default_rng(40).normal(size=y.shape[0])])

    first = scan_lmm_onechr(probs, Y, addcovar, eigen)
    second = scan_lmm_onechr(probs, Y, addcovar, eigen)

    assert first.shape == (probs.shape[2], 2)
    assert np.all(first >= 0)
    np.testing.assert_array_equal(first, second)


def test_lmm_intcovar_highmem_and_lowmem_agree() -> None:
    probs, y, addcovar, intcovar, eigen = _make_lmm_scan_inputs(seed=5)

    high, hsq_high = scan_lmm_onechr_intcovar_highmem(probs, y, addcovar, intcovar, eigen,
                                                      return_hsq=True)
    low, hsq_low = scan_lmm_onechr_intcovar_lowmem(probs, y, addcovar, intcovar, eigen,
                                                   return_hsq=True)

    np.testing.assert_allclose(hsq_high, hsq_low)
    np.testing.assert_allclose(high, low, rtol=1e-6, atol=1e-8)


def test_lmm_intcovar_with_identity_kinship_equals_hk() -> None:
    probs, y, addcovar, intcovar, _ = _make_lmm_scan_inputs(seed=6)
    eigen = eigen_decomp(np.eye(y.shape[0]))

    lod = scan_lmm_onechr_intcovar_lowmem(probs, y, addcovar, intcovar, eigen)

    np.testing.assert_allclose(
        lod, scan_hk_onechr_intcovar_highmem(probs, y, addcovar, intcovar), rtol=1e-6, atol=1e-8
    )


def test_refit_hsq_gives_finite_non_negative_lod() -> None:
    probs, y, addcovar, _, eigen = _make_lmm_scan_inputs(m=3, seed=7)

    lod, hsq = scan_lmm_onechr(probs, y, addcovar, eigen, refit_hsq=True, return_hsq=True)

    assert lod.shape == (3, 1)
    assert np.all(np.isfinite(lod))
    assert np.all(lod >= 0)
    assert 0.0 <= hsq[0] <= 1.0


def test_refit_hsq_with_identity_kinship_equals_hk() -> None:
    probs, y, addcovar, _, _ = _make_lmm_scan_inputs(m=3, seed=8)
    eigen = eigen_decomp(np.eye(y.shape[0]))

    lod = scan_lmm_onechr(probs, y, addcovar, eigen, refit_hsq=True)

    np.testing.assert_allclose(lod, scan_hk_onechr(probs, y, addcovar), rtol=1e-6, atol=1e-8)


def test_lmm_weights_reject_nonpositive_variance() -> None:
    with pytest.raises(NumericDegeneracyError):
        lmm_weights(1.0, np.array([1.0, 0.0]))
    np.testing.assert_allclose(lmm_weights(0.5, np.array([1.0, 3.0])), [1.0, 0.5])


def test_lmm_rejects_mismatched_eigendecomposition() -> None:
    probs, y, addcovar, _, _ = _make_lmm_scan_inputs()
    eigen = eigen_decomp(np.eye(y.shape[0] - 1))

    with pytest.raises(InvalidDimensionError):
        scan_lmm_onechr(probs, y, addcovar, eigen)


def test_phenotype_explained_by_null_model_gives_zero_lmm_lod() -> None:
    probs, _, addcovar, intcovar, eigen = _make_lmm_scan_inputs(n=20, m=3, seed=9)
    constant = np.full(20, 3.0)
    linear = 3.0 + 2.0 * addcovar[:, 0]

    assert np.all(scan_lmm_onechr(probs, constant, None, eigen) == 0.0)
    assert np.all(scan_lmm_onechr(probs, linear, addcovar, eigen) == 0.0)
    assert np.all(scan_lmm_onechr(probs, linear, addcovar, eigen, hsq=0.4) == 0.0)
    assert np.all(scan_lmm_onechr_intcovar_lowmem(probs, linear, addcovar, intcovar, eigen) == 0.0)
    assert np.all(scan_lmm_onechr(probs, linear, addcovar, eigen, refit_hsq=True) == 0.0)
