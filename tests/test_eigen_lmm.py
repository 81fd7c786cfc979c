import numpy as np
import pytest

import qtlscan.association.lmm as lmm
from qtlscan.association.linreg import calc_rss_qr, fit_linreg_qr
from qtlscan.association.lmm import calc_ll, fit_lmm, fit_lmm_mat, maximize_bounded
from qtlscan.matrix.eigen import calc_logdetXpX, eigen_decomp, eigen_rotation, rotate
from qtlscan.utils.data_types import KinshipMatrix
from qtlscan.utils.errors import (
    InvalidDimensionError,
    NumericDegeneracyError,
    OptimizationNonConvergenceWarning,
)


def _make_lmm_inputs(n: int = 40, seed: int = 0, hsq: float = 0.6):
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, 3 * n))
    K = A @ A.T / A.shape[1]
    eigen = eigen_decomp(K)
    g = eigen["eigenvecs"] @ (np.sqrt(eigen["eigenvals"]) * rng.normal(size=n))
    X = np.column_stack([np.ones(n), rng.normal(size=n)])
    y = X @ np.array([1.0, 0.5]) + np.sqrt(hsq) * g + np.sqrt(1 - hsq) * rng.normal(size=n)
    return K, eigen, y, X


def test_eigen_decomp_sorted_and_reconstructs() -> None:
    K, eigen, _, _ = _make_lmm_inputs(n=15)

    vals, vecs = eigen["eigenvals"], eigen["eigenvecs"]

    assert np.all(np.diff(vals) <= 0)
    np.testing.assert_allclose(vecs @ np.diag(vals) @ vecs.T, K, atol=1e-10)
    np.testing.assert_allclose(vecs.T @ vecs, np.eye(15), atol=1e-10)


def test_eigen_decomp_clips_rounding_negatives() -> None:
    K = np.ones((4, 4))

    eigen = eigen_decomp(KinshipMatrix(K))

    assert np.all(eigen["eigenvals"] >= 0)
    assert eigen["eigenvals"][0] == pytest.approx(4.0)


def test_eigen_rotation_rotates_y_and_X() -> None:
    K, eigen, y, X = _make_lmm_inputs(n=12)

    rotated = eigen_rotation(K, y, X)
    precomputed = eigen_rotation(None, y, X, eigenK=eigen)

    np.testing.assert_allclose(rotated["y"], eigen["eigenvecs"].T @ y, atol=1e-10)
    np.testing.assert_allclose(precomputed["X"], eigen["eigenvecs"].T @ X, atol=1e-12)
    # Rotation is orthogonal, so residual sums of squares are unchanged.
    assert calc_rss_qr(rotated["X"], rotated["y"]) == pytest.approx(calc_rss_qr(X, y), rel=1e-8)


def test_rotate_rejects_mismatched_rows() -> None:
    _, eigen, _, _ = _make_lmm_inputs(n=10)

    with pytest.raises(InvalidDimensionError):
        rotate(eigen["eigenvecs"], np.ones((9, 2)))


def test_calc_logdetXpX() -> None:
    _, _, _, X = _make_lmm_inputs(n=20)

    assert calc_logdetXpX(X) == pytest.approx(np.linalg.slogdet(X.T @ X)[1])
    with pytest.raises(NumericDegeneracyError):
        calc_logdetXpX(np.column_stack([X, X[:, 1]]))


def test_calc_ll_at_zero_hsq_is_ols_likelihood() -> None:
    _, eigen, y, X = _make_lmm_inputs()
    n, p = X.shape
    rss = calc_rss_qr(X, y)

    ml = calc_ll(0.0, eigen["eigenvals"], y, X, reml=False)
    reml = calc_ll(0.0, eigen["eigenvals"], y, X, reml=True)

    assert ml == pytest.approx(-0.5 * n * np.log(rss), rel=1e-10)
    assert reml == pytest.approx(-0.5 * (n - p) * np.log(rss), rel=1e-10)


def test_calc_ll_is_minus_inf_for_nonpositive_variance() -> None:
    _, _, y, X = _make_lmm_inputs(n=10)
    eigenvals = np.concatenate([np.full(9, 1.5), [0.0]])

    assert calc_ll(1.0, eigenvals, y, X, reml=False) == -np.inf


def test_maximize_bounded_finds_interior_and_edge_optima() -> None:
    x, value, converged = maximize_bounded(lambda h: -(h - 0.3) ** 2, 0.0, 1.0, tol=1e-6)
    assert converged
    assert x == pytest.approx(0.3, abs=1e-4)
    assert value == pytest.approx(0.0, abs=1e-8)

    x_edge, _, _ = maximize_bounded(lambda h: h, 0.0, 1.0)
    assert 0.99 < x_edge <= 1.0


def test_fit_lmm_identity_kinship_reduces_to_ols() -> None:
    _, _, y, X = _make_lmm_inputs()
    eigenvals = np.ones(y.shape[0])

    fit = fit_lmm(eigenvals, y, X, reml=False)
    ols = fit_linreg_qr(X, y)

    assert fit.hsq == 0.0
    np.testing.assert_allclose(fit.beta, ols.coef, rtol=1e-8)
    assert fit.rss == pytest.approx(ols.rss, rel=1e-10)
    assert fit.loglik == pytest.approx(-0.5 * y.shape[0] * np.log(ols.rss), rel=1e-10)
    assert fit.sigmasq == pytest.approx(ols.rss / y.shape[0])


def test_fit_lmm_finds_local_maximum_in_unit_interval() -> None:
    _, eigen, y, X = _make_lmm_inputs(n=60, seed=4)
    Uy = eigen["eigenvecs"].T @ y
    UX = eigen["eigenvecs"].T @ X
    logdet = calc_logdetXpX(X)

    fit = fit_lmm(eigen["eigenvals"], Uy, UX, reml=True, logdetXpX=logdet)

    assert 0.0 <= fit.hsq <= 1.0
    assert fit.loglik == pytest.approx(
        calc_ll(fit.hsq, eigen["eigenvals"], Uy, UX, reml=True, logdetXpX=logdet), rel=1e-12
    )
    for h in (0.0, 1.0, max(fit.hsq - 0.01, 0.0), min(fit.hsq + 0.01, 1.0)):
        assert calc_ll(h, eigen["eigenvals"], Uy, UX, reml=True, logdetXpX=logdet) <= fit.loglik + 1e-8


def test_fit_lmm_boundary_check_returns_exact_zero() -> None:
    eigenvals = np.array([2.0, 2.0, 0.0, 0.0])
    y = np.array([0.01, 0.01, 1.0, 1.0])
    X = np.zeros((4, 0))

    fit = fit_lmm(eigenvals, y, X, reml=False, check_boundary=True)

    assert fit.hsq == 0.0
    assert fit.loglik == pytest.approx(calc_ll(0.0, eigenvals, y, X, reml=False))


def test_fit_lmm_mat_matches_single_trait_fits() -> None:
    _, eigen, y, X = _make_lmm_inputs(n=30, seed=8)
    rng = np.random.default_rng(9)
    Y = np.column_stack([y, rng.normal(size=y.shape[0])])
    UY = eigen["eigenvecs"].T @ Y
    UX = eigen["eigenvecs"].T @ X

    fits = fit_lmm_mat(eigen["eigenvals"], UY, UX)

    assert len(fits) == 2
    for j, fit in enumerate(fits):
        single = fit_lmm(eigen["eigenvals"], UY[:, j], UX)
        assert fit.hsq == pytest.approx(single.hsq)
        assert fit.loglik == pytest.approx(single.loglik)


def test_fit_lmm_falls_back_to_boundaries_when_search_fails(monkeypatch) -> None:
    _, eigen, y, X = _make_lmm_inputs(n=30, seed=10)
    Uy = eigen["eigenvecs"].T @ y
    UX = eigen["eigenvecs"].T @ X
    monkeypatch.setattr(lmm, "maximize_bounded", lambda f, lo, hi, tol: (0.5, np.nan, False))

    with pytest.warns(OptimizationNonConvergenceWarning):
        fit = fit_lmm(eigen["eigenvals"], Uy, UX, reml=True, check_boundary=False)

    at_bounds = {h: calc_ll(h, eigen["eigenvals"], Uy, UX, reml=True) for h in (0.0, 1.0)}
    assert fit.hsq in at_bounds
    assert fit.loglik == pytest.approx(max(at_bounds.values()))
    assert np.isfinite(fit.loglik)
