import numpy as np
import pytest
import statsmodels.api as sm

from qtlscan.association.linreg import (
    calc_mvrss_chol,
    calc_mvrss_qr,
    calc_resid_chol,
    calc_resid_linreg,
    calc_resid_linreg_3d,
    calc_resid_qr,
    calc_rss_chol,
    calc_rss_linreg,
    calc_rss_qr,
    find_lin_indep_cols,
    find_matching_cols,
    fit_linreg_chol,
    fit_linreg_qr,
)
from qtlscan.matrix.ops import weighted_matrix
from qtlscan.utils.errors import InvalidDimensionError, NumericDegeneracyError


def _make_regression(n: int = 25, p: int = 3, seed: int = 0):
    rng = np.random.default_rng(seed)
    X = np.column_stack([np.ones(n), rng.normal(size=(n, p - 1))])
    beta = rng.normal(size=p)
    y = X @ beta + rng.normal(scale=0.5, size=n)
    return X, y


def test_cholesky_and_qr_agree_for_full_rank_design() -> None:
    X, y = _make_regression()

    chol = fit_linreg_chol(X, y)
    qr = fit_linreg_qr(X, y)

    np.testing.assert_allclose(chol.coef, qr.coef, rtol=1e-8)
    np.testing.assert_allclose(chol.se, qr.se, rtol=1e-8)
    assert chol.rss == pytest.approx(qr.rss, rel=1e-8)
    assert chol.rank == qr.rank == 3
    assert calc_rss_chol(X, y) == pytest.approx(calc_rss_qr(X, y), rel=1e-8)


def test_fit_matches_statsmodels_ols() -> None:
    X, y = _make_regression(n=40, p=4, seed=3)

    ref = sm.OLS(y, X).fit()
    fit = fit_linreg_qr(X, y)

    np.testing.assert_allclose(fit.coef, ref.params, rtol=1e-8)
    np.testing.assert_allclose(fit.se, ref.bse, rtol=1e-8)
    np.testing.assert_allclose(fit.fitted, ref.fittedvalues, rtol=1e-8, atol=1e-10)
    assert fit.rss == pytest.approx(ref.ssr, rel=1e-8)
    assert fit.df == int(ref.df_resid)


def test_qr_excludes_duplicate_column() -> None:
    X, y = _make_regression()
    X_dup = np.column_stack([X, X[:, 1]])

    fit = fit_linreg_qr(X_dup, y)

    assert fit.rank == 3
    assert np.sum(np.isnan(fit.coef)) == 1
    assert np.isnan(fit.coef[1]) or np.isnan(fit.coef[3])
    assert fit.rss == pytest.approx(calc_rss_qr(X, y), rel=1e-8)
    assert np.all(np.isfinite(fit.resid))


def test_cholesky_raises_on_singular_normal_equations() -> None:
    X, y = _make_regression()
    X_zero = np.column_stack([X, np.zeros(X.shape[0])])

    with pytest.raises(NumericDegeneracyError):
        fit_linreg_chol(X_zero, y)
    with pytest.raises(NumericDegeneracyError):
        calc_rss_chol(X_zero, y)


def test_find_lin_indep_cols_drops_exactly_one_duplicate() -> None:
    rng = np.random.default_rng(1)
    a, b = rng.normal(size=(2, 15))
    mat = np.column_stack([a, b, a])

    cols = find_lin_indep_cols(mat)

    assert cols.size == np.linalg.matrix_rank(mat) == 2
    assert 1 in cols
    assert (0 in cols) != (2 in cols)
    assert np.all(np.diff(cols) > 0)


def test_find_matching_cols_reports_earliest_match() -> None:
    rng = np.random.default_rng(2)
    a, b, c = rng.normal(size=(3, 10))
    mat = np.column_stack([a, b, a, b + 1e-14, c, a])

    matches = find_matching_cols(mat, tol=1e-12)

    np.testing.assert_array_equal(matches, [-1, -1, 0, 1, -1, 0])


def test_find_matching_cols_respects_tolerance() -> None:
    a = np.linspace(0, 1, 8)
    mat = np.column_stack([a, a + 1e-6])

    np.testing.assert_array_equal(find_matching_cols(mat, tol=1e-12), [-1, -1])
    np.testing.assert_array_equal(find_matching_cols(mat, tol=1e-5), [-1, 0])


def test_multivariate_rss_matches_columnwise() -> None:
    X, y = _make_regression()
    rng = np.random.default_rng(5)
    Y = np.column_stack([y, rng.normal(size=y.shape[0]), 2.0 * y])

    mvrss = calc_mvrss_qr(X, Y)

    expected = [calc_rss_qr(X, Y[:, j]) for j in range(Y.shape[1])]
    np.testing.assert_allclose(mvrss, expected, rtol=1e-10)
    np.testing.assert_allclose(calc_mvrss_chol(X, Y), expected, rtol=1e-8)
    np.testing.assert_allclose(calc_rss_linreg(X, Y), expected, rtol=1e-10)
    assert isinstance(calc_rss_linreg(X, y), float)


def test_residuals_are_orthogonal_to_design() -> None:
    X, y = _make_regression()

    for resid in (calc_resid_qr(X, y), calc_resid_chol(X, y), calc_resid_linreg(X, y)):
        assert resid.shape == y.shape
        np.testing.assert_allclose(X.T @ resid, 0.0, atol=1e-9)


def test_resid_3d_matches_per_slab_residuals() -> None:
    X, _ = _make_regression(n=12)
    rng = np.random.default_rng(7)
    P = rng.normal(size=(12, 3, 4))

    resid = calc_resid_linreg_3d(X, P)

    assert resid.shape == P.shape
    for pos in range(P.shape[2]):
        np.testing.assert_allclose(resid[:, :, pos], calc_resid_linreg(X, P[:, :, pos]), atol=1e-12)


def test_constant_weights_leave_coefficients_unchanged() -> None:
    X, y = _make_regression(seed=11)
    root_c = np.sqrt(np.full(X.shape[0], 3.5))

    weighted = fit_linreg_qr(weighted_matrix(X, root_c), weighted_matrix(y, root_c))
    plain = fit_linreg_qr(X, y)

    np.testing.assert_allclose(weighted.coef, plain.coef, rtol=1e-8)


def test_dimension_mismatch_raises() -> None:
    X, y = _make_regression(n=10)

    with pytest.raises(InvalidDimensionError, match="rows"):
        calc_rss_qr(X, y[:-1])
    with pytest.raises(InvalidDimensionError, match="rows"):
        fit_linreg_chol(X, np.ones(12))
    with pytest.raises(InvalidDimensionError):
        calc_resid_linreg_3d(X, np.ones((9, 2, 2)))
