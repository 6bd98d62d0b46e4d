"""
Tests for the conjugate-gradient solver and the lensing Wiener filter.
"""
from __future__ import annotations

import numpy as np
import pytest

from flowlens.dataset import build_dataset, simulate_dataset
from flowlens.errors import SolverIncomplete
from flowlens.flow import LenseFlow
from flowlens.grid import FlatGrid
from flowlens.operators import DiagonalOperator
from flowlens.wiener import WFMode, diagonal_wiener_filter, lensing_wiener_filter, pcg, wiener_filter_operator


# --- PCG ---

def test_pcg_two_eigenvalues_converges_in_two_steps():
    """SPD system with eigenvalues {1, 2}: residual non-increasing, done within 2 iterations."""
    rng = np.random.default_rng(0)
    n = 12
    Q, _ = np.linalg.qr(rng.standard_normal((n, n)))
    A = Q @ np.diag(np.where(np.arange(n) % 2 == 0, 1.0, 2.0)) @ Q.T
    b = rng.standard_normal(n)

    x, info = pcg(lambda v: A @ v, b, lambda r: r, tol=1e-10, maxiter=10)
    assert info.converged
    assert info.n_iter <= 2
    assert np.all(np.diff(info.residuals) <= 0.0)
    np.testing.assert_allclose(A @ x, b, atol=1e-8)


def test_pcg_exact_preconditioner_one_step():
    rng = np.random.default_rng(1)
    d = 1.0 + 10.0 * rng.random(20)
    b = rng.standard_normal(20)
    x, info = pcg(lambda v: d * v, b, lambda r: r / d, tol=1e-12)
    assert info.n_iter == 1
    np.testing.assert_allclose(x, b / d)


def test_pcg_maxiter_is_reported_not_raised(capsys):
    rng = np.random.default_rng(2)
    d = np.linspace(1.0, 100.0, 50)
    b = rng.standard_normal(50)
    x, info = pcg(lambda v: d * v, b, lambda r: r, tol=1e-12, maxiter=3)
    assert info.incomplete and not info.converged
    assert info.n_iter == 3
    assert info.residuals.shape == (4,)
    np.testing.assert_allclose(np.linalg.norm(b - d * x) / np.linalg.norm(b), np.min(info.residuals), rtol=1e-8)
    assert "[pcg]" in capsys.readouterr().out
    with pytest.raises(SolverIncomplete):
        info.raise_if_incomplete()


def test_pcg_zero_rhs_and_warm_start():
    d = np.array([1.0, 2.0, 3.0])
    x, info = pcg(lambda v: d * v, np.zeros(3), lambda r: r)
    np.testing.assert_array_equal(x, 0.0)
    assert info.converged and info.n_iter == 0

    b = np.array([1.0, 1.0, 1.0])
    x, info = pcg(lambda v: d * v, b, lambda r: r, x0=b / d)
    assert info.converged and info.n_iter == 0


def test_pcg_residual_history_is_the_true_residual():
    """Recorded residuals and callback values match |b - A x_k| / |b| from a warm start."""
    rng = np.random.default_rng(5)
    n = 30
    Q, _ = np.linalg.qr(rng.standard_normal((n, n)))
    A = Q @ np.diag(np.linspace(1.0, 50.0, n)) @ Q.T
    b = rng.standard_normal(n)
    x0 = rng.standard_normal(n)
    seen = []

    def track(x, res):
        seen.append((np.linalg.norm(b - A @ x) / np.linalg.norm(b), res))

    x, info = pcg(lambda v: A @ v, b, lambda r: r, x0=x0, tol=1e-8, maxiter=200, callback=track)
    assert info.converged
    assert info.residuals[0] == pytest.approx(np.linalg.norm(b - A @ x0) / np.linalg.norm(b))
    assert len(seen) == info.n_iter
    true_res, reported = np.asarray(seen).T
    np.testing.assert_allclose(reported, true_res, rtol=1e-6, atol=1e-12)
    np.testing.assert_allclose(reported, info.residuals[1:])
    np.testing.assert_allclose(A @ x, b, atol=1e-6)


def test_pcg_field_shaped_arrays():
    """2-D right-hand sides are solved in place of their flattened vector."""
    rng = np.random.default_rng(6)
    d = 1.0 + rng.random((4, 6))
    b = rng.standard_normal((4, 6))
    x, info = pcg(lambda v: d * v, b, lambda r: r, tol=1e-10, maxiter=100)
    assert x.shape == (4, 6)
    assert info.converged
    np.testing.assert_allclose(x, b / d, rtol=1e-8)


def test_pcg_zero_maxiter_returns_start():
    d = np.array([1.0, 2.0, 3.0])
    b = np.ones(3)
    x, info = pcg(lambda v: d * v, b, lambda r: r, x0=np.zeros(3), maxiter=0)
    np.testing.assert_array_equal(x, 0.0)
    assert not info.converged and info.n_iter == 0


# --- Wiener filter ---

def _toy_4x4(sigma2: float = 0.3):
    grid = FlatGrid(nx=4, ny=4, pixel_res_rad=1.0)
    Cf = DiagonalOperator(grid=grid, diag=2.0 / (1.0 + grid.ell ** 2), name="Cf")
    Cphi = DiagonalOperator(grid=grid, diag=1.0, name="Cphi")
    Cn = DiagonalOperator(grid=grid, diag=sigma2, basis="map", name="Cn")
    d = np.random.default_rng(3).standard_normal(grid.shape)
    return build_dataset(grid, d, Cn, Cf, Cphi), sigma2


def test_wiener_filter_closed_form_4x4():
    """Zero potential, identity mask/beam: f = (Cf^-1 + I/sigma2)^-1 d / sigma2."""
    ds, sigma2 = _toy_4x4()
    grid = ds.grid
    L = LenseFlow(grid=grid, phi=grid.zeros())
    f, info = lensing_wiener_filter(ds, L, tol=1e-10)
    assert info.converged

    wf = DiagonalOperator(grid=grid, diag=1.0 / (1.0 / ds.Cf.diag + 1.0 / sigma2) / sigma2)
    expected = wf.apply(ds.d)
    assert np.linalg.norm(f - expected) / np.linalg.norm(expected) < 1e-4


def test_wiener_filter_operator_diagonal():
    ds, sigma2 = _toy_4x4()
    P = wiener_filter_operator(ds)
    np.testing.assert_allclose(P.diag, 1.0 / ds.Cf.diag + 1.0 / sigma2)


def _lensed_toy(seed: int = 4):
    grid = FlatGrid(nx=16, ny=16, pixel_res_rad=1.0)
    shape = 1.0 / (0.05 + grid.ell ** 2) ** 2
    Cf = DiagonalOperator(grid=grid, diag=shape, name="Cf")
    Cphi = DiagonalOperator(grid=grid, diag=0.03 * shape, name="Cphi")
    Cn = DiagonalOperator(grid=grid, diag=0.05, basis="map", name="Cn")
    return simulate_dataset(grid, Cf, Cphi, Cn, np.random.default_rng(seed))


def test_wiener_filter_with_lensing_solves_normal_equations():
    ds, truth = _lensed_toy()
    L = LenseFlow(grid=ds.grid, phi=truth["phi"])
    f, info = lensing_wiener_filter(ds, L, tol=1e-8, maxiter=200)
    assert info.converged
    residual = (
        ds.Cf.apply_inverse(f)
        + L.apply_adjoint(ds.Cn.apply_inverse(L.apply(f)))
        - L.apply_adjoint(ds.Cn.apply_inverse(ds.d))
    )
    b = L.apply_adjoint(ds.Cn.apply_inverse(ds.d))
    assert np.linalg.norm(residual) / np.linalg.norm(b) < 1e-6


def test_sample_modes_need_rng():
    ds, truth = _lensed_toy()
    L = LenseFlow(grid=ds.grid, phi=truth["phi"])
    with pytest.raises(ValueError):
        lensing_wiener_filter(ds, L, "sample")
    with pytest.raises(ValueError):
        lensing_wiener_filter(ds, L, "fluctuation")
    with pytest.raises(ValueError):
        lensing_wiener_filter(ds, L, "median")


def test_sample_is_mean_plus_fluctuation():
    ds, truth = _lensed_toy()
    L = LenseFlow(grid=ds.grid, phi=truth["phi"])
    kw = dict(tol=1e-10, maxiter=300)
    mean, _ = lensing_wiener_filter(ds, L, WFMode.MEAN, **kw)
    sample, _ = lensing_wiener_filter(ds, L, WFMode.SAMPLE, rng=np.random.default_rng(9), **kw)
    fluct, _ = lensing_wiener_filter(ds, L, WFMode.FLUCTUATION, rng=np.random.default_rng(9), **kw)
    np.testing.assert_allclose(sample, mean + fluct, atol=1e-6 * np.max(np.abs(sample)))

    again, _ = lensing_wiener_filter(ds, L, "sample", rng=np.random.default_rng(9), **kw)
    np.testing.assert_array_equal(again, sample)
    other, _ = lensing_wiener_filter(ds, L, "sample", rng=np.random.default_rng(10), **kw)
    assert not np.allclose(other, sample)


# --- Mask and beam ---

def _masked_beamed_toy(seed: int = 4):
    grid = FlatGrid(nx=16, ny=16, pixel_res_rad=1.0)
    shape = 1.0 / (0.05 + grid.ell ** 2) ** 2
    Cf = DiagonalOperator(grid=grid, diag=shape, name="Cf")
    Cphi = DiagonalOperator(grid=grid, diag=0.03 * shape, name="Cphi")
    Cn = DiagonalOperator(grid=grid, diag=0.05, basis="map", name="Cn")
    mask = np.ones(grid.shape)
    mask[:3, :] = 0.0
    mask[:, :2] = 0.0
    M = DiagonalOperator(grid=grid, diag=mask, basis="map", name="M")
    B = DiagonalOperator(grid=grid, diag=np.exp(-0.05 * grid.ell ** 2), name="B")
    return simulate_dataset(grid, Cf, Cphi, Cn, np.random.default_rng(seed), M=M, B=B)


def test_masked_beamed_wiener_filter_solves_normal_equations():
    ds, truth = _masked_beamed_toy()
    np.testing.assert_array_equal(ds.B_hat.diag, ds.B.diag)
    L = LenseFlow(grid=ds.grid, phi=truth["phi"])
    f, info = lensing_wiener_filter(ds, L, tol=1e-8, maxiter=300)
    assert info.converged

    mask, beam = ds.M, ds.B

    def data_term(r):
        return L.apply_adjoint(beam.apply_adjoint(mask.apply(ds.Cn.apply_inverse(r))))

    b = data_term(ds.d)
    residual = ds.Cf.apply_inverse(f) + data_term(mask.apply(beam.apply(L.apply(f)))) - b
    assert np.linalg.norm(residual) / np.linalg.norm(b) < 1e-6


# --- Diagonal filter ---

def test_diagonal_wiener_filter_matches_unlensed_closed_form():
    ds, _ = _toy_4x4()
    f, _ = lensing_wiener_filter(ds, LenseFlow(grid=ds.grid, phi=ds.grid.zeros()), tol=1e-12)
    np.testing.assert_allclose(diagonal_wiener_filter(ds), f, rtol=1e-6, atol=1e-12)


def test_diagonal_wiener_filter_prefers_lensed_covariance():
    ds, sigma2 = _toy_4x4()
    Cl = DiagonalOperator(grid=ds.grid, diag=3.0 * ds.Cf.diag, name="Cf_lensed")
    ds_l = build_dataset(ds.grid, ds.d, ds.Cn, ds.Cf, ds.Cphi, Cf_lensed=Cl)
    expected = DiagonalOperator(grid=ds.grid, diag=Cl.diag / (Cl.diag + sigma2)).apply(ds.d)
    np.testing.assert_allclose(diagonal_wiener_filter(ds_l), expected, rtol=1e-12)
    np.testing.assert_allclose(diagonal_wiener_filter(ds_l, ds.Cf), diagonal_wiener_filter(ds), rtol=1e-12)
