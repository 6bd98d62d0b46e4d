"""
Tests for diagonal / composed operators and the spectrum normalization.
"""
from __future__ import annotations

import numpy as np
import pytest

from flowlens.dataset import mix_operator
from flowlens.errors import ShapeMismatch, SingularOperator
from flowlens.grid import FlatGrid
from flowlens.operators import DiagonalOperator, IdentityOperator, LinearOperator, compose, fourier_diagonal


def _grid() -> FlatGrid:
    return FlatGrid(nx=16, ny=16, pixel_res_rad=np.deg2rad(2.0 / 60.0))


# --- Spectrum normalization ---

def test_constant_cl_inverse_is_scaled_identity():
    """Constant C_ell: C^{-1} = (dx dy / C_ell) I in pixel space."""
    grid = _grid()
    cl = 3.0e-5
    ell = np.linspace(0.0, 2.0 * np.max(grid.ell), 64)
    C = DiagonalOperator.from_cl(grid, ell, np.full_like(ell, cl))
    rng = np.random.default_rng(0)
    f = rng.standard_normal(grid.shape)
    np.testing.assert_allclose(C.apply_inverse(f), f * grid.dxdy / cl, rtol=1e-10)


def test_simulate_matches_pixel_variance():
    """White spectrum: simulated maps have pixel variance C_ell / (dx dy)."""
    grid = _grid()
    C = DiagonalOperator(grid=grid, diag=2.5, basis="fourier")
    rng = np.random.default_rng(1)
    draws = np.stack([C.simulate(rng) for _ in range(200)], axis=0)
    assert np.var(draws) == pytest.approx(2.5, rel=0.05)


# --- Diagonal operators ---

def test_map_diagonal_apply_and_inverse():
    grid = _grid()
    rng = np.random.default_rng(2)
    w = 1.0 + rng.random(grid.shape)
    W = DiagonalOperator(grid=grid, diag=w, basis="map", name="W")
    f = rng.standard_normal(grid.shape)
    np.testing.assert_allclose(W.apply(f), w * f)
    np.testing.assert_allclose(W.apply_inverse(W.apply(f)), f, rtol=1e-12)
    np.testing.assert_allclose(W.apply_adjoint(f), W.apply(f))


def test_fourier_diagonal_is_self_adjoint():
    grid = _grid()
    C = DiagonalOperator(grid=grid, diag=1.0 / (1.0 + grid.ell ** 2 / 1e6), name="C")
    rng = np.random.default_rng(3)
    a = rng.standard_normal(grid.shape)
    b = rng.standard_normal(grid.shape)
    assert grid.dot(C.apply(a), b) == pytest.approx(grid.dot(a, C.apply_adjoint(b)), rel=1e-10)
    assert grid.dot(C.apply(a), b) == pytest.approx(grid.dot(a, C.apply(b)), rel=1e-10)


def test_singular_inverse_raises():
    grid = _grid()
    diag = np.ones(grid.fourier_shape)
    diag[0, 0] = 0.0
    C = DiagonalOperator(grid=grid, diag=diag, name="Cf")
    with pytest.raises(SingularOperator) as excinfo:
        C.apply_inverse(np.ones(grid.shape))
    assert excinfo.value.n_bad == 1
    with pytest.raises(SingularOperator):
        C.inv()
    diag[0, 0] = np.nan
    with pytest.raises(SingularOperator):
        DiagonalOperator(grid=grid, diag=diag).apply_inverse_adjoint(np.ones(grid.shape))


def test_wrong_diagonal_shape_raises():
    grid = _grid()
    with pytest.raises(ShapeMismatch):
        DiagonalOperator(grid=grid, diag=np.ones(grid.shape), basis="fourier")
    with pytest.raises(ValueError):
        DiagonalOperator(grid=grid, diag=1.0, basis="harmonic")


def test_mix_operator_zeroes_non_finite_entries():
    grid = _grid()
    diag = np.full(grid.fourier_shape, 4.0)
    diag[0, 0] = 0.0
    D = mix_operator(DiagonalOperator(grid=grid, diag=diag), sigma2=12.0 * grid.dxdy)
    assert D.diag[0, 0] == 0.0
    np.testing.assert_allclose(D.diag[1:, :], 2.0)


# --- Composition ---

def test_compose_order_and_identity_dropping():
    grid = _grid()
    rng = np.random.default_rng(4)
    A = DiagonalOperator(grid=grid, diag=1.0 + rng.random(grid.shape), basis="map", name="A")
    B = DiagonalOperator(grid=grid, diag=1.0 / (1.0 + grid.ell / 1e3), name="B")
    f = rng.standard_normal(grid.shape)

    AB = compose(A, IdentityOperator(), B)
    np.testing.assert_allclose(AB.apply(f), A.apply(B.apply(f)))
    np.testing.assert_allclose(AB.apply_adjoint(f), B.apply(A.apply(f)))
    np.testing.assert_allclose(AB.apply_inverse(AB.apply(f)), f, rtol=1e-10, atol=1e-12)
    assert compose(IdentityOperator(), A) is A
    assert isinstance(compose(IdentityOperator()), IdentityOperator)


def test_fourier_diagonal_helper():
    grid = _grid()
    C = DiagonalOperator(grid=grid, diag=2.0)
    assert fourier_diagonal(C) is C.diag
    assert fourier_diagonal(DiagonalOperator(grid=grid, diag=2.0, basis="map")) is None
    assert fourier_diagonal(IdentityOperator()) is None


# --- Interface ---

def test_linear_operator_is_abstract():
    with pytest.raises(TypeError):
        LinearOperator()

    class ApplyOnly(LinearOperator):
        def apply(self, f):
            return f

    with pytest.raises(TypeError):
        ApplyOnly()
