"""
Tests for the quadratic-estimator noise: FFT convolutions against a direct mode sum.
"""
from __future__ import annotations

import numpy as np
import pytest

from flowlens.dataset import build_dataset
from flowlens.grid import FlatGrid
from flowlens.operators import DiagonalOperator
from flowlens.qe import quadratic_estimator_noise, quadratic_estimator_noise_from


def _spectra(ell: np.ndarray):
    signal = 1.0 / (0.1 + ell ** 2) ** 1.5
    total = signal + 0.05
    return signal, total


def _direct_inverse_norm(grid: FlatGrid) -> np.ndarray:
    """A_L^{-1} on the full fft2 plane by explicit double sum over modes."""
    ny, nx = grid.shape
    lx = 2.0 * np.pi * np.fft.fftfreq(nx, d=grid.pixel_res_rad)
    ly = 2.0 * np.pi * np.fft.fftfreq(ny, d=grid.pixel_res_rad)
    LX, LY = np.meshgrid(lx, ly, indexing="xy")
    C, T = _spectra(np.sqrt(LX ** 2 + LY ** 2))
    C = C * grid.dxdy
    T = T * grid.dxdy
    out = np.zeros((ny, nx))
    for iy in range(ny):
        for ix in range(nx):
            Lvec = np.array([LX[iy, ix], LY[iy, ix]])
            total = 0.0
            for jy in range(ny):
                for jx in range(nx):
                    ky, kx = (iy - jy) % ny, (ix - jx) % nx
                    l1 = np.array([LX[jy, jx], LY[jy, jx]])
                    l2 = np.array([LX[ky, kx], LY[ky, kx]])
                    w = 1.0 / (T[jy, jx] * T[ky, kx])
                    total += (Lvec @ l1) * C[jy, jx] * ((Lvec @ l1) * C[jy, jx] + (Lvec @ l2) * C[ky, kx]) * w
            out[iy, ix] = total / (grid.n_pix * grid.dxdy)
    return out


def test_noise_matches_direct_sum():
    grid = FlatGrid(nx=6, ny=6, pixel_res_rad=0.7)
    signal, total = _spectra(grid.ell)
    N0 = quadratic_estimator_noise_from(
        grid,
        DiagonalOperator(grid=grid, diag=signal),
        DiagonalOperator(grid=grid, diag=total),
    )
    A_inv = _direct_inverse_norm(grid)[:, : grid.nx // 2 + 1]
    finite = np.isfinite(N0.diag)
    assert not finite[0, 0]
    assert np.sum(finite) > 0.5 * finite.size
    A_inv_fft = 1.0 / (N0.diag[finite] * grid.dxdy)
    np.testing.assert_allclose(A_inv_fft, A_inv[finite], rtol=1e-6, atol=1e-10 * np.max(np.abs(A_inv)))


def test_noise_is_invariant_to_common_rescaling():
    grid = FlatGrid(nx=8, ny=8)
    signal, total = _spectra(grid.ell)
    a = quadratic_estimator_noise_from(grid, DiagonalOperator(grid=grid, diag=signal), DiagonalOperator(grid=grid, diag=total))
    b = quadratic_estimator_noise_from(
        grid, DiagonalOperator(grid=grid, diag=3.0 * signal), DiagonalOperator(grid=grid, diag=3.0 * total)
    )
    np.testing.assert_allclose(a.diag, b.diag, rtol=1e-10)


def test_noise_from_dataset_uses_lensed_spectrum_and_noise_level():
    grid = FlatGrid(nx=8, ny=8)
    signal, _ = _spectra(grid.ell)
    Cf = DiagonalOperator(grid=grid, diag=signal)
    Cf_lensed = DiagonalOperator(grid=grid, diag=1.1 * signal)
    Cn = DiagonalOperator(grid=grid, diag=0.05, basis="map")
    Cphi = DiagonalOperator(grid=grid, diag=1.0)
    ds = build_dataset(grid, grid.zeros(), Cn, Cf, Cphi, Cf_lensed=Cf_lensed)

    N0 = quadratic_estimator_noise(ds)
    expected = quadratic_estimator_noise_from(
        grid, Cf_lensed, DiagonalOperator(grid=grid, diag=1.1 * signal + 0.05)
    )
    np.testing.assert_allclose(N0.diag, expected.diag)
    assert N0.basis == "fourier"
    assert np.isinf(N0.diag[0, 0])


def test_noise_rejects_map_basis_inputs():
    grid = FlatGrid(nx=8, ny=8)
    with pytest.raises(ValueError):
        quadratic_estimator_noise_from(
            grid, DiagonalOperator(grid=grid, diag=1.0, basis="map"), DiagonalOperator(grid=grid, diag=1.0)
        )
