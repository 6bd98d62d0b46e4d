"""
Flat-sky quadratic-estimator noise of the lensing potential (temperature).

The Hu-Okamoto TT normalization

  A_L^{-1} = int d^2l/(2pi)^2 (L.l) C_l [ (L.l) C_l + L.(L-l) C_{L-l} ] / (T_l T_{L-l})

is a sum of convolutions, evaluated with FFTs on the full fft2 plane:

  A_L^{-1} = sum_ij L_i L_j [ (l_i l_j C^2/T) * (1/T) + (l_i C/T) * (l_j C/T) ](L)

with * the discrete convolution over modes. C is the signal spectrum (lensed
if available) and T = C + N/B^2 the total. A_L is the N0 noise of the
reconstructed phi; its covariance eigenvalues are A_L / (dx*dy).
"""

from __future__ import annotations

import numpy as np

from .dataset import DataSet
from .grid import FlatGrid
from .operators import DiagonalOperator


def _convolve(grid: FlatGrid, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """sum_l a(l) b(L-l) / (n_pix dx dy), i.e. the d^2l/(2pi)^2 integral, for full-plane a, b."""
    return np.fft.fft2(np.fft.ifft2(a) * np.fft.ifft2(b)) / grid.dxdy


def quadratic_estimator_noise_from(
    grid: FlatGrid,
    C_signal: DiagonalOperator,
    C_total: DiagonalOperator,
    *,
    name: str = "Nphi",
) -> DiagonalOperator:
    """
    TT quadratic-estimator N0 of phi from signal and total field covariances.

    Args:
      grid: field grid.
      C_signal: fourier-diagonal signal covariance entering the response.
      C_total: fourier-diagonal total (signal + beam-deconvolved noise) covariance.

    Returns:
      Fourier-diagonal DiagonalOperator; modes with no response (including L=0) are inf.
    """
    for label, op in (("C_signal", C_signal), ("C_total", C_total)):
        if not (isinstance(op, DiagonalOperator) and op.basis == "fourier"):
            raise ValueError(f"{label} must be a fourier-basis DiagonalOperator.")

    ny, nx = grid.shape
    dxdy = grid.dxdy
    C = grid.full_plane(C_signal.diag * dxdy).real
    T = grid.full_plane(C_total.diag * dxdy).real
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_T = np.where((T > 0) & np.isfinite(T), 1.0 / T, 0.0)

    lx = 2.0 * np.pi * np.fft.fftfreq(nx, d=grid.pixel_res_rad)[None, :] * np.ones((ny, 1))
    ly = 2.0 * np.pi * np.fft.fftfreq(ny, d=grid.pixel_res_rad)[:, None] * np.ones((1, nx))
    ls = (lx, ly)

    A_inv = np.zeros((ny, nx), dtype=np.complex128)
    for i in range(2):
        for j in range(2):
            conv = _convolve(grid, ls[i] * ls[j] * C * C * inv_T, inv_T)
            conv = conv + _convolve(grid, ls[i] * C * inv_T, ls[j] * C * inv_T)
            A_inv += ls[i] * ls[j] * conv

    A_inv = A_inv.real[:, : nx // 2 + 1]
    scale = np.max(np.abs(A_inv)) if A_inv.size else 0.0
    with np.errstate(divide="ignore"):
        N0 = np.where(A_inv > 1e-12 * scale, 1.0 / A_inv, np.inf)
    N0[0, 0] = np.inf
    return DiagonalOperator(grid=grid, diag=N0 / dxdy, basis="fourier", name=name)


def quadratic_estimator_noise(ds: DataSet) -> DiagonalOperator:
    """N0 of phi for the data set: lensed spectrum when known, noise from Cn_hat / B_hat^2."""
    C_signal = ds.Cf if ds.Cf_lensed is None else ds.Cf_lensed
    with np.errstate(divide="ignore", invalid="ignore"):
        noise = np.where(ds.B_hat.diag != 0.0, ds.Cn_hat.diag / ds.B_hat.diag ** 2, np.inf)
    C_total = DiagonalOperator(grid=ds.grid, diag=C_signal.diag + noise, basis="fourier", name="C_total")
    return quadratic_estimator_noise_from(ds.grid, C_signal, C_total)
