"""
Flat-sky periodic pixel grid and its spectral (rfft2) basis.

Conventions:
  - map-basis fields are real arrays of shape (ny, nx), pixel (iy, ix)
  - fourier-basis fields are rfft2 arrays of shape (ny, nx//2+1)
  - wavenumbers are in radians^-1: k = 2*pi*fftfreq(n, d=pixel_res_rad)
  - the inner product is the plain pixel sum  <a, b> = sum_p a[p] b[p]

Derivatives are spectral. The Nyquist wavenumber is zeroed in the derivative
kernels so that each d/dx_i is a real operator with d_i^T = -d_i exactly; the
flow adjoints rely on this.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import ShapeMismatch


@dataclass(frozen=True)
class FlatGrid:
    """
    Regular periodic grid of nx by ny square pixels.

    Args:
      nx, ny: grid size (x along axis 1, y along axis 0).
      pixel_res_rad: pixel side in radians.
    """

    nx: int
    ny: int
    pixel_res_rad: float = 1.0

    def __post_init__(self) -> None:
        nx = int(self.nx)
        ny = int(self.ny)
        if nx <= 0 or ny <= 0:
            raise ValueError("nx and ny must be positive.")
        if not np.isfinite(self.pixel_res_rad) or float(self.pixel_res_rad) <= 0:
            raise ValueError("pixel_res_rad must be finite and > 0.")
        dx = float(self.pixel_res_rad)

        kx = 2.0 * np.pi * np.fft.rfftfreq(nx, d=dx)  # (nx//2+1,)
        ky = 2.0 * np.pi * np.fft.fftfreq(ny, d=dx)  # (ny,)
        KX, KY = np.meshgrid(kx, ky, indexing="xy")  # (ny, nx//2+1)

        # Derivative kernels: drop the Nyquist mode on even axes.
        dkx = kx.copy()
        if nx % 2 == 0:
            dkx[-1] = 0.0
        dky = ky.copy()
        if ny % 2 == 0:
            dky[ny // 2] = 0.0
        DKX, DKY = np.meshgrid(dkx, dky, indexing="xy")

        object.__setattr__(self, "_kx", KX)
        object.__setattr__(self, "_ky", KY)
        object.__setattr__(self, "_ell", np.sqrt(KX * KX + KY * KY))
        object.__setattr__(self, "_dk", np.stack([DKX, DKY], axis=0))  # (2, ny, nx//2+1)

    # ---- shapes

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self.ny), int(self.nx))

    @property
    def fourier_shape(self) -> tuple[int, int]:
        return (int(self.ny), int(self.nx) // 2 + 1)

    @property
    def n_pix(self) -> int:
        return int(self.nx) * int(self.ny)

    @property
    def dxdy(self) -> float:
        return float(self.pixel_res_rad) ** 2

    @property
    def kx(self) -> np.ndarray:
        return self._kx

    @property
    def ky(self) -> np.ndarray:
        return self._ky

    @property
    def ell(self) -> np.ndarray:
        """|k| on the rfft2 half plane, shape (ny, nx//2+1)."""
        return self._ell

    def check_map(self, f: np.ndarray, name: str = "field") -> np.ndarray:
        f = np.asarray(f, dtype=np.float64)
        if f.shape != self.shape:
            raise ShapeMismatch(f"{name} has shape {f.shape}; grid expects map shape {self.shape}.")
        return f

    def check_fourier(self, F: np.ndarray, name: str = "field") -> np.ndarray:
        F = np.asarray(F)
        if F.shape != self.fourier_shape:
            raise ShapeMismatch(f"{name} has shape {F.shape}; grid expects fourier shape {self.fourier_shape}.")
        return F

    # ---- bases

    def to_fourier(self, f: np.ndarray) -> np.ndarray:
        return np.fft.rfft2(f, axes=(-2, -1))

    def to_map(self, F: np.ndarray) -> np.ndarray:
        return np.fft.irfft2(F, s=self.shape, axes=(-2, -1))

    def zeros(self) -> np.ndarray:
        return np.zeros(self.shape, dtype=np.float64)

    def white_noise(self, rng: np.random.Generator) -> np.ndarray:
        """Unit-variance white noise in the map basis."""
        return rng.standard_normal(self.shape)

    def dot(self, a: np.ndarray, b: np.ndarray) -> float:
        return float(np.sum(np.asarray(a) * np.asarray(b)))

    def full_plane(self, half: np.ndarray) -> np.ndarray:
        """
        Expand a Hermitian rfft2-plane array (ny, nx//2+1) to the full fft2 plane (ny, nx).

        Negative-kx columns are filled from X(-k) = conj(X(k)).
        """
        half = self.check_fourier(half, "half-plane array")
        ny, nx = self.shape
        full = np.empty((ny, nx), dtype=half.dtype)
        n_half = nx // 2 + 1
        full[:, :n_half] = half
        iy_neg = (-np.arange(ny)) % ny
        for ix in range(n_half, nx):
            full[:, ix] = np.conj(half[iy_neg, nx - ix])
        return full

    # ---- derivatives

    def gradient(self, f: np.ndarray) -> np.ndarray:
        """(2, ny, nx) = (d_x f, d_y f)."""
        F = self.to_fourier(f)
        return self.to_map(1j * self._dk * F[None])

    def hessian(self, f: np.ndarray) -> np.ndarray:
        """(2, 2, ny, nx), H[i, j] = d_i d_j f."""
        return self.gradhess(f)[1]

    def gradhess(self, f: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Gradient and Hessian from a single forward transform."""
        F = self.to_fourier(f)
        dk = self._dk
        grad = self.to_map(1j * dk * F[None])
        hess = self.to_map(-dk[:, None] * dk[None, :] * F[None, None])
        return grad, hess

    def divergence(self, v: np.ndarray) -> np.ndarray:
        """sum_i d_i v[i] for v of shape (2, ny, nx)."""
        V = self.to_fourier(v)
        return self.to_map(np.sum(1j * self._dk * V, axis=0))

    def hessian_transpose(self, m: np.ndarray) -> np.ndarray:
        """sum_ij d_i d_j m[i, j] for m of shape (2, 2, ny, nx)."""
        Mk = self.to_fourier(m)
        dk = self._dk
        return self.to_map(np.sum(-dk[:, None] * dk[None, :] * Mk, axis=(0, 1)))
